"""Tests for entity sync (campaigns, ad groups, creatives, ads).

WHAT:
    Runs sync_account_entities against a fake upstream client and a real
    SQLite session.

WHY:
    Insight rows point at these ids, so the critical properties are stable
    internal ids across passes, correct minor-unit budget conversion, and
    orphans being skipped rather than written with broken parents.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from adsync.models import Ad, AdGroup, Campaign, Creative
from adsync.services import entity_sync_service as svc
from adsync.services.ads_api_client import AuthError


def _upstream(fake_client_cls, **overrides):
    payload = dict(
        account={"id": "act_1001", "name": "HN Account", "currency": "USD", "account_status": 1,
                 "amount_spent": "123456", "balance": "500"},
        campaigns=[
            {"id": "c1", "name": "Spring Sale", "status": "ACTIVE", "daily_budget": "250000",
             "updated_time": "2025-01-10T08:00:00+0700"},
        ],
        adsets=[
            {"id": "as1", "name": "Hanoi 25-34", "campaign_id": "c1", "status": "PAUSED"},
        ],
        ads=[
            {"id": "ad1", "name": "Video A", "adset_id": "as1", "status": "ACTIVE",
             "effective_status": "ACTIVE", "creative": {"id": "cr1"}},
        ],
        creatives={"ad1": {"id": "cr1", "name": "Creative 1", "thumbnail_url": "https://img/1.jpg"}},
    )
    payload.update(overrides)
    return fake_client_cls(**payload)


class TestBudgetNormalization:

    def test_zero_decimal_currency_keeps_whole_units(self):
        assert svc.normalize_budget("250000", "VND") == Decimal("250000.00")

    def test_two_decimal_currency_divides_by_100(self):
        assert svc.normalize_budget("250000", "USD") == Decimal("2500.00")

    def test_missing_budget(self):
        assert svc.normalize_budget(None, "USD") is None
        assert svc.normalize_budget("", "USD") is None

    def test_status_mapping(self):
        assert svc.map_status("active") == "ACTIVE"
        assert svc.map_status("ARCHIVED") == "ARCHIVED"
        assert svc.map_status("IN_PROCESS") == "UNKNOWN"
        assert svc.map_status(None) == "UNKNOWN"
        assert svc.map_account_status(1) == "ACTIVE"
        assert svc.map_account_status("2") == "DISABLED"
        assert svc.map_account_status(999) == "UNKNOWN"


class TestSyncAccountEntities:

    def test_full_hierarchy_is_stored(self, test_db_session, tenant, fake_client_cls):
        account = tenant["account"]
        result = svc.sync_account_entities(test_db_session, account, _upstream(fake_client_cls))

        assert result.success
        assert (result.campaigns, result.ad_groups, result.ads, result.creatives) == (1, 1, 1, 1)

        campaign = test_db_session.query(Campaign).one()
        ad_group = test_db_session.query(AdGroup).one()
        ad = test_db_session.query(Ad).one()
        creative = test_db_session.query(Creative).one()

        assert campaign.daily_budget == Decimal("2500.00")
        assert campaign.updated_time == datetime(2025, 1, 10, 1, 0)
        assert ad_group.campaign_id == campaign.id
        assert ad_group.status == "PAUSED"
        assert ad.ad_group_id == ad_group.id
        assert ad.creative_id == creative.id
        assert creative.thumbnail_url == "https://img/1.jpg"
        assert account.amount_spent == Decimal("1234.56")
        assert account.entities_synced_at is not None

    def test_vnd_account_budget(self, test_db_session, factory, tenant, fake_client_cls):
        account = factory.account(tenant["identity"], name="VN", currency="VND")
        client = _upstream(fake_client_cls, account={"currency": "VND"})

        svc.sync_account_entities(test_db_session, account, client)

        assert test_db_session.query(Campaign).filter_by(platform_account_id=account.id).one().daily_budget == Decimal("250000.00")

    def test_rerun_preserves_internal_ids(self, test_db_session, tenant, fake_client_cls):
        account = tenant["account"]
        svc.sync_account_entities(test_db_session, account, _upstream(fake_client_cls))
        first_ids = {m: test_db_session.query(m.id).scalar() for m in (Campaign, AdGroup, Ad, Creative)}

        renamed = _upstream(fake_client_cls, campaigns=[
            {"id": "c1", "name": "Spring Sale v2", "status": "PAUSED", "daily_budget": "300000"},
        ])
        svc.sync_account_entities(test_db_session, account, renamed, force_full=True)
        test_db_session.expire_all()

        for model, internal_id in first_ids.items():
            assert test_db_session.query(model).count() == 1
            assert test_db_session.query(model.id).scalar() == internal_id
        campaign = test_db_session.query(Campaign).one()
        assert campaign.name == "Spring Sale v2"
        assert campaign.status == "PAUSED"

    def test_orphans_are_skipped(self, test_db_session, tenant, fake_client_cls):
        client = _upstream(
            fake_client_cls,
            adsets=[
                {"id": "as1", "name": "ok", "campaign_id": "c1", "status": "ACTIVE"},
                {"id": "as2", "name": "orphan", "campaign_id": "c-missing", "status": "ACTIVE"},
            ],
            ads=[
                {"id": "ad1", "name": "ok", "adset_id": "as1", "status": "ACTIVE"},
                {"id": "ad2", "name": "orphan", "adset_id": "as-missing", "status": "ACTIVE"},
            ],
            creatives={},
        )

        result = svc.sync_account_entities(test_db_session, tenant["account"], client)

        assert result.skipped == 2
        assert result.success
        assert [a.external_id for a in test_db_session.query(AdGroup).all()] == ["as1"]
        assert [a.external_id for a in test_db_session.query(Ad).all()] == ["ad1"]

    def test_incremental_pass_uses_cursor(self, test_db_session, tenant, fake_client_cls):
        account = tenant["account"]
        account.entities_synced_at = datetime(2025, 1, 1, 0, 0)
        test_db_session.commit()
        client = _upstream(fake_client_cls)

        svc.sync_account_entities(test_db_session, account, client)

        assert ("campaigns", "1001", 1735689600) in client.calls
        assert account.entities_synced_at > datetime(2025, 1, 1)

    def test_partial_pass_keeps_cursor(self, test_db_session, tenant, fake_client_cls):
        account = tenant["account"]
        svc.sync_account_entities(test_db_session, account, _upstream(fake_client_cls), ads=False)

        assert account.entities_synced_at is None
        assert test_db_session.query(Ad).count() == 0

    def test_auth_error_propagates(self, test_db_session, tenant, fake_client_cls):
        client = fake_client_cls(fail_with=AuthError("Authentication failed: expired", status_code=401))
        with pytest.raises(AuthError):
            svc.sync_account_entities(test_db_session, tenant["account"], client)


class TestSelfHeal:

    def test_fetch_and_insert_ad(self, test_db_session, factory, tenant, fake_client_cls):
        account = tenant["account"]
        hierarchy = factory.hierarchy(account, ad_external_ids=())
        client = fake_client_cls(ad_details={
            "ad9": {"id": "ad9", "name": "Late Ad", "adset_id": "as1", "status": "ACTIVE"},
        })

        ad_id = svc.fetch_and_insert_ad(
            test_db_session, client, account, "ad9", {"as1": hierarchy["ad_group"].id},
        )

        ad = test_db_session.get(Ad, ad_id)
        assert ad.external_id == "ad9"
        assert ad.ad_group_id == hierarchy["ad_group"].id

"""Tests for the lead attribution backfill.

WHAT:
    backfill_lead_attribution against a fake messaging API: conversation
    referral, first-message referral, ad title fallback, organic leads.

WHY:
    Only unattributed leads of the target day may be touched, matches must
    stay inside the tenant, and one failing lookup must not stop the run.
"""

from datetime import date, datetime

import pytest

from adsync.models import Lead
from adsync.services import lead_attribution_service as svc
from adsync.services.ads_api_client import AuthError, TransientUpstreamError

TARGET = date(2025, 1, 15)
PAGES = [{"id": "page1", "name": "IELTS Center", "access_token": "page-token"}]


def _conversation(conv_id, customer_id, referral=None):
    conversation = {
        "id": conv_id,
        "snippet": "Xin chào",
        "participants": {"data": [{"id": customer_id}, {"id": "page1"}]},
    }
    if referral:
        conversation["referral"] = referral
    return conversation


class TestHelpers:

    def test_extract_referral_ad_id(self):
        assert svc.extract_referral_ad_id({"ad_id": "123"}) == "123"
        assert svc.extract_referral_ad_id({"ads_context_data": {"ad_id": 456}}) == "456"
        assert svc.extract_referral_ad_id({"source": "SHORTLINK"}) is None
        assert svc.extract_referral_ad_id(None) is None

    def test_title_keywords(self):
        assert svc.title_keywords("🔥 Khóa học IELTS online - khai giảng!") == ["Khóa", "IELTS", "online"]
        assert svc.title_keywords("Hi to all") == []
        assert svc.title_pattern("IELTS online khai giảng") == "%IELTS%online%khai%"
        assert svc.title_pattern(None) is None


class TestBackfill:

    @pytest.fixture
    def setup(self, test_db_session, factory, tenant):
        account = tenant["account"]
        hierarchy = factory.hierarchy(account, ad_external_ids=("ad1",))
        factory.ad(hierarchy["ad_group"], external_id="ad-title", name="Khóa học IELTS online khai giảng T1")

        other_user = factory.user(name="Tenant B")
        other_account = factory.account(factory.identity(other_user), name="B")
        factory.hierarchy(other_account, ad_external_ids=("ad-other",))

        user = tenant["user"]
        leads = {
            "referral": factory.lead(user, "cust1"),
            "message": factory.lead(user, "cust2"),
            "title": factory.lead(user, "cust3", metadata={"ad_title": "IELTS online khai giảng"}),
            "organic": factory.lead(user, "cust4"),
            "foreign": factory.lead(user, "cust5"),
            "missing": factory.lead(user, "cust6"),
            "no_token": factory.lead(user, "cust7", page_id="page-unknown"),
            "other_day": factory.lead(user, "cust8", last_message_at=datetime(2025, 1, 13, 10, 0)),
        }
        done = factory.lead(user, "cust9")
        done.source_ad_external_id = "ad1"
        test_db_session.commit()
        leads["done"] = done
        return {"account": account, "ads": hierarchy["ads"], "leads": leads, "user": user}

    def _client(self, fake_client_cls, **overrides):
        options = dict(
            pages=PAGES,
            conversations={
                "cust1": [_conversation("conv1", "cust1", referral={"ad_id": "ad1", "source": "ADS"})],
                "cust3": [_conversation("conv3", "cust3")],
                "cust4": [_conversation("conv4", "cust4")],
                "cust5": [_conversation("conv5", "cust5", referral={"ad_id": "ad-other"})],
            },
            recent_conversations=[_conversation("conv2", "cust2")],
            messages={"conv2": [{"id": "m1", "referral": {"ads_context_data": {"ad_id": "ad-external-x"}}}]},
        )
        options.update(overrides)
        return fake_client_cls(**options)

    def test_attributes_by_each_source(self, test_db_session, setup, fake_client_cls):
        sleeps = []
        result = svc.backfill_lead_attribution(
            test_db_session, setup["user"].id, self._client(fake_client_cls), TARGET, sleep=sleeps.append,
        )
        leads = setup["leads"]
        for lead in leads.values():
            test_db_session.refresh(lead)

        assert (result.checked, result.attributed, result.organic, result.skipped, result.errors) == (6, 4, 1, 1, 0)
        assert len(sleeps) == 6

        assert leads["referral"].source_ad_id == setup["ads"]["ad1"].id
        assert leads["referral"].platform_account_id == setup["account"].id
        assert leads["referral"].is_qualified is True
        assert "qualified_at" in leads["referral"].lead_metadata
        assert leads["referral"].platform_data["fb_conv_id"] == "conv1"
        assert leads["referral"].platform_data["fb_page_name"] == "IELTS Center"

        assert leads["message"].source_ad_external_id == "ad-external-x"
        assert leads["message"].source_ad_id is None

        assert leads["title"].source_ad_external_id == "ad-title"

        assert leads["organic"].source_ad_external_id is None
        assert leads["organic"].platform_data["fb_conv_id"] == "conv4"

        # Ad of another tenant: external id recorded, never linked
        assert leads["foreign"].source_ad_external_id == "ad-other"
        assert leads["foreign"].source_ad_id is None

        assert leads["missing"].platform_data is None
        assert leads["no_token"].platform_data is None
        assert leads["other_day"].platform_data is None
        assert leads["done"].platform_data is None

    def test_rerun_skips_attributed_leads(self, test_db_session, setup, fake_client_cls):
        svc.backfill_lead_attribution(test_db_session, setup["user"].id, self._client(fake_client_cls), TARGET,
                                      sleep=lambda s: None)
        second = svc.backfill_lead_attribution(test_db_session, setup["user"].id, self._client(fake_client_cls),
                                               TARGET, sleep=lambda s: None)

        # organic + missing are still unattributed, no_token is skipped again
        assert (second.checked, second.attributed, second.skipped) == (2, 0, 1)

    def test_lookup_failure_is_counted(self, test_db_session, setup, fake_client_cls):
        client = self._client(fake_client_cls)
        client.conversations["cust1"] = TransientUpstreamError("Upstream temporarily unavailable")

        result = svc.backfill_lead_attribution(test_db_session, setup["user"].id, client, TARGET, sleep=lambda s: None)

        assert result.errors == 1
        assert result.attributed == 3
        assert not result.success
        assert test_db_session.get(Lead, setup["leads"]["referral"].id).source_ad_external_id is None

    def test_auth_error_aborts(self, test_db_session, setup, fake_client_cls):
        client = fake_client_cls(fail_with=AuthError("Authentication failed: expired", status_code=401))
        with pytest.raises(AuthError):
            svc.backfill_lead_attribution(test_db_session, setup["user"].id, client, TARGET, sleep=lambda s: None)

    def test_no_leads_skips_upstream(self, test_db_session, tenant, fake_client_cls):
        client = fake_client_cls()
        result = svc.backfill_lead_attribution(test_db_session, tenant["user"].id, client, TARGET)
        assert result.checked == 0
        assert client.calls == []

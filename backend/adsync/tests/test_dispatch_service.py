"""Tests for the hourly dispatcher.

WHAT:
    plan_sync flag table, schedule loading with hour gating, branch
    auto-assignment and full dispatch ticks over two tenants.

WHY:
    The dispatcher is the only scheduled entry point. A broken tenant or
    account must never stop the others, and each branch must be rolled up
    once per tick after all of its accounts finished.

REFERENCES:
    adsync/services/dispatch_service.py
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from adsync.models import Account, BranchDailyStat, Insight
from adsync.services import dispatch_service as svc
from adsync.services.sync_errors import MissingCredentialError

# 08:00 local (+7) on 2025-01-15
NOW = datetime(2025, 1, 15, 1, 0, tzinfo=timezone.utc)


class TestPlanSync:

    @pytest.mark.parametrize("types,expected", [
        (["full"], dict(structure=True, ads=True, daily=True, hourly=False, leads=False, report=True)),
        (["insight"], dict(structure=False, ads=False, daily=True, hourly=True, leads=False, report=True)),
        (["insight_daily"], dict(structure=False, ads=False, daily=True, hourly=False, leads=False, report=True)),
        (["insight_hour"], dict(structure=False, ads=False, daily=False, hourly=True, leads=False, report=True)),
        (["campaign"], dict(structure=True, ads=False, daily=False, hourly=False, leads=False, report=False)),
        (["ads"], dict(structure=False, ads=True, daily=False, hourly=False, leads=False, report=False)),
        (["lead_attribution"], dict(structure=False, ads=False, daily=False, hourly=False, leads=True, report=False)),
    ])
    def test_flag_table(self, types, expected):
        plan = svc.plan_sync(types)
        assert {k: getattr(plan, k) for k in expected} == expected

    def test_breakdown_types(self):
        plan = svc.plan_sync(["insight_region", "insight_device", "insight_placement"])
        assert plan.breakdowns == ["device", "region"]
        assert plan.syncs_insights
        assert not plan.report

    def test_placement_alone_has_no_work(self):
        assert not svc.plan_sync(["insight_placement"]).has_work

    def test_union_of_types(self):
        plan = svc.plan_sync(["campaign", "insight_hour"])
        assert plan.structure and plan.hourly
        assert not plan.daily


class TestScheduling:

    def test_hour_gating(self, test_db_session, factory):
        a = factory.user(name="A")
        b = factory.user(name="B")
        factory.cron(a, "full", [8, 20])
        factory.cron(a, "insight_hour", [9])
        factory.cron(b, "insight", [8], enabled=False)

        assert svc.load_due_types(test_db_session, 8) == {a.id: {"full"}}
        assert svc.load_due_types(test_db_session, 9) == {a.id: {"insight_hour"}}
        assert svc.load_due_types(test_db_session, 10) == {}

    def test_force_ignores_hours(self, test_db_session, factory):
        a = factory.user(name="A")
        factory.cron(a, "full", [8])
        factory.cron(a, "insight", [20])

        assert svc.load_due_types(test_db_session, 3, force=True) == {a.id: {"full", "insight"}}
        assert svc.load_due_types(test_db_session, 3, force=True, cron_type="insight") == {a.id: {"insight"}}

    def test_forced_user_and_type_without_schedule(self, test_db_session, factory):
        a = factory.user(name="A")
        assert svc.load_due_types(test_db_session, 3, force=True, cron_type="campaign", user_id=a.id) == {
            a.id: {"campaign"},
        }
        # Without force an unscheduled tenant stays idle
        assert svc.load_due_types(test_db_session, 3, cron_type="campaign", user_id=a.id) == {}


class TestBranchAssignment:

    def test_keyword_match_is_case_insensitive(self, factory):
        user = factory.user()
        hanoi = factory.branch(user, name="Hanoi", code="HN", keywords=["hanoi", "HN-"])
        saigon = factory.branch(user, name="Saigon", code="SG", keywords=["hcm"])
        identity = factory.identity(user)

        assert svc.auto_assign_branch(factory.account(identity, name="ACME HANOI 01"), [hanoi, saigon]) is hanoi
        assert svc.auto_assign_branch(factory.account(identity, name="acme-hcm"), [hanoi, saigon]) is saigon
        assert svc.auto_assign_branch(factory.account(identity, name="Danang"), [hanoi, saigon]) is None

    def test_assign_unmapped_accounts_keeps_existing(self, test_db_session, factory, tenant):
        other = factory.branch(tenant["user"], name="Saigon", code="SG", keywords=["account"])
        unmapped = factory.account(tenant["identity"], name="Saigon Account")

        assigned = svc.assign_unmapped_accounts(test_db_session, tenant["user"].id, [tenant["account"], unmapped])

        assert assigned == 1
        assert unmapped.branch_id == other.id
        assert tenant["account"].branch_id == tenant["branch"].id


class TestDispatch:

    @pytest.fixture
    def two_tenants(self, factory, tenant):
        """Tenant A ("full" at 8, credential broken) and tenant B ("insight" at 8)."""
        a = tenant
        factory.cron(a["user"], "full", [8])

        b_user = factory.user(name="Tenant B")
        b_identity = factory.identity(b_user)
        b_branch = factory.branch(b_user, name="Saigon", code="SG", keywords=["saigon"])
        b_account = factory.account(b_identity, name="Saigon Ads", external_id="2002")
        factory.account(b_identity, name="Saigon Disabled", external_id="2003", account_status="DISABLED")
        factory.hierarchy(b_account)
        factory.cron(b_user, "insight", [8])

        c_user = factory.user(name="Tenant C")
        factory.cron(c_user, "full", [9])

        return {"a": a, "b": {"user": b_user, "branch": b_branch, "account": b_account}, "c": c_user}

    def _client_factory(self, fake_client_cls, make_insight_row, opened):
        def client_factory(db, account):
            opened.append(account.external_id)
            if account.external_id == "1001":
                raise MissingCredentialError(f"No active credential for account {account.id}")
            return fake_client_cls(insights={None: [make_insight_row("ad1", "2025-01-15", spend="10")]})
        return client_factory

    def test_tenants_are_isolated(self, session_factory, test_db_session, two_tenants, fake_client_cls, make_insight_row):
        opened, reports = [], []

        result = svc.dispatch(
            session_factory,
            now=NOW,
            client_factory=self._client_factory(fake_client_cls, make_insight_row, opened),
            notifier=lambda db, user_id, text: reports.append((user_id, text)) or 1,
            lead_backfill=lambda db, user_id, target: pytest.fail("leads not scheduled"),
            max_workers=1,
        )

        tenants = {t.user_id: t for t in result.tenants}
        a, b = tenants[two_tenants["a"]["user"].id], tenants[two_tenants["b"]["user"].id]

        assert result.hour == 8
        assert (result.date_start, result.date_end) == (date(2025, 1, 14), date(2025, 1, 15))
        assert result.dispatched == 2
        assert two_tenants["c"].id not in tenants
        assert not result.success

        assert a.error_count == 1
        assert "No active credential" in a.errors[0]
        # A's rollup still ran after its account failed
        assert a.branches_aggregated == [two_tenants["a"]["branch"].id]

        assert b.success
        assert b.accounts == 1
        assert b.items == 1
        assert b.branches_aggregated == [two_tenants["b"]["branch"].id]
        # Disabled account never got a client
        assert "2003" not in opened

        assert test_db_session.query(Insight).count() == 1
        stat = (
            test_db_session.query(BranchDailyStat)
            .filter_by(branch_id=two_tenants["b"]["branch"].id, date=date(2025, 1, 15))
            .one()
        )
        assert stat.total_spend == Decimal("10")
        assert {user_id for user_id, _ in reports} == {a.user_id, b.user_id}

    def test_branch_auto_assigned_during_tick(self, session_factory, test_db_session, two_tenants,
                                              fake_client_cls, make_insight_row):
        b_account = two_tenants["b"]["account"]
        assert b_account.branch_id is None

        svc.dispatch(
            session_factory,
            now=NOW,
            user_id=two_tenants["b"]["user"].id,
            client_factory=self._client_factory(fake_client_cls, make_insight_row, []),
            notifier=lambda db, user_id, text: 0,
            max_workers=1,
        )

        test_db_session.expire_all()
        assert test_db_session.get(Account, b_account.id).branch_id == two_tenants["b"]["branch"].id

    def test_nothing_due_outside_hours(self, session_factory, two_tenants):
        result = svc.dispatch(session_factory, now=datetime(2025, 1, 15, 5, 0, tzinfo=timezone.utc))
        assert result.hour == 12
        assert result.tenants == []
        assert result.success

    def test_lead_attribution_only(self, session_factory, factory):
        user = factory.user()
        factory.cron(user, "lead_attribution", [8])
        calls, reports = [], []

        result = svc.dispatch(
            session_factory,
            now=NOW,
            date_start=date(2025, 1, 10),
            date_end=date(2025, 1, 12),
            lead_backfill=lambda db, user_id, target: calls.append((user_id, target)),
            notifier=lambda db, user_id, text: reports.append(user_id),
            client_factory=lambda db, account: pytest.fail("no account sync expected"),
        )

        assert calls == [(user.id, date(2025, 1, 12))]
        assert reports == []
        assert result.tenants[0].success

    def test_forced_run_for_unscheduled_tenant(self, session_factory, tenant, fake_client_cls):
        opened = []

        def client_factory(db, account):
            opened.append(account.external_id)
            return fake_client_cls()

        result = svc.dispatch(
            session_factory,
            now=NOW,
            cron_type="campaign",
            user_id=tenant["user"].id,
            force=True,
            client_factory=client_factory,
            notifier=lambda db, user_id, text: pytest.fail("campaign runs do not report"),
            max_workers=1,
        )

        assert result.dispatched == 1
        assert opened == ["1001"]
        # Structure-only runs don't touch rollups
        assert result.tenants[0].branches_aggregated == []

    def test_sync_account_never_raises(self, session_factory, tenant):
        def broken_factory(db, account):
            raise RuntimeError("boom")

        outcome = svc.sync_account(
            session_factory, tenant["account"].id, svc.plan_sync(["full"]),
            date(2025, 1, 14), date(2025, 1, 15), client_factory=broken_factory,
        )

        assert not outcome.success
        assert "boom" in outcome.errors[0]

"""Dispatch Service - hourly fan-out of scheduled syncs.

WHAT:
    Once per tick, decides which tenants have a sync due this local hour,
    which work each tenant needs, and runs it:

        CronSettings due now -> per tenant:
            auto-assign branches -> per account (thread pool):
                entity sync -> daily/hourly insights -> breakdowns
            -> branch rollups (once per branch) -> lead backfill -> report

WHY:
    - Tenants are isolated: one tenant's failure is recorded and the next
      tenant still runs.
    - Accounts are isolated: each runs on its own session in a bounded pool;
      a failing account is counted and its siblings and the branch rollups
      still run.
    - Branch rollups are deferred until every account of the tenant has
      finished, so a branch is aggregated exactly once per tick.
    - Nothing lives in memory between ticks: schedules are reloaded each tick
      and progress is persisted as timestamps, so a crashed tick is simply
      redone by the next one (all writes are upserts).

FLAG TABLE (sync type -> work):
    structure   full, campaign, adset, ad_account
    ads         full, ads, creative
    daily       full, insight, insight_daily
    hourly      insight, insight_hourly, insight_hour
    breakdowns  insight_device, insight_age_gender, insight_region
                (insight_placement is accepted but fetches nothing)
    leads       lead_attribution
    report      full, insight, insight_daily, insight_hourly, insight_hour

REFERENCES:
    - adsync/workers/arq_worker.py (hourly cron)
    - adsync/routers/sync.py (POST /sync/dispatch)
"""

from __future__ import annotations

import argparse
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set
from uuid import UUID

from sqlalchemy.orm import Session

from adsync.database import SessionLocal
from adsync.deps import get_settings
from adsync.models import Account, AccountStatusEnum, Branch, CronSetting, PlatformIdentity
from adsync.services.ads_api_client import AdsApiClient
from adsync.services.branch_stats_service import aggregate_branch_range
from adsync.services.credentials import client_for_account
from adsync.services.cron_settings_service import is_due
from adsync.services.entity_sync_service import sync_account_entities
from adsync.services.insight_sync_service import sync_account_insights
from adsync.services.lead_attribution_service import backfill_for_user
from adsync.services.notification_service import format_dispatch_summary, notify_tenant
from adsync.telemetry import capture_exception, capture_message
from adsync.utils.dates import default_range, local_hour, parse_date

logger = logging.getLogger(__name__)

STRUCTURE_TYPES = {"full", "campaign", "adset", "ad_account"}
ADS_TYPES = {"full", "ads", "creative"}
DAILY_TYPES = {"full", "insight", "insight_daily"}
HOURLY_TYPES = {"insight", "insight_hourly", "insight_hour"}
LEAD_TYPES = {"lead_attribution"}
REPORT_TYPES = {"full", "insight", "insight_daily", "insight_hourly", "insight_hour"}
BREAKDOWN_TYPES = {
    "insight_device": "device",
    "insight_age_gender": "age_gender",
    "insight_region": "region",
}

ClientFactory = Callable[[Session, Account], AdsApiClient]


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class SyncPlan:
    """Work flags derived from the union of a tenant's due sync types."""
    structure: bool = False
    ads: bool = False
    daily: bool = False
    hourly: bool = False
    breakdowns: List[str] = field(default_factory=list)
    leads: bool = False
    report: bool = False

    @property
    def syncs_entities(self) -> bool:
        return self.structure or self.ads

    @property
    def syncs_insights(self) -> bool:
        return self.daily or self.hourly or bool(self.breakdowns)

    @property
    def has_work(self) -> bool:
        return self.syncs_entities or self.syncs_insights or self.leads


@dataclass
class AccountSyncOutcome:
    account_id: UUID
    items: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class TenantDispatchResult:
    user_id: UUID
    types: List[str]
    date_start: date
    date_end: date
    accounts: int = 0
    items: int = 0
    error_count: int = 0
    errors: List[str] = field(default_factory=list)
    branches_aggregated: List[UUID] = field(default_factory=list)
    leads_attributed: int = 0
    skipped: bool = False

    @property
    def success(self) -> bool:
        return self.error_count == 0

    def add_error(self, message: str) -> None:
        self.error_count += 1
        self.errors.append(message)


@dataclass
class DispatchResult:
    hour: int
    date_start: date
    date_end: date
    dispatched: int = 0
    tenants: List[TenantDispatchResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors and all(t.success for t in self.tenants)


# =============================================================================
# PLANNING
# =============================================================================

def plan_sync(types: Iterable[str]) -> SyncPlan:
    """Map a set of sync types onto work flags (see FLAG TABLE above)."""
    requested = set(types)
    return SyncPlan(
        structure=bool(requested & STRUCTURE_TYPES),
        ads=bool(requested & ADS_TYPES),
        daily=bool(requested & DAILY_TYPES),
        hourly=bool(requested & HOURLY_TYPES),
        breakdowns=[BREAKDOWN_TYPES[t] for t in sorted(requested) if t in BREAKDOWN_TYPES],
        leads=bool(requested & LEAD_TYPES),
        report=bool(requested & REPORT_TYPES),
    )


def load_due_types(
    db: Session,
    hour: int,
    force: bool = False,
    cron_type: Optional[str] = None,
    user_id: Optional[UUID] = None,
) -> Dict[UUID, Set[str]]:
    """Due sync types per tenant for a local hour.

    `force` skips the hour check. A forced run naming both a tenant and a
    type runs even when that tenant has no schedule for it.
    """
    query = db.query(CronSetting).filter(CronSetting.enabled.is_(True))
    if cron_type:
        query = query.filter(CronSetting.cron_type == cron_type)
    if user_id:
        query = query.filter(CronSetting.user_id == user_id)

    due: Dict[UUID, Set[str]] = {}
    for setting in query.all():
        if force or is_due(setting, hour):
            due.setdefault(setting.user_id, set()).add(setting.cron_type)

    if force and cron_type and user_id and user_id not in due:
        due[user_id] = {cron_type}
    return due


def auto_assign_branch(account: Account, branches: Sequence[Branch]) -> Optional[Branch]:
    """First branch with a keyword contained in the account name (case-insensitive)."""
    name = (account.name or "").lower()
    for branch in branches:
        for keyword in branch.auto_match_keywords or []:
            if keyword and str(keyword).lower() in name:
                return branch
    return None


def assign_unmapped_accounts(db: Session, user_id: UUID, accounts: Sequence[Account]) -> int:
    """Assign branch-less accounts by keyword. Returns accounts assigned."""
    unmapped = [a for a in accounts if a.branch_id is None]
    if not unmapped:
        return 0

    branches = db.query(Branch).filter(Branch.user_id == user_id).order_by(Branch.created_at, Branch.name).all()
    assigned = 0
    for account in unmapped:
        branch = auto_assign_branch(account, branches)
        if branch is not None:
            account.branch_id = branch.id
            assigned += 1
            logger.info("[DISPATCH] Auto-assigned account %s (%s) to branch %s", account.id, account.name, branch.code)
    if assigned:
        db.commit()
    return assigned


def active_accounts(db: Session, user_id: UUID) -> List[Account]:
    return (
        db.query(Account)
        .join(PlatformIdentity, Account.identity_id == PlatformIdentity.id)
        .filter(
            PlatformIdentity.user_id == user_id,
            Account.account_status == AccountStatusEnum.active.value,
        )
        .order_by(Account.name)
        .all()
    )


# =============================================================================
# PER-ACCOUNT WORK
# =============================================================================

def sync_account(
    session_factory: Callable[[], Session],
    account_id: UUID,
    plan: SyncPlan,
    date_start: date,
    date_end: date,
    client_factory: ClientFactory = client_for_account,
    skip_branch_aggregation: bool = True,
    now: Optional[datetime] = None,
) -> AccountSyncOutcome:
    """Run the planned work for one account on its own session.

    Never raises: failures land in the outcome's error list.
    """
    outcome = AccountSyncOutcome(account_id=account_id)
    db = session_factory()
    try:
        account = db.get(Account, account_id)
        if account is None:
            outcome.errors.append(f"Account {account_id} not found")
            return outcome

        with client_factory(db, account) as client:
            if plan.syncs_entities:
                entities = sync_account_entities(db, account, client, structure=plan.structure, ads=plan.ads)
                outcome.items += entities.campaigns + entities.ad_groups + entities.ads + entities.creatives
                outcome.errors.extend(entities.errors)

            if plan.syncs_insights:
                insights = sync_account_insights(
                    db,
                    account,
                    client,
                    date_start,
                    date_end,
                    daily=plan.daily,
                    hourly=plan.hourly,
                    breakdowns=plan.breakdowns,
                    skip_branch_aggregation=skip_branch_aggregation,
                    now=now,
                )
                outcome.items += insights.items
                outcome.errors.extend(insights.errors)

    except Exception as e:
        db.rollback()
        logger.error("[DISPATCH] Account %s failed: %s", account_id, e)
        capture_exception(e, extra={"operation": "dispatch_account", "account_id": str(account_id)})
        outcome.errors.append(f"Account {account_id}: {e}")
    finally:
        db.close()

    return outcome


def _run_accounts(
    session_factory: Callable[[], Session],
    account_ids: List[UUID],
    plan: SyncPlan,
    date_start: date,
    date_end: date,
    client_factory: ClientFactory,
    max_workers: int,
    now: Optional[datetime],
) -> List[AccountSyncOutcome]:
    outcomes: List[AccountSyncOutcome] = []

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        futures = {
            executor.submit(
                sync_account, session_factory, account_id, plan, date_start, date_end, client_factory, True, now,
            ): account_id
            for account_id in account_ids
        }
        for future in as_completed(futures):
            account_id = futures[future]
            try:
                outcomes.append(future.result())
            except Exception as e:
                logger.error("[DISPATCH] Future failed for account %s: %s", account_id, e)
                outcomes.append(AccountSyncOutcome(account_id=account_id, errors=[str(e)]))

    return outcomes


# =============================================================================
# PER-TENANT WORK
# =============================================================================

def dispatch_tenant(
    session_factory: Callable[[], Session],
    user_id: UUID,
    types: Iterable[str],
    date_start: date,
    date_end: date,
    client_factory: ClientFactory = client_for_account,
    notifier: Callable[[Session, UUID, str], int] = notify_tenant,
    lead_backfill: Callable[..., object] = backfill_for_user,
    max_workers: Optional[int] = None,
    now: Optional[datetime] = None,
) -> TenantDispatchResult:
    """Run one tenant's due work. Errors are collected, not raised."""
    types = sorted(set(types))
    plan = plan_sync(types)
    result = TenantDispatchResult(user_id=user_id, types=types, date_start=date_start, date_end=date_end)

    if not plan.has_work:
        logger.info("[DISPATCH] User %s: nothing to do for %s", user_id, types)
        result.skipped = True
        return result

    workers = max_workers or get_settings().ACCOUNT_SYNC_CONCURRENCY
    db = session_factory()
    try:
        accounts = active_accounts(db, user_id)
        assign_unmapped_accounts(db, user_id, accounts)
        result.accounts = len(accounts)
        branch_ids = sorted({a.branch_id for a in accounts if a.branch_id}, key=str)
        account_ids = [a.id for a in accounts]

        logger.info(
            "[DISPATCH] User %s: %d accounts, types=%s, plan=%s",
            user_id, len(accounts), types, plan,
        )

        if account_ids and (plan.syncs_entities or plan.syncs_insights):
            outcomes = _run_accounts(
                session_factory, account_ids, plan, date_start, date_end, client_factory, workers, now,
            )
            for outcome in outcomes:
                result.items += outcome.items
                for error in outcome.errors:
                    result.add_error(error)

        if plan.syncs_insights:
            for branch_id in branch_ids:
                try:
                    aggregate_branch_range(db, branch_id, date_start, date_end)
                    result.branches_aggregated.append(branch_id)
                except Exception as e:
                    db.rollback()
                    logger.error("[DISPATCH] Branch %s aggregation failed: %s", branch_id, e)
                    capture_exception(e, extra={"operation": "aggregate_branch", "branch_id": str(branch_id)})
                    result.add_error(f"Branch {branch_id} aggregation: {e}")

        if plan.leads:
            try:
                attribution = lead_backfill(db, user_id, date_end)
                result.leads_attributed = getattr(attribution, "attributed", 0)
            except Exception as e:
                db.rollback()
                logger.error("[DISPATCH] Lead attribution failed for user %s: %s", user_id, e)
                capture_exception(e, extra={"operation": "lead_attribution", "user_id": str(user_id)})
                result.add_error(f"Lead attribution: {e}")

        if plan.report:
            try:
                notifier(db, user_id, format_dispatch_summary(result, now))
            except Exception as e:
                logger.error("[DISPATCH] Report delivery failed for user %s: %s", user_id, e)
                capture_exception(e, extra={"operation": "telegram_report", "user_id": str(user_id)})
    finally:
        db.close()

    logger.info(
        "[DISPATCH] User %s done: accounts=%d items=%d errors=%d branches=%d",
        user_id, result.accounts, result.items, result.error_count, len(result.branches_aggregated),
    )
    return result


# =============================================================================
# ENTRY POINT
# =============================================================================

def dispatch(
    session_factory: Callable[[], Session] = SessionLocal,
    *,
    date_start: Optional[date] = None,
    date_end: Optional[date] = None,
    cron_type: Optional[str] = None,
    user_id: Optional[UUID] = None,
    force: bool = False,
    now: Optional[datetime] = None,
    client_factory: ClientFactory = client_for_account,
    notifier: Callable[[Session, UUID, str], int] = notify_tenant,
    lead_backfill: Callable[..., object] = backfill_for_user,
    max_workers: Optional[int] = None,
) -> DispatchResult:
    """Run every sync due at the current local hour.

    Args:
        session_factory: Creates independent sessions (one per account task)
        date_start/date_end: Override the default local yesterday .. today
        cron_type: Only consider schedules of this sync type
        user_id: Only consider this tenant
        force: Ignore hour gating
        now: Clock override (UTC)

    Returns:
        DispatchResult with one TenantDispatchResult per due tenant
    """
    settings = get_settings()
    hour = local_hour(settings.LOCAL_UTC_OFFSET_HOURS, now)
    default_start, default_end = default_range(settings.LOCAL_UTC_OFFSET_HOURS, now)
    date_start = date_start or default_start
    date_end = date_end or default_end
    result = DispatchResult(hour=hour, date_start=date_start, date_end=date_end)

    logger.info(
        "[DISPATCH] Tick for local hour %d (range %s..%s, type=%s, user=%s, force=%s)",
        hour, date_start, date_end, cron_type, user_id, force,
    )

    db = session_factory()
    try:
        due = load_due_types(db, hour, force=force, cron_type=cron_type, user_id=user_id)
    except Exception as e:
        logger.error("[DISPATCH] Loading schedules failed: %s", e)
        capture_exception(e, extra={"operation": "load_cron_settings"})
        result.errors.append(f"Loading schedules: {e}")
        return result
    finally:
        db.close()

    for tenant_id, types in due.items():
        try:
            tenant_result = dispatch_tenant(
                session_factory,
                tenant_id,
                types,
                date_start,
                date_end,
                client_factory=client_factory,
                notifier=notifier,
                lead_backfill=lead_backfill,
                max_workers=max_workers,
                now=now,
            )
        except Exception as e:
            logger.error("[DISPATCH] Tenant %s failed: %s", tenant_id, e)
            capture_exception(e, extra={"operation": "dispatch_tenant", "user_id": str(tenant_id)})
            result.errors.append(f"User {tenant_id}: {e}")
            tenant_result = TenantDispatchResult(
                user_id=tenant_id, types=sorted(types), date_start=date_start, date_end=date_end,
            )
            tenant_result.add_error(str(e))

        result.tenants.append(tenant_result)
        if not tenant_result.skipped:
            result.dispatched += 1

    failed = sum(1 for t in result.tenants if not t.success)
    logger.info(
        "[DISPATCH] Tick complete: %d tenants dispatched, %d with errors",
        result.dispatched, failed,
    )
    if failed or result.errors:
        capture_message(
            f"Dispatch tick for hour {hour} finished with errors",
            level="warning",
            extra={"tenants_failed": failed, "errors": result.errors[:20]},
        )
    return result


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Run one dispatch tick")
    parser.add_argument("--start", help="Range start (YYYY-MM-DD)")
    parser.add_argument("--end", help="Range end (YYYY-MM-DD)")
    parser.add_argument("--type", dest="cron_type", help="Only this sync type")
    parser.add_argument("--user", help="Only this tenant id")
    parser.add_argument("--force", action="store_true", help="Ignore hour gating")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    result = dispatch(
        date_start=parse_date(args.start),
        date_end=parse_date(args.end),
        cron_type=args.cron_type,
        user_id=UUID(args.user) if args.user else None,
        force=args.force,
    )
    for tenant in result.tenants:
        print(
            f"{tenant.user_id}: accounts={tenant.accounts} items={tenant.items} "
            f"errors={tenant.error_count} branches={len(tenant.branches_aggregated)}"
        )


if __name__ == "__main__":
    main()

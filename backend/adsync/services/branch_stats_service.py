"""Branch Stats Service - per-branch daily rollups.

WHAT:
    Recomputes BranchDailyStat(branch, date, platform) from the stored daily
    Insight rows of every account currently mapped to the branch.

WHY:
    - Full recompute, never incremental: a rerun over identical facts yields
      the identical row, and an account moving between branches is reflected
      on the next recompute of both branches.
    - Purely derived: nothing here talks to the upstream API.
    - A day without facts is written as zeros so stale totals don't linger.

REFERENCES:
    - adsync/models.py (BranchDailyStat, Insight)
    - adsync/services/dispatch_service.py (aggregates once per branch per tick)
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from adsync.deps import get_settings
from adsync.models import Account, Branch, BranchDailyStat, Insight
from adsync.utils.dates import default_range, iter_days, utcnow
from adsync.utils.upsert import upsert_rows

logger = logging.getLogger(__name__)

DEFAULT_PLATFORM_CODE = "facebook"
STAT_KEY = ("branch_id", "date", "platform_code")


def _branch_account_ids(db: Session, branch_id: UUID) -> List[UUID]:
    return [account_id for (account_id,) in db.query(Account.id).filter(Account.branch_id == branch_id).all()]


def compute_branch_totals(db: Session, branch_id: UUID, day: date) -> Dict[str, object]:
    """Sum the day's Insight rows over the branch's current accounts."""
    account_ids = _branch_account_ids(db, branch_id)
    totals = {
        "total_spend": Decimal("0"),
        "total_impressions": 0,
        "total_clicks": 0,
        "total_reach": 0,
        "total_results": 0,
        "total_messaging": 0,
        "ad_account_count": len(account_ids),
        "ads_count": 0,
    }
    if not account_ids:
        return totals

    row = (
        db.query(
            func.coalesce(func.sum(Insight.spend), 0),
            func.coalesce(func.sum(Insight.impressions), 0),
            func.coalesce(func.sum(Insight.clicks), 0),
            func.coalesce(func.sum(Insight.reach), 0),
            func.coalesce(func.sum(Insight.results), 0),
            func.coalesce(func.sum(Insight.messaging_total), 0),
            func.count(func.distinct(Insight.ad_id)),
        )
        .filter(Insight.platform_account_id.in_(account_ids), Insight.date == day)
        .one()
    )
    spend, impressions, clicks, reach, results, messaging, ads_count = row
    totals.update(
        total_spend=Decimal(str(spend)).quantize(Decimal("0.01")),
        total_impressions=int(impressions),
        total_clicks=int(clicks),
        total_reach=int(reach),
        total_results=int(results),
        total_messaging=int(messaging),
        ads_count=int(ads_count),
    )
    return totals


def aggregate_branch_stats(
    db: Session,
    branch_id: UUID,
    day: date,
    platform_code: str = DEFAULT_PLATFORM_CODE,
    commit: bool = True,
) -> Dict[str, object]:
    """Recompute and replace the stored rollup for one (branch, date).

    Returns:
        The totals written
    """
    totals = compute_branch_totals(db, branch_id, day)
    upsert_rows(
        db,
        BranchDailyStat,
        [{"id": uuid.uuid4(), "branch_id": branch_id, "date": day, "platform_code": platform_code, **totals, "updated_at": utcnow()}],
        STAT_KEY,
    )
    if commit:
        db.commit()

    logger.info(
        "[BRANCH_STATS] Branch %s on %s: spend=%s ads=%d accounts=%d",
        branch_id, day, totals["total_spend"], totals["ads_count"], totals["ad_account_count"],
    )
    return totals


def aggregate_branch_range(
    db: Session,
    branch_id: UUID,
    date_start: date,
    date_end: date,
    platform_code: str = DEFAULT_PLATFORM_CODE,
) -> int:
    """Recompute every day of an inclusive range in one transaction. Returns days written."""
    days = 0
    for day in iter_days(date_start, date_end):
        aggregate_branch_stats(db, branch_id, day, platform_code, commit=False)
        days += 1
    db.commit()
    return days


def rebuild_stats_for_user(
    db: Session,
    user_id: UUID,
    date_start: Optional[date] = None,
    date_end: Optional[date] = None,
) -> Dict[str, int]:
    """Rebuild every branch of a tenant.

    Without a range, every date that has insights for the branch's accounts
    is recomputed.

    Returns:
        {"branches": n, "days": m}
    """
    branches = db.query(Branch).filter(Branch.user_id == user_id).all()
    total_days = 0

    for branch in branches:
        if date_start and date_end:
            total_days += aggregate_branch_range(db, branch.id, date_start, date_end)
            continue

        account_ids = _branch_account_ids(db, branch.id)
        if not account_ids:
            continue
        dates = [
            d for (d,) in (
                db.query(Insight.date)
                .filter(Insight.platform_account_id.in_(account_ids))
                .distinct()
                .order_by(Insight.date)
                .all()
            )
        ]
        for day in dates:
            aggregate_branch_stats(db, branch.id, day, commit=False)
        db.commit()
        total_days += len(dates)

    logger.info("[BRANCH_STATS] Rebuilt %d branches (%d branch-days) for user %s", len(branches), total_days, user_id)
    return {"branches": len(branches), "days": total_days}


def cleanup_old_stats(db: Session, retention_days: Optional[int] = None, today: Optional[date] = None) -> int:
    """Delete rollups older than the retention window. Returns rows deleted."""
    settings = get_settings()
    days = retention_days if retention_days is not None else settings.STATS_RETENTION_DAYS
    cutoff = (today or default_range(settings.LOCAL_UTC_OFFSET_HOURS)[1]) - timedelta(days=days)

    deleted = (
        db.query(BranchDailyStat)
        .filter(BranchDailyStat.date < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted:
        logger.info("[BRANCH_STATS] Cleaned up %d stats rows older than %s", deleted, cutoff)
    return deleted

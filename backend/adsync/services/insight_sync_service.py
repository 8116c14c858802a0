"""Insight Sync Service - daily, hourly and breakdown performance facts.

WHAT:
    Fetches ad-level insights for one account and upserts them keyed by
    (account, ad, date) for daily rows and (account, ad, date, hour) for
    hourly rows. Breakdown rows (device, age/gender, region) hang off the
    daily row of the same (ad, date).

WHY:
    - Upstream can report the same ad/date in several rows (one per campaign
      bucket). Rows are grouped by the stored key and SUMMED before any write,
      otherwise the last row would silently win.
    - "results" follows a configurable priority list of action types; the
      first one present on a row wins (a sum across types double counts).
    - An ad referenced by insights but not stored yet is fetched and inserted
      once per run (self-healing); everything else unresolvable is skipped.
    - Breakdown passes insert missing parent rows but never overwrite existing
      daily facts with breakdown sums.

REFERENCES:
    - adsync/services/entity_sync_service.py (id maps, self-heal insert)
    - adsync/services/branch_stats_service.py (rollup after a run)
    - adsync/utils/upsert.py
"""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy import or_
from sqlalchemy.orm import Session

from adsync.deps import get_settings
from adsync.models import (
    Account,
    Ad,
    AdGroup,
    Campaign,
    HourlyInsight,
    Insight,
    InsightAgeGenderBreakdown,
    InsightDeviceBreakdown,
    InsightRegionBreakdown,
)
from adsync.schemas import DateRange, InsightSyncResponse, InsightSyncStats
from adsync.services.ads_api_client import HOURLY_BREAKDOWN, AdsApiClient, AdsApiError, AuthError
from adsync.services.branch_stats_service import aggregate_branch_range
from adsync.services.credentials import client_for_account
from adsync.services.entity_sync_service import build_id_map, fetch_and_insert_ad
from adsync.services.sync_errors import MappingError, MissingCredentialError
from adsync.telemetry import capture_exception
from adsync.utils.dates import default_range, parse_date, to_naive_utc, utcnow
from adsync.utils.upsert import upsert_in_batches

logger = logging.getLogger(__name__)

DAILY_KEY = ("platform_account_id", "ad_id", "date")
HOURLY_KEY = ("platform_account_id", "ad_id", "date", "hour")

SUMMED_FIELDS = (
    "spend",
    "impressions",
    "clicks",
    "reach",
    "results",
    "messaging_total",
    "messaging_new",
    "purchase_value",
)

SERVING_STATUSES = ("ACTIVE", "IN_PROCESS", "WITH_ISSUES")


# =============================================================================
# DATA CLASSES
# =============================================================================

class InsightSyncResult:
    """Result of an insight sync pass for one account."""

    def __init__(self):
        self.daily_rows = 0
        self.hourly_rows = 0
        self.breakdown_rows = 0
        self.skipped = 0
        self.healed_ads = 0
        self.dates: Set[date] = set()
        self.errors: List[str] = []

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    @property
    def items(self) -> int:
        return self.daily_rows + self.hourly_rows + self.breakdown_rows

    def __repr__(self):
        return (
            f"InsightSyncResult(daily={self.daily_rows}, hourly={self.hourly_rows}, "
            f"breakdowns={self.breakdown_rows}, skipped={self.skipped}, "
            f"healed={self.healed_ads}, errors={len(self.errors)})"
        )


# =============================================================================
# METRIC EXTRACTION
# =============================================================================

def _to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")


def _to_int(value: Any) -> int:
    return int(_to_decimal(value))


def _action_index(actions: Optional[Iterable[Dict[str, Any]]]) -> Dict[str, Decimal]:
    index: Dict[str, Decimal] = {}
    for action in actions or []:
        action_type = action.get("action_type")
        if action_type and action_type not in index:
            index[action_type] = _to_decimal(action.get("value"))
    return index


def extract_action_value(actions: Optional[Iterable[Dict[str, Any]]], action_types: Sequence[str]) -> Decimal:
    """Value of the first action type in `action_types` present on the row (else 0)."""
    index = _action_index(actions)
    for action_type in action_types:
        if action_type in index:
            return index[action_type]
    return Decimal("0")


def extract_results(actions: Optional[Iterable[Dict[str, Any]]], priority: Sequence[str]) -> int:
    """Row "results": value of the highest-priority action type present.

    >>> extract_results([{"action_type": "lead", "value": "3"},
    ...                  {"action_type": "onsite_conversion.messaging_first_reply", "value": "5"}],
    ...                 ["onsite_conversion.messaging_first_reply", "lead"])
    5
    """
    return int(extract_action_value(actions, priority))


def parse_hour(value: Any) -> int:
    """Leading hour of an advertiser-timezone bucket ("14:00:00 - 14:59:59" -> 14)."""
    if value is None:
        raise ValueError("Missing hourly bucket")
    return int(str(value).strip().split(":")[0])


def extract_metrics(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Numeric fields of one upstream insight row."""
    settings = get_settings()
    actions = raw.get("actions") or []
    return {
        "spend": _to_decimal(raw.get("spend")),
        "impressions": _to_int(raw.get("impressions")),
        "clicks": _to_int(raw.get("clicks")),
        "reach": _to_int(raw.get("reach")),
        "results": extract_results(actions, settings.result_action_types),
        "messaging_total": int(extract_action_value(actions, [settings.MESSAGING_TOTAL_ACTION_TYPE])),
        "messaging_new": int(extract_action_value(actions, [settings.MESSAGING_NEW_ACTION_TYPE])),
        "purchase_value": extract_action_value(raw.get("action_values"), settings.purchase_value_action_types),
    }


def _merge_actions(target: Dict[str, str], actions: Optional[Iterable[Dict[str, Any]]]) -> None:
    for action_type, value in _action_index(actions).items():
        target[action_type] = str(_to_decimal(target.get(action_type)) + value)


# =============================================================================
# ID RESOLUTION
# =============================================================================

class EntityResolver:
    """external id -> internal id maps for one account, built once per run.

    Missing ads trigger at most one upstream fetch each (`fetch_and_insert_ad`).
    Only call `resolve` from the thread that owns `db`.
    """

    def __init__(self, db: Session, account: Account, client: Optional[AdsApiClient]):
        self.db = db
        self.account = account
        self.client = client
        self.campaigns = build_id_map(db, Campaign, account.id)
        self.ad_groups = build_id_map(db, AdGroup, account.id)
        self.ads = build_id_map(db, Ad, account.id)
        self.heal_attempted: Set[str] = set()
        self.healed = 0

    def ad_id(self, external_id: str) -> UUID:
        if external_id in self.ads:
            return self.ads[external_id]

        if self.client is None or external_id in self.heal_attempted:
            raise MappingError(f"Ad {external_id} not found locally", external_id=external_id)

        self.heal_attempted.add(external_id)
        try:
            internal_id = fetch_and_insert_ad(self.db, self.client, self.account, external_id, self.ad_groups)
        except AuthError:
            raise
        except AdsApiError as e:
            raise MappingError(f"Ad {external_id} not found locally; fetch failed: {e}", external_id=external_id) from e

        if not internal_id:
            raise MappingError(f"Ad {external_id} could not be inserted", external_id=external_id)
        self.ads[external_id] = internal_id
        self.healed += 1
        return internal_id

    def resolve(self, raw: Dict[str, Any]) -> Tuple[Optional[UUID], Optional[UUID], UUID]:
        """(campaign_id, ad_group_id, ad_id) for an insight row.

        Raises:
            MappingError: the ad can't be resolved (even after self-healing)
        """
        ad_external_id = raw.get("ad_id")
        if not ad_external_id:
            raise MappingError("Insight row without ad_id")
        ad_id = self.ad_id(str(ad_external_id))
        return (
            self.campaigns.get(str(raw.get("campaign_id"))),
            self.ad_groups.get(str(raw.get("adset_id"))),
            ad_id,
        )


def accumulate_rows(
    raw_rows: Iterable[Dict[str, Any]],
    resolver: EntityResolver,
    key_extra: Callable[[Dict[str, Any]], Dict[str, Any]],
    result: InsightSyncResult,
    keep_raw_actions: bool = False,
) -> Dict[tuple, Dict[str, Any]]:
    """Group raw upstream rows by stored key, summing numeric fields.

    The stored key is (account, ad, date) plus whatever `key_extra` returns
    (e.g. {"hour": 14}). Campaign/ad group come from the first row that
    resolves for a key.
    """
    grouped: Dict[tuple, Dict[str, Any]] = {}
    now = utcnow()

    for raw in raw_rows:
        try:
            campaign_id, ad_group_id, ad_id = resolver.resolve(raw)
            row_date = parse_date(raw.get("date_start"))
            if row_date is None:
                raise ValueError("missing date_start")
            extra = key_extra(raw)
        except MappingError as e:
            result.skipped += 1
            logger.warning("[INSIGHT_SYNC] Skipping row: %s", e)
            continue
        except ValueError as e:
            result.skipped += 1
            logger.warning("[INSIGHT_SYNC] Skipping malformed row for ad %s: %s", raw.get("ad_id"), e)
            continue

        key = (resolver.account.id, ad_id, row_date) + tuple(extra.values())
        metrics = extract_metrics(raw)

        if key not in grouped:
            row = {
                "id": uuid.uuid4(),
                "platform_account_id": resolver.account.id,
                "campaign_id": campaign_id,
                "ad_group_id": ad_group_id,
                "ad_id": ad_id,
                "date": row_date,
                **extra,
                **metrics,
                "synced_at": now,
            }
            if keep_raw_actions:
                row["raw_actions"] = {}
            grouped[key] = row
        else:
            row = grouped[key]
            for field in SUMMED_FIELDS:
                if field in metrics:
                    row[field] += metrics[field]

        if keep_raw_actions:
            _merge_actions(row["raw_actions"], raw.get("actions"))
        result.dates.add(row_date)

    return grouped


# =============================================================================
# DAILY
# =============================================================================

def sync_daily_insights(
    db: Session,
    account: Account,
    client: AdsApiClient,
    resolver: EntityResolver,
    date_start: date,
    date_end: date,
    result: InsightSyncResult,
    ad_external_id: Optional[str] = None,
) -> int:
    if ad_external_id:
        raw_rows = client.get_insights(str(ad_external_id), date_start, date_end)
    else:
        raw_rows = client.get_account_insights(account.external_id, date_start, date_end)

    grouped = accumulate_rows(raw_rows, resolver, lambda raw: {}, result, keep_raw_actions=True)
    if len(grouped) < len(raw_rows):
        logger.info(
            "[INSIGHT_SYNC] Account %s: %d raw daily rows -> %d stored rows",
            account.id, len(raw_rows), len(grouped),
        )

    written, errors = upsert_in_batches(db, Insight, list(grouped.values()), DAILY_KEY)
    result.daily_rows += written
    result.errors.extend(str(e) for e in errors)
    return written


# =============================================================================
# HOURLY
# =============================================================================

def clamp_hourly_range(
    date_start: date,
    date_end: date,
    offset_hours: int,
    now: Optional[datetime] = None,
) -> Optional[Tuple[date, date]]:
    """Intersect a range with local yesterday .. today; None when empty."""
    earliest, latest = default_range(offset_hours, now)
    start, end = max(date_start, earliest), min(date_end, latest)
    if start > end:
        return None
    return start, end


def active_ad_external_ids(db: Session, account: Account, now: Optional[datetime] = None) -> List[str]:
    """Ads currently serving: ACTIVE, effectively serving, ad group not ended."""
    current = to_naive_utc(now) or utcnow()
    rows = (
        db.query(Ad.external_id)
        .join(AdGroup, Ad.ad_group_id == AdGroup.id)
        .filter(
            Ad.platform_account_id == account.id,
            Ad.status == "ACTIVE",
            Ad.effective_status.in_(SERVING_STATUSES),
            or_(AdGroup.end_time.is_(None), AdGroup.end_time > current),
        )
        .all()
    )
    return [external_id for (external_id,) in rows]


def sync_hourly_insights(
    db: Session,
    account: Account,
    client: AdsApiClient,
    resolver: EntityResolver,
    date_start: date,
    date_end: date,
    result: InsightSyncResult,
    ad_external_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    """Hourly rows for serving ads (or one targeted ad).

    Worker threads only perform HTTP; resolution and writes stay on `db`.
    """
    settings = get_settings()
    window = clamp_hourly_range(date_start, date_end, settings.LOCAL_UTC_OFFSET_HOURS, now)
    if window is None:
        logger.info("[INSIGHT_SYNC] Account %s: hourly range outside yesterday..today, skipping", account.id)
        return 0
    start, end = window

    ad_ids = [str(ad_external_id)] if ad_external_id else active_ad_external_ids(db, account, now)
    if not ad_ids:
        logger.info("[INSIGHT_SYNC] Account %s: no serving ads for hourly sync", account.id)
        return 0

    max_workers = 1 if ad_external_id else max(1, settings.HOURLY_SYNC_CONCURRENCY)
    raw_rows: List[Dict[str, Any]] = []

    logger.info(
        "[INSIGHT_SYNC] Account %s: hourly fetch for %d ads (%s..%s, workers=%d)",
        account.id, len(ad_ids), start, end, max_workers,
    )

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {
            executor.submit(client.get_hourly_insights, ad_id, start, end): ad_id
            for ad_id in ad_ids
        }
        for future in as_completed(futures):
            ad_id = futures[future]
            try:
                raw_rows.extend(future.result())
            except AuthError:
                raise
            except AdsApiError as e:
                logger.error("[INSIGHT_SYNC] Hourly fetch failed for ad %s: %s", ad_id, e)
                capture_exception(e, extra={"account_id": str(account.id), "ad_id": ad_id})
                result.errors.append(f"Hourly fetch failed for ad {ad_id}: {e}")

    grouped = accumulate_rows(
        raw_rows,
        resolver,
        lambda raw: {"hour": parse_hour(raw.get(HOURLY_BREAKDOWN))},
        result,
    )
    rows = list(grouped.values())
    for row in rows:
        row.pop("reach", None)

    written, errors = upsert_in_batches(db, HourlyInsight, rows, HOURLY_KEY)
    result.hourly_rows += written
    result.errors.extend(str(e) for e in errors)
    return written


# =============================================================================
# BREAKDOWNS
# =============================================================================

def _dimension(value: Any) -> str:
    return str(value) if value not in (None, "") else "unknown"


BREAKDOWN_TABLES: Dict[str, Tuple[Any, Callable[[Dict[str, Any]], Dict[str, str]]]] = {
    "device": (InsightDeviceBreakdown, lambda raw: {"device": _dimension(raw.get("device_platform"))}),
    "age_gender": (
        InsightAgeGenderBreakdown,
        lambda raw: {"age": _dimension(raw.get("age")), "gender": _dimension(raw.get("gender"))},
    ),
    "region": (InsightRegionBreakdown, lambda raw: {"region": _dimension(raw.get("region"))}),
}

BREAKDOWN_METRICS = ("spend", "impressions", "clicks", "reach", "results")


def sync_breakdown_insights(
    db: Session,
    account: Account,
    client: AdsApiClient,
    resolver: EntityResolver,
    date_start: date,
    date_end: date,
    breakdown: str,
    result: InsightSyncResult,
) -> int:
    """Breakdown rows for one dimension ("device", "age_gender", "region").

    Parent daily rows are inserted only where missing; children are linked
    to their parent by (date, ad) and upserted on (insight_id, dims...).
    """
    if breakdown not in BREAKDOWN_TABLES:
        logger.info("[INSIGHT_SYNC] Breakdown '%s' has no fetch, skipping", breakdown)
        return 0

    model, dims_of = BREAKDOWN_TABLES[breakdown]
    raw_rows = client.get_account_insights(account.external_id, date_start, date_end, breakdowns=breakdown)

    # Parents: the breakdown slices summed back up per (ad, date)
    parents = accumulate_rows(raw_rows, resolver, lambda raw: {}, result)
    _, parent_errors = upsert_in_batches(db, Insight, list(parents.values()), DAILY_KEY, insert_only=True)
    result.errors.extend(str(e) for e in parent_errors)

    parent_ids = {
        (ad_id, row_date): insight_id
        for insight_id, ad_id, row_date in (
            db.query(Insight.id, Insight.ad_id, Insight.date)
            .filter(
                Insight.platform_account_id == account.id,
                Insight.date >= date_start,
                Insight.date <= date_end,
            )
            .all()
        )
    }

    children: Dict[tuple, Dict[str, Any]] = {}
    for raw in raw_rows:
        ad_id = resolver.ads.get(str(raw.get("ad_id")))
        try:
            row_date = parse_date(raw.get("date_start"))
        except ValueError as e:
            logger.warning("[INSIGHT_SYNC] Dropping malformed %s breakdown row for ad %s: %s", breakdown, raw.get("ad_id"), e)
            continue
        parent_id = parent_ids.get((ad_id, row_date))
        if not parent_id:
            logger.warning(
                "[INSIGHT_SYNC] Dropping %s breakdown row: no parent for ad %s on %s",
                breakdown, raw.get("ad_id"), raw.get("date_start"),
            )
            continue

        dims = dims_of(raw)
        key = (parent_id,) + tuple(dims.values())
        metrics = {k: v for k, v in extract_metrics(raw).items() if k in BREAKDOWN_METRICS}
        if key in children:
            for field in BREAKDOWN_METRICS:
                children[key][field] += metrics[field]
        else:
            children[key] = {"id": uuid.uuid4(), "insight_id": parent_id, **dims, **metrics}

    written, errors = upsert_in_batches(db, model, list(children.values()), ("insight_id",) + tuple(dims_of({}).keys()))
    result.breakdown_rows += written
    result.errors.extend(str(e) for e in errors)

    logger.info("[INSIGHT_SYNC] Account %s: %d %s breakdown rows", account.id, written, breakdown)
    return written


# =============================================================================
# MAIN SYNC FUNCTIONS
# =============================================================================

def sync_account_insights(
    db: Session,
    account: Account,
    client: AdsApiClient,
    date_start: Optional[date] = None,
    date_end: Optional[date] = None,
    *,
    daily: bool = True,
    hourly: bool = False,
    breakdowns: Sequence[str] = (),
    ad_external_id: Optional[str] = None,
    skip_branch_aggregation: bool = False,
    now: Optional[datetime] = None,
) -> InsightSyncResult:
    """Sync insights of one account over an inclusive date range.

    Order: daily, hourly, then breakdowns. Failures of single hourly ads or
    single breakdown dimensions are recorded in the result; daily fetch
    failures propagate to the caller.

    Args:
        date_start/date_end: Defaults to local yesterday .. today
        ad_external_id: Restrict to one ad (also disables the serving filter)
        skip_branch_aggregation: Caller aggregates branches itself (dispatcher)

    Raises:
        AuthError: credential rejected upstream
        AdsApiError: daily fetch failed after retries
    """
    settings = get_settings()
    if date_start is None or date_end is None:
        default_start, default_end = default_range(settings.LOCAL_UTC_OFFSET_HOURS, now)
        date_start = date_start or default_start
        date_end = date_end or default_end

    result = InsightSyncResult()
    resolver = EntityResolver(db, account, client)

    logger.info(
        "[INSIGHT_SYNC] Starting account %s (%s) %s..%s daily=%s hourly=%s breakdowns=%s",
        account.id, account.external_id, date_start, date_end, daily, hourly, list(breakdowns),
    )

    if daily:
        sync_daily_insights(db, account, client, resolver, date_start, date_end, result, ad_external_id)

    if hourly:
        sync_hourly_insights(db, account, client, resolver, date_start, date_end, result, ad_external_id, now)

    for breakdown in breakdowns:
        try:
            sync_breakdown_insights(db, account, client, resolver, date_start, date_end, breakdown, result)
        except AuthError:
            raise
        except AdsApiError as e:
            logger.error("[INSIGHT_SYNC] %s breakdown failed for account %s: %s", breakdown, account.id, e)
            capture_exception(e, extra={"account_id": str(account.id), "breakdown": breakdown})
            result.errors.append(f"{breakdown} breakdown failed: {e}")

    result.healed_ads = resolver.healed
    account.last_synced_at = utcnow()
    db.commit()

    if not skip_branch_aggregation and account.branch_id:
        aggregate_branch_range(db, account.branch_id, date_start, date_end)

    logger.info("[INSIGHT_SYNC] Account %s complete: %r", account.id, result)
    return result


def sync_insights_for_account(
    db: Session,
    account_id: UUID,
    date_start: Optional[date] = None,
    date_end: Optional[date] = None,
    granularity: str = "daily",
    breakdown: Optional[str] = None,
    ad_external_id: Optional[str] = None,
) -> InsightSyncResponse:
    """Manual insight sync for one account (HTTP trigger).

    Args:
        granularity: "daily", "hourly" or "both"
        breakdown: Optional "device" / "age_gender" / "region"

    Raises:
        HTTPException 404: account doesn't exist
        HTTPException 401: no usable credential, or the token was rejected
    """
    start_time = utcnow()
    settings = get_settings()

    account = db.query(Account).filter(Account.id == account_id).first()
    if not account:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")

    if date_start is None or date_end is None:
        default_start, default_end = default_range(settings.LOCAL_UTC_OFFSET_HOURS)
        date_start = date_start or default_start
        date_end = date_end or default_end
    if date_start > date_end:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="date_start must be <= date_end")

    try:
        client = client_for_account(db, account)
    except MissingCredentialError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e)) from e

    try:
        with client:
            result = sync_account_insights(
                db,
                account,
                client,
                date_start,
                date_end,
                daily=granularity in ("daily", "both"),
                hourly=granularity in ("hourly", "both"),
                breakdowns=[breakdown] if breakdown else (),
                ad_external_id=ad_external_id,
            )
    except AuthError as e:
        db.rollback()
        logger.error("[INSIGHT_SYNC] Authentication error for account %s: %s", account_id, e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Upstream authentication failed. Refresh access token.",
        ) from e
    except AdsApiError as e:
        db.rollback()
        logger.error("[INSIGHT_SYNC] Upstream error for account %s: %s", account_id, e)
        result = InsightSyncResult()
        result.errors.append(str(e))

    return InsightSyncResponse(
        success=result.success,
        synced=InsightSyncStats(
            daily_rows=result.daily_rows,
            hourly_rows=result.hourly_rows,
            breakdown_rows=result.breakdown_rows,
            skipped=result.skipped,
            healed_ads=result.healed_ads,
            duration_seconds=(utcnow() - start_time).total_seconds(),
        ),
        date_range=DateRange(start=date_start, end=date_end),
        errors=result.errors,
    )


def cleanup_old_hourly_insights(db: Session, retention_days: Optional[int] = None, today: Optional[date] = None) -> int:
    """Delete hourly rows older than the retention window. Returns rows deleted."""
    settings = get_settings()
    days = retention_days if retention_days is not None else settings.HOURLY_RETENTION_DAYS
    cutoff = (today or default_range(settings.LOCAL_UTC_OFFSET_HOURS)[1]) - timedelta(days=days)

    deleted = (
        db.query(HourlyInsight)
        .filter(HourlyInsight.date < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info("[INSIGHT_SYNC] Deleted %d hourly rows older than %s", deleted, cutoff)
    return deleted

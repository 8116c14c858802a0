"""Entity Sync Service - campaigns, ad groups, ads and creatives.

WHAT:
    Pulls the structural hierarchy of one ad account and upserts it keyed by
    (platform_account_id, external_id):
        account details -> campaigns -> ad groups -> creatives -> ads

WHY:
    - Insight rows reference these ids, so internal ids must stay stable
      across passes (existing ids are reused, never regenerated)
    - Incremental passes only fetch objects whose `updated_time` moved past
      the account's `entities_synced_at` cursor
    - Archived/deleted upstream objects are still upserted (status change),
      never removed, so historical facts keep their foreign keys

ORPHANS:
    An ad group whose campaign (or an ad whose ad group) is not stored yet is
    skipped with a MappingError log line. The next full pass picks it up.

REFERENCES:
    - adsync/services/ads_api_client.py (fetching)
    - adsync/utils/upsert.py (batched INSERT ... ON CONFLICT)
    - adsync/routers/sync.py (manual trigger)
"""

from __future__ import annotations

import calendar
import logging
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from adsync.models import (
    Account,
    AccountStatusEnum,
    Ad,
    AdGroup,
    Campaign,
    Creative,
    EntityStatusEnum,
)
from adsync.schemas import EntitySyncResponse, EntitySyncStats
from adsync.services.ads_api_client import AdsApiClient, AdsApiError, AuthError
from adsync.services.credentials import client_for_account
from adsync.services.sync_errors import MappingError, MissingCredentialError
from adsync.utils.dates import parse_upstream_datetime, utcnow
from adsync.utils.upsert import insert_missing, upsert_in_batches

logger = logging.getLogger(__name__)

ENTITY_KEY = ("platform_account_id", "external_id")

# Currencies without minor units: budgets arrive as whole units.
ZERO_DECIMAL_CURRENCIES = {"VND", "JPY", "KRW", "CLP", "PYG", "ISK"}

KNOWN_STATUSES = {s.value for s in EntityStatusEnum} - {EntityStatusEnum.unknown.value}

ACCOUNT_STATUS_CODES = {
    1: AccountStatusEnum.active,
    2: AccountStatusEnum.disabled,
    3: AccountStatusEnum.unsettled,
    7: AccountStatusEnum.pending_review,
    8: AccountStatusEnum.pending_settlement,
    9: AccountStatusEnum.grace_period,
    100: AccountStatusEnum.pending_closure,
    101: AccountStatusEnum.closed,
}


# =============================================================================
# DATA CLASSES
# =============================================================================

class EntitySyncResult:
    """Result of an entity sync pass for one account."""

    def __init__(self):
        self.campaigns = 0
        self.ad_groups = 0
        self.ads = 0
        self.creatives = 0
        self.skipped = 0
        self.errors: List[str] = []

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    def __repr__(self):
        return (
            f"EntitySyncResult(campaigns={self.campaigns}, ad_groups={self.ad_groups}, "
            f"ads={self.ads}, creatives={self.creatives}, skipped={self.skipped}, errors={len(self.errors)})"
        )


# =============================================================================
# MAPPING HELPERS
# =============================================================================

def map_status(raw: Optional[str]) -> str:
    """ACTIVE / PAUSED / DELETED / ARCHIVED pass through, everything else is UNKNOWN."""
    value = (raw or "").upper()
    return value if value in KNOWN_STATUSES else EntityStatusEnum.unknown.value


def map_account_status(raw: Any) -> str:
    try:
        return ACCOUNT_STATUS_CODES.get(int(raw), AccountStatusEnum.unknown).value
    except (TypeError, ValueError):
        return AccountStatusEnum.unknown.value


def currency_offset(currency: Optional[str]) -> int:
    """Minor-unit divisor: 1 for zero-decimal currencies, else 100."""
    return 1 if (currency or "").upper() in ZERO_DECIMAL_CURRENCIES else 100


def normalize_budget(value: Any, currency: Optional[str]) -> Optional[Decimal]:
    """Convert an upstream budget in minor units to major units.

    "250000" VND -> Decimal("250000.00"); "250000" USD -> Decimal("2500.00").
    """
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        logger.warning("[ENTITY_SYNC] Unparseable budget value: %r", value)
        return None
    return (amount / currency_offset(currency)).quantize(Decimal("0.01"))


def normalize_money(value: Any, currency: Optional[str]) -> Optional[Decimal]:
    """Account balance / amount_spent use the same minor-unit convention."""
    return normalize_budget(value, currency)


def _to_epoch(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return calendar.timegm(value.utctimetuple())


def build_id_map(db: Session, model, account_id: UUID) -> Dict[str, UUID]:
    """external_id -> internal id for one account's rows of `model`."""
    rows = (
        db.query(model.external_id, model.id)
        .filter(model.platform_account_id == account_id)
        .all()
    )
    return {external_id: internal_id for external_id, internal_id in rows}


# =============================================================================
# ROW BUILDERS
# =============================================================================

def _campaign_row(account: Account, raw: Dict[str, Any], existing: Dict[str, UUID], now: datetime) -> Dict[str, Any]:
    return {
        "id": existing.get(raw["id"]) or uuid.uuid4(),
        "platform_account_id": account.id,
        "external_id": raw["id"],
        "name": raw.get("name") or "Unnamed Campaign",
        "objective": raw.get("objective"),
        "status": map_status(raw.get("status")),
        "effective_status": raw.get("effective_status"),
        "daily_budget": normalize_budget(raw.get("daily_budget"), account.currency),
        "lifetime_budget": normalize_budget(raw.get("lifetime_budget"), account.currency),
        "start_time": parse_upstream_datetime(raw.get("start_time")),
        "end_time": parse_upstream_datetime(raw.get("stop_time")),
        "created_time": parse_upstream_datetime(raw.get("created_time")),
        "updated_time": parse_upstream_datetime(raw.get("updated_time")),
        "synced_at": now,
    }


def _ad_group_row(
    account: Account,
    raw: Dict[str, Any],
    existing: Dict[str, UUID],
    campaign_map: Dict[str, UUID],
    now: datetime,
) -> Dict[str, Any]:
    campaign_id = campaign_map.get(str(raw.get("campaign_id")))
    if not campaign_id:
        raise MappingError(
            f"Campaign {raw.get('campaign_id')} not found for ad group {raw.get('id')}",
            external_id=raw.get("id"),
        )
    return {
        "id": existing.get(raw["id"]) or uuid.uuid4(),
        "platform_account_id": account.id,
        "campaign_id": campaign_id,
        "external_id": raw["id"],
        "name": raw.get("name") or "Unnamed Ad Set",
        "status": map_status(raw.get("status")),
        "effective_status": raw.get("effective_status"),
        "optimization_goal": raw.get("optimization_goal"),
        "daily_budget": normalize_budget(raw.get("daily_budget"), account.currency),
        "lifetime_budget": normalize_budget(raw.get("lifetime_budget"), account.currency),
        "start_time": parse_upstream_datetime(raw.get("start_time")),
        "end_time": parse_upstream_datetime(raw.get("end_time")),
        "created_time": parse_upstream_datetime(raw.get("created_time")),
        "updated_time": parse_upstream_datetime(raw.get("updated_time")),
        "synced_at": now,
    }


def _ad_row(
    account: Account,
    raw: Dict[str, Any],
    existing: Dict[str, UUID],
    ad_group_map: Dict[str, UUID],
    creative_map: Dict[str, UUID],
    now: datetime,
) -> Dict[str, Any]:
    ad_group_id = ad_group_map.get(str(raw.get("adset_id")))
    if not ad_group_id:
        raise MappingError(
            f"Ad group {raw.get('adset_id')} not found for ad {raw.get('id')}",
            external_id=raw.get("id"),
        )
    creative_external_id = ((raw.get("creative") or {}).get("id"))
    return {
        "id": existing.get(raw["id"]) or uuid.uuid4(),
        "platform_account_id": account.id,
        "ad_group_id": ad_group_id,
        "creative_id": creative_map.get(str(creative_external_id)) if creative_external_id else None,
        "external_id": raw["id"],
        "name": raw.get("name") or "Unnamed Ad",
        "status": map_status(raw.get("status")),
        "effective_status": raw.get("effective_status"),
        "created_time": parse_upstream_datetime(raw.get("created_time")),
        "updated_time": parse_upstream_datetime(raw.get("updated_time")),
        "synced_at": now,
    }


# =============================================================================
# SYNC STEPS
# =============================================================================

def refresh_account_details(db: Session, client: AdsApiClient, account: Account) -> None:
    """Refresh name, currency, timezone, status and balances of the account."""
    details = client.get_account(account.external_id)
    account.name = details.get("name") or account.name
    account.currency = details.get("currency") or account.currency
    account.timezone = details.get("timezone_name") or account.timezone
    if details.get("account_status") is not None:
        account.account_status = map_account_status(details.get("account_status"))
    account.amount_spent = normalize_money(details.get("amount_spent"), account.currency)
    account.balance = normalize_money(details.get("balance"), account.currency)
    db.flush()


def sync_campaigns(db: Session, account: Account, raw_campaigns: List[Dict[str, Any]], result: EntitySyncResult) -> Dict[str, UUID]:
    existing = build_id_map(db, Campaign, account.id)
    now = utcnow()
    rows = [_campaign_row(account, raw, existing, now) for raw in raw_campaigns if raw.get("id")]

    written, errors = upsert_in_batches(db, Campaign, rows, ENTITY_KEY)
    result.campaigns += written
    result.errors.extend(str(e) for e in errors)

    logger.info("[ENTITY_SYNC] Account %s: %d campaigns upserted", account.id, written)
    return build_id_map(db, Campaign, account.id)


def sync_ad_groups(
    db: Session,
    account: Account,
    raw_ad_groups: List[Dict[str, Any]],
    campaign_map: Dict[str, UUID],
    result: EntitySyncResult,
) -> Dict[str, UUID]:
    existing = build_id_map(db, AdGroup, account.id)
    now = utcnow()
    rows = []
    for raw in raw_ad_groups:
        if not raw.get("id"):
            continue
        try:
            rows.append(_ad_group_row(account, raw, existing, campaign_map, now))
        except MappingError as e:
            result.skipped += 1
            logger.warning("[ENTITY_SYNC] Skipping orphan: %s", e)

    written, errors = upsert_in_batches(db, AdGroup, rows, ENTITY_KEY)
    result.ad_groups += written
    result.errors.extend(str(e) for e in errors)

    logger.info("[ENTITY_SYNC] Account %s: %d ad groups upserted", account.id, written)
    return build_id_map(db, AdGroup, account.id)


def sync_creatives(
    db: Session,
    client: AdsApiClient,
    account: Account,
    raw_ads: List[Dict[str, Any]],
    result: EntitySyncResult,
) -> Dict[str, UUID]:
    """Upsert the distinct creatives referenced by `raw_ads`.

    Details come from the `?ids=` batch endpoint. When that call fails the
    creatives referenced by id are still inserted (if new) so ads can link.
    """
    referenced: Dict[str, Dict[str, Any]] = {}
    ads_with_creative = []
    for raw in raw_ads:
        creative = raw.get("creative") or {}
        if creative.get("id"):
            referenced.setdefault(str(creative["id"]), {"id": str(creative["id"])})
            ads_with_creative.append(str(raw["id"]))

    if not referenced:
        return build_id_map(db, Creative, account.id)

    try:
        for ad_id, creative in client.get_ad_creatives(ads_with_creative).items():
            referenced[str(creative["id"])] = creative
    except AuthError:
        raise
    except AdsApiError as e:
        logger.warning("[ENTITY_SYNC] Creative details unavailable for account %s: %s", account.id, e)
        result.errors.append(f"Creative details fetch failed: {e}")

    existing = build_id_map(db, Creative, account.id)
    now = utcnow()
    detailed, stubs = [], []
    for creative_id, creative in referenced.items():
        row = {
            "id": existing.get(creative_id) or uuid.uuid4(),
            "platform_account_id": account.id,
            "external_id": creative_id,
            "name": creative.get("name"),
            "thumbnail_url": creative.get("thumbnail_url"),
            "object_story_spec": creative.get("object_story_spec"),
            "synced_at": now,
        }
        (detailed if len(creative) > 1 else stubs).append(row)

    written, errors = upsert_in_batches(db, Creative, detailed, ENTITY_KEY)
    stub_written, stub_errors = upsert_in_batches(db, Creative, stubs, ENTITY_KEY, insert_only=True)
    result.creatives += written + stub_written
    result.errors.extend(str(e) for e in errors + stub_errors)

    return build_id_map(db, Creative, account.id)


def sync_ads(
    db: Session,
    client: AdsApiClient,
    account: Account,
    raw_ads: List[Dict[str, Any]],
    result: EntitySyncResult,
) -> Dict[str, UUID]:
    ad_group_map = build_id_map(db, AdGroup, account.id)
    creative_map = sync_creatives(db, client, account, raw_ads, result)
    existing = build_id_map(db, Ad, account.id)
    now = utcnow()

    rows = []
    for raw in raw_ads:
        if not raw.get("id"):
            continue
        try:
            rows.append(_ad_row(account, raw, existing, ad_group_map, creative_map, now))
        except MappingError as e:
            result.skipped += 1
            logger.warning("[ENTITY_SYNC] Skipping orphan: %s", e)

    written, errors = upsert_in_batches(db, Ad, rows, ENTITY_KEY)
    result.ads += written
    result.errors.extend(str(e) for e in errors)

    logger.info("[ENTITY_SYNC] Account %s: %d ads upserted", account.id, written)
    return build_id_map(db, Ad, account.id)


def fetch_and_insert_ad(
    db: Session,
    client: AdsApiClient,
    account: Account,
    ad_external_id: str,
    ad_group_map: Dict[str, UUID],
) -> UUID:
    """Fetch one ad upstream and store it; used by Insight Sync self-healing.

    Non-recursive: the ad's ad group must already be stored, otherwise a
    MappingError is raised and the caller skips the row.
    """
    raw = client.get_ad(ad_external_id)
    row = _ad_row(account, raw, {}, ad_group_map, {}, utcnow())
    # creative_id stays untouched on conflict; the next ads pass links it
    row.pop("creative_id")
    with db.begin_nested():
        insert_missing(db, Ad, [row], ENTITY_KEY)
    ad_id = build_id_map(db, Ad, account.id).get(str(raw["id"]))
    logger.info("[ENTITY_SYNC] Self-healed missing ad %s for account %s", ad_external_id, account.id)
    return ad_id


# =============================================================================
# MAIN SYNC FUNCTIONS
# =============================================================================

def sync_account_entities(
    db: Session,
    account: Account,
    client: AdsApiClient,
    *,
    force_full: bool = False,
    structure: bool = True,
    ads: bool = True,
) -> EntitySyncResult:
    """Sync the structural hierarchy of one account.

    Args:
        db: Database session (committed on success)
        account: Account to sync
        client: Upstream client authenticated for the account
        force_full: Ignore the `entities_synced_at` cursor
        structure: Sync account details, campaigns and ad groups
        ads: Sync creatives and ads

    Returns:
        EntitySyncResult with counts and per-batch errors

    Raises:
        AuthError: credential rejected upstream (aborts this account only)
        AdsApiError: other upstream failures once retries are exhausted
    """
    result = EntitySyncResult()
    started_at = utcnow()
    since = None if force_full else _to_epoch(account.entities_synced_at)

    logger.info(
        "[ENTITY_SYNC] Starting account %s (%s): structure=%s ads=%s since=%s",
        account.id, account.external_id, structure, ads, since,
    )

    if structure:
        refresh_account_details(db, client, account)
        campaign_map = sync_campaigns(db, account, client.get_campaigns(account.external_id, since), result)
        sync_ad_groups(db, account, client.get_adsets(account.external_id, since), campaign_map, result)

    if ads:
        sync_ads(db, client, account, client.get_ads(account.external_id, since), result)

    # The cursor only moves when the whole hierarchy was covered by this pass
    if structure and ads:
        account.entities_synced_at = started_at

    db.commit()

    logger.info("[ENTITY_SYNC] Account %s complete: %r", account.id, result)
    return result


def sync_entities_for_account(
    db: Session,
    account_id: UUID,
    force_full: bool = False,
) -> EntitySyncResponse:
    """Manual entity sync for one account (HTTP trigger).

    Raises:
        HTTPException 404: account doesn't exist
        HTTPException 401: no usable credential, or the token was rejected
    """
    start = utcnow()

    account = db.query(Account).filter(Account.id == account_id).first()
    if not account:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")

    try:
        client = client_for_account(db, account)
    except MissingCredentialError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e)) from e

    try:
        with client:
            result = sync_account_entities(db, account, client, force_full=force_full)
    except AuthError as e:
        db.rollback()
        logger.error("[ENTITY_SYNC] Authentication error for account %s: %s", account_id, e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Upstream authentication failed. Refresh access token.",
        ) from e
    except AdsApiError as e:
        db.rollback()
        logger.error("[ENTITY_SYNC] Upstream error for account %s: %s", account_id, e)
        result = EntitySyncResult()
        result.errors.append(str(e))

    return EntitySyncResponse(
        success=result.success,
        synced=EntitySyncStats(
            campaigns=result.campaigns,
            ad_groups=result.ad_groups,
            ads=result.ads,
            creatives=result.creatives,
            skipped=result.skipped,
            duration_seconds=(utcnow() - start).total_seconds(),
        ),
        errors=result.errors,
    )

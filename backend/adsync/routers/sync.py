"""Sync trigger endpoints.

WHAT:
    Thin HTTP wrappers around the sync services: dispatch tick, per-account
    entity/insight syncs, branch rollup rebuilds, lead attribution backfill
    and schedule management.

WHY:
    - Routers handle auth + request parsing only.
    - Business logic is shared with the ARQ worker.
    - Callers are systems (cron, automation), so every route requires the
      internal key header instead of a user session.

REFERENCES:
    - adsync/services/dispatch_service.py
    - adsync/services/entity_sync_service.py
    - adsync/services/insight_sync_service.py
"""

from __future__ import annotations

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from adsync.database import get_db
from adsync.deps import require_internal_key
from adsync.schemas import (
    BranchRebuildRequest,
    BranchRebuildResponse,
    CronSettingIn,
    CronSettingOut,
    DispatchRequest,
    DispatchResponse,
    EntitySyncRequest,
    EntitySyncResponse,
    InsightSyncRequest,
    InsightSyncResponse,
    LeadAttributionRequest,
    LeadAttributionResponse,
)
from adsync.services.ads_api_client import AuthError
from adsync.services.branch_stats_service import rebuild_stats_for_user
from adsync.services.cron_settings_service import list_cron_settings, upsert_cron_setting
from adsync.services.dispatch_service import dispatch
from adsync.services.entity_sync_service import sync_entities_for_account
from adsync.services.insight_sync_service import sync_insights_for_account
from adsync.services.lead_attribution_service import backfill_for_user
from adsync.services.sync_errors import MissingCredentialError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/sync",
    tags=["Sync"],
    dependencies=[Depends(require_internal_key)],
)


@router.post("/dispatch", response_model=DispatchResponse)
def run_dispatch(request: DispatchRequest) -> DispatchResponse:
    """Run one dispatch tick now (hour gating applies unless `force`)."""
    logger.info("[SYNC_API] Dispatch requested: %s", request.model_dump())
    result = dispatch(
        date_start=request.date_start,
        date_end=request.date_end,
        cron_type=request.cron_type,
        user_id=request.user_id,
        force=request.force,
    )
    return DispatchResponse.model_validate(result)


@router.post("/accounts/{account_id}/entities", response_model=EntitySyncResponse)
def sync_entities(
    account_id: UUID,
    request: Optional[EntitySyncRequest] = None,
    db: Session = Depends(get_db),
) -> EntitySyncResponse:
    """Sync campaigns/ad groups/ads/creatives of one account."""
    logger.info("[SYNC_API] Entity sync requested: account=%s", account_id)
    return sync_entities_for_account(
        db,
        account_id,
        force_full=bool(request and request.force_full),
    )


@router.post("/accounts/{account_id}/insights", response_model=InsightSyncResponse)
def sync_insights(
    account_id: UUID,
    request: Optional[InsightSyncRequest] = None,
    db: Session = Depends(get_db),
) -> InsightSyncResponse:
    """Sync insights of one account (daily by default)."""
    request = request or InsightSyncRequest()
    logger.info("[SYNC_API] Insight sync requested: account=%s %s", account_id, request.model_dump())
    return sync_insights_for_account(
        db,
        account_id,
        date_start=request.date_start,
        date_end=request.date_end,
        granularity=request.granularity,
        breakdown=request.breakdown,
        ad_external_id=request.ad_id,
    )


@router.post("/branches/rebuild", response_model=BranchRebuildResponse)
def rebuild_branches(request: BranchRebuildRequest, db: Session = Depends(get_db)) -> BranchRebuildResponse:
    """Recompute every branch rollup of a tenant from stored insights."""
    counts = rebuild_stats_for_user(db, request.user_id, request.date_start, request.date_end)
    return BranchRebuildResponse(**counts)


@router.post("/leads/attribution", response_model=LeadAttributionResponse)
def attribute_leads(request: LeadAttributionRequest, db: Session = Depends(get_db)) -> LeadAttributionResponse:
    """Backfill ad attribution for a tenant's leads on one day."""
    try:
        result = backfill_for_user(db, request.user_id, request.target_date)
    except (MissingCredentialError, AuthError) as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e)) from e
    return LeadAttributionResponse.model_validate(result)


@router.get("/cron-settings", response_model=List[CronSettingOut])
def get_cron_settings(user_id: Optional[UUID] = None, db: Session = Depends(get_db)) -> List[CronSettingOut]:
    return [CronSettingOut.model_validate(s) for s in list_cron_settings(db, user_id)]


@router.put("/cron-settings", response_model=CronSettingOut)
def put_cron_setting(request: CronSettingIn, db: Session = Depends(get_db)) -> CronSettingOut:
    try:
        setting = upsert_cron_setting(db, request.user_id, request.cron_type, request.allowed_hours, request.enabled)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e
    return CronSettingOut.model_validate(setting)

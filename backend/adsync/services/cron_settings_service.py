"""Per-tenant schedule records (CronSetting).

A CronSetting is keyed by (user_id, cron_type) and lists the local hours
(0-23) in which that sync type may run. The dispatcher reads them fresh on
every tick, so edits take effect on the next hour.
"""

from __future__ import annotations

import logging
import uuid
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from adsync.models import CronSetting, CronTypeEnum
from adsync.utils.dates import utcnow
from adsync.utils.upsert import upsert_rows

logger = logging.getLogger(__name__)

VALID_CRON_TYPES = {c.value for c in CronTypeEnum}


def normalize_hours(hours: Iterable[int]) -> List[int]:
    """Sorted, de-duplicated hours; raises ValueError outside 0-23."""
    normalized = sorted({int(h) for h in hours})
    invalid = [h for h in normalized if h < 0 or h > 23]
    if invalid:
        raise ValueError(f"Hours must be within 0-23, got {invalid}")
    return normalized


def validate_cron_type(cron_type: str) -> str:
    if cron_type not in VALID_CRON_TYPES:
        raise ValueError(f"Unknown cron type '{cron_type}'")
    return cron_type


def upsert_cron_setting(
    db: Session,
    user_id: UUID,
    cron_type: str,
    allowed_hours: Iterable[int],
    enabled: bool = True,
) -> CronSetting:
    """Create or replace the schedule for (user, cron_type)."""
    row = {
        "id": uuid.uuid4(),
        "user_id": user_id,
        "cron_type": validate_cron_type(cron_type),
        "allowed_hours": normalize_hours(allowed_hours),
        "enabled": enabled,
        "created_at": utcnow(),
        "updated_at": utcnow(),
    }
    upsert_rows(
        db,
        CronSetting,
        [row],
        ("user_id", "cron_type"),
        update_columns=["allowed_hours", "enabled", "updated_at"],
    )
    db.commit()
    logger.info("[CRON_SETTINGS] User %s: %s at hours %s (enabled=%s)", user_id, cron_type, row["allowed_hours"], enabled)
    return get_cron_setting(db, user_id, cron_type)


def get_cron_setting(db: Session, user_id: UUID, cron_type: str) -> Optional[CronSetting]:
    return (
        db.query(CronSetting)
        .filter(CronSetting.user_id == user_id, CronSetting.cron_type == cron_type)
        .first()
    )


def list_cron_settings(db: Session, user_id: Optional[UUID] = None, enabled_only: bool = False) -> List[CronSetting]:
    query = db.query(CronSetting)
    if user_id is not None:
        query = query.filter(CronSetting.user_id == user_id)
    if enabled_only:
        query = query.filter(CronSetting.enabled.is_(True))
    return query.order_by(CronSetting.user_id, CronSetting.cron_type).all()


def is_due(setting: CronSetting, hour: int) -> bool:
    """Whether an enabled setting allows `hour` (local)."""
    return bool(setting.enabled) and hour in (setting.allowed_hours or [])

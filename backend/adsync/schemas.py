"""Pydantic schemas for request/response payloads."""

from datetime import date
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator


# Entity Sync Schemas
# ---------------------------------------------------------------------

class EntitySyncRequest(BaseModel):
    """Request for a manual entity sync of one account."""

    force_full: bool = Field(
        default=False,
        description="Ignore the incremental cursor and refetch every entity",
    )


class EntitySyncStats(BaseModel):
    """Statistics from entity synchronization.

    WHAT: Upserted counts per entity level plus orphans skipped
    WHY: Provides visibility into what changed during sync
    """

    campaigns: int = Field(default=0, description="Campaigns upserted")
    ad_groups: int = Field(default=0, description="Ad groups upserted")
    ads: int = Field(default=0, description="Ads upserted")
    creatives: int = Field(default=0, description="Creatives upserted")
    skipped: int = Field(default=0, description="Orphan rows skipped (parent not stored yet)")
    duration_seconds: float = Field(description="Total duration in seconds")


class EntitySyncResponse(BaseModel):
    """Response from entity synchronization endpoint.

    WHAT: Returns success status, stats, and any errors
    WHY: A manual sync reports partial failures instead of failing outright
    """

    success: bool = Field(
        description="Whether sync succeeded overall (partial success possible)"
    )
    synced: EntitySyncStats = Field(
        description="Statistics about what was synced"
    )
    errors: List[str] = Field(
        default_factory=list,
        description="List of error messages (if any)"
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "success": True,
                "synced": {
                    "campaigns": 5,
                    "ad_groups": 12,
                    "ads": 24,
                    "creatives": 20,
                    "skipped": 0,
                    "duration_seconds": 15.3
                },
                "errors": []
            }
        }
    }


# Insight Sync Schemas
# ---------------------------------------------------------------------

class DateRange(BaseModel):
    """Inclusive date range that was synced."""

    start: date = Field(description="Start date (inclusive)")
    end: date = Field(description="End date (inclusive)")


class InsightSyncRequest(BaseModel):
    """Request for a manual insight sync of one account.

    Dates default to local yesterday .. today.
    """

    date_start: Optional[date] = Field(default=None, description="Range start (inclusive)")
    date_end: Optional[date] = Field(default=None, description="Range end (inclusive)")
    granularity: Literal["daily", "hourly", "both"] = Field(
        default="daily",
        description="Which fact tables to fill",
    )
    breakdown: Optional[Literal["device", "age_gender", "region"]] = Field(
        default=None,
        description="Optional breakdown dimension",
    )
    ad_id: Optional[str] = Field(
        default=None,
        description="Upstream ad id to restrict the sync to",
        examples=["120210000000000001"],
    )


class InsightSyncStats(BaseModel):
    """Statistics from insight synchronization."""

    daily_rows: int = Field(default=0, description="Daily insight rows upserted")
    hourly_rows: int = Field(default=0, description="Hourly insight rows upserted")
    breakdown_rows: int = Field(default=0, description="Breakdown rows upserted")
    skipped: int = Field(default=0, description="Rows skipped (unresolvable ad or malformed)")
    healed_ads: int = Field(default=0, description="Missing ads fetched and inserted inline")
    duration_seconds: float = Field(description="Total duration in seconds")


class InsightSyncResponse(BaseModel):
    """Response from insight synchronization endpoint."""

    success: bool = Field(description="Whether sync succeeded overall (partial success possible)")
    synced: InsightSyncStats = Field(description="Statistics about what was synced")
    date_range: DateRange = Field(description="Range that was synced")
    errors: List[str] = Field(default_factory=list, description="List of error messages (if any)")


# Dispatch Schemas
# ---------------------------------------------------------------------

class DispatchRequest(BaseModel):
    """Manual dispatch tick (same as the hourly cron, with overrides)."""

    date_start: Optional[date] = Field(default=None, description="Override range start")
    date_end: Optional[date] = Field(default=None, description="Override range end")
    cron_type: Optional[str] = Field(default=None, description="Only schedules of this sync type")
    user_id: Optional[UUID] = Field(default=None, description="Only this tenant")
    force: bool = Field(default=False, description="Ignore hour gating")

    @model_validator(mode="after")
    def check_range(self):
        if self.date_start and self.date_end and self.date_start > self.date_end:
            raise ValueError("date_start must be <= date_end")
        return self


class TenantDispatchOut(BaseModel):
    """Per-tenant outcome of a dispatch tick."""

    user_id: UUID
    types: List[str]
    accounts: int
    items: int
    error_count: int
    errors: List[str]
    branches_aggregated: List[UUID]
    leads_attributed: int = 0
    skipped: bool = False
    success: bool

    model_config = {"from_attributes": True}


class DispatchResponse(BaseModel):
    """Outcome of a dispatch tick."""

    hour: int = Field(description="Local hour the tick ran for")
    date_start: date
    date_end: date
    dispatched: int = Field(description="Tenants that had work")
    tenants: List[TenantDispatchOut]
    errors: List[str] = Field(default_factory=list, description="Dispatch-level errors")
    success: bool

    model_config = {"from_attributes": True}


# Branch / Lead Schemas
# ---------------------------------------------------------------------

class BranchRebuildRequest(BaseModel):
    """Rebuild every branch rollup of a tenant (all dates when no range)."""

    user_id: UUID
    date_start: Optional[date] = None
    date_end: Optional[date] = None

    @model_validator(mode="after")
    def check_range(self):
        if (self.date_start is None) != (self.date_end is None):
            raise ValueError("date_start and date_end must be given together")
        if self.date_start and self.date_end and self.date_start > self.date_end:
            raise ValueError("date_start must be <= date_end")
        return self


class BranchRebuildResponse(BaseModel):
    branches: int = Field(description="Branches recomputed")
    days: int = Field(description="Branch-days written")


class LeadAttributionRequest(BaseModel):
    user_id: UUID
    target_date: Optional[date] = Field(default=None, description="Target date (default local today)")


class LeadAttributionResponse(BaseModel):
    """Counts from one attribution backfill run."""

    target_date: date
    checked: int
    attributed: int
    organic: int
    skipped: int
    errors: int
    success: bool

    model_config = {"from_attributes": True}


# Cron Setting Schemas
# ---------------------------------------------------------------------

class CronSettingIn(BaseModel):
    """Schedule for one (tenant, sync type)."""

    user_id: UUID
    cron_type: str = Field(description="Sync type, e.g. full, insight, insight_hour, lead_attribution")
    allowed_hours: List[int] = Field(description="Local hours (0-23) in which the type may run")
    enabled: bool = True

    @field_validator("allowed_hours")
    @classmethod
    def check_hours(cls, value: List[int]) -> List[int]:
        if any(h < 0 or h > 23 for h in value):
            raise ValueError("allowed_hours must be within 0-23")
        return sorted(set(value))


class CronSettingOut(BaseModel):
    id: UUID
    user_id: UUID
    cron_type: str
    allowed_hours: List[int]
    enabled: bool

    model_config = {"from_attributes": True}


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])

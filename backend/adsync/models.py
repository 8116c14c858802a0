"""SQLAlchemy ORM models and enums.

This module defines the sync schema using UUID primary keys and explicit
relationships. Provider credentials live in `platform_credentials` (Fernet
ciphertext only) so account rows never carry secrets.

Natural keys that the pipeline upserts on are declared as UniqueConstraints;
the upsert helper in `adsync.utils.upsert` targets exactly these columns.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class CronTypeEnum(str, enum.Enum):
    """Sync types a tenant can schedule.

    The dispatcher maps the union of a tenant's due types to sync flags,
    see `adsync.services.dispatch_service.plan_sync`.
    """
    full = "full"
    insight = "insight"
    insight_daily = "insight_daily"
    insight_hourly = "insight_hourly"
    insight_hour = "insight_hour"
    insight_device = "insight_device"
    insight_placement = "insight_placement"
    insight_age_gender = "insight_age_gender"
    insight_region = "insight_region"
    campaign = "campaign"
    adset = "adset"
    ad_account = "ad_account"
    ads = "ads"
    creative = "creative"
    lead_attribution = "lead_attribution"


class EntityStatusEnum(str, enum.Enum):
    active = "ACTIVE"
    paused = "PAUSED"
    deleted = "DELETED"
    archived = "ARCHIVED"
    unknown = "UNKNOWN"


class AccountStatusEnum(str, enum.Enum):
    active = "ACTIVE"
    disabled = "DISABLED"
    unsettled = "UNSETTLED"
    pending_review = "PENDING_RISK_REVIEW"
    pending_settlement = "PENDING_SETTLEMENT"
    grace_period = "IN_GRACE_PERIOD"
    pending_closure = "PENDING_CLOSURE"
    closed = "CLOSED"
    disconnected = "DISCONNECTED"
    unknown = "UNKNOWN"


# Tenancy & credentials ------------------------------------------

class User(Base):
    """User is the tenant that owns identities, branches and schedules."""
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    identities = relationship("PlatformIdentity", back_populates="user", cascade="all, delete-orphan")
    branches = relationship("Branch", back_populates="user", cascade="all, delete-orphan")
    cron_settings = relationship("CronSetting", back_populates="user", cascade="all, delete-orphan")

    def __str__(self):
        return self.email


class PlatformIdentity(Base):
    """A connected upstream login (e.g. one Facebook user) owning ad accounts."""
    __tablename__ = "platform_identities"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    external_id = Column(String, nullable=False)
    name = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="identities")
    credentials = relationship("PlatformCredential", back_populates="identity", cascade="all, delete-orphan")
    accounts = relationship("Account", back_populates="identity")


class PlatformCredential(Base):
    """Encrypted access token for an identity.

    `credential_value_enc` is Fernet ciphertext produced by
    `adsync.security.encrypt_secret`; it is never stored in plaintext.
    """
    __tablename__ = "platform_credentials"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    identity_id = Column(UUID(as_uuid=True), ForeignKey("platform_identities.id"), nullable=False, index=True)
    credential_type = Column(String, nullable=False, default="access_token")
    credential_value_enc = Column(Text, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    identity = relationship("PlatformIdentity", back_populates="credentials")


class Branch(Base):
    """Tenant-defined grouping of accounts used for rollup reporting.

    `auto_match_keywords` lets the dispatcher assign new accounts whose name
    contains one of the keywords (case-insensitive).
    """
    __tablename__ = "branches"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    code = Column(String, nullable=False)
    auto_match_keywords = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="branches")
    accounts = relationship("Account", back_populates="branch")

    def __str__(self):
        return f"{self.name} ({self.code})"


class Account(Base):
    """Connected advertiser account on the upstream platform.

    Two cursors are kept:
    - entities_synced_at: incremental `updated_time` filter for Entity Sync
    - last_synced_at: last successful Insight Sync for this account

    On disconnect the row is kept (status DISCONNECTED, branch_id nulled) so
    historical insights keep their foreign key.
    """
    __tablename__ = "platform_accounts"
    __table_args__ = (
        UniqueConstraint("identity_id", "external_id", name="uq_platform_accounts_identity_external"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    identity_id = Column(UUID(as_uuid=True), ForeignKey("platform_identities.id"), nullable=False, index=True)
    external_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    currency = Column(String, nullable=True)
    timezone = Column(String, nullable=True)
    account_status = Column(String, nullable=False, default=AccountStatusEnum.active.value)
    amount_spent = Column(Numeric(18, 2), nullable=True)
    balance = Column(Numeric(18, 2), nullable=True)
    branch_id = Column(UUID(as_uuid=True), ForeignKey("branches.id"), nullable=True, index=True)
    last_synced_at = Column(DateTime, nullable=True)
    entities_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    identity = relationship("PlatformIdentity", back_populates="accounts")
    branch = relationship("Branch", back_populates="accounts")

    def __str__(self):
        return f"{self.name} ({self.external_id})"


# Structural entities --------------------------------------------

class Campaign(Base):
    __tablename__ = "unified_campaigns"
    __table_args__ = (
        UniqueConstraint("platform_account_id", "external_id", name="uq_unified_campaigns_account_external"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform_account_id = Column(UUID(as_uuid=True), ForeignKey("platform_accounts.id"), nullable=False, index=True)
    external_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    objective = Column(String, nullable=True)
    status = Column(String, nullable=False)
    effective_status = Column(String, nullable=True)
    daily_budget = Column(Numeric(18, 2), nullable=True)
    lifetime_budget = Column(Numeric(18, 2), nullable=True)
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)
    created_time = Column(DateTime, nullable=True)
    updated_time = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, nullable=True)


class AdGroup(Base):
    """Ad set on the upstream platform."""
    __tablename__ = "unified_ad_groups"
    __table_args__ = (
        UniqueConstraint("platform_account_id", "external_id", name="uq_unified_ad_groups_account_external"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform_account_id = Column(UUID(as_uuid=True), ForeignKey("platform_accounts.id"), nullable=False, index=True)
    campaign_id = Column(UUID(as_uuid=True), ForeignKey("unified_campaigns.id"), nullable=False, index=True)
    external_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    status = Column(String, nullable=False)
    effective_status = Column(String, nullable=True)
    optimization_goal = Column(String, nullable=True)
    daily_budget = Column(Numeric(18, 2), nullable=True)
    lifetime_budget = Column(Numeric(18, 2), nullable=True)
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)
    created_time = Column(DateTime, nullable=True)
    updated_time = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, nullable=True)


class Creative(Base):
    __tablename__ = "unified_ad_creatives"
    __table_args__ = (
        UniqueConstraint("platform_account_id", "external_id", name="uq_unified_ad_creatives_account_external"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform_account_id = Column(UUID(as_uuid=True), ForeignKey("platform_accounts.id"), nullable=False, index=True)
    external_id = Column(String, nullable=False)
    name = Column(String, nullable=True)
    thumbnail_url = Column(Text, nullable=True)
    object_story_spec = Column(JSON, nullable=True)
    synced_at = Column(DateTime, nullable=True)


class Ad(Base):
    __tablename__ = "unified_ads"
    __table_args__ = (
        UniqueConstraint("platform_account_id", "external_id", name="uq_unified_ads_account_external"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform_account_id = Column(UUID(as_uuid=True), ForeignKey("platform_accounts.id"), nullable=False, index=True)
    ad_group_id = Column(UUID(as_uuid=True), ForeignKey("unified_ad_groups.id"), nullable=False, index=True)
    creative_id = Column(UUID(as_uuid=True), ForeignKey("unified_ad_creatives.id"), nullable=True)
    external_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    status = Column(String, nullable=False)
    effective_status = Column(String, nullable=True)
    created_time = Column(DateTime, nullable=True)
    updated_time = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, nullable=True)

    ad_group = relationship("AdGroup")


# Performance facts ----------------------------------------------

class Insight(Base):
    """Ad-level daily performance fact.

    Exactly one row per (platform_account_id, ad_id, date). Campaign and ad
    group are informational: upstream can report one ad/date split across
    campaign buckets, those rows are summed before they reach this table.
    """
    __tablename__ = "unified_insights"
    __table_args__ = (
        UniqueConstraint("platform_account_id", "ad_id", "date", name="uq_unified_insights_account_ad_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform_account_id = Column(UUID(as_uuid=True), ForeignKey("platform_accounts.id"), nullable=False, index=True)
    campaign_id = Column(UUID(as_uuid=True), ForeignKey("unified_campaigns.id"), nullable=True)
    ad_group_id = Column(UUID(as_uuid=True), ForeignKey("unified_ad_groups.id"), nullable=True)
    ad_id = Column(UUID(as_uuid=True), ForeignKey("unified_ads.id"), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    spend = Column(Numeric(18, 2), nullable=False, default=0)
    impressions = Column(BigInteger, nullable=False, default=0)
    clicks = Column(BigInteger, nullable=False, default=0)
    reach = Column(BigInteger, nullable=False, default=0)
    results = Column(BigInteger, nullable=False, default=0)
    messaging_total = Column(BigInteger, nullable=False, default=0)
    messaging_new = Column(BigInteger, nullable=False, default=0)
    purchase_value = Column(Numeric(18, 2), nullable=False, default=0)
    raw_actions = Column(JSON, nullable=True)
    synced_at = Column(DateTime, nullable=True)


class HourlyInsight(Base):
    """Ad-level hourly fact; hour is 0-23 in the advertiser's timezone."""
    __tablename__ = "unified_hourly_insights"
    __table_args__ = (
        UniqueConstraint(
            "platform_account_id", "ad_id", "date", "hour",
            name="uq_unified_hourly_insights_account_ad_date_hour",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform_account_id = Column(UUID(as_uuid=True), ForeignKey("platform_accounts.id"), nullable=False, index=True)
    campaign_id = Column(UUID(as_uuid=True), ForeignKey("unified_campaigns.id"), nullable=True)
    ad_group_id = Column(UUID(as_uuid=True), ForeignKey("unified_ad_groups.id"), nullable=True)
    ad_id = Column(UUID(as_uuid=True), ForeignKey("unified_ads.id"), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    hour = Column(Integer, nullable=False)
    spend = Column(Numeric(18, 2), nullable=False, default=0)
    impressions = Column(BigInteger, nullable=False, default=0)
    clicks = Column(BigInteger, nullable=False, default=0)
    results = Column(BigInteger, nullable=False, default=0)
    messaging_total = Column(BigInteger, nullable=False, default=0)
    messaging_new = Column(BigInteger, nullable=False, default=0)
    purchase_value = Column(Numeric(18, 2), nullable=False, default=0)
    synced_at = Column(DateTime, nullable=True)


class InsightDeviceBreakdown(Base):
    __tablename__ = "insight_device_breakdowns"
    __table_args__ = (
        UniqueConstraint("insight_id", "device", name="uq_insight_device_breakdowns_insight_device"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    insight_id = Column(UUID(as_uuid=True), ForeignKey("unified_insights.id", ondelete="CASCADE"), nullable=False, index=True)
    device = Column(String, nullable=False)
    spend = Column(Numeric(18, 2), nullable=False, default=0)
    impressions = Column(BigInteger, nullable=False, default=0)
    clicks = Column(BigInteger, nullable=False, default=0)
    reach = Column(BigInteger, nullable=False, default=0)
    results = Column(BigInteger, nullable=False, default=0)


class InsightAgeGenderBreakdown(Base):
    __tablename__ = "insight_age_gender_breakdowns"
    __table_args__ = (
        UniqueConstraint("insight_id", "age", "gender", name="uq_insight_age_gender_breakdowns_insight_age_gender"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    insight_id = Column(UUID(as_uuid=True), ForeignKey("unified_insights.id", ondelete="CASCADE"), nullable=False, index=True)
    age = Column(String, nullable=False)
    gender = Column(String, nullable=False)
    spend = Column(Numeric(18, 2), nullable=False, default=0)
    impressions = Column(BigInteger, nullable=False, default=0)
    clicks = Column(BigInteger, nullable=False, default=0)
    reach = Column(BigInteger, nullable=False, default=0)
    results = Column(BigInteger, nullable=False, default=0)


class InsightRegionBreakdown(Base):
    __tablename__ = "insight_region_breakdowns"
    __table_args__ = (
        UniqueConstraint("insight_id", "region", name="uq_insight_region_breakdowns_insight_region"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    insight_id = Column(UUID(as_uuid=True), ForeignKey("unified_insights.id", ondelete="CASCADE"), nullable=False, index=True)
    region = Column(String, nullable=False)
    spend = Column(Numeric(18, 2), nullable=False, default=0)
    impressions = Column(BigInteger, nullable=False, default=0)
    clicks = Column(BigInteger, nullable=False, default=0)
    reach = Column(BigInteger, nullable=False, default=0)
    results = Column(BigInteger, nullable=False, default=0)


class BranchDailyStat(Base):
    """Derived per-branch daily rollup.

    Always rewritten in full from `unified_insights` by
    `adsync.services.branch_stats_service.aggregate_branch_stats`; never
    patched incrementally.
    """
    __tablename__ = "branch_daily_stats"
    __table_args__ = (
        UniqueConstraint("branch_id", "date", "platform_code", name="uq_branch_daily_stats_branch_date_platform"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    branch_id = Column(UUID(as_uuid=True), ForeignKey("branches.id", ondelete="CASCADE"), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    platform_code = Column(String, nullable=False, default="facebook")
    total_spend = Column(Numeric(18, 2), nullable=False, default=0)
    total_impressions = Column(BigInteger, nullable=False, default=0)
    total_clicks = Column(BigInteger, nullable=False, default=0)
    total_reach = Column(BigInteger, nullable=False, default=0)
    total_results = Column(BigInteger, nullable=False, default=0)
    total_messaging = Column(BigInteger, nullable=False, default=0)
    ad_account_count = Column(Integer, nullable=False, default=0)
    ads_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow)


# Scheduling, leads, notifications ---------------------------------

class CronSetting(Base):
    """Per-tenant schedule: which hours (local time) a sync type may run."""
    __tablename__ = "cron_settings"
    __table_args__ = (
        UniqueConstraint("user_id", "cron_type", name="uq_cron_settings_user_type"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    cron_type = Column(String, nullable=False)
    allowed_hours = Column(JSON, nullable=False, default=list)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="cron_settings")


class Lead(Base):
    """Inbound messaging lead (a page conversation participant).

    Attribution columns stay NULL until the lead is matched to an ad, either
    by the messaging webhook or by the attribution backfill.
    """
    __tablename__ = "leads"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    external_id = Column(String, nullable=False)  # page-scoped user id of the customer
    fb_page_id = Column(String, nullable=False)
    customer_name = Column(String, nullable=True)
    last_message_at = Column(DateTime, nullable=True, index=True)
    lead_metadata = Column(JSON, nullable=True)
    platform_data = Column(JSON, nullable=True)
    source_ad_external_id = Column(String, nullable=True)
    source_ad_id = Column(UUID(as_uuid=True), ForeignKey("unified_ads.id"), nullable=True)
    platform_account_id = Column(UUID(as_uuid=True), ForeignKey("platform_accounts.id"), nullable=True)
    is_qualified = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class TelegramBot(Base):
    __tablename__ = "telegram_bots"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=True)
    bot_token_enc = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    subscribers = relationship("TelegramSubscriber", back_populates="bot", cascade="all, delete-orphan")


class TelegramSubscriber(Base):
    __tablename__ = "telegram_subscribers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    bot_id = Column(UUID(as_uuid=True), ForeignKey("telegram_bots.id"), nullable=False, index=True)
    chat_id = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    bot = relationship("TelegramBot", back_populates="subscribers")

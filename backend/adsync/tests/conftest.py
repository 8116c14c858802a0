"""Pytest configuration for adsync tests

WHAT: Shared fixtures: in-memory database, tenant/account/entity factories and
      a fake upstream client that serves canned Graph API payloads.
WHY: Sync services are exercised end to end against a real SQLAlchemy session
     (SQLite supports the same ON CONFLICT upserts as PostgreSQL) without
     network access.
REFERENCES:
    - adsync/database.py: Database configuration
    - adsync/services/ads_api_client.py: Interface the fake client mirrors
    - adsync/services/dispatch_service.py: session_factory / client_factory seams
"""

import os
import uuid
from datetime import datetime
from typing import Any, Dict, Generator, List, Optional

import pytest

# Set test environment before adsync modules read it at import time
# Must be a URL-safe base64-encoded 32-byte Fernet key
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.setdefault("LEAD_LOOKUP_DELAY_SECONDS", "0")

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from adsync.deps import get_settings
from adsync.models import (
    Account,
    Ad,
    AdGroup,
    Base,
    Branch,
    Campaign,
    CronSetting,
    Lead,
    PlatformCredential,
    PlatformIdentity,
    TelegramBot,
    TelegramSubscriber,
    User,
)
from adsync.security import encrypt_secret
from adsync.services.ads_api_client import InvalidRequestError


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite engine shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_db_engine):
    """Session factory handed to the dispatcher (one session per task)."""
    return sessionmaker(bind=test_db_engine, autoflush=False, autocommit=False)


@pytest.fixture
def test_db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture(autouse=True)
def fresh_settings():
    """Settings are cached; tests that monkeypatch env vars get a fresh copy."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ============================================================================
# Model Factories
# ============================================================================

class Factory:
    """Creates committed model rows with sensible defaults."""

    def __init__(self, db: Session):
        self.db = db

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        return obj

    def user(self, email: Optional[str] = None, name: str = "Tenant") -> User:
        return self._save(User(
            id=uuid.uuid4(),
            email=email or f"{uuid.uuid4().hex[:8]}@example.com",
            name=name,
        ))

    def identity(self, user: User, token: Optional[str] = "test-access-token") -> PlatformIdentity:
        identity = self._save(PlatformIdentity(
            id=uuid.uuid4(),
            user_id=user.id,
            external_id=uuid.uuid4().hex[:12],
            name="FB Login",
        ))
        if token:
            self._save(PlatformCredential(
                id=uuid.uuid4(),
                identity_id=identity.id,
                credential_value_enc=encrypt_secret(token, context="test"),
                is_active=True,
            ))
        return identity

    def branch(self, user: User, name: str = "Hanoi", code: str = "HN", keywords=None) -> Branch:
        return self._save(Branch(
            id=uuid.uuid4(),
            user_id=user.id,
            name=name,
            code=code,
            auto_match_keywords=keywords or [],
        ))

    def account(
        self,
        identity: PlatformIdentity,
        name: str = "Account",
        external_id: Optional[str] = None,
        currency: str = "USD",
        branch: Optional[Branch] = None,
        account_status: str = "ACTIVE",
    ) -> Account:
        return self._save(Account(
            id=uuid.uuid4(),
            identity_id=identity.id,
            external_id=external_id or str(uuid.uuid4().int)[:15],
            name=name,
            currency=currency,
            timezone="Asia/Ho_Chi_Minh",
            account_status=account_status,
            branch_id=branch.id if branch else None,
        ))

    def campaign(self, account: Account, external_id: str = "c1", name: str = "Campaign") -> Campaign:
        return self._save(Campaign(
            id=uuid.uuid4(),
            platform_account_id=account.id,
            external_id=external_id,
            name=name,
            status="ACTIVE",
        ))

    def ad_group(self, campaign: Campaign, external_id: str = "as1", name: str = "Ad Set", end_time=None) -> AdGroup:
        return self._save(AdGroup(
            id=uuid.uuid4(),
            platform_account_id=campaign.platform_account_id,
            campaign_id=campaign.id,
            external_id=external_id,
            name=name,
            status="ACTIVE",
            end_time=end_time,
        ))

    def ad(
        self,
        ad_group: AdGroup,
        external_id: str = "ad1",
        name: str = "Ad",
        status: str = "ACTIVE",
        effective_status: str = "ACTIVE",
    ) -> Ad:
        return self._save(Ad(
            id=uuid.uuid4(),
            platform_account_id=ad_group.platform_account_id,
            ad_group_id=ad_group.id,
            external_id=external_id,
            name=name,
            status=status,
            effective_status=effective_status,
        ))

    def hierarchy(self, account: Account, ad_external_ids=("ad1",)) -> Dict[str, Any]:
        """One campaign "c1" -> ad group "as1" -> the given ads."""
        campaign = self.campaign(account)
        ad_group = self.ad_group(campaign)
        ads = {ext: self.ad(ad_group, external_id=ext, name=f"Ad {ext}") for ext in ad_external_ids}
        return {"campaign": campaign, "ad_group": ad_group, "ads": ads}

    def cron(self, user: User, cron_type: str, hours: List[int], enabled: bool = True) -> CronSetting:
        return self._save(CronSetting(
            id=uuid.uuid4(),
            user_id=user.id,
            cron_type=cron_type,
            allowed_hours=hours,
            enabled=enabled,
        ))

    def lead(
        self,
        user: User,
        customer_id: str,
        page_id: str = "page1",
        last_message_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Lead:
        return self._save(Lead(
            id=uuid.uuid4(),
            user_id=user.id,
            external_id=customer_id,
            fb_page_id=page_id,
            customer_name="Customer",
            last_message_at=last_message_at or datetime(2025, 1, 15, 9, 30),
            lead_metadata=metadata,
        ))

    def telegram_bot(self, user: User, token: str = "bot-token", chat_ids=("1001",), active: bool = True) -> TelegramBot:
        bot = self._save(TelegramBot(
            id=uuid.uuid4(),
            user_id=user.id,
            name="Reports",
            bot_token_enc=encrypt_secret(token, context="test"),
            is_active=active,
        ))
        for chat_id in chat_ids:
            self._save(TelegramSubscriber(id=uuid.uuid4(), bot_id=bot.id, chat_id=chat_id, is_active=True))
        return bot


@pytest.fixture
def factory(test_db_session) -> Factory:
    return Factory(test_db_session)


@pytest.fixture
def tenant(factory):
    """Tenant with one identity (active credential), one branch and one USD account in it."""
    user = factory.user(name="Tenant A")
    identity = factory.identity(user)
    branch = factory.branch(user)
    account = factory.account(identity, name="HN Account", external_id="1001", branch=branch)
    return {"user": user, "identity": identity, "branch": branch, "account": account}


# ============================================================================
# Fake Upstream Client
# ============================================================================

class FakeAdsClient:
    """In-memory stand-in for AdsApiClient.

    Payloads mirror the Graph API shapes the real client returns after
    pagination. Set `fail_with` to make every fetch raise that exception.
    """

    def __init__(
        self,
        account: Optional[Dict[str, Any]] = None,
        campaigns: Optional[List[Dict[str, Any]]] = None,
        adsets: Optional[List[Dict[str, Any]]] = None,
        ads: Optional[List[Dict[str, Any]]] = None,
        creatives: Optional[Dict[str, Dict[str, Any]]] = None,
        insights: Optional[Dict[Optional[str], List[Dict[str, Any]]]] = None,
        hourly: Optional[Dict[str, Any]] = None,
        ad_details: Optional[Dict[str, Dict[str, Any]]] = None,
        pages: Optional[List[Dict[str, Any]]] = None,
        conversations: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        recent_conversations: Optional[List[Dict[str, Any]]] = None,
        messages: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        fail_with: Optional[Exception] = None,
    ):
        self.account = account or {}
        self.campaigns = campaigns or []
        self.adsets = adsets or []
        self.ads = ads or []
        self.creatives = creatives or {}
        self.insights = insights or {}
        self.hourly = hourly or {}
        self.ad_details = ad_details or {}
        self.pages = pages or []
        self.conversations = conversations or {}
        self.recent_conversations = recent_conversations or []
        self.messages = messages or {}
        self.fail_with = fail_with
        self.calls: List[tuple] = []
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        self.closed = True

    def _record(self, *call):
        self.calls.append(call)
        if self.fail_with is not None:
            raise self.fail_with

    # Structure
    def get_account(self, external_id):
        self._record("account", external_id)
        return dict(self.account)

    def get_campaigns(self, external_id, since=None):
        self._record("campaigns", external_id, since)
        return list(self.campaigns)

    def get_adsets(self, external_id, since=None):
        self._record("adsets", external_id, since)
        return list(self.adsets)

    def get_ads(self, external_id, since=None):
        self._record("ads", external_id, since)
        return list(self.ads)

    def get_ad(self, ad_external_id):
        self._record("ad", ad_external_id)
        if ad_external_id not in self.ad_details:
            raise InvalidRequestError(f"Invalid request: unknown ad {ad_external_id}", status_code=400, code=100)
        return dict(self.ad_details[ad_external_id])

    def get_ad_creatives(self, ad_external_ids):
        self._record("creatives", tuple(ad_external_ids))
        return {ad_id: c for ad_id, c in self.creatives.items() if ad_id in ad_external_ids}

    # Insights
    def get_account_insights(self, external_id, date_start, date_end, breakdowns=None):
        self._record("insights", external_id, date_start, date_end, breakdowns)
        return [dict(r) for r in self.insights.get(breakdowns, [])]

    def get_insights(self, object_id, date_start, date_end, **kwargs):
        self._record("ad_insights", object_id, date_start, date_end)
        return [dict(r) for r in self.insights.get(None, []) if r.get("ad_id") == object_id]

    def get_hourly_insights(self, ad_external_id, date_start, date_end):
        self.calls.append(("hourly", ad_external_id, date_start, date_end))
        rows = self.hourly.get(ad_external_id, [])
        if isinstance(rows, Exception):
            raise rows
        return [dict(r) for r in rows]

    # Messaging
    def get_pages(self):
        self._record("pages")
        return list(self.pages)

    def get_conversations(self, page_id, page_token, user_id=None, limit=100):
        self._record("conversations", page_id, user_id)
        if not user_id:
            return list(self.recent_conversations)
        found = self.conversations.get(user_id, [])
        if isinstance(found, Exception):
            raise found
        return list(found)

    def get_messages(self, conversation_id, page_token, limit=50):
        self._record("messages", conversation_id)
        return list(self.messages.get(conversation_id, []))


@pytest.fixture
def fake_client_cls():
    return FakeAdsClient


def insight_row(ad_id: str, day: str, spend="0", impressions="0", clicks="0", reach="0",
                actions=None, action_values=None, campaign_id="c1", adset_id="as1", **extra) -> Dict[str, Any]:
    """Upstream insight row as returned by /insights."""
    row = {
        "ad_id": ad_id,
        "adset_id": adset_id,
        "campaign_id": campaign_id,
        "date_start": day,
        "date_stop": day,
        "spend": spend,
        "impressions": impressions,
        "clicks": clicks,
        "reach": reach,
        "actions": actions or [],
    }
    if action_values is not None:
        row["action_values"] = action_values
    row.update(extra)
    return row


@pytest.fixture
def make_insight_row():
    return insight_row

"""Lead Attribution Backfill.

WHAT:
    For leads active on a target date that still lack a source ad, look up
    the customer's page conversation upstream and attribute the lead to the
    ad that started it.

LOOKUP ORDER (first hit wins):
    1. Conversation `referral.ad_id`
    2. First message referral (`ad_id` or `ads_context_data.ad_id`)
    3. Fuzzy match of `lead_metadata["ad_title"]` against stored ad names

WHY:
    The messaging webhook misses referrals now and then; this pass fills the
    gaps after the fact. Only unattributed leads are selected, so reruns are
    no-ops for leads already matched. Per-lead failures are counted and the
    loop continues.

REFERENCES:
    - adsync/services/ads_api_client.py (get_pages, get_conversations, get_messages)
    - adsync/services/dispatch_service.py (runs this when "lead_attribution" is due)
"""

from __future__ import annotations

import logging
import re
import time
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from adsync.deps import get_settings
from adsync.models import Account, Ad, Lead, PlatformIdentity
from adsync.services.ads_api_client import AdsApiClient, AdsApiError, AuthError
from adsync.services.credentials import get_user_token
from adsync.telemetry import capture_exception
from adsync.utils.dates import local_now, local_today

logger = logging.getLogger(__name__)

TITLE_WORD_MIN_LENGTH = 4
TITLE_MAX_WORDS = 3


class AttributionResult:
    """Counts from one backfill run."""

    def __init__(self, target_date: date):
        self.target_date = target_date
        self.checked = 0
        self.attributed = 0
        self.organic = 0
        self.skipped = 0
        self.errors = 0
        self.matches: List[Dict[str, str]] = []

    @property
    def success(self) -> bool:
        return self.errors == 0

    def __repr__(self):
        return (
            f"AttributionResult(date={self.target_date}, checked={self.checked}, "
            f"attributed={self.attributed}, organic={self.organic}, "
            f"skipped={self.skipped}, errors={self.errors})"
        )


# =============================================================================
# MATCHING HELPERS
# =============================================================================

def extract_referral_ad_id(referral: Optional[Dict[str, Any]]) -> Optional[str]:
    """Ad id of a referral payload (`ad_id`, else `ads_context_data.ad_id`)."""
    if not referral:
        return None
    ad_id = referral.get("ad_id") or (referral.get("ads_context_data") or {}).get("ad_id")
    return str(ad_id) if ad_id else None


def title_keywords(title: Optional[str]) -> List[str]:
    """Up to three words longer than three characters, punctuation/emoji stripped.

    >>> title_keywords("🔥 Khóa học IELTS online - khai giảng!")
    ['Khóa', 'IELTS', 'online']
    """
    if not title:
        return []
    clean = re.sub(r"[^\w\s]", "", title).strip()
    words = [w for w in clean.split() if len(w) >= TITLE_WORD_MIN_LENGTH]
    return words[:TITLE_MAX_WORDS]


def title_pattern(title: Optional[str]) -> Optional[str]:
    words = title_keywords(title)
    if not words:
        return None
    return "%" + "%".join(words) + "%"


def match_ad_by_title(db: Session, user_id: UUID, title: Optional[str]) -> Optional[Ad]:
    """First ad of the tenant whose name contains the title keywords in order."""
    pattern = title_pattern(title)
    if not pattern:
        return None
    return (
        db.query(Ad)
        .join(Account, Ad.platform_account_id == Account.id)
        .join(PlatformIdentity, Account.identity_id == PlatformIdentity.id)
        .filter(PlatformIdentity.user_id == user_id, Ad.name.ilike(pattern))
        .first()
    )


def find_ad(db: Session, user_id: UUID, ad_external_id: str) -> Optional[Ad]:
    return (
        db.query(Ad)
        .join(Account, Ad.platform_account_id == Account.id)
        .join(PlatformIdentity, Account.identity_id == PlatformIdentity.id)
        .filter(PlatformIdentity.user_id == user_id, Ad.external_id == str(ad_external_id))
        .first()
    )


def find_conversation(
    client: AdsApiClient,
    page_id: str,
    page_token: str,
    customer_id: str,
) -> Optional[Dict[str, Any]]:
    """Conversation of `customer_id` on a page, by user filter then recent list."""
    conversations = client.get_conversations(page_id, page_token, user_id=customer_id)
    if conversations:
        return conversations[0]

    for conversation in client.get_conversations(page_id, page_token, limit=100):
        participants = (conversation.get("participants") or {}).get("data") or []
        if any(str(p.get("id")) == str(customer_id) for p in participants):
            return conversation
    return None


def unattributed_leads(db: Session, user_id: UUID, target_date: date, limit: int) -> List[Lead]:
    day_start = datetime.combine(target_date, datetime.min.time())
    return (
        db.query(Lead)
        .filter(
            Lead.user_id == user_id,
            Lead.last_message_at >= day_start,
            Lead.last_message_at < day_start + timedelta(days=1),
            Lead.source_ad_id.is_(None),
            Lead.source_ad_external_id.is_(None),
        )
        .order_by(Lead.last_message_at)
        .limit(limit)
        .all()
    )


# =============================================================================
# BACKFILL
# =============================================================================

def _resolve_lead(
    db: Session,
    client: AdsApiClient,
    lead: Lead,
    page_token: str,
) -> Tuple[Optional[Dict[str, Any]], Optional[str], Optional[Ad]]:
    """(conversation, ad external id, local ad) for one lead."""
    conversation = find_conversation(client, lead.fb_page_id, page_token, lead.external_id)
    if conversation is None:
        return None, None, None

    ad_external_id = extract_referral_ad_id(conversation.get("referral"))

    if not ad_external_id:
        for message in client.get_messages(conversation["id"], page_token):
            ad_external_id = extract_referral_ad_id(message.get("referral"))
            if ad_external_id:
                break

    if ad_external_id:
        return conversation, ad_external_id, find_ad(db, lead.user_id, ad_external_id)

    ad = match_ad_by_title(db, lead.user_id, (lead.lead_metadata or {}).get("ad_title"))
    if ad is not None:
        logger.info("[LEAD_ATTRIBUTION] Title match for lead %s -> ad %s", lead.id, ad.external_id)
        return conversation, ad.external_id, ad
    return conversation, None, None


def backfill_lead_attribution(
    db: Session,
    user_id: UUID,
    client: AdsApiClient,
    target_date: Optional[date] = None,
    limit: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> AttributionResult:
    """Attribute the tenant's unattributed leads active on `target_date`.

    Args:
        client: Client authenticated with the tenant's user token (page
            tokens are resolved from it)
        target_date: Defaults to local today
        limit: Max leads per run (LEAD_ATTRIBUTION_BATCH_LIMIT)
        sleep: Injected for tests

    Raises:
        AuthError: the tenant token can't list pages
    """
    settings = get_settings()
    target_date = target_date or local_today(settings.LOCAL_UTC_OFFSET_HOURS)
    result = AttributionResult(target_date)

    leads = unattributed_leads(db, user_id, target_date, limit or settings.LEAD_ATTRIBUTION_BATCH_LIMIT)
    if not leads:
        logger.info("[LEAD_ATTRIBUTION] User %s: no unattributed leads on %s", user_id, target_date)
        return result

    pages = {str(p["id"]): p for p in client.get_pages() if p.get("id")}
    logger.info(
        "[LEAD_ATTRIBUTION] User %s: checking %d leads on %s across %d pages",
        user_id, len(leads), target_date, len(pages),
    )

    for lead in leads:
        page = pages.get(str(lead.fb_page_id)) or {}
        page_token = page.get("access_token")
        if not page_token:
            result.skipped += 1
            logger.debug("[LEAD_ATTRIBUTION] No token for page %s, skipping lead %s", lead.fb_page_id, lead.id)
            continue

        result.checked += 1
        try:
            conversation, ad_external_id, ad = _resolve_lead(db, client, lead, page_token)
            if conversation is None:
                logger.info("[LEAD_ATTRIBUTION] No conversation found for lead %s", lead.id)
            else:
                lead.platform_data = {
                    **(lead.platform_data or {}),
                    "fb_conv_id": conversation.get("id"),
                    "fb_page_id": lead.fb_page_id,
                    "fb_page_name": page.get("name"),
                    "snippet": conversation.get("snippet"),
                }
                if ad_external_id:
                    lead.source_ad_external_id = ad_external_id
                    lead.source_ad_id = ad.id if ad else None
                    if ad is not None:
                        lead.platform_account_id = ad.platform_account_id
                    lead.is_qualified = True
                    lead.lead_metadata = {
                        **(lead.lead_metadata or {}),
                        "qualified_at": local_now(settings.LOCAL_UTC_OFFSET_HOURS).strftime("%Y-%m-%d %H:%M:%S"),
                    }
                    result.attributed += 1
                    result.matches.append({"lead_id": str(lead.id), "ad_id": ad_external_id})
                else:
                    result.organic += 1
                db.commit()
        except AuthError:
            db.rollback()
            raise
        except AdsApiError as e:
            db.rollback()
            result.errors += 1
            logger.warning("[LEAD_ATTRIBUTION] Lookup failed for lead %s: %s", lead.id, e)
            capture_exception(e, extra={"lead_id": str(lead.id), "user_id": str(user_id)})

        sleep(settings.LEAD_LOOKUP_DELAY_SECONDS)

    logger.info("[LEAD_ATTRIBUTION] User %s complete: %r", user_id, result)
    return result


def backfill_for_user(
    db: Session,
    user_id: UUID,
    target_date: Optional[date] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> AttributionResult:
    """Backfill with a client built from the tenant's active credential.

    Raises:
        MissingCredentialError: tenant has no usable credential
        AuthError: the tenant token was rejected
    """
    with AdsApiClient.from_settings(get_user_token(db, user_id)) as client:
        return backfill_lead_attribution(db, user_id, client, target_date, sleep=sleep)

"""Telegram notifications for dispatch summaries.

Each tenant owns zero or more bots (token stored Fernet-encrypted); every
active subscriber of an active bot receives the summary. Delivery is best
effort: failures are logged and reported, never raised to the sync path.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from adsync.deps import get_settings
from adsync.models import TelegramBot, TelegramSubscriber
from adsync.security import decrypt_secret
from adsync.telemetry import capture_exception
from adsync.utils.dates import local_now

logger = logging.getLogger(__name__)


def format_dispatch_summary(tenant_result, now: Optional[datetime] = None) -> str:
    """Markdown summary of one tenant's dispatch result."""
    settings = get_settings()
    local = local_now(settings.LOCAL_UTC_OFFSET_HOURS, now)
    return (
        "📊 *Sync Report*\n\n"
        f"📅 Time: {local.strftime('%d/%m/%Y %H:%M')}\n"
        f"🗓 Range: {tenant_result.date_start} → {tenant_result.date_end}\n"
        f"🔁 Types: {', '.join(sorted(tenant_result.types))}\n"
        f"✅ Accounts: {tenant_result.accounts}\n"
        f"📈 Insights: {tenant_result.items} items\n"
        f"🏢 Branches aggregated: {len(tenant_result.branches_aggregated)}\n"
        f"⚠️ Errors: {tenant_result.error_count}\n\n"
        "#SyncStatus"
    )


def send_telegram_message(
    bot_token: str,
    chat_id: str,
    text: str,
    parse_mode: str = "Markdown",
    http_client: Optional[httpx.Client] = None,
) -> bool:
    """POST sendMessage; returns False instead of raising on any delivery failure."""
    url = f"{get_settings().TELEGRAM_API_URL}/bot{bot_token}/sendMessage"
    payload = {"chat_id": chat_id, "text": text, "parse_mode": parse_mode}
    client = http_client or httpx.Client(timeout=10.0)
    try:
        response = client.post(url, json=payload)
        if response.status_code >= 400:
            logger.warning("[TELEGRAM] sendMessage to %s failed: HTTP %d", chat_id, response.status_code)
            return False
        return True
    except httpx.HTTPError as e:
        logger.warning("[TELEGRAM] sendMessage to %s failed: %s", chat_id, e)
        return False
    finally:
        if http_client is None:
            client.close()


def notify_tenant(
    db: Session,
    user_id: UUID,
    text: str,
    http_client: Optional[httpx.Client] = None,
) -> int:
    """Send `text` to every active subscriber of the tenant's active bots.

    Returns:
        Number of messages delivered
    """
    bots = (
        db.query(TelegramBot)
        .filter(TelegramBot.user_id == user_id, TelegramBot.is_active.is_(True))
        .all()
    )
    delivered = 0

    for bot in bots:
        try:
            token = decrypt_secret(bot.bot_token_enc, context=f"telegram_bot:{bot.id}")
        except ValueError as e:
            logger.error("[TELEGRAM] Bot %s token unreadable: %s", bot.id, e)
            capture_exception(e, extra={"bot_id": str(bot.id), "user_id": str(user_id)})
            continue

        subscribers = (
            db.query(TelegramSubscriber)
            .filter(TelegramSubscriber.bot_id == bot.id, TelegramSubscriber.is_active.is_(True))
            .all()
        )
        for subscriber in subscribers:
            if send_telegram_message(token, subscriber.chat_id, text, http_client=http_client):
                delivered += 1

    logger.info("[TELEGRAM] User %s: %d messages delivered", user_id, delivered)
    return delivered

"""Tests for Telegram dispatch reports.

WHAT: Summary formatting and best-effort delivery through httpx.MockTransport.
WHY: A failing notification must never fail a sync run.
"""

import json
from datetime import date, datetime, timezone
from uuid import uuid4

import httpx

from adsync.services import notification_service as svc
from adsync.services.dispatch_service import TenantDispatchResult


def _recording_client(status_code=200, sent=None):
    sent = sent if sent is not None else []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append((request.url.path, json.loads(request.content)))
        return httpx.Response(status_code, json={"ok": status_code < 400})

    return httpx.Client(transport=httpx.MockTransport(handler)), sent


def test_format_dispatch_summary():
    result = TenantDispatchResult(
        user_id=uuid4(), types=["insight", "full"], date_start=date(2025, 1, 14), date_end=date(2025, 1, 15),
        accounts=3, items=120,
    )
    result.branches_aggregated = [uuid4()]
    result.add_error("Account x: boom")

    text = svc.format_dispatch_summary(result, now=datetime(2025, 1, 15, 5, 0, tzinfo=timezone.utc))

    assert "15/01/2025 12:00" in text
    assert "full, insight" in text
    assert "Accounts: 3" in text
    assert "Insights: 120 items" in text
    assert "Branches aggregated: 1" in text
    assert "Errors: 1" in text


def test_send_message_failure_returns_false():
    client, sent = _recording_client(status_code=400)
    assert svc.send_telegram_message("tok", "42", "hi", http_client=client) is False
    assert sent[0][0] == "/bottok/sendMessage"


def test_notify_tenant_sends_to_active_subscribers(test_db_session, factory, tenant):
    factory.telegram_bot(tenant["user"], token="bot-1", chat_ids=("1001", "1002"))
    factory.telegram_bot(tenant["user"], token="bot-off", chat_ids=("2001",), active=False)
    client, sent = _recording_client()

    delivered = svc.notify_tenant(test_db_session, tenant["user"].id, "report", http_client=client)

    assert delivered == 2
    assert sorted(payload["chat_id"] for _, payload in sent) == ["1001", "1002"]
    assert all(path == "/botbot-1/sendMessage" for path, _ in sent)

"""Tests for per-tenant schedule records."""

import pytest

from adsync.models import CronSetting
from adsync.services import cron_settings_service as svc


def test_upsert_creates_then_replaces(test_db_session, tenant):
    user_id = tenant["user"].id

    created = svc.upsert_cron_setting(test_db_session, user_id, "insight", [9, 3, 9])
    assert created.allowed_hours == [3, 9]

    updated = svc.upsert_cron_setting(test_db_session, user_id, "insight", [12], enabled=False)
    test_db_session.refresh(updated)

    assert test_db_session.query(CronSetting).count() == 1
    assert updated.id == created.id
    assert updated.allowed_hours == [12]
    assert updated.enabled is False


def test_rejects_unknown_type_and_bad_hours(test_db_session, tenant):
    with pytest.raises(ValueError):
        svc.upsert_cron_setting(test_db_session, tenant["user"].id, "insight_weekly", [1])
    with pytest.raises(ValueError):
        svc.upsert_cron_setting(test_db_session, tenant["user"].id, "insight", [24])


def test_is_due(factory, tenant):
    setting = factory.cron(tenant["user"], "full", [8, 20])
    disabled = factory.cron(tenant["user"], "insight", [8], enabled=False)

    assert svc.is_due(setting, 8)
    assert not svc.is_due(setting, 9)
    assert not svc.is_due(disabled, 8)


def test_list_filters(test_db_session, factory, tenant):
    other = factory.user(name="Tenant B")
    factory.cron(tenant["user"], "full", [1])
    factory.cron(tenant["user"], "insight", [2], enabled=False)
    factory.cron(other, "full", [3])

    assert len(svc.list_cron_settings(test_db_session)) == 3
    assert [s.cron_type for s in svc.list_cron_settings(test_db_session, tenant["user"].id)] == ["full", "insight"]
    assert len(svc.list_cron_settings(test_db_session, enabled_only=True)) == 2

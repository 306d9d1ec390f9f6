from __future__ import annotations

import pytest


def _push_headers(
    *,
    channel_id: str,
    resource_id: str,
    token: str | None = None,
    message_number: str = "1",
    resource_state: str = "exists",
) -> dict[str, str]:
    headers = {
        "X-Goog-Channel-ID": channel_id,
        "X-Goog-Resource-ID": resource_id,
        "X-Goog-Message-Number": message_number,
        "X-Goog-Resource-State": resource_state,
    }
    if token is not None:
        headers["X-Goog-Channel-Token"] = token
    return headers


def _watch(db, account, channel_id: str, resource_id: str):
    account.channel_id = channel_id
    account.channel_resource_id = resource_id
    db.commit()
    return account


@pytest.mark.asyncio
async def test_google_calendar_push_webhook_enqueues_sync_job(client, db, calendar_account):
    from crm_api.db.enums import JobType
    from crm_api.db.models import Job

    _watch(db, calendar_account, "chan-1", "res-1")

    response = await client.post(
        "/webhooks/google-calendar",
        headers=_push_headers(channel_id="chan-1", resource_id="res-1", message_number="42"),
    )
    assert response.status_code == 202
    assert response.json()["status"] == "accepted"

    jobs = db.query(Job).filter(Job.job_type == JobType.START_SYNC.value).all()
    assert len(jobs) == 1
    assert jobs[0].payload["email_account_id"] == str(calendar_account.id)
    assert jobs[0].payload["account_kind"] == "calendar"
    assert jobs[0].idempotency_key == "push-sync:google-calendar:chan-1:42"


@pytest.mark.asyncio
async def test_google_calendar_push_webhook_dedupes_same_message_number(client, db, calendar_account):
    from crm_api.db.enums import JobType
    from crm_api.db.models import Job

    _watch(db, calendar_account, "chan-2", "res-2")
    headers = _push_headers(channel_id="chan-2", resource_id="res-2", message_number="7")

    first = await client.post("/webhooks/google-calendar", headers=headers)
    second = await client.post("/webhooks/google-calendar", headers=headers)
    assert first.status_code == 202
    assert second.status_code == 202

    jobs = db.query(Job).filter(Job.job_type == JobType.START_SYNC.value).all()
    assert len(jobs) == 1


@pytest.mark.asyncio
async def test_google_calendar_push_webhook_ignores_invalid_channel_token(
    client, db, calendar_account, monkeypatch
):
    from crm_api.core.config import settings
    from crm_api.db.models import Job

    monkeypatch.setattr(settings, "GOOGLE_CALENDAR_WEBHOOK_TOKEN", "expected-token")
    _watch(db, calendar_account, "chan-3", "res-3")

    response = await client.post(
        "/webhooks/google-calendar",
        headers=_push_headers(channel_id="chan-3", resource_id="res-3", token="wrong-token"),
    )
    assert response.status_code == 202
    assert response.json() == {"status": "ignored", "reason": "invalid_token"}
    assert db.query(Job).count() == 0


@pytest.mark.asyncio
async def test_google_calendar_push_webhook_accepts_matching_channel_token(
    client, db, calendar_account, monkeypatch
):
    from crm_api.core.config import settings

    monkeypatch.setattr(settings, "GOOGLE_CALENDAR_WEBHOOK_TOKEN", "expected-token")
    _watch(db, calendar_account, "chan-4", "res-4")

    response = await client.post(
        "/webhooks/google-calendar",
        headers=_push_headers(channel_id="chan-4", resource_id="res-4", token="expected-token"),
    )
    assert response.json()["status"] == "accepted"


@pytest.mark.asyncio
async def test_google_calendar_push_webhook_ignores_missing_headers(client, db):
    from crm_api.db.models import Job

    response = await client.post("/webhooks/google-calendar", headers={"X-Goog-Channel-ID": "chan-5"})
    assert response.status_code == 202
    assert response.json()["reason"] == "missing_headers"
    assert db.query(Job).count() == 0


@pytest.mark.asyncio
async def test_google_calendar_push_webhook_ignores_sync_handshake(client, db, calendar_account):
    from crm_api.db.models import Job

    _watch(db, calendar_account, "chan-6", "res-6")

    response = await client.post(
        "/webhooks/google-calendar",
        headers=_push_headers(channel_id="chan-6", resource_id="res-6", resource_state="sync"),
    )
    assert response.json() == {"status": "ignored", "reason": "sync_handshake"}
    assert db.query(Job).count() == 0


@pytest.mark.asyncio
async def test_google_calendar_push_webhook_ignores_unknown_channel(client, db):
    response = await client.post(
        "/webhooks/google-calendar",
        headers=_push_headers(channel_id="chan-missing", resource_id="res-missing"),
    )
    assert response.status_code == 202
    assert response.json()["reason"] == "unknown_channel"

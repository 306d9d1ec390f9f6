from __future__ import annotations

import base64
import json

import pytest


def _push_payload(*, email_address: str, history_id: str = "12345", message_id: str = "pubsub-1") -> dict:
    message = {"emailAddress": email_address, "historyId": history_id}
    encoded = base64.b64encode(json.dumps(message).encode("utf-8")).decode("utf-8")
    return {
        "message": {"data": encoded, "messageId": message_id},
        "subscription": "projects/test-project/subscriptions/gmail-push",
    }


def _watch(db, account, topic: str = "projects/test-project/topics/gmail"):
    account.account_email = "Mailbox@Example.com"
    account.channel_id = f"crm-email-{account.id}"
    account.channel_resource_id = topic
    db.commit()
    return account


@pytest.mark.asyncio
async def test_gmail_push_webhook_enqueues_sync(client, db, email_account):
    from crm_api.db.enums import JobType
    from crm_api.db.models import Job

    _watch(db, email_account)

    response = await client.post(
        "/webhooks/gmail", json=_push_payload(email_address="mailbox@example.com", history_id="99999")
    )
    assert response.status_code == 202
    assert response.json()["status"] == "accepted"

    jobs = db.query(Job).filter(Job.job_type == JobType.START_SYNC.value).all()
    assert len(jobs) == 1
    assert jobs[0].payload["email_account_id"] == str(email_account.id)
    assert jobs[0].payload["account_kind"] == "email"
    assert jobs[0].idempotency_key == f"push-sync:gmail:{email_account.id}:99999"


@pytest.mark.asyncio
async def test_gmail_push_webhook_dedupes_history_id(client, db, email_account):
    from crm_api.db.models import Job

    _watch(db, email_account)
    payload = _push_payload(email_address="mailbox@example.com", history_id="5")

    await client.post("/webhooks/gmail", json=payload)
    await client.post("/webhooks/gmail", json={**payload, "message": {**payload["message"], "messageId": "pubsub-2"}})

    assert db.query(Job).count() == 1


@pytest.mark.asyncio
async def test_gmail_push_webhook_requires_token_when_configured(client, db, email_account, monkeypatch):
    from crm_api.core.config import settings
    from crm_api.db.models import Job

    monkeypatch.setattr(settings, "GOOGLE_CALENDAR_WEBHOOK_TOKEN", "push-secret")
    _watch(db, email_account)
    payload = _push_payload(email_address="mailbox@example.com")

    rejected = await client.post("/webhooks/gmail", json=payload)
    assert rejected.status_code == 202
    assert rejected.json() == {"status": "ignored", "reason": "invalid_token"}
    assert db.query(Job).count() == 0

    accepted = await client.post("/webhooks/gmail?token=push-secret", json=payload)
    assert accepted.json()["status"] == "accepted"
    assert db.query(Job).count() == 1


@pytest.mark.asyncio
async def test_gmail_push_webhook_ignores_unwatched_mailbox(client, db, email_account):
    response = await client.post("/webhooks/gmail", json=_push_payload(email_address="user@example.com"))

    assert response.status_code == 202
    assert response.json() == {"status": "ignored", "reason": "unknown_account"}


@pytest.mark.asyncio
async def test_gmail_push_webhook_ignores_malformed_body(client):
    bad_data = await client.post("/webhooks/gmail", json={"message": {"data": "%%%not-base64"}})
    not_json = await client.post(
        "/webhooks/gmail", content=b"not json", headers={"Content-Type": "application/json"}
    )

    assert bad_data.json()["reason"] == "invalid_body"
    assert not_json.status_code == 202
    assert not_json.json()["reason"] == "invalid_body"

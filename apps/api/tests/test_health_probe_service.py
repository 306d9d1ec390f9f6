"""Tests for account health probes (local checks, classification, caching, isolation)."""

import uuid
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from crm_api.db.enums import AccountKind, AccountStatus, AuditEventType, JobType
from crm_api.db.models import AuditLog, CalendarAccount, EmailAccount, Job
from crm_api.services import health_probe_service
from crm_api.utils.datetime_utils import utc_now


def _handler(gmail_status=200, calendar_status=200, calls=None):
    def handle(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request.url.path)
        if request.url.host == "gmail.googleapis.com":
            return httpx.Response(gmail_status, json={"emailAddress": "user@example.com"})
        return httpx.Response(calendar_status, json={"items": []})

    return handle


@pytest.mark.asyncio
async def test_healthy_account_is_connected(db, email_account, google_client):
    calls: list[str] = []
    async with google_client(_handler(calls=calls)) as client:
        result = await health_probe_service.run_health_probe(
            db, email_account.id, AccountKind.EMAIL, client=client
        )

    assert result.overall_status == AccountStatus.CONNECTED.value
    assert set(result.services) == {"gmail", "calendar"}
    assert len(calls) == 2

    db.refresh(email_account)
    assert email_account.status == AccountStatus.CONNECTED.value
    assert email_account.last_probe_ok_at is not None
    audit = db.query(AuditLog).filter(AuditLog.event_type == AuditEventType.HEALTH_PROBE.value).one()
    assert audit.details["overall_status"] == AccountStatus.CONNECTED.value


@pytest.mark.asyncio
async def test_gmail_forbidden_needs_action(db, email_account, google_client):
    async with google_client(_handler(gmail_status=403)) as client:
        result = await health_probe_service.run_health_probe(
            db, email_account.id, AccountKind.EMAIL, client=client
        )

    assert result.overall_status == AccountStatus.ACTION_NEEDED.value
    assert result.services["gmail"].reason == "Insufficient Gmail permissions"
    assert result.services["calendar"].status == "ok"
    db.refresh(email_account)
    assert email_account.error_reason == "Insufficient Gmail permissions"


@pytest.mark.asyncio
async def test_calendar_unauthorized(db, calendar_account, google_client):
    async with google_client(_handler(calendar_status=401)) as client:
        result = await health_probe_service.run_health_probe(
            db, calendar_account.id, AccountKind.CALENDAR, client=client
        )

    assert set(result.services) == {"calendar"}
    assert result.reason == "Invalid or expired Calendar token"
    assert result.overall_status == AccountStatus.ACTION_NEEDED.value


@pytest.mark.asyncio
async def test_timeout_is_a_service_failure(db, calendar_account, google_client):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    async with google_client(handler) as client:
        result = await health_probe_service.run_health_probe(
            db, calendar_account.id, AccountKind.CALENDAR, client=client
        )

    assert result.overall_status == AccountStatus.ACTION_NEEDED.value
    assert result.services["calendar"].reason == "Calendar API timed out"


@pytest.mark.asyncio
async def test_malformed_success_body_disconnects(db, calendar_account, google_client):
    async with google_client(lambda request: httpx.Response(200, content=b"<html>")) as client:
        result = await health_probe_service.run_health_probe(
            db, calendar_account.id, AccountKind.CALENDAR, client=client
        )

    assert result.overall_status == AccountStatus.DISCONNECTED.value
    assert result.reason.startswith("Probe error: ")


@pytest.mark.asyncio
async def test_expired_token_skips_network(db, test_org, make_account, google_client):
    account = make_account(db, test_org, CalendarAccount, expires_in=-60)
    calls: list[str] = []

    async with google_client(_handler(calls=calls)) as client:
        result = await health_probe_service.run_health_probe(
            db, account.id, AccountKind.CALENDAR, client=client
        )

    assert calls == []
    assert result.reason == "Access token expired"
    assert result.overall_status == AccountStatus.ACTION_NEEDED.value


@pytest.mark.asyncio
async def test_unencrypted_account_skips_network(db, test_org, kms_down, make_account, google_client):
    account = make_account(db, test_org, EmailAccount)
    calls: list[str] = []

    async with google_client(_handler(calls=calls)) as client:
        result = await health_probe_service.run_health_probe(
            db, account.id, AccountKind.EMAIL, client=client
        )

    assert calls == []
    assert result.reason == "Token encryption failed"


@pytest.mark.asyncio
async def test_unknown_account_is_disconnected(db):
    result = await health_probe_service.run_health_probe(db, uuid.uuid4(), AccountKind.EMAIL)

    assert result.overall_status == AccountStatus.DISCONNECTED.value
    assert result.reason == "Account not found"


@pytest.mark.asyncio
async def test_unexpected_error_disconnects(db, calendar_account, monkeypatch):
    async def boom(client, services, access_token):
        raise RuntimeError("socket exploded")

    monkeypatch.setattr(health_probe_service, "_probe_services", boom)

    result = await health_probe_service.run_health_probe(db, calendar_account.id, AccountKind.CALENDAR)

    assert result.overall_status == AccountStatus.DISCONNECTED.value
    assert result.reason == "Probe error: RuntimeError"
    db.refresh(calendar_account)
    assert calendar_account.status == AccountStatus.DISCONNECTED.value


@pytest.mark.asyncio
async def test_results_are_cached_unless_forced(db, calendar_account, google_client):
    calls: list[str] = []
    async with google_client(_handler(calls=calls)) as client:
        first = await health_probe_service.run_health_probe(
            db, calendar_account.id, AccountKind.CALENDAR, client=client
        )
        second = await health_probe_service.run_health_probe(
            db, calendar_account.id, AccountKind.CALENDAR, client=client
        )
        assert len(calls) == 1
        third = await health_probe_service.run_health_probe(
            db, calendar_account.id, AccountKind.CALENDAR, client=client, force=True
        )

    assert first.cached is False
    assert second.cached is True
    assert third.cached is False
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_org_probe_isolates_accounts(db, session_factory, test_org, make_account, google_client):
    good = make_account(db, test_org, EmailAccount, access_token="good-token")
    bad = make_account(db, test_org, CalendarAccount, access_token="bad-token")
    db.commit()

    def handler(request):
        if request.headers["Authorization"] == "Bearer bad-token":
            return httpx.Response(401, json={})
        return httpx.Response(200, json={})

    async with google_client(handler) as client:
        results = await health_probe_service.probe_org_accounts(
            session_factory, test_org.id, client=client
        )

    by_id = {result.account_id: result for result in results}
    assert by_id[str(good.id)].overall_status == AccountStatus.CONNECTED.value
    assert by_id[str(bad.id)].overall_status == AccountStatus.ACTION_NEEDED.value
    db.expire_all()
    assert db.get(EmailAccount, good.id).status == AccountStatus.CONNECTED.value
    assert db.get(CalendarAccount, bad.id).status == AccountStatus.ACTION_NEEDED.value


@pytest.mark.asyncio
async def test_ok_probe_keeps_watch_failure(db, calendar_account, google_client):
    calendar_account.status = AccountStatus.WATCH_FAILED.value
    calendar_account.error_reason = "watch setup failed"
    db.commit()

    async with google_client(_handler()) as client:
        result = await health_probe_service.run_health_probe(
            db, calendar_account.id, AccountKind.CALENDAR, client=client
        )

    assert result.ok
    db.refresh(calendar_account)
    assert calendar_account.status == AccountStatus.WATCH_FAILED.value
    assert calendar_account.last_probe_ok_at is not None


def test_effective_status_requires_fresh_probe(email_account):
    now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    email_account.status = AccountStatus.CONNECTED.value
    email_account.last_probe_at = now - timedelta(hours=2)
    email_account.last_probe_ok_at = now - timedelta(hours=2)

    assert health_probe_service.effective_status(email_account, now) == AccountStatus.ACTION_NEEDED.value

    email_account.last_probe_ok_at = now - timedelta(minutes=5)
    assert health_probe_service.effective_status(email_account, now) == AccountStatus.CONNECTED.value

    email_account.last_probe_at = None
    assert health_probe_service.effective_status(email_account, now) == AccountStatus.CONNECTED.value


def test_schedule_health_probes_is_idempotent_per_bucket(db, email_account, calendar_account):
    db.commit()
    now = utc_now()

    first = health_probe_service.schedule_health_probes(db, now=now)
    second = health_probe_service.schedule_health_probes(db, now=now)

    assert first == {"jobs_created": 2, "duplicates_skipped": 0}
    assert second == {"jobs_created": 0, "duplicates_skipped": 2}
    jobs = db.query(Job).filter(Job.job_type == JobType.HEALTH_PROBE.value).all()
    assert {job.payload["account_kind"] for job in jobs} == {"email", "calendar"}
    assert all(job.max_attempts == 1 for job in jobs)


@pytest.mark.asyncio
async def test_probe_job_forces_fresh_probe(db, calendar_account, google_client, monkeypatch):
    calls: list[str] = []
    monkeypatch.setattr(
        health_probe_service, "provider_client", lambda: google_client(_handler(calls=calls))
    )
    health_probe_service.schedule_health_probes(db)
    job = db.query(Job).filter(Job.job_type == JobType.HEALTH_PROBE.value).one()

    await health_probe_service.process_health_probe_job(db, job)
    await health_probe_service.process_health_probe_job(db, job)

    assert len(calls) == 2

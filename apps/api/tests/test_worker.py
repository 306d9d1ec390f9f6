"""Tests for the worker pool: dispatch, retry scheduling and dead-lettering."""

from datetime import timedelta

import pytest

from crm_api.core.config import settings
from crm_api.db.enums import AccountStatus, AuditEventType, JobStatus, JobType, SyncStatus
from crm_api.db.models import AuditLog, EmailAccount, Job
from crm_api.services import secure_token_service, token_queue_service
from crm_api.utils.datetime_utils import ensure_utc, utc_now
from crm_api.worker import WorkerPool, is_retryable


def _make_due(db, job: Job) -> Job:
    job.run_at = utc_now() - timedelta(seconds=1)
    db.commit()
    return job


def _encrypt_job(db, account) -> Job:
    job = token_queue_service.enqueue_token_encryption(
        db,
        org_id=account.organization_id,
        email_account_id=account.id,
        token_ref=account.access_token_ref,
        provider="google",
        external_account_id=account.external_account_id,
        plaintext="ya29.test-access",
    )
    return _make_due(db, job)


@pytest.fixture
def pool(session_factory) -> WorkerPool:
    return WorkerPool(session_factory, poll_interval=0.01, batch_size=5)


def test_is_retryable_follows_error_taxonomy():
    from crm_api.core.errors import AuthenticationFailed, KmsUnavailable

    assert is_retryable(KmsUnavailable("down")) is True
    assert is_retryable(AuthenticationFailed("bad tag")) is False
    assert is_retryable(RuntimeError("unexpected")) is True


@pytest.mark.asyncio
async def test_run_once_completes_due_jobs(db, email_account, pool):
    job = _make_due(db, token_queue_service.enqueue_sync_if_ready(db, email_account))

    assert await pool.run_once() == 1

    db.expire_all()
    assert db.get(Job, job.id).status == JobStatus.COMPLETED.value
    assert db.get(EmailAccount, email_account.id).sync_status == SyncStatus.SCHEDULED.value
    assert await pool.run_once() == 0


@pytest.mark.asyncio
async def test_transient_failure_is_rescheduled(db, test_org, kms_down, make_account, pool, monkeypatch):
    account = make_account(db, test_org, EmailAccount, refresh_token=None)
    monkeypatch.setattr(settings, "FALLBACK_ENCRYPTION_SECRET", "seal-only-secret")
    job = _encrypt_job(db, account)
    monkeypatch.setattr(
        token_queue_service.secure_token_service,
        "retry_encryption",
        lambda db, token_ref, plaintext: False,
    )

    assert await pool.execute(job.id) is True

    db.expire_all()
    job = db.get(Job, job.id)
    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 1
    assert job.last_error.startswith("KmsUnavailable")
    assert ensure_utc(job.run_at) > utc_now()


@pytest.mark.asyncio
async def test_permanent_failure_dead_letters_and_parks_account(db, test_org, kms_down, make_account, pool):
    account = make_account(db, test_org, EmailAccount, refresh_token=None)
    # No fallback secret: the payload carries no sealed credential.
    job = _encrypt_job(db, account)
    assert "sealed_token" not in job.payload

    assert await pool.execute(job.id) is True

    db.expire_all()
    job = db.get(Job, job.id)
    assert job.status == JobStatus.DEAD_LETTER.value
    assert job.attempts == 1
    assert job.last_error.startswith("EncryptionNotConfigured")

    audit = db.query(AuditLog).filter(AuditLog.event_type == AuditEventType.DEAD_LETTER_JOB.value).one()
    assert audit.details["job_type"] == JobType.ENCRYPT_TOKEN.value
    assert audit.target_id == account.id

    account = db.get(EmailAccount, account.id)
    assert account.status == AccountStatus.ACTION_NEEDED.value
    assert account.error_reason == token_queue_service.ENCRYPTION_DEAD_LETTER_REASON

    # Terminal: never claimed again.
    assert await pool.execute(job.id) is False


@pytest.mark.asyncio
async def test_encrypt_job_chains_into_sync(db, test_org, kms_down, make_account, pool, monkeypatch):
    account = make_account(db, test_org, EmailAccount, refresh_token=None)
    monkeypatch.setattr(settings, "FALLBACK_ENCRYPTION_SECRET", "seal-only-secret")
    job = _encrypt_job(db, account)
    kms_down.restore()

    assert await pool.run_once() == 1

    db.expire_all()
    assert db.get(Job, job.id).status == JobStatus.COMPLETED.value
    token = secure_token_service.get_token(db, account.access_token_ref)
    assert token.encryption_method == "kms"
    sync_job = db.query(Job).filter(Job.job_type == JobType.START_SYNC.value).one()
    assert sync_job.payload["email_account_id"] == str(account.id)


@pytest.mark.asyncio
async def test_pool_starts_and_stops(db, pool):
    await pool.start()
    assert pool.running
    assert len(pool._tasks) == 1

    await pool.stop()
    assert not pool.running


@pytest.mark.asyncio
async def test_start_requeues_stale_running_jobs(db, email_account, pool):
    job = token_queue_service.enqueue_sync_if_ready(db, email_account)
    job.status = JobStatus.RUNNING.value
    job.started_at = utc_now() - timedelta(hours=1)
    job.run_at = utc_now() + timedelta(hours=1)
    db.commit()

    await pool.start()
    await pool.stop()

    db.expire_all()
    assert db.get(Job, job.id).status == JobStatus.PENDING.value


@pytest.mark.asyncio
async def test_fallback_promotion_retries_then_parks_account_once(
    db, test_org, fallback_secret, kms_down, make_account, pool
):
    account = make_account(db, test_org, EmailAccount, refresh_token=None)
    token = secure_token_service.get_token(db, account.access_token_ref)
    assert (token.encryption_status, token.encryption_method) == ("ok", "fallback")
    job = token_queue_service.enqueue_token_encryption(
        db,
        org_id=account.organization_id,
        email_account_id=account.id,
        token_ref=account.access_token_ref,
        provider="google",
        external_account_id=account.external_account_id,
    )
    assert job.max_attempts == 5

    for attempt in range(1, 6):
        _make_due(db, db.get(Job, job.id))
        assert await pool.execute(job.id) is True
        db.expire_all()
        job = db.get(Job, job.id)
        assert job.attempts == attempt
        assert job.last_error.startswith("KmsUnavailable")
        expected = JobStatus.DEAD_LETTER.value if attempt == 5 else JobStatus.PENDING.value
        assert job.status == expected

    audits = db.query(AuditLog).filter(AuditLog.event_type == AuditEventType.DEAD_LETTER_JOB.value).all()
    assert len(audits) == 1
    account = db.get(EmailAccount, account.id)
    assert account.status == AccountStatus.ACTION_NEEDED.value
    assert account.error_reason == secure_token_service.FALLBACK_PROMOTION_FAILED_REASON
    token = secure_token_service.get_token(db, account.access_token_ref)
    assert (token.encryption_status, token.encryption_method) == ("ok", "fallback")
    assert token.retry_count == 5
    assert await pool.execute(job.id) is False

    # The fallback blob stays readable; reconciliation restores the account.
    kms_down.restore()
    assert secure_token_service.reconcile_fallback_tokens(db, test_org.id)["reconciled"] == 1
    db.expire_all()
    account = db.get(EmailAccount, account.id)
    assert account.status == AccountStatus.CONNECTED.value
    assert secure_token_service.get_token(db, account.access_token_ref).encryption_method == "kms"


@pytest.mark.asyncio
async def test_fallback_promotion_succeeds_once_kms_returns(
    db, test_org, fallback_secret, kms_down, make_account, pool
):
    account = make_account(db, test_org, EmailAccount, refresh_token=None)
    job = token_queue_service.enqueue_token_encryption(
        db,
        org_id=account.organization_id,
        email_account_id=account.id,
        token_ref=account.access_token_ref,
        provider="google",
        external_account_id=account.external_account_id,
    )
    _make_due(db, job)
    assert await pool.execute(job.id) is True
    kms_down.restore()
    _make_due(db, db.get(Job, job.id))

    assert await pool.execute(job.id) is True

    db.expire_all()
    assert db.get(Job, job.id).status == JobStatus.COMPLETED.value
    token = secure_token_service.get_token(db, account.access_token_ref)
    assert token.encryption_method == "kms"
    assert token.retry_count == 2
    assert secure_token_service.get_tokens(db, [account.access_token_ref]).access_token == "ya29.test-access"
    assert db.get(EmailAccount, account.id).status == AccountStatus.CONNECTED.value


@pytest.mark.asyncio
async def test_failing_dead_letter_hook_does_not_escape(db, test_org, kms_down, make_account, pool, monkeypatch):
    from crm_api import worker

    account = make_account(db, test_org, EmailAccount, refresh_token=None)
    job = _encrypt_job(db, account)
    calls: list[str] = []

    async def broken_hook(_db, dead_job):
        calls.append(dead_job.job_type)
        raise RuntimeError("hook exploded")

    monkeypatch.setattr(worker, "resolve_dead_letter_handler", lambda job_type: broken_hook)

    assert await pool.execute(job.id) is True

    assert calls == [JobType.ENCRYPT_TOKEN.value]
    db.expire_all()
    assert db.get(Job, job.id).status == JobStatus.DEAD_LETTER.value
    assert db.query(AuditLog).filter(AuditLog.event_type == AuditEventType.DEAD_LETTER_JOB.value).count() == 1

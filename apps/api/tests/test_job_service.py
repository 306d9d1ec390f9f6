from datetime import timedelta

from crm_api.db.enums import JobStatus, JobType
from crm_api.db.models import Job
from crm_api.services import job_service
from crm_api.utils.datetime_utils import ensure_utc, utc_now


def _due_job(db, org, job_type=JobType.ENCRYPT_TOKEN, **kwargs) -> Job:
    return job_service.schedule_job(
        db=db,
        org_id=org.id,
        job_type=job_type,
        payload={"message": "test"},
        run_at=utc_now() - timedelta(seconds=1),
        **kwargs,
    )


def test_schedule_job_applies_type_policy(db, test_org):
    before = utc_now()
    job = job_service.schedule_job(
        db=db, org_id=test_org.id, job_type=JobType.ENCRYPT_TOKEN, payload={}
    )

    assert job.status == JobStatus.PENDING.value
    assert job.max_attempts == 5
    assert job.backoff_seconds == 2
    assert ensure_utc(job.run_at) >= before + timedelta(seconds=1)

    sync = job_service.schedule_job(db=db, org_id=test_org.id, job_type=JobType.START_SYNC, payload={})
    assert (sync.max_attempts, sync.backoff_seconds) == (3, 5)


def test_schedule_job_is_idempotent_by_key(db, test_org):
    first = job_service.schedule_job(
        db=db, org_id=test_org.id, job_type=JobType.START_SYNC, payload={}, idempotency_key="k-1"
    )
    second = job_service.schedule_job(
        db=db, org_id=test_org.id, job_type=JobType.START_SYNC, payload={}, idempotency_key="k-1"
    )

    assert first.id == second.id
    assert db.query(Job).count() == 1


def test_get_pending_jobs_only_returns_due(db, test_org):
    due = _due_job(db, test_org)
    job_service.schedule_job(
        db=db,
        org_id=test_org.id,
        job_type=JobType.ENCRYPT_TOKEN,
        payload={},
        run_at=utc_now() + timedelta(hours=1),
    )

    assert [job.id for job in job_service.get_pending_jobs(db)] == [due.id]


def test_claim_job_is_atomic(db, test_org):
    job = _due_job(db, test_org)

    assert job_service.claim_job(db, job) is True
    assert job.status == JobStatus.RUNNING.value
    assert job.attempts == 1
    assert job_service.claim_job(db, job) is False


def test_backoff_is_exponential(db, test_org):
    job = _due_job(db, test_org)
    delays = []
    for attempt in range(1, 4):
        job.attempts = attempt
        delays.append(job_service.compute_backoff(job).total_seconds())

    assert delays == [2, 4, 8]


def test_failed_job_retries_then_dead_letters(db, test_org):
    job = _due_job(db, test_org, max_attempts=2)

    job_service.claim_job(db, job)
    job_service.mark_job_failed(db, job, "KmsUnavailable: down")
    assert job.status == JobStatus.PENDING.value
    assert ensure_utc(job.run_at) > utc_now()

    job.run_at = utc_now()
    db.commit()
    job_service.claim_job(db, job)
    job_service.mark_job_failed(db, job, "KmsUnavailable: still down")

    assert job.status == JobStatus.DEAD_LETTER.value
    assert job.completed_at is not None
    assert job.last_error == "KmsUnavailable: still down"


def test_dead_letter_is_terminal(db, test_org):
    job = _due_job(db, test_org)
    job_service.claim_job(db, job)
    job_service.mark_job_failed(db, job, "AuthenticationFailed", retryable=False)
    assert job.status == JobStatus.DEAD_LETTER.value
    assert job.attempts == 1

    assert job_service.claim_job(db, job) is False
    assert job_service.get_pending_jobs(db) == []
    assert job_service.requeue_stale_jobs(db, older_than_minutes=0) == 0
    db.refresh(job)
    assert job.status == JobStatus.DEAD_LETTER.value


def test_requeue_stale_running_jobs(db, test_org):
    job = _due_job(db, test_org)
    job_service.claim_job(db, job)
    job.started_at = utc_now() - timedelta(hours=1)
    db.commit()

    assert job_service.requeue_stale_jobs(db, older_than_minutes=15) == 1
    db.refresh(job)
    assert job.status == JobStatus.PENDING.value


def test_queue_stats_and_purge(db, test_org):
    done = _due_job(db, test_org)
    job_service.claim_job(db, done)
    job_service.mark_job_completed(db, done)
    _due_job(db, test_org, job_type=JobType.START_SYNC)

    stats = job_service.get_queue_stats(db)
    assert stats[JobType.ENCRYPT_TOKEN.value][JobStatus.COMPLETED.value] == 1
    assert stats[JobType.START_SYNC.value][JobStatus.PENDING.value] == 1
    assert stats[JobType.HEALTH_PROBE.value][JobStatus.PENDING.value] == 0

    assert job_service.purge_finished_jobs(db, older_than_days=1) == 0
    done.completed_at = utc_now() - timedelta(days=2)
    db.commit()
    assert job_service.purge_finished_jobs(db, older_than_days=1) == 1
    assert db.query(Job).count() == 1


def test_has_active_job_matches_prefix_of_live_jobs(db, test_org):
    job = _due_job(db, test_org, idempotency_key="webhook-renewal:a1:chan_1:sweep:7")

    assert job_service.has_active_job(db, "webhook-renewal:a1:chan_1") is True
    # "_" is literal, not a LIKE wildcard.
    assert job_service.has_active_job(db, "webhook-renewal:a1:chanX1") is False

    job_service.mark_job_failed(db, job, "InsufficientPermission: denied", retryable=False)
    assert job_service.has_active_job(db, "webhook-renewal:a1:chan_1") is False

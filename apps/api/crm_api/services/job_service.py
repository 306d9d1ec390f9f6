"""Job service - durable job scheduling, claiming, backoff and dead-lettering."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from crm_api.core.config import settings
from crm_api.db.enums import JobStatus, JobType
from crm_api.db.models import Job
from crm_api.utils.datetime_utils import utc_now


@dataclass(frozen=True)
class JobPolicy:
    max_attempts: int
    backoff_seconds: int
    initial_delay_seconds: int = 0


JOB_POLICIES: dict[JobType, JobPolicy] = {
    JobType.ENCRYPT_TOKEN: JobPolicy(max_attempts=5, backoff_seconds=2, initial_delay_seconds=1),
    JobType.START_SYNC: JobPolicy(max_attempts=3, backoff_seconds=5, initial_delay_seconds=2),
    # Probes classify and persist; they never raise into the retry path.
    JobType.HEALTH_PROBE: JobPolicy(max_attempts=1, backoff_seconds=0),
    JobType.WEBHOOK_RENEWAL: JobPolicy(max_attempts=3, backoff_seconds=60),
    JobType.REFRESH_TOKEN: JobPolicy(max_attempts=3, backoff_seconds=30),
}


def get_policy(job_type: JobType | str) -> JobPolicy:
    return JOB_POLICIES.get(JobType(job_type), JobPolicy(max_attempts=3, backoff_seconds=0))


def compute_backoff(job: Job) -> timedelta:
    """Exponential backoff: backoff_seconds * 2 ** (attempts - 1)."""
    if job.backoff_seconds <= 0:
        return timedelta(0)
    exponent = max(job.attempts - 1, 0)
    return timedelta(seconds=job.backoff_seconds * (2**exponent))


def get_job_by_idempotency_key(db: Session, idempotency_key: str) -> Job | None:
    return db.scalar(select(Job).where(Job.idempotency_key == idempotency_key))


def has_active_job(db: Session, key_prefix: str) -> bool:
    """True when a pending or running job's idempotency key starts with key_prefix."""
    return (
        db.scalar(
            select(Job.id)
            .where(
                Job.idempotency_key.startswith(key_prefix, autoescape=True),
                Job.status.not_in(JobStatus.terminal()),
            )
            .limit(1)
        )
        is not None
    )


def schedule_job(
    db: Session,
    org_id: UUID,
    job_type: JobType,
    payload: dict,
    run_at: datetime | None = None,
    idempotency_key: str | None = None,
    delay_seconds: float | None = None,
    max_attempts: int | None = None,
    backoff_seconds: int | None = None,
    commit: bool = True,
) -> Job:
    """
    Schedule a new background job.

    Attempts and backoff default to the job type's policy. If run_at and
    delay_seconds are both None the policy's initial delay applies.
    If an idempotency_key is already taken the existing job is returned;
    a concurrent insert of the same key still raises IntegrityError (caller
    should catch and handle).
    """
    if idempotency_key:
        existing = get_job_by_idempotency_key(db, idempotency_key)
        if existing:
            return existing

    policy = get_policy(job_type)
    if run_at is None:
        delay = policy.initial_delay_seconds if delay_seconds is None else delay_seconds
        run_at = utc_now() + timedelta(seconds=max(delay, 0))

    job = Job(
        organization_id=org_id,
        job_type=job_type.value,
        payload=payload,
        run_at=run_at,
        status=JobStatus.PENDING.value,
        max_attempts=max_attempts if max_attempts is not None else policy.max_attempts,
        backoff_seconds=backoff_seconds if backoff_seconds is not None else policy.backoff_seconds,
        idempotency_key=idempotency_key,
    )
    db.add(job)
    if commit:
        db.commit()
        db.refresh(job)
    else:
        db.flush()
    return job


def get_pending_jobs(db: Session, limit: int = 10, now: datetime | None = None) -> list[Job]:
    """
    Get pending jobs that are due to run.

    Returns jobs where status='pending' and run_at <= now, ordered by run_at.
    """
    now = now or utc_now()
    return list(
        db.scalars(
            select(Job)
            .where(Job.status == JobStatus.PENDING.value, Job.run_at <= now)
            .order_by(Job.run_at)
            .limit(limit)
        )
    )


def claim_job(db: Session, job: Job) -> bool:
    """
    Atomically move a pending job to running and count the attempt.

    Returns False when another worker claimed it first.
    """
    result = db.execute(
        update(Job)
        .where(Job.id == job.id, Job.status == JobStatus.PENDING.value)
        .values(
            status=JobStatus.RUNNING.value,
            attempts=Job.attempts + 1,
            started_at=utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        return False
    db.refresh(job)
    return True


def mark_job_completed(db: Session, job: Job) -> Job:
    """Mark a job as completed."""
    job.status = JobStatus.COMPLETED.value
    job.completed_at = utc_now()
    job.last_error = None
    db.commit()
    db.refresh(job)
    return job


def mark_job_failed(db: Session, job: Job, error: str, retryable: bool = True) -> Job:
    """
    Record a failed attempt.

    If attempts < max_attempts (and the error is retryable), reschedule as
    pending after exponential backoff. Otherwise the job is dead-lettered,
    which is terminal: nothing moves a dead_letter job back to pending.
    """
    job.last_error = error[:2000]
    if retryable and job.attempts < job.max_attempts:
        job.status = JobStatus.PENDING.value
        job.run_at = utc_now() + compute_backoff(job)
    else:
        job.status = JobStatus.DEAD_LETTER.value
        job.completed_at = utc_now()
    db.commit()
    db.refresh(job)
    return job


def requeue_stale_jobs(db: Session, older_than_minutes: int = 15) -> int:
    """Return jobs stuck in running (worker crashed mid-job) to pending."""
    cutoff = utc_now() - timedelta(minutes=older_than_minutes)
    result = db.execute(
        update(Job)
        .where(Job.status == JobStatus.RUNNING.value, Job.started_at < cutoff)
        .values(status=JobStatus.PENDING.value, run_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount or 0


def get_queue_stats(db: Session, org_id: UUID | None = None) -> dict[str, dict[str, int]]:
    """Return {job_type: {status: count}} with every known type and status present."""
    stats: dict[str, dict[str, int]] = {
        job_type.value: {status.value: 0 for status in JobStatus} for job_type in JobType
    }
    query = select(Job.job_type, Job.status, func.count()).group_by(Job.job_type, Job.status)
    if org_id:
        query = query.where(Job.organization_id == org_id)
    for job_type, status, count in db.execute(query):
        stats.setdefault(job_type, {s.value: 0 for s in JobStatus})[status] = count
    return stats


def purge_finished_jobs(db: Session, older_than_days: int | None = None) -> int:
    """Delete completed and dead-lettered jobs past the retention window."""
    days = settings.JOB_RETENTION_DAYS if older_than_days is None else older_than_days
    cutoff = utc_now() - timedelta(days=days)
    result = db.execute(
        delete(Job)
        .where(Job.status.in_(JobStatus.terminal()), Job.completed_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount or 0
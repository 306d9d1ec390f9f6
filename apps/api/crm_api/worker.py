"""
Background worker for processing scheduled jobs.

Usage:
    python -m crm_api.worker

The worker polls the jobs table and dispatches each due job to its
registered handler. Failed jobs are rescheduled with exponential backoff
until their attempts run out, then dead-lettered.
For production, run this as a separate process (e.g., systemd service, Docker container).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from crm_api.core.config import settings
from crm_api.core.encryption import EnvelopeCrypto, set_envelope_crypto
from crm_api.core.errors import IntegrationError
from crm_api.core.structured_logging import build_log_context, configure_logging
from crm_api.db.enums import JobStatus
from crm_api.db.models import Job
from crm_api.jobs.registry import resolve_dead_letter_handler, resolve_job_handler
from crm_api.services import audit_service, job_service

logger = logging.getLogger(__name__)


def is_retryable(exc: BaseException) -> bool:
    """Permanent integration errors dead-letter immediately; everything else retries."""
    if isinstance(exc, IntegrationError):
        return exc.transient
    return True


async def process_job(db: Session, job: Job) -> None:
    """Process a single job based on its type."""
    logger.info(
        "Processing job %s (type=%s, attempt=%s)",
        job.id,
        job.job_type,
        job.attempts,
        extra=build_log_context(job_id=str(job.id), job_type=job.job_type),
    )
    handler = resolve_job_handler(job.job_type)
    await handler(db, job)


async def _record_job_failure(db: Session, job: Job, exc: Exception) -> None:
    error_msg = f"{type(exc).__name__}: {exc}"
    job_service.mark_job_failed(db, job, error_msg, retryable=is_retryable(exc))
    context = build_log_context(
        org_id=str(job.organization_id), job_id=str(job.id), job_type=job.job_type
    )
    if job.status != JobStatus.DEAD_LETTER.value:
        logger.warning(
            "Job %s failed (attempt %s/%s): %s; retry at %s",
            job.id,
            job.attempts,
            job.max_attempts,
            type(exc).__name__,
            job.run_at,
            extra=context,
        )
        return

    logger.error("Job %s dead-lettered after %s attempts", job.id, job.attempts, extra=context)
    payload = job.payload or {}
    account_id = payload.get("email_account_id") or payload.get("account_id")
    audit_service.log_dead_letter(
        db,
        org_id=job.organization_id,
        job_id=job.id,
        job_type=job.job_type,
        attempts=job.attempts,
        error=job.last_error,
        account_id=UUID(account_id) if account_id else None,
    )
    db.commit()
    dead_letter_handler = resolve_dead_letter_handler(job.job_type)
    if not dead_letter_handler:
        return
    # The job is already terminal; a failing hook must not escape the worker.
    try:
        await dead_letter_handler(db, job)
    except Exception:
        db.rollback()
        logger.exception("Dead-letter handler failed for job %s", job.id, extra=context)


class WorkerPool:
    """
    A set of polling consumers over the jobs table.

    Constructed explicitly, started and stopped by its owner (the worker
    process or the worker service). Consumers claim jobs atomically, so any
    number of pools and processes can share one database.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        *,
        concurrency: int = 1,
        poll_interval: float | None = None,
        batch_size: int | None = None,
        envelope: EnvelopeCrypto | None = None,
    ):
        if session_factory is None:
            from crm_api.db.session import SessionLocal

            session_factory = SessionLocal
        self.session_factory = session_factory
        self.concurrency = max(concurrency, 1)
        self.poll_interval = settings.WORKER_POLL_INTERVAL if poll_interval is None else poll_interval
        self.batch_size = batch_size or settings.WORKER_BATCH_SIZE
        self.envelope = envelope
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        if self.envelope is not None:
            set_envelope_crypto(self.envelope)
        with self.session_factory() as db:
            requeued = job_service.requeue_stale_jobs(db)
        if requeued:
            logger.warning("Requeued %s stale running job(s)", requeued)
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._consume(index), name=f"worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info(
            "Worker pool started (consumers=%s, poll interval=%ss, batch size=%s)",
            self.concurrency,
            self.poll_interval,
            self.batch_size,
        )

    async def stop(self) -> None:
        self._stopping.set()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        logger.info("Worker pool stopped")

    async def run_forever(self) -> None:
        await self.start()
        try:
            await asyncio.gather(*self._tasks)
        finally:
            await self.stop()

    async def _consume(self, index: int) -> None:
        while not self._stopping.is_set():
            try:
                processed = await self.run_once()
            except Exception:
                logger.exception("Error in worker loop (consumer %s)", index)
                processed = 0
            if not processed:
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)

    async def run_once(self) -> int:
        """Claim and run one batch of due jobs. Returns the number processed."""
        with self.session_factory() as db:
            job_ids = [job.id for job in job_service.get_pending_jobs(db, limit=self.batch_size)]
        processed = 0
        for job_id in job_ids:
            if await self.execute(job_id):
                processed += 1
        return processed

    async def execute(self, job_id: UUID) -> bool:
        """Run one job in its own session. Returns False if another consumer claimed it."""
        with self.session_factory() as db:
            job = db.get(Job, job_id)
            if not job or not job_service.claim_job(db, job):
                return False
            try:
                await process_job(db, job)
            except Exception as exc:
                db.rollback()
                await _record_job_failure(db, job, exc)
                return True
            job_service.mark_job_completed(db, job)
            logger.info("Job %s completed successfully", job.id)
            return True


def main() -> None:
    """Entry point for the worker."""
    configure_logging()
    pool = WorkerPool(concurrency=settings.WORKER_CONCURRENCY)
    try:
        asyncio.run(pool.run_forever())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")
    except Exception:
        logger.exception("Worker crashed", extra=build_log_context(action="worker"))
        raise


if __name__ == "__main__":
    main()

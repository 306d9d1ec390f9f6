"""Job handler registry."""

from __future__ import annotations

from typing import Awaitable, Callable, Mapping

from crm_api.db.enums import JobType
from crm_api.jobs.handlers import health, sync, tokens, watch

JobHandler = Callable[[object, object], Awaitable[None]]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    JobType.ENCRYPT_TOKEN.value: tokens.process_encrypt_token,
    JobType.START_SYNC.value: sync.process_start_sync,
    JobType.HEALTH_PROBE.value: health.process_health_probe,
    JobType.WEBHOOK_RENEWAL.value: watch.process_webhook_renewal,
    JobType.REFRESH_TOKEN.value: tokens.process_refresh_token,
}

# Run once when a job moves to dead_letter.
DEAD_LETTER_HANDLERS: Mapping[str, JobHandler] = {
    JobType.ENCRYPT_TOKEN.value: tokens.dead_letter_encrypt_token,
    JobType.START_SYNC.value: sync.dead_letter_start_sync,
    JobType.WEBHOOK_RENEWAL.value: watch.dead_letter_webhook_renewal,
}


def resolve_job_handler(job_type: str) -> JobHandler:
    handler = JOB_HANDLERS.get(job_type)
    if not handler:
        raise ValueError(f"Unknown job type: {job_type}")
    return handler


def resolve_dead_letter_handler(job_type: str) -> JobHandler | None:
    return DEAD_LETTER_HANDLERS.get(job_type)

"""Pydantic schemas for integration webhooks and scheduled endpoints."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel


class WebhookAck(BaseModel):
    """Push notification acknowledgement (always HTTP 202)."""
    status: Literal["accepted", "ignored"]
    reason: str | None = None


class ProbeScheduleResponse(BaseModel):
    jobs_created: int
    duplicates_skipped: int


class RenewalSweepResponse(BaseModel):
    jobs_created: int
    already_pending: int


class TokenRefreshScheduleResponse(BaseModel):
    jobs_created: int
    already_scheduled: int


class ReconcileResponse(BaseModel):
    reconciled: int
    skipped: int
    failed: int


class JobPurgeResponse(BaseModel):
    deleted: int


class TokenEncryptionStatusRead(BaseModel):
    """Per-org token encryption summary."""
    total: int
    by_status: dict[str, int]
    by_method: dict[str, int]
    oldest_failure_at: datetime | None = None

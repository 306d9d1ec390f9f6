"""
Push channel (watch) lifecycle for Gmail and Google Calendar.

Channels expire, so every successful setup persists the expiration and a
renewal due time (expiration - WATCH_RENEWAL_LEAD_HOURS), and schedules a
renewal job for that moment. sweep_due_renewals re-enqueues anything whose
due time passed without a renewal (worker restarts, lost jobs).
"""

from __future__ import annotations

import hmac
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping
from uuid import UUID

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_api.core.config import settings
from crm_api.core.errors import ChannelSetupFailed, IntegrationError
from crm_api.core.structured_logging import build_log_context
from crm_api.db.enums import AccountKind, AccountStatus, AuditEventType, JobType
from crm_api.db.models import CalendarAccount, EmailAccount, Job
from crm_api.services import audit_service, google_api, job_service
from crm_api.services.http_service import provider_client
from crm_api.utils.datetime_utils import ensure_utc, from_epoch_millis, utc_now

logger = logging.getLogger(__name__)

ACCOUNT_MODELS = {AccountKind.EMAIL: EmailAccount, AccountKind.CALENDAR: CalendarAccount}
PUBSUB_TOPIC_RE = re.compile(r"^projects/[^/]+/topics/[^/]+$")
DEFAULT_CHANNEL_TTL = timedelta(days=7)

HEADER_CHANNEL_ID = "x-goog-channel-id"
HEADER_RESOURCE_ID = "x-goog-resource-id"
HEADER_RESOURCE_STATE = "x-goog-resource-state"
HEADER_CHANNEL_TOKEN = "x-goog-channel-token"


@dataclass
class ChannelInfo:
    channel_id: str
    resource_id: str | None
    expiration: datetime
    renewal_due_at: datetime
    renewal_job_id: UUID | None = None
    history_id: str | None = None


@dataclass
class NotificationValidation:
    valid: bool
    channel_id: str | None = None
    resource_id: str | None = None
    state: str | None = None
    reason: str | None = None


# =============================================================================
# Helpers
# =============================================================================


def _load_account(
    db: Session, account_id: UUID, kind: AccountKind
) -> EmailAccount | CalendarAccount:
    account = db.get(ACCOUNT_MODELS[kind], account_id)
    if not account:
        raise ValueError(f"{kind.value} account {account_id} not found")
    return account


async def _access_token(
    db: Session, account: EmailAccount | CalendarAccount, client: httpx.AsyncClient
) -> str:
    """Current access token, refreshed first when it has expired."""
    from crm_api.services import oauth_callback_service

    return await oauth_callback_service.ensure_fresh_access_token(db, account, client=client)


def make_channel_id(kind: AccountKind, account_id: UUID) -> str:
    return f"crm-{kind.value}-{account_id}-{int(time.time() * 1000)}"


def compute_renewal_due(expiration: datetime, now: datetime | None = None) -> tuple[datetime, float]:
    """Return (due time, delay seconds). Past-due renewals run immediately."""
    now = now or utc_now()
    due = ensure_utc(expiration) - timedelta(hours=settings.WATCH_RENEWAL_LEAD_HOURS)
    delay = max((due - now).total_seconds(), 0.0)
    return now + timedelta(seconds=delay), delay


def schedule_renewal(
    db: Session,
    account: EmailAccount | CalendarAccount,
    kind: AccountKind,
    run_at: datetime,
    idempotency_key: str | None = None,
) -> Job:
    return job_service.schedule_job(
        db=db,
        org_id=account.organization_id,
        job_type=JobType.WEBHOOK_RENEWAL,
        payload={
            "account_id": str(account.id),
            "account_kind": kind.value,
            "mode": "renew",
            "channel_id": account.channel_id,
        },
        run_at=run_at,
        idempotency_key=idempotency_key or f"webhook-renewal:{account.id}:{account.channel_id}",
    )


async def _register_channel(
    client: httpx.AsyncClient,
    account: EmailAccount | CalendarAccount,
    kind: AccountKind,
    access_token: str,
) -> tuple[str, str | None, datetime | None, str | None]:
    """Returns (channel_id, resource_id, expiration, history_id)."""
    channel_id = make_channel_id(kind, account.id)
    if kind == AccountKind.CALENDAR:
        data = await google_api.watch_calendar(
            client,
            access_token,
            calendar_id=account.calendar_id,
            channel_id=channel_id,
            address=settings.GOOGLE_CALENDAR_WEBHOOK_URL,
            channel_token=settings.calendar_channel_token,
        )
        expiration = from_epoch_millis(data.get("expiration"))
        return data.get("id") or channel_id, data.get("resourceId"), expiration, None

    topic = settings.GOOGLE_PUBSUB_TOPIC
    if not topic or not PUBSUB_TOPIC_RE.match(topic):
        raise ChannelSetupFailed("GOOGLE_PUBSUB_TOPIC must look like projects/<project>/topics/<topic>")
    data = await google_api.watch_gmail(client, access_token, topic)
    history_id = str(data["historyId"]) if data.get("historyId") else None
    return channel_id, topic, from_epoch_millis(data.get("expiration")), history_id


# =============================================================================
# Setup / renew / stop
# =============================================================================


async def _start_watch(
    db: Session,
    account: EmailAccount | CalendarAccount,
    kind: AccountKind,
    client: httpx.AsyncClient,
    failure_status: AccountStatus,
    event_type: AuditEventType,
) -> ChannelInfo:
    log_context = build_log_context(
        org_id=str(account.organization_id), account_id=str(account.id), action=event_type.value
    )
    try:
        access_token = await _access_token(db, account, client)
        # No transaction stays open across provider calls.
        db.commit()
        channel_id, resource_id, expiration, history_id = await _register_channel(
            client, account, kind, access_token
        )
    except IntegrationError as exc:
        account.status = failure_status.value
        account.error_reason = str(exc)[:500]
        audit_service.log_event(
            db=db,
            org_id=account.organization_id,
            event_type=AuditEventType.WATCH_FAILED,
            target_type=f"{kind.value}_account",
            target_id=account.id,
            details={"status": failure_status.value, "error_code": exc.code},
        )
        db.commit()
        logger.error("Watch channel %s: %s", failure_status.value, exc.code, extra=log_context)
        raise

    now = utc_now()
    expiration = ensure_utc(expiration) if expiration else now + DEFAULT_CHANNEL_TTL
    renewal_due_at, delay = compute_renewal_due(expiration, now)

    account.channel_id = channel_id
    account.channel_resource_id = resource_id
    account.channel_expiration = expiration
    account.channel_renewal_due_at = renewal_due_at
    if history_id and isinstance(account, EmailAccount):
        account.history_id = history_id
    if account.status in (AccountStatus.WATCH_FAILED.value, AccountStatus.WATCH_RENEWAL_FAILED.value):
        account.status = AccountStatus.CONNECTED.value
        account.error_reason = None
    audit_service.log_event(
        db=db,
        org_id=account.organization_id,
        event_type=event_type,
        target_type=f"{kind.value}_account",
        target_id=account.id,
        details={"channel_id": channel_id, "expiration": expiration.isoformat()},
    )
    db.commit()

    job = schedule_renewal(db, account, kind, run_at=renewal_due_at)
    logger.info("Watch channel active; renewal in %.0fs", delay, extra=log_context)
    return ChannelInfo(
        channel_id=channel_id,
        resource_id=resource_id,
        expiration=expiration,
        renewal_due_at=renewal_due_at,
        renewal_job_id=job.id,
        history_id=history_id,
    )


async def setup_watch(
    db: Session,
    account_id: UUID,
    account_kind: AccountKind = AccountKind.CALENDAR,
    *,
    client: httpx.AsyncClient | None = None,
) -> ChannelInfo:
    """Register a push channel and schedule its renewal. Failure → watch_failed."""
    account = _load_account(db, account_id, account_kind)
    if client is None:
        async with provider_client() as owned:
            return await _start_watch(
                db, account, account_kind, owned, AccountStatus.WATCH_FAILED, AuditEventType.WATCH_STARTED
            )
    return await _start_watch(
        db, account, account_kind, client, AccountStatus.WATCH_FAILED, AuditEventType.WATCH_STARTED
    )


async def stop_watch(
    client: httpx.AsyncClient,
    access_token: str,
    channel_id: str,
    resource_id: str | None,
    account_kind: AccountKind = AccountKind.CALENDAR,
) -> None:
    if account_kind == AccountKind.EMAIL:
        await google_api.stop_gmail(client, access_token)
        return
    if not resource_id:
        raise ChannelSetupFailed(f"Channel {channel_id} has no resource id")
    await google_api.stop_channel(client, access_token, channel_id, resource_id)


async def renew_watch(
    db: Session,
    account_id: UUID,
    account_kind: AccountKind = AccountKind.CALENDAR,
    *,
    client: httpx.AsyncClient | None = None,
) -> ChannelInfo:
    """
    Replace the current channel with a fresh one.

    Stopping the old channel is best-effort; losing push notifications is
    worse than an orphaned channel. Failure → watch_renewal_failed.
    """
    if client is None:
        async with provider_client() as owned:
            return await renew_watch(db, account_id, account_kind, client=owned)

    account = _load_account(db, account_id, account_kind)
    if account.channel_id:
        try:
            access_token = await _access_token(db, account, client)
            db.commit()
            await stop_watch(
                client, access_token, account.channel_id, account.channel_resource_id, account_kind
            )
        except (IntegrationError, httpx.HTTPError) as exc:
            logger.warning(
                "Failed to stop old channel: %s",
                type(exc).__name__,
                extra=build_log_context(account_id=str(account_id), action="watch_stop"),
            )

    return await _start_watch(
        db, account, account_kind, client, AccountStatus.WATCH_RENEWAL_FAILED, AuditEventType.WATCH_RENEWED
    )


# =============================================================================
# Inbound notifications
# =============================================================================


def validate_notification(headers: Mapping[str, str]) -> NotificationValidation:
    """
    Authenticate a push notification by its headers. Fails closed.

    Channel id and resource id are required; when a channel token is
    configured it must be present and match.
    """
    normalized = {key.lower(): value for key, value in headers.items()}
    channel_id = normalized.get(HEADER_CHANNEL_ID)
    resource_id = normalized.get(HEADER_RESOURCE_ID)
    state = normalized.get(HEADER_RESOURCE_STATE)
    result = NotificationValidation(
        valid=False, channel_id=channel_id, resource_id=resource_id, state=state
    )

    if not channel_id or not resource_id:
        result.reason = "missing_headers"
        return result

    expected = settings.calendar_channel_token
    if expected:
        provided = normalized.get(HEADER_CHANNEL_TOKEN) or ""
        if not hmac.compare_digest(provided.encode(), expected.encode()):
            result.reason = "invalid_token"
            return result

    result.valid = True
    return result


def find_account_by_channel(
    db: Session, channel_id: str, resource_id: str | None = None
) -> tuple[EmailAccount | CalendarAccount, AccountKind] | None:
    for kind, model in ACCOUNT_MODELS.items():
        query = select(model).where(model.channel_id == channel_id)
        if resource_id:
            query = query.where(model.channel_resource_id == resource_id)
        account = db.scalar(query)
        if account:
            return account, kind
    return None


# =============================================================================
# Sweep and job handler
# =============================================================================


def sweep_due_renewals(db: Session, now: datetime | None = None) -> dict[str, int]:
    """
    Enqueue renewals whose persisted due time has passed.

    Channels whose renewal already failed for good are left alone: the
    dead-letter handler clears their due time and only a new setup (user
    reconnect) schedules them again.
    """
    now = now or utc_now()
    bucket = int(now.timestamp()) // 3600
    jobs_created = 0
    already_pending = 0

    for kind, model in ACCOUNT_MODELS.items():
        due_accounts = db.scalars(
            select(model).where(
                model.channel_id.is_not(None),
                model.channel_renewal_due_at.is_not(None),
                model.channel_renewal_due_at <= now,
                model.status != AccountStatus.WATCH_RENEWAL_FAILED.value,
            )
        ).all()
        for account in due_accounts:
            base_key = f"webhook-renewal:{account.id}:{account.channel_id}"
            sweep_key = f"{base_key}:sweep:{bucket}"
            if job_service.has_active_job(db, base_key) or job_service.get_job_by_idempotency_key(
                db, sweep_key
            ):
                already_pending += 1
                continue
            schedule_renewal(db, account, kind, run_at=now, idempotency_key=sweep_key)
            jobs_created += 1

    return {"jobs_created": jobs_created, "already_pending": already_pending}


async def process_webhook_renewal_job(db: Session, job: Job) -> None:
    payload: dict[str, Any] = job.payload or {}
    account_id = payload.get("account_id")
    if not account_id:
        raise ValueError("webhook_renewal payload missing: account_id")
    kind = AccountKind(payload.get("account_kind") or AccountKind.CALENDAR.value)

    if payload.get("mode") == "setup":
        await setup_watch(db, UUID(account_id), kind)
        return

    account = _load_account(db, UUID(account_id), kind)
    expected_channel = payload.get("channel_id")
    if expected_channel and account.channel_id and account.channel_id != expected_channel:
        logger.info(
            "Channel already renewed; skipping",
            extra=build_log_context(account_id=account_id, job_id=str(job.id), job_type=job.job_type),
        )
        return
    await renew_watch(db, UUID(account_id), kind)


def handle_webhook_renewal_dead_letter(db: Session, job: Job) -> int:
    """
    Stop renewing a channel whose setup or renewal ran out of attempts.

    Clearing channel_renewal_due_at keeps the sweep from re-enqueueing it.
    Returns 1 when the account changed; replays change nothing.
    """
    payload: dict[str, Any] = job.payload or {}
    account_id = payload.get("account_id")
    if not account_id:
        return 0
    kind = AccountKind(payload.get("account_kind") or AccountKind.CALENDAR.value)
    account = db.get(ACCOUNT_MODELS[kind], UUID(account_id))
    if not account:
        return 0

    changed = False
    if payload.get("mode") == "setup":
        failure_status = AccountStatus.WATCH_FAILED
    else:
        expected_channel = payload.get("channel_id")
        if expected_channel and account.channel_id and account.channel_id != expected_channel:
            return 0
        failure_status = AccountStatus.WATCH_RENEWAL_FAILED
        if account.channel_renewal_due_at is not None:
            account.channel_renewal_due_at = None
            changed = True
    if account.status != failure_status.value:
        account.status = failure_status.value
        account.error_reason = (job.last_error or "Channel renewal failed")[:500]
        changed = True
    if not changed:
        return 0

    db.commit()
    logger.error(
        "Watch channel %s after retries; reconnect required",
        failure_status.value,
        extra=build_log_context(
            org_id=str(account.organization_id),
            account_id=account_id,
            job_id=str(job.id),
            job_type=job.job_type,
        ),
    )
    return 1


def enqueue_watch_setup(
    db: Session, account: EmailAccount | CalendarAccount, kind: AccountKind
) -> Job | None:
    """Queue channel setup for an account whose credentials just became usable."""
    if kind == AccountKind.EMAIL and not settings.GOOGLE_PUBSUB_TOPIC:
        return None
    return job_service.schedule_job(
        db=db,
        org_id=account.organization_id,
        job_type=JobType.WEBHOOK_RENEWAL,
        payload={"account_id": str(account.id), "account_kind": kind.value, "mode": "setup"},
        delay_seconds=0,
        idempotency_key=f"webhook-setup:{account.id}:{account.access_token_ref}",
    )

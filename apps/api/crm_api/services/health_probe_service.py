"""
Health probes for integration accounts.

A probe decides whether an account is actually usable:

1. Local checks (no network): encryption must be ok, a token ref must exist
   and the access credential must not be past its tracked expiry.
2. One lightweight read-only call per capability (Gmail profile, Calendar
   list). 2xx → ok, 401 → invalid/expired token, 403 → insufficient
   permission, anything else (including timeouts) → provider error.
3. connected iff every probed service is ok, else action_needed. An
   unexpected exception while probing yields disconnected.

Results are written to the account and the audit log. Probe failures are
never raised to callers.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable
from uuid import UUID

import httpx
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crm_api.core.config import settings
from crm_api.core.structured_logging import build_log_context
from crm_api.db.enums import (
    AccountKind,
    AccountStatus,
    AuditEventType,
    EncryptionStatus,
    JobType,
    ProbeService,
)
from crm_api.db.models import CalendarAccount, EmailAccount, Job, Organization
from crm_api.services import audit_service, google_api, job_service, secure_token_service
from crm_api.services.http_service import provider_client
from crm_api.utils.datetime_utils import ensure_utc, is_past, utc_now

logger = logging.getLogger(__name__)

SERVICE_LABELS = {ProbeService.GMAIL: "Gmail", ProbeService.CALENDAR: "Calendar"}
ACCOUNT_MODELS = {AccountKind.EMAIL: EmailAccount, AccountKind.CALENDAR: CalendarAccount}
SERVICES_BY_KIND = {
    AccountKind.EMAIL: (ProbeService.GMAIL, ProbeService.CALENDAR),
    AccountKind.CALENDAR: (ProbeService.CALENDAR,),
}

ACTIVE_ORG_WINDOW = timedelta(days=7)
ACTIVE_PROBE_INTERVAL_SECONDS = 5 * 60
INACTIVE_PROBE_INTERVAL_SECONDS = 30 * 60


@dataclass
class ServiceCheck:
    service: str
    status: str  # ok, fail
    reason: str | None = None
    http_status: int | None = None


@dataclass
class HealthProbeResult:
    account_id: str
    account_kind: str
    overall_status: str
    services: dict[str, ServiceCheck] = field(default_factory=dict)
    reason: str | None = None
    checked_at: datetime = field(default_factory=utc_now)
    cached: bool = False

    @property
    def ok(self) -> bool:
        return self.overall_status == AccountStatus.CONNECTED.value

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["checked_at"] = self.checked_at.isoformat()
        return data


# =============================================================================
# Result cache
# =============================================================================

_probe_cache: dict[str, tuple[HealthProbeResult, float]] = {}
_probe_cache_lock = threading.Lock()


def _cache_get(account_id: UUID) -> HealthProbeResult | None:
    with _probe_cache_lock:
        entry = _probe_cache.get(str(account_id))
        if not entry:
            return None
        result, expires_at = entry
        if expires_at <= time.monotonic():
            _probe_cache.pop(str(account_id), None)
            return None
    return HealthProbeResult(**{**result.__dict__, "cached": True})


def _cache_put(result: HealthProbeResult) -> None:
    ttl = settings.HEALTH_PROBE_CACHE_SECONDS if result.ok else settings.HEALTH_PROBE_FAILURE_CACHE_SECONDS
    with _probe_cache_lock:
        _probe_cache[result.account_id] = (result, time.monotonic() + ttl)


def clear_probe_cache(account_id: UUID | str | None = None) -> None:
    with _probe_cache_lock:
        if account_id is None:
            _probe_cache.clear()
        else:
            _probe_cache.pop(str(account_id), None)


# =============================================================================
# Classification
# =============================================================================


def classify_response(service: ProbeService, response: httpx.Response) -> ServiceCheck:
    label = SERVICE_LABELS[service]
    status = response.status_code
    if 200 <= status < 300:
        return ServiceCheck(service=service.value, status="ok", http_status=status)
    if status == 401:
        reason = f"Invalid or expired {label} token"
    elif status == 403:
        reason = f"Insufficient {label} permissions"
    else:
        reason = f"{label} API error ({status})"
    return ServiceCheck(service=service.value, status="fail", reason=reason, http_status=status)


def overall_from_checks(checks: dict[str, ServiceCheck]) -> str:
    if checks and all(check.status == "ok" for check in checks.values()):
        return AccountStatus.CONNECTED.value
    return AccountStatus.ACTION_NEEDED.value


async def _check_service(
    client: httpx.AsyncClient, service: ProbeService, access_token: str
) -> ServiceCheck:
    call = google_api.get_gmail_profile if service == ProbeService.GMAIL else google_api.list_calendars
    try:
        response = await call(client, access_token)
    except httpx.TimeoutException:
        return ServiceCheck(
            service=service.value, status="fail", reason=f"{SERVICE_LABELS[service]} API timed out"
        )
    if 200 <= response.status_code < 300:
        # Malformed body is an unexpected failure, not a classification.
        response.json()
    return classify_response(service, response)


def _local_check(db: Session, account: EmailAccount | CalendarAccount) -> str | None:
    """Reason the account cannot be probed, or None when a network probe is warranted."""
    if not account.access_token_ref:
        return "Missing token reference"
    if account.encryption_status != EncryptionStatus.OK.value:
        return f"Token encryption {account.encryption_status}"
    token = secure_token_service.get_token(db, account.access_token_ref)
    if not token or token.encryption_status != EncryptionStatus.OK.value:
        return "Access token not encrypted"
    if is_past(token.expires_at):
        return "Access token expired"
    return None


# =============================================================================
# Probe
# =============================================================================


def _persist(
    db: Session, account: EmailAccount | CalendarAccount, result: HealthProbeResult
) -> None:
    now = result.checked_at
    watch_states = (AccountStatus.WATCH_FAILED.value, AccountStatus.WATCH_RENEWAL_FAILED.value)
    if not (result.ok and account.status in watch_states):
        account.status = result.overall_status
        account.error_reason = result.reason
    account.last_probe_at = now
    if result.ok:
        account.last_probe_ok_at = now
    audit_service.log_event(
        db=db,
        org_id=account.organization_id,
        event_type=AuditEventType.HEALTH_PROBE,
        target_type=f"{result.account_kind}_account",
        target_id=account.id,
        details={
            "overall_status": result.overall_status,
            "services": {
                name: {"status": check.status, "reason": check.reason}
                for name, check in result.services.items()
            },
        },
    )
    db.commit()


async def run_health_probe(
    db: Session,
    account_id: UUID,
    account_kind: AccountKind = AccountKind.EMAIL,
    *,
    client: httpx.AsyncClient | None = None,
    force: bool = False,
) -> HealthProbeResult:
    """Probe one account and persist the classification."""
    if not force:
        cached = _cache_get(account_id)
        if cached:
            return cached

    model = ACCOUNT_MODELS[account_kind]
    account = db.get(model, account_id)
    if not account:
        return HealthProbeResult(
            account_id=str(account_id),
            account_kind=account_kind.value,
            overall_status=AccountStatus.DISCONNECTED.value,
            reason="Account not found",
        )

    log_context = build_log_context(
        org_id=str(account.organization_id), account_id=str(account_id), action="health_probe"
    )
    result = HealthProbeResult(
        account_id=str(account_id),
        account_kind=account_kind.value,
        overall_status=AccountStatus.ACTION_NEEDED.value,
    )

    local_reason = _local_check(db, account)
    if local_reason:
        result.reason = local_reason
    else:
        tokens = secure_token_service.get_tokens(db, [account.access_token_ref])
        if not tokens.access_token:
            result.reason = "Access token unavailable"
        else:
            # No transaction stays open across provider calls.
            db.commit()
            try:
                result.services = await _probe_services(
                    client, SERVICES_BY_KIND[account_kind], tokens.access_token
                )
                result.overall_status = overall_from_checks(result.services)
                reasons = [c.reason for c in result.services.values() if c.reason]
                result.reason = "; ".join(reasons) or None
            except Exception as exc:
                logger.warning("Health probe could not reach provider: %s", type(exc).__name__, extra=log_context)
                result.overall_status = AccountStatus.DISCONNECTED.value
                result.reason = f"Probe error: {type(exc).__name__}"

    result.checked_at = utc_now()
    _persist(db, account, result)
    _cache_put(result)
    logger.info("Health probe %s", result.overall_status, extra=log_context)
    return result


async def _probe_services(
    client: httpx.AsyncClient | None, services: tuple[ProbeService, ...], access_token: str
) -> dict[str, ServiceCheck]:
    if client is None:
        async with provider_client() as owned:
            return await _probe_services(owned, services, access_token)
    checks = await asyncio.gather(*(_check_service(client, s, access_token) for s in services))
    return {check.service: check for check in checks}


def list_org_accounts(db: Session, org_id: UUID) -> list[tuple[UUID, AccountKind]]:
    accounts: list[tuple[UUID, AccountKind]] = []
    for kind, model in ACCOUNT_MODELS.items():
        for account_id in db.scalars(select(model.id).where(model.organization_id == org_id)):
            accounts.append((account_id, kind))
    return accounts


async def probe_org_accounts(
    session_factory: Callable[[], Session],
    org_id: UUID,
    *,
    client: httpx.AsyncClient | None = None,
    force: bool = False,
) -> list[HealthProbeResult]:
    """
    Probe every account of a tenant concurrently.

    Each probe has its own session and a failure in one never affects the
    others. Concurrency is bounded by HEALTH_PROBE_CONCURRENCY.
    """
    with session_factory() as db:
        targets = list_org_accounts(db, org_id)

    semaphore = asyncio.Semaphore(max(settings.HEALTH_PROBE_CONCURRENCY, 1))

    async def probe_one(account_id: UUID, kind: AccountKind) -> HealthProbeResult:
        async with semaphore:
            try:
                with session_factory() as db:
                    return await run_health_probe(db, account_id, kind, client=client, force=force)
            except Exception as exc:
                logger.exception(
                    "Health probe crashed",
                    extra=build_log_context(org_id=str(org_id), account_id=str(account_id)),
                )
                return HealthProbeResult(
                    account_id=str(account_id),
                    account_kind=kind.value,
                    overall_status=AccountStatus.DISCONNECTED.value,
                    reason=f"Probe error: {type(exc).__name__}",
                )

    return list(await asyncio.gather(*(probe_one(aid, kind) for aid, kind in targets)))


def effective_status(account: EmailAccount | CalendarAccount, now: datetime | None = None) -> str:
    """connected only while the last successful probe is inside the freshness window."""
    if account.status != AccountStatus.CONNECTED.value or account.last_probe_at is None:
        return account.status
    now = now or utc_now()
    window = timedelta(minutes=settings.HEALTH_PROBE_FRESHNESS_MINUTES)
    last_ok = ensure_utc(account.last_probe_ok_at)
    if last_ok is None or now - last_ok > window:
        return AccountStatus.ACTION_NEEDED.value
    return account.status


# =============================================================================
# Scheduling
# =============================================================================


def schedule_health_probes(db: Session, now: datetime | None = None) -> dict[str, int]:
    """
    Enqueue one probe job per account per interval bucket.

    Orgs active within the last 7 days are probed every 5 minutes, the rest
    every 30 minutes.
    """
    now = now or utc_now()
    active_since = now - ACTIVE_ORG_WINDOW
    jobs_created = 0
    duplicates_skipped = 0

    for org in db.scalars(select(Organization)).all():
        updated_at = ensure_utc(org.updated_at)
        active = updated_at is not None and updated_at >= active_since
        interval = ACTIVE_PROBE_INTERVAL_SECONDS if active else INACTIVE_PROBE_INTERVAL_SECONDS
        bucket = int(now.timestamp()) // interval

        for account_id, kind in list_org_accounts(db, org.id):
            idempotency_key = f"health-probe:{kind.value}:{account_id}:{interval}:{bucket}"
            try:
                existing = db.scalar(select(Job.id).where(Job.idempotency_key == idempotency_key))
                if existing:
                    duplicates_skipped += 1
                    continue
                job_service.schedule_job(
                    db=db,
                    org_id=org.id,
                    job_type=JobType.HEALTH_PROBE,
                    payload={"email_account_id": str(account_id), "account_kind": kind.value},
                    run_at=now + timedelta(seconds=account_id.int % 60),
                    idempotency_key=idempotency_key,
                )
                jobs_created += 1
            except IntegrityError:
                db.rollback()
                duplicates_skipped += 1

    return {"jobs_created": jobs_created, "duplicates_skipped": duplicates_skipped}


async def process_health_probe_job(db: Session, job: Job) -> None:
    payload = job.payload or {}
    account_id = payload.get("email_account_id")
    if not account_id:
        raise ValueError("health_probe payload missing: email_account_id")
    kind = AccountKind(payload.get("account_kind") or AccountKind.EMAIL.value)
    await run_health_probe(db, UUID(account_id), kind, force=True)

"""
Google OAuth callback and token refresh.

The callback never blocks on the KMS or on provider calls beyond the token
exchange the caller already did: credentials are stored (with fallback or a
failed row), accounts are upserted, and everything else is queued.

Access tokens live about an hour. schedule_token_refreshes queues a refresh
job shortly before each expiry, and ensure_fresh_access_token refreshes on
demand before channel calls.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from crm_api.core.config import settings
from crm_api.core.errors import TokenExpired
from crm_api.core.structured_logging import build_log_context
from crm_api.db.enums import (
    AccountKind,
    AccountStatus,
    EncryptionMethod,
    EncryptionStatus,
    JobType,
    Provider,
    TokenType,
)
from crm_api.db.models import CalendarAccount, EmailAccount, Job, SecureToken
from crm_api.services import (
    audit_service,
    google_api,
    health_probe_service,
    job_service,
    org_service,
    secure_token_service,
    token_queue_service,
    watch_channel_service,
)
from crm_api.services.http_service import provider_client
from crm_api.utils.datetime_utils import ensure_utc, is_past, utc_now

logger = logging.getLogger(__name__)

REFRESH_REVOKED_REASON = "Google refresh token revoked; reconnect required"
# Refresh slightly before the recorded expiry to absorb clock skew.
ACCESS_TOKEN_SKEW = timedelta(seconds=60)


@dataclass
class CallbackResult:
    org_id: UUID
    email_account_id: UUID
    calendar_account_id: UUID
    tokens: list[secure_token_service.SecureTokenInfo] = field(default_factory=list)
    job_ids: list[UUID] = field(default_factory=list)


def _upsert_account(
    db: Session,
    model: type[EmailAccount] | type[CalendarAccount],
    org_id: UUID,
    external_account_id: str,
    account_email: str | None,
    refs: dict[str, str],
) -> EmailAccount | CalendarAccount:
    account = db.scalar(
        select(model).where(
            model.organization_id == org_id,
            model.external_account_id == external_account_id,
        )
    )
    if not account:
        account = model(
            organization_id=org_id,
            provider=Provider.GOOGLE.value,
            external_account_id=external_account_id,
        )
        db.add(account)

    account.account_email = account_email
    account.access_token_ref = refs.get(TokenType.ACCESS.value)
    # Google omits the refresh token on re-consent; keep the previous one.
    if refs.get(TokenType.REFRESH.value):
        account.refresh_token_ref = refs[TokenType.REFRESH.value]
    account.status = AccountStatus.ACTION_NEEDED.value
    account.error_reason = None
    db.flush()
    return account


def handle_google_callback(
    db: Session,
    user_email: str,
    external_account_id: str,
    token_data: dict[str, Any],
    account_email: str | None = None,
) -> CallbackResult:
    """
    Persist a completed Google consent for both the mailbox and the calendar.

    token_data is the provider's token response (access_token, refresh_token,
    expires_in). Tokens whose encryption failed are queued for retry with
    their plaintext sealed into the job, and fallback-protected tokens are
    queued for re-encryption under the tenant DEK; usable accounts get their
    initial sync and watch channel setup queued.
    """
    org = org_service.ensure_org_for_user(db, user_email)
    org_service.touch_org_activity(db, org)
    provider = Provider.GOOGLE.value

    infos = secure_token_service.store_tokens(
        db, org.id, provider, token_data, external_account_id=external_account_id
    )
    refs = {info.token_type: info.token_ref for info in infos}

    email_account = _upsert_account(
        db, EmailAccount, org.id, external_account_id, account_email or user_email, refs
    )
    calendar_account = _upsert_account(
        db, CalendarAccount, org.id, external_account_id, account_email or user_email, refs
    )
    accounts = ((email_account, AccountKind.EMAIL), (calendar_account, AccountKind.CALENDAR))
    for account, _ in accounts:
        secure_token_service.commit_account_encryption(db, account, commit=False)
    db.commit()

    result = CallbackResult(
        org_id=org.id,
        email_account_id=email_account.id,
        calendar_account_id=calendar_account.id,
        tokens=infos,
    )

    for info in infos:
        if (
            info.encryption_status == EncryptionStatus.OK.value
            and info.encryption_method != EncryptionMethod.FALLBACK.value
        ):
            continue
        job = token_queue_service.enqueue_token_encryption(
            db,
            org_id=org.id,
            email_account_id=email_account.id,
            token_ref=info.token_ref,
            provider=provider,
            external_account_id=external_account_id,
            plaintext=(
                None
                if info.encryption_status == EncryptionStatus.OK.value
                else token_data.get(f"{info.token_type}_token")
            ),
        )
        result.job_ids.append(job.id)

    sync_job = token_queue_service.enqueue_sync_if_ready(db, email_account)
    if sync_job:
        result.job_ids.append(sync_job.id)
    for account, kind in accounts:
        if account.encryption_status != EncryptionStatus.OK.value:
            continue
        watch_job = watch_channel_service.enqueue_watch_setup(db, account, kind)
        if watch_job:
            result.job_ids.append(watch_job.id)

    audit_service.log_integration_connected(
        db,
        org_id=org.id,
        account_id=email_account.id,
        account_email=email_account.account_email,
        token_refs=list(refs.values()),
    )
    db.commit()
    logger.info(
        "Google integration connected (%s queued jobs)",
        len(result.job_ids),
        extra=build_log_context(
            org_id=str(org.id), account_id=str(email_account.id), action="oauth_callback"
        ),
    )
    return result


async def refresh_account_tokens(
    db: Session,
    account: EmailAccount | CalendarAccount,
    *,
    client: httpx.AsyncClient | None = None,
) -> bool:
    """
    Exchange the account's refresh token and store the new access token.

    Returns False when no refresh token is usable. A revoked grant parks the
    account in action_needed.
    """
    if client is None:
        async with provider_client() as owned:
            return await refresh_account_tokens(db, account, client=owned)

    tokens = secure_token_service.get_tokens(db, [account.refresh_token_ref])
    if not tokens.refresh_token or not account.access_token_ref:
        return False
    db.commit()

    log_context = build_log_context(
        org_id=str(account.organization_id), account_id=str(account.id), action="token_refresh"
    )
    try:
        data = await google_api.refresh_access_token(client, tokens.refresh_token)
    except TokenExpired:
        account.status = AccountStatus.ACTION_NEEDED.value
        account.error_reason = REFRESH_REVOKED_REASON
        db.commit()
        logger.warning("Refresh token rejected", extra=log_context)
        raise

    expires_at = None
    if data.get("expires_in"):
        expires_at = utc_now() + timedelta(seconds=int(data["expires_in"]))
    replaced = secure_token_service.replace_token(
        db, account.access_token_ref, data["access_token"], expires_at=expires_at
    )
    if replaced and data.get("refresh_token") and account.refresh_token_ref:
        secure_token_service.replace_token(db, account.refresh_token_ref, data["refresh_token"])

    for sibling in secure_token_service.accounts_for_token(db, account.access_token_ref):
        secure_token_service.commit_account_encryption(db, sibling, commit=False)
        health_probe_service.clear_probe_cache(sibling.id)
    db.commit()
    logger.info("Access token refreshed", extra=log_context)
    return replaced


async def ensure_fresh_access_token(
    db: Session,
    account: EmailAccount | CalendarAccount,
    *,
    client: httpx.AsyncClient,
) -> str:
    """Return a usable access token, refreshing it first when it has expired."""
    tokens = secure_token_service.get_tokens(db, [account.access_token_ref])
    if tokens.access_token and not is_past(tokens.expires_at, utc_now() + ACCESS_TOKEN_SKEW):
        return tokens.access_token

    if account.refresh_token_ref and await refresh_account_tokens(db, account, client=client):
        tokens = secure_token_service.get_tokens(db, [account.access_token_ref])
        if tokens.access_token:
            return tokens.access_token
    raise TokenExpired("Access token expired and could not be refreshed")


# =============================================================================
# Scheduled refresh
# =============================================================================


def schedule_token_refreshes(db: Session, now: datetime | None = None) -> dict[str, int]:
    """
    Enqueue a refresh job for every access token that expires within the lead window.

    One job per access token expiry; accounts sharing a credential are
    refreshed together. Revoked grants are left for the user to reconnect.
    """
    now = now or utc_now()
    horizon = now + timedelta(minutes=settings.TOKEN_REFRESH_LEAD_MINUTES)
    jobs_created = 0
    already_scheduled = 0
    seen_refs: set[str] = set()

    for kind, model in ((AccountKind.EMAIL, EmailAccount), (AccountKind.CALENDAR, CalendarAccount)):
        rows = db.execute(
            select(model, SecureToken.expires_at)
            .join(SecureToken, SecureToken.token_ref == model.access_token_ref)
            .where(
                model.refresh_token_ref.is_not(None),
                or_(model.error_reason.is_(None), model.error_reason != REFRESH_REVOKED_REASON),
                SecureToken.encryption_status == EncryptionStatus.OK.value,
                SecureToken.expires_at.is_not(None),
                SecureToken.expires_at <= horizon,
            )
        ).all()
        for account, expires_at in rows:
            if account.access_token_ref in seen_refs:
                continue
            seen_refs.add(account.access_token_ref)
            idempotency_key = (
                f"token-refresh:{account.access_token_ref}:{int(ensure_utc(expires_at).timestamp())}"
            )
            if job_service.get_job_by_idempotency_key(db, idempotency_key):
                already_scheduled += 1
                continue
            job_service.schedule_job(
                db=db,
                org_id=account.organization_id,
                job_type=JobType.REFRESH_TOKEN,
                payload={"account_id": str(account.id), "account_kind": kind.value},
                delay_seconds=0,
                idempotency_key=idempotency_key,
            )
            jobs_created += 1

    return {"jobs_created": jobs_created, "already_scheduled": already_scheduled}


async def process_token_refresh_job(db: Session, job: Job) -> None:
    payload = job.payload or {}
    account_id = payload.get("account_id")
    if not account_id:
        raise ValueError("refresh_token payload missing: account_id")
    kind = AccountKind(payload.get("account_kind") or AccountKind.EMAIL.value)
    model = EmailAccount if kind == AccountKind.EMAIL else CalendarAccount
    account = db.get(model, UUID(account_id))
    if not account:
        raise ValueError(f"{kind.value} account {account_id} not found")

    if not await refresh_account_tokens(db, account):
        logger.warning(
            "No usable refresh token; skipping",
            extra=build_log_context(account_id=account_id, job_id=str(job.id), job_type=job.job_type),
        )

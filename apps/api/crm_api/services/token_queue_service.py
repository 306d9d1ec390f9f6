"""
Token encryption retry and initial-sync bootstrap jobs.

Flow per account:
    encrypt_token (failed or fallback-protected tokens, 5 attempts, 2s
                   exponential backoff)
        → commit_account_encryption
        → start_sync (3 attempts, 5s exponential backoff)

A start_sync job is only enqueued once every credential of the account is
ok, and re-checks that state before it runs.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from crm_api.core import encryption, fallback_cipher
from crm_api.core.config import settings
from crm_api.core.errors import EncryptionNotConfigured, EncryptionPending, error_for_code
from crm_api.core.structured_logging import build_log_context
from crm_api.db.enums import (
    AccountKind,
    AccountStatus,
    EncryptionMethod,
    EncryptionStatus,
    JobType,
    SyncStatus,
)
from crm_api.db.models import CalendarAccount, EmailAccount, Job
from crm_api.services import job_service, secure_token_service
from crm_api.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

ENCRYPTION_DEAD_LETTER_REASON = "Token encryption failed after retries; reconnect required"

ENCRYPT_PAYLOAD_KEYS = ("org_id", "email_account_id", "token_ref", "provider", "external_account_id")
SYNC_PAYLOAD_KEYS = ("org_id", "email_account_id", "provider")
ACCOUNT_MODELS = {AccountKind.EMAIL: EmailAccount, AccountKind.CALENDAR: CalendarAccount}


def _require(payload: dict[str, Any], keys: tuple[str, ...], job_type: str) -> None:
    missing = [key for key in keys if not payload.get(key)]
    if missing:
        raise ValueError(f"{job_type} payload missing: {', '.join(missing)}")


def _sealed_aad(org_id: UUID | str, token_ref: str) -> bytes:
    return encryption.build_aad(org_id, f"retry:{token_ref}")


# =============================================================================
# Producers
# =============================================================================


def enqueue_token_encryption(
    db: Session,
    *,
    org_id: UUID,
    email_account_id: UUID,
    token_ref: str,
    provider: str,
    external_account_id: str,
    plaintext: str | None = None,
    commit: bool = True,
) -> Job:
    """
    Schedule an encryption retry for a failed or fallback-protected credential.

    The plaintext never enters the payload in clear: it is sealed with the
    fallback cipher when a secret is configured, otherwise omitted (the job
    will dead-letter and the user reconnects). Fallback-protected tokens need
    no plaintext; the job re-encrypts their stored blob under the tenant DEK.
    """
    payload: dict[str, Any] = {
        "org_id": str(org_id),
        "email_account_id": str(email_account_id),
        "token_ref": token_ref,
        "provider": provider,
        "external_account_id": external_account_id,
    }
    if plaintext and settings.fallback_configured:
        payload["sealed_token"] = fallback_cipher.seal_for_payload(
            plaintext, aad=_sealed_aad(org_id, token_ref)
        )
    return job_service.schedule_job(
        db=db,
        org_id=org_id,
        job_type=JobType.ENCRYPT_TOKEN,
        payload=payload,
        idempotency_key=f"encrypt-token:{token_ref}",
        commit=commit,
    )


def enqueue_initial_sync(
    db: Session,
    *,
    org_id: UUID,
    email_account_id: UUID,
    provider: str,
    access_token_ref: str | None = None,
    commit: bool = True,
) -> Job:
    """Schedule the initial sync; one per account per credential grant."""
    key_suffix = access_token_ref or "initial"
    return job_service.schedule_job(
        db=db,
        org_id=org_id,
        job_type=JobType.START_SYNC,
        payload={
            "org_id": str(org_id),
            "email_account_id": str(email_account_id),
            "provider": provider,
        },
        idempotency_key=f"start-sync:{email_account_id}:{key_suffix}",
        commit=commit,
    )


def enqueue_push_sync(
    db: Session,
    account: EmailAccount | CalendarAccount,
    kind: AccountKind,
    dedupe_key: str,
) -> Job:
    """Schedule an incremental sync for a validated push notification."""
    return job_service.schedule_job(
        db=db,
        org_id=account.organization_id,
        job_type=JobType.START_SYNC,
        payload={
            "org_id": str(account.organization_id),
            "email_account_id": str(account.id),
            "provider": account.provider,
            "account_kind": kind.value,
        },
        delay_seconds=0,
        idempotency_key=f"push-sync:{dedupe_key}",
    )


def enqueue_sync_if_ready(db: Session, account: EmailAccount) -> Job | None:
    if account.encryption_status != EncryptionStatus.OK.value:
        return None
    return enqueue_initial_sync(
        db,
        org_id=account.organization_id,
        email_account_id=account.id,
        provider=account.provider,
        access_token_ref=account.access_token_ref,
    )


# =============================================================================
# Processors
# =============================================================================


def process_token_encryption_job(db: Session, job: Job) -> None:
    """
    Retry encryption for one credential, then chain into initial sync.

    Fallback-protected tokens are re-encrypted under the tenant DEK; a KMS
    that is still down raises KmsUnavailable and the job backs off.
    Re-delivery is safe: a KMS-protected ok token skips straight to the
    commit step.
    """
    payload = job.payload or {}
    _require(payload, ENCRYPT_PAYLOAD_KEYS, job.job_type)
    token_ref = payload["token_ref"]
    log_context = build_log_context(
        org_id=payload["org_id"], token_ref=token_ref, job_id=str(job.id), job_type=job.job_type
    )

    token = secure_token_service.get_token(db, token_ref)
    if not token:
        raise ValueError(f"Unknown token_ref {token_ref}")

    if token.encryption_method == EncryptionMethod.FALLBACK.value:
        if secure_token_service.promote_fallback_token(db, token_ref):
            logger.info("Fallback token promoted to KMS", extra=log_context)
    elif token.encryption_status != EncryptionStatus.OK.value:
        sealed = payload.get("sealed_token")
        if not sealed:
            raise EncryptionNotConfigured("No sealed credential in payload; reconnect required")
        plaintext = fallback_cipher.unseal_payload(
            sealed, aad=_sealed_aad(payload["org_id"], token_ref)
        )
        secure_token_service.retry_encryption(db, token_ref, plaintext)
        db.refresh(token)
        if token.encryption_status != EncryptionStatus.OK.value:
            raise error_for_code(
                token.kms_error_code, f"Encryption retry failed ({token.kms_error_code})"
            )
        logger.info("Token encryption retry succeeded", extra=log_context)

    from crm_api.services import watch_channel_service

    for account in secure_token_service.accounts_for_token(db, token_ref):
        status = secure_token_service.commit_account_encryption(db, account)
        if status != EncryptionStatus.OK.value:
            continue
        kind = AccountKind.EMAIL if isinstance(account, EmailAccount) else AccountKind.CALENDAR
        if kind == AccountKind.EMAIL:
            enqueue_sync_if_ready(db, account)
        watch_channel_service.enqueue_watch_setup(db, account, kind)


def handle_token_encryption_dead_letter(db: Session, job: Job) -> int:
    """
    Park the accounts behind a credential that could not be encrypted.

    Returns the number of accounts that transitioned; replays change nothing.
    """
    token_ref = (job.payload or {}).get("token_ref")
    if not token_ref:
        return 0
    token = secure_token_service.get_token(db, token_ref)
    reason = ENCRYPTION_DEAD_LETTER_REASON
    if token and token.encryption_method == EncryptionMethod.FALLBACK.value:
        # Still readable; reconciliation restores the account once the KMS is back.
        reason = secure_token_service.FALLBACK_PROMOTION_FAILED_REASON

    changed = 0
    for account in secure_token_service.accounts_for_token(db, token_ref):
        if (
            account.status == AccountStatus.ACTION_NEEDED.value
            and account.encryption_status == EncryptionStatus.FAILED.value
            and account.error_reason == reason
        ):
            continue
        account.encryption_status = EncryptionStatus.FAILED.value
        account.status = AccountStatus.ACTION_NEEDED.value
        account.error_reason = reason
        changed += 1
    db.commit()
    if changed:
        logger.error(
            "Token encryption dead-lettered; %s account(s) need reconnect",
            changed,
            extra=build_log_context(token_ref=token_ref, job_id=str(job.id), job_type=job.job_type),
        )
    return changed


def process_initial_sync_job(db: Session, job: Job) -> None:
    """
    Hand an account to the downstream sync worker.

    Refuses to run unless every credential of the account is ok right now.
    """
    payload = job.payload or {}
    _require(payload, SYNC_PAYLOAD_KEYS, job.job_type)
    kind = AccountKind(payload.get("account_kind") or AccountKind.EMAIL.value)
    account = db.get(ACCOUNT_MODELS[kind], UUID(payload["email_account_id"]))
    if not account:
        raise ValueError(f"{kind.value} account {payload['email_account_id']} not found")

    status = secure_token_service.derive_account_encryption_status(db, account)
    if status != EncryptionStatus.OK.value or account.encryption_status != EncryptionStatus.OK.value:
        raise EncryptionPending(f"Account encryption is {status}; sync deferred")

    account.sync_status = SyncStatus.SCHEDULED.value
    account.sync_scheduled_at = utc_now()
    db.commit()
    logger.info(
        "Initial sync scheduled",
        extra=build_log_context(
            org_id=payload["org_id"], account_id=str(account.id), job_id=str(job.id), job_type=job.job_type
        ),
    )


def handle_initial_sync_dead_letter(db: Session, job: Job) -> int:
    account_id = (job.payload or {}).get("email_account_id")
    if not account_id:
        return 0
    kind = AccountKind((job.payload or {}).get("account_kind") or AccountKind.EMAIL.value)
    account = db.get(ACCOUNT_MODELS[kind], UUID(account_id))
    if not account or account.sync_status == SyncStatus.ERROR.value:
        return 0
    account.sync_status = SyncStatus.ERROR.value
    account.error_reason = f"Initial sync could not start: {job.last_error or 'unknown error'}"[:500]
    db.commit()
    return 1

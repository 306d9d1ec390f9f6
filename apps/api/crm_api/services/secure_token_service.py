"""
Secure token store - encrypted OAuth credentials addressed by opaque refs.

Consumers only ever pass token refs around. Encryption goes through the
tenant's envelope DEK first and falls back to the application-wide fallback
cipher while the KMS is unreachable. Crypto errors stop here: they become
persisted encryption_status / kms_error_code values, never exceptions.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from crm_api.core import encryption, fallback_cipher
from crm_api.core.config import settings
from crm_api.core.errors import IntegrationError, KmsUnavailable, error_code
from crm_api.core.structured_logging import build_log_context
from crm_api.db.enums import (
    AccountStatus,
    AuditEventType,
    EncryptionMethod,
    EncryptionStatus,
    TokenType,
)
from crm_api.db.models import CalendarAccount, EmailAccount, Organization, SecureToken
from crm_api.services import audit_service
from crm_api.utils.datetime_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

ENCRYPTION_PENDING_REASON = "Token encryption pending"
FALLBACK_PROMOTION_FAILED_REASON = "Token still under fallback encryption; KMS unavailable after retries"

# Account error reasons that clear once every credential is ok again.
RECOVERABLE_REASONS = (None, ENCRYPTION_PENDING_REASON, FALLBACK_PROMOTION_FAILED_REASON)


@dataclass
class SecureTokenInfo:
    token_ref: str
    token_type: str
    encryption_status: str
    encryption_method: str | None = None
    kms_error_code: str | None = None


@dataclass
class TokenData:
    """Decrypted credentials. Missing fields mean "not yet available"."""

    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    missing: list[str] = field(default_factory=list)


@dataclass
class _EncryptedValue:
    blob: bytes
    method: EncryptionMethod
    key_version: int | None


# =============================================================================
# References and AAD
# =============================================================================


def generate_token_ref(org_id: UUID, provider: str, token_type: str) -> str:
    """Unique, never-reused reference: tenant + provider + type + time + random."""
    millis = int(time.time() * 1000)
    return f"tok_{org_id.hex[:12]}_{provider}_{token_type}_{millis}_{secrets.token_hex(8)}"


def token_aad_context(provider: str, token_type: str, token_ref: str) -> str:
    """AAD context for a stored credential. Part of the storage schema."""
    return f"oauth:{provider}:{token_type}:{token_ref}"


def _token_aad(token: SecureToken) -> str:
    return token_aad_context(token.provider, token.token_type, token.token_ref)


# =============================================================================
# Encryption paths
# =============================================================================


def _encrypt_value(db: Session, org_id: UUID, plaintext: str, context: str) -> _EncryptedValue:
    """
    Envelope first, fallback cipher on KMS unavailability.

    Raises IntegrationError when neither path can produce a blob.
    """
    envelope = encryption.get_envelope_crypto()
    try:
        blob = envelope.encrypt(db, org_id, plaintext, context)
        _dek, version = envelope.get_dek(db, org_id)
        return _EncryptedValue(blob=blob, method=EncryptionMethod.KMS, key_version=version)
    except KmsUnavailable as exc:
        if not settings.fallback_configured:
            raise
        logger.warning(
            "KMS unavailable, using fallback cipher: %s",
            exc,
            extra=build_log_context(org_id=str(org_id), action="token_encrypt_fallback"),
        )
    blob = fallback_cipher.encrypt_fallback(plaintext, aad=encryption.build_aad(org_id, context))
    return _EncryptedValue(blob=blob, method=EncryptionMethod.FALLBACK, key_version=None)


def _decrypt_token(db: Session, token: SecureToken) -> str:
    context = _token_aad(token)
    if token.encryption_method == EncryptionMethod.FALLBACK.value:
        aad = encryption.build_aad(token.organization_id, context)
        return fallback_cipher.decrypt_fallback(token.encrypted_token_blob, aad=aad).decode("utf-8")
    return encryption.decrypt_for_org(
        db, token.organization_id, token.encrypted_token_blob, context
    ).decode("utf-8")


def _apply_success(token: SecureToken, value: _EncryptedValue) -> None:
    token.encrypted_token_blob = value.blob
    token.encryption_status = EncryptionStatus.OK.value
    token.encryption_method = value.method.value
    token.key_version = value.key_version
    token.kms_error_code = None
    token.kms_error_at = None


def _apply_failure(token: SecureToken, exc: Exception) -> None:
    token.encrypted_token_blob = None
    token.encryption_status = EncryptionStatus.FAILED.value
    token.encryption_method = None
    token.key_version = None
    token.kms_error_code = error_code(exc)
    token.kms_error_at = utc_now()


def _resolve_expires_at(token_data: dict[str, Any]) -> datetime | None:
    expires_at = token_data.get("expires_at")
    if isinstance(expires_at, datetime):
        return ensure_utc(expires_at)
    expires_in = token_data.get("expires_in")
    if expires_in:
        return utc_now() + timedelta(seconds=int(expires_in))
    return None


# =============================================================================
# Store / read
# =============================================================================


def store_tokens(
    db: Session,
    org_id: UUID,
    provider: str,
    token_data: dict[str, Any],
    external_account_id: str | None = None,
) -> list[SecureTokenInfo]:
    """
    Encrypt and persist each present credential (access, refresh).

    A row is written for every credential, even when encryption fails, so
    callers never special-case "no record". Refs are minted before any
    encryption attempt.
    """
    access_expires_at = _resolve_expires_at(token_data)
    results: list[SecureTokenInfo] = []

    for token_type in (TokenType.ACCESS, TokenType.REFRESH):
        plaintext = token_data.get(f"{token_type.value}_token")
        if not plaintext:
            continue

        token_ref = generate_token_ref(org_id, provider, token_type.value)
        token = SecureToken(
            token_ref=token_ref,
            organization_id=org_id,
            provider=provider,
            token_type=token_type.value,
            external_account_id=external_account_id,
            encryption_status=EncryptionStatus.PENDING.value,
            expires_at=access_expires_at if token_type == TokenType.ACCESS else None,
        )
        db.add(token)

        context = token_aad_context(provider, token_type.value, token_ref)
        try:
            value = _encrypt_value(db, org_id, plaintext, context)
        except IntegrationError as exc:
            _apply_failure(token, exc)
            logger.error(
                "Token encryption failed (%s)",
                token.kms_error_code,
                extra=build_log_context(org_id=str(org_id), token_ref=token_ref, action="token_store"),
            )
        else:
            _apply_success(token, value)

        db.flush()
        results.append(
            SecureTokenInfo(
                token_ref=token_ref,
                token_type=token_type.value,
                encryption_status=token.encryption_status,
                encryption_method=token.encryption_method,
                kms_error_code=token.kms_error_code,
            )
        )

    if results:
        audit_service.log_event(
            db=db,
            org_id=org_id,
            event_type=AuditEventType.TOKENS_STORED,
            target_type="secure_token",
            details={
                "provider": provider,
                "tokens": [
                    {"token_ref": r.token_ref, "status": r.encryption_status, "method": r.encryption_method}
                    for r in results
                ],
            },
        )
    db.commit()
    return results


def get_token(db: Session, token_ref: str) -> SecureToken | None:
    return db.scalar(select(SecureToken).where(SecureToken.token_ref == token_ref))


def get_tokens(db: Session, token_refs: list[str | None]) -> TokenData:
    """
    Decrypt the referenced credentials.

    Refs that are unknown, not yet encrypted, or cannot be decrypted right now
    are skipped and listed in ``missing``.
    """
    data = TokenData()
    refs = [ref for ref in token_refs if ref]
    if not refs:
        return data

    tokens = db.scalars(select(SecureToken).where(SecureToken.token_ref.in_(refs))).all()
    found = {token.token_ref for token in tokens}
    data.missing.extend(ref for ref in refs if ref not in found)

    for token in tokens:
        if not token.is_usable:
            data.missing.append(token.token_ref)
            continue
        try:
            plaintext = _decrypt_token(db, token)
        except IntegrationError as exc:
            data.missing.append(token.token_ref)
            logger.warning(
                "Token decrypt failed (%s)",
                error_code(exc),
                extra=build_log_context(
                    org_id=str(token.organization_id), token_ref=token.token_ref, action="token_read"
                ),
            )
            continue

        if token.token_type == TokenType.ACCESS.value:
            data.access_token = plaintext
            data.expires_at = ensure_utc(token.expires_at)
        elif token.token_type == TokenType.REFRESH.value:
            data.refresh_token = plaintext
    return data


# =============================================================================
# Retry / refresh / reconcile
# =============================================================================


def retry_encryption(db: Session, token_ref: str, plaintext: str) -> bool:
    """
    Re-attempt encryption of a failed or pending credential.

    Returns False without side effects when the token is already ok.
    retry_count / last_retry_at move on both success and failure.
    """
    token = get_token(db, token_ref)
    if not token:
        logger.warning("Retry for unknown token", extra=build_log_context(token_ref=token_ref))
        return False
    if token.encryption_status == EncryptionStatus.OK.value:
        return False

    token.retry_count += 1
    token.last_retry_at = utc_now()
    try:
        value = _encrypt_value(db, token.organization_id, plaintext, _token_aad(token))
    except IntegrationError as exc:
        _apply_failure(token, exc)
        db.commit()
        logger.warning(
            "Token encryption retry %s failed (%s)",
            token.retry_count,
            token.kms_error_code,
            extra=build_log_context(
                org_id=str(token.organization_id), token_ref=token_ref, action="token_retry"
            ),
        )
        return False

    _apply_success(token, value)
    audit_service.log_event(
        db=db,
        org_id=token.organization_id,
        event_type=AuditEventType.TOKEN_ENCRYPTION_RETRIED,
        target_type="secure_token",
        target_id=token.id,
        details={"token_ref": token_ref, "method": value.method.value, "retry_count": token.retry_count},
    )
    db.commit()
    return True


def replace_token(
    db: Session, token_ref: str, plaintext: str, expires_at: datetime | None = None
) -> bool:
    """Write a new blob for an existing credential (token refresh)."""
    token = get_token(db, token_ref)
    if not token:
        return False
    try:
        value = _encrypt_value(db, token.organization_id, plaintext, _token_aad(token))
    except IntegrationError as exc:
        _apply_failure(token, exc)
        db.commit()
        return False

    _apply_success(token, value)
    if expires_at is not None:
        token.expires_at = ensure_utc(expires_at)
    audit_service.log_event(
        db=db,
        org_id=token.organization_id,
        event_type=AuditEventType.TOKEN_REFRESHED,
        target_type="secure_token",
        target_id=token.id,
        details={"token_ref": token_ref, "method": value.method.value},
    )
    db.commit()
    return True


def _promote_to_kms(db: Session, token: SecureToken) -> int:
    """
    Move one fallback blob under the tenant DEK. Returns the key version.

    KmsUnavailable propagates while the KMS is still down.
    """
    from crm_api.services import org_service

    envelope = encryption.get_envelope_crypto()
    context = _token_aad(token)
    org = db.get(Organization, token.organization_id)
    org_service.ensure_org_dek(db, org)
    plaintext = fallback_cipher.decrypt_fallback(
        token.encrypted_token_blob, aad=encryption.build_aad(token.organization_id, context)
    )
    blob = envelope.encrypt(db, token.organization_id, plaintext, context)
    _dek, version = envelope.get_dek(db, token.organization_id)

    _apply_success(token, _EncryptedValue(blob=blob, method=EncryptionMethod.KMS, key_version=version))
    audit_service.log_event(
        db=db,
        org_id=token.organization_id,
        event_type=AuditEventType.TOKEN_RECONCILED,
        target_type="secure_token",
        target_id=token.id,
        details={"token_ref": token.token_ref, "key_version": version},
    )
    for account in accounts_for_token(db, token.token_ref):
        commit_account_encryption(db, account, commit=False)
    db.commit()
    return version


def promote_fallback_token(db: Session, token_ref: str) -> bool:
    """
    Re-encrypt a fallback-protected credential under the tenant DEK.

    Returns False when there is nothing to promote. A KMS failure is recorded
    on the token (which stays usable through the fallback blob) and re-raised
    so the retry queue can back off.
    """
    token = get_token(db, token_ref)
    if (
        not token
        or token.encryption_status != EncryptionStatus.OK.value
        or token.encryption_method != EncryptionMethod.FALLBACK.value
    ):
        return False

    try:
        _promote_to_kms(db, token)
    except IntegrationError as exc:
        db.rollback()
        token = get_token(db, token_ref)
        token.retry_count += 1
        token.last_retry_at = utc_now()
        token.kms_error_code = error_code(exc)
        token.kms_error_at = utc_now()
        db.commit()
        logger.warning(
            "Fallback token promotion attempt %s failed (%s)",
            token.retry_count,
            token.kms_error_code,
            extra=build_log_context(
                org_id=str(token.organization_id), token_ref=token_ref, action="token_promote"
            ),
        )
        raise

    token.retry_count += 1
    token.last_retry_at = utc_now()
    db.commit()
    return True


def reconcile_fallback_tokens(
    db: Session, org_id: UUID | None = None, limit: int = 100
) -> dict[str, int]:
    """
    Re-encrypt fallback-cipher blobs under the tenant DEK.

    Stops early for a tenant whose KMS is still unavailable.
    """
    query = (
        select(SecureToken)
        .where(
            SecureToken.encryption_status == EncryptionStatus.OK.value,
            SecureToken.encryption_method == EncryptionMethod.FALLBACK.value,
        )
        .order_by(SecureToken.created_at)
        .limit(limit)
    )
    if org_id:
        query = query.where(SecureToken.organization_id == org_id)

    counts = {"reconciled": 0, "skipped": 0, "failed": 0}
    unavailable_orgs: set[UUID] = set()

    for token in db.scalars(query).all():
        if token.organization_id in unavailable_orgs:
            counts["skipped"] += 1
            continue
        try:
            _promote_to_kms(db, token)
        except KmsUnavailable:
            unavailable_orgs.add(token.organization_id)
            counts["skipped"] += 1
            continue
        except IntegrationError as exc:
            counts["failed"] += 1
            logger.error(
                "Fallback reconciliation failed (%s)",
                error_code(exc),
                extra=build_log_context(
                    org_id=str(token.organization_id), token_ref=token.token_ref, action="token_reconcile"
                ),
            )
            continue
        counts["reconciled"] += 1

    return counts


# =============================================================================
# Account commit step
# =============================================================================


def derive_account_encryption_status(db: Session, account: EmailAccount | CalendarAccount) -> str:
    """ok only when every referenced credential is ok; failed wins over pending."""
    refs = [ref for ref in (account.access_token_ref, account.refresh_token_ref) if ref]
    if not account.access_token_ref:
        return EncryptionStatus.FAILED.value
    statuses = list(
        db.scalars(select(SecureToken.encryption_status).where(SecureToken.token_ref.in_(refs)))
    )
    if len(statuses) < len(refs):
        return EncryptionStatus.FAILED.value
    if all(status == EncryptionStatus.OK.value for status in statuses):
        return EncryptionStatus.OK.value
    if EncryptionStatus.FAILED.value in statuses:
        return EncryptionStatus.FAILED.value
    return EncryptionStatus.PENDING.value


def commit_account_encryption(
    db: Session, account: EmailAccount | CalendarAccount, commit: bool = True
) -> str:
    """
    Copy the credentials' encryption state onto the account.

    This is the authoritative step after SecureToken writes. It reads only
    persisted token rows, so replaying it after a crash converges.
    """
    status = derive_account_encryption_status(db, account)
    account.encryption_status = status
    if status == EncryptionStatus.OK.value:
        if (
            account.status == AccountStatus.ACTION_NEEDED.value
            and account.error_reason in RECOVERABLE_REASONS
        ):
            account.status = AccountStatus.CONNECTED.value
            account.error_reason = None
    elif account.status == AccountStatus.CONNECTED.value or account.error_reason is None:
        account.status = AccountStatus.ACTION_NEEDED.value
        account.error_reason = ENCRYPTION_PENDING_REASON
    if commit:
        db.commit()
    else:
        db.flush()
    return status


def accounts_for_token(db: Session, token_ref: str) -> list[EmailAccount | CalendarAccount]:
    accounts: list[EmailAccount | CalendarAccount] = []
    for model in (EmailAccount, CalendarAccount):
        accounts.extend(
            db.scalars(
                select(model).where(
                    (model.access_token_ref == token_ref) | (model.refresh_token_ref == token_ref)
                )
            ).all()
        )
    return accounts


# =============================================================================
# Reporting
# =============================================================================


def get_token_encryption_status(db: Session, org_id: UUID) -> dict[str, Any]:
    """Totals per status and method, plus the oldest unresolved failure."""
    by_status = {status.value: 0 for status in EncryptionStatus}
    for status, count in db.execute(
        select(SecureToken.encryption_status, func.count())
        .where(SecureToken.organization_id == org_id)
        .group_by(SecureToken.encryption_status)
    ):
        by_status[status] = count

    by_method = {method.value: 0 for method in EncryptionMethod}
    for method, count in db.execute(
        select(SecureToken.encryption_method, func.count())
        .where(
            SecureToken.organization_id == org_id,
            SecureToken.encryption_method.is_not(None),
        )
        .group_by(SecureToken.encryption_method)
    ):
        by_method[method] = count

    oldest_failure = db.scalar(
        select(func.min(SecureToken.kms_error_at)).where(
            SecureToken.organization_id == org_id,
            SecureToken.encryption_status == EncryptionStatus.FAILED.value,
        )
    )
    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "by_method": by_method,
        "oldest_failure_at": ensure_utc(oldest_failure).isoformat() if oldest_failure else None,
    }

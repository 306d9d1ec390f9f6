"""Audit logging service - integration lifecycle event tracking.

Security guidelines:
- NEVER log secrets (tokens, DEKs, fallback secret)
- Hash PII in details (use hash_email for emails)
- Use IDs and token refs instead of raw data
"""

import hashlib
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from crm_api.db.enums import AuditEventType
from crm_api.db.models import AuditLog


def hash_email(email: str) -> str:
    """Hash email for audit log (prefix + SHA256 suffix for debugging)."""
    if not email:
        return ""
    prefix = email.split("@")[0][:3] if "@" in email else email[:3]
    suffix = hashlib.sha256(email.lower().encode()).hexdigest()[:12]
    return f"{prefix}...@[hash:{suffix}]"


def log_event(
    db: Session,
    org_id: UUID,
    event_type: AuditEventType,
    actor_user_id: UUID | None = None,
    target_type: str | None = None,
    target_id: UUID | None = None,
    details: dict[str, Any] | None = None,
) -> AuditLog:
    """
    Log an audit event.

    Args:
        db: Database session
        org_id: Organization context
        event_type: Type of event (from AuditEventType)
        actor_user_id: User who performed the action (None for system)
        target_type: Type of entity affected (e.g., 'email_account', 'job')
        target_id: ID of the affected entity
        details: Additional context (must be redacted - no secrets/raw PII)
    """
    entry = AuditLog(
        organization_id=org_id,
        actor_user_id=actor_user_id,
        event_type=event_type.value,
        target_type=target_type,
        target_id=target_id,
        details=details,
    )
    db.add(entry)
    db.flush()
    return entry


def log_dead_letter(
    db: Session,
    org_id: UUID,
    job_id: UUID,
    job_type: str,
    attempts: int,
    error: str | None,
    account_id: UUID | None = None,
) -> AuditLog:
    """Record a job that exhausted its retries."""
    details: dict[str, Any] = {
        "job_id": str(job_id),
        "job_type": job_type,
        "attempts": attempts,
        "error": (error or "")[:500],
    }
    return log_event(
        db=db,
        org_id=org_id,
        event_type=AuditEventType.DEAD_LETTER_JOB,
        target_type="email_account" if account_id else "job",
        target_id=account_id or job_id,
        details=details,
    )


def log_integration_connected(
    db: Session,
    org_id: UUID,
    account_id: UUID,
    account_email: str | None,
    token_refs: list[str],
) -> AuditLog:
    return log_event(
        db=db,
        org_id=org_id,
        event_type=AuditEventType.INTEGRATION_CONNECTED,
        target_type="email_account",
        target_id=account_id,
        details={"email": hash_email(account_email or ""), "token_refs": token_refs},
    )

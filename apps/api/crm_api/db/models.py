"""SQLAlchemy ORM models for tenants, secure tokens, integration accounts and jobs."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from crm_api.db.base import Base
from crm_api.db.enums import (
    DEFAULT_ACCOUNT_STATUS,
    DEFAULT_ENCRYPTION_STATUS,
    DEFAULT_JOB_STATUS,
    EncryptionStatus,
    SyncStatus,
)
from crm_api.db.types import JsonDict
from crm_api.utils.datetime_utils import utc_now


# =============================================================================
# Tenant
# =============================================================================


class Organization(Base):
    """
    A tenant in the multi-tenant system.

    Owns exactly one KMS-wrapped data encryption key. The DEK is created at
    bootstrap (first OAuth callback) and re-wrapped only by key rotation.
    """

    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    # Envelope encryption
    encrypted_dek_blob: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    dek_version: Mapped[int] = mapped_column(
        Integer, default=1, server_default=text("1"), nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
    # Bumped on user activity; drives probe cadence (active vs inactive orgs)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )


# =============================================================================
# Secure Tokens
# =============================================================================


class SecureToken(Base):
    """
    One encrypted OAuth credential, addressed by an opaque token_ref.

    The row always exists once store_tokens ran; encrypted_token_blob is
    present exactly when encryption_status is "ok".
    """

    __tablename__ = "secure_tokens"
    __table_args__ = (
        CheckConstraint(
            "(encryption_status = 'ok' AND encrypted_token_blob IS NOT NULL) OR "
            "(encryption_status != 'ok' AND encrypted_token_blob IS NULL)",
            name="ck_secure_tokens_blob_matches_status",
        ),
        Index("idx_secure_tokens_org_status", "organization_id", "encryption_status"),
        Index("idx_secure_tokens_method", "encryption_method"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    token_ref: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String(30), nullable=False)
    token_type: Mapped[str] = mapped_column(String(20), nullable=False)  # access, refresh
    external_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    encrypted_token_blob: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    encryption_status: Mapped[str] = mapped_column(
        String(20),
        default=DEFAULT_ENCRYPTION_STATUS.value,
        server_default=text(f"'{DEFAULT_ENCRYPTION_STATUS.value}'"),
        nullable=False,
    )
    encryption_method: Mapped[str | None] = mapped_column(String(20), nullable=True)  # kms, fallback
    key_version: Mapped[int | None] = mapped_column(Integer, nullable=True)

    kms_error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    kms_error_at: Mapped[datetime | None] = mapped_column(nullable=True)
    retry_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0"), nullable=False
    )
    last_retry_at: Mapped[datetime | None] = mapped_column(nullable=True)

    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, server_default=func.now(), nullable=False
    )

    @property
    def is_usable(self) -> bool:
        return (
            self.encryption_status == EncryptionStatus.OK.value
            and self.encrypted_token_blob is not None
        )


# =============================================================================
# Integration Accounts
# =============================================================================


class IntegrationAccountMixin:
    """Columns shared by every connected external account."""

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String(30), nullable=False, default="google")
    external_account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    account_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(
        String(30),
        default=DEFAULT_ACCOUNT_STATUS.value,
        server_default=text(f"'{DEFAULT_ACCOUNT_STATUS.value}'"),
        nullable=False,
    )
    encryption_status: Mapped[str] = mapped_column(
        String(20),
        default=DEFAULT_ENCRYPTION_STATUS.value,
        server_default=text(f"'{DEFAULT_ENCRYPTION_STATUS.value}'"),
        nullable=False,
    )
    access_token_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    refresh_token_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Push channel (watch) state
    channel_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    channel_resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    channel_expiration: Mapped[datetime | None] = mapped_column(nullable=True)
    channel_renewal_due_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Sync bootstrap (downstream sync worker picks up "scheduled")
    sync_status: Mapped[str] = mapped_column(
        String(20),
        default=SyncStatus.IDLE.value,
        server_default=text(f"'{SyncStatus.IDLE.value}'"),
        nullable=False,
    )
    sync_scheduled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Health probes
    last_probe_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_probe_ok_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, server_default=func.now(), nullable=False
    )


class EmailAccount(IntegrationAccountMixin, Base):
    """A connected Gmail mailbox."""

    __tablename__ = "email_accounts"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "external_account_id", name="uq_email_accounts_org_external"
        ),
        Index("idx_email_accounts_channel", "channel_id"),
        Index("idx_email_accounts_renewal_due", "channel_renewal_due_at"),
    )

    # Gmail history cursor (users.watch / history.list)
    history_id: Mapped[str | None] = mapped_column(String(64), nullable=True)


class CalendarAccount(IntegrationAccountMixin, Base):
    """A connected Google Calendar."""

    __tablename__ = "calendar_accounts"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "external_account_id", name="uq_calendar_accounts_org_external"
        ),
        Index("idx_calendar_accounts_channel", "channel_id"),
        Index("idx_calendar_accounts_renewal_due", "channel_renewal_due_at"),
    )

    calendar_id: Mapped[str] = mapped_column(String(255), default="primary", nullable=False)


# =============================================================================
# Jobs
# =============================================================================


class Job(Base):
    """
    Durable background job.

    Worker polls for pending jobs whose run_at has passed. Failures are
    rescheduled with exponential backoff until max_attempts, then parked as
    dead_letter for operator visibility.
    """

    __tablename__ = "jobs"
    __table_args__ = (
        Index("idx_jobs_pending", "status", "run_at"),
        Index("idx_jobs_org", "organization_id", "created_at"),
        Index("idx_jobs_type_status", "job_type", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )

    job_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict] = mapped_column(JsonDict, nullable=False, default=dict)
    run_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default=DEFAULT_JOB_STATUS.value,
        server_default=text(f"'{DEFAULT_JOB_STATUS.value}'"),
        nullable=False,
    )
    attempts: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0"), nullable=False
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer, default=3, server_default=text("3"), nullable=False
    )
    # Base delay for exponential backoff: backoff_seconds * 2 ** (attempts - 1)
    backoff_seconds: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0"), nullable=False
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Idempotency key for deduplication
    idempotency_key: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)


# =============================================================================
# Audit Trail
# =============================================================================


class AuditLog(Base):
    """
    Integration audit log.

    Never stores secrets or token values; token refs and ids only.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_org_created", "organization_id", "created_at"),
        Index("idx_audit_org_event_created", "organization_id", "event_type", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    actor_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    event_type: Mapped[str] = mapped_column(String(50), nullable=False)  # AuditEventType
    target_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    target_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    details: Mapped[dict | None] = mapped_column(JsonDict, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )

"""Integration lifecycle baseline

Revision ID: 0001_integration_lifecycle
Revises:
Create Date: 2026-10-19

Tables:
- organizations: tenants and their KMS-wrapped DEK
- secure_tokens: encrypted OAuth credentials addressed by token_ref
- email_accounts / calendar_accounts: connected Google accounts
- jobs: durable retry queue
- audit_logs: integration audit trail (no secrets)
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB


# revision identifiers, used by Alembic.
revision = "0001_integration_lifecycle"
down_revision = None
branch_labels = None
depends_on = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _org_column() -> sa.Column:
    return sa.Column(
        "organization_id",
        UUID(as_uuid=True),
        sa.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(
        name, sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False
    )


def _account_columns() -> list[sa.Column]:
    return [
        _id_column(),
        _org_column(),
        sa.Column("provider", sa.String(30), nullable=False, server_default="google"),
        sa.Column("external_account_id", sa.String(255), nullable=False),
        sa.Column("account_email", sa.String(255), nullable=True),
        sa.Column(
            "status", sa.String(30), nullable=False, server_default="action_needed"
        ),  # connected, action_needed, disconnected, watch_failed, watch_renewal_failed
        sa.Column("encryption_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("access_token_ref", sa.String(255), nullable=True),
        sa.Column("refresh_token_ref", sa.String(255), nullable=True),
        sa.Column("error_reason", sa.Text, nullable=True),
        sa.Column("channel_id", sa.String(255), nullable=True),
        sa.Column("channel_resource_id", sa.String(255), nullable=True),
        _timestamp("channel_expiration", nullable=True),
        _timestamp("channel_renewal_due_at", nullable=True),
        sa.Column("sync_status", sa.String(20), nullable=False, server_default="idle"),
        _timestamp("sync_scheduled_at", nullable=True),
        _timestamp("last_probe_at", nullable=True),
        _timestamp("last_probe_ok_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    ]


def upgrade() -> None:
    op.create_table(
        "organizations",
        _id_column(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("owner_email", sa.String(255), nullable=False, unique=True),
        sa.Column("encrypted_dek_blob", sa.LargeBinary, nullable=True),
        sa.Column("dek_version", sa.Integer, nullable=False, server_default=sa.text("1")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )

    op.create_table(
        "secure_tokens",
        _id_column(),
        sa.Column("token_ref", sa.String(255), nullable=False, unique=True),
        _org_column(),
        sa.Column("provider", sa.String(30), nullable=False),
        sa.Column("token_type", sa.String(20), nullable=False),  # access, refresh
        sa.Column("external_account_id", sa.String(255), nullable=True),
        sa.Column("encrypted_token_blob", sa.LargeBinary, nullable=True),
        sa.Column("encryption_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("encryption_method", sa.String(20), nullable=True),  # kms, fallback
        sa.Column("key_version", sa.Integer, nullable=True),
        sa.Column("kms_error_code", sa.String(50), nullable=True),
        _timestamp("kms_error_at", nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default=sa.text("0")),
        _timestamp("last_retry_at", nullable=True),
        _timestamp("expires_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "(encryption_status = 'ok' AND encrypted_token_blob IS NOT NULL) OR "
            "(encryption_status != 'ok' AND encrypted_token_blob IS NULL)",
            name="ck_secure_tokens_blob_matches_status",
        ),
    )
    op.create_index(
        "idx_secure_tokens_org_status", "secure_tokens", ["organization_id", "encryption_status"]
    )
    op.create_index("idx_secure_tokens_method", "secure_tokens", ["encryption_method"])

    op.create_table(
        "email_accounts",
        *_account_columns(),
        sa.Column("history_id", sa.String(64), nullable=True),
        sa.UniqueConstraint(
            "organization_id", "external_account_id", name="uq_email_accounts_org_external"
        ),
    )
    op.create_index("idx_email_accounts_channel", "email_accounts", ["channel_id"])
    op.create_index("idx_email_accounts_renewal_due", "email_accounts", ["channel_renewal_due_at"])

    op.create_table(
        "calendar_accounts",
        *_account_columns(),
        sa.Column("calendar_id", sa.String(255), nullable=False, server_default="primary"),
        sa.UniqueConstraint(
            "organization_id", "external_account_id", name="uq_calendar_accounts_org_external"
        ),
    )
    op.create_index("idx_calendar_accounts_channel", "calendar_accounts", ["channel_id"])
    op.create_index(
        "idx_calendar_accounts_renewal_due", "calendar_accounts", ["channel_renewal_due_at"]
    )

    op.create_table(
        "jobs",
        _id_column(),
        _org_column(),
        sa.Column("job_type", sa.String(50), nullable=False),
        sa.Column("payload", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        _timestamp("run_at"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default=sa.text("3")),
        sa.Column("backoff_seconds", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text, nullable=True),
        _timestamp("created_at"),
        _timestamp("started_at", nullable=True),
        _timestamp("completed_at", nullable=True),
        sa.Column("idempotency_key", sa.String(255), nullable=True, unique=True),
    )
    op.create_index("idx_jobs_pending", "jobs", ["status", "run_at"])
    op.create_index("idx_jobs_org", "jobs", ["organization_id", "created_at"])
    op.create_index("idx_jobs_type_status", "jobs", ["job_type", "status"])

    op.create_table(
        "audit_logs",
        _id_column(),
        _org_column(),
        sa.Column("actor_user_id", UUID(as_uuid=True), nullable=True),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("target_type", sa.String(50), nullable=True),
        sa.Column("target_id", UUID(as_uuid=True), nullable=True),
        sa.Column("details", JSONB, nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("idx_audit_org_created", "audit_logs", ["organization_id", "created_at"])
    op.create_index(
        "idx_audit_org_event_created",
        "audit_logs",
        ["organization_id", "event_type", "created_at"],
    )


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("jobs")
    op.drop_table("calendar_accounts")
    op.drop_table("email_accounts")
    op.drop_table("secure_tokens")
    op.drop_table("organizations")

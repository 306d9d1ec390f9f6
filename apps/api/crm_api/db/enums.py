"""Enum definitions for application constants."""

from enum import Enum


class Provider(str, Enum):
    """Supported OAuth providers."""
    GOOGLE = "google"


class TokenType(str, Enum):
    """Kinds of stored OAuth credentials."""
    ACCESS = "access"
    REFRESH = "refresh"


class EncryptionStatus(str, Enum):
    """
    Encryption state of a stored credential.

    pending → ok | failed
    failed → ok (retry queue)
    ok → ok (token refresh writes a new blob)
    """
    PENDING = "pending"
    OK = "ok"
    FAILED = "failed"


class EncryptionMethod(str, Enum):
    """Which key protects a credential blob."""
    KMS = "kms"  # Tenant DEK (envelope)
    FALLBACK = "fallback"  # Application-wide fallback key, pending reconciliation


class AccountStatus(str, Enum):
    """
    Integration account status.

    Probe-owned: connected, action_needed, disconnected
    Channel-owned: watch_failed, watch_renewal_failed
    """
    CONNECTED = "connected"
    ACTION_NEEDED = "action_needed"
    DISCONNECTED = "disconnected"
    WATCH_FAILED = "watch_failed"
    WATCH_RENEWAL_FAILED = "watch_renewal_failed"

    @classmethod
    def probe_states(cls) -> list[str]:
        return [cls.CONNECTED.value, cls.ACTION_NEEDED.value, cls.DISCONNECTED.value]


class SyncStatus(str, Enum):
    """Initial sync bootstrap state on an email account."""
    IDLE = "idle"
    SCHEDULED = "scheduled"
    ERROR = "error"


class AccountKind(str, Enum):
    """Integration account tables."""
    EMAIL = "email"
    CALENDAR = "calendar"


class ProbeService(str, Enum):
    """Provider capabilities checked by health probes."""
    GMAIL = "gmail"
    CALENDAR = "calendar"


class JobType(str, Enum):
    """Types of background jobs."""
    ENCRYPT_TOKEN = "encrypt_token"
    START_SYNC = "start_sync"
    HEALTH_PROBE = "health_probe"
    WEBHOOK_RENEWAL = "webhook_renewal"
    REFRESH_TOKEN = "refresh_token"


class JobStatus(str, Enum):
    """
    Status of background jobs.

    pending → running → completed
    running → pending (retry scheduled with backoff)
    running → dead_letter (attempts exhausted, terminal)
    """
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    DEAD_LETTER = "dead_letter"

    @classmethod
    def terminal(cls) -> list[str]:
        return [cls.COMPLETED.value, cls.DEAD_LETTER.value]


class AuditEventType(str, Enum):
    """Audit events emitted by the integration lifecycle."""
    TOKENS_STORED = "tokens_stored"
    TOKEN_ENCRYPTION_RETRIED = "token_encryption_retried"
    TOKEN_RECONCILED = "token_reconciled"
    TOKEN_REFRESHED = "token_refreshed"
    DEAD_LETTER_JOB = "dead_letter_job"
    HEALTH_PROBE = "health_probe"
    WATCH_STARTED = "watch_started"
    WATCH_RENEWED = "watch_renewed"
    WATCH_FAILED = "watch_failed"
    INTEGRATION_CONNECTED = "integration_connected"


# Defaults
DEFAULT_JOB_STATUS = JobStatus.PENDING
DEFAULT_ENCRYPTION_STATUS = EncryptionStatus.PENDING
DEFAULT_ACCOUNT_STATUS = AccountStatus.ACTION_NEEDED

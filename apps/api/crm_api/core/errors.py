"""Error taxonomy for the integration lifecycle.

Every failure that crosses a component boundary is one of these classes, so
callers branch on type instead of inspecting error attributes. ``code`` is the
stable string persisted into ``kms_error_code`` / ``error_reason`` columns.
"""


class IntegrationError(Exception):
    """Base exception for integration lifecycle errors."""

    code = "INTEGRATION_ERROR"
    transient = False

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.code)


class KmsUnavailable(IntegrationError):
    """KMS could not unwrap or wrap a data encryption key."""

    code = "KMS_UNAVAILABLE"
    transient = True


class AuthenticationFailed(IntegrationError):
    """Ciphertext failed authentication (tampered, stale, or wrong context)."""

    code = "AUTHENTICATION_FAILED"


class EncryptionNotConfigured(IntegrationError):
    """No usable key material for the requested operation."""

    code = "ENCRYPTION_NOT_CONFIGURED"


class TokenExpired(IntegrationError):
    """OAuth credential is expired or was revoked."""

    code = "TOKEN_EXPIRED"


class InsufficientPermission(IntegrationError):
    """OAuth grant lacks a required scope."""

    code = "INSUFFICIENT_PERMISSION"


class ProviderUnreachable(IntegrationError):
    """Provider API could not be reached or returned a server error."""

    code = "PROVIDER_UNREACHABLE"
    transient = True


class ChannelExpired(IntegrationError):
    """Push channel is past its expiration."""

    code = "CHANNEL_EXPIRED"


class ChannelSetupFailed(IntegrationError):
    """Provider rejected a push channel registration."""

    code = "CHANNEL_SETUP_FAILED"
    transient = True


def error_code(exc: BaseException) -> str:
    """Stable code for persistence; unknown exceptions map to their class name."""
    if isinstance(exc, IntegrationError):
        return exc.code
    return type(exc).__name__


class EncryptionPending(IntegrationError):
    """Credentials are not yet encrypted under a usable key."""

    code = "ENCRYPTION_PENDING"
    transient = True


_ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (
        KmsUnavailable,
        AuthenticationFailed,
        EncryptionNotConfigured,
        TokenExpired,
        InsufficientPermission,
        ProviderUnreachable,
        ChannelExpired,
        ChannelSetupFailed,
        EncryptionPending,
    )
}


def error_for_code(code: str | None, message: str | None = None) -> IntegrationError:
    """Rebuild a typed error from a persisted code (unknown codes map to the base class)."""
    return _ERRORS_BY_CODE.get(code or "", IntegrationError)(message)

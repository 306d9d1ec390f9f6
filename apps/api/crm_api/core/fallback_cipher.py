"""
Degraded-mode cipher used while the KMS is unreachable.

AES-256-GCM keyed by an HKDF derivation of FALLBACK_ENCRYPTION_SECRET. The key
is not tenant-specific, so blobs written here are tracked with
encryption_method="fallback" and re-encrypted under the tenant DEK by the
reconciliation sweep.

Blob layout: iv(12) | ciphertext | tag(16)
"""

import base64
import binascii
import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from crm_api.core.config import settings
from crm_api.core.errors import AuthenticationFailed, EncryptionNotConfigured

IV_BYTES = 12
TAG_BYTES = 16
KEY_LENGTH = 32
_HKDF_SALT = b"crm-fallback-cipher"
_HKDF_INFO = b"crm:v1:oauth-token-fallback"


@lru_cache(maxsize=4)
def derive_fallback_key(secret: str) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=_HKDF_SALT,
        info=_HKDF_INFO,
    )
    return hkdf.derive(secret.encode("utf-8"))


def _resolve_secret(secret: str | None) -> str:
    secret = secret if secret is not None else settings.FALLBACK_ENCRYPTION_SECRET
    if not secret:
        raise EncryptionNotConfigured("FALLBACK_ENCRYPTION_SECRET is not configured")
    return secret


def encrypt_fallback(
    plaintext: bytes | str, secret: str | None = None, aad: bytes | None = None
) -> bytes:
    """Encrypt with the application-wide fallback key."""
    if isinstance(plaintext, str):
        plaintext = plaintext.encode("utf-8")
    key = derive_fallback_key(_resolve_secret(secret))
    iv = os.urandom(IV_BYTES)
    return iv + AESGCM(key).encrypt(iv, plaintext, aad)


def decrypt_fallback(blob: bytes, secret: str | None = None, aad: bytes | None = None) -> bytes:
    """Decrypt a fallback blob. Raises AuthenticationFailed on any tag mismatch."""
    key = derive_fallback_key(_resolve_secret(secret))
    blob = bytes(blob)
    if len(blob) < IV_BYTES + TAG_BYTES:
        raise AuthenticationFailed("Fallback blob is truncated")
    try:
        return AESGCM(key).decrypt(blob[:IV_BYTES], blob[IV_BYTES:], aad)
    except InvalidTag as exc:
        raise AuthenticationFailed("Fallback blob failed authentication") from exc


# Job payloads are JSON, so sealed values travel as base64 text.


def seal_for_payload(plaintext: str, aad: bytes | None = None) -> str:
    return base64.b64encode(encrypt_fallback(plaintext, aad=aad)).decode("ascii")


def unseal_payload(sealed: str, aad: bytes | None = None) -> str:
    try:
        blob = base64.b64decode(sealed, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise AuthenticationFailed("Sealed payload is not valid base64") from exc
    return decrypt_fallback(blob, aad=aad).decode("utf-8")

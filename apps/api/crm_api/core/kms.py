"""KMS clients that wrap and unwrap per-tenant data encryption keys."""

from __future__ import annotations

import base64
import logging
import os
from typing import Protocol

import boto3
from botocore.client import BaseClient
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from crm_api.core.config import settings
from crm_api.core.errors import KmsUnavailable

logger = logging.getLogger(__name__)

DEK_BYTES = 32
LOCAL_WRAP_VERSION = 1
_IV_BYTES = 12
_TAG_BYTES = 16

# Key exists but may not be used right now (revoked grant, disabled key).
_AWS_PERMISSION_CODES = {"AccessDeniedException", "DisabledException", "KMSInvalidStateException"}


class KmsClient(Protocol):
    def encrypt_dek(self, plaintext_dek: bytes) -> bytes: ...

    def decrypt_dek(self, encrypted_dek: bytes) -> bytes: ...


class LocalKmsClient:
    """
    AES-256-GCM key wrapper with a locally held master key.

    Wrapped format: version(1) | iv(12) | tag(16) | ciphertext
    """

    def __init__(self, master_key: bytes):
        if len(master_key) != 32:
            raise ValueError("Local KMS master key must be 32 bytes")
        self._aesgcm = AESGCM(master_key)

    def encrypt_dek(self, plaintext_dek: bytes) -> bytes:
        iv = os.urandom(_IV_BYTES)
        sealed = self._aesgcm.encrypt(iv, plaintext_dek, None)
        ciphertext, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
        return bytes([LOCAL_WRAP_VERSION]) + iv + tag + ciphertext

    def decrypt_dek(self, encrypted_dek: bytes) -> bytes:
        if len(encrypted_dek) < 1 + _IV_BYTES + _TAG_BYTES:
            raise KmsUnavailable("Invalid KMS-wrapped blob")
        if encrypted_dek[0] != LOCAL_WRAP_VERSION:
            raise KmsUnavailable("Unsupported KMS blob version")
        iv = encrypted_dek[1 : 1 + _IV_BYTES]
        tag = encrypted_dek[1 + _IV_BYTES : 1 + _IV_BYTES + _TAG_BYTES]
        ciphertext = encrypted_dek[1 + _IV_BYTES + _TAG_BYTES :]
        try:
            return self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            # Wrong master key for this blob: the KMS cannot serve it.
            raise KmsUnavailable("Master key rejected wrapped DEK") from exc


class AwsKmsClient:
    """AWS KMS wrapper using boto3."""

    def __init__(self, key_id: str, client: BaseClient | None = None):
        self.key_id = key_id
        self._client = client or get_aws_kms_client()

    def encrypt_dek(self, plaintext_dek: bytes) -> bytes:
        try:
            response = self._client.encrypt(KeyId=self.key_id, Plaintext=plaintext_dek)
        except (BotoCoreError, ClientError) as exc:
            raise KmsUnavailable(_describe_aws_error(exc)) from exc
        blob = response.get("CiphertextBlob")
        if not blob:
            raise KmsUnavailable("AWS KMS encrypt: missing ciphertext")
        return bytes(blob)

    def decrypt_dek(self, encrypted_dek: bytes) -> bytes:
        try:
            response = self._client.decrypt(KeyId=self.key_id, CiphertextBlob=encrypted_dek)
        except (BotoCoreError, ClientError) as exc:
            raise KmsUnavailable(_describe_aws_error(exc)) from exc
        plaintext = response.get("Plaintext")
        if not plaintext:
            raise KmsUnavailable("AWS KMS decrypt: missing plaintext")
        return bytes(plaintext)


class UnconfiguredKmsClient:
    """Stand-in when no KMS is configured; every call is an outage."""

    message = (
        "KMS not configured. Set KMS_PROVIDER=aws with KMS_KEY_ID, "
        "or provide a base64 32-byte KMS_KEY_ID for the local wrapper."
    )

    def encrypt_dek(self, plaintext_dek: bytes) -> bytes:
        raise KmsUnavailable(self.message)

    def decrypt_dek(self, encrypted_dek: bytes) -> bytes:
        raise KmsUnavailable(self.message)


def _describe_aws_error(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "ClientError")
        if code in _AWS_PERMISSION_CODES:
            return f"AWS KMS permission error: {code}"
        return f"AWS KMS error: {code}"
    return f"AWS KMS unreachable: {type(exc).__name__}"


def get_aws_kms_client() -> BaseClient:
    """Return a configured KMS client with short timeouts."""
    return boto3.client(
        "kms",
        region_name=settings.AWS_REGION or None,
        aws_access_key_id=settings.AWS_ACCESS_KEY_ID or None,
        aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY or None,
        endpoint_url=settings.KMS_ENDPOINT_URL or None,
        config=Config(
            connect_timeout=settings.KMS_TIMEOUT_SECONDS,
            read_timeout=settings.KMS_TIMEOUT_SECONDS,
            retries={"max_attempts": 2, "mode": "standard"},
        ),
    )


def create_kms_client(provider: str | None = None, key_id: str | None = None) -> KmsClient:
    """Build the KMS client for the configured provider."""
    provider = (provider if provider is not None else settings.KMS_PROVIDER).lower()
    key_id = key_id if key_id is not None else settings.KMS_KEY_ID

    if provider == "aws" and key_id:
        return AwsKmsClient(key_id)

    if key_id:
        try:
            key_bytes = base64.b64decode(key_id, validate=True)
        except ValueError:
            key_bytes = b""
        if len(key_bytes) == 32:
            return LocalKmsClient(key_bytes)
        logger.warning("KMS_KEY_ID is not a base64 32-byte key; KMS disabled")

    return UnconfiguredKmsClient()


def generate_wrapped_dek(kms: KmsClient) -> bytes:
    """Create a fresh DEK and return it wrapped by the KMS."""
    return kms.encrypt_dek(os.urandom(DEK_BYTES))

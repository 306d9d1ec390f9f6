"""Envelope encryption for tenant data.

Each organization owns a data encryption key (DEK) wrapped by the KMS and
stored on the organization row. Plaintext DEKs are cached in-process for a
short TTL so a compromised process loses the ability to decrypt once it can no
longer reach the KMS.

Blob layout (version 1): version(1) | nonce(12) | ciphertext | tag(16)
Legacy blobs without a version byte are version 0: nonce | ciphertext | tag.
The AAD ("org:{org_id}:{context}") is never stored; callers rebuild it.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable
from uuid import UUID

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy.orm import Session

from crm_api.core.config import settings
from crm_api.core.errors import AuthenticationFailed, KmsUnavailable
from crm_api.core.kms import KmsClient, create_kms_client

logger = logging.getLogger(__name__)

BLOB_VERSION = 1
NONCE_BYTES = 12
TAG_BYTES = 16


@dataclass
class _CachedDek:
    key: bytes
    version: int
    expires_at: float


def build_aad(org_id: UUID | str, context: str) -> bytes:
    """Bind ciphertext to both the tenant and the field it protects."""
    return f"org:{org_id}:{context}".encode()


def pack_blob(nonce: bytes, sealed: bytes, version: int = BLOB_VERSION) -> bytes:
    """Pack nonce and AESGCM output (ciphertext | tag) into a stored blob."""
    if version == 0:
        return nonce + sealed
    return bytes([version]) + nonce + sealed


def unpack_blob(blob: bytes) -> list[tuple[int, bytes, bytes]]:
    """
    Return candidate (version, nonce, sealed) layouts for a blob.

    A leading 0x01 may also be the first nonce byte of a legacy blob, so both
    readings are returned in preference order and the tag decides.
    """
    candidates: list[tuple[int, bytes, bytes]] = []
    if len(blob) >= 1 + NONCE_BYTES + TAG_BYTES and blob[0] == BLOB_VERSION:
        candidates.append((BLOB_VERSION, blob[1 : 1 + NONCE_BYTES], blob[1 + NONCE_BYTES :]))
    if len(blob) >= NONCE_BYTES + TAG_BYTES:
        candidates.append((0, blob[:NONCE_BYTES], blob[NONCE_BYTES:]))
    return candidates


class EnvelopeCrypto:
    """Per-tenant AES-256-GCM encryption with a TTL-bounded DEK cache."""

    def __init__(
        self,
        kms: KmsClient,
        *,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.kms = kms
        self.ttl_seconds = settings.DEK_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._cache: dict[str, _CachedDek] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # DEK cache
    # ------------------------------------------------------------------

    def _cached(self, org_id: UUID | str) -> _CachedDek | None:
        with self._lock:
            entry = self._cache.get(str(org_id))
            if entry and entry.expires_at > self._clock():
                return entry
            if entry:
                self._cache.pop(str(org_id), None)
        return None

    def get_dek(self, db: Session, org_id: UUID | str) -> tuple[bytes, int]:
        """Return (plaintext DEK, version) for an org, unwrapping via KMS on miss."""
        from crm_api.db.models import Organization

        cached = self._cached(org_id)
        if cached:
            return cached.key, cached.version

        org = db.get(Organization, org_id if isinstance(org_id, UUID) else UUID(str(org_id)))
        if not org or not org.encrypted_dek_blob:
            raise KmsUnavailable(f"No data encryption key provisioned for org {org_id}")

        dek = self.kms.decrypt_dek(bytes(org.encrypted_dek_blob))
        version = org.dek_version or 1
        with self._lock:
            self._cache[str(org_id)] = _CachedDek(
                key=dek, version=version, expires_at=self._clock() + self.ttl_seconds
            )
        logger.debug("Unwrapped DEK for org %s (version=%s)", org_id, version)
        return dek, version

    def invalidate(self, org_id: UUID | str | None = None) -> None:
        with self._lock:
            if org_id is None:
                self._cache.clear()
            else:
                self._cache.pop(str(org_id), None)

    # ------------------------------------------------------------------
    # Encrypt / decrypt
    # ------------------------------------------------------------------

    def encrypt(
        self, db: Session, org_id: UUID | str, plaintext: bytes | str, aad_context: str
    ) -> bytes:
        if isinstance(plaintext, str):
            plaintext = plaintext.encode()
        dek, _version = self.get_dek(db, org_id)
        nonce = os.urandom(NONCE_BYTES)
        sealed = AESGCM(dek).encrypt(nonce, plaintext, build_aad(org_id, aad_context))
        return pack_blob(nonce, sealed)

    def decrypt(self, db: Session, org_id: UUID | str, blob: bytes, aad_context: str) -> bytes:
        dek, _version = self.get_dek(db, org_id)
        aesgcm = AESGCM(dek)
        aad = build_aad(org_id, aad_context)
        for _layout_version, nonce, sealed in unpack_blob(bytes(blob)):
            try:
                return aesgcm.decrypt(nonce, sealed, aad)
            except InvalidTag:
                continue
        raise AuthenticationFailed("Ciphertext failed authentication")


_envelope: EnvelopeCrypto | None = None


def get_envelope_crypto() -> EnvelopeCrypto:
    """Get or create the process-wide envelope engine."""
    global _envelope
    if _envelope is None:
        _envelope = EnvelopeCrypto(create_kms_client())
    return _envelope


def set_envelope_crypto(engine: EnvelopeCrypto | None) -> None:
    """Install an explicit engine (worker startup, tests); None resets."""
    global _envelope
    _envelope = engine


def decrypt_for_org(db: Session, org_id: UUID | str, blob: bytes, context: str) -> bytes:
    return get_envelope_crypto().decrypt(db, org_id, blob, context)

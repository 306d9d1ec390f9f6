"""
Test configuration and fixtures.

Provides:
- A fresh SQLite database per test (file-backed so concurrent sessions work)
- Envelope crypto backed by an in-memory KMS wrapper, plus a failing KMS
- Organization and connected account fixtures
- httpx MockTransport helpers for Google APIs
- An ASGI client for the API app
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

import uuid
from typing import AsyncGenerator, Callable, Generator

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from crm_api.core import encryption
from crm_api.core.config import settings
from crm_api.core.errors import KmsUnavailable
from crm_api.core.kms import LocalKmsClient, generate_wrapped_dek
from crm_api.db.base import Base
from crm_api.db.models import CalendarAccount, EmailAccount, Organization
from crm_api.services import health_probe_service, secure_token_service


# =============================================================================
# Configuration
# =============================================================================

@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    """Pin settings that change code paths, regardless of the local .env."""
    monkeypatch.setattr(settings, "FALLBACK_ENCRYPTION_SECRET", "")
    monkeypatch.setattr(settings, "GOOGLE_CALENDAR_WEBHOOK_TOKEN", "")
    monkeypatch.setattr(settings, "GOOGLE_PUBSUB_TOPIC", "")
    monkeypatch.setattr(settings, "INTERNAL_SECRET", "test-internal-secret")
    monkeypatch.setattr(settings, "WATCH_RENEWAL_LEAD_HOURS", 24)
    monkeypatch.setattr(settings, "TOKEN_REFRESH_LEAD_MINUTES", 10)
    health_probe_service.clear_probe_cache()
    yield
    health_probe_service.clear_probe_cache()


@pytest.fixture
def fallback_secret(monkeypatch) -> str:
    secret = "test-fallback-secret-with-enough-entropy"
    monkeypatch.setattr(settings, "FALLBACK_ENCRYPTION_SECRET", secret)
    return secret


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
def db_engine(tmp_path):
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> Callable[[], Session]:
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# KMS / Envelope Fixtures
# =============================================================================

class FailingKms:
    """KMS that is unreachable for every call."""

    def __init__(self):
        self.calls = 0

    def encrypt_dek(self, plaintext_dek: bytes) -> bytes:
        self.calls += 1
        raise KmsUnavailable("KMS unreachable (test)")

    def decrypt_dek(self, encrypted_dek: bytes) -> bytes:
        self.calls += 1
        raise KmsUnavailable("KMS unreachable (test)")


@pytest.fixture
def kms() -> LocalKmsClient:
    return LocalKmsClient(os.urandom(32))


@pytest.fixture(autouse=True)
def envelope(kms) -> Generator[encryption.EnvelopeCrypto, None, None]:
    engine = encryption.EnvelopeCrypto(kms, ttl_seconds=60)
    encryption.set_envelope_crypto(engine)
    yield engine
    encryption.set_envelope_crypto(None)


@pytest.fixture
def kms_down(envelope, kms):
    """Swap in an unreachable KMS; ``kms_down.restore()`` brings the working one back."""
    failing = FailingKms()
    envelope.kms = failing
    envelope.invalidate()

    def restore() -> None:
        envelope.kms = kms
        envelope.invalidate()

    failing.restore = restore
    return failing


# =============================================================================
# Tenant / Account Fixtures
# =============================================================================

@pytest.fixture
def test_org(db, kms) -> Organization:
    org = Organization(
        name="Test Org",
        owner_email=f"owner-{uuid.uuid4().hex[:8]}@example.com",
        encrypted_dek_blob=generate_wrapped_dek(kms),
    )
    db.add(org)
    db.commit()
    db.refresh(org)
    return org


def connect_account(
    db: Session,
    org: Organization,
    model: type[EmailAccount] | type[CalendarAccount] = EmailAccount,
    *,
    access_token: str = "ya29.test-access",
    refresh_token: str | None = "1//test-refresh",
    expires_in: int = 3600,
    external_account_id: str | None = None,
    account_email: str = "user@example.com",
) -> EmailAccount | CalendarAccount:
    """Store credentials and create an account pointing at them."""
    external_account_id = external_account_id or f"ext-{uuid.uuid4().hex[:8]}"
    token_data = {"access_token": access_token, "expires_in": expires_in}
    if refresh_token:
        token_data["refresh_token"] = refresh_token
    infos = secure_token_service.store_tokens(
        db, org.id, "google", token_data, external_account_id=external_account_id
    )
    refs = {info.token_type: info.token_ref for info in infos}
    account = model(
        organization_id=org.id,
        external_account_id=external_account_id,
        account_email=account_email,
        access_token_ref=refs.get("access"),
        refresh_token_ref=refs.get("refresh"),
    )
    db.add(account)
    db.flush()
    secure_token_service.commit_account_encryption(db, account)
    db.refresh(account)
    return account


@pytest.fixture
def email_account(db, test_org) -> EmailAccount:
    return connect_account(db, test_org, EmailAccount)


@pytest.fixture
def calendar_account(db, test_org) -> CalendarAccount:
    return connect_account(db, test_org, CalendarAccount)


# =============================================================================
# HTTP Fixtures
# =============================================================================

def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def make_account() -> Callable[..., EmailAccount | CalendarAccount]:
    return connect_account


@pytest.fixture
def google_client() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    return mock_client


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session) -> AsyncGenerator[httpx.AsyncClient, None]:
    """AsyncClient against the API app, sharing the test session."""
    from crm_api.core.deps import get_db
    from crm_api.main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()

"""Organization service - tenant bootstrap and DEK provisioning."""

import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from crm_api.core import encryption
from crm_api.core.errors import KmsUnavailable
from crm_api.core.kms import generate_wrapped_dek
from crm_api.db.models import Organization
from crm_api.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)


def get_org_by_owner(db: Session, email: str) -> Organization | None:
    return db.scalar(
        select(Organization).where(func.lower(Organization.owner_email) == email.strip().lower())
    )


def ensure_org_dek(db: Session, org: Organization) -> bool:
    """
    Provision a wrapped DEK for an org that has none.

    Returns True when a key was created. KmsUnavailable propagates.
    """
    if org.encrypted_dek_blob:
        return False
    kms = encryption.get_envelope_crypto().kms
    org.encrypted_dek_blob = generate_wrapped_dek(kms)
    org.dek_version = org.dek_version or 1
    db.commit()
    logger.info("Provisioned DEK for org %s", org.id)
    return True


def ensure_org_for_user(db: Session, user_email: str, name: str | None = None) -> Organization:
    """
    Return the user's organization, creating it on first OAuth callback.

    The org row is created even while the KMS is down; its DEK is provisioned
    later and tokens use the fallback cipher until then.
    """
    email = user_email.strip().lower()
    org = get_org_by_owner(db, email)
    if not org:
        org = Organization(name=name or email.split("@")[-1], owner_email=email)
        db.add(org)
        db.commit()
        db.refresh(org)
        logger.info("Created organization %s", org.id)

    try:
        ensure_org_dek(db, org)
    except KmsUnavailable as exc:
        logger.warning("DEK provisioning deferred for org %s: %s", org.id, exc)
    return org


def touch_org_activity(db: Session, org: Organization) -> None:
    org.updated_at = utc_now()
    db.commit()

"""
Internal endpoints for scheduled/cron operations.

Protected by X-Internal-Secret header.
Call from external cron (Cloud Scheduler / GH Actions).
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from crm_api.core.deps import get_db, verify_internal_secret
from crm_api.schemas.integration import (
    JobPurgeResponse,
    ProbeScheduleResponse,
    ReconcileResponse,
    RenewalSweepResponse,
    TokenEncryptionStatusRead,
    TokenRefreshScheduleResponse,
)
from crm_api.services import (
    health_probe_service,
    job_service,
    oauth_callback_service,
    secure_token_service,
    watch_channel_service,
)

router = APIRouter(
    prefix="/internal",
    tags=["internal"],
    dependencies=[Depends(verify_internal_secret)],
)
logger = logging.getLogger(__name__)


@router.post("/scheduled/health-probes", response_model=ProbeScheduleResponse)
def schedule_health_probes(db: Session = Depends(get_db)):
    """Enqueue one probe per account (5 min for active orgs, 30 min otherwise)."""
    result = health_probe_service.schedule_health_probes(db)
    logger.info("Health probe sweep: %s", result)
    return result


@router.post("/scheduled/watch-renewals", response_model=RenewalSweepResponse)
def sweep_watch_renewals(db: Session = Depends(get_db)):
    """Re-enqueue channel renewals whose due time has passed."""
    result = watch_channel_service.sweep_due_renewals(db)
    logger.info("Watch renewal sweep: %s", result)
    return result


@router.post("/scheduled/token-refresh", response_model=TokenRefreshScheduleResponse)
def schedule_token_refreshes(db: Session = Depends(get_db)):
    """Enqueue refresh jobs for access tokens close to expiry (run every few minutes)."""
    result = oauth_callback_service.schedule_token_refreshes(db)
    logger.info("Token refresh sweep: %s", result)
    return result


@router.post("/scheduled/token-reconcile", response_model=ReconcileResponse)
def reconcile_tokens(
    org_id: UUID | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    """Re-encrypt fallback-cipher tokens under their tenant DEK."""
    result = secure_token_service.reconcile_fallback_tokens(db, org_id=org_id, limit=limit)
    logger.info("Token reconciliation: %s", result)
    return result


@router.post("/scheduled/job-purge", response_model=JobPurgeResponse)
def purge_jobs(
    older_than_days: int | None = Query(None, ge=0),
    db: Session = Depends(get_db),
):
    return {"deleted": job_service.purge_finished_jobs(db, older_than_days=older_than_days)}


@router.get("/orgs/{org_id}/token-status", response_model=TokenEncryptionStatusRead)
def token_status(org_id: UUID, db: Session = Depends(get_db)):
    return secure_token_service.get_token_encryption_status(db, org_id)


@router.get("/orgs/{org_id}/queue-stats")
def queue_stats(org_id: UUID, db: Session = Depends(get_db)) -> dict[str, dict[str, int]]:
    return job_service.get_queue_stats(db, org_id=org_id)

"""Health probe job handlers."""

from __future__ import annotations


async def process_health_probe(db, job) -> None:
    """
    Probe one integration account.

    Payload:
      - email_account_id (required): account UUID
      - account_kind (optional): email | calendar, defaults to email
    """
    from crm_api.services import health_probe_service

    await health_probe_service.process_health_probe_job(db, job)

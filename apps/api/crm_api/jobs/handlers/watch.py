"""Push channel job handlers."""

from __future__ import annotations


async def process_webhook_renewal(db, job) -> None:
    """
    Set up or renew a push channel.

    Payload:
      - account_id (required), account_kind (email | calendar)
      - mode: setup | renew (default renew)
      - channel_id: channel being renewed; stale renewals are skipped
    """
    from crm_api.services import watch_channel_service

    await watch_channel_service.process_webhook_renewal_job(db, job)


async def dead_letter_webhook_renewal(db, job) -> None:
    from crm_api.services import watch_channel_service

    watch_channel_service.handle_webhook_renewal_dead_letter(db, job)

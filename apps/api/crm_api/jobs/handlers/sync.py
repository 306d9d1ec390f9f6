"""Initial sync bootstrap job handlers."""

from __future__ import annotations


async def process_start_sync(db, job) -> None:
    """
    Hand a freshly connected mailbox to the sync worker.

    Payload:
      - org_id, email_account_id, provider (required)
    """
    from crm_api.services import token_queue_service

    token_queue_service.process_initial_sync_job(db, job)


async def dead_letter_start_sync(db, job) -> None:
    from crm_api.services import token_queue_service

    token_queue_service.handle_initial_sync_dead_letter(db, job)

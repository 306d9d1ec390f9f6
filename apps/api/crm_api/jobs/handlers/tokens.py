"""Token encryption retry job handlers."""

from __future__ import annotations


async def process_encrypt_token(db, job) -> None:
    """
    Retry encryption of a failed credential, then chain into initial sync.

    Payload:
      - org_id, email_account_id, token_ref, provider, external_account_id (required)
      - sealed_token (optional): fallback-sealed credential
    """
    from crm_api.services import token_queue_service

    token_queue_service.process_token_encryption_job(db, job)


async def dead_letter_encrypt_token(db, job) -> None:
    from crm_api.services import token_queue_service

    token_queue_service.handle_token_encryption_dead_letter(db, job)


async def process_refresh_token(db, job) -> None:
    """
    Refresh an account's access token ahead of its expiry.

    Payload:
      - account_id (required), account_kind (email | calendar)
    """
    from crm_api.services import oauth_callback_service

    await oauth_callback_service.process_token_refresh_job(db, job)

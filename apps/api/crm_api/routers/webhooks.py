"""Webhooks router - Google push notifications (Calendar channels, Gmail Pub/Sub)."""

import base64
import binascii
import hmac
import json
import logging

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crm_api.core.config import settings
from crm_api.core.deps import get_db
from crm_api.core.structured_logging import build_log_context
from crm_api.db.enums import AccountKind
from crm_api.db.models import EmailAccount
from crm_api.schemas.integration import WebhookAck
from crm_api.services import token_queue_service, watch_channel_service

router = APIRouter()
logger = logging.getLogger(__name__)

HEADER_MESSAGE_NUMBER = "x-goog-message-number"


@router.post("/google-calendar", status_code=202, response_model=WebhookAck)
async def receive_google_calendar_push(request: Request, db: Session = Depends(get_db)):
    """
    Google Calendar channel notification.

    Always answers 202 so Google does not retry rejected notifications.
    Valid notifications enqueue one sync job per message number.
    """
    validation = watch_channel_service.validate_notification(request.headers)
    if not validation.valid:
        logger.warning("Calendar push rejected: %s", validation.reason)
        return WebhookAck(status="ignored", reason=validation.reason)

    # Google sends "sync" once when a channel is created; nothing changed yet.
    if validation.state == "sync":
        return WebhookAck(status="ignored", reason="sync_handshake")

    match = watch_channel_service.find_account_by_channel(
        db, validation.channel_id, validation.resource_id
    )
    if not match:
        logger.info("Calendar push for unknown channel")
        return WebhookAck(status="ignored", reason="unknown_channel")

    account, kind = match
    message_number = request.headers.get(HEADER_MESSAGE_NUMBER) or validation.state or "0"
    try:
        token_queue_service.enqueue_push_sync(
            db, account, kind, dedupe_key=f"google-calendar:{validation.channel_id}:{message_number}"
        )
    except IntegrityError:
        db.rollback()
    logger.info(
        "Calendar push accepted",
        extra=build_log_context(
            org_id=str(account.organization_id), account_id=str(account.id), action="calendar_push"
        ),
    )
    return WebhookAck(status="accepted")


def _decode_pubsub_message(body: dict) -> dict | None:
    data = (body.get("message") or {}).get("data")
    if not data:
        return None
    try:
        decoded = json.loads(base64.b64decode(data))
    except (binascii.Error, ValueError):
        return None
    return decoded if isinstance(decoded, dict) else None


@router.post("/gmail", status_code=202, response_model=WebhookAck)
async def receive_gmail_push(
    request: Request,
    token: str | None = Query(None),
    db: Session = Depends(get_db),
):
    """
    Gmail notification delivered by a Pub/Sub push subscription.

    The push URL carries the shared token as ?token=...; the message data is
    {"emailAddress": ..., "historyId": ...}.
    """
    expected = settings.calendar_channel_token
    if expected and not hmac.compare_digest((token or "").encode(), expected.encode()):
        logger.warning("Gmail push rejected: invalid_token")
        return WebhookAck(status="ignored", reason="invalid_token")

    try:
        body = await request.json()
    except ValueError:
        return WebhookAck(status="ignored", reason="invalid_body")
    message = _decode_pubsub_message(body) if isinstance(body, dict) else None
    if not message or not message.get("emailAddress") or not message.get("historyId"):
        return WebhookAck(status="ignored", reason="invalid_body")

    accounts = db.scalars(
        select(EmailAccount).where(
            func.lower(EmailAccount.account_email) == str(message["emailAddress"]).lower(),
            EmailAccount.channel_resource_id.is_not(None),
        )
    ).all()
    if not accounts:
        return WebhookAck(status="ignored", reason="unknown_account")

    history_id = str(message["historyId"])
    for account in accounts:
        try:
            token_queue_service.enqueue_push_sync(
                db, account, AccountKind.EMAIL, dedupe_key=f"gmail:{account.id}:{history_id}"
            )
        except IntegrityError:
            db.rollback()
    logger.info("Gmail push accepted for %s account(s)", len(accounts))
    return WebhookAck(status="accepted")

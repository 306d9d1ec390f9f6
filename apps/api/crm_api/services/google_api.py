"""Google REST calls used by the integration lifecycle (Gmail, Calendar, OAuth)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from crm_api.core.config import settings
from crm_api.core.errors import (
    ChannelExpired,
    ChannelSetupFailed,
    IntegrationError,
    ProviderUnreachable,
    TokenExpired,
)
from crm_api.services.http_service import raise_for_provider_status, request_with_retries

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"
CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"

GMAIL_WATCH_LABELS = ["INBOX", "SENT"]


def _auth(access_token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {access_token}"}


def _json_body(
    response: httpx.Response, action: str, error: type[IntegrationError]
) -> dict[str, Any]:
    """Decode a 2xx JSON object body; anything else raises ``error``."""
    try:
        data = response.json()
    except ValueError as exc:
        raise error(f"{action} returned a malformed body") from exc
    if not isinstance(data, dict):
        raise error(f"{action} returned a malformed body")
    return data


# ============================================================================
# Read-only probe calls (single attempt; the caller classifies the response)
# ============================================================================


async def get_gmail_profile(client: httpx.AsyncClient, access_token: str) -> httpx.Response:
    return await client.get(f"{GMAIL_API_BASE}/profile", headers=_auth(access_token))


async def list_calendars(client: httpx.AsyncClient, access_token: str) -> httpx.Response:
    return await client.get(
        f"{CALENDAR_API_BASE}/users/me/calendarList",
        params={"maxResults": 1},
        headers=_auth(access_token),
    )


# ============================================================================
# Push channels
# ============================================================================


async def watch_calendar(
    client: httpx.AsyncClient,
    access_token: str,
    *,
    calendar_id: str,
    channel_id: str,
    address: str,
    channel_token: str | None = None,
) -> dict[str, Any]:
    """Register an events.watch channel. Returns {id, resourceId, expiration}."""
    body: dict[str, Any] = {"id": channel_id, "type": "web_hook", "address": address}
    if channel_token:
        body["token"] = channel_token
    response = await request_with_retries(
        lambda: client.post(
            f"{CALENDAR_API_BASE}/calendars/{calendar_id}/events/watch",
            json=body,
            headers=_auth(access_token),
        ),
        max_attempts=2,
    )
    raise_for_provider_status(response, "Calendar events.watch", ChannelSetupFailed)
    data = _json_body(response, "Calendar events.watch", ChannelSetupFailed)
    if not data.get("resourceId"):
        raise ChannelSetupFailed("Calendar events.watch returned no resourceId")
    return data


async def stop_channel(
    client: httpx.AsyncClient, access_token: str, channel_id: str, resource_id: str
) -> None:
    response = await client.post(
        f"{CALENDAR_API_BASE}/channels/stop",
        json={"id": channel_id, "resourceId": resource_id},
        headers=_auth(access_token),
    )
    # 404: channel already gone
    if response.status_code == 404:
        raise ChannelExpired(f"Channel {channel_id} not found")
    raise_for_provider_status(response, "Calendar channels.stop", ChannelExpired)


async def watch_gmail(
    client: httpx.AsyncClient, access_token: str, topic_name: str
) -> dict[str, Any]:
    """Start Gmail users.watch. Returns {historyId, expiration}."""
    response = await request_with_retries(
        lambda: client.post(
            f"{GMAIL_API_BASE}/watch",
            json={"topicName": topic_name, "labelIds": GMAIL_WATCH_LABELS},
            headers=_auth(access_token),
        ),
        max_attempts=2,
    )
    raise_for_provider_status(response, "Gmail users.watch", ChannelSetupFailed)
    return _json_body(response, "Gmail users.watch", ChannelSetupFailed)


async def stop_gmail(client: httpx.AsyncClient, access_token: str) -> None:
    response = await client.post(f"{GMAIL_API_BASE}/stop", headers=_auth(access_token))
    raise_for_provider_status(response, "Gmail users.stop", ChannelExpired)


# ============================================================================
# OAuth
# ============================================================================


async def refresh_access_token(client: httpx.AsyncClient, refresh_token: str) -> dict[str, Any]:
    """Exchange a refresh token. invalid_grant (revoked/expired) raises TokenExpired."""
    response = await request_with_retries(
        lambda: client.post(
            GOOGLE_TOKEN_URL,
            data={
                "client_id": settings.GOOGLE_CLIENT_ID,
                "client_secret": settings.GOOGLE_CLIENT_SECRET,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        ),
    )
    if response.status_code == 400:
        raise TokenExpired("Refresh token rejected (invalid_grant)")
    raise_for_provider_status(response, "OAuth token refresh", TokenExpired)
    data = _json_body(response, "OAuth token refresh", ProviderUnreachable)
    if not data.get("access_token"):
        raise ProviderUnreachable("OAuth token refresh returned no access_token")
    return data

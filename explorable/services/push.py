"""Expo push relay.

Endpoint: https://exp.host/--/api/v2/push/send (override with
EXPLORABLE_EXPO_PUSH_URL).  An access token is only needed when the Expo
project has enhanced push security enabled.
"""

from __future__ import annotations

import logging

import httpx

from explorable.config import Settings, get_settings
from explorable.memories.base import PushChannel

logger = logging.getLogger("explorable.push")

# Preference category → Android notification channel
_ANDROID_CHANNELS: dict[str, str] = {
    "friend_requests": "friend-requests",
    "comments": "comments",
}


def build_message(token: str, title: str, body: str, payload: dict, category: str) -> dict:
    return {
        "to": token,
        "title": title,
        "body": body,
        "data": payload,
        "sound": "default",
        "priority": "high",
        "badge": 1,
        "channelId": _ANDROID_CHANNELS.get(category, "default"),
    }


class ExpoPushChannel(PushChannel):
    """PushChannel that posts to the Expo push service."""

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the channel.

        Args:
            settings:    Runtime settings (defaults to ``get_settings()``).
            http_client: Optional pre-configured httpx client (for testing).
        """
        s = settings or get_settings()
        self._url = s.expo_push_url
        self._token = s.expo_access_token
        self._timeout = s.push_timeout_seconds
        self._http_client = http_client

    async def send(
        self, token: str, title: str, body: str, payload: dict, category: str
    ) -> bool:
        """Post one message.

        Raises:
            httpx.HTTPError: On transport failures or non-2xx responses.
        """
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        message = build_message(token, title, body, payload, category)

        if self._http_client:
            response = await self._http_client.post(self._url, json=message, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._url, json=message, headers=headers)
        response.raise_for_status()

        ticket = (response.json() or {}).get("data") or {}
        if isinstance(ticket, list):
            ticket = ticket[0] if ticket else {}
        if ticket.get("status") == "error":
            logger.warning(
                "Expo rejected push: %s (%s)",
                ticket.get("message"), (ticket.get("details") or {}).get("error"),
            )
            return False
        return True

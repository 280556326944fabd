"""
HTTP client for the relay's room-creation endpoint.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

import httpx

from utils.error_codes import RoomLookupFailed

logger = logging.getLogger(__name__)


class RoomLookup:
    def __init__(self, base_url: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout, connect=timeout)
        self._transport = transport

    async def create_room(self) -> str:
        """
        Ask the relay for a fresh room identifier.

        Anything other than a JSON object carrying a string ``roomId`` is a
        failure; HTML error pages and proxies are not parsed optimistically.
        """

        endpoint = f"{self.base_url}/room"
        logger.debug("Fetching %s", endpoint)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(endpoint)
        except httpx.HTTPError as exc:
            raise RoomLookupFailed(f"Room lookup request failed: {exc}") from exc

        if not response.is_success:
            raise RoomLookupFailed(f"Room lookup returned HTTP {response.status_code}")

        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type:
            raise RoomLookupFailed(
                f"Expected JSON response but received {content_type or 'no content type'}. Response: {response.text[:200]}"
            )

        try:
            data = response.json()
        except json.JSONDecodeError as exc:
            raise RoomLookupFailed("Room lookup returned unparsable JSON") from exc

        room_id = data.get("roomId") if isinstance(data, dict) else None
        if not isinstance(room_id, str) or not room_id:
            raise RoomLookupFailed("Room lookup response has no roomId")
        return room_id

"""Airbyte handler API client."""

import logging
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Optional
import httpx

from app.core.config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class AirbyteResponse:
    """Outcome of one call to the Airbyte handler."""

    status_code: int
    data: Optional[dict[str, Any]]
    duration_ms: int

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class AirbyteClient:
    """Async client for the Airbyte handler endpoint.

    The handler provisions (or returns the already-provisioned) source,
    destination, connection and job for a shop. The same request serves as
    a status check when made with an online token and as a connect when made
    with the offline token.
    """

    def __init__(self, endpoint: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.endpoint = endpoint
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self.client is None:
            self.client = httpx.AsyncClient(
                headers={"Content-Type": "application/json"},
                transport=self.transport,
            )
        return self.client

    async def close(self):
        """Close the HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None

    def _parse_json_response(self, response: httpx.Response) -> dict[str, Any] | None:
        """Safely parse JSON response, returning None on failure."""
        if not response.text:
            logger.warning(f"Airbyte handler returned an empty body (HTTP {response.status_code})")
            return None

        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"Failed to parse Airbyte handler JSON: {e}, body: {response.text[:200]}")
            return None

        if not isinstance(data, dict):
            logger.error(f"Unexpected Airbyte handler payload type: {type(data).__name__}")
            return None
        return data

    async def request_connection(self, shop: str, api_password: str) -> AirbyteResponse:
        """
        POST the shop and its access token to the handler.

        Transport failures propagate as ``httpx.HTTPError``; HTTP error
        statuses are returned, not raised.
        """
        client = await self._get_client()
        start = time.monotonic()
        response = await client.post(
            self.endpoint,
            json={"shop": shop, "api_password": api_password},
        )
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(f"Airbyte handler responded {response.status_code} for {shop} in {duration_ms}ms")

        return AirbyteResponse(
            status_code=response.status_code,
            data=self._parse_json_response(response),
            duration_ms=duration_ms,
        )


@lru_cache()
def get_airbyte_client() -> AirbyteClient:
    """Process-wide Airbyte client."""
    return AirbyteClient(get_settings().airbyte_api_url)

"""Connection lifecycle - status checks and connect/reconnect against the Airbyte handler."""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional
import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.database import ConnectionStatus
from app.services.airbyte import AirbyteClient
from app.services.app_logger import AppLoggers
from app.services.connection_store import ConnectionStore

logger = logging.getLogger(__name__)

CONNECT_ACTIONS = ("connect", "reconnect")
IDENTIFIER_FIELDS = ("connection_id", "source_id", "destination_id", "job_id")

MISSING_OFFLINE_TOKEN_MESSAGE = (
    "Offline access token not found. Please use the Connect button to authorize background access."
)
CONNECT_FAILED_MESSAGE = "Failed to connect to Airbyte"
NETWORK_ERROR_MESSAGE = "Network error occurred while connecting to GrowthHit Dashboard"
HANDLER_FAILED_MESSAGE = "Airbyte handler reported a failed connection"

# States a status check may record; a reported "connecting" is not one of them.
CHECKED_STATUSES = (
    ConnectionStatus.CONNECTED.value,
    ConnectionStatus.DISCONNECTED.value,
    ConnectionStatus.FAILED.value,
)


@dataclass
class StatusResult:
    status: str
    payload: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None


@dataclass
class ConnectResult:
    success: bool
    message: str
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None


def _identifiers(payload: Optional[dict[str, Any]]) -> dict[str, str]:
    """The pipeline identifiers present (and non-empty) in a handler payload."""
    if not payload:
        return {}
    return {name: str(payload[name]) for name in IDENTIFIER_FIELDS if payload.get(name)}


def _message(value: Any) -> Optional[str]:
    """A handler-supplied message, only when it is non-empty text."""
    if isinstance(value, str) and value:
        return value
    return None


def _error_detail(value: Any) -> Optional[str]:
    """Flatten a handler-supplied error of any JSON shape to text."""
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value, default=str)


class ConnectionService:
    """Drives a shop's ConnectionRecord through its lifecycle.

    disconnected -> connecting -> connected | failed, and back to connecting
    on every retry. Calls for the same shop are not serialized.
    """

    def __init__(self, session: AsyncSession, airbyte: AirbyteClient, loggers: AppLoggers):
        self.store = ConnectionStore(session)
        self.airbyte = airbyte
        self.loggers = loggers

    async def check_status(self, shop: str, access_token: str, request_id: str) -> StatusResult:
        """
        Ask the handler for the shop's connection using the online token.

        Integration failures are recorded as state and never raised.
        """
        log = self.loggers.app
        await log.info(
            "Starting Airbyte status check",
            {"request_id": request_id, "endpoint": self.airbyte.endpoint},
            shop=shop,
        )

        status = ConnectionStatus.DISCONNECTED.value
        payload = None
        error_message = None
        try:
            response = await self.airbyte.request_connection(shop, access_token)
        except httpx.HTTPError as e:
            status = ConnectionStatus.FAILED.value
            error_message = str(e) or type(e).__name__
            await log.error(
                "Airbyte status check fetch failed",
                {"request_id": request_id, "error": error_message},
                shop=shop,
            )
        else:
            await log.info(
                "Airbyte status check response received",
                {"request_id": request_id, "status": response.status_code,
                 "ok": response.ok, "duration": response.duration_ms},
                shop=shop,
            )
            if not response.ok:
                status = ConnectionStatus.FAILED.value
                error_message = f"Integration API returned HTTP {response.status_code}"
            elif response.data is not None:
                payload = response.data
                reported = payload.get("status")
                if isinstance(reported, str) and reported in CHECKED_STATUSES:
                    status = reported
                else:
                    status = ConnectionStatus.CONNECTED.value
                if status == ConnectionStatus.FAILED.value:
                    error_message = _message(payload.get("message")) or HANDLER_FAILED_MESSAGE

        fields: dict[str, Any] = {"status": status, "error_message": error_message}
        identifiers = _identifiers(payload)
        fields.update(identifiers)
        if status == ConnectionStatus.CONNECTED.value:
            existing = await self.store.get(shop)
            for name in IDENTIFIER_FIELDS:
                if name not in identifiers and (existing is None or getattr(existing, name) is None):
                    logger.warning(f"Handler reported {shop} connected without {name}; recording disconnected")
                    fields["status"] = ConnectionStatus.DISCONNECTED.value
                    break

        record = await self.store.upsert(shop, **fields)
        await self.loggers.database.database(
            "upsert", "AirbyteConnection", shop, {"request_id": request_id, "status": record.status}
        )
        return StatusResult(status=record.status, payload=payload, error_message=record.error_message)

    async def connect(self, shop: str, action: Optional[str], request_id: str) -> ConnectResult:
        """
        Connect (or reconnect) the shop using its offline token.

        Requires an offline session from a prior token exchange. Unknown
        actions and a missing offline token return a failed result without
        touching the ConnectionRecord.
        """
        if action not in CONNECT_ACTIONS:
            await self.loggers.app.warn(
                "Invalid action received", {"request_id": request_id, "action": action}, shop=shop
            )
            return ConnectResult(success=False, message="Invalid action")

        offline = await self.store.get_offline_session(shop)
        if offline is None or not offline.access_token:
            await self.loggers.airbyte.warn(
                "Connect attempted without an offline access token",
                {"request_id": request_id, "action": action},
                shop=shop,
            )
            return ConnectResult(success=False, message=MISSING_OFFLINE_TOKEN_MESSAGE)

        started = time.monotonic()
        airbyte_log = self.loggers.airbyte
        await airbyte_log.airbyte_operation(
            "connection_attempt", shop, "starting", {"request_id": request_id, "action": action}
        )
        await self.store.upsert(shop, status=ConnectionStatus.CONNECTING.value, error_message=None)
        await self.loggers.database.database(
            "upsert", "AirbyteConnection", shop, {"request_id": request_id, "status": "connecting"}
        )

        try:
            await airbyte_log.info(
                "Calling Airbyte Handler API",
                {"request_id": request_id, "endpoint": self.airbyte.endpoint},
                shop=shop,
            )
            response = await self.airbyte.request_connection(shop, offline.access_token)
        except httpx.HTTPError as e:
            await self.store.upsert(
                shop, status=ConnectionStatus.FAILED.value, error_message=NETWORK_ERROR_MESSAGE
            )
            await airbyte_log.error(
                "Connection attempt failed", {"request_id": request_id, "error": str(e)}, shop=shop
            )
            await self.loggers.app.metric("connection_errors", 1, shop, {"request_id": request_id})
            return ConnectResult(success=False, message=NETWORK_ERROR_MESSAGE, error=str(e))

        result = response.data or {}
        await self.loggers.api.api_call(
            "POST", "airbyte-handler", response.status_code, response.duration_ms, shop,
            {"request_id": request_id, "result_keys": sorted(result)},
        )

        identifiers = _identifiers(result)
        if response.ok and len(identifiers) == len(IDENTIFIER_FIELDS):
            record = await self.store.mark_connected(shop, identifiers)
            await airbyte_log.airbyte_operation(
                "connection_attempt", shop, "connected",
                {"request_id": request_id, "connection_id": record.connection_id,
                 "sync_count": record.sync_count,
                 "duration": int((time.monotonic() - started) * 1000)},
            )
            await self.loggers.app.metric("successful_connections", 1, shop, {"request_id": request_id})
            return ConnectResult(success=True, message="Successfully connected to Airbyte!", data=result)

        message = _message(result.get("message")) or CONNECT_FAILED_MESSAGE
        if response.ok:
            logger.warning(f"Airbyte handler accepted {shop} but returned identifiers {sorted(identifiers)}")
        await self.store.upsert(shop, status=ConnectionStatus.FAILED.value, error_message=message)
        await airbyte_log.airbyte_operation(
            "connection_attempt", shop, "failed",
            {"request_id": request_id, "error": message, "api_status": response.status_code},
        )
        await self.loggers.app.metric("failed_connections", 1, shop, {"request_id": request_id})
        return ConnectResult(success=False, message=message, error=_error_detail(result.get("error")))

"""Structured logging to the console and to the database.

Every call writes one line through the stdlib ``logging`` module (logger name
``app.<source>``). Calls that carry a shop are also appended to ``app_logs``
through a ``DatabaseLogSink``, which never lets a database error escape.
"""

import logging
import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any, Optional, Union

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import get_settings
from app.core.database import async_session_maker
from app.models.app_log import AppLog, AppMetric

logger = logging.getLogger(__name__)

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

_ID_ALPHABET = string.digits + string.ascii_lowercase


def generate_request_id() -> str:
    """Correlation id for one logical operation: req_<epoch ms>_<9 base36 chars>."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"req_{int(time.time() * 1000)}_{suffix}"


def extract_client_info(request: Request) -> dict[str, str]:
    """Pull user agent, client IP, url and method off an inbound request."""
    headers = request.headers
    return {
        "user_agent": headers.get("user-agent") or "unknown",
        "ip_address": headers.get("x-forwarded-for") or headers.get("x-real-ip") or "unknown",
        "url": str(request.url),
        "method": request.method,
    }


@dataclass
class LogEntry:
    level: str
    message: str
    source: str
    shop: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)
    request_id: Optional[str] = None
    user_id: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)


@dataclass
class MetricEntry:
    shop: str
    metric_name: str
    metric_value: Any
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)


class DatabaseLogSink:
    """Best-effort writer for log and metric entries.

    ``record`` opens its own session so a failed write can never roll back
    or poison the caller's transaction. Failures are reported on the console
    and dropped.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    def _to_row(self, entry: Union[LogEntry, MetricEntry]) -> Union[AppLog, AppMetric]:
        if isinstance(entry, MetricEntry):
            return AppMetric(
                shop=entry.shop,
                metric_name=entry.metric_name,
                metric_value=float(entry.metric_value),
                metric_metadata=entry.metadata or None,
                timestamp=entry.timestamp,
            )
        return AppLog(
            shop=entry.shop,
            level=entry.level,
            message=entry.message,
            context=entry.context or None,
            source=entry.source,
            user_id=entry.user_id,
            request_id=entry.request_id,
            user_agent=entry.user_agent,
            ip_address=entry.ip_address,
            timestamp=entry.timestamp,
        )

    async def record(self, entry: Union[LogEntry, MetricEntry]) -> None:
        try:
            async with self.session_factory() as session:
                session.add(self._to_row(entry))
                await session.commit()
        except Exception as e:
            logger.error(f"Failed to write {type(entry).__name__} to database: {e}")


class AppLogger:
    """Category logger (``app``, ``auth``, ``airbyte``, ...)."""

    def __init__(self, source: str, sink: DatabaseLogSink, debug_enabled: bool = False):
        self.source = source
        self.sink = sink
        self.debug_enabled = debug_enabled
        self._console = logging.getLogger(f"app.{source}")

    async def _log(
        self,
        level: str,
        message: str,
        context: Optional[dict[str, Any]] = None,
        request: Optional[Request] = None,
        shop: Optional[str] = None,
    ) -> Optional[LogEntry]:
        if level == "debug" and not self.debug_enabled:
            return None

        context = dict(context or {})
        client_info = extract_client_info(request) if request is not None else {}
        entry = LogEntry(
            level=level,
            message=message,
            source=self.source,
            shop=shop,
            context=context,
            request_id=context.get("request_id"),
            user_id=context.get("user_id"),
            user_agent=client_info.get("user_agent"),
            ip_address=client_info.get("ip_address"),
        )

        line = f"[{self.source}] {message}"
        if context:
            line = f"{line} {context}"
        self._console.log(LEVELS[level], line)

        if shop:
            await self.sink.record(entry)
        return entry

    async def debug(
        self,
        message: str,
        context: Optional[dict[str, Any]] = None,
        request: Optional[Request] = None,
        shop: Optional[str] = None,
    ) -> Optional[LogEntry]:
        return await self._log("debug", message, context, request, shop)

    async def info(
        self,
        message: str,
        context: Optional[dict[str, Any]] = None,
        request: Optional[Request] = None,
        shop: Optional[str] = None,
    ) -> Optional[LogEntry]:
        return await self._log("info", message, context, request, shop)

    async def warn(
        self,
        message: str,
        context: Optional[dict[str, Any]] = None,
        request: Optional[Request] = None,
        shop: Optional[str] = None,
    ) -> Optional[LogEntry]:
        return await self._log("warn", message, context, request, shop)

    async def error(
        self,
        message: str,
        context: Optional[dict[str, Any]] = None,
        request: Optional[Request] = None,
        shop: Optional[str] = None,
    ) -> Optional[LogEntry]:
        return await self._log("error", message, context, request, shop)

    async def api_call(
        self,
        method: str,
        url: str,
        status: int,
        duration: int,
        shop: Optional[str],
        context: Optional[dict[str, Any]] = None,
    ) -> Optional[LogEntry]:
        """Log an outbound API call; level follows the HTTP status."""
        if status >= 400:
            level = "error"
        elif status >= 300:
            level = "warn"
        else:
            level = "info"
        return await self._log(
            level,
            f"API {method} {url} - {status} ({duration}ms)",
            {**(context or {}), "method": method, "url": url, "status": status,
             "duration": duration, "type": "api_call"},
            shop=shop,
        )

    async def airbyte_operation(
        self,
        operation: str,
        shop: Optional[str],
        status: str,
        context: Optional[dict[str, Any]] = None,
    ) -> Optional[LogEntry]:
        level = "error" if status == "failed" else "info"
        return await self._log(
            level,
            f"Airbyte {operation} - {status}",
            {**(context or {}), "operation": operation, "status": status,
             "type": "airbyte_operation"},
            shop=shop,
        )

    async def webhook(
        self,
        topic: str,
        shop: Optional[str],
        processed: bool = False,
        context: Optional[dict[str, Any]] = None,
    ) -> Optional[LogEntry]:
        return await self._log(
            "info",
            f"Webhook {topic} - {'processed' if processed else 'received'}",
            {**(context or {}), "topic": topic, "processed": processed, "type": "webhook"},
            shop=shop,
        )

    async def auth(self, event: str, shop: Optional[str], context=None) -> Optional[LogEntry]:
        return await self._log(
            "info",
            f"Auth {event} - {shop}",
            {**(context or {}), "event": event, "type": "auth"},
            shop=shop,
        )

    async def database(self, operation: str, model: str, shop: Optional[str], context=None):
        return await self._log(
            "debug",
            f"Database {operation} on {model}",
            {**(context or {}), "operation": operation, "model": model, "type": "database"},
            shop=shop,
        )

    async def metric(
        self,
        metric_name: str,
        value: float,
        shop: Optional[str],
        context: Optional[dict[str, Any]] = None,
    ) -> Optional[LogEntry]:
        """Store a metric row for the shop, then log it."""
        context = dict(context or {})
        if shop:
            await self.sink.record(MetricEntry(
                shop=shop,
                metric_name=metric_name,
                metric_value=value,
                metadata=context,
            ))
        return await self._log(
            "info",
            f"Metric {metric_name}: {value}",
            {**context, "metric_name": metric_name, "value": value, "type": "metric"},
            shop=shop,
        )


@dataclass
class AppLoggers:
    """The category loggers shared by routes and services."""

    app: AppLogger
    auth: AppLogger
    airbyte: AppLogger
    webhook: AppLogger
    api: AppLogger
    database: AppLogger


def build_loggers(sink: DatabaseLogSink, debug_enabled: bool = False) -> AppLoggers:
    return AppLoggers(
        app=AppLogger("app", sink, debug_enabled),
        auth=AppLogger("auth", sink, debug_enabled),
        airbyte=AppLogger("airbyte", sink, debug_enabled),
        webhook=AppLogger("webhook", sink, debug_enabled),
        api=AppLogger("api", sink, debug_enabled),
        database=AppLogger("database", sink, debug_enabled),
    )


@lru_cache()
def get_loggers() -> AppLoggers:
    """Process-wide loggers writing through the application's session factory."""
    return build_loggers(DatabaseLogSink(async_session_maker), get_settings().debug)

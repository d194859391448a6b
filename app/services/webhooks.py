"""Webhook processing - records each delivery and dispatches it by topic."""

import logging
from datetime import datetime
from typing import Awaitable, Callable
from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.database import Session
from app.models.webhook_event import WebhookEvent
from app.services.app_logger import AppLoggers
from app.services.connection_store import ConnectionStore
from app.services.shopify_auth import WebhookContext

logger = logging.getLogger(__name__)


class WebhookProcessor:
    """Stores a WebhookEvent, runs the topic handler and records the outcome.

    Handler failures are recorded on the event and never raised; unknown
    topics count as processed.
    """

    def __init__(self, session: AsyncSession, loggers: AppLoggers):
        self.session = session
        self.loggers = loggers
        self.handlers: dict[str, Callable[[WebhookContext, str], Awaitable[None]]] = {
            "APP_UNINSTALLED": self.handle_app_uninstalled,
            "APP_SCOPES_UPDATE": self.handle_app_scopes_update,
        }

    async def process(self, context: WebhookContext, request_id: str) -> WebhookEvent:
        event = WebhookEvent(
            shop=context.shop,
            topic=context.topic,
            payload=context.payload,
            processed=False,
            received_at=datetime.utcnow(),
        )
        self.session.add(event)
        await self.session.commit()
        event_id = event.id
        await self.loggers.database.database(
            "create", "WebhookEvent", context.shop,
            {"request_id": request_id, "webhook_event_id": event_id, "topic": context.topic},
        )

        try:
            handler = self.handlers.get(context.topic)
            if handler is None:
                await self.loggers.webhook.warn(
                    f"Unhandled webhook topic: {context.topic}",
                    {"request_id": request_id, "topic": context.topic},
                    shop=context.shop,
                )
            else:
                await handler(context, request_id)
        except Exception as e:
            logger.exception(f"Webhook {context.topic} handler failed for {context.shop}")
            await self.session.rollback()
            await self._mark(event_id, processed=False, processing_error=str(e) or type(e).__name__)
            await self.loggers.webhook.error(
                f"Failed to process webhook {context.topic}",
                {"request_id": request_id, "error": str(e)},
                shop=context.shop,
            )
        else:
            await self._mark(event_id, processed=True, processing_error=None)
            await self.loggers.webhook.webhook(
                context.topic, context.shop, True, {"request_id": request_id}
            )

        return await self.session.get(WebhookEvent, event_id, populate_existing=True)

    async def _mark(self, event_id: int, processed: bool, processing_error: str | None) -> None:
        await self.session.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .values(processed=processed, processing_error=processing_error, processed_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

    async def handle_app_uninstalled(self, context: WebhookContext, request_id: str) -> None:
        """Drop every session for the shop and mark its connection disconnected."""
        shop = context.shop
        await self.loggers.webhook.info(
            "Processing app uninstalled",
            {"request_id": request_id, "has_session": context.session is not None},
            shop=shop,
        )

        deleted = await self.session.execute(delete(Session).where(Session.shop == shop))
        updated = await ConnectionStore(self.session).mark_disconnected(shop)
        await self.session.commit()

        await self.loggers.database.database(
            "deleteMany", "Session", shop, {"request_id": request_id, "deleted_count": deleted.rowcount}
        )
        await self.loggers.database.database(
            "updateMany", "AirbyteConnection", shop,
            {"request_id": request_id, "status": "disconnected", "updated_count": updated},
        )
        await self.loggers.app.metric("app_uninstalls", 1, shop, {"request_id": request_id})

    async def handle_app_scopes_update(self, context: WebhookContext, request_id: str) -> None:
        """Copy the payload's current scopes onto the shop's session."""
        shop = context.shop
        payload = context.payload if isinstance(context.payload, dict) else {}
        current = payload.get("current")

        if context.session is None or not current:
            await self.loggers.webhook.warn(
                "App scopes update missing required data",
                {"request_id": request_id, "has_session": context.session is not None,
                 "has_payload": bool(context.payload), "has_current": bool(current)},
                shop=shop,
            )
            return

        scope = ",".join(str(s) for s in current) if isinstance(current, list) else str(current)
        await self.session.execute(
            update(Session)
            .where(Session.id == context.session.id)
            .values(scope=scope, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

        await self.loggers.database.database(
            "update", "Session", shop,
            {"request_id": request_id, "session_id": context.session.id, "new_scopes": scope},
        )
        await self.loggers.app.metric("scope_updates", 1, shop, {"request_id": request_id})

"""Shopify webhook intake.

Always answers 200. Failures are logged; handler failures are also recorded
on the WebhookEvent.
"""

import logging
import time
from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.services.app_logger import AppLoggers, generate_request_id, get_loggers
from app.services.shopify_auth import ShopifyAuth, get_shopify_auth
from app.services.webhooks import WebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks")
async def receive_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    auth: ShopifyAuth = Depends(get_shopify_auth),
    loggers: AppLoggers = Depends(get_loggers),
):
    """Authenticate, record and dispatch a Shopify webhook."""
    start = time.monotonic()
    request_id = generate_request_id()
    shop = request.headers.get("x-shopify-shop-domain")
    topic = request.headers.get("x-shopify-topic")

    try:
        context = await auth.authenticate_webhook(request, db)
        shop, topic = context.shop, context.topic

        await loggers.webhook.webhook(
            topic, shop, False,
            {"request_id": request_id, "has_session": context.session is not None},
        )

        await WebhookProcessor(db, loggers).process(context, request_id)

        await loggers.app.metric(
            "webhook_processing_time", int((time.monotonic() - start) * 1000), shop,
            {"request_id": request_id, "topic": topic},
        )
    except Exception as e:
        logger.exception("Webhook authentication/processing failed")
        await db.rollback()
        await loggers.webhook.error(
            "Webhook authentication/parsing failed",
            {"request_id": request_id, "error": str(e), "shop": shop, "topic": topic},
        )

    return Response(status_code=200)

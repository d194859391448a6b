"""Embedded app index: Airbyte status check (GET) and connect/reconnect (POST)."""

import logging
import time
from fastapi import APIRouter, Depends, Form, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.database import get_db
from app.schemas.responses import AppIndexResponse, ConnectActionResponse
from app.services.airbyte import AirbyteClient, get_airbyte_client
from app.services.app_logger import AppLoggers, generate_request_id, get_loggers
from app.services.connection import ConnectionService
from app.services.shopify_auth import AdminContext, ShopifyAuth, ShopifyAuthError, get_shopify_auth

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/app", tags=["app"])


async def _authenticate(
    request: Request,
    db: AsyncSession,
    auth: ShopifyAuth,
    loggers: AppLoggers,
    request_id: str,
) -> AdminContext:
    """Identify the merchant; failure here is fatal for the request."""
    try:
        admin = await auth.authenticate_admin(request, db)
    except ShopifyAuthError as e:
        await loggers.auth.error(
            "authenticate_admin failed",
            {"request_id": request_id, "path": request.url.path, "error": str(e)},
            request,
        )
        raise HTTPException(status_code=401, detail=str(e))

    await loggers.auth.auth(
        "admin_authenticated", admin.shop,
        {"request_id": request_id, "is_online": admin.session.is_online},
    )
    return admin


@router.get("", response_model=AppIndexResponse)
async def app_index(
    request: Request,
    db: AsyncSession = Depends(get_db),
    auth: ShopifyAuth = Depends(get_shopify_auth),
    airbyte: AirbyteClient = Depends(get_airbyte_client),
    loggers: AppLoggers = Depends(get_loggers),
):
    """Check the shop's Airbyte connection with the online token."""
    start = time.monotonic()
    request_id = generate_request_id()
    admin = await _authenticate(request, db, auth, loggers, request_id)
    shop = admin.shop

    await loggers.app.info("App index loaded", {"request_id": request_id}, request, shop)

    service = ConnectionService(db, airbyte, loggers)
    result = await service.check_status(shop, admin.session.access_token, request_id)

    await loggers.app.metric(
        "page_loads", 1, shop,
        {"request_id": request_id, "duration": int((time.monotonic() - start) * 1000)},
    )

    return AppIndexResponse(
        shop=shop,
        connection_status=result.status,
        connection_data=result.payload,
        error_message=result.error_message,
        api_key=get_settings().shopify_api_key,
    )


@router.post("", response_model=ConnectActionResponse)
async def app_action(
    request: Request,
    action: str | None = Form(default=None),
    db: AsyncSession = Depends(get_db),
    auth: ShopifyAuth = Depends(get_shopify_auth),
    airbyte: AirbyteClient = Depends(get_airbyte_client),
    loggers: AppLoggers = Depends(get_loggers),
):
    """Connect or reconnect the shop using its stored offline token."""
    request_id = generate_request_id()
    admin = await _authenticate(request, db, auth, loggers, request_id)
    shop = admin.shop

    await loggers.app.info("Action triggered", {"request_id": request_id, "action": action}, request, shop)

    service = ConnectionService(db, airbyte, loggers)
    result = await service.connect(shop, action, request_id)

    return ConnectActionResponse(
        success=result.success,
        message=result.message,
        data=result.data,
        error=result.error,
    )

"""Session token -> offline access token exchange, used by the Connect button."""

import logging
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.schemas.responses import ExchangeTokenRequest, ExchangeTokenResponse
from app.services.app_logger import AppLoggers, generate_request_id, get_loggers
from app.services.shopify_auth import ShopifyAuth, ShopifyTokenExchangeError, get_shopify_auth

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["auth"])

MISSING_FIELDS_MESSAGE = "Missing sessionToken or shop"
STORE_FAILED_MESSAGE = "Failed to store offline session"


def _failure(status_code: int, message: str, error: str | None = None) -> JSONResponse:
    content = {"ok": False, "message": message}
    if error is not None:
        content["error"] = error
    return JSONResponse(status_code=status_code, content=content)


async def _parse_body(request: Request) -> ExchangeTokenRequest | None:
    """The request body, or None when it is not a JSON object of the expected shape."""
    try:
        return ExchangeTokenRequest.model_validate(await request.json())
    except (ValueError, ValidationError):
        return None


@router.post("/exchange-token", response_model=ExchangeTokenResponse)
async def exchange_token(
    request: Request,
    db: AsyncSession = Depends(get_db),
    auth: ShopifyAuth = Depends(get_shopify_auth),
    loggers: AppLoggers = Depends(get_loggers),
):
    """Store an offline session for the shop so connect can run."""
    request_id = generate_request_id()
    body = await _parse_body(request)
    if body is None or not body.session_token or not body.shop:
        return _failure(400, MISSING_FIELDS_MESSAGE)

    try:
        await auth.exchange_token(db, body.shop, body.session_token, online=False)
    except ShopifyTokenExchangeError as e:
        await loggers.auth.error(
            "Offline token exchange failed",
            {"request_id": request_id, "error": str(e), "detail": e.detail},
            shop=body.shop,
        )
        return _failure(500, str(e), e.detail)
    except SQLAlchemyError as e:
        logger.exception(f"Storing offline session for {body.shop} failed")
        await db.rollback()
        await loggers.auth.error(
            STORE_FAILED_MESSAGE, {"request_id": request_id, "error": str(e)}, shop=body.shop
        )
        return _failure(500, STORE_FAILED_MESSAGE, str(e))

    await loggers.auth.auth("offline_token_exchanged", body.shop, {"request_id": request_id})
    return ExchangeTokenResponse(ok=True)

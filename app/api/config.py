import logging
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["config"])


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str


class ConfigResponse(BaseModel):
    shopify_api_key: str
    shopify_app_url: str
    scopes: list[str]
    airbyte_api_url: str
    log_level: str
    debug: bool


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """Health check endpoint; reports "degraded" when the database is unreachable."""
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check database probe failed: {e}")
        return HealthResponse(status="degraded", version="0.1.0", database="unreachable")
    return HealthResponse(status="ok", version="0.1.0", database="ok")


@router.get("/config", response_model=ConfigResponse)
async def get_config() -> ConfigResponse:
    """Get current configuration (excluding secrets)."""
    settings = get_settings()
    return ConfigResponse(
        shopify_api_key=settings.shopify_api_key,
        shopify_app_url=settings.shopify_app_url,
        scopes=[s.strip() for s in settings.scopes.split(",") if s.strip()],
        airbyte_api_url=settings.airbyte_api_url,
        log_level=settings.log_level,
        debug=settings.debug,
    )

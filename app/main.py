from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import RedirectResponse

from app.core.database import connect_with_retry, init_db, close_db
from app.core.logging import configure_logging
from app.api import config, app_index, webhooks, exchange_token
from app.services.airbyte import get_airbyte_client

configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown events."""
    # Startup
    await connect_with_retry()
    await init_db()
    yield
    # Shutdown
    await get_airbyte_client().close()
    await close_db()


# Create FastAPI application
app = FastAPI(
    title="Shopify Airbyte Connector",
    description="Embedded Shopify app that provisions an Airbyte pipeline per shop",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(config.router)
app.include_router(app_index.router)
app.include_router(webhooks.router)
app.include_router(exchange_token.router)


@app.get("/")
async def root(request: Request):
    """Embedded entry point: send admin iframe loads to the app page."""
    params = request.query_params
    if params.get("embedded") and params.get("host"):
        return RedirectResponse(url=f"/app?{request.url.query}")
    return {"show_form": True}

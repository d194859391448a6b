"""Pydantic request/response models for API endpoints."""

from pydantic import BaseModel, ConfigDict, Field
from typing import Any


class AppIndexResponse(BaseModel):
    """Embedded app page data: the shop and its Airbyte connection status."""
    shop: str
    connection_status: str
    connection_data: dict[str, Any] | None = None
    error_message: str | None = None
    api_key: str


class ConnectActionResponse(BaseModel):
    """Outcome of a connect/reconnect form submission."""
    success: bool
    message: str
    data: dict[str, Any] | None = None
    error: str | None = None


class ExchangeTokenRequest(BaseModel):
    """Body of POST /api/exchange-token."""
    model_config = ConfigDict(populate_by_name=True)

    session_token: str | None = Field(default=None, alias="sessionToken")
    shop: str | None = None


class ExchangeTokenResponse(BaseModel):
    ok: bool
    message: str | None = None
    error: str | None = None

"""Shopify authentication: session tokens, token exchange and webhook HMAC."""

import base64
import hashlib
import hmac
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
import jwt
from fastapi import Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.models.database import Session

logger = logging.getLogger(__name__)

TOKEN_EXCHANGE_GRANT = "urn:ietf:params:oauth:grant-type:token-exchange"
ID_TOKEN_TYPE = "urn:ietf:params:oauth:token-type:id_token"
ONLINE_TOKEN_TYPE = "urn:shopify:params:oauth:token-type:online-access-token"
OFFLINE_TOKEN_TYPE = "urn:shopify:params:oauth:token-type:offline-access-token"

SESSION_TOKEN_LEEWAY_SECONDS = 10

_SHOP_DOMAIN_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9-]*\.myshopify\.com$")


class ShopifyAuthError(Exception):
    """Raised when the caller of a request cannot be identified."""
    pass


class ShopifyTokenExchangeError(ShopifyAuthError):
    """Raised when Shopify refuses or garbles a token exchange."""

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.detail = detail


@dataclass
class AdminContext:
    """Authenticated embedded-admin request."""
    session: Session

    @property
    def shop(self) -> str:
        return self.session.shop


@dataclass
class WebhookContext:
    """Authenticated webhook delivery."""
    topic: str
    shop: str
    session: Optional[Session]
    payload: Any


def offline_session_id(shop: str) -> str:
    return f"{shop}_offline"


def online_session_id(shop: str, user_id: Any) -> str:
    return f"{shop}_{user_id}"


def is_valid_shop_domain(shop: str | None) -> bool:
    return bool(shop) and _SHOP_DOMAIN_RE.match(shop) is not None


def normalize_topic(topic: str) -> str:
    """Header topic to enum form, e.g. app/scopes_update -> APP_SCOPES_UPDATE."""
    return topic.strip().upper().replace("/", "_")


class ShopifyAuth:
    """Validates embedded-app requests and webhooks for one Shopify app."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.transport = transport

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    def decode_session_token(self, token: str) -> dict[str, Any]:
        """Verify an App Bridge session token and return its claims."""
        try:
            claims = jwt.decode(
                token,
                self.api_secret,
                algorithms=["HS256"],
                audience=self.api_key,
                leeway=SESSION_TOKEN_LEEWAY_SECONDS,
                options={"require": ["exp", "dest", "aud"]},
            )
        except jwt.InvalidTokenError as e:
            raise ShopifyAuthError(f"Invalid session token: {e}") from e

        shop = urlparse(claims["dest"]).netloc
        if not is_valid_shop_domain(shop):
            raise ShopifyAuthError(f"Session token has an invalid shop: {claims['dest']}")

        iss = claims.get("iss")
        if iss and urlparse(iss).netloc != shop:
            raise ShopifyAuthError("Session token issuer does not match its destination")

        claims["shop"] = shop
        return claims

    @staticmethod
    def _session_token_from_request(request: Request) -> str:
        authorization = request.headers.get("authorization", "")
        if authorization.lower().startswith("bearer "):
            return authorization[7:].strip()
        token = request.query_params.get("id_token")
        if token:
            return token
        raise ShopifyAuthError("Missing session token")

    async def authenticate_admin(self, request: Request, db: AsyncSession) -> AdminContext:
        """
        Identify the merchant behind an embedded-admin request.

        Reuses a stored, unexpired online session for the token's user, and
        otherwise exchanges the session token for a fresh online token.
        """
        token = self._session_token_from_request(request)
        claims = self.decode_session_token(token)
        shop = claims["shop"]

        user_id = claims.get("sub")
        if user_id:
            session = await db.get(Session, online_session_id(shop, user_id))
            if (
                session is not None
                and session.access_token
                and (session.expires is None or session.expires > datetime.utcnow())
            ):
                logger.debug(f"Reusing online session {session.id}")
                return AdminContext(session=session)

        session = await self.exchange_token(db, shop, token, online=True)
        if not session.is_online:
            logger.warning(f"Unexpected offline session during admin authentication for {shop}")
        return AdminContext(session=session)

    async def exchange_token(
        self,
        db: AsyncSession,
        shop: str,
        session_token: str,
        online: bool = False,
    ) -> Session:
        """Swap a session token for an access token and store it as a Session."""
        if not is_valid_shop_domain(shop):
            raise ShopifyTokenExchangeError(f"Invalid shop domain: {shop}")

        async with httpx.AsyncClient(transport=self.transport) as client:
            try:
                response = await client.post(
                    f"https://{shop}/admin/oauth/access_token",
                    headers={"Accept": "application/json"},
                    json={
                        "client_id": self.api_key,
                        "client_secret": self.api_secret,
                        "grant_type": TOKEN_EXCHANGE_GRANT,
                        "subject_token": session_token,
                        "subject_token_type": ID_TOKEN_TYPE,
                        "requested_token_type": ONLINE_TOKEN_TYPE if online else OFFLINE_TOKEN_TYPE,
                    },
                )
            except httpx.HTTPError as e:
                raise ShopifyTokenExchangeError("Token exchange failed", str(e)) from e

        if response.status_code >= 400:
            logger.error(f"Token exchange for {shop} returned HTTP {response.status_code}: {response.text[:200]}")
            raise ShopifyTokenExchangeError("Token exchange failed", response.text)

        try:
            token_json = response.json()
        except ValueError as e:
            raise ShopifyTokenExchangeError("Token exchange failed", response.text) from e

        access_token = token_json.get("access_token")
        if not access_token:
            raise ShopifyTokenExchangeError("No access_token returned")

        return await self._store_session(db, shop, token_json, online)

    async def _store_session(
        self,
        db: AsyncSession,
        shop: str,
        token_json: dict[str, Any],
        online: bool,
    ) -> Session:
        user = token_json.get("associated_user") or {}
        if online and user.get("id") is not None:
            session_id = online_session_id(shop, user["id"])
        else:
            session_id = offline_session_id(shop)

        session = await db.get(Session, session_id)
        if session is None:
            session = Session(id=session_id, shop=shop, state="online" if online else "offline")
            db.add(session)

        session.is_online = online
        session.access_token = token_json["access_token"]
        session.scope = token_json.get("scope")
        session.updated_at = datetime.utcnow()
        expires_in = token_json.get("expires_in")
        session.expires = (
            datetime.utcnow() + timedelta(seconds=int(expires_in)) if online and expires_in else None
        )
        if online and user:
            session.user_id = user.get("id")
            session.first_name = user.get("first_name")
            session.last_name = user.get("last_name")
            session.email = user.get("email")
            session.account_owner = user.get("account_owner")
            session.locale = user.get("locale")

        await db.commit()
        logger.info(f"Stored {'online' if online else 'offline'} session {session_id}")
        return session

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook_hmac(self, raw_body: bytes, provided_hmac: str | None) -> bool:
        if not provided_hmac:
            return False
        digest = hmac.new(self.api_secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
        expected = base64.b64encode(digest).decode()
        return hmac.compare_digest(provided_hmac, expected)

    async def authenticate_webhook(self, request: Request, db: AsyncSession) -> WebhookContext:
        """Verify a webhook delivery and load the shop's offline session."""
        raw_body = await request.body()
        if not self.verify_webhook_hmac(raw_body, request.headers.get("x-shopify-hmac-sha256")):
            raise ShopifyAuthError("Invalid webhook HMAC")

        topic = request.headers.get("x-shopify-topic")
        shop = request.headers.get("x-shopify-shop-domain")
        if not topic or not shop:
            raise ShopifyAuthError("Missing webhook topic or shop header")

        try:
            payload = json.loads(raw_body.decode("utf-8")) if raw_body else None
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ShopifyAuthError(f"Invalid webhook payload: {e}") from e

        result = await db.execute(
            select(Session).where(Session.id == offline_session_id(shop))
        )
        session = result.scalar_one_or_none()
        return WebhookContext(topic=normalize_topic(topic), shop=shop, session=session, payload=payload)


@lru_cache()
def get_shopify_auth() -> ShopifyAuth:
    settings = get_settings()
    return ShopifyAuth(settings.shopify_api_key, settings.shopify_api_secret)

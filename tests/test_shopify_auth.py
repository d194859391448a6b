"""Tests for session-token verification, token exchange and webhook HMAC."""

import base64
import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta

import httpx
import jwt
import pytest
from starlette.requests import Request

from app.models.database import Session
from app.services.shopify_auth import (
    OFFLINE_TOKEN_TYPE,
    ONLINE_TOKEN_TYPE,
    ShopifyAuth,
    ShopifyAuthError,
    ShopifyTokenExchangeError,
    normalize_topic,
)

SHOP = "acme.myshopify.com"
TEST_API_KEY = "test-api-key"
TEST_API_SECRET = "test-api-secret"


def make_session_token(shop=SHOP, sub="42", secret=TEST_API_SECRET, aud=TEST_API_KEY, exp_offset=60, **extra):
    now = int(time.time())
    claims = {
        "iss": f"https://{shop}/admin",
        "dest": f"https://{shop}",
        "aud": aud,
        "sub": sub,
        "exp": now + exp_offset,
        "nbf": now - 5,
        "iat": now - 5,
        "jti": "jti-1",
        "sid": "sid-1",
        **extra,
    }
    return jwt.encode(claims, secret, algorithm="HS256")


def sign(body: bytes, secret=TEST_API_SECRET) -> str:
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


def make_request(method="GET", path="/app", headers=None, query=b"", body=b"") -> Request:
    sent = False

    async def receive():
        nonlocal sent
        if sent:
            return {"type": "http.disconnect"}
        sent = True
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(
        {
            "type": "http",
            "method": method,
            "scheme": "https",
            "server": ("app.test", 443),
            "path": path,
            "query_string": query,
            "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        },
        receive,
    )


def token_endpoint(captured: list, status=200, body=None):
    def handler(request: httpx.Request) -> httpx.Response:
        captured.append((str(request.url), json.loads(request.content)))
        return httpx.Response(status, json=body if body is not None else {})
    return handler


class TestNormalizeTopic:

    def test_header_topic(self):
        assert normalize_topic("app/uninstalled") == "APP_UNINSTALLED"
        assert normalize_topic("app/scopes_update") == "APP_SCOPES_UPDATE"

    def test_already_normalized(self):
        assert normalize_topic("APP_UNINSTALLED") == "APP_UNINSTALLED"


class TestDecodeSessionToken:

    def test_valid_token(self, shopify_auth):
        claims = shopify_auth.decode_session_token(make_session_token())
        assert claims["shop"] == SHOP
        assert claims["sub"] == "42"

    def test_wrong_secret(self, shopify_auth):
        with pytest.raises(ShopifyAuthError):
            shopify_auth.decode_session_token(make_session_token(secret="other-secret"))

    def test_wrong_audience(self, shopify_auth):
        with pytest.raises(ShopifyAuthError):
            shopify_auth.decode_session_token(make_session_token(aud="other-app"))

    def test_expired(self, shopify_auth):
        with pytest.raises(ShopifyAuthError):
            shopify_auth.decode_session_token(make_session_token(exp_offset=-120))

    def test_non_shopify_destination(self, shopify_auth):
        with pytest.raises(ShopifyAuthError):
            shopify_auth.decode_session_token(make_session_token(shop="evil.example.com"))

    def test_issuer_must_match_destination(self, shopify_auth):
        token = make_session_token(iss="https://other.myshopify.com/admin")
        with pytest.raises(ShopifyAuthError):
            shopify_auth.decode_session_token(token)


class TestAuthenticateAdmin:

    @pytest.mark.asyncio
    async def test_missing_token(self, shopify_auth, async_session):
        with pytest.raises(ShopifyAuthError, match="Missing session token"):
            await shopify_auth.authenticate_admin(make_request(), async_session)

    @pytest.mark.asyncio
    async def test_reuses_stored_online_session(self, async_session):
        async_session.add(Session(
            id=f"{SHOP}_42", shop=SHOP, state="online", is_online=True, access_token="online-token",
            expires=datetime.utcnow() + timedelta(hours=1),
        ))
        await async_session.commit()
        captured = []
        auth = ShopifyAuth(TEST_API_KEY, TEST_API_SECRET, transport=httpx.MockTransport(token_endpoint(captured)))

        request = make_request(headers={"Authorization": f"Bearer {make_session_token()}"})
        admin = await auth.authenticate_admin(request, async_session)

        assert admin.shop == SHOP
        assert admin.session.access_token == "online-token"
        assert captured == []

    @pytest.mark.asyncio
    async def test_exchanges_for_online_token_when_none_stored(self, async_session):
        captured = []
        body = {
            "access_token": "fresh-online",
            "scope": "read_products",
            "expires_in": 86399,
            "associated_user": {"id": 42, "first_name": "Ada", "email": "ada@example.com", "account_owner": True},
        }
        auth = ShopifyAuth(TEST_API_KEY, TEST_API_SECRET, transport=httpx.MockTransport(token_endpoint(captured, body=body)))

        token = make_session_token()
        request = make_request(query=f"id_token={token}".encode())
        admin = await auth.authenticate_admin(request, async_session)

        url, sent = captured[0]
        assert url == f"https://{SHOP}/admin/oauth/access_token"
        assert sent["subject_token"] == token
        assert sent["requested_token_type"] == ONLINE_TOKEN_TYPE
        assert sent["client_id"] == TEST_API_KEY

        assert admin.session.id == f"{SHOP}_42"
        assert admin.session.is_online is True
        assert admin.session.access_token == "fresh-online"
        assert admin.session.email == "ada@example.com"
        assert admin.session.expires > datetime.utcnow()

    @pytest.mark.asyncio
    async def test_expired_online_session_is_refreshed(self, async_session):
        async_session.add(Session(
            id=f"{SHOP}_42", shop=SHOP, state="online", is_online=True, access_token="stale",
            expires=datetime.utcnow() - timedelta(minutes=1),
        ))
        await async_session.commit()
        captured = []
        body = {"access_token": "renewed", "expires_in": 3600, "associated_user": {"id": 42}}
        auth = ShopifyAuth(TEST_API_KEY, TEST_API_SECRET, transport=httpx.MockTransport(token_endpoint(captured, body=body)))

        request = make_request(headers={"Authorization": f"Bearer {make_session_token()}"})
        admin = await auth.authenticate_admin(request, async_session)

        assert len(captured) == 1
        assert admin.session.access_token == "renewed"


class TestExchangeToken:

    @pytest.mark.asyncio
    async def test_offline_exchange_upserts_offline_session(self, async_session):
        captured = []
        body = {"access_token": "offline-1", "scope": "read_products"}
        auth = ShopifyAuth(TEST_API_KEY, TEST_API_SECRET, transport=httpx.MockTransport(token_endpoint(captured, body=body)))

        session = await auth.exchange_token(async_session, SHOP, "session-token", online=False)

        assert captured[0][1]["requested_token_type"] == OFFLINE_TOKEN_TYPE
        assert session.id == f"{SHOP}_offline"
        assert session.is_online is False
        assert session.access_token == "offline-1"
        assert session.expires is None

        body["access_token"] = "offline-2"
        session = await auth.exchange_token(async_session, SHOP, "session-token", online=False)
        assert session.access_token == "offline-2"

    @pytest.mark.asyncio
    async def test_rejected_exchange(self, async_session):
        auth = ShopifyAuth(
            TEST_API_KEY, TEST_API_SECRET,
            transport=httpx.MockTransport(lambda request: httpx.Response(400, text="invalid_subject_token")),
        )

        with pytest.raises(ShopifyTokenExchangeError) as excinfo:
            await auth.exchange_token(async_session, SHOP, "bad-token")

        assert str(excinfo.value) == "Token exchange failed"
        assert excinfo.value.detail == "invalid_subject_token"

    @pytest.mark.asyncio
    async def test_missing_access_token(self, async_session):
        auth = ShopifyAuth(
            TEST_API_KEY, TEST_API_SECRET,
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"scope": "x"})),
        )

        with pytest.raises(ShopifyTokenExchangeError, match="No access_token returned"):
            await auth.exchange_token(async_session, SHOP, "session-token")

    @pytest.mark.asyncio
    async def test_invalid_shop_domain_is_not_contacted(self, async_session):
        captured = []
        auth = ShopifyAuth(TEST_API_KEY, TEST_API_SECRET, transport=httpx.MockTransport(token_endpoint(captured)))

        with pytest.raises(ShopifyTokenExchangeError):
            await auth.exchange_token(async_session, "internal.example.com/x", "session-token")

        assert captured == []


class TestAuthenticateWebhook:

    @pytest.mark.asyncio
    async def test_valid_webhook(self, shopify_auth, async_session):
        async_session.add(Session(id=f"{SHOP}_offline", shop=SHOP, state="offline", is_online=False, access_token="t"))
        await async_session.commit()
        body = json.dumps({"current": ["read_products"]}).encode()
        request = make_request("POST", "/webhooks", headers={
            "X-Shopify-Hmac-Sha256": sign(body),
            "X-Shopify-Topic": "app/scopes_update",
            "X-Shopify-Shop-Domain": SHOP,
        }, body=body)

        context = await shopify_auth.authenticate_webhook(request, async_session)

        assert context.topic == "APP_SCOPES_UPDATE"
        assert context.shop == SHOP
        assert context.payload == {"current": ["read_products"]}
        assert context.session.id == f"{SHOP}_offline"

    @pytest.mark.asyncio
    async def test_session_is_none_without_offline_session(self, shopify_auth, async_session):
        body = b"{}"
        request = make_request("POST", "/webhooks", headers={
            "X-Shopify-Hmac-Sha256": sign(body),
            "X-Shopify-Topic": "app/uninstalled",
            "X-Shopify-Shop-Domain": SHOP,
        }, body=body)

        context = await shopify_auth.authenticate_webhook(request, async_session)

        assert context.session is None

    @pytest.mark.asyncio
    async def test_bad_hmac(self, shopify_auth, async_session):
        body = b"{}"
        request = make_request("POST", "/webhooks", headers={
            "X-Shopify-Hmac-Sha256": sign(body, secret="wrong"),
            "X-Shopify-Topic": "app/uninstalled",
            "X-Shopify-Shop-Domain": SHOP,
        }, body=body)

        with pytest.raises(ShopifyAuthError, match="Invalid webhook HMAC"):
            await shopify_auth.authenticate_webhook(request, async_session)

    @pytest.mark.asyncio
    async def test_malformed_payload(self, shopify_auth, async_session):
        body = b"{not json"
        request = make_request("POST", "/webhooks", headers={
            "X-Shopify-Hmac-Sha256": sign(body),
            "X-Shopify-Topic": "app/uninstalled",
            "X-Shopify-Shop-Domain": SHOP,
        }, body=body)

        with pytest.raises(ShopifyAuthError, match="Invalid webhook payload"):
            await shopify_auth.authenticate_webhook(request, async_session)

    def test_missing_hmac_header(self, shopify_auth):
        assert shopify_auth.verify_webhook_hmac(b"{}", None) is False

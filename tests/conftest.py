import os
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("SHOPIFY_APP_API_KEY", "test_key")
os.environ.setdefault("SHOPIFY_APP_API_SECRET", "test_secret")
os.environ.setdefault("SHOPIFY_APP_SCOPES", "read_products,write_products,write_discounts")
os.environ.setdefault("SHOPIFY_APP_BASE_URL", "https://example.ngrok.app")
os.environ.setdefault("SHOPIFY_INTERNAL_API_TOKEN", "internal_token")
os.environ.setdefault("SHOPIFY_APP_DB_URL", "sqlite:///./test_price_guard.db")
os.environ.setdefault("SKU_PRICE_LOCK_FUNCTION_ID", "019aca46-a224-7d77-a875-7af11c39ff14")

import base64
import hashlib
import hmac
import json
import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import delete

import price_guard.main as main_module
from price_guard.config import settings
from price_guard.db import SessionLocal, init_db
from price_guard.models import OAuthState, PriceGuardRule, ProcessedWebhookEvent, ShopInstallation

SHOP_DOMAIN = "example.myshopify.com"


def _clear_tables(session) -> None:
    session.execute(delete(ProcessedWebhookEvent))
    session.execute(delete(OAuthState))
    session.execute(delete(PriceGuardRule))
    session.execute(delete(ShopInstallation))
    session.commit()


@pytest.fixture()
def db_session():
    init_db()
    session = SessionLocal()
    _clear_tables(session)
    try:
        yield session
    finally:
        session.rollback()
        _clear_tables(session)
        session.close()


@pytest.fixture()
def api_client():
    with TestClient(main_module.app) as client:
        yield client


@pytest.fixture()
def installation(db_session):
    installation = ShopInstallation(
        shop_domain=SHOP_DOMAIN,
        admin_access_token="admin_access_token",
        scopes="read_products,write_products",
    )
    db_session.add(installation)
    db_session.commit()
    return installation


def signed_query(shop: str = SHOP_DOMAIN, **extra: str) -> dict[str, str]:
    params = {
        "shop": shop,
        "host": "YWRtaW4uc2hvcGlmeS5jb20vc3RvcmUvZXhhbXBsZQ",
        "timestamp": str(int(time.time())),
    }
    params.update(extra)
    message = "&".join(f"{key}={value}" for key, value in sorted(params.items()))
    params["hmac"] = hmac.new(
        settings.SHOPIFY_APP_API_SECRET.encode("utf-8"),
        message.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return params


def webhook_request(
    payload: dict,
    *,
    topic: str = "products/update",
    shop: str = SHOP_DOMAIN,
    event_id: str | None = "event-1",
) -> dict:
    body = json.dumps(payload).encode("utf-8")
    digest = hmac.new(settings.SHOPIFY_APP_API_SECRET.encode("utf-8"), body, hashlib.sha256).digest()
    headers = {
        "Content-Type": "application/json",
        "x-shopify-hmac-sha256": base64.b64encode(digest).decode("utf-8"),
        "x-shopify-shop-domain": shop,
        "x-shopify-topic": topic,
    }
    if event_id:
        headers["x-shopify-event-id"] = event_id
    return {"content": body, "headers": headers}

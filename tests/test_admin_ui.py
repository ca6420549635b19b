from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select

import price_guard.main as main_module
from conftest import SHOP_DOMAIN, signed_query
from price_guard.config import settings
from price_guard.models import PriceGuardRule
from price_guard.shopify_api import ShopifyApiError


def _rules(db_session) -> dict[str, Decimal]:
    db_session.expire_all()
    return {rule.sku: Decimal(rule.min_price) for rule in db_session.scalars(select(PriceGuardRule)).all()}


def _post_rule_action(api_client, **form: str):
    return api_client.post("/app/price-guard", params=signed_query(), data=form)


def test_admin_pages_require_signed_query(api_client, db_session):
    assert api_client.get("/app/price-guard", params={"shop": SHOP_DOMAIN}).status_code == 401

    tampered = signed_query()
    tampered["shop"] = "other-shop.myshopify.com"
    assert api_client.get("/app", params=tampered).status_code == 401


def test_price_guard_page_lists_rules(api_client, db_session):
    db_session.add(PriceGuardRule(shop_domain=SHOP_DOMAIN, sku="SWV9030/10", min_price=Decimal("310.00")))
    db_session.add(PriceGuardRule(shop_domain="other-shop.myshopify.com", sku="HIDDEN", min_price=Decimal("1.00")))
    db_session.commit()

    response = api_client.get("/app/price-guard", params=signed_query())

    assert response.status_code == 200
    assert "SWV9030/10" in response.text
    assert "310.00" in response.text
    assert "HIDDEN" not in response.text


def test_empty_rule_list_shows_placeholder(api_client, db_session):
    response = api_client.get("/app/price-guard", params=signed_query())

    assert response.status_code == 200
    assert "No rules yet. Add your first SKU above." in response.text


def test_create_update_delete_rule(api_client, db_session):
    created = _post_rule_action(api_client, _action="create", sku=" U278-8GB ", minPrice="59,5")
    assert created.status_code == 200
    assert "Price Guard rule saved successfully." in created.text
    assert _rules(db_session) == {"U278-8GB": Decimal("59.50")}

    updated = _post_rule_action(api_client, _action="update", sku="U278-8GB", minPrice="60")
    assert updated.status_code == 200
    assert _rules(db_session) == {"U278-8GB": Decimal("60.00")}

    deleted = _post_rule_action(api_client, _action="delete", sku="U278-8GB")
    assert deleted.status_code == 200
    assert "Price Guard rule deleted." in deleted.text
    assert _rules(db_session) == {}


def test_create_twice_overwrites_floor(api_client, db_session):
    _post_rule_action(api_client, _action="create", sku="GK3", minPrice="3200")
    _post_rule_action(api_client, _action="create", sku="GK3", minPrice="3300")

    assert _rules(db_session) == {"GK3": Decimal("3300.00")}


def test_create_requires_sku_and_price(api_client, db_session):
    response = _post_rule_action(api_client, _action="create", sku="GK3", minPrice="  ")

    assert response.status_code == 400
    assert "Error: SKU and minimum price are required." in response.text
    assert _rules(db_session) == {}


def test_update_rejects_non_numeric_price(api_client, db_session):
    db_session.add(PriceGuardRule(shop_domain=SHOP_DOMAIN, sku="GK3", min_price=Decimal("3200.00")))
    db_session.commit()

    response = _post_rule_action(api_client, _action="update", sku="GK3", minPrice="cheap")

    assert response.status_code == 400
    assert "Minimum price must be a positive number." in response.text
    assert _rules(db_session) == {"GK3": Decimal("3200.00")}


def test_update_missing_rule_is_not_found(api_client, db_session):
    response = _post_rule_action(api_client, _action="update", sku="MISSING", minPrice="10")

    assert response.status_code == 404
    assert "No Price Guard rule found for SKU MISSING." in response.text


def test_delete_missing_rule_is_not_found(api_client, db_session):
    response = _post_rule_action(api_client, _action="delete", sku="MISSING")

    assert response.status_code == 404
    assert "No Price Guard rule found for SKU MISSING." in response.text


def test_delete_requires_sku(api_client, db_session):
    response = _post_rule_action(api_client, _action="delete")

    assert response.status_code == 400
    assert "SKU is required to delete." in response.text


def test_unknown_action_is_rejected(api_client, db_session):
    response = _post_rule_action(api_client, _action="archive", sku="GK3")

    assert response.status_code == 400
    assert "Unknown action." in response.text


def test_create_discount_reports_status(api_client, db_session, installation, monkeypatch):
    observed: dict = {}

    async def fake_create_discount(*, shop_domain, access_token, function_id, title, locked_prices=None, starts_at=None):
        observed.update(shop_domain=shop_domain, function_id=function_id, title=title, locked_prices=locked_prices)
        return {"discountId": "gid://shopify/DiscountAutomaticNode/1", "title": title, "status": "ACTIVE"}

    monkeypatch.setattr(main_module.shopify_api, "create_sku_price_lock_discount", fake_create_discount)

    response = api_client.post("/app", params=signed_query())

    assert response.status_code == 200
    assert "Discount created! Status: ACTIVE" in response.text
    assert observed["shop_domain"] == SHOP_DOMAIN
    assert observed["function_id"] == settings.SKU_PRICE_LOCK_FUNCTION_ID
    assert observed["title"] == "SKU Price Lock"
    assert observed["locked_prices"]["GK3"] == "3200.00"


def test_create_discount_lists_user_errors(api_client, db_session, installation, monkeypatch):
    async def failing_create_discount(**kwargs):
        raise ShopifyApiError(
            message="discountAutomaticAppCreate failed",
            status_code=409,
            user_errors=[{"field": ["automaticAppDiscount", "functionId"], "message": "Function not found"}],
        )

    monkeypatch.setattr(main_module.shopify_api, "create_sku_price_lock_discount", failing_create_discount)

    response = api_client.post("/app", params=signed_query())

    assert response.status_code == 409
    assert "Failed to create discount:" in response.text
    assert "automaticAppDiscount.functionId" in response.text
    assert "Function not found" in response.text


def test_create_discount_requires_installation(api_client, db_session):
    response = api_client.post("/app", params=signed_query())

    assert response.status_code == 409
    assert "This store has no active installation." in response.text


def test_create_rejects_price_beyond_storable_range(api_client, db_session):
    response = _post_rule_action(api_client, _action="create", sku="GK3", minPrice="1e30")

    assert response.status_code == 400
    assert "Minimum price must be at most 9999999999.99." in response.text
    assert _rules(db_session) == {}


def test_create_without_sku_reports_both_fields(api_client, db_session):
    response = _post_rule_action(api_client, _action="create", sku=" ", minPrice="10")

    assert response.status_code == 400
    assert "Error: SKU and minimum price are required." in response.text


def test_stale_admin_signature_is_rejected(api_client, db_session):
    response = api_client.get("/app/price-guard", params=signed_query(timestamp="1710000000"))

    assert response.status_code == 401
    assert response.json()["detail"] == "Expired admin request signature"

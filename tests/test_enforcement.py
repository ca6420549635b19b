from __future__ import annotations

from decimal import Decimal

from price_guard.enforcement import plan_price_corrections, product_gid_from_payload, variant_skus


def test_variant_below_floor_is_restored_to_floor():
    payload = {"variants": [{"id": 11, "sku": "SWV9030/10", "price": "299.00"}]}

    corrections = plan_price_corrections(payload, {"SWV9030/10": Decimal("310.00")})

    assert len(corrections) == 1
    correction = corrections[0]
    assert correction.variant_gid == "gid://shopify/ProductVariant/11"
    assert correction.observed_price == Decimal("299.00")
    assert correction.restored_price == "310.00"


def test_variant_at_or_above_floor_is_untouched():
    payload = {
        "variants": [
            {"id": 1, "sku": "U278-8GB", "price": "60.00"},
            {"id": 2, "sku": "U278-8GB", "price": "75.00"},
        ]
    }

    assert plan_price_corrections(payload, {"U278-8GB": Decimal("60.00")}) == []


def test_variants_without_rule_sku_or_readable_price_are_skipped():
    payload = {
        "variants": [
            {"id": 1, "sku": "", "price": "1.00"},
            {"id": 2, "sku": None, "price": "1.00"},
            {"id": 3, "sku": "UNGUARDED", "price": "1.00"},
            {"id": 4, "sku": "U278-8GB", "price": "n/a"},
            {"sku": "U278-16GB", "price": "1.00"},
            "not-a-variant",
        ]
    }
    floors = {"U278-8GB": Decimal("60.00"), "U278-16GB": Decimal("65.00")}

    assert plan_price_corrections(payload, floors) == []


def test_missing_variants_list_plans_nothing():
    assert plan_price_corrections({"id": 1}, {"GK3": Decimal("1.00")}) == []


def test_admin_graphql_id_is_preferred():
    payload = {"id": 5, "admin_graphql_api_id": "gid://shopify/Product/99"}

    assert product_gid_from_payload(payload) == "gid://shopify/Product/99"
    assert product_gid_from_payload({"id": "123"}) == "gid://shopify/Product/123"
    assert product_gid_from_payload({"id": True}) is None
    assert product_gid_from_payload({}) is None


def test_variant_skus_are_trimmed():
    payload = {"variants": [{"sku": " GK3 "}, {"sku": ""}, {"sku": 7}, {"sku": "AD08"}]}

    assert variant_skus(payload) == ["GK3", "AD08"]

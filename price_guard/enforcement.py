"""Price-floor enforcement for ``products/update`` webhook payloads.

The planning step is pure: it takes the product payload Shopify delivered and the
floors stored for the shop, and returns the variants that must be written back.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

logger = logging.getLogger(__name__)

_PRODUCT_GID_PREFIX = "gid://shopify/Product/"
_VARIANT_GID_PREFIX = "gid://shopify/ProductVariant/"


@dataclass(frozen=True)
class PriceCorrection:
    variant_gid: str
    sku: str
    observed_price: Decimal
    floor: Decimal

    @property
    def restored_price(self) -> str:
        return f"{self.floor:.2f}"


def _gid_from_payload(node: dict[str, Any], prefix: str) -> str | None:
    gid = node.get("admin_graphql_api_id")
    if isinstance(gid, str) and gid.startswith(prefix):
        return gid
    raw_id = node.get("id")
    if isinstance(raw_id, bool):
        return None
    if isinstance(raw_id, int) or (isinstance(raw_id, str) and raw_id.strip().isdigit()):
        return f"{prefix}{str(raw_id).strip()}"
    if isinstance(raw_id, str) and raw_id.startswith(prefix):
        return raw_id
    return None


def product_gid_from_payload(payload: dict[str, Any]) -> str | None:
    return _gid_from_payload(payload, _PRODUCT_GID_PREFIX)


def variant_skus(payload: dict[str, Any]) -> list[str]:
    variants = payload.get("variants")
    if not isinstance(variants, list):
        return []
    skus: list[str] = []
    for variant in variants:
        if not isinstance(variant, dict):
            continue
        sku = variant.get("sku")
        if isinstance(sku, str) and sku.strip():
            skus.append(sku.strip())
    return skus


def _parse_price(raw: Any) -> Decimal | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return value


def plan_price_corrections(
    payload: dict[str, Any],
    floors: dict[str, Decimal],
) -> list[PriceCorrection]:
    variants = payload.get("variants")
    if not isinstance(variants, list):
        return []

    corrections: list[PriceCorrection] = []
    for variant in variants:
        if not isinstance(variant, dict):
            continue
        raw_sku = variant.get("sku")
        sku = raw_sku.strip() if isinstance(raw_sku, str) else ""
        if not sku:
            continue

        floor = floors.get(sku)
        if floor is None:
            logger.debug("No Price Guard rule for SKU %s, skipping", sku)
            continue

        observed = _parse_price(variant.get("price"))
        if observed is None:
            logger.info("SKU %s has an unreadable price %r, skipping", sku, variant.get("price"))
            continue
        if observed >= floor:
            logger.debug("SKU %s: price %s >= min %s, nothing to do", sku, observed, floor)
            continue

        variant_gid = _gid_from_payload(variant, _VARIANT_GID_PREFIX)
        if variant_gid is None:
            logger.warning("SKU %s is below its floor but the variant has no id, skipping", sku)
            continue

        logger.info("SKU %s: price %s < min %s, restoring", sku, observed, floor)
        corrections.append(
            PriceCorrection(
                variant_gid=variant_gid,
                sku=sku,
                observed_price=observed,
                floor=floor,
            )
        )
    return corrections

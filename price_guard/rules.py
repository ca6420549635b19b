from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from price_guard.models import PriceGuardRule, utcnow

_CENT = Decimal("0.01")
# Largest value the Numeric(12, 2) column holds.
MAX_MIN_PRICE = Decimal("9999999999.99")

MISSING_RULE_FIELDS_MESSAGE = "SKU and minimum price are required."
INVALID_MIN_PRICE_MESSAGE = "Minimum price must be a positive number."


class PriceGuardRuleError(ValueError):
    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


class PriceGuardRuleNotFoundError(PriceGuardRuleError):
    def __init__(self, *, shop_domain: str, sku: str) -> None:
        super().__init__(f"No Price Guard rule found for SKU {sku}.", status_code=404)
        self.shop_domain = shop_domain
        self.sku = sku


def clean_sku(raw: Any, *, missing_message: str = "SKU is required.") -> str:
    sku = str(raw or "").strip()
    if not sku:
        raise PriceGuardRuleError(missing_message)
    return sku


def parse_min_price(raw: Any, *, missing_message: str = "Minimum price is required.") -> Decimal:
    """Parse a merchant-entered floor price; a decimal comma is accepted."""
    if isinstance(raw, Decimal):
        value = raw
    else:
        text = str(raw if raw is not None else "").strip().replace(",", ".")
        if not text:
            raise PriceGuardRuleError(missing_message)
        try:
            value = Decimal(text)
        except InvalidOperation as exc:
            raise PriceGuardRuleError(INVALID_MIN_PRICE_MESSAGE) from exc
    if not value.is_finite() or value <= 0:
        raise PriceGuardRuleError(INVALID_MIN_PRICE_MESSAGE)
    try:
        quantized = value.quantize(_CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise PriceGuardRuleError(f"Minimum price must be at most {MAX_MIN_PRICE}.") from exc
    if quantized <= 0:
        raise PriceGuardRuleError(INVALID_MIN_PRICE_MESSAGE)
    if quantized > MAX_MIN_PRICE:
        raise PriceGuardRuleError(f"Minimum price must be at most {MAX_MIN_PRICE}.")
    return quantized


class PriceGuardRulesRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_for_shop(self, shop_domain: str) -> list[PriceGuardRule]:
        stmt = (
            select(PriceGuardRule)
            .where(PriceGuardRule.shop_domain == shop_domain)
            .order_by(PriceGuardRule.sku.asc())
        )
        return list(self.session.scalars(stmt).all())

    def get(self, shop_domain: str, sku: str) -> PriceGuardRule | None:
        stmt = select(PriceGuardRule).where(
            PriceGuardRule.shop_domain == shop_domain,
            PriceGuardRule.sku == sku,
        )
        return self.session.scalars(stmt).first()

    def floors_for_skus(self, shop_domain: str, skus: Iterable[str]) -> dict[str, Decimal]:
        wanted = sorted({sku for sku in skus if sku})
        if not wanted:
            return {}
        stmt = select(PriceGuardRule).where(
            PriceGuardRule.shop_domain == shop_domain,
            PriceGuardRule.sku.in_(wanted),
        )
        return {rule.sku: Decimal(rule.min_price) for rule in self.session.scalars(stmt).all()}

    def upsert(self, shop_domain: str, sku: str, min_price: Decimal) -> PriceGuardRule:
        rule = self.get(shop_domain, sku)
        if rule is None:
            rule = PriceGuardRule(shop_domain=shop_domain, sku=sku, min_price=min_price)
            self.session.add(rule)
        else:
            rule.min_price = min_price
            rule.updated_at = utcnow()
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def update(self, shop_domain: str, sku: str, min_price: Decimal) -> PriceGuardRule:
        rule = self.get(shop_domain, sku)
        if rule is None:
            raise PriceGuardRuleNotFoundError(shop_domain=shop_domain, sku=sku)
        rule.min_price = min_price
        rule.updated_at = utcnow()
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def delete(self, shop_domain: str, sku: str) -> None:
        rule = self.get(shop_domain, sku)
        if rule is None:
            raise PriceGuardRuleNotFoundError(shop_domain=shop_domain, sku=sku)
        self.session.delete(rule)
        self.session.commit()

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from pydantic import BaseModel, Field, field_validator


class InstallationResponse(BaseModel):
    shopDomain: str
    scopes: list[str]
    installedAt: datetime
    updatedAt: datetime
    uninstalledAt: datetime | None = None


class SetLockedSkuPricesRequest(BaseModel):
    shopDomain: str = Field(min_length=1)
    discountId: str = Field(min_length=1)
    prices: dict[str, str] = Field(min_length=1)

    @field_validator("prices")
    @classmethod
    def validate_prices(cls, value: dict[str, str]) -> dict[str, str]:
        normalized: dict[str, str] = {}
        for raw_sku, raw_price in value.items():
            sku = raw_sku.strip()
            if not sku:
                raise ValueError("Locked price SKUs cannot be empty")
            try:
                price = Decimal(raw_price.strip().replace(",", "."))
            except InvalidOperation as exc:
                raise ValueError(f"Locked price for {sku} must be a decimal string") from exc
            if not price.is_finite() or price <= 0:
                raise ValueError(f"Locked price for {sku} must be a positive number")
            try:
                rounded = price.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
            except InvalidOperation as exc:
                raise ValueError(f"Locked price for {sku} is too large") from exc
            if rounded <= 0:
                raise ValueError(f"Locked price for {sku} must be a positive number")
            normalized[sku] = str(rounded)
        return normalized


class SetLockedSkuPricesResponse(BaseModel):
    shopDomain: str
    discountId: str
    metafieldId: str
    skuCount: int


class WebhookSubscriptionResponse(BaseModel):
    id: str
    topic: str | None = None
    format: str | None = None
    callbackUrl: str | None = None


class ListWebhookSubscriptionsResponse(BaseModel):
    shopDomain: str
    subscriptions: list[WebhookSubscriptionResponse]

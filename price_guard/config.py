from __future__ import annotations

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    SHOPIFY_APP_API_KEY: str
    SHOPIFY_APP_API_SECRET: str
    SHOPIFY_APP_SCOPES: str = "read_products,write_products,read_discounts,write_discounts"
    SHOPIFY_APP_BASE_URL: AnyHttpUrl
    SHOPIFY_INTERNAL_API_TOKEN: str
    SHOPIFY_APP_DB_URL: str = "sqlite:///./price_guard.db"
    SHOPIFY_ADMIN_API_VERSION: str = "2026-01"
    SHOPIFY_REQUEST_TIMEOUT_SECONDS: float = 20.0
    SHOPIFY_INSTALL_SUCCESS_REDIRECT_URL: AnyHttpUrl | None = None
    SHOPIFY_ADMIN_SIGNATURE_MAX_AGE_SECONDS: int = Field(default=3600, gt=0)

    SKU_PRICE_LOCK_FUNCTION_ID: str | None = None
    SKU_PRICE_LOCK_DISCOUNT_TITLE: str = "SKU Price Lock"
    SKU_PRICE_LOCK_METAFIELD_NAMESPACE: str = "$app:sku-price-lock"
    SKU_PRICE_LOCK_METAFIELD_KEY: str = "locked-prices"

    @field_validator("SHOPIFY_APP_SCOPES")
    @classmethod
    def validate_scopes(cls, value: str) -> str:
        scopes = [scope.strip() for scope in value.split(",") if scope.strip()]
        if not scopes:
            raise ValueError("SHOPIFY_APP_SCOPES must include at least one scope")
        return ",".join(scopes)

    @field_validator("SKU_PRICE_LOCK_FUNCTION_ID")
    @classmethod
    def validate_function_id(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @property
    def app_base_url(self) -> str:
        return str(self.SHOPIFY_APP_BASE_URL).rstrip("/")

    @property
    def admin_scopes_csv(self) -> str:
        return self.SHOPIFY_APP_SCOPES

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()

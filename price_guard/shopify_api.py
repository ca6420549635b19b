from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

import httpx

from price_guard.config import settings
from price_guard.enforcement import PriceCorrection


class ShopifyApiError(RuntimeError):
    def __init__(
        self,
        *,
        message: str,
        status_code: int = 502,
        user_errors: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.user_errors = user_errors or []


class ShopifyApiClient:
    def __init__(self) -> None:
        self._timeout = settings.SHOPIFY_REQUEST_TIMEOUT_SECONDS

    async def exchange_code_for_access_token(self, *, shop_domain: str, code: str) -> tuple[str, str]:
        url = f"https://{shop_domain}/admin/oauth/access_token"
        payload = {
            "client_id": settings.SHOPIFY_APP_API_KEY,
            "client_secret": settings.SHOPIFY_APP_API_SECRET,
            "code": code,
        }
        response = await self._post_json(url=url, payload=payload)
        access_token = response.get("access_token")
        scopes = response.get("scope")
        if not isinstance(access_token, str) or not access_token:
            raise ShopifyApiError(message="OAuth token exchange response is missing access_token")
        if not isinstance(scopes, str):
            raise ShopifyApiError(message="OAuth token exchange response is missing scope")
        return access_token, scopes

    async def register_webhook(
        self,
        *,
        shop_domain: str,
        access_token: str,
        topic: str,
        callback_url: str,
    ) -> str:
        query = """
        mutation webhookSubscriptionCreate(
            $topic: WebhookSubscriptionTopic!
            $webhookSubscription: WebhookSubscriptionInput!
        ) {
            webhookSubscriptionCreate(topic: $topic, webhookSubscription: $webhookSubscription) {
                webhookSubscription {
                    id
                }
                userErrors {
                    field
                    message
                }
            }
        }
        """
        payload = {
            "query": query,
            "variables": {
                "topic": topic,
                "webhookSubscription": {
                    "callbackUrl": callback_url,
                    "format": "JSON",
                },
            },
        }
        response = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload=payload,
        )
        create_data = response.get("webhookSubscriptionCreate") or {}
        user_errors = create_data.get("userErrors") or []
        if user_errors:
            if self._has_duplicate_webhook_address_error(user_errors):
                existing_id = await self._find_existing_http_webhook_id(
                    shop_domain=shop_domain,
                    access_token=access_token,
                    topic=topic,
                    callback_url=callback_url,
                )
                if existing_id:
                    return existing_id
            messages = "; ".join(str(error.get("message")) for error in user_errors)
            raise ShopifyApiError(
                message=f"Webhook registration failed for {topic}: {messages}",
                user_errors=user_errors,
            )
        webhook = create_data.get("webhookSubscription") or {}
        webhook_id = webhook.get("id")
        if not isinstance(webhook_id, str) or not webhook_id:
            raise ShopifyApiError(message=f"Webhook registration for {topic} returned no id")
        return webhook_id

    @staticmethod
    def _has_duplicate_webhook_address_error(user_errors: list[dict[str, Any]]) -> bool:
        for error in user_errors:
            message = error.get("message")
            if isinstance(message, str) and "already been taken" in message.lower():
                return True
        return False

    async def _find_existing_http_webhook_id(
        self,
        *,
        shop_domain: str,
        access_token: str,
        topic: str,
        callback_url: str,
    ) -> str | None:
        subscriptions = await self.list_webhook_subscriptions(
            shop_domain=shop_domain,
            access_token=access_token,
            topics=[topic],
        )
        target_url = callback_url.rstrip("/")
        for subscription in subscriptions:
            endpoint_callback = subscription.get("callbackUrl")
            if isinstance(endpoint_callback, str) and endpoint_callback.rstrip("/") == target_url:
                return subscription["id"]
        return None

    async def list_webhook_subscriptions(
        self,
        *,
        shop_domain: str,
        access_token: str,
        topics: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        query = """
        query webhookSubscriptionsByTopic($topics: [WebhookSubscriptionTopic!]) {
            webhookSubscriptions(first: 50, topics: $topics) {
                edges {
                    node {
                        id
                        topic
                        format
                        endpoint {
                            __typename
                            ... on WebhookHttpEndpoint {
                                callbackUrl
                            }
                        }
                    }
                }
            }
        }
        """
        payload = {"query": query, "variables": {"topics": list(topics) if topics else None}}
        response = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload=payload,
        )
        edges = (response.get("webhookSubscriptions") or {}).get("edges") or []
        subscriptions: list[dict[str, Any]] = []
        for edge in edges:
            node = edge.get("node") if isinstance(edge, dict) else None
            if not isinstance(node, dict):
                continue
            webhook_id = node.get("id")
            if not isinstance(webhook_id, str) or not webhook_id:
                continue
            endpoint = node.get("endpoint") or {}
            callback_url = None
            if endpoint.get("__typename") == "WebhookHttpEndpoint":
                callback_url = endpoint.get("callbackUrl")
            subscriptions.append(
                {
                    "id": webhook_id,
                    "topic": node.get("topic"),
                    "format": node.get("format"),
                    "callbackUrl": callback_url,
                }
            )
        return subscriptions

    async def restore_variant_prices(
        self,
        *,
        shop_domain: str,
        access_token: str,
        product_gid: str,
        corrections: Sequence[PriceCorrection],
    ) -> list[dict[str, str]]:
        if not corrections:
            raise ShopifyApiError(message="At least one price correction is required.", status_code=400)

        mutation = """
        mutation PriceGuardVariantUpdate($productId: ID!, $variants: [ProductVariantsBulkInput!]!) {
            productVariantsBulkUpdate(productId: $productId, variants: $variants) {
                productVariants {
                    id
                    price
                }
                userErrors {
                    field
                    message
                }
            }
        }
        """
        payload = {
            "query": mutation,
            "variables": {
                "productId": product_gid,
                "variants": [
                    {"id": correction.variant_gid, "price": correction.restored_price}
                    for correction in corrections
                ],
            },
        }
        response = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload=payload,
        )
        update_data = response.get("productVariantsBulkUpdate")
        if not isinstance(update_data, dict):
            raise ShopifyApiError(message="productVariantsBulkUpdate response is missing from result.")
        self._assert_no_user_errors(
            user_errors=update_data.get("userErrors") or [],
            mutation_name="productVariantsBulkUpdate",
        )

        restored: list[dict[str, str]] = []
        for item in update_data.get("productVariants") or []:
            if not isinstance(item, dict):
                continue
            variant_id = item.get("id")
            price = item.get("price")
            if isinstance(variant_id, str) and variant_id:
                restored.append({"id": variant_id, "price": str(price)})
        return restored

    def _locked_prices_metafield(self, locked_prices: dict[str, str]) -> dict[str, str]:
        return {
            "namespace": settings.SKU_PRICE_LOCK_METAFIELD_NAMESPACE,
            "key": settings.SKU_PRICE_LOCK_METAFIELD_KEY,
            "type": "json",
            "value": json.dumps(locked_prices, sort_keys=True),
        }

    async def create_sku_price_lock_discount(
        self,
        *,
        shop_domain: str,
        access_token: str,
        function_id: str,
        title: str,
        locked_prices: dict[str, str] | None = None,
        starts_at: datetime | None = None,
    ) -> dict[str, str]:
        mutation = """
        mutation CreateSkuPriceLockDiscount($automaticAppDiscount: DiscountAutomaticAppInput!) {
            discountAutomaticAppCreate(automaticAppDiscount: $automaticAppDiscount) {
                automaticAppDiscount {
                    discountId
                    title
                    status
                }
                userErrors {
                    field
                    message
                    code
                }
            }
        }
        """
        discount_input: dict[str, Any] = {
            "title": title,
            "functionId": function_id,
            "startsAt": (starts_at or datetime.now(timezone.utc)).isoformat(),
            "combinesWith": {
                "orderDiscounts": True,
                "productDiscounts": True,
                "shippingDiscounts": True,
            },
        }
        if locked_prices:
            discount_input["metafields"] = [self._locked_prices_metafield(locked_prices)]

        payload = {"query": mutation, "variables": {"automaticAppDiscount": discount_input}}
        response = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload=payload,
        )
        create_data = response.get("discountAutomaticAppCreate")
        if not isinstance(create_data, dict):
            raise ShopifyApiError(message="discountAutomaticAppCreate response is missing from result.")
        self._assert_no_user_errors(
            user_errors=create_data.get("userErrors") or [],
            mutation_name="discountAutomaticAppCreate",
        )

        discount = create_data.get("automaticAppDiscount")
        if not isinstance(discount, dict):
            raise ShopifyApiError(message="discountAutomaticAppCreate returned no discount.")
        discount_id = discount.get("discountId")
        if not isinstance(discount_id, str) or not discount_id:
            raise ShopifyApiError(message="discountAutomaticAppCreate response is missing discountId.")
        return {
            "discountId": discount_id,
            "title": str(discount.get("title") or title),
            "status": str(discount.get("status") or ""),
        }

    async def set_locked_sku_prices(
        self,
        *,
        shop_domain: str,
        access_token: str,
        discount_gid: str,
        locked_prices: dict[str, str],
    ) -> dict[str, str]:
        cleaned_discount_gid = discount_gid.strip()
        if not cleaned_discount_gid.startswith("gid://shopify/DiscountAutomaticNode/"):
            raise ShopifyApiError(
                message="discountId must be a valid Shopify DiscountAutomaticNode GID.",
                status_code=400,
            )

        mutation = """
        mutation SetLockedSkuPrices($metafields: [MetafieldsSetInput!]!) {
            metafieldsSet(metafields: $metafields) {
                metafields {
                    id
                    namespace
                    key
                }
                userErrors {
                    field
                    message
                    code
                }
            }
        }
        """
        metafield = self._locked_prices_metafield(locked_prices)
        metafield["ownerId"] = cleaned_discount_gid
        payload = {"query": mutation, "variables": {"metafields": [metafield]}}
        response = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload=payload,
        )
        set_data = response.get("metafieldsSet")
        if not isinstance(set_data, dict):
            raise ShopifyApiError(message="metafieldsSet response is missing from result.")
        self._assert_no_user_errors(
            user_errors=set_data.get("userErrors") or [],
            mutation_name="metafieldsSet",
        )

        metafields = set_data.get("metafields") or []
        if not isinstance(metafields, list) or not metafields or not isinstance(metafields[0], dict):
            raise ShopifyApiError(message="metafieldsSet response is missing metafields.")
        metafield_id = metafields[0].get("id")
        if not isinstance(metafield_id, str) or not metafield_id:
            raise ShopifyApiError(message="metafieldsSet response is missing metafield id.")
        return {"metafieldId": metafield_id, "discountId": cleaned_discount_gid}

    @staticmethod
    def _assert_no_user_errors(*, user_errors: list[dict[str, Any]], mutation_name: str) -> None:
        if not user_errors:
            return
        messages = "; ".join(str(error.get("message")) for error in user_errors)
        raise ShopifyApiError(
            message=f"{mutation_name} failed: {messages}",
            status_code=409,
            user_errors=user_errors,
        )

    async def _admin_graphql(
        self,
        *,
        shop_domain: str,
        access_token: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        url = f"https://{shop_domain}/admin/api/{settings.SHOPIFY_ADMIN_API_VERSION}/graphql.json"
        headers = {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": access_token,
        }
        response = await self._post_json(url=url, payload=payload, headers=headers)
        data = response.get("data")
        errors = response.get("errors")
        if errors:
            raise ShopifyApiError(message=f"Admin GraphQL errors: {errors}")
        if not isinstance(data, dict):
            raise ShopifyApiError(message="Admin GraphQL response is missing data")
        return data

    async def _post_json(
        self,
        *,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.RequestError as exc:
            raise ShopifyApiError(message=f"Network error while calling Shopify: {exc}") from exc

        if response.status_code >= 400:
            raise ShopifyApiError(
                message=f"Shopify API call failed ({response.status_code}): {response.text}",
                status_code=502,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise ShopifyApiError(message="Shopify API returned invalid JSON") from exc

        if not isinstance(body, dict):
            raise ShopifyApiError(message="Shopify API response must be a JSON object")
        return body

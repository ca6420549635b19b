from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import urlencode
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import HTMLResponse, ORJSONResponse, PlainTextResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from price_guard.config import settings
from price_guard.db import get_session, init_db
from price_guard.enforcement import plan_price_corrections, product_gid_from_payload, variant_skus
from price_guard.functions.sku_price_lock import LOCKED_SKU_PRICES
from price_guard.models import OAuthState, ProcessedWebhookEvent, ShopInstallation
from price_guard.rules import (
    MISSING_RULE_FIELDS_MESSAGE,
    PriceGuardRuleError,
    PriceGuardRulesRepository,
    clean_sku,
    parse_min_price,
)
from price_guard.schemas import (
    InstallationResponse,
    ListWebhookSubscriptionsResponse,
    SetLockedSkuPricesRequest,
    SetLockedSkuPricesResponse,
    WebhookSubscriptionResponse,
)
from price_guard.security import (
    normalize_shop_domain,
    require_admin_shop,
    require_internal_api_token,
    verify_query_hmac,
    verify_webhook_hmac,
)
from price_guard.shopify_api import ShopifyApiClient, ShopifyApiError

logger = logging.getLogger(__name__)

PRODUCTS_UPDATE_TOPIC = "products/update"

app = FastAPI(title="Price Guard", default_response_class=ORJSONResponse)
templates = Jinja2Templates(directory=Path(__file__).parent / "templates")
shopify_api = ShopifyApiClient()


@app.on_event("startup")
def startup() -> None:
    init_db()


@app.get("/health")
def health() -> dict[str, bool]:
    return {"ok": True}


def _serialize_installation(installation: ShopInstallation) -> InstallationResponse:
    scopes = [scope.strip() for scope in installation.scopes.split(",") if scope.strip()]
    return InstallationResponse(
        shopDomain=installation.shop_domain,
        scopes=scopes,
        installedAt=installation.installed_at,
        updatedAt=installation.updated_at,
        uninstalledAt=installation.uninstalled_at,
    )


def _build_shopify_oauth_url(*, shop_domain: str, state: str) -> str:
    query = urlencode(
        {
            "client_id": settings.SHOPIFY_APP_API_KEY,
            "scope": settings.admin_scopes_csv,
            "redirect_uri": f"{settings.app_base_url}/auth/callback",
            "state": state,
        }
    )
    return f"https://{shop_domain}/admin/oauth/authorize?{query}"


async def _register_required_webhooks(*, shop_domain: str, admin_access_token: str) -> None:
    webhooks: list[tuple[str, str]] = [
        ("APP_UNINSTALLED", f"{settings.app_base_url}/webhooks/app/uninstalled"),
        ("PRODUCTS_UPDATE", f"{settings.app_base_url}/webhooks/products/update"),
    ]
    for topic, callback_url in webhooks:
        await shopify_api.register_webhook(
            shop_domain=shop_domain,
            access_token=admin_access_token,
            topic=topic,
            callback_url=callback_url,
        )


def _find_installation(session: Session, shop_domain: str) -> ShopInstallation | None:
    return session.scalars(
        select(ShopInstallation).where(ShopInstallation.shop_domain == shop_domain)
    ).first()


def _find_active_installation(session: Session, shop_domain: str) -> ShopInstallation | None:
    installation = _find_installation(session, shop_domain)
    if installation is None or not installation.is_active:
        return None
    return installation


def _resolve_active_installation(*, shop_domain: str, session: Session) -> ShopInstallation:
    normalized_shop = normalize_shop_domain(shop_domain)
    installation = _find_active_installation(session, normalized_shop)
    if not installation:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No active Shopify installation found for shopDomain={normalized_shop}",
        )
    return installation


@app.get("/auth/install")
def auth_install(shop: str, session: Session = Depends(get_session)):
    shop_domain = normalize_shop_domain(shop)
    state = uuid4().hex
    session.add(OAuthState(state=state, shop_domain=shop_domain))
    session.commit()

    return RedirectResponse(url=_build_shopify_oauth_url(shop_domain=shop_domain, state=state), status_code=302)


@app.get("/auth/callback")
async def auth_callback(request: Request, session: Session = Depends(get_session)):
    query_items = list(request.query_params.multi_items())
    if not verify_query_hmac(query_items):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid OAuth HMAC")

    shop = request.query_params.get("shop")
    code = request.query_params.get("code")
    state_value = request.query_params.get("state")
    if not shop or not code or not state_value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required OAuth callback params: shop, code, state",
        )

    shop_domain = normalize_shop_domain(shop)
    oauth_state = session.get(OAuthState, state_value)
    if not oauth_state:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid OAuth state")
    if oauth_state.shop_domain != shop_domain:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="OAuth state does not match the shop domain",
        )

    try:
        admin_access_token, scopes_csv = await shopify_api.exchange_code_for_access_token(
            shop_domain=shop_domain,
            code=code,
        )

        installation = _find_installation(session, shop_domain)
        if installation is None:
            installation = ShopInstallation(
                shop_domain=shop_domain,
                admin_access_token=admin_access_token,
                scopes=scopes_csv,
                uninstalled_at=None,
            )
            session.add(installation)
        else:
            installation.admin_access_token = admin_access_token
            installation.scopes = scopes_csv
            installation.uninstalled_at = None
            installation.updated_at = datetime.now(timezone.utc)

        await _register_required_webhooks(
            shop_domain=shop_domain,
            admin_access_token=admin_access_token,
        )
        session.delete(oauth_state)
        session.commit()

    except ShopifyApiError as exc:
        session.rollback()
        logger.warning("Installation failed for %s: %s", shop_domain, exc)
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    logger.info("Installed Price Guard for %s", shop_domain)
    if settings.SHOPIFY_INSTALL_SUCCESS_REDIRECT_URL:
        success_url = (
            f"{str(settings.SHOPIFY_INSTALL_SUCCESS_REDIRECT_URL).rstrip('/')}"
            f"?shop={shop_domain}"
        )
        return RedirectResponse(url=success_url, status_code=302)

    return {
        "ok": True,
        "shopDomain": shop_domain,
        "scopes": [scope.strip() for scope in scopes_csv.split(",") if scope.strip()],
    }


# Embedded admin pages


def _page_context(request: Request, shop_domain: str, **extra: Any) -> dict[str, Any]:
    query = request.url.query
    return {
        "api_key": settings.SHOPIFY_APP_API_KEY,
        "shop": shop_domain,
        "host": request.query_params.get("host"),
        "signed_query": f"?{query}" if query else "",
        **extra,
    }


@app.get("/app", response_class=HTMLResponse)
def admin_home(request: Request, shop_domain: str = Depends(require_admin_shop)):
    return templates.TemplateResponse(
        request,
        "index.html",
        _page_context(request, shop_domain, action_result=None),
    )


@app.post("/app", response_class=HTMLResponse)
async def admin_create_sku_price_lock_discount(
    request: Request,
    shop_domain: str = Depends(require_admin_shop),
    session: Session = Depends(get_session),
):
    action_result: dict[str, Any]
    status_code = status.HTTP_200_OK
    installation = _find_active_installation(session, shop_domain)
    if installation is None:
        action_result = {"ok": False, "errors": [{"message": "This store has no active installation."}]}
        status_code = status.HTTP_409_CONFLICT
    elif not settings.SKU_PRICE_LOCK_FUNCTION_ID:
        action_result = {"ok": False, "errors": [{"message": "SKU_PRICE_LOCK_FUNCTION_ID is not configured."}]}
        status_code = status.HTTP_409_CONFLICT
    else:
        try:
            discount = await shopify_api.create_sku_price_lock_discount(
                shop_domain=shop_domain,
                access_token=installation.admin_access_token,
                function_id=settings.SKU_PRICE_LOCK_FUNCTION_ID,
                title=settings.SKU_PRICE_LOCK_DISCOUNT_TITLE,
                locked_prices=LOCKED_SKU_PRICES,
            )
        except ShopifyApiError as exc:
            logger.exception("Discount creation failed for %s", shop_domain)
            errors = exc.user_errors or [{"message": f"Server Error: {exc}"}]
            action_result = {"ok": False, "errors": errors}
            status_code = exc.status_code
        else:
            logger.info("Created SKU Price Lock discount %s for %s", discount["discountId"], shop_domain)
            action_result = {"ok": True, "discount": discount}

    return templates.TemplateResponse(
        request,
        "index.html",
        _page_context(request, shop_domain, action_result=action_result),
        status_code=status_code,
    )


def _render_price_guard_page(
    request: Request,
    *,
    shop_domain: str,
    session: Session,
    action_result: dict[str, Any] | None = None,
    status_code: int = status.HTTP_200_OK,
) -> HTMLResponse:
    rules = PriceGuardRulesRepository(session).list_for_shop(shop_domain)
    return templates.TemplateResponse(
        request,
        "price_guard.html",
        _page_context(request, shop_domain, rules=rules, action_result=action_result),
        status_code=status_code,
    )


@app.get("/app/price-guard", response_class=HTMLResponse)
def admin_price_guard(
    request: Request,
    shop_domain: str = Depends(require_admin_shop),
    session: Session = Depends(get_session),
):
    return _render_price_guard_page(request, shop_domain=shop_domain, session=session)


def _apply_price_guard_action(
    *,
    repository: PriceGuardRulesRepository,
    shop_domain: str,
    intent: str,
    form: dict[str, str],
) -> None:
    if intent in {"create", "update"}:
        sku = clean_sku(form.get("sku"), missing_message=MISSING_RULE_FIELDS_MESSAGE)
        min_price = parse_min_price(form.get("minPrice"), missing_message=MISSING_RULE_FIELDS_MESSAGE)
        if intent == "create":
            repository.upsert(shop_domain, sku, min_price)
        else:
            repository.update(shop_domain, sku, min_price)
        return

    if intent == "delete":
        repository.delete(shop_domain, clean_sku(form.get("sku"), missing_message="SKU is required to delete."))
        return

    raise PriceGuardRuleError("Unknown action.")


@app.post("/app/price-guard", response_class=HTMLResponse)
async def admin_price_guard_action(
    request: Request,
    shop_domain: str = Depends(require_admin_shop),
    session: Session = Depends(get_session),
):
    raw_form = await request.form()
    form = {key: value for key, value in raw_form.items() if isinstance(value, str)}
    intent = form.get("_action", "")

    try:
        _apply_price_guard_action(
            repository=PriceGuardRulesRepository(session),
            shop_domain=shop_domain,
            intent=intent,
            form=form,
        )
    except PriceGuardRuleError as exc:
        session.rollback()
        return _render_price_guard_page(
            request,
            shop_domain=shop_domain,
            session=session,
            action_result={"ok": False, "error": str(exc)},
            status_code=exc.status_code,
        )

    logger.info("Price Guard %s for %s sku=%s", intent, shop_domain, form.get("sku", "").strip())
    return _render_price_guard_page(
        request,
        shop_domain=shop_domain,
        session=session,
        action_result={"ok": True, "action": intent},
    )


# Internal API


@app.get("/admin/installations", dependencies=[Depends(require_internal_api_token)])
def list_installations(session: Session = Depends(get_session)):
    installations = session.scalars(select(ShopInstallation).order_by(ShopInstallation.updated_at.desc())).all()
    return [_serialize_installation(installation) for installation in installations]


@app.put(
    "/v1/sku-price-lock/prices",
    response_model=SetLockedSkuPricesResponse,
    dependencies=[Depends(require_internal_api_token)],
)
async def set_locked_sku_prices(
    payload: SetLockedSkuPricesRequest,
    session: Session = Depends(get_session),
):
    installation = _resolve_active_installation(shop_domain=payload.shopDomain, session=session)
    try:
        result = await shopify_api.set_locked_sku_prices(
            shop_domain=installation.shop_domain,
            access_token=installation.admin_access_token,
            discount_gid=payload.discountId,
            locked_prices=payload.prices,
        )
    except ShopifyApiError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    return SetLockedSkuPricesResponse(
        shopDomain=installation.shop_domain,
        discountId=result["discountId"],
        metafieldId=result["metafieldId"],
        skuCount=len(payload.prices),
    )


@app.get(
    "/debug/webhooks",
    response_model=ListWebhookSubscriptionsResponse,
    dependencies=[Depends(require_internal_api_token)],
)
async def debug_webhook_subscriptions(shopDomain: str, session: Session = Depends(get_session)):
    installation = _resolve_active_installation(shop_domain=shopDomain, session=session)
    try:
        subscriptions = await shopify_api.list_webhook_subscriptions(
            shop_domain=installation.shop_domain,
            access_token=installation.admin_access_token,
        )
    except ShopifyApiError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    logger.info("Webhook subscriptions for %s: %s", installation.shop_domain, subscriptions)
    return ListWebhookSubscriptionsResponse(
        shopDomain=installation.shop_domain,
        subscriptions=[WebhookSubscriptionResponse(**item) for item in subscriptions],
    )


# Webhooks


def _verified_webhook_shop(request: Request, body: bytes) -> str:
    if not verify_webhook_hmac(body=body, supplied_hmac=request.headers.get("x-shopify-hmac-sha256")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook HMAC")

    shop_header = request.headers.get("x-shopify-shop-domain")
    if not shop_header:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing x-shopify-shop-domain header",
        )
    return normalize_shop_domain(shop_header)


def _record_webhook_event(
    session: Session,
    *,
    shop_domain: str,
    event_id: str | None,
    event_status: str,
) -> bool:
    """Store the outcome of a delivery; False when another delivery already stored it."""
    if not event_id:
        return True
    session.add(
        ProcessedWebhookEvent(
            shop_domain=shop_domain,
            topic=PRODUCTS_UPDATE_TOPIC,
            event_id=event_id,
            status=event_status,
        )
    )
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        logger.info("Webhook event %s for %s was recorded concurrently", event_id, shop_domain)
        return False
    return True


def _acknowledge_webhook(
    session: Session,
    *,
    shop_domain: str,
    event_id: str | None,
    event_status: str,
    restored: int = 0,
) -> dict[str, Any]:
    if not _record_webhook_event(session, shop_domain=shop_domain, event_id=event_id, event_status=event_status):
        return {"received": True, "duplicate": True}
    return {"received": True, "restored": restored}


@app.post("/webhooks/products/update")
async def products_update_webhook(request: Request, session: Session = Depends(get_session)):
    body = await request.body()
    shop_domain = _verified_webhook_shop(request, body)

    topic = (request.headers.get("x-shopify-topic") or PRODUCTS_UPDATE_TOPIC).strip().lower()
    if topic != PRODUCTS_UPDATE_TOPIC:
        logger.info("Ignoring webhook topic=%s for shop=%s", topic, shop_domain)
        return {"received": True, "ignored": True}

    event_id = request.headers.get("x-shopify-event-id")
    if event_id:
        existing = session.scalars(
            select(ProcessedWebhookEvent).where(
                ProcessedWebhookEvent.shop_domain == shop_domain,
                ProcessedWebhookEvent.topic == PRODUCTS_UPDATE_TOPIC,
                ProcessedWebhookEvent.event_id == event_id,
            )
        ).first()
        if existing:
            return {"received": True, "duplicate": True}

    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook payload must be a JSON object",
        )

    logger.info("Received webhook topic=%s for shop=%s", topic, shop_domain)

    installation = _find_active_installation(session, shop_domain)
    if installation is None:
        # Shopify can deliver product updates after the app was uninstalled.
        logger.warning("No admin context for webhook topic=%s shop=%s", topic, shop_domain)
        return _acknowledge_webhook(
            session, shop_domain=shop_domain, event_id=event_id, event_status="no_admin_context"
        )

    product_gid = product_gid_from_payload(payload)
    if not isinstance(payload.get("variants"), list) or product_gid is None:
        logger.warning("Product update for %s has no variants or product id, skipping", shop_domain)
        return _acknowledge_webhook(
            session, shop_domain=shop_domain, event_id=event_id, event_status="ignored_invalid_payload"
        )

    floors = PriceGuardRulesRepository(session).floors_for_skus(shop_domain, variant_skus(payload))
    corrections = plan_price_corrections(payload, floors)
    if not corrections:
        logger.info("No variants needed restoring for %s on %s", product_gid, shop_domain)
        return _acknowledge_webhook(session, shop_domain=shop_domain, event_id=event_id, event_status="no_action")

    try:
        restored = await shopify_api.restore_variant_prices(
            shop_domain=shop_domain,
            access_token=installation.admin_access_token,
            product_gid=product_gid,
            corrections=corrections,
        )
    except ShopifyApiError:
        logger.exception("Price Guard restore failed for %s on %s", product_gid, shop_domain)
        return _acknowledge_webhook(session, shop_domain=shop_domain, event_id=event_id, event_status="failed")

    for variant in restored:
        logger.info("Price Guard restored variant %s to %s", variant["id"], variant["price"])
    return _acknowledge_webhook(
        session,
        shop_domain=shop_domain,
        event_id=event_id,
        event_status="restored",
        restored=len(corrections),
    )


@app.post("/webhooks/app/uninstalled")
async def app_uninstalled_webhook(request: Request, session: Session = Depends(get_session)):
    body = await request.body()
    shop_domain = _verified_webhook_shop(request, body)
    logger.info("Received app/uninstalled webhook for %s", shop_domain)

    installation = _find_installation(session, shop_domain)
    if installation:
        installation.uninstalled_at = datetime.now(timezone.utc)
        installation.admin_access_token = ""
        installation.updated_at = datetime.now(timezone.utc)
        session.add(installation)
        session.commit()

    return {"received": True}


@app.get("/webhooks/products/update", response_class=PlainTextResponse)
@app.get("/webhooks/app/uninstalled", response_class=PlainTextResponse)
def webhook_probe() -> str:
    return "OK"

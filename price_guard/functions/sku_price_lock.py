"""SKU Price Lock discount function.

Locks specific SKUs to a fixed final unit price (incl. VAT). When a cart line's
current unit price is above the locked price, the difference is discounted from
each unit on that line.

The function is pure: it receives the cart snapshot Shopify passes to
``cart.lines.discounts.generate.run`` and returns the discount operations. The
input it reads looks like::

    {
      "cart": {"lines": [{"id": ..., "cost": {"amountPerQuantity": {"amount": "..."}},
                          "merchandise": {"__typename": "ProductVariant", "sku": "..."}}]},
      "discount": {"metafield": {"value": "{\\"SKU\\": \\"123.45\\"}"}}
    }
"""
from __future__ import annotations

import json
import sys
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

DISCOUNT_MESSAGE = "Locked SKU price"
SELECTION_STRATEGY_ALL = "ALL"

_CENT = Decimal("0.01")

# Used when the discount metafield is missing or unusable.
LOCKED_SKU_PRICES: dict[str, str] = {
    "MP20 (N150-8/256)": "3550.00",
    "S1-N150": "4500.00",
    "MP 100 PRO-I9-12900H/1-PR": "9790.00",
    "N3ES-I713620H-16/512-PRO": "10190.00",
    "MP 100 PRO-I5-12450H/1T-P": "8000.00",
    "N3ES-I31215U-16/512-PRO": "6400.00",
    "AD08": "8900.00",
    "GK3": "3200.00",
    "MP200-I9-1TB": "8700.00",
    "N3ES-I31215U-8/256-PRO": "5900.00",
    "BLK-ACEBOOK 6-N150-16/256": "4900.00",
    "BLK-ACEBOOK12": "8900.00",
    "RCT-2000VAS": "1790.00",
    "LS22D300": "1590.00",
    "LS24D300": "1880.00",
    "LS27D300": "2280.00",
    "SWV9030/10": "300.00",
    "SWV5551/00": "100.00",
    "MG2541S": "720.00",
    "TS3640": "920.00",
    "6670C037AA": "900.00",
    "G3410": "2320.00",
    "HS-SSD-E100-256G": "360.00",
    "RCT-1000VAS": "1270.00",
    "L3250": "3200.00",
    "0727C067AA": "8200.00",
    "TR4645": "1080.00",
    "49B2U5900CH": "19950.00",
    "210-BQWS": "8099.00",
    "DLP6812NB/69": "200.00",
    "DLP7721N/00": "290.00",
    "DLP2228CB/00": "290.00",
    "DLP5714CB/00": "290.00",
    "DLP9521CB/00": "490.00",
    "DLP1812PB/10": "200.00",
    "STKM1000400": "1250.00",
    "STKM2000400": "1610.00",
    "STKM4000400": "2530.00",
    "STKM5000400": "2810.00",
    "STKP8000400": "3400.00",
    "STKP20000400": "7900.00",
    "STKP24000400": "10660.00",
    "CNS-SW86BB": "420.00",
    "CNS-SW86RR": "420.00",
    "CNS-SW86SS": "420.00",
}


def format_amount(value: Decimal) -> str:
    return str(value.quantize(_CENT, rounding=ROUND_HALF_UP))


def parse_amount(raw: Any) -> Decimal | None:
    """Parse a money amount, returning None for anything not a finite number of cents."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        raw = repr(raw)
    if not isinstance(raw, str):
        return None
    try:
        value = Decimal(raw.strip())
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    try:
        value.quantize(_CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        # Too many digits to express in cents.
        return None
    return value


def get_locked_sku_prices(function_input: dict[str, Any]) -> dict[str, str]:
    discount = function_input.get("discount")
    metafield = discount.get("metafield") if isinstance(discount, dict) else None
    if not isinstance(metafield, dict) or not isinstance(metafield.get("value"), str):
        return LOCKED_SKU_PRICES

    try:
        parsed = json.loads(metafield["value"])
    except ValueError:
        return LOCKED_SKU_PRICES

    # Expecting a plain object like {"SKU1": "123.45", "SKU2": 999}.
    if not isinstance(parsed, dict):
        return LOCKED_SKU_PRICES

    result: dict[str, str] = {}
    for key, value in parsed.items():
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            amount = parse_amount(value)
            if amount is not None:
                result[key] = format_amount(amount)
        elif isinstance(value, str):
            result[key] = value

    if not result:
        return LOCKED_SKU_PRICES
    return result


def _line_candidate(cart_line: Any, locked_sku_prices: dict[str, str]) -> dict[str, Any] | None:
    if not isinstance(cart_line, dict):
        return None
    merchandise = cart_line.get("merchandise")
    if not isinstance(merchandise, dict) or merchandise.get("__typename") != "ProductVariant":
        return None

    sku = merchandise.get("sku")
    if not isinstance(sku, str) or not sku:
        return None

    locked_price = parse_amount(locked_sku_prices.get(sku))
    if locked_price is None or locked_price <= 0:
        return None

    cost = cart_line.get("cost")
    per_quantity = cost.get("amountPerQuantity") if isinstance(cost, dict) else None
    current_unit_price = parse_amount(per_quantity.get("amount")) if isinstance(per_quantity, dict) else None
    if current_unit_price is None or current_unit_price <= 0:
        return None

    if current_unit_price <= locked_price:
        return None

    line_id = cart_line.get("id")
    if not isinstance(line_id, str) or not line_id:
        return None

    return {
        "message": DISCOUNT_MESSAGE,
        "targets": [
            {
                # null quantity targets every unit on the line
                "cartLine": {"id": line_id, "quantity": None},
            }
        ],
        "value": {
            "fixedAmount": {
                "amount": format_amount(current_unit_price - locked_price),
                "appliesToEachItem": True,
            }
        },
    }


def cart_lines_discounts_generate_run(function_input: dict[str, Any]) -> dict[str, Any]:
    operations: list[dict[str, Any]] = []
    locked_sku_prices = get_locked_sku_prices(function_input)

    cart = function_input.get("cart")
    lines = cart.get("lines") if isinstance(cart, dict) else None
    if not isinstance(lines, list):
        return {"operations": operations}

    candidates = [
        candidate
        for candidate in (_line_candidate(line, locked_sku_prices) for line in lines)
        if candidate is not None
    ]
    if not candidates:
        return {"operations": operations}

    operations.append(
        {
            "productDiscountsAdd": {
                "selectionStrategy": SELECTION_STRATEGY_ALL,
                "candidates": candidates,
            }
        }
    )
    return {"operations": operations}


def main() -> int:
    try:
        function_input = json.load(sys.stdin)
    except ValueError as exc:
        print(f"Invalid function input JSON: {exc}", file=sys.stderr)
        return 1
    if not isinstance(function_input, dict):
        print("Function input must be a JSON object", file=sys.stderr)
        return 1
    json.dump(cart_lines_discounts_generate_run(function_input), sys.stdout)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

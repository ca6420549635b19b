#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from fastapi import HTTPException

from price_guard.db import init_db, session_scope
from price_guard.rules import PriceGuardRuleError, PriceGuardRulesRepository, clean_sku, parse_min_price
from price_guard.security import normalize_shop_domain

logger = logging.getLogger("seed_price_guard")

DEFAULT_SHOP = "matrix-warehouse-sa.myshopify.com"

DEFAULT_RULES: list[tuple[str, str]] = [
    ("SWV9030/10", "310.00"),
    ("U278-8GB", "60.00"),
    ("U278-16GB", "65.00"),
    ("U278-32GB", "70.00"),
]


def _parse_rule(raw: str) -> tuple[str, str]:
    sku, separator, price = raw.rpartition("=")
    if not separator:
        raise argparse.ArgumentTypeError(f"Rule must look like SKU=PRICE, got {raw!r}")
    return sku, price


def main() -> int:
    parser = argparse.ArgumentParser(description="Upsert Price Guard floor rules for a shop.")
    parser.add_argument("--shop", default=DEFAULT_SHOP, help="Shop domain (*.myshopify.com).")
    parser.add_argument(
        "--rule",
        action="append",
        type=_parse_rule,
        default=None,
        metavar="SKU=PRICE",
        help="Rule to upsert; repeatable. Defaults to the built-in seed list.",
    )
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")

    try:
        shop_domain = normalize_shop_domain(args.shop)
    except HTTPException as exc:
        logger.error("Invalid shop %r: %s", args.shop, exc.detail)
        return 2

    try:
        rules = [(clean_sku(sku), parse_min_price(price)) for sku, price in (args.rule or DEFAULT_RULES)]
    except PriceGuardRuleError as exc:
        logger.error("Invalid rule: %s", exc)
        return 2

    init_db()
    with session_scope() as session:
        repository = PriceGuardRulesRepository(session)
        for sku, min_price in rules:
            repository.upsert(shop_domain, sku, min_price)
            logger.info("Seeded %s min_price=%s", sku, min_price)

    logger.info("Seeded %d Price Guard rules for %s", len(rules), shop_domain)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

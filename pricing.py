# Meterwise Pricing Resolver
# Turns a raw vendor quantity into the billed cost triple:
#
#   base_cost  = round(raw_quantity × unit_price)
#   final_cost = round(base_cost × (1 + margin_percent / 100))
#
# Unit prices and margins live in pricing_config / margin_config. Rows are
# never updated in place: a change deactivates the old row and inserts a
# new one, so every historical price is still on disk. Margin changes only
# affect quotes resolved after the change; recorded usage keeps the margin
# it was created with.

import logging
import time
from decimal import Decimal
from typing import Optional

import config
from db import BillingStore
from errors import InvalidQuantity, LookupTimeout, PricingUnavailable, ValidationError
from models import PriceQuote, money, parse_category, to_decimal
from repositories import PricingRepo

log = logging.getLogger("meterwise")


def parse_quantity(raw_quantity) -> Decimal:
    if isinstance(raw_quantity, bool):
        raise InvalidQuantity(f"raw_quantity must be a number, got {raw_quantity!r}")
    try:
        qty = to_decimal(raw_quantity)
    except ValidationError:
        raise InvalidQuantity(f"raw_quantity must be a number, got {raw_quantity!r}")
    if not qty.is_finite() or qty <= 0:
        raise InvalidQuantity(
            f"raw_quantity must be > 0, got {raw_quantity}", raw_quantity=str(raw_quantity),
        )
    return qty


class PricingResolver:
    """Reads the active unit price and margin for a category."""

    def __init__(self, store: BillingStore, clock=time.time):
        self.store = store
        self.clock = clock

    def resolve(self, category, raw_quantity, company_id: Optional[str] = None,
                deadline: Optional[float] = None) -> PriceQuote:
        cat = parse_category(category)
        qty = parse_quantity(raw_quantity)

        with self.store.connection() as (conn, backend):
            price = PricingRepo.active_price(conn, cat.value, backend)
            if price is None:
                log.error("PRICING no active unit price for %s", cat.value)
                raise PricingUnavailable(
                    f"no active unit price for {cat.value}", category=cat.value,
                )
            margin = self._margin(conn, backend, company_id)

        if deadline is not None and self.clock() > deadline:
            raise LookupTimeout("pricing lookup exceeded its deadline", category=cat.value)

        unit_price, _unit = price
        base_cost = money(qty * unit_price)
        final_cost = money(base_cost * (1 + margin / Decimal(100)))
        return PriceQuote(
            category=cat.value,
            raw_quantity=qty,
            unit_price=unit_price,
            base_cost=base_cost,
            margin_percent=margin,
            final_cost=final_cost,
        )

    @staticmethod
    def _margin(conn, backend, company_id) -> Decimal:
        if company_id is not None:
            override = PricingRepo.active_margin(conn, company_id, backend)
            if override is not None:
                return override
        margin = PricingRepo.active_margin(conn, None, backend)
        if margin is None:
            return config.PROFIT_MARGIN_PERCENTAGE
        return margin

    # ── Configuration ─────────────────────────────────────────────────

    def current_margin(self, company_id: Optional[str] = None) -> dict:
        with self.store.connection() as (conn, backend):
            override = None
            if company_id is not None:
                override = PricingRepo.active_margin(conn, company_id, backend)
            margin = self._margin(conn, backend, company_id)
        return {
            "company_id": company_id,
            "margin_percent": str(margin),
            "override": override is not None,
        }

    def set_margin(self, percent, company_id: Optional[str] = None) -> Decimal:
        value = to_decimal(percent)
        if not value.is_finite() or value < 0:
            raise ValidationError(f"margin must be >= 0, got {percent}")
        with self.store.transaction() as (conn, backend):
            PricingRepo.deactivate_margin(conn, company_id, backend)
            PricingRepo.insert_margin(conn, company_id, value, self.clock(), backend)
        log.info("MARGIN %s set to %s%%", company_id or "global", value)
        return value

    def clear_margin_override(self, company_id: str) -> bool:
        with self.store.transaction() as (conn, backend):
            cleared = PricingRepo.deactivate_margin(conn, company_id, backend)
        if cleared:
            log.info("MARGIN %s override cleared", company_id)
        return bool(cleared)

    def set_unit_price(self, category, unit_price, unit: Optional[str] = None) -> dict:
        cat = parse_category(category)
        price = to_decimal(unit_price)
        if not price.is_finite() or price < 0:
            raise ValidationError(f"unit_price must be >= 0, got {unit_price}")
        unit = unit or config.DEFAULT_UNIT_PRICES[cat.value][1]
        with self.store.transaction() as (conn, backend):
            PricingRepo.replace_price(conn, cat.value, price, unit, self.clock(), backend)
        log.info("PRICE %s = %s per %s", cat.value, price, unit)
        return {"category": cat.value, "unit_price": str(price), "unit": unit}

    def list_prices(self) -> list[dict]:
        with self.store.connection() as (conn, backend):
            return PricingRepo.list_active_prices(conn, backend)

    def seed_defaults(self) -> int:
        """Insert configured defaults for anything with no active row. Returns rows written."""
        written = 0
        now = self.clock()
        with self.store.transaction() as (conn, backend):
            for category, (price, unit) in config.DEFAULT_UNIT_PRICES.items():
                if PricingRepo.active_price(conn, category, backend) is None:
                    PricingRepo.replace_price(conn, category, price, unit, now, backend)
                    written += 1
            if PricingRepo.active_margin(conn, None, backend) is None:
                PricingRepo.insert_margin(conn, None, config.PROFIT_MARGIN_PERCENTAGE, now, backend)
                written += 1
        if written:
            log.info("PRICING seeded %d default rows", written)
        return written

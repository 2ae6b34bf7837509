from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from genflow.capabilities.base import PRICING_DURATION, PRICING_FLAT, PRICING_PER_UNIT, CapabilitySpec
from genflow.services.discounts import DiscountResult
from genflow.utils.credits import ZERO, round_up_credits, to_credits


_DURATION_RE = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*(s|sec|secs|seconds?)?\s*$', re.IGNORECASE)


@dataclass
class PriceQuote:
    capability: str
    unit_price: Decimal
    units: Decimal
    subtotal: Decimal
    discount_pct: int
    is_free: bool
    total: Decimal

    def charge_for_units(self, delivered: int) -> Decimal:
        """Price of ``delivered`` units at the quoted effective rate."""
        if self.units <= 0 or delivered >= self.units:
            return self.total
        return round_up_credits(self.total * Decimal(delivered) / self.units)


def parse_units(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f'invalid unit value: {value!r}')
    if isinstance(value, (int, float, Decimal)):
        units = Decimal(str(value))
    else:
        match = _DURATION_RE.match(str(value))
        if not match:
            raise ValueError(f'invalid unit value: {value!r}')
        units = Decimal(match.group(1))
    if units <= 0:
        raise ValueError(f'unit value must be positive: {value!r}')
    return units


def resolve_units(capability: CapabilitySpec, params: Dict[str, Any]) -> Decimal:
    rule = capability.pricing
    if rule.mode == PRICING_FLAT or not rule.unit_param:
        return Decimal('1')
    raw = params.get(rule.unit_param)
    if raw in (None, ''):
        raw = rule.unit_default
    try:
        return parse_units(raw)
    except InvalidOperation as exc:
        raise ValueError(f'invalid unit value: {raw!r}') from exc


def resolve_price(
    capability: CapabilitySpec,
    params: Dict[str, Any],
    discount: Optional[DiscountResult] = None,
) -> PriceQuote:
    rule = capability.pricing
    if rule.mode not in (PRICING_FLAT, PRICING_PER_UNIT, PRICING_DURATION):
        raise ValueError(f'unknown pricing mode: {rule.mode}')

    unit_price = capability.option_price(params) or rule.amount
    units = resolve_units(capability, params)
    if rule.mode == PRICING_DURATION:
        units = units / rule.unit_divisor
    subtotal = max(to_credits(unit_price * units), to_credits(rule.minimum))

    discount_pct = 0
    is_free = False
    if discount is not None:
        discount_pct = max(0, min(100, int(discount.percentage)))
        is_free = discount.is_free

    if is_free:
        total = ZERO
    elif discount_pct > 0:
        total = round_up_credits(subtotal * Decimal(100 - discount_pct) / Decimal(100))
    else:
        total = subtotal

    return PriceQuote(
        capability=capability.key,
        unit_price=to_credits(unit_price),
        units=units,
        subtotal=subtotal,
        discount_pct=discount_pct,
        is_free=is_free,
        total=total,
    )

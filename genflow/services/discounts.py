"""Holder discounts resolved through an external holdings lookup.

Rules describe which collections or tokens grant a discount on which
capabilities. The lookup itself (on-chain balance reads) lives outside this
service; results are memoised per actor and capability in a
:class:`DiscountCache`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from genflow.services.discount_cache import DiscountCache
from genflow.utils.logging import get_logger


logger = get_logger('discounts')

RULE_KINDS = {'nft', 'token'}
REQUIRED_RULE_FIELDS = (
    'id',
    'name',
    'kind',
    'contract_address',
    'chain_id',
    'percentage',
    'min_balance',
    'applies_to',
)


@dataclass(frozen=True)
class DiscountRule:
    id: str
    name: str
    kind: str
    contract_address: str
    chain_id: str
    percentage: int
    min_balance: Decimal
    applies_to: Tuple[str, ...]
    free: bool = False

    def applies(self, capability: str) -> bool:
        return capability in self.applies_to or '*' in self.applies_to


@dataclass
class DiscountResult:
    percentage: int = 0
    is_free: bool = False
    applied: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def has_discount(self) -> bool:
        return self.is_free or self.percentage > 0


class HoldingsLookup(Protocol):
    async def balance_of(self, actor_id: str, rule: DiscountRule) -> Decimal:
        ...


def parse_rule(raw: Dict[str, Any]) -> DiscountRule:
    errors: List[str] = []
    for name in REQUIRED_RULE_FIELDS:
        if raw.get(name) in (None, '', []):
            errors.append(f'missing required field: {name}')
    if errors:
        raise ValueError('; '.join(errors))

    kind = str(raw['kind']).lower()
    if kind not in RULE_KINDS:
        errors.append(f'unknown kind: {kind}')
    try:
        percentage = int(raw['percentage'])
    except (TypeError, ValueError):
        percentage = -1
    if not 0 <= percentage <= 100:
        errors.append('percentage must be between 0 and 100')
    try:
        min_balance = Decimal(str(raw['min_balance']))
    except InvalidOperation:
        min_balance = Decimal(-1)
    if min_balance < 0:
        errors.append('min_balance must be a non-negative number')
    applies_to = raw['applies_to']
    if isinstance(applies_to, str) or not isinstance(applies_to, Iterable):
        errors.append('applies_to must be a non-empty list')
        applies_to = ()
    if errors:
        raise ValueError(f"invalid discount rule {raw.get('id')}: " + '; '.join(errors))

    return DiscountRule(
        id=str(raw['id']),
        name=str(raw['name']),
        kind=kind,
        contract_address=str(raw['contract_address']),
        chain_id=str(raw['chain_id']),
        percentage=percentage,
        min_balance=min_balance,
        applies_to=tuple(str(item) for item in applies_to),
        free=bool(raw.get('free', False)),
    )


def load_rules(raw_rules: Iterable[Dict[str, Any]]) -> List[DiscountRule]:
    return [parse_rule(raw) for raw in raw_rules]


class DiscountService:
    def __init__(
        self,
        rules: Iterable[DiscountRule],
        cache: DiscountCache,
        lookup: Optional[HoldingsLookup] = None,
    ) -> None:
        self.rules = list(rules)
        self.cache = cache
        self.lookup = lookup

    def applicable_rules(self, capability: str) -> List[DiscountRule]:
        return [rule for rule in self.rules if rule.applies(capability)]

    async def resolve(self, actor_id: str, capability: str) -> DiscountResult:
        if self.lookup is None or not self.applicable_rules(capability):
            return DiscountResult()
        return await self.cache.get_or_compute(
            actor_id,
            capability,
            lambda: self._compute(actor_id, capability),
            fallback=lambda exc: DiscountResult(error='lookup_failed'),
        )

    async def _compute(self, actor_id: str, capability: str) -> DiscountResult:
        result = DiscountResult()
        for rule in self.applicable_rules(capability):
            balance = await self.lookup.balance_of(actor_id, rule)
            if balance < rule.min_balance or balance <= 0:
                continue
            result.applied.append(rule.id)
            result.percentage = max(result.percentage, rule.percentage)
            if rule.free:
                result.is_free = True
        logger.info(
            'discount_resolved',
            actor_id=actor_id,
            capability=capability,
            percentage=result.percentage,
            is_free=result.is_free,
            applied=result.applied,
        )
        return result

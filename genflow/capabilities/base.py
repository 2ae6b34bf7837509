from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple


PRICING_FLAT = 'flat'
PRICING_PER_UNIT = 'per_unit'
PRICING_DURATION = 'duration'


@dataclass
class OptionValue:
    value: str
    label: str
    price: Optional[Decimal] = None


@dataclass
class OptionSpec:
    key: str
    label: str
    values: List[OptionValue]
    default: str


@dataclass
class PricingRule:
    mode: str
    amount: Decimal
    unit_param: Optional[str] = None
    unit_default: Any = 1
    unit_divisor: Decimal = Decimal('1')
    minimum: Decimal = Decimal('0')
    # Units are delivered artifacts, so a short delivery is charged pro rata.
    per_artifact: bool = False


@dataclass
class CapabilitySpec:
    key: str
    provider: str
    model_id: str
    artifact_kind: str
    display_name: str
    pricing: PricingRule
    options: List[OptionSpec] = field(default_factory=list)
    input_keys: Tuple[str, ...] = ('prompt',)
    required_inputs: Tuple[str, ...] = ('prompt',)
    max_wait_seconds: int = 600
    initial_delay_seconds: Optional[float] = None

    def option_by_key(self, key: str) -> Optional[OptionSpec]:
        for opt in self.options:
            if opt.key == key:
                return opt
        return None

    def validate_options(self, params: Dict[str, Any]) -> Dict[str, Any]:
        validated: Dict[str, Any] = {}
        for opt in self.options:
            value = params.get(opt.key, opt.default)
            allowed = {v.value for v in opt.values}
            if value not in allowed:
                raise ValueError(f'invalid value for {opt.key}: {value!r}')
            validated[opt.key] = value
        return validated

    def option_price(self, params: Dict[str, Any]) -> Optional[Decimal]:
        for opt in self.options:
            value = params.get(opt.key, opt.default)
            for v in opt.values:
                if v.value == value and v.price is not None:
                    return v.price
        return None

    def build_input(self, params: Dict[str, Any]) -> Dict[str, Any]:
        missing = [key for key in self.required_inputs if params.get(key) in (None, '')]
        if missing:
            raise ValueError(f"missing required input: {', '.join(missing)}")
        payload: Dict[str, Any] = {}
        for key in self.input_keys:
            if params.get(key) is not None:
                payload[key] = params[key]
        payload.update(self.validate_options(params))
        return payload

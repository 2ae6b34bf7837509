from __future__ import annotations

from decimal import Decimal

from genflow.capabilities.base import PRICING_DURATION, CapabilitySpec, PricingRule


MUSIC = CapabilitySpec(
    key='music',
    provider='fal',
    model_id='fal-ai/stable-audio',
    artifact_kind='audio',
    display_name='Music',
    # Billed per minute of requested audio.
    pricing=PricingRule(
        mode=PRICING_DURATION,
        amount=Decimal('0.2'),
        unit_param='seconds_total',
        unit_default=30,
        unit_divisor=Decimal('60'),
        minimum=Decimal('0.1'),
    ),
    input_keys=('prompt', 'seconds_total', 'steps'),
    max_wait_seconds=480,
)

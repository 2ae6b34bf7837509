from __future__ import annotations

from decimal import Decimal

from genflow.capabilities.base import PRICING_PER_UNIT, CapabilitySpec, PricingRule


LORA_TRAINING = CapabilitySpec(
    key='lora_training',
    provider='fal',
    model_id='fal-ai/flux-lora-fast-training',
    artifact_kind='weights',
    display_name='LoRA training',
    pricing=PricingRule(
        mode=PRICING_PER_UNIT,
        amount=Decimal('0.026'),
        unit_param='steps',
        unit_default=1000,
    ),
    input_keys=('images_data_url', 'trigger_word', 'steps', 'is_style'),
    required_inputs=('images_data_url',),
    max_wait_seconds=900,
    initial_delay_seconds=30,
)

from __future__ import annotations

from decimal import Decimal

from genflow.capabilities.base import PRICING_PER_UNIT, CapabilitySpec, OptionSpec, OptionValue, PricingRule


_ASPECT_RATIOS = OptionSpec(
    key='aspect_ratio',
    label='Aspect ratio',
    default='1:1',
    values=[
        OptionValue('1:1', '1:1 (square)'),
        OptionValue('3:4', '3:4 (portrait)'),
        OptionValue('4:3', '4:3 (landscape)'),
        OptionValue('9:16', '9:16 (portrait)'),
        OptionValue('16:9', '16:9 (landscape)'),
    ],
)


FLUX_PRO = CapabilitySpec(
    key='flux_pro',
    provider='fal',
    model_id='fal-ai/flux-pro/kontext/text-to-image',
    artifact_kind='image',
    display_name='Flux Pro Kontext',
    pricing=PricingRule(mode=PRICING_PER_UNIT, amount=Decimal('0.5'), unit_param='num_images', per_artifact=True),
    options=[_ASPECT_RATIOS],
    input_keys=('prompt', 'num_images', 'seed', 'image_url'),
    max_wait_seconds=480,
    initial_delay_seconds=3,
)


NANO_BANANA_PRO = CapabilitySpec(
    key='nano_banana_pro',
    provider='fal',
    model_id='fal-ai/nano-banana-pro',
    artifact_kind='image',
    display_name='Nano Banana Pro',
    pricing=PricingRule(mode=PRICING_PER_UNIT, amount=Decimal('2.5'), unit_param='num_images', per_artifact=True),
    options=[
        _ASPECT_RATIOS,
        OptionSpec(
            key='resolution',
            label='Resolution',
            default='1K',
            values=[
                OptionValue('1K', '1K'),
                OptionValue('2K', '2K'),
                OptionValue('4K', '4K'),
            ],
        ),
    ],
    input_keys=('prompt', 'num_images', 'image_urls'),
    max_wait_seconds=480,
    initial_delay_seconds=3,
)

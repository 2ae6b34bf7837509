from __future__ import annotations

from decimal import Decimal

from genflow.capabilities.base import PRICING_DURATION, CapabilitySpec, OptionSpec, OptionValue, PricingRule


VEO3_FAST = CapabilitySpec(
    key='veo3_fast',
    provider='fal',
    model_id='fal-ai/veo3/fast',
    artifact_kind='video',
    display_name='Veo 3 Fast',
    pricing=PricingRule(
        mode=PRICING_DURATION,
        amount=Decimal('2.2'),
        unit_param='duration',
        unit_default='8s',
        minimum=Decimal('2'),
    ),
    options=[
        OptionSpec(
            key='aspect_ratio',
            label='Aspect ratio',
            default='16:9',
            values=[
                OptionValue('16:9', '16:9 (landscape)'),
                OptionValue('9:16', '9:16 (portrait)'),
                OptionValue('1:1', '1:1 (square)'),
            ],
        ),
        OptionSpec(
            key='duration',
            label='Duration',
            default='8s',
            values=[
                OptionValue('4s', '4 seconds'),
                OptionValue('6s', '6 seconds'),
                OptionValue('8s', '8 seconds'),
            ],
        ),
        OptionSpec(
            key='resolution',
            label='Resolution',
            default='720p',
            values=[
                OptionValue('720p', '720p HD'),
                OptionValue('1080p', '1080p Full HD'),
            ],
        ),
    ],
    input_keys=('prompt', 'negative_prompt', 'seed', 'image_url', 'generate_audio'),
    max_wait_seconds=720,
)


WAN_ANIMATE = CapabilitySpec(
    key='wan_animate',
    provider='fal',
    model_id='fal-ai/wan/v2.2-14b/animate/move',
    artifact_kind='video',
    display_name='Wan Animate',
    pricing=PricingRule(
        mode=PRICING_DURATION,
        amount=Decimal('2.2'),
        unit_param='duration',
        unit_default=5,
        minimum=Decimal('2'),
    ),
    input_keys=('video_url', 'image_url', 'resolution', 'seed'),
    required_inputs=('video_url', 'image_url'),
    max_wait_seconds=720,
)

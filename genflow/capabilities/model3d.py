from __future__ import annotations

from decimal import Decimal

from genflow.capabilities.base import PRICING_FLAT, CapabilitySpec, OptionSpec, OptionValue, PricingRule


HUNYUAN3D = CapabilitySpec(
    key='hunyuan3d',
    provider='fal',
    model_id='fal-ai/hunyuan3d-v3/image-to-3d',
    artifact_kind='model3d',
    display_name='Hunyuan3D V3',
    pricing=PricingRule(mode=PRICING_FLAT, amount=Decimal('2.5')),
    options=[
        OptionSpec(
            key='generate_type',
            label='Mesh type',
            default='Normal',
            values=[
                OptionValue('Normal', 'Textured + PBR', Decimal('2.5')),
                OptionValue('LowPoly', 'Low poly + textures', Decimal('2.5')),
                OptionValue('Geometry', 'Geometry only', Decimal('2')),
            ],
        ),
        OptionSpec(
            key='polygon_type',
            label='Polygons',
            default='triangle',
            values=[
                OptionValue('triangle', 'Triangles'),
                OptionValue('quadrilateral', 'Quads'),
            ],
        ),
    ],
    input_keys=(
        'input_image_url',
        'back_image_url',
        'left_image_url',
        'right_image_url',
        'enable_pbr',
        'face_count',
    ),
    required_inputs=('input_image_url',),
    max_wait_seconds=600,
)

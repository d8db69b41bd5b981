from __future__ import annotations

from mediaforge.catalog.base import ASPECT_RATIO, ModelSpec, OptionSpec, OptionValue, VIDEO_ASPECT_RATIO
from mediaforge.kinds import GenerationKind


VEO3_FAST = ModelSpec(
    key='veo3_fast',
    provider='kie',
    model_id='veo3_fast',
    kinds=(GenerationKind.VIDEO_FROM_TEXT, GenerationKind.VIDEO_FROM_IMAGE),
    display_name='Google Veo 3 Fast',
    options=[VIDEO_ASPECT_RATIO],
    min_duration=5,
    max_duration=8,
    default_duration=8,
)

VEO3 = ModelSpec(
    key='veo3',
    provider='kie',
    model_id='veo3',
    kinds=(GenerationKind.VIDEO_FROM_TEXT, GenerationKind.VIDEO_FROM_IMAGE),
    display_name='Google Veo 3',
    options=[VIDEO_ASPECT_RATIO],
    min_duration=5,
    max_duration=8,
    default_duration=8,
)

NANO_BANANA_PRO = ModelSpec(
    key='nano_banana_pro',
    provider='kie',
    model_id='nano-banana-pro',
    kinds=(GenerationKind.IMAGE_FROM_TEXT, GenerationKind.IMAGE_FROM_IMAGE),
    display_name='Nano Banana Pro',
    options=[
        ASPECT_RATIO,
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
        OptionSpec(
            key='output_format',
            label='Format',
            default='png',
            values=[
                OptionValue('png', 'PNG'),
                OptionValue('jpg', 'JPG'),
            ],
        ),
    ],
    max_reference_images=8,
)

KIE_MODELS = (VEO3_FAST, VEO3, NANO_BANANA_PRO)

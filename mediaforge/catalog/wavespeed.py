from __future__ import annotations

from mediaforge.catalog.base import ASPECT_RATIO, ModelSpec, VIDEO_ASPECT_RATIO
from mediaforge.kinds import GenerationKind


SEEDREAM_V4 = ModelSpec(
    key='seedream_v4',
    provider='wavespeed',
    model_id='bytedance/seedream-v4',
    kinds=(GenerationKind.IMAGE_FROM_TEXT,),
    display_name='Seedream 4.0',
    options=[ASPECT_RATIO],
)

FLUX_PRO = ModelSpec(
    key='flux_pro',
    provider='wavespeed',
    model_id='flux/flux-1.1-pro',
    kinds=(GenerationKind.IMAGE_FROM_TEXT,),
    display_name='FLUX 1.1 Pro',
    options=[ASPECT_RATIO],
)

FLUX_SCHNELL = ModelSpec(
    key='flux_schnell',
    provider='wavespeed',
    model_id='flux/flux-1-schnell',
    kinds=(GenerationKind.IMAGE_FROM_TEXT,),
    display_name='FLUX.1 Schnell',
    options=[ASPECT_RATIO],
)

NANO_BANANA = ModelSpec(
    key='nano_banana',
    provider='wavespeed',
    model_id='google/nano-banana/text-to-image',
    kinds=(GenerationKind.IMAGE_FROM_TEXT,),
    display_name='Nano Banana',
    options=[ASPECT_RATIO],
)

SEEDREAM_V4_EDIT = ModelSpec(
    key='seedream_v4_edit',
    provider='wavespeed',
    model_id='bytedance/seedream-v4/edit',
    kinds=(GenerationKind.IMAGE_FROM_IMAGE,),
    display_name='Seedream 4.0 Edit',
    options=[ASPECT_RATIO],
    requires_image=True,
    max_reference_images=10,
)

FLUX_PRO_EDIT = ModelSpec(
    key='flux_pro_edit',
    provider='wavespeed',
    model_id='flux/flux-1.1-pro/edit',
    kinds=(GenerationKind.IMAGE_FROM_IMAGE,),
    display_name='FLUX 1.1 Pro Edit',
    options=[ASPECT_RATIO],
    requires_image=True,
)

NANO_BANANA_EDIT = ModelSpec(
    key='nano_banana_edit',
    provider='wavespeed',
    model_id='google/nano-banana/edit',
    kinds=(GenerationKind.IMAGE_FROM_IMAGE,),
    display_name='Nano Banana Edit',
    options=[ASPECT_RATIO],
    requires_image=True,
    max_reference_images=10,
)

INFINITETALK = ModelSpec(
    key='infinitetalk',
    provider='wavespeed',
    model_id='wavespeed-ai/infinitetalk',
    kinds=(GenerationKind.LIP_SYNC,),
    display_name='InfiniteTalk',
    requires_image=True,
    requires_audio=True,
    requires_prompt=False,
)

IMAGE_UPSCALER = ModelSpec(
    key='image_upscaler',
    provider='wavespeed',
    model_id='wavespeed-ai/image-upscaler',
    kinds=(GenerationKind.IMAGE_UPSCALE,),
    display_name='Image Upscaler 4K',
    requires_image=True,
    requires_prompt=False,
)

SOUL_REIMAGINE = ModelSpec(
    key='soul_reimagine',
    provider='wavespeed',
    model_id='higgsfield/soul/image-to-image',
    kinds=(GenerationKind.IMAGE_REIMAGINE,),
    display_name='Soul Reimagine',
    requires_image=True,
    requires_prompt=False,
    default_prompt='reimagine this picture',
)

SPEECH_02_HD = ModelSpec(
    key='speech_02_hd',
    provider='wavespeed',
    model_id='minimax/speech-02-hd',
    kinds=(GenerationKind.AUDIO_FROM_TEXT,),
    display_name='MiniMax Speech 02 HD',
)

WAN_25_IMAGE_TO_VIDEO = ModelSpec(
    key='wan_25_i2v',
    provider='wavespeed',
    model_id='alibaba/wan-2.5/image-to-video',
    kinds=(GenerationKind.VIDEO_FROM_IMAGE,),
    display_name='Alibaba WAN 2.5',
    options=[VIDEO_ASPECT_RATIO],
    min_duration=5,
    max_duration=10,
    default_duration=5,
    requires_image=True,
)

WAN_25_TEXT_TO_VIDEO = ModelSpec(
    key='wan_25_t2v',
    provider='wavespeed',
    model_id='alibaba/wan-2.5/text-to-video',
    kinds=(GenerationKind.VIDEO_FROM_TEXT,),
    display_name='Alibaba WAN 2.5',
    options=[VIDEO_ASPECT_RATIO],
    min_duration=5,
    max_duration=10,
    default_duration=5,
)

WAVESPEED_MODELS = (
    SEEDREAM_V4,
    FLUX_PRO,
    FLUX_SCHNELL,
    NANO_BANANA,
    SEEDREAM_V4_EDIT,
    FLUX_PRO_EDIT,
    NANO_BANANA_EDIT,
    INFINITETALK,
    IMAGE_UPSCALER,
    SOUL_REIMAGINE,
    SPEECH_02_HD,
    WAN_25_IMAGE_TO_VIDEO,
    WAN_25_TEXT_TO_VIDEO,
)

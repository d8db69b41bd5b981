from __future__ import annotations

from typing import Dict, List

from mediaforge.catalog.base import ModelSpec
from mediaforge.catalog.kie import KIE_MODELS, VEO3_FAST
from mediaforge.catalog.wavespeed import (
    IMAGE_UPSCALER,
    INFINITETALK,
    SEEDREAM_V4,
    SEEDREAM_V4_EDIT,
    SOUL_REIMAGINE,
    SPEECH_02_HD,
    WAN_25_IMAGE_TO_VIDEO,
    WAVESPEED_MODELS,
)
from mediaforge.errors import InvalidInput
from mediaforge.kinds import GenerationKind


MODEL_SPECS: Dict[str, ModelSpec] = {spec.key: spec for spec in WAVESPEED_MODELS + KIE_MODELS}

DEFAULT_MODELS: Dict[GenerationKind, ModelSpec] = {
    GenerationKind.IMAGE_FROM_TEXT: SEEDREAM_V4,
    GenerationKind.IMAGE_FROM_IMAGE: SEEDREAM_V4_EDIT,
    GenerationKind.VIDEO_FROM_TEXT: VEO3_FAST,
    GenerationKind.VIDEO_FROM_IMAGE: WAN_25_IMAGE_TO_VIDEO,
    GenerationKind.LIP_SYNC: INFINITETALK,
    GenerationKind.AUDIO_FROM_TEXT: SPEECH_02_HD,
    GenerationKind.IMAGE_UPSCALE: IMAGE_UPSCALER,
    GenerationKind.IMAGE_REIMAGINE: SOUL_REIMAGINE,
}


def list_models(kind: GenerationKind | None = None) -> List[ModelSpec]:
    if kind is None:
        return list(MODEL_SPECS.values())
    return [spec for spec in MODEL_SPECS.values() if spec.supports(kind)]


def get_model(key: str) -> ModelSpec | None:
    return MODEL_SPECS.get(key)


def resolve(kind: GenerationKind, model_key: str | None = None) -> ModelSpec:
    if not model_key:
        return DEFAULT_MODELS[kind]
    spec = get_model(model_key)
    if spec is None:
        raise InvalidInput(f'Unknown model: {model_key}')
    if not spec.supports(kind):
        raise InvalidInput(f'Model {model_key} does not support {kind.value}')
    return spec

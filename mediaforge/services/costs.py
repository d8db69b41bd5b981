"""Credit prices per generation kind.

Three pricing shapes:

* fixed: every image operation costs the same;
* bucketed: video is priced by the smallest duration bucket that fits, and
  anything longer than the largest bucket is charged the largest bucket's
  price (a 30s request costs the same as a 10s one);
* linear: audio and lip-sync are charged per started unit of seconds.
"""
from __future__ import annotations

import math
from typing import Dict, Tuple

from mediaforge.errors import InvalidInput
from mediaforge.kinds import GenerationKind


IMAGE_COST = 5

# (max seconds, credits), ascending.
VIDEO_BUCKETS: Tuple[Tuple[int, int], ...] = (
    (5, 25),
    (8, 50),
    (10, 50),
)

# kind -> (unit seconds, credits per unit)
LINEAR_RATES: Dict[GenerationKind, Tuple[int, int]] = {
    GenerationKind.AUDIO_FROM_TEXT: (15, 1),
    GenerationKind.LIP_SYNC: (10, 20),
}

FIXED_KINDS = frozenset({
    GenerationKind.IMAGE_FROM_TEXT,
    GenerationKind.IMAGE_FROM_IMAGE,
    GenerationKind.IMAGE_UPSCALE,
    GenerationKind.IMAGE_REIMAGINE,
})
BUCKETED_KINDS = frozenset({GenerationKind.VIDEO_FROM_TEXT, GenerationKind.VIDEO_FROM_IMAGE})


def _require_duration(kind: GenerationKind, duration_seconds: float | None) -> float:
    if duration_seconds is None:
        raise InvalidInput(f'Duration required for {kind.value} generation')
    if duration_seconds <= 0:
        raise InvalidInput(f'Duration must be positive for {kind.value} generation')
    return float(duration_seconds)


def video_cost(duration_seconds: float) -> int:
    for limit, price in VIDEO_BUCKETS:
        if duration_seconds <= limit:
            return price
    return VIDEO_BUCKETS[-1][1]


def linear_cost(kind: GenerationKind, duration_seconds: float) -> int:
    unit_seconds, unit_price = LINEAR_RATES[kind]
    return math.ceil(duration_seconds / unit_seconds) * unit_price


def calculate_cost(kind: GenerationKind | str, duration_seconds: float | None = None) -> int:
    kind = GenerationKind.parse(kind)
    if kind in FIXED_KINDS:
        return IMAGE_COST
    if kind in BUCKETED_KINDS:
        return video_cost(_require_duration(kind, duration_seconds))
    if kind in LINEAR_RATES:
        return linear_cost(kind, _require_duration(kind, duration_seconds))
    raise InvalidInput(f'Unknown generation kind: {kind.value}')


def format_credit_cost(cost: int) -> str:
    return f"{cost} credit{'' if cost == 1 else 's'}"


def describe_cost(kind: GenerationKind | str) -> str:
    kind = GenerationKind.parse(kind)
    if kind in FIXED_KINDS:
        return f'{format_credit_cost(IMAGE_COST)} per image'
    if kind in BUCKETED_KINDS:
        parts = [f'{format_credit_cost(price)} (up to {limit}s)' for limit, price in VIDEO_BUCKETS]
        return ', '.join(parts)
    unit_seconds, unit_price = LINEAR_RATES[kind]
    return f'{format_credit_cost(unit_price)} per {unit_seconds} seconds'


def cost_table() -> Dict[str, str]:
    return {kind.value: describe_cost(kind) for kind in GenerationKind}

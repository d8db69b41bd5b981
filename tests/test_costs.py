import pytest

from mediaforge.errors import InvalidInput
from mediaforge.kinds import GenerationKind
from mediaforge.services.costs import (
    calculate_cost,
    cost_table,
    describe_cost,
    format_credit_cost,
)


@pytest.mark.parametrize(
    "kind",
    [
        GenerationKind.IMAGE_FROM_TEXT,
        GenerationKind.IMAGE_FROM_IMAGE,
        GenerationKind.IMAGE_UPSCALE,
        GenerationKind.IMAGE_REIMAGINE,
    ],
)
def test_image_kinds_cost_five(kind):
    assert calculate_cost(kind) == 5
    # Duration is ignored for fixed-price kinds.
    assert calculate_cost(kind, 30) == 5


@pytest.mark.parametrize(
    "duration,expected",
    [(1, 25), (5, 25), (5.5, 50), (6, 50), (8, 50), (9, 50), (10, 50)],
)
def test_video_buckets(duration, expected):
    assert calculate_cost(GenerationKind.VIDEO_FROM_TEXT, duration) == expected
    assert calculate_cost(GenerationKind.VIDEO_FROM_IMAGE, duration) == expected


def test_long_video_snaps_to_largest_bucket():
    assert calculate_cost(GenerationKind.VIDEO_FROM_TEXT, 30) == 50
    assert calculate_cost(GenerationKind.VIDEO_FROM_IMAGE, 120) == 50


def test_audio_is_charged_per_started_fifteen_seconds():
    assert calculate_cost(GenerationKind.AUDIO_FROM_TEXT, 0.4) == 1
    assert calculate_cost(GenerationKind.AUDIO_FROM_TEXT, 15) == 1
    assert calculate_cost(GenerationKind.AUDIO_FROM_TEXT, 16) == 2
    assert calculate_cost(GenerationKind.AUDIO_FROM_TEXT, 45) == 3


def test_lip_sync_is_charged_per_started_ten_seconds():
    assert calculate_cost(GenerationKind.LIP_SYNC, 10) == 20
    assert calculate_cost(GenerationKind.LIP_SYNC, 11) == 40


@pytest.mark.parametrize(
    "kind",
    [GenerationKind.VIDEO_FROM_TEXT, GenerationKind.AUDIO_FROM_TEXT, GenerationKind.LIP_SYNC],
)
def test_duration_priced_kinds_require_positive_duration(kind):
    with pytest.raises(InvalidInput):
        calculate_cost(kind)
    with pytest.raises(InvalidInput):
        calculate_cost(kind, 0)
    with pytest.raises(InvalidInput):
        calculate_cost(kind, -3)


def test_kind_accepts_string_and_rejects_unknown():
    assert calculate_cost("video-from-image", 6) == 50
    with pytest.raises(InvalidInput):
        calculate_cost("hologram", 5)


def test_formatting_helpers():
    assert format_credit_cost(1) == "1 credit"
    assert format_credit_cost(5) == "5 credits"
    assert describe_cost(GenerationKind.IMAGE_FROM_TEXT) == "5 credits per image"
    assert describe_cost(GenerationKind.AUDIO_FROM_TEXT) == "1 credit per 15 seconds"
    assert "25 credits (up to 5s)" in describe_cost(GenerationKind.VIDEO_FROM_TEXT)
    table = cost_table()
    assert set(table) == {kind.value for kind in GenerationKind}

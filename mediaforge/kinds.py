from __future__ import annotations

from enum import Enum


class GenerationKind(str, Enum):
    IMAGE_FROM_TEXT = 'image-from-text'
    IMAGE_FROM_IMAGE = 'image-from-image'
    VIDEO_FROM_TEXT = 'video-from-text'
    VIDEO_FROM_IMAGE = 'video-from-image'
    LIP_SYNC = 'lip-sync'
    AUDIO_FROM_TEXT = 'audio-from-text'
    IMAGE_UPSCALE = 'image-upscale'
    IMAGE_REIMAGINE = 'image-reimagine'

    @classmethod
    def parse(cls, value: 'str | GenerationKind') -> 'GenerationKind':
        from mediaforge.errors import InvalidInput

        try:
            return cls(value)
        except ValueError:
            raise InvalidInput(f'Unknown generation kind: {value}') from None


class GenerationStatus(str, Enum):
    PENDING = 'PENDING'
    PROCESSING = 'PROCESSING'
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'


class LedgerKind(str, Enum):
    DEBIT = 'DEBIT'
    CREDIT = 'CREDIT'
    REFUND = 'REFUND'
    PURCHASE = 'PURCHASE'


IMAGE_KINDS = frozenset({
    GenerationKind.IMAGE_FROM_TEXT,
    GenerationKind.IMAGE_FROM_IMAGE,
    GenerationKind.IMAGE_UPSCALE,
    GenerationKind.IMAGE_REIMAGINE,
})
VIDEO_KINDS = frozenset({GenerationKind.VIDEO_FROM_TEXT, GenerationKind.VIDEO_FROM_IMAGE})
TERMINAL_STATUSES = frozenset({GenerationStatus.COMPLETED, GenerationStatus.FAILED})


def asset_type_for(kind: GenerationKind) -> str:
    if kind in IMAGE_KINDS:
        return 'image'
    if kind == GenerationKind.AUDIO_FROM_TEXT:
        return 'audio'
    # Lip-sync renders a talking video.
    return 'video'


# Kinds that operate on a source image, whichever model serves them.
IMAGE_INPUT_KINDS = frozenset({
    GenerationKind.IMAGE_FROM_IMAGE,
    GenerationKind.VIDEO_FROM_IMAGE,
    GenerationKind.LIP_SYNC,
    GenerationKind.IMAGE_UPSCALE,
    GenerationKind.IMAGE_REIMAGINE,
})

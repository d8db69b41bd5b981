from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from mediaforge.errors import InvalidInput
from mediaforge.kinds import GenerationKind, IMAGE_INPUT_KINDS
from mediaforge.providers.base import SubmitRequest


@dataclass
class OptionValue:
    value: str
    label: str


@dataclass
class OptionSpec:
    key: str
    label: str
    values: List[OptionValue]
    default: str


ASPECT_RATIO = OptionSpec(
    key='aspect_ratio',
    label='Aspect ratio',
    default='SQUARE',
    values=[
        OptionValue('SQUARE', 'Square (1:1)'),
        OptionValue('PORTRAIT', 'Portrait (3:4)'),
        OptionValue('LANDSCAPE', 'Landscape (4:3)'),
        OptionValue('WIDE', 'Wide (16:9)'),
        OptionValue('ULTRAWIDE', 'Ultrawide (21:9)'),
    ],
)

VIDEO_ASPECT_RATIO = OptionSpec(
    key='aspect_ratio',
    label='Aspect ratio',
    default='WIDE',
    values=ASPECT_RATIO.values,
)


@dataclass
class ModelSpec:
    key: str
    provider: str
    model_id: str
    kinds: Tuple[GenerationKind, ...]
    display_name: str
    options: List[OptionSpec] = field(default_factory=list)
    min_duration: Optional[int] = None
    max_duration: Optional[int] = None
    default_duration: Optional[int] = None
    requires_image: bool = False
    requires_audio: bool = False
    requires_prompt: bool = True
    max_reference_images: int = 1
    default_prompt: str = ''

    def supports(self, kind: GenerationKind) -> bool:
        return kind in self.kinds

    def option_by_key(self, key: str) -> Optional[OptionSpec]:
        for opt in self.options:
            if opt.key == key:
                return opt
        return None

    def validate_options(self, options: Dict[str, Any]) -> Dict[str, Any]:
        validated: Dict[str, Any] = {}
        for opt in self.options:
            value = options.get(opt.key, opt.default)
            allowed = {v.value for v in opt.values}
            if value not in allowed:
                value = opt.default
            validated[opt.key] = value
        return validated

    def clamp_duration(self, duration: float | None) -> Optional[float]:
        """Fit a requested duration into the model's supported window.

        Models without a window keep the caller's value untouched.
        """
        if self.min_duration is None and self.max_duration is None:
            return duration
        if duration is None:
            return self.default_duration
        value = int(round(duration))
        if self.min_duration is not None and value < self.min_duration:
            value = self.min_duration
        if self.max_duration is not None and value > self.max_duration:
            value = self.max_duration
        return value

    def build_request(
        self,
        kind: GenerationKind,
        inputs: Dict[str, Any],
        duration_seconds: Optional[float],
    ) -> SubmitRequest:
        prompt = str(inputs.get('prompt') or inputs.get('text') or '').strip()
        if not prompt and self.requires_prompt:
            raise InvalidInput(f'Prompt is required for {kind.value}')
        if not prompt:
            prompt = self.default_prompt

        image_urls = _clean_urls(inputs.get('image_urls'))
        single = str(inputs.get('image_url') or '').strip()
        if single and single not in image_urls:
            image_urls.insert(0, single)
        if (self.requires_image or kind in IMAGE_INPUT_KINDS) and not image_urls:
            raise InvalidInput(f'An image URL is required for {kind.value}')
        if len(image_urls) > self.max_reference_images:
            image_urls = image_urls[: self.max_reference_images]

        audio_url = str(inputs.get('audio_url') or '').strip() or None
        if self.requires_audio and not audio_url:
            raise InvalidInput(f'An audio URL is required for {kind.value}')

        raw_options = dict(inputs.get('options') or {})
        for opt in self.options:
            if opt.key in inputs and opt.key not in raw_options:
                raw_options[opt.key] = inputs[opt.key]
        options = self.validate_options(raw_options)
        # Free-form provider parameters that are not enumerated options.
        for key in ('voice_id', 'language', 'emotion'):
            if inputs.get(key):
                options[key] = str(inputs[key])

        return SubmitRequest(
            model_id=self.model_id,
            prompt=prompt,
            image_urls=image_urls,
            audio_url=audio_url,
            duration_seconds=duration_seconds,
            options=options,
        )


def _clean_urls(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        value = [value]
    urls: List[str] = []
    for item in value:
        if isinstance(item, str) and item.strip():
            urls.append(item.strip())
    # Preserve order while removing duplicates.
    return list(dict.fromkeys(urls))

from __future__ import annotations

from typing import Any, Dict

from mediaforge.errors import ProviderRejected
from mediaforge.kinds import GenerationKind
from mediaforge.providers.base import ProviderAdapter, ProviderResult, ProviderStatus, SubmitRequest, clean_urls
from mediaforge.utils.logging import get_logger


logger = get_logger('wavespeed')


IMAGE_SIZES = {
    'SQUARE': '1024*1024',
    'PORTRAIT': '1024*1365',
    'LANDSCAPE': '1152*864',
    'WIDE': '1792*1024',
    'ULTRAWIDE': '2048*896',
}


class WavespeedAdapter(ProviderAdapter):
    """Wavespeed prediction API.

    ``SubmitRequest.model_id`` is the endpoint path below the API root, e.g.
    ``bytedance/seedream-v4``. Results are fetched from
    ``/predictions/{id}/result`` which answers 404 until the prediction is
    registered.
    """

    name = 'wavespeed'

    def build_body(self, kind: GenerationKind, request: SubmitRequest) -> Dict[str, Any]:
        options = request.options
        if kind == GenerationKind.IMAGE_FROM_TEXT:
            return {
                'enable_base64_output': False,
                'enable_sync_mode': False,
                'prompt': request.prompt,
                'size': IMAGE_SIZES.get(options.get('aspect_ratio', 'SQUARE'), IMAGE_SIZES['SQUARE']),
            }
        if kind == GenerationKind.IMAGE_FROM_IMAGE:
            return {
                'enable_base64_output': False,
                'enable_sync_mode': False,
                'images': list(request.image_urls),
                'prompt': request.prompt,
                'size': IMAGE_SIZES.get(options.get('aspect_ratio', 'SQUARE'), IMAGE_SIZES['SQUARE']),
            }
        if kind == GenerationKind.IMAGE_UPSCALE:
            return {
                'creativity': 2,
                'enable_base64_output': False,
                'enable_sync_mode': False,
                'image': request.first_image,
                'output_format': 'png',
                'target_resolution': '4k',
            }
        if kind == GenerationKind.IMAGE_REIMAGINE:
            return {
                'enable_base64_output': False,
                'enable_sync_mode': False,
                'image': request.first_image,
                'prompt': request.prompt,
            }
        if kind == GenerationKind.LIP_SYNC:
            return {
                'audio': request.audio_url,
                'image': request.first_image,
                'prompt': request.prompt,
                'resolution': '480p',
                'seed': -1,
            }
        if kind == GenerationKind.AUDIO_FROM_TEXT:
            return {
                'emotion': options.get('emotion', 'happy'),
                'enable_sync_mode': False,
                'english_normalization': False,
                'pitch': 0,
                'speed': 1,
                'text': request.prompt,
                'voice_id': options.get('voice_id', 'English_expressive_narrator'),
                'volume': 1,
            }
        if kind in (GenerationKind.VIDEO_FROM_TEXT, GenerationKind.VIDEO_FROM_IMAGE):
            body: Dict[str, Any] = {
                'duration': int(request.duration_seconds or 5),
                'enable_prompt_expansion': False,
                'prompt': request.prompt,
                'resolution': '720p',
                'seed': -1,
            }
            if kind == GenerationKind.VIDEO_FROM_IMAGE:
                body['image'] = request.first_image
            return body
        raise ProviderRejected(f'wavespeed does not serve {kind.value}', provider=self.name)

    async def submit(self, kind: GenerationKind, request: SubmitRequest) -> str:
        body = self.build_body(kind, request)
        path = '/' + request.model_id.strip('/')
        resp = await self._request('POST', path, json=body)
        self._raise_for_status(resp, 'submit')
        payload = self._json(resp, 'submit')
        handle = self.extract_handle(payload)
        if not handle:
            raise ProviderRejected('wavespeed response has no prediction id', provider=self.name)
        logger.info('wavespeed_submitted', model=request.model_id, kind=kind.value, handle=handle)
        return handle

    @staticmethod
    def extract_handle(payload: Dict[str, Any]) -> str:
        data = payload.get('data') if isinstance(payload.get('data'), dict) else {}
        for candidate in (data.get('id'), payload.get('id'), payload.get('request_id')):
            value = str(candidate or '').strip()
            if value:
                return value
        return ''

    async def check_status(self, handle: str, model: str | None = None) -> ProviderResult:
        resp = await self._request('GET', f'/predictions/{handle}/result')
        if resp.status_code == 404:
            return ProviderResult.pending()
        self._raise_for_status(resp, 'result')
        payload = self._json(resp, 'result')
        return self.parse_result(payload)

    @staticmethod
    def parse_result(payload: Dict[str, Any]) -> ProviderResult:
        data = payload.get('data') if isinstance(payload.get('data'), dict) else payload
        status = str(data.get('status') or '').strip().lower()
        if status == 'completed':
            return ProviderResult(ProviderStatus.SUCCEEDED, outputs=clean_urls(data.get('outputs')), raw=payload)
        if status == 'failed':
            error = str(data.get('error') or 'Generation failed').strip()
            return ProviderResult(ProviderStatus.FAILED, error=error, raw=payload)
        return ProviderResult.pending(payload)

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from mediaforge.errors import ProviderRejected, ProviderUnavailable
from mediaforge.kinds import GenerationKind
from mediaforge.providers.base import ProviderAdapter, ProviderResult, ProviderStatus, SubmitRequest, clean_urls
from mediaforge.utils.logging import get_logger


logger = get_logger('kie')


VEO_MODELS = frozenset({'veo3', 'veo3_fast'})

ASPECT_RATIOS = {
    'SQUARE': '1:1',
    'PORTRAIT': '3:4',
    'LANDSCAPE': '4:3',
    'WIDE': '16:9',
    'ULTRAWIDE': '21:9',
}
# Veo only renders landscape or portrait.
VEO_ASPECT_RATIOS = {
    'PORTRAIT': '9:16',
    'WIDE': '16:9',
    'LANDSCAPE': '16:9',
    'ULTRAWIDE': '16:9',
    'SQUARE': '16:9',
}


class KieAdapter(ProviderAdapter):
    """KIE: the Veo video API plus the generic market jobs API.

    KIE answers HTTP 200 for most errors and reports them in a body-level
    ``code``; both are checked.
    """

    name = 'kie'

    def __init__(self, api_key: str, base_url: str, callback_url: str = '', **kwargs: Any) -> None:
        super().__init__(api_key, base_url, **kwargs)
        self.callback_url = callback_url.strip()

    @staticmethod
    def is_veo(model: str | None) -> bool:
        return (model or '') in VEO_MODELS

    def _check_body_code(self, payload: Dict[str, Any], action: str) -> None:
        code = payload.get('code')
        if code in (None, 200, '200'):
            return
        message = f"kie {action} error {code}: {payload.get('msg') or payload.get('message') or ''}".strip()
        try:
            numeric = int(code)
        except (TypeError, ValueError):
            numeric = 0
        if numeric == 429 or numeric >= 500:
            raise ProviderUnavailable(message, provider=self.name, status_code=numeric)
        raise ProviderRejected(message, provider=self.name, status_code=numeric or None)

    async def submit(self, kind: GenerationKind, request: SubmitRequest) -> str:
        if self.is_veo(request.model_id):
            path, body = '/veo/generate', self.build_veo_body(request)
        else:
            path, body = '/jobs/createTask', self.build_task_body(request)
        if self.callback_url:
            body['callBackUrl'] = self.callback_url

        resp = await self._request('POST', path, json=body)
        self._raise_for_status(resp, 'submit')
        payload = self._json(resp, 'submit')
        self._check_body_code(payload, 'submit')
        task_id = self.extract_task_id(payload)
        if not task_id:
            raise ProviderRejected('kie response has no taskId', provider=self.name)
        logger.info('kie_submitted', model=request.model_id, kind=kind.value, task_id=task_id)
        return task_id

    def build_veo_body(self, request: SubmitRequest) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            'prompt': request.prompt,
            'model': request.model_id,
            'aspectRatio': VEO_ASPECT_RATIOS.get(request.options.get('aspect_ratio', 'WIDE'), '16:9'),
            'enableFallback': False,
            'enableTranslation': True,
        }
        if request.first_image:
            body['imageUrls'] = [request.first_image]
        return body

    def build_task_body(self, request: SubmitRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {'prompt': request.prompt}
        aspect = request.options.get('aspect_ratio')
        if aspect:
            payload['aspect_ratio'] = ASPECT_RATIOS.get(aspect, '1:1')
        for key in ('resolution', 'output_format'):
            if request.options.get(key):
                payload[key] = request.options[key]
        if request.image_urls:
            payload['image_input'] = list(request.image_urls)
        return {'model': request.model_id, 'input': payload}

    @staticmethod
    def extract_task_id(record: Dict[str, Any]) -> str:
        data = record.get('data') if isinstance(record.get('data'), dict) else {}
        candidates = [
            record.get('taskId'),
            record.get('task_id'),
            data.get('taskId'),
            data.get('task_id'),
        ]
        for candidate in candidates:
            value = str(candidate or '').strip()
            if value:
                return value
        return ''

    async def check_status(self, handle: str, model: str | None = None) -> ProviderResult:
        path = '/veo/record-info' if self.is_veo(model) else '/jobs/recordInfo'
        resp = await self._request('GET', path, params={'taskId': handle})
        self._raise_for_status(resp, 'status')
        record = self._json(resp, 'status')
        if record.get('code') not in (None, 200, '200'):
            # Record not readable yet; the next pass asks again.
            logger.info('kie_status_not_ready', task_id=handle, code=record.get('code'))
            return ProviderResult.pending(record)
        if self.is_veo(model):
            return self.parse_veo_record(record)
        return self.parse_task_record(record)

    @staticmethod
    def parse_veo_record(record: Dict[str, Any]) -> ProviderResult:
        data = record.get('data') if isinstance(record.get('data'), dict) else {}
        try:
            flag = int(data.get('successFlag'))
        except (TypeError, ValueError):
            return ProviderResult.pending(record)
        if flag == 1:
            response = data.get('response') if isinstance(data.get('response'), dict) else {}
            urls = clean_urls(response.get('resultUrls')) or clean_urls(data.get('resultUrls'))
            return ProviderResult(ProviderStatus.SUCCEEDED, outputs=list(dict.fromkeys(urls)), raw=record)
        if flag in (2, 3):
            error = str(data.get('errorMessage') or record.get('msg') or 'Video generation failed')
            return ProviderResult(ProviderStatus.FAILED, error=error, raw=record)
        return ProviderResult.pending(record)

    def parse_task_record(self, record: Dict[str, Any]) -> ProviderResult:
        state = self.get_status(record).strip().lower()
        if state in {'success', 'succeeded', 'completed'}:
            return ProviderResult(ProviderStatus.SUCCEEDED, outputs=self.parse_result_urls(record), raw=record)
        if state in {'fail', 'failed', 'error'}:
            fail_code, fail_msg = self.get_fail_info(record)
            error = str(fail_msg or 'Generation failed')
            if fail_code:
                error = f'{error} (code {fail_code})'
            return ProviderResult(ProviderStatus.FAILED, error=error, raw=record)
        return ProviderResult.pending(record)

    def parse_result_urls(self, record: Dict[str, Any]) -> List[str]:
        data = record.get('data') if isinstance(record.get('data'), dict) else {}
        urls: List[str] = []
        urls.extend(clean_urls(data.get('resultUrls')))
        urls.extend(clean_urls(data.get('result_urls')))

        result_json = data.get('resultJson') or data.get('result_json') or {}
        parsed: Dict[str, Any] = {}
        if isinstance(result_json, str):
            try:
                parsed = json.loads(result_json) if result_json else {}
            except ValueError as exc:
                logger.warning('failed_to_parse_result', error=str(exc))
        elif isinstance(result_json, dict):
            parsed = result_json
        if isinstance(parsed, dict):
            urls.extend(clean_urls(parsed.get('resultUrls')))
            urls.extend(clean_urls(parsed.get('result_urls')))
            urls.extend(clean_urls(parsed.get('urls')))

        # Preserve order while removing duplicates.
        return list(dict.fromkeys(urls))

    @staticmethod
    def get_status(record: Dict[str, Any]) -> str:
        data = record.get('data') if isinstance(record.get('data'), dict) else {}
        # recordInfo returns `state` (waiting/success/fail); some responses use `status`.
        return str(data.get('state') or data.get('status') or '')

    @staticmethod
    def get_fail_info(record: Dict[str, Any]) -> tuple[Optional[str], Optional[str]]:
        data = record.get('data') if isinstance(record.get('data'), dict) else {}
        fail_code = data.get('failCode') or data.get('fail_code')
        fail_msg = data.get('failMsg') or data.get('fail_msg') or data.get('error') or record.get('msg')
        return fail_code, fail_msg

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from mediaforge.errors import ProviderRejected, ProviderUnavailable
from mediaforge.kinds import GenerationKind
from mediaforge.utils.logging import get_logger


logger = get_logger('provider')


class ProviderStatus(str, Enum):
    PENDING = 'pending'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'


@dataclass
class SubmitRequest:
    model_id: str
    prompt: str = ''
    image_urls: List[str] = field(default_factory=list)
    audio_url: Optional[str] = None
    duration_seconds: Optional[float] = None
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def first_image(self) -> Optional[str]:
        return self.image_urls[0] if self.image_urls else None


@dataclass
class ProviderResult:
    status: ProviderStatus
    outputs: List[str] = field(default_factory=list)
    error: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def pending(cls, raw: Dict[str, Any] | None = None) -> 'ProviderResult':
        return cls(ProviderStatus.PENDING, raw=raw or {})


class ProviderAdapter:
    """One external generation service.

    Subclasses translate ``submit`` into the provider's request shape and map
    the provider's polling payload onto ``ProviderResult``. ``check_status``
    must stay free of side effects: it is called repeatedly and concurrently.
    """

    name = ''

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 60,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def submit(self, kind: GenerationKind, request: SubmitRequest) -> str:
        raise NotImplementedError

    async def check_status(self, handle: str, model: str | None = None) -> ProviderResult:
        raise NotImplementedError

    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'Bearer {self.api_key}',
            'Content-Type': 'application/json',
        }

    def _require_key(self) -> None:
        if not self.api_key:
            raise ProviderRejected(f'{self.name} API key is not configured', provider=self.name)

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        self._require_key()
        url = f'{self.base_url}{path}'
        try:
            resp = await self._client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable(f'{self.name} request timed out: {exc}', provider=self.name) from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailable(f'{self.name} request failed: {exc}', provider=self.name) from exc
        return resp

    def _raise_for_status(self, resp: httpx.Response, action: str) -> None:
        if resp.status_code < 400:
            return
        message = f'{self.name} {action} error {resp.status_code}: {resp.text[:500]}'
        logger.warning('provider_http_error', provider=self.name, action=action, status_code=resp.status_code)
        if resp.status_code == 429 or resp.status_code >= 500:
            raise ProviderUnavailable(message, provider=self.name, status_code=resp.status_code)
        raise ProviderRejected(message, provider=self.name, status_code=resp.status_code)

    def _json(self, resp: httpx.Response, action: str) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderUnavailable(
                f'{self.name} {action} returned a non-JSON body', provider=self.name, status_code=resp.status_code
            ) from exc
        if not isinstance(data, dict):
            raise ProviderUnavailable(f'{self.name} {action} returned an unexpected body', provider=self.name)
        return data


def clean_urls(value: Any) -> List[str]:
    urls: List[str] = []
    if isinstance(value, str):
        cleaned = value.strip()
        if cleaned:
            urls.append(cleaned)
    elif isinstance(value, list):
        for item in value:
            if isinstance(item, str):
                cleaned = item.strip()
                if cleaned:
                    urls.append(cleaned)
    return urls

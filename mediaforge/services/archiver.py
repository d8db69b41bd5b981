from __future__ import annotations

import asyncio
import io
import os
import uuid
from dataclasses import dataclass
from typing import Optional

import httpx
from PIL import Image, UnidentifiedImageError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediaforge.config import Settings, get_settings
from mediaforge.db.models import ArchivedAsset
from mediaforge.errors import ArchivalFailure
from mediaforge.kinds import GenerationKind, asset_type_for
from mediaforge.utils.logging import get_logger
from mediaforge.utils.time import utcnow


logger = get_logger('archiver')

EXTENSIONS = {'image': 'webp', 'video': 'mp4', 'audio': 'mp3'}
MIME_TYPES = {'image': 'image/webp', 'video': 'video/mp4', 'audio': 'audio/mpeg'}


@dataclass
class StoredFile:
    file_name: str
    file_size: int
    width: Optional[int] = None
    height: Optional[int] = None


def asset_title(kind: GenerationKind, prompt: str) -> str:
    stamp = utcnow().strftime('%Y-%m-%d %H:%M')
    if kind == GenerationKind.IMAGE_UPSCALE:
        return f'Upscaled Image - {stamp}'
    if kind == GenerationKind.IMAGE_REIMAGINE:
        return f'Reimagined Image - {stamp}'
    if kind == GenerationKind.LIP_SYNC:
        return f'Lipsync Video - {stamp}'
    if kind == GenerationKind.AUDIO_FROM_TEXT:
        text = (prompt or '').strip()
        if len(text) > 30:
            text = text[:30] + '...'
        return f'Audio: {text}'
    if asset_type_for(kind) == 'video':
        return f'Generated Video - {stamp}'
    return f'Generated Image - {stamp}'


def convert_to_webp(data: bytes, quality: int) -> tuple[bytes, int, int]:
    img = Image.open(io.BytesIO(data))
    if img.mode not in ('RGB', 'RGBA'):
        img = img.convert('RGBA' if 'A' in img.getbands() else 'RGB')
    output = io.BytesIO()
    img.save(output, format='WEBP', quality=quality)
    width, height = img.size
    return output.getvalue(), width, height


class ResultArchiver:
    """Copies provider outputs to permanent storage.

    Provider URLs expire, so every completed output is downloaded once and
    recorded as an ``ArchivedAsset``. ``archive`` is idempotent per
    ``(generation_id, original_url)``.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.sessionmaker = sessionmaker
        self.settings = settings or get_settings()
        self._client = client or httpx.AsyncClient(follow_redirects=True)

    async def close(self) -> None:
        await self._client.aclose()

    async def _existing(self, session: AsyncSession, generation_id: int, url: str) -> Optional[int]:
        result = await session.execute(
            select(ArchivedAsset.id).where(
                ArchivedAsset.generation_id == generation_id,
                ArchivedAsset.original_url == url,
            )
        )
        return result.scalar_one_or_none()

    def _directory(self, asset_type: str) -> str:
        path = os.path.join(self.settings.media_storage_path, f'{asset_type}s')
        os.makedirs(path, exist_ok=True)
        return path

    @staticmethod
    def _file_name(asset_type: str) -> str:
        stamp = utcnow().strftime('%Y%m%d%H%M%S')
        return f'{stamp}_{uuid.uuid4().hex}.{EXTENSIONS[asset_type]}'

    async def archive(
        self,
        user_id: int,
        generation_id: int,
        output_url: str,
        kind: GenerationKind | str,
        prompt: str = '',
        duration_seconds: int | None = None,
    ) -> int:
        kind = GenerationKind.parse(kind)
        async with self.sessionmaker() as session:
            existing = await self._existing(session, generation_id, output_url)
        if existing is not None:
            return existing

        asset_type = asset_type_for(kind)
        try:
            if asset_type == 'video':
                stored = await self._store_stream(output_url, asset_type)
            else:
                stored = await self._store_download(output_url, asset_type)
        except httpx.HTTPError as exc:
            logger.warning('archive_download_failed', generation_id=generation_id, url=output_url, error=str(exc))
            raise ArchivalFailure(f'Failed to download {output_url}: {exc}') from exc
        except (OSError, UnidentifiedImageError) as exc:
            logger.warning('archive_store_failed', generation_id=generation_id, url=output_url, error=str(exc))
            raise ArchivalFailure(f'Failed to store {output_url}: {exc}') from exc

        prefix = self.settings.media_public_prefix.rstrip('/')
        asset = ArchivedAsset(
            user_id=user_id,
            generation_id=generation_id,
            asset_type=asset_type,
            title=asset_title(kind, prompt),
            prompt=prompt or '',
            original_url=output_url,
            local_path=f'{prefix}/{asset_type}s/{stored.file_name}',
            file_name=stored.file_name,
            file_size=stored.file_size,
            width=stored.width,
            height=stored.height,
            duration_seconds=duration_seconds if asset_type != 'image' else None,
            mime_type=MIME_TYPES[asset_type],
            created_at=utcnow(),
        )
        async with self.sessionmaker() as session:
            session.add(asset)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                self._remove(asset_type, stored.file_name)
                existing = await self._existing(session, generation_id, output_url)
                if existing is None:
                    raise ArchivalFailure(f'Failed to record asset for {output_url}')
                logger.info('archive_duplicate_resolved', generation_id=generation_id, asset_id=existing)
                return existing
        logger.info(
            'asset_archived',
            generation_id=generation_id,
            asset_id=asset.id,
            asset_type=asset_type,
            file_size=stored.file_size,
        )
        return asset.id

    async def _store_download(self, url: str, asset_type: str) -> StoredFile:
        resp = await self._client.get(url, timeout=self.settings.archive_image_timeout_seconds)
        resp.raise_for_status()
        data = resp.content
        width = height = None
        if asset_type == 'image':
            data, width, height = await asyncio.to_thread(
                convert_to_webp, data, self.settings.archive_image_quality
            )
        file_name = self._file_name(asset_type)
        path = os.path.join(self._directory(asset_type), file_name)
        with open(path, 'wb') as fh:
            fh.write(data)
        return StoredFile(file_name, len(data), width, height)

    async def _store_stream(self, url: str, asset_type: str) -> StoredFile:
        file_name = self._file_name(asset_type)
        path = os.path.join(self._directory(asset_type), file_name)
        size = 0
        try:
            async with self._client.stream('GET', url, timeout=self.settings.archive_video_timeout_seconds) as resp:
                resp.raise_for_status()
                with open(path, 'wb') as fh:
                    async for chunk in resp.aiter_bytes():
                        fh.write(chunk)
                        size += len(chunk)
        except (httpx.HTTPError, OSError):
            if os.path.exists(path):
                os.remove(path)
            raise
        return StoredFile(file_name, size)

    def _remove(self, asset_type: str, file_name: str) -> None:
        path = os.path.join(self.settings.media_storage_path, f'{asset_type}s', file_name)
        try:
            os.remove(path)
        except OSError as exc:
            logger.warning('archive_cleanup_failed', path=path, error=str(exc))

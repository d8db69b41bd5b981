import io
import os
from typing import Any, Dict, List

import httpx
import pytest
import pytest_asyncio
from PIL import Image

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("API_TOKENS", "test-token")

from mediaforge.config import Settings  # noqa: E402
from mediaforge.db.base import Base  # noqa: E402
from mediaforge.db.session import create_engine, create_sessionmaker  # noqa: E402
from mediaforge.providers.base import ProviderAdapter, ProviderResult  # noqa: E402
from mediaforge.services.archiver import ResultArchiver  # noqa: E402
from mediaforge.services.ledger import LedgerService  # noqa: E402
from mediaforge.services.settlement import SettlementEngine  # noqa: E402


def png_bytes(size=(8, 6), color="red") -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


PNG_BYTES = png_bytes()
MP4_BYTES = b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 2048
MP3_BYTES = b"ID3" + b"\x00" * 512


class FakeAdapter(ProviderAdapter):
    """In-memory provider: scripted submit errors and status results."""

    def __init__(self, name: str = "wavespeed") -> None:
        self.name = name
        self.submitted: List[Any] = []
        self.submit_errors: List[Exception] = []
        self.results: Dict[str, Any] = {}
        self.checks: List[str] = []
        self.on_check = None

    async def submit(self, kind, request):
        self.submitted.append((kind, request))
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        return f"{self.name}-{len(self.submitted)}"

    async def check_status(self, handle, model=None):
        self.checks.append(handle)
        if self.on_check is not None:
            await self.on_check(handle)
        result = self.results.get(handle, ProviderResult.pending())
        if isinstance(result, list):
            result = result.pop(0) if len(result) > 1 else result[0]
        if isinstance(result, Exception):
            raise result
        return result

    async def close(self) -> None:
        return None


def media_handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path.endswith(".png"):
        return httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png"})
    if path.endswith(".mp4"):
        return httpx.Response(200, content=MP4_BYTES, headers={"content-type": "video/mp4"})
    if path.endswith(".mp3"):
        return httpx.Response(200, content=MP3_BYTES, headers={"content-type": "audio/mpeg"})
    if path.endswith(".txt"):
        return httpx.Response(200, content=b"definitely not an image")
    return httpx.Response(404, text="gone")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'mediaforge.db'}",
        MEDIA_STORAGE_PATH=str(tmp_path / "media"),
        SUBMIT_RETRY_DELAY_SECONDS=0,
        POLL_INTERVAL_SECONDS=0,
        API_TOKENS="test-token",
        WAVESPEED_API_KEY="ws-key",
        KIE_API_KEY="kie-key",
        _env_file=None,
    )


@pytest_asyncio.fixture
async def sessionmaker(settings):
    engine = create_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield create_sessionmaker(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def media_client():
    client = httpx.AsyncClient(transport=httpx.MockTransport(media_handler))
    yield client
    await client.aclose()


@pytest.fixture
def archiver(sessionmaker, settings, media_client):
    return ResultArchiver(sessionmaker, settings, client=media_client)


@pytest.fixture
def wavespeed():
    return FakeAdapter("wavespeed")


@pytest.fixture
def kie():
    return FakeAdapter("kie")


@pytest.fixture
def engine(sessionmaker, wavespeed, kie, archiver, settings):
    return SettlementEngine(sessionmaker, {"wavespeed": wavespeed, "kie": kie}, archiver, settings)


@pytest.fixture
def make_user(sessionmaker):
    counter = {"n": 0}

    async def _make(balance: int = 0) -> int:
        counter["n"] += 1
        async with sessionmaker() as session:
            ledger = LedgerService(session)
            user = await ledger.ensure_user(f"user-{counter['n']}", f"user{counter['n']}@example.com")
            if balance:
                await ledger.credit(user.id, balance, "Initial credits")
            await session.commit()
            return user.id

    return _make

"""
Pytest configuration and shared fixtures.
"""

import fnmatch
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from cast_magnet_link.link_cache import LinkCache
from cast_magnet_link.persistence import JsonFileLinkStore
from cast_magnet_link.rd_client import DownloadItem, TorrentFile, TorrentInfo


# ============================================================================
# Time
# ============================================================================

class FakeClock:
    """Settable clock for cache and composer tests."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def start_time():
    return datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(start_time):
    return FakeClock(start_time)


# ============================================================================
# Link Cache Fixtures
# ============================================================================

@pytest.fixture
def cache_path(tmp_path):
    return tmp_path / "strm-cache.json"


@pytest.fixture
def json_store(cache_path):
    return JsonFileLinkStore(str(cache_path))


@pytest.fixture
def link_cache(json_store, clock):
    return LinkCache(json_store, clock=clock)


class FakeRedis:
    """In-memory stand-in for the parts of redis.asyncio.Redis the link store uses."""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.closed = False

    async def ping(self):
        return True

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def mget(self, keys):
        return [self.data.get(k) for k in keys]

    async def scan_iter(self, match=None):
        for key in list(self.data):
            if match is None or fnmatch.fnmatch(key, match):
                yield key

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_redis():
    return FakeRedis()


# ============================================================================
# Upstream Fixtures
# ============================================================================

@pytest.fixture
def mock_response():
    """Create a factory for mock aiohttp responses."""
    def _create_response(json_data=None, status=200, reason="OK", text=""):
        response = AsyncMock()
        response.status = status
        response.reason = reason
        response.json = AsyncMock(return_value=json_data)
        response.text = AsyncMock(return_value=text)
        return response
    return _create_response


@pytest.fixture
def mock_session():
    """Mock aiohttp session whose request/get/post return async context managers."""
    session = AsyncMock()
    session.closed = False

    def _respond(response, method="request"):
        setattr(
            session,
            method,
            MagicMock(return_value=AsyncMock(__aenter__=AsyncMock(return_value=response))),
        )
        return session

    session.respond = _respond
    return session


def _make_info(
    torrent_id="TID1",
    status="downloaded",
    files=None,
    links=None,
    filename="Movie.2024.1080p",
    bytes=4_000_000_000,
    hash="abcdef0123456789abcdef0123456789abcdef01",
) -> TorrentInfo:
    return TorrentInfo(
        id=torrent_id,
        status=status,
        hash=hash,
        filename=filename,
        bytes=bytes,
        files=files or [],
        links=links if links is not None else [],
    )


def _make_file(id, path, size, selected=False) -> TorrentFile:
    return TorrentFile(id=id, path=path, bytes=size, selected=selected)


def _make_download(id, filename, link_id, generated, download=None, filesize=1_000_000_000) -> DownloadItem:
    return DownloadItem(
        id=id,
        filename=filename,
        link=f"https://real-debrid.com/d/{link_id}",
        download=download or f"https://cdn.example.net/dl/{link_id}/{filename}",
        filesize=filesize,
        generated=generated,
    )


@pytest.fixture
def mock_rd_client():
    """AsyncMock Real-Debrid client with no upstream state."""
    client = MagicMock()
    client.add_torrent = AsyncMock(return_value="TID1")
    client.get_torrent_info = AsyncMock()
    client.select_files = AsyncMock(return_value=None)
    client.delete_torrent = AsyncMock(return_value=None)
    client.unrestrict_link = AsyncMock(return_value="https://cdn.example.net/dl/fresh")
    client.get_downloads_list = AsyncMock(return_value=[])
    client.close = AsyncMock()
    return client


@pytest.fixture
def mock_casted_client():
    client = MagicMock()
    client.list_casted = AsyncMock(return_value=[])
    client.delete_casted = AsyncMock(return_value=None)
    client.close = AsyncMock()
    return client


@pytest.fixture
def make_info():
    return _make_info


@pytest.fixture
def make_file():
    return _make_file


@pytest.fixture
def make_download():
    return _make_download

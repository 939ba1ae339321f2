"""
Persistence Layer for Cast Magnet Link
Link store backends for the streaming-link cache: a single-writer JSON file,
SQLite, and Redis with native key expiry.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

import aiofiles
import aiosqlite
from redis.asyncio import Redis

from .exceptions import ConfigurationError, PersistenceError
from .utils import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = timedelta(days=7)


@dataclass
class LinkEntry:
    """Cached streaming link, keyed by the upstream link id."""
    link_id: str
    original_link: str
    unrestricted_url: str
    generated_at: datetime
    filename: str
    manually_added: bool = False
    filesize: int = 0

    def to_dict(self) -> dict:
        return {
            "originalLink": self.original_link,
            "unrestrictedUrl": self.unrestricted_url,
            "generatedAt": format_timestamp(self.generated_at),
            "filename": self.filename,
            "manuallyAdded": self.manually_added,
            "filesize": self.filesize,
        }

    @classmethod
    def from_dict(cls, link_id: str, data: dict) -> "LinkEntry":
        generated_at = parse_timestamp(data.get("generatedAt"))
        if generated_at is None:
            raise ValueError(f"Entry {link_id} has no valid generatedAt")
        return cls(
            link_id=link_id,
            original_link=data.get("originalLink", ""),
            unrestricted_url=data.get("unrestrictedUrl", ""),
            generated_at=generated_at,
            filename=data.get("filename", ""),
            manually_added=bool(data.get("manuallyAdded", False)),
            filesize=int(data.get("filesize") or 0),
        )


class LinkStore(ABC):
    """Storage backend for link entries. Policy lives in LinkCache."""

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def get(self, link_id: str) -> Optional[LinkEntry]:
        """Get an entry by link id."""

    @abstractmethod
    async def save(self, entry: LinkEntry) -> None:
        """Insert or replace an entry."""

    @abstractmethod
    async def get_all(self) -> List[LinkEntry]:
        """Get every stored entry."""

    @abstractmethod
    async def prune(self, cutoff: datetime) -> int:
        """Delete entries generated at or before cutoff. Returns count deleted."""

    async def get_stats(self) -> Dict:
        entries = await self.get_all()
        return {
            "backend": self.backend_name,
            "entries": len(entries),
            "manual_entries": sum(1 for e in entries if e.manually_added),
        }

    @property
    def backend_name(self) -> str:
        return type(self).__name__


class JsonFileLinkStore(LinkStore):
    """
    Whole-file JSON store for single-process deployments.
    The file is loaded once and rewritten on every change; a missing file is an empty cache.
    """

    backend_name = "json"

    def __init__(self, path: str):
        self.path = Path(path)
        self._entries: Optional[Dict[str, LinkEntry]] = None
        self._load_lock = asyncio.Lock()

    async def _load(self) -> Dict[str, LinkEntry]:
        async with self._load_lock:
            if self._entries is not None:
                return self._entries

            try:
                async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                    raw = await f.read()
            except FileNotFoundError:
                logger.info(f"No link cache at {self.path}, starting empty")
                self._entries = {}
                return self._entries
            except OSError as e:
                raise PersistenceError(f"Failed to read link cache {self.path}", str(e)) from e

            try:
                data = json.loads(raw) if raw.strip() else {}
            except ValueError as e:
                raise PersistenceError(f"Link cache {self.path} is not valid JSON", str(e)) from e

            entries = {}
            for link_id, item in data.items():
                try:
                    entries[link_id] = LinkEntry.from_dict(link_id, item)
                except (TypeError, ValueError, AttributeError) as e:
                    logger.warning(f"Skipping unreadable cache entry {link_id}: {e}")

            self._entries = entries
            logger.info(f"Loaded {len(entries)} cached links from {self.path}")
            return self._entries

    async def _flush(self, entries: Dict[str, LinkEntry]) -> None:
        payload = json.dumps(
            {link_id: entry.to_dict() for link_id, entry in entries.items()},
            indent=2,
        )
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(self.path, "w", encoding="utf-8") as f:
                await f.write(payload)
        except OSError as e:
            raise PersistenceError(f"Failed to write link cache {self.path}", str(e)) from e

    async def initialize(self) -> None:
        await self._load()

    async def get(self, link_id: str) -> Optional[LinkEntry]:
        entries = await self._load()
        return entries.get(link_id)

    async def save(self, entry: LinkEntry) -> None:
        entries = await self._load()
        updated = dict(entries)
        updated[entry.link_id] = entry
        await self._flush(updated)
        self._entries = updated

    async def get_all(self) -> List[LinkEntry]:
        entries = await self._load()
        return list(entries.values())

    async def prune(self, cutoff: datetime) -> int:
        entries = await self._load()
        expired = [link_id for link_id, e in entries.items() if e.generated_at <= cutoff]
        if expired:
            remaining = {k: v for k, v in entries.items() if k not in expired}
            await self._flush(remaining)
            self._entries = remaining
            logger.debug(f"Pruned {len(expired)} expired links")
        return len(expired)


SCHEMA = """
CREATE TABLE IF NOT EXISTS link_cache (
    link_id TEXT PRIMARY KEY,
    original_link TEXT NOT NULL,
    unrestricted_url TEXT NOT NULL,
    generated_at TEXT NOT NULL,
    generated_ts REAL NOT NULL,
    filename TEXT DEFAULT '',
    manually_added INTEGER DEFAULT 0,
    filesize INTEGER DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_link_cache_generated ON link_cache(generated_ts);
"""


class SqliteLinkStore(LinkStore):
    """SQLite store; safe for several processes sharing one database file."""

    backend_name = "sqlite"

    def __init__(self, db_path: str = "strm-cache.db"):
        self.db_path = db_path
        self._lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        """Create database and tables if they don't exist."""
        async with self._lock:
            if self._initialized:
                return

            db_dir = Path(self.db_path).parent
            if db_dir and str(db_dir) != ".":
                db_dir.mkdir(parents=True, exist_ok=True)

            async with aiosqlite.connect(self.db_path) as db:
                await db.executescript(SCHEMA)
                await db.commit()

            self._initialized = True
            logger.info(f"Link store initialized: {self.db_path}")

    async def close(self) -> None:
        self._initialized = False

    @staticmethod
    def _row_to_entry(row) -> LinkEntry:
        return LinkEntry(
            link_id=row["link_id"],
            original_link=row["original_link"],
            unrestricted_url=row["unrestricted_url"],
            generated_at=parse_timestamp(row["generated_at"]),
            filename=row["filename"],
            manually_added=bool(row["manually_added"]),
            filesize=row["filesize"],
        )

    async def get(self, link_id: str) -> Optional[LinkEntry]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM link_cache WHERE link_id = ?", (link_id,)
            ) as cursor:
                row = await cursor.fetchone()
                return self._row_to_entry(row) if row else None

    async def save(self, entry: LinkEntry) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                INSERT OR REPLACE INTO link_cache
                (link_id, original_link, unrestricted_url, generated_at, generated_ts,
                 filename, manually_added, filesize)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.link_id, entry.original_link, entry.unrestricted_url,
                format_timestamp(entry.generated_at), entry.generated_at.timestamp(),
                entry.filename, int(entry.manually_added), entry.filesize,
            ))
            await db.commit()

    async def get_all(self) -> List[LinkEntry]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM link_cache ORDER BY generated_ts DESC"
            ) as cursor:
                rows = await cursor.fetchall()
                return [self._row_to_entry(row) for row in rows]

    async def prune(self, cutoff: datetime) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM link_cache WHERE generated_ts <= ?", (cutoff.timestamp(),)
            )
            await db.commit()
            return cursor.rowcount


class RedisLinkStore(LinkStore):
    """
    Redis store for distributed deployments.
    Every write sets the key TTL to the retention window, so expiry is native
    and prune() has nothing to do.
    """

    backend_name = "redis"

    def __init__(
        self,
        redis: Redis,
        prefix: str = "strm:",
        retention: timedelta = DEFAULT_RETENTION,
    ):
        self._redis = redis
        self.prefix = prefix
        self.retention = retention

    @classmethod
    def from_url(cls, url: str, prefix: str = "strm:", retention: timedelta = DEFAULT_RETENTION) -> "RedisLinkStore":
        return cls(Redis.from_url(url, decode_responses=True), prefix=prefix, retention=retention)

    def _key(self, link_id: str) -> str:
        return f"{self.prefix}{link_id}"

    async def initialize(self) -> None:
        await self._redis.ping()
        logger.info(f"Link store connected to Redis (prefix={self.prefix})")

    async def close(self) -> None:
        await self._redis.aclose()

    def _decode(self, key: str, raw) -> Optional[LinkEntry]:
        if raw is None:
            return None
        link_id = key[len(self.prefix):]
        try:
            return LinkEntry.from_dict(link_id, json.loads(raw))
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping unreadable cache entry {link_id}: {e}")
            return None

    async def get(self, link_id: str) -> Optional[LinkEntry]:
        key = self._key(link_id)
        return self._decode(key, await self._redis.get(key))

    async def save(self, entry: LinkEntry) -> None:
        await self._redis.set(
            self._key(entry.link_id),
            json.dumps(entry.to_dict()),
            ex=int(self.retention.total_seconds()),
        )

    async def get_all(self) -> List[LinkEntry]:
        keys = [key async for key in self._redis.scan_iter(match=f"{self.prefix}*")]
        if not keys:
            return []
        values = await self._redis.mget(keys)
        entries = [self._decode(key, raw) for key, raw in zip(keys, values)]
        return [e for e in entries if e is not None]

    async def prune(self, cutoff: datetime) -> int:
        return 0


def create_link_store(
    backend: str,
    data_dir: str = "./data",
    cache_file: str = "strm-cache.json",
    sqlite_file: str = "strm-cache.db",
    redis_url: str = "redis://localhost:6379/0",
    redis_prefix: str = "strm:",
    retention: timedelta = DEFAULT_RETENTION,
) -> LinkStore:
    """Build the configured link store backend."""
    backend = (backend or "").lower()
    if backend == "json":
        return JsonFileLinkStore(str(Path(data_dir) / cache_file))
    if backend == "sqlite":
        return SqliteLinkStore(str(Path(data_dir) / sqlite_file))
    if backend == "redis":
        return RedisLinkStore.from_url(redis_url, prefix=redis_prefix, retention=retention)
    raise ConfigurationError(f"Unknown storage backend: {backend!r}", "expected json, sqlite or redis")

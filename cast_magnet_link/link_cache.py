"""
Streaming-link cache.
Applies retention, freshness and manual-precedence rules on top of a LinkStore.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .logging_config import LogContext
from .persistence import DEFAULT_RETENTION, LinkEntry, LinkStore
from .utils import utc_now

logger = logging.getLogger(__name__)

FRESHNESS_WINDOW = timedelta(hours=48)


class LinkCache:
    """
    Map of link id to cached streaming URL.

    - Entries are purged once their age reaches the retention window.
    - An entry is stale when it is strictly older than the freshness window.
    - A passive write never replaces a live manual entry; it only bumps its generated_at.
    - Every read-modify-write cycle runs under one lock per process.
    """

    def __init__(
        self,
        store: LinkStore,
        retention: timedelta = DEFAULT_RETENTION,
        freshness: timedelta = FRESHNESS_WINDOW,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.retention = retention
        self.freshness = freshness
        self._clock = clock
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        await self.store.initialize()

    async def close(self) -> None:
        await self.store.close()

    def now(self) -> datetime:
        return self._clock()

    def is_expired(self, entry: LinkEntry, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        return now - entry.generated_at >= self.retention

    def is_stale(self, entry: LinkEntry, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        return now - entry.generated_at > self.freshness

    async def get(self, link_id: str) -> Optional[LinkEntry]:
        """Get a live entry. Entries past retention read as absent."""
        entry = await self.store.get(link_id)
        if entry is None or self.is_expired(entry):
            return None
        return entry

    async def put(
        self,
        link_id: str,
        original_link: str,
        unrestricted_url: str,
        filename: str,
        manually_added: bool = False,
        filesize: int = 0,
    ) -> LinkEntry:
        """
        Write an entry stamped with the current time.

        A passive write (manually_added=False) over a live manual entry keeps the
        manual entry's URL, filename and flag and only refreshes its timestamp.
        """
        async with self._lock:
            now = self._clock()
            existing = await self.store.get(link_id)

            if (
                not manually_added
                and existing is not None
                and existing.manually_added
                and not self.is_expired(existing, now)
            ):
                entry = replace(existing, generated_at=now)
                logger.debug(f"Kept manual entry {link_id}, refreshed timestamp")
            else:
                entry = LinkEntry(
                    link_id=link_id,
                    original_link=original_link,
                    unrestricted_url=unrestricted_url,
                    generated_at=now,
                    filename=filename,
                    manually_added=manually_added,
                    filesize=filesize or 0,
                )

            await self.store.save(entry)
            await self.store.prune(now - self.retention)

        with LogContext(link_id=link_id, media_name=filename):
            logger.debug(f"Cached link {link_id} (manual={entry.manually_added})")
        return entry

    async def update_url(self, link_id: str, new_url: str) -> Optional[LinkEntry]:
        """Replace the URL of an existing entry and re-stamp it. A miss is a no-op."""
        async with self._lock:
            now = self._clock()
            entry = await self.store.get(link_id)
            if entry is None or self.is_expired(entry, now):
                logger.debug(f"No cached entry for {link_id}, URL update skipped")
                return None

            entry = replace(entry, unrestricted_url=new_url, generated_at=now)
            await self.store.save(entry)
            await self.store.prune(now - self.retention)

        with LogContext(link_id=link_id):
            logger.info(f"Refreshed cached URL for {link_id}")
        return entry

    async def list_all(self) -> List[LinkEntry]:
        """All live entries, newest first."""
        async with self._lock:
            now = self._clock()
            await self.store.prune(now - self.retention)
            entries = await self.store.get_all()

        live = [e for e in entries if not self.is_expired(e, now)]
        live.sort(key=lambda e: e.generated_at, reverse=True)
        return live

    async def get_stats(self) -> Dict:
        stats = await self.store.get_stats()
        stats["retention_hours"] = self.retention.total_seconds() / 3600
        stats["freshness_hours"] = self.freshness.total_seconds() / 3600
        return stats

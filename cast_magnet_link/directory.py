"""
Virtual Directory Composer
Builds the .strm directories served over WebDAV from the Real-Debrid download
history, the DMM casted links and the link cache.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import quote, urlsplit, urlunsplit

from .dmm_client import CastedLink, CastedLinksClient
from .exceptions import EntryNotFound, MalformedIdentifier, PersistenceError, UpstreamUnavailable
from .link_cache import LinkCache
from .logging_config import LogContext, log_operation
from .pipeline import TorrentResolutionPipeline
from .rd_client import DownloadItem, RealDebridClient, extract_link_id
from .utils import utc_now

logger = logging.getLogger(__name__)

STRM_CONTENT_TYPE = "text/plain; charset=utf-8"

OBSERVED_FETCH_LIMIT = 20
OBSERVED_LISTING_CAP = 10
LIBRARY_OBSERVE_LIMIT = 3
CASTED_WINDOW = timedelta(days=7)

CASTED_FILENAME_PATTERN = re.compile(r"\{hash-([^}]+)\}\{imdb-([^}]+)\}\.strm$")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class DirectoryKind(str, Enum):
    DOWNLOADS = "downloads"
    DMMCAST = "dmmcast"
    LIBRARY = "library"


@dataclass
class VirtualFileEntry:
    """A synthetic .strm file; its content is the URL a player should open."""
    name: str
    content: str
    modified: datetime
    content_type: str = STRM_CONTENT_TYPE
    original_filename: str = ""
    filesize: int = 0
    hash: Optional[str] = None
    imdb_id: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.content.encode("utf-8"))


def casted_filename(title: str, hash: str, imdb_id: str) -> str:
    return f"{title}{{hash-{hash}}}{{imdb-{imdb_id}}}.strm"


def parse_casted_filename(filename: str) -> Tuple[str, str]:
    """Decode (hash, imdb_id) from a casted filename or raise MalformedIdentifier."""
    match = CASTED_FILENAME_PATTERN.search(filename or "")
    if not match:
        raise MalformedIdentifier(filename)
    return match.group(1), match.group(2)


def materialize(entries: List[VirtualFileEntry]) -> List[VirtualFileEntry]:
    """Deduplicate by filename, keeping the most recently modified instance in place."""
    by_name: Dict[str, VirtualFileEntry] = {}
    for entry in entries:
        current = by_name.get(entry.name)
        if current is None or entry.modified > current.modified:
            by_name[entry.name] = entry
    return list(by_name.values())


def recent_unique_downloads(downloads: List[DownloadItem], cap: int) -> List[DownloadItem]:
    """Newest first, first occurrence of each id wins, capped."""
    ordered = sorted(downloads, key=lambda d: d.generated or _EPOCH, reverse=True)
    seen = set()
    unique = []
    for item in ordered:
        if item.id in seen:
            continue
        seen.add(item.id)
        unique.append(item)
        if len(unique) >= cap:
            break
    return unique


class VirtualDirectoryComposer:
    """
    Recomputes each virtual directory on every listing and file fetch.

    The downloads and library listings also record what they observe in the
    link cache as passive entries.
    """

    def __init__(
        self,
        rd_client: RealDebridClient,
        casted_client: CastedLinksClient,
        link_cache: LinkCache,
        pipeline: TorrentResolutionPipeline,
        public_url: str = "http://localhost:3000",
        webdav_username: str = "",
        webdav_password: str = "",
        clock: Callable[[], datetime] = utc_now,
    ):
        self.rd_client = rd_client
        self.casted_client = casted_client
        self.link_cache = link_cache
        self.pipeline = pipeline
        self.public_url = public_url
        self.webdav_username = webdav_username
        self.webdav_password = webdav_password
        self._clock = clock

    async def _observe(self, downloads: List[DownloadItem]) -> None:
        for item in downloads:
            link_id = extract_link_id(item.link)
            if not link_id:
                continue
            await self.link_cache.put(
                link_id,
                item.link,
                item.download,
                item.filename,
                manually_added=False,
                filesize=item.filesize,
            )

    async def recent_downloads(self, limit: int = OBSERVED_LISTING_CAP) -> List[DownloadItem]:
        """Most recent unique downloads; each one is recorded passively in the cache."""
        downloads = await self.rd_client.get_downloads_list(OBSERVED_FETCH_LIMIT)
        unique = recent_unique_downloads(downloads, limit)
        await self._observe(unique)
        return unique

    async def recent_casted(self) -> List[CastedLink]:
        """Casted links updated within the window, newest first."""
        links = await self.casted_client.list_casted()
        cutoff = self._clock() - CASTED_WINDOW
        recent = [link for link in links if link.updated_at and link.updated_at >= cutoff]
        recent.sort(key=lambda link: link.updated_at, reverse=True)
        return recent

    def _strm_url(self, link_id: str) -> str:
        """Public /strm/ URL for a link id, with the WebDAV credentials embedded."""
        parts = urlsplit(self.public_url)
        host = parts.hostname or ""
        if parts.port:
            host = f"{host}:{parts.port}"
        if self.webdav_username:
            credentials = quote(self.webdav_username, safe="")
            if self.webdav_password:
                credentials += ":" + quote(self.webdav_password, safe="")
            host = f"{credentials}@{host}"
        return urlunsplit((parts.scheme, host, f"/strm/{link_id}", "", ""))

    async def _downloads_entries(self) -> List[VirtualFileEntry]:
        downloads = await self.recent_downloads(OBSERVED_LISTING_CAP)
        return [
            VirtualFileEntry(
                name=f"{item.filename}.strm",
                content=item.download,
                modified=item.generated or self._clock(),
                original_filename=item.filename,
                filesize=item.filesize,
            )
            for item in downloads
        ]

    async def _dmmcast_entries(self) -> List[VirtualFileEntry]:
        links = await self.recent_casted()
        return [
            VirtualFileEntry(
                name=casted_filename(link.filename, link.hash, link.imdb_id),
                content=link.url,
                modified=link.updated_at,
                original_filename=link.filename,
                filesize=link.size_bytes,
                hash=link.hash,
                imdb_id=link.imdb_id,
            )
            for link in links
        ]

    async def _library_entries(self) -> List[VirtualFileEntry]:
        downloads = await self.rd_client.get_downloads_list(LIBRARY_OBSERVE_LIMIT)
        recent = recent_unique_downloads(downloads, LIBRARY_OBSERVE_LIMIT)
        await self._observe(recent)
        recent_ids = {extract_link_id(item.link) for item in recent}

        entries = []
        for cached in await self.link_cache.list_all():
            if cached.link_id not in recent_ids and not cached.manually_added:
                continue
            entries.append(VirtualFileEntry(
                name=f"{cached.filename}.strm",
                content=self._strm_url(cached.link_id),
                modified=cached.generated_at,
                original_filename=cached.filename,
                filesize=cached.filesize,
            ))
        entries.sort(key=lambda e: e.modified, reverse=True)
        return entries

    async def list_virtual_directory(self, kind: DirectoryKind) -> List[VirtualFileEntry]:
        """List a virtual directory. Upstream failures propagate."""
        kind = DirectoryKind(kind)
        if kind is DirectoryKind.DOWNLOADS:
            entries = await self._downloads_entries()
        elif kind is DirectoryKind.DMMCAST:
            entries = await self._dmmcast_entries()
        else:
            entries = await self._library_entries()

        listing = materialize(entries)
        with LogContext(directory=kind.value):
            logger.debug(f"Listed {len(listing)} entries")
        return listing

    async def resolve_virtual_file(self, kind: DirectoryKind, filename: str) -> VirtualFileEntry:
        """Recompute the listing and return the entry named filename."""
        for entry in await self.list_virtual_directory(kind):
            if entry.name == filename:
                return entry
        raise EntryNotFound(filename, f"File not found: {filename}")

    async def delete_virtual_file(self, filename: str) -> None:
        """Delete a casted link identified by its synthetic filename."""
        hash, imdb_id = parse_casted_filename(filename)
        with LogContext(media_name=filename, directory=DirectoryKind.DMMCAST.value):
            await self.casted_client.delete_casted(hash, imdb_id)
            log_operation(logger, "Deleted casted link", infohash=hash, imdb_id=imdb_id)

    async def refresh_if_stale(self, link_id: str, user_ip: Optional[str] = None) -> str:
        """
        Return a usable URL for a cached link, refreshing it when stale.

        A failed refresh falls back to the previous URL.
        """
        entry = await self.link_cache.get(link_id)
        if entry is None:
            raise EntryNotFound(link_id, "Download link not found in cache")

        if not self.link_cache.is_stale(entry):
            return entry.unrestricted_url

        with LogContext(link_id=link_id, media_name=entry.filename):
            logger.info(f"Link {link_id} is stale, refreshing")
            try:
                new_url = await self.pipeline.unrestrict(entry.original_link, user_ip)
            except UpstreamUnavailable as e:
                logger.warning(f"Refresh failed for {link_id}, serving previous URL: {e}")
                return entry.unrestricted_url

            try:
                await self.link_cache.update_url(link_id, new_url)
            except PersistenceError as e:
                logger.error(f"Could not store refreshed URL for {link_id}: {e}")
            return new_url

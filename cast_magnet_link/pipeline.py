"""
Torrent Resolution Pipeline
Turns a magnet link or infohash into a cached, streamable Real-Debrid URL.

Phases:
    SUBMITTED -> PENDING -> NEEDS_SELECTION -> SELECTED -> READY -> LINKED -> DONE
    PENDING -> READY when no file selection is needed; any poll may end in FAILED.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Union

from .exceptions import NoLinksAvailable, ResolutionError, ValidationError
from .link_cache import LinkCache
from .logging_config import LogContext
from .rd_client import RealDebridClient, TorrentFile, TorrentInfo, extract_link_id
from .utils import format_bytes

logger = logging.getLogger(__name__)

DEFAULT_SETTLE_DELAY = 2.0
AUTO_SELECT_MIN_BYTES = 2 * 1024 * 1024

STATUS_WAITING_FILES = "waiting_files_selection"
STATUS_DOWNLOADED = "downloaded"
FAILED_STATUSES = {"magnet_error", "error", "virus", "dead"}

_BTIH_PATTERN = re.compile(r"xt=urn:btih:([^&]+)", re.IGNORECASE)


class ResolutionPhase(Enum):
    SUBMITTED = "submitted"
    PENDING = "pending"
    NEEDS_SELECTION = "needs_selection"
    SELECTED = "selected"
    READY = "ready"
    LINKED = "linked"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ResolvedMedia:
    """Outcome of a successful resolution."""
    infohash: str
    filename: str
    bytes: int
    link_id: Optional[str] = None
    download_url: str = ""


@dataclass
class PendingSelection:
    """The torrent needs a file chosen by the user before it can resolve."""
    session_id: str
    title: str
    files: List[TorrentFile] = field(default_factory=list)

    @property
    def default_file_id(self) -> Optional[int]:
        return self.files[0].id if self.files else None


def to_magnet_uri(magnet_or_hash: str) -> str:
    """Wrap a bare infohash as a magnet URI; magnet URIs pass through."""
    value = (magnet_or_hash or "").strip()
    if not value:
        raise ValidationError("Please provide a magnet link or infohash")
    if value.lower().startswith("magnet:"):
        return value
    return f"magnet:?xt=urn:btih:{value}"


def infohash_of(magnet_uri: str) -> str:
    match = _BTIH_PATTERN.search(magnet_uri)
    return match.group(1).lower() if match else ""


def pick_auto_select_file(files: List[TorrentFile]) -> Optional[TorrentFile]:
    """Return the only file above the size threshold, or None when the user must choose."""
    large = [f for f in files if f.bytes > AUTO_SELECT_MIN_BYTES]
    if len(large) == 1:
        return large[0]
    return None


class TorrentResolutionPipeline:
    """
    Drives one torrent through Real-Debrid and writes the result to the link cache.

    Each call runs sequentially on the caller's task. Nothing is retried: an
    upstream failure propagates as soon as it happens.
    """

    def __init__(
        self,
        rd_client: RealDebridClient,
        link_cache: LinkCache,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.rd_client = rd_client
        self.link_cache = link_cache
        self.settle_delay = settle_delay
        self._sleep = sleep

    def _log_phase(self, torrent_id: str, phase: ResolutionPhase, message: str, level: int = logging.INFO):
        with LogContext(torrent_id=torrent_id, phase=phase.value):
            logger.log(level, message)

    async def _settle(self) -> None:
        if self.settle_delay > 0:
            await self._sleep(self.settle_delay)

    async def resolve(
        self,
        magnet_or_hash: str,
        user_ip: Optional[str] = None,
    ) -> Union[ResolvedMedia, PendingSelection]:
        """
        Submit a magnet link or infohash and try to resolve it to a streamable URL.

        Returns PendingSelection when the torrent has several candidate files,
        or none large enough to pick automatically.
        """
        magnet_uri = to_magnet_uri(magnet_or_hash)
        infohash = infohash_of(magnet_uri)

        with LogContext(infohash=infohash or None):
            torrent_id = await self.rd_client.add_torrent(magnet_uri)
            self._log_phase(torrent_id, ResolutionPhase.SUBMITTED, f"Torrent added: {torrent_id}")

            await self._settle()
            info = await self.rd_client.get_torrent_info(torrent_id)
            self._log_phase(torrent_id, ResolutionPhase.PENDING, f"Torrent status: {info.status}")

            if info.status == STATUS_WAITING_FILES:
                chosen = pick_auto_select_file(info.files)
                if chosen is None:
                    self._log_phase(
                        torrent_id,
                        ResolutionPhase.NEEDS_SELECTION,
                        f"Torrent has {len(info.files)} file(s), user selection required",
                    )
                    return PendingSelection(
                        session_id=torrent_id,
                        title=info.filename,
                        files=info.files,
                    )

                self._log_phase(
                    torrent_id,
                    ResolutionPhase.NEEDS_SELECTION,
                    f"Auto-selecting only large file: {chosen.path} ({format_bytes(chosen.bytes)})",
                )
                return await self.complete_selection(torrent_id, chosen.id, user_ip)

            return await self._finalize(info, user_ip)

    async def complete_selection(
        self,
        session_id: str,
        file_id: Union[int, str],
        user_ip: Optional[str] = None,
    ) -> ResolvedMedia:
        """Select one file of a waiting torrent and finish the resolution."""
        if str(file_id).strip() == "" or not str(session_id).strip():
            raise ValidationError("Missing torrent ID or file ID")

        await self.rd_client.select_files(session_id, file_id)
        self._log_phase(session_id, ResolutionPhase.SELECTED, f"Selected file {file_id}")

        await self._settle()
        info = await self.rd_client.get_torrent_info(session_id)
        self._log_phase(session_id, ResolutionPhase.PENDING, f"Torrent status after selection: {info.status}")

        return await self._finalize(info, user_ip, file_id=file_id)

    async def unrestrict(self, link: str, user_ip: Optional[str] = None) -> str:
        """Exchange a stable short link for a fresh direct URL."""
        return await self.rd_client.unrestrict_link(link, user_ip)

    @staticmethod
    def _display_file(info: TorrentInfo, file_id: Optional[Union[int, str]]) -> Optional[TorrentFile]:
        for f in info.files:
            if not f.selected:
                continue
            if file_id is None or str(f.id) == str(file_id):
                return f
        return None

    async def _finalize(
        self,
        info: TorrentInfo,
        user_ip: Optional[str],
        file_id: Optional[Union[int, str]] = None,
    ) -> ResolvedMedia:
        if info.status != STATUS_DOWNLOADED or not info.links:
            self._log_phase(
                info.id,
                ResolutionPhase.FAILED,
                f"Torrent not ready (status: {info.status}, links: {len(info.links)})",
                level=logging.WARNING,
            )
            if info.status in FAILED_STATUSES:
                raise ResolutionError(
                    f"Real-Debrid reported torrent status '{info.status}'",
                    status=info.status,
                    torrent_id=info.id,
                )
            raise NoLinksAvailable(
                f"No links available for torrent (status: {info.status})",
                status=info.status,
                torrent_id=info.id,
            )

        self._log_phase(info.id, ResolutionPhase.READY, f"Torrent ready with {len(info.links)} link(s)")

        original_link = info.links[0]
        download_url = await self.unrestrict(original_link, user_ip)
        link_id = extract_link_id(original_link)
        self._log_phase(info.id, ResolutionPhase.LINKED, f"Unrestricted link {link_id or original_link}")

        chosen = self._display_file(info, file_id)
        if chosen is not None:
            filename = chosen.name or info.filename
            size = chosen.bytes or info.bytes
        else:
            filename = info.filename
            size = info.bytes

        if link_id:
            await self.link_cache.put(
                link_id,
                original_link,
                download_url,
                filename,
                manually_added=True,
                filesize=size,
            )
        else:
            logger.warning(f"Could not extract link id from {original_link}, not cached")

        await self.rd_client.delete_torrent(info.id)
        with LogContext(link_id=link_id, media_name=filename, size_bytes=size):
            self._log_phase(info.id, ResolutionPhase.DONE, f"Resolved {filename} and removed torrent {info.id}")

        return ResolvedMedia(
            infohash=info.hash,
            filename=filename,
            bytes=size,
            link_id=link_id,
            download_url=download_url,
        )

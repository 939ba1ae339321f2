"""
Real-Debrid API Client
Thin async wrapper around the Real-Debrid REST API used by the resolution pipeline
and the directory composer. Maps responses to dataclasses and translates failures
into RealDebridError; no business logic lives here.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional, Union
from urllib.parse import urlsplit

import aiohttp

from .exceptions import RealDebridError
from .utils import parse_timestamp

logger = logging.getLogger(__name__)

RD_API_BASE = "https://api.real-debrid.com/rest/1.0"
RD_LINK_HOST = "real-debrid.com"


@dataclass
class TorrentFile:
    """A file inside an upstream torrent session."""
    id: int
    path: str
    bytes: int
    selected: bool = False

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1] if self.path else ""

    @classmethod
    def from_api(cls, data: dict) -> "TorrentFile":
        return cls(
            id=int(data.get("id", 0)),
            path=data.get("path") or data.get("name") or "",
            bytes=int(data.get("bytes") or data.get("size") or 0),
            selected=bool(data.get("selected", 0)),
        )


@dataclass
class TorrentInfo:
    """Upstream torrent session as reported by /torrents/info."""
    id: str
    status: str
    hash: str = ""
    filename: str = ""
    bytes: int = 0
    files: List[TorrentFile] = field(default_factory=list)
    links: List[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict) -> "TorrentInfo":
        return cls(
            id=str(data.get("id", "")),
            status=data.get("status", ""),
            hash=data.get("hash", ""),
            filename=data.get("filename") or data.get("original_filename") or "",
            bytes=int(data.get("bytes") or 0),
            files=[TorrentFile.from_api(f) for f in data.get("files") or []],
            links=list(data.get("links") or []),
        )


@dataclass
class DownloadItem:
    """Entry of the account's download history (/downloads)."""
    id: str
    filename: str
    link: str
    download: str
    filesize: int = 0
    generated: Optional[datetime] = None

    @classmethod
    def from_api(cls, data: dict) -> "DownloadItem":
        return cls(
            id=str(data.get("id", "")),
            filename=data.get("filename", ""),
            link=data.get("link", ""),
            download=data.get("download", ""),
            filesize=int(data.get("filesize") or 0),
            generated=parse_timestamp(data.get("generated")),
        )


def extract_link_id(link: Optional[str]) -> Optional[str]:
    """
    Extract the stable identifier from a Real-Debrid short link.

    ``https://real-debrid.com/d/ABCDEF123`` -> ``ABCDEF123``. Anything else -> None.
    """
    if not link:
        return None
    try:
        parts = urlsplit(link)
    except ValueError as e:
        logger.warning(f"Could not parse Real-Debrid link {link!r}: {e}")
        return None

    segments = parts.path.split("/")
    if parts.hostname == RD_LINK_HOST and len(segments) > 2 and segments[1] == "d" and segments[2]:
        return segments[2]
    return None


class RealDebridClient:
    """
    Client for the Real-Debrid REST API.

    API Documentation: https://api.real-debrid.com/
    All calls are authenticated with the account's bearer token.
    """

    def __init__(
        self,
        access_token: str,
        base_url: str = RD_API_BASE,
        timeout: float = 30.0,
    ):
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"Authorization": f"Bearer {self.access_token}"},
            )
        return self._session

    async def close(self):
        """Close the client connection."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    @staticmethod
    def _error_from_response(status: int, body: str) -> RealDebridError:
        """Build the error for a non-2xx answer, keeping the upstream message when present."""
        reason = ""
        error_code = None
        try:
            payload = json.loads(body) if body else None
        except ValueError:
            payload = None

        if isinstance(payload, dict):
            if payload.get("error"):
                reason = f": {payload['error']}"
            error_code = payload.get("error_code")

        return RealDebridError(
            f"Real-Debrid API request failed{reason} ({status})",
            status=status,
            body=body,
            error_code=error_code,
        )

    async def _request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> Any:
        """Make a request to the Real-Debrid API. Returns None for 204 answers."""
        session = await self._get_session()
        url = f"{self.base_url}{path}"

        try:
            async with session.request(method, url, data=data, params=params) as response:
                if not 200 <= response.status < 300:
                    body = await response.text()
                    logger.error(f"RD API Error: {response.status} {response.reason} {body}")
                    raise self._error_from_response(response.status, body)

                if response.status == 204:
                    return None

                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    logger.error(f"RD API returned invalid JSON: {method} {path}: {e}")
                    raise RealDebridError(
                        f"Real-Debrid API returned invalid JSON for {method} {path}",
                        status=response.status,
                    ) from e

        except asyncio.TimeoutError as e:
            logger.error(f"Real-Debrid request timed out: {method} {path}")
            raise RealDebridError(f"Real-Debrid API timed out: {method} {path}") from e
        except aiohttp.ClientError as e:
            logger.error(f"Real-Debrid request failed: {method} {path}: {e}")
            raise RealDebridError(f"Real-Debrid API unreachable: {method} {path}: {e}") from e

    async def add_torrent(self, magnet_uri: str) -> str:
        """Submit a magnet URI. Returns the upstream torrent id."""
        result = await self._request("POST", "/torrents/addMagnet", data={"magnet": magnet_uri})
        torrent_id = str((result or {}).get("id", ""))
        if not torrent_id:
            raise RealDebridError("Real-Debrid did not return a torrent id")
        return torrent_id

    async def get_torrent_info(self, torrent_id: str) -> TorrentInfo:
        """Get status, files and links of a torrent session."""
        result = await self._request("GET", f"/torrents/info/{torrent_id}")
        return TorrentInfo.from_api(result or {})

    async def select_files(self, torrent_id: str, file_ids: Union[str, int] = "all") -> None:
        """Select files of a torrent waiting for file selection."""
        await self._request("POST", f"/torrents/selectFiles/{torrent_id}", data={"files": str(file_ids)})

    async def delete_torrent(self, torrent_id: str) -> None:
        """Delete a torrent session from the account."""
        await self._request("DELETE", f"/torrents/delete/{torrent_id}")

    async def unrestrict_link(self, link: str, user_ip: Optional[str] = None) -> str:
        """
        Unrestrict a Real-Debrid link to get the direct download URL.

        Args:
            link: Real-Debrid short link to unrestrict
            user_ip: Optional public IP of the end user, used by Real-Debrid for routing

        Returns:
            Direct download URL
        """
        data = {"link": link}
        if user_ip:
            data["ip"] = user_ip
            logger.info(f"Unrestricting link with user IP: {user_ip}")

        result = await self._request("POST", "/unrestrict/link", data=data)
        download = (result or {}).get("download")
        if not download:
            raise RealDebridError("Real-Debrid did not return a download URL")
        return download

    async def get_downloads_list(self, limit: int = 50) -> List[DownloadItem]:
        """List the most recent entries of the download history."""
        result = await self._request("GET", "/downloads", params={"limit": limit})
        return [DownloadItem.from_api(item) for item in result or []]

    async def test_connection(self) -> tuple[bool, str]:
        """Check that the access token works."""
        try:
            downloads = await self.get_downloads_list(limit=1)
            return True, f"Connected to Real-Debrid ({len(downloads)} recent download(s) visible)"
        except RealDebridError as e:
            return False, str(e)

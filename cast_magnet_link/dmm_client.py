"""
Debrid Media Manager casted-links client.
Lists and deletes the links cast to a Real-Debrid account from DMM.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
from urllib.parse import unquote, urlsplit

import aiohttp

from .exceptions import CastedLinksError
from .utils import parse_timestamp

logger = logging.getLogger(__name__)

DMM_API_BASE = "https://debridmediamanager.com"


@dataclass
class CastedLink:
    """A link cast from Debrid Media Manager."""
    url: str
    filename: str
    hash: str
    imdb_id: str
    size_mb: float = 0.0
    updated_at: Optional[datetime] = None

    @classmethod
    def from_api(cls, data: dict) -> "CastedLink":
        url = data.get("url", "")
        filename = data.get("filename") or ""
        if not filename or filename == "Unknown":
            filename = unquote(urlsplit(url).path.rsplit("/", 1)[-1]) or "Unknown"

        return cls(
            url=url,
            filename=filename,
            hash=data.get("hash", ""),
            imdb_id=data.get("imdbId", ""),
            size_mb=float(data.get("size") or 0),
            updated_at=parse_timestamp(data.get("updatedAt")),
        )

    @property
    def size_bytes(self) -> int:
        return int(self.size_mb * 1024 * 1024)


class CastedLinksClient:
    """
    Client for the DMM stremio casted-links API.

    Authenticates with the same Real-Debrid access token used for the RD API.
    """

    def __init__(self, token: str, base_url: str = DMM_API_BASE, timeout: float = 30.0):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def list_casted(self) -> List[CastedLink]:
        """Fetch every casted link of the account, unfiltered and in upstream order."""
        session = await self._get_session()
        url = f"{self.base_url}/api/stremio/links"

        try:
            async with session.get(url, params={"token": self.token}) as response:
                if not 200 <= response.status < 300:
                    body = await response.text()
                    logger.error(f"DMM API Error: {response.status} {body}")
                    raise CastedLinksError(
                        f"DMM API request failed ({response.status})",
                        status=response.status,
                        body=body,
                    )
                try:
                    data = await response.json(content_type=None)
                except ValueError as e:
                    logger.error(f"DMM API returned invalid JSON for casted links: {e}")
                    raise CastedLinksError(
                        "DMM API returned invalid JSON for casted links",
                        status=response.status,
                    ) from e

        except asyncio.TimeoutError as e:
            logger.error("DMM casted links request timed out")
            raise CastedLinksError("DMM API timed out listing casted links") from e
        except aiohttp.ClientError as e:
            logger.error(f"DMM request failed: {e}")
            raise CastedLinksError(f"DMM API unreachable listing casted links: {e}") from e

        return [CastedLink.from_api(item) for item in data or []]

    async def delete_casted(self, hash: str, imdb_id: str) -> None:
        """
        Delete a casted link.

        The upstream error text and status are kept on the raised CastedLinksError
        so callers can forward them unchanged.
        """
        session = await self._get_session()
        url = f"{self.base_url}/api/stremio/deletelink"
        payload = {"token": self.token, "imdbId": imdb_id, "hash": hash}

        try:
            async with session.post(url, json=payload) as response:
                if not 200 <= response.status < 300:
                    body = await response.text()
                    logger.error(f"DMM delete failed: {response.status} {body}")
                    raise CastedLinksError(
                        f"Delete failed: {body}",
                        status=response.status,
                        body=body,
                    )

        except asyncio.TimeoutError as e:
            logger.error(f"DMM delete request timed out: hash={hash}")
            raise CastedLinksError("Delete failed: DMM API timed out") from e
        except aiohttp.ClientError as e:
            logger.error(f"DMM delete request failed: {e}")
            raise CastedLinksError(f"Delete failed: {e}") from e

        logger.info(f"Deleted casted link hash={hash} imdb={imdb_id}")

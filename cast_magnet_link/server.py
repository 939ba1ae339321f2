"""
Cast Magnet Link HTTP Server
Magnet submission endpoints, the WebDAV surface serving .strm files, and the
/strm redirect that keeps cached Real-Debrid URLs fresh.
"""

import logging
import secrets
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from fastapi import Depends, FastAPI, Form, HTTPException, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel
from pydantic_settings import BaseSettings

from .directory import DirectoryKind, VirtualDirectoryComposer, VirtualFileEntry
from .dmm_client import DMM_API_BASE, CastedLinksClient
from .exceptions import (
    CastedLinksError,
    CastMagnetLinkError,
    ConfigurationError,
    EntryNotFound,
    MalformedIdentifier,
    MissingCredentialsError,
    PersistenceError,
    ResolutionError,
    UpstreamUnavailable,
    ValidationError,
)
from .ip_utils import get_public_ip
from .link_cache import LinkCache
from .logging_config import ActivityLogHandler, LogContext, setup_logging
from .persistence import DEFAULT_RETENTION, create_link_store
from .pipeline import PendingSelection, ResolvedMedia, TorrentResolutionPipeline
from .rd_client import RD_API_BASE, RealDebridClient
from .utils import format_bytes, format_timestamp, utc_now
from .webdav import MULTISTATUS_CONTENT_TYPE, render_directory, render_root

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Real-Debrid credentials
    rd_access_token: str = ""

    # WebDAV / HTTP basic auth
    webdav_username: str = "admin"
    webdav_password: str = ""

    # Server settings
    public_url: str = "http://localhost:3000"
    host: str = "0.0.0.0"
    port: int = 3000

    # Link cache storage
    data_dir: str = "./data"
    storage_backend: str = "json"  # "json", "sqlite" or "redis"
    cache_file: str = "strm-cache.json"
    sqlite_file: str = "strm-cache.db"
    redis_url: str = "redis://localhost:6379/0"
    redis_prefix: str = "strm:"

    # Upstream settings
    settle_delay: float = 2.0
    request_timeout: float = 30.0
    rd_api_base: str = RD_API_BASE
    dmm_api_base: str = DMM_API_BASE

    # Logging settings
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_format: str = "text"  # "text" or "json"
    log_max_size_mb: int = 10
    log_backup_count: int = 5
    activity_log_size: int = 1000

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    def missing_credentials(self) -> List[str]:
        missing = []
        if not self.rd_access_token:
            missing.append("RD_ACCESS_TOKEN")
        if not self.webdav_password:
            missing.append("WEBDAV_PASSWORD")
        return missing

    def require_credentials(self) -> None:
        missing = self.missing_credentials()
        if missing:
            raise MissingCredentialsError(missing)


@dataclass
class Components:
    """Everything a request handler needs, built once from Settings."""
    rd_client: RealDebridClient
    casted_client: CastedLinksClient
    link_cache: LinkCache
    pipeline: TorrentResolutionPipeline
    composer: VirtualDirectoryComposer

    async def close(self) -> None:
        await self.rd_client.close()
        await self.casted_client.close()
        await self.link_cache.close()


async def create_components(cfg: Settings) -> Components:
    """Build clients, link cache, pipeline and composer for the configured backend."""
    store = create_link_store(
        cfg.storage_backend,
        data_dir=cfg.data_dir,
        cache_file=cfg.cache_file,
        sqlite_file=cfg.sqlite_file,
        redis_url=cfg.redis_url,
        redis_prefix=cfg.redis_prefix,
        retention=DEFAULT_RETENTION,
    )
    cache = LinkCache(store, retention=DEFAULT_RETENTION)
    await cache.initialize()

    rd = RealDebridClient(cfg.rd_access_token, base_url=cfg.rd_api_base, timeout=cfg.request_timeout)
    casted = CastedLinksClient(cfg.rd_access_token, base_url=cfg.dmm_api_base, timeout=cfg.request_timeout)
    resolution = TorrentResolutionPipeline(rd, cache, settle_delay=cfg.settle_delay)
    directories = VirtualDirectoryComposer(
        rd,
        casted,
        cache,
        resolution,
        public_url=cfg.public_url,
        webdav_username=cfg.webdav_username,
        webdav_password=cfg.webdav_password,
    )
    return Components(rd, casted, cache, resolution, directories)


# Global instances
settings = Settings()
components: Optional[Components] = None
pipeline: Optional[TorrentResolutionPipeline] = None
composer: Optional[VirtualDirectoryComposer] = None
link_cache: Optional[LinkCache] = None
activity_log_handler: Optional[ActivityLogHandler] = None
_started_at = time.monotonic()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global components, pipeline, composer, link_cache, activity_log_handler

    activity_log_handler = setup_logging(
        log_level=settings.log_level,
        log_file=settings.log_file,
        log_format=settings.log_format,
        max_file_size_mb=settings.log_max_size_mb,
        backup_count=settings.log_backup_count,
        activity_log_size=settings.activity_log_size,
    )

    logger.info("Starting Cast Magnet Link...")

    try:
        settings.require_credentials()
    except MissingCredentialsError as e:
        logger.error(f"{e}. Requests will be rejected until they are set.")

    try:
        components = await create_components(settings)
    except (ConfigurationError, PersistenceError) as e:
        logger.error(f"Failed to initialize link cache ({settings.storage_backend}): {e}")
        raise

    pipeline = components.pipeline
    composer = components.composer
    link_cache = components.link_cache
    logger.info(f"Link cache backend: {settings.storage_backend}, public URL: {settings.public_url}")

    yield

    if components:
        await components.close()
    logger.info("Cast Magnet Link stopped")


app = FastAPI(
    title="Cast Magnet Link",
    description="Cast magnet links to media players through Real-Debrid and WebDAV",
    version="1.0.0",
    lifespan=lifespan,
)

security = HTTPBasic(auto_error=False, realm="Cast Magnet Link")


# =============================================================================
# Helper Functions
# =============================================================================


def require_auth(credentials: Optional[HTTPBasicCredentials] = Depends(security)) -> str:
    """HTTP basic auth against the WebDAV credentials."""
    if credentials is not None:
        user_ok = secrets.compare_digest(
            credentials.username.encode("utf-8"), settings.webdav_username.encode("utf-8")
        )
        password_ok = secrets.compare_digest(
            credentials.password.encode("utf-8"), settings.webdav_password.encode("utf-8")
        )
        if user_ok and password_ok:
            return credentials.username

    raise HTTPException(
        status_code=401,
        detail="Authentication required",
        headers={"WWW-Authenticate": 'Basic realm="Cast Magnet Link"'},
    )


def sanitize_error_message(error: Exception) -> str:
    """Sanitize error messages to avoid leaking sensitive information."""
    error_str = str(error)
    sensitive_patterns = [
        "token",
        "password",
        "secret",
        "auth",
        "credential",
        "bearer",
    ]
    error_lower = error_str.lower()
    for pattern in sensitive_patterns:
        if pattern in error_lower:
            return "An internal error occurred. Check server logs for details."
    if len(error_str) > 200:
        return error_str[:200] + "..."
    return error_str


ERROR_STATUS_CODES = [
    (MalformedIdentifier, 400),
    (ValidationError, 400),
    (EntryNotFound, 404),
    (ResolutionError, 422),
    (UpstreamUnavailable, 502),
]


def status_for_error(error: CastMagnetLinkError) -> int:
    for error_type, status in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status
    return 500


def _require(component, name: str):
    if component is None:
        raise HTTPException(status_code=500, detail=f"{name} not initialized")
    return component


def _directory_kind(name: str) -> DirectoryKind:
    try:
        return DirectoryKind(name)
    except ValueError:
        raise HTTPException(status_code=404, detail="Not found")


async def _list_or_empty(kind: DirectoryKind) -> List[VirtualFileEntry]:
    """Directory listing for WebDAV clients; an upstream outage shows as an empty folder."""
    try:
        return await _require(composer, "Composer").list_virtual_directory(kind)
    except UpstreamUnavailable as e:
        with LogContext(directory=kind.value, error=str(e)):
            logger.error(f"Could not list {kind.value}: {e}")
        return []


class FileChoice(BaseModel):
    id: int
    path: str
    bytes: int
    size: str
    checked: bool = False


class SelectionResponse(BaseModel):
    status: str = "selection_required"
    torrent_id: str
    title: str
    files: List[FileChoice]


class ResolvedResponse(BaseModel):
    status: str = "ready"
    message: str = "Media ready to cast"
    infohash: str
    filename: str
    bytes: int
    size: str
    link_id: Optional[str] = None


def resolution_response(result) -> JSONResponse:
    if isinstance(result, PendingSelection):
        body = SelectionResponse(
            torrent_id=result.session_id,
            title=result.title,
            files=[
                FileChoice(
                    id=f.id,
                    path=f.path,
                    bytes=f.bytes,
                    size=format_bytes(f.bytes),
                    checked=f.id == result.default_file_id,
                )
                for f in result.files
            ],
        )
        return JSONResponse(body.model_dump())

    media: ResolvedMedia = result
    body = ResolvedResponse(
        infohash=media.infohash,
        filename=media.filename,
        bytes=media.bytes,
        size=format_bytes(media.bytes),
        link_id=media.link_id,
    )
    return JSONResponse(body.model_dump())


async def _resolve(magnet_or_hash: Optional[str], request: Request) -> JSONResponse:
    if not magnet_or_hash or not magnet_or_hash.strip():
        raise ValidationError("Please provide a magnet link or infohash")
    try:
        result = await _require(pipeline, "Pipeline").resolve(magnet_or_hash, get_public_ip(request))
    except CastMagnetLinkError as e:
        logger.error(f"Failed to cast: {e}")
        raise
    return resolution_response(result)


# =============================================================================
# Middleware and Error Handlers
# =============================================================================


@app.middleware("http")
async def require_configuration(request: Request, call_next):
    """Reject requests while required credentials are missing."""
    if request.url.path != "/health" and settings.missing_credentials():
        return PlainTextResponse("Server configuration is invalid", status_code=500)
    return await call_next(request)


@app.exception_handler(CastMagnetLinkError)
async def handle_app_error(request: Request, exc: CastMagnetLinkError):
    status = status_for_error(exc)
    if status == 500:
        logger.error(f"Internal error on {request.method} {request.url.path}: {exc}")
        message = sanitize_error_message(exc)
    else:
        message = str(exc)
    return JSONResponse({"error": message}, status_code=status)


# =============================================================================
# Health Check Endpoint
# =============================================================================


@app.get("/health")
async def health_check():
    """Liveness check; no authentication."""
    missing = settings.missing_credentials()
    return JSONResponse({
        "status": "ok" if not missing else "misconfigured",
        "uptime": round(time.monotonic() - _started_at, 3),
        "timestamp": format_timestamp(utc_now()),
        "storage_backend": settings.storage_backend,
    })


# =============================================================================
# Magnet Submission Endpoints
# =============================================================================


@app.get("/")
async def index(request: Request, add: Optional[str] = None, _: str = Depends(require_auth)):
    """Recent downloads and casted links, or resolve ?add=<magnet>."""
    if add:
        return await _resolve(add, request)

    directories = _require(composer, "Composer")
    downloads = []
    casted = []

    try:
        downloads = await directories.recent_downloads()
    except UpstreamUnavailable as e:
        logger.error(f"Error fetching downloads: {e}")

    try:
        casted = await directories.recent_casted()
    except UpstreamUnavailable as e:
        logger.error(f"Error fetching casted links: {e}")

    return JSONResponse({
        "downloads": [
            {
                "id": d.id,
                "filename": d.filename,
                "filesize": d.filesize,
                "size": format_bytes(d.filesize),
                "generated": format_timestamp(d.generated) if d.generated else None,
                "url": d.download,
            }
            for d in downloads
        ],
        "casted": [
            {
                "filename": c.filename,
                "hash": c.hash,
                "imdb_id": c.imdb_id,
                "size": format_bytes(c.size_bytes),
                "updated_at": format_timestamp(c.updated_at),
                "url": c.url,
            }
            for c in casted
        ],
    })


@app.post("/add")
async def add_magnet(
    request: Request,
    magnet: Optional[str] = Form(None),
    _: str = Depends(require_auth),
):
    """Resolve a magnet link or infohash submitted from a form."""
    return await _resolve(magnet, request)


@app.post("/add/select")
async def select_file(
    request: Request,
    torrent_id: Optional[str] = Form(None),
    file_id: Optional[str] = Form(None),
    _: str = Depends(require_auth),
):
    """Finish a resolution that needed the user to pick a file."""
    if not torrent_id or not file_id:
        raise ValidationError("Missing torrent ID or file ID")
    try:
        result = await _require(pipeline, "Pipeline").complete_selection(
            torrent_id, file_id, get_public_ip(request)
        )
    except CastMagnetLinkError as e:
        with LogContext(torrent_id=torrent_id):
            logger.error(f"Failed to cast selected file: {e}")
        raise
    return resolution_response(result)


@app.get("/add/{magnet_or_hash:path}")
async def add_from_path(magnet_or_hash: str, request: Request, _: str = Depends(require_auth)):
    """Resolve a magnet link or infohash given in the URL path."""
    if request.url.query and magnet_or_hash.lower().startswith("magnet:"):
        magnet_or_hash = f"{magnet_or_hash}?{request.url.query}"
    return await _resolve(magnet_or_hash, request)


# =============================================================================
# Streaming Link Endpoints
# =============================================================================


@app.get("/strm/{link_id}")
async def stream_link(link_id: str, request: Request, _: str = Depends(require_auth)):
    """Redirect to the cached URL, refreshing it first when stale."""
    try:
        url = await _require(composer, "Composer").refresh_if_stale(link_id, get_public_ip(request))
    except EntryNotFound as e:
        return PlainTextResponse(e.message, status_code=404)
    return RedirectResponse(url, status_code=302)


# =============================================================================
# Activity Log and Cache Endpoints
# =============================================================================


@app.get("/api/logs")
async def get_activity_logs(
    limit: int = 100,
    level: Optional[str] = None,
    link_id: Optional[str] = None,
    torrent_id: Optional[str] = None,
    directory: Optional[str] = None,
    since: Optional[str] = None,
    _: str = Depends(require_auth),
):
    """Get activity logs for debugging and monitoring."""
    if not activity_log_handler:
        return JSONResponse({"count": 0, "logs": []})

    logs = activity_log_handler.get_logs(
        limit=limit,
        level=level,
        link_id=link_id,
        torrent_id=torrent_id,
        directory=directory,
        since=since,
    )

    return JSONResponse({
        "count": len(logs),
        "logs": logs,
    })


@app.get("/api/cache")
async def get_cache(_: str = Depends(require_auth)):
    """Cached links and store statistics."""
    cache = _require(link_cache, "Link cache")
    entries = await cache.list_all()
    now = cache.now()

    return JSONResponse({
        "stats": await cache.get_stats(),
        "entries": [
            {
                "link_id": e.link_id,
                "filename": e.filename,
                "filesize": e.filesize,
                "manually_added": e.manually_added,
                "generated_at": format_timestamp(e.generated_at),
                "age_hours": round((now - e.generated_at) / timedelta(hours=1), 2),
                "stale": cache.is_stale(e, now),
            }
            for e in entries
        ],
    })


# =============================================================================
# WebDAV Endpoints
# =============================================================================


@app.api_route("/webdav", methods=["GET", "HEAD", "PROPFIND", "DELETE", "OPTIONS"])
@app.api_route("/webdav/{path:path}", methods=["GET", "HEAD", "PROPFIND", "DELETE", "OPTIONS"])
async def legacy_webdav(request: Request, path: str = ""):
    """Old clients mounted /webdav/; send them to the same path without the prefix."""
    target = "/" + path
    if request.url.query:
        target += f"?{request.url.query}"
    return RedirectResponse(target, status_code=301)


@app.api_route("/", methods=["PROPFIND"])
async def propfind_root(request: Request, _: str = Depends(require_auth)):
    depth = request.headers.get("depth", "0")
    body = render_root([kind.value for kind in DirectoryKind], depth=depth)
    return Response(content=body, status_code=207, media_type=MULTISTATUS_CONTENT_TYPE)


@app.api_route("/{directory}", methods=["GET", "HEAD", "PROPFIND"])
async def directory_without_slash(directory: str, _: str = Depends(require_auth)):
    kind = _directory_kind(directory)
    return RedirectResponse(f"/{kind.value}/", status_code=301)


@app.api_route("/{directory}/", methods=["PROPFIND"])
async def propfind_directory(directory: str, request: Request, _: str = Depends(require_auth)):
    kind = _directory_kind(directory)
    depth = request.headers.get("depth", "0")
    entries = await _list_or_empty(kind)
    body = render_directory(f"/{kind.value}/", entries, depth=depth)
    return Response(content=body, status_code=207, media_type=MULTISTATUS_CONTENT_TYPE)


@app.get("/{directory}/")
async def browse_directory(directory: str, _: str = Depends(require_auth)):
    """JSON view of a virtual directory."""
    kind = _directory_kind(directory)
    entries = await _list_or_empty(kind)
    return JSONResponse({
        "directory": kind.value,
        "count": len(entries),
        "files": [
            {
                "name": e.name,
                "size": e.size,
                "modified": format_timestamp(e.modified),
                "original_filename": e.original_filename,
                "filesize": e.filesize,
            }
            for e in entries
        ],
    })


@app.delete("/dmmcast/{filename:path}")
async def delete_casted_file(filename: str, _: str = Depends(require_auth)):
    """Delete a casted link through its .strm filename."""
    try:
        await _require(composer, "Composer").delete_virtual_file(filename)
    except MalformedIdentifier as e:
        return PlainTextResponse(e.message, status_code=400)
    except CastedLinksError as e:
        return PlainTextResponse(e.message, status_code=e.status or 502)
    return Response(status_code=204)


@app.api_route("/{directory}/{filename:path}", methods=["GET", "HEAD"])
async def get_strm_file(directory: str, filename: str, _: str = Depends(require_auth)):
    """Serve the URL inside a .strm file."""
    kind = _directory_kind(directory)
    with LogContext(directory=kind.value, media_name=filename):
        entry = await _require(composer, "Composer").resolve_virtual_file(kind, filename)
        logger.info(f"Serving {filename}")
    return Response(content=entry.content, media_type=entry.content_type)


@app.options("/{path:path}")
async def webdav_options(path: str, _: str = Depends(require_auth)):
    return Response(
        status_code=200,
        headers={"DAV": "1", "Allow": "GET, HEAD, OPTIONS, PROPFIND, DELETE"},
    )


# =============================================================================
# Main entry point
# =============================================================================


def main():
    """Run the server."""
    import uvicorn
    uvicorn.run(
        "cast_magnet_link.server:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()

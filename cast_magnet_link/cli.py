"""
Command Line Interface for Cast Magnet Link
Run the server, check the Real-Debrid token, resolve magnets and inspect the link cache.
"""

import argparse
import asyncio
import logging
import os
import sys

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO"):
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cast-magnet-link",
        description="Cast Magnet Link - stream magnet links through Real-Debrid as WebDAV .strm files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start the server
  cast-magnet-link serve --port 3000 --public-url https://cast.example.com

  # Use Redis for the link cache
  cast-magnet-link serve --storage redis --redis-url redis://cache:6379/0

  # Check the Real-Debrid token
  cast-magnet-link test --token YOUR_RD_TOKEN

  # Resolve a magnet from the terminal
  cast-magnet-link add "magnet:?xt=urn:btih:..."

  # Finish a torrent that needs a file picked
  cast-magnet-link select TORRENT_ID FILE_ID

  # Show cached links
  cast-magnet-link cache

Environment Variables:
  RD_ACCESS_TOKEN       - Real-Debrid API token (required)
  WEBDAV_USERNAME       - WebDAV / basic auth username (default: admin)
  WEBDAV_PASSWORD       - WebDAV / basic auth password (required)
  PUBLIC_URL            - Externally reachable base URL (default: http://localhost:3000)
  HOST                  - Server bind address (default: 0.0.0.0)
  PORT                  - Server port (default: 3000)
  DATA_DIR              - Directory for the JSON / SQLite link cache (default: ./data)
  STORAGE_BACKEND       - json, sqlite or redis (default: json)
  REDIS_URL             - Redis connection URL for the redis backend
  LOG_LEVEL             - Logging level (default: INFO)
  LOG_FILE              - Log file path (enables rotation)
  LOG_FORMAT            - Log format: text or json (default: text)
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the server")
    serve_parser.add_argument("--host", "-H", default="0.0.0.0", help="Host to bind to")
    serve_parser.add_argument("--port", "-p", type=int, default=3000, help="Port to listen on")
    serve_parser.add_argument("--token", "-t", help="Real-Debrid token (or use RD_ACCESS_TOKEN env var)")
    serve_parser.add_argument("--username", "-u", help="WebDAV username (or use WEBDAV_USERNAME env var)")
    serve_parser.add_argument("--password", help="WebDAV password (or use WEBDAV_PASSWORD env var)")
    serve_parser.add_argument("--public-url", help="Externally reachable base URL")
    serve_parser.add_argument("--data-dir", help="Directory for the link cache")
    serve_parser.add_argument(
        "--storage", choices=["json", "sqlite", "redis"], help="Link cache backend"
    )
    serve_parser.add_argument("--redis-url", help="Redis URL for the redis backend")
    serve_parser.add_argument(
        "--log-level", "-l", default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level",
    )
    serve_parser.add_argument("--log-file", help="Log file path (enables rotation)")
    serve_parser.add_argument(
        "--log-format", default="text", choices=["text", "json"], help="Log format"
    )
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    # Test command
    test_parser = subparsers.add_parser("test", help="Test the Real-Debrid token")
    test_parser.add_argument("--token", "-t", help="Real-Debrid token")

    # Add command
    add_parser = subparsers.add_parser("add", help="Resolve a magnet link or infohash")
    add_parser.add_argument("magnet", help="Magnet URI or bare infohash")
    add_parser.add_argument("--ip", help="Public IP to pass to Real-Debrid")

    # Select command
    select_parser = subparsers.add_parser("select", help="Pick the file of a pending torrent")
    select_parser.add_argument("torrent_id", help="Real-Debrid torrent id")
    select_parser.add_argument("file_id", help="File id to select")
    select_parser.add_argument("--ip", help="Public IP to pass to Real-Debrid")

    # Cache command
    cache_parser = subparsers.add_parser("cache", help="Show cached links")
    cache_parser.add_argument(
        "--manual", action="store_true", help="Only show manually added links"
    )

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "serve":
        run_server(args)
    elif args.command == "test":
        asyncio.run(run_test(args))
    elif args.command == "add":
        asyncio.run(run_add(args))
    elif args.command == "select":
        asyncio.run(run_select(args))
    elif args.command == "cache":
        asyncio.run(run_cache(args))
    else:
        parser.print_help()
        sys.exit(1)


def run_server(args):
    """Run the HTTP server."""
    import uvicorn

    setup_logging(args.log_level)

    # Set environment variables for the server
    if args.token:
        os.environ["RD_ACCESS_TOKEN"] = args.token
    if args.username:
        os.environ["WEBDAV_USERNAME"] = args.username
    if args.password:
        os.environ["WEBDAV_PASSWORD"] = args.password
    if args.public_url:
        os.environ["PUBLIC_URL"] = args.public_url
    if args.data_dir:
        os.environ["DATA_DIR"] = args.data_dir
    if args.storage:
        os.environ["STORAGE_BACKEND"] = args.storage
    if args.redis_url:
        os.environ["REDIS_URL"] = args.redis_url

    os.environ["HOST"] = args.host
    os.environ["PORT"] = str(args.port)
    os.environ["LOG_LEVEL"] = args.log_level
    if args.log_file:
        os.environ["LOG_FILE"] = args.log_file
    os.environ["LOG_FORMAT"] = args.log_format

    logger.info(f"Starting Cast Magnet Link on {args.host}:{args.port}")
    logger.info(f"Link cache backend: {os.environ.get('STORAGE_BACKEND', 'json')}")

    uvicorn.run(
        "cast_magnet_link.server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level.lower(),
    )


async def run_test(args):
    """Test the Real-Debrid token."""
    setup_logging("INFO")

    from .rd_client import RealDebridClient

    token = args.token or os.environ.get("RD_ACCESS_TOKEN", "")
    if not token:
        print("No Real-Debrid token given. Use --token or set RD_ACCESS_TOKEN.")
        sys.exit(1)

    client = RealDebridClient(token)
    try:
        success, message = await client.test_connection()
        if success:
            print(f"  {message}")
        else:
            print(f"  Connection failed: {message}")
            sys.exit(1)
    finally:
        await client.close()


async def _open_components():
    from .exceptions import MissingCredentialsError
    from .server import Settings, create_components

    settings = Settings()
    try:
        settings.require_credentials()
    except MissingCredentialsError as e:
        print(f"Error: {e}")
        sys.exit(1)
    return await create_components(settings)


def _print_result(result):
    from .pipeline import PendingSelection
    from .utils import format_bytes

    if isinstance(result, PendingSelection):
        print(f"\nSelect a file for: {result.title} (torrent {result.session_id})\n")
        for f in result.files:
            marker = "*" if f.id == result.default_file_id else " "
            print(f" {marker} [{f.id:>3}] {f.path} ({format_bytes(f.bytes)})")
        print(f"\nRun: cast-magnet-link select {result.session_id} <file_id>")
        return

    print(f"  Ready: {result.filename} ({format_bytes(result.bytes)})")
    if result.link_id:
        print(f"  Link id: {result.link_id}")
    print(f"  URL: {result.download_url}")


async def run_add(args):
    """Resolve a magnet from the terminal."""
    setup_logging("INFO")
    from .exceptions import CastMagnetLinkError

    components = await _open_components()
    try:
        result = await components.pipeline.resolve(args.magnet, args.ip)
        _print_result(result)
    except CastMagnetLinkError as e:
        print(f"Failed to cast: {e}")
        sys.exit(1)
    finally:
        await components.close()


async def run_select(args):
    """Complete a pending file selection."""
    setup_logging("INFO")
    from .exceptions import CastMagnetLinkError

    components = await _open_components()
    try:
        result = await components.pipeline.complete_selection(args.torrent_id, args.file_id, args.ip)
        _print_result(result)
    except CastMagnetLinkError as e:
        print(f"Failed to cast: {e}")
        sys.exit(1)
    finally:
        await components.close()


async def run_cache(args):
    """Print cached links."""
    from .persistence import DEFAULT_RETENTION, create_link_store
    from .link_cache import LinkCache
    from .server import Settings
    from .utils import format_bytes

    settings = Settings()
    store = create_link_store(
        settings.storage_backend,
        data_dir=settings.data_dir,
        cache_file=settings.cache_file,
        sqlite_file=settings.sqlite_file,
        redis_url=settings.redis_url,
        redis_prefix=settings.redis_prefix,
        retention=DEFAULT_RETENTION,
    )
    cache = LinkCache(store)
    await cache.initialize()

    try:
        entries = await cache.list_all()
        if args.manual:
            entries = [e for e in entries if e.manually_added]

        if not entries:
            print("No cached links.")
            return

        now = cache.now()
        print(f"\nCached links ({len(entries)}, backend: {settings.storage_backend}):\n")
        for e in entries:
            age_hours = (now - e.generated_at).total_seconds() / 3600
            flags = []
            if e.manually_added:
                flags.append("manual")
            if cache.is_stale(e, now):
                flags.append("stale")
            flag_text = f" [{', '.join(flags)}]" if flags else ""
            print(f"  {e.link_id:<16} {age_hours:6.1f}h  {format_bytes(e.filesize):>10}  {e.filename}{flag_text}")

    finally:
        await cache.close()


if __name__ == "__main__":
    main()

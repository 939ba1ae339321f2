"""
Tests for the CLI module (cli.py).
Covers argument parsing, command dispatch, and error handling.
"""

import argparse
import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from cast_magnet_link.cli import (
    _print_result,
    build_parser,
    main,
    run_add,
    run_cache,
    run_server,
    run_test,
    setup_logging,
)
from cast_magnet_link.exceptions import NoLinksAvailable
from cast_magnet_link.link_cache import LinkCache
from cast_magnet_link.persistence import JsonFileLinkStore
from cast_magnet_link.pipeline import PendingSelection, ResolvedMedia
from cast_magnet_link.rd_client import TorrentFile


# =============================================================================
# Setup Logging Tests
# =============================================================================

class TestSetupLogging:
    """Test logging setup functionality."""

    def test_setup_logging_does_not_raise(self):
        setup_logging("INFO")
        setup_logging("DEBUG")

    def test_setup_logging_invalid_level(self):
        with pytest.raises(AttributeError):
            setup_logging("INVALID_LEVEL")


# =============================================================================
# Argument Parsing Tests
# =============================================================================

class TestParser:
    """Test argument parsing."""

    def test_serve_defaults(self):
        args = build_parser().parse_args(["serve"])

        assert args.host == "0.0.0.0"
        assert args.port == 3000
        assert args.storage is None
        assert args.log_format == "text"

    def test_serve_storage_choices(self):
        args = build_parser().parse_args(["serve", "--storage", "redis", "--redis-url", "redis://r:6379/1"])
        assert args.storage == "redis"

        with pytest.raises(SystemExit) as excinfo:
            build_parser().parse_args(["serve", "--storage", "mongo"])
        assert excinfo.value.code == 2

    def test_select_arguments(self):
        args = build_parser().parse_args(["select", "T1", "4", "--ip", "8.8.8.8"])

        assert args.torrent_id == "T1"
        assert args.file_id == "4"
        assert args.ip == "8.8.8.8"

    def test_add_requires_magnet(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["add"])


# =============================================================================
# Main Entry Point Tests
# =============================================================================

class TestMainEntryPoint:
    """Test the main() entry point and dispatch."""

    def test_no_command_shows_help(self):
        with pytest.raises(SystemExit) as excinfo:
            main([])
        assert excinfo.value.code == 1

    def test_help_flag(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main(["--help"])
        assert excinfo.value.code == 0
        assert "cast-magnet-link" in capsys.readouterr().out

    def test_serve_dispatch(self):
        with patch("cast_magnet_link.cli.run_server") as mock_run:
            main(["serve", "--port", "8080"])

        assert mock_run.call_args[0][0].port == 8080

    @pytest.mark.parametrize("argv, target", [
        (["test"], "run_test"),
        (["add", "abc"], "run_add"),
        (["select", "T1", "2"], "run_select"),
        (["cache"], "run_cache"),
    ])
    def test_async_dispatch(self, argv, target):
        with patch(f"cast_magnet_link.cli.{target}", new_callable=AsyncMock) as mock_run:
            main(argv)
        mock_run.assert_awaited_once()


# =============================================================================
# Command Tests
# =============================================================================

class TestServe:
    """Test the serve command."""

    def test_exports_settings_and_runs_uvicorn(self):
        args = build_parser().parse_args([
            "serve", "--port", "4000", "--token", "rd", "--password", "pw",
            "--storage", "sqlite", "--public-url", "https://cast.example.com",
        ])

        with patch.dict(os.environ, {}, clear=False), patch("uvicorn.run") as mock_uvicorn:
            run_server(args)

            assert os.environ["RD_ACCESS_TOKEN"] == "rd"
            assert os.environ["WEBDAV_PASSWORD"] == "pw"
            assert os.environ["STORAGE_BACKEND"] == "sqlite"
            assert os.environ["PUBLIC_URL"] == "https://cast.example.com"
            assert os.environ["PORT"] == "4000"

        mock_uvicorn.assert_called_once()
        assert mock_uvicorn.call_args[0][0] == "cast_magnet_link.server:app"
        assert mock_uvicorn.call_args[1]["port"] == 4000


class TestTokenCheck:
    """Test the test command."""

    async def test_missing_token(self, monkeypatch):
        monkeypatch.delenv("RD_ACCESS_TOKEN", raising=False)

        with pytest.raises(SystemExit) as excinfo:
            await run_test(argparse.Namespace(token=None))
        assert excinfo.value.code == 1

    async def test_successful_connection(self, capsys):
        client = MagicMock()
        client.test_connection = AsyncMock(return_value=(True, "Connected to Real-Debrid"))
        client.close = AsyncMock()

        with patch("cast_magnet_link.rd_client.RealDebridClient", return_value=client):
            await run_test(argparse.Namespace(token="tok"))

        assert "Connected to Real-Debrid" in capsys.readouterr().out
        client.close.assert_awaited_once()

    async def test_failed_connection(self):
        client = MagicMock()
        client.test_connection = AsyncMock(return_value=(False, "Real-Debrid API request failed: bad_token (401)"))
        client.close = AsyncMock()

        with patch("cast_magnet_link.rd_client.RealDebridClient", return_value=client):
            with pytest.raises(SystemExit):
                await run_test(argparse.Namespace(token="tok"))

        client.close.assert_awaited_once()


class TestAdd:
    """Test the add command."""

    @pytest.fixture
    def components(self):
        components = MagicMock()
        components.pipeline.resolve = AsyncMock()
        components.close = AsyncMock()
        return components

    async def test_ready(self, components, capsys):
        components.pipeline.resolve.return_value = ResolvedMedia(
            infohash="abc", filename="Movie.mkv", bytes=1024 ** 3,
            link_id="L1", download_url="https://cdn/movie.mkv",
        )

        with patch("cast_magnet_link.cli._open_components", AsyncMock(return_value=components)):
            await run_add(argparse.Namespace(magnet="abc", ip=None))

        output = capsys.readouterr().out
        assert "Ready: Movie.mkv" in output
        assert "Link id: L1" in output
        components.close.assert_awaited_once()

    async def test_failure_exits(self, components):
        components.pipeline.resolve.side_effect = NoLinksAvailable("No links available for torrent (status: queued)")

        with patch("cast_magnet_link.cli._open_components", AsyncMock(return_value=components)):
            with pytest.raises(SystemExit) as excinfo:
                await run_add(argparse.Namespace(magnet="abc", ip=None))

        assert excinfo.value.code == 1
        components.close.assert_awaited_once()

    async def test_missing_credentials(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("RD_ACCESS_TOKEN", "")
        monkeypatch.setenv("WEBDAV_PASSWORD", "")

        with pytest.raises(SystemExit) as excinfo:
            await run_add(argparse.Namespace(magnet="abc", ip=None))
        assert excinfo.value.code == 1


class TestPrintResult:
    """Test result rendering."""

    def test_pending_selection(self, capsys):
        _print_result(PendingSelection(
            session_id="T1",
            title="Show.S01",
            files=[
                TorrentFile(id=1, path="/E01.mkv", bytes=100),
                TorrentFile(id=2, path="/E02.mkv", bytes=200),
            ],
        ))

        output = capsys.readouterr().out
        assert " * [  1] /E01.mkv" in output
        assert "   [  2] /E02.mkv" in output
        assert "cast-magnet-link select T1 <file_id>" in output


class TestCache:
    """Test the cache command."""

    @pytest.fixture
    def data_dir(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        monkeypatch.setenv("STORAGE_BACKEND", "json")
        return tmp_path

    async def test_empty(self, data_dir, capsys):
        await run_cache(argparse.Namespace(manual=False))
        assert "No cached links." in capsys.readouterr().out

    async def test_lists_entries(self, data_dir, capsys):
        cache = LinkCache(JsonFileLinkStore(str(data_dir / "strm-cache.json")))
        await cache.put("MANUAL1", "https://real-debrid.com/d/MANUAL1", "u", "Manual.mkv", manually_added=True)
        await cache.put("PASSIVE1", "https://real-debrid.com/d/PASSIVE1", "u", "Passive.mkv")
        await cache.close()

        await run_cache(argparse.Namespace(manual=True))

        output = capsys.readouterr().out
        assert "MANUAL1" in output
        assert "[manual]" in output
        assert "PASSIVE1" not in output

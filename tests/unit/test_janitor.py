"""Unit tests for the upload directory janitor."""

import asyncio
import os
import time
from datetime import timedelta
from pathlib import Path

import pytest
from freezegun import freeze_time

from relay.resilience.janitor import ResourceJanitor


def touch(path, age_seconds: float) -> None:
    """Create a file whose mtime lies age_seconds in the past."""
    path.write_bytes(b"img")
    mtime = time.time() - age_seconds
    os.utime(path, (mtime, mtime))


@pytest.mark.unit
class TestResourceJanitorSweep:
    """Test TTL based reclamation."""

    @pytest.fixture
    def directory(self, tmp_path):
        path = tmp_path / "uploads"
        path.mkdir()
        return path

    @pytest.fixture
    def janitor(self, directory):
        return ResourceJanitor(directory, ttl_seconds=3600)

    def test_deletes_only_expired_files(self, janitor, directory):
        with freeze_time("2024-06-01 12:00:00"):
            touch(directory / "old.png", age_seconds=7200)
            touch(directory / "new.png", age_seconds=60)

            report = janitor.sweep()

        assert report.deleted == ["old.png"]
        assert report.scanned == 2
        assert not (directory / "old.png").exists()
        assert (directory / "new.png").exists()

    def test_file_expires_as_time_passes(self, janitor, directory):
        with freeze_time("2024-06-01 12:00:00") as frozen:
            touch(directory / "cat.png", age_seconds=0)

            frozen.tick(timedelta(seconds=3600))
            assert janitor.sweep().deleted == []

            frozen.tick(timedelta(seconds=1))
            assert janitor.sweep().deleted == ["cat.png"]

    def test_second_sweep_is_noop(self, janitor, directory):
        with freeze_time("2024-06-01 12:00:00"):
            touch(directory / "old.png", age_seconds=7200)

            first = janitor.sweep()
            second = janitor.sweep()

        assert first.deleted == ["old.png"]
        assert second.deleted == []
        assert second.errors == 0

    def test_skips_subdirectories(self, janitor, directory):
        nested = directory / "nested"
        nested.mkdir()
        old = time.time() - 7200
        os.utime(nested, (old, old))

        report = janitor.sweep()

        assert report.deleted == []
        assert nested.exists()

    def test_unlink_failure_does_not_stop_sweep(self, janitor, directory, monkeypatch):
        for name in ("a.png", "locked.png", "z.png"):
            touch(directory / name, age_seconds=7200)

        original_unlink = Path.unlink

        def unlink(path, *args, **kwargs):
            if path.name == "locked.png":
                raise PermissionError(13, "Permission denied", str(path))
            return original_unlink(path, *args, **kwargs)

        monkeypatch.setattr(Path, "unlink", unlink)

        report = janitor.sweep()

        assert report.errors == 1
        assert sorted(report.deleted) == ["a.png", "z.png"]
        assert (directory / "locked.png").exists()

    def test_file_vanishing_mid_sweep_is_skipped(self, janitor, directory, monkeypatch):
        for name in ("gone.png", "old.png"):
            touch(directory / name, age_seconds=7200)

        original_stat = Path.stat

        def stat(path, *args, **kwargs):
            if path.name == "gone.png":
                raise FileNotFoundError(2, "No such file or directory", str(path))
            return original_stat(path, *args, **kwargs)

        monkeypatch.setattr(Path, "stat", stat)

        report = janitor.sweep()

        assert report.errors == 0
        assert report.deleted == ["old.png"]

    def test_missing_directory_is_noop(self, tmp_path):
        janitor = ResourceJanitor(tmp_path / "does-not-exist", ttl_seconds=1)

        report = janitor.sweep()

        assert report.scanned == 0
        assert report.errors == 0
        assert janitor.last_report is report

    def test_remove_tolerates_missing_file(self, janitor, directory):
        path = directory / "done.png"
        path.write_bytes(b"img")

        assert janitor.remove(path) is True
        assert janitor.remove(path) is False

    def test_stats_include_last_sweep(self, janitor, directory):
        assert janitor.get_stats()["last_sweep"] is None

        janitor.sweep()

        stats = janitor.get_stats()
        assert stats["last_sweep"]["scanned"] == 0
        assert stats["running"] is False


@pytest.mark.unit
class TestResourceJanitorLoop:
    """Test the periodic background sweep."""

    @pytest.mark.asyncio
    async def test_periodic_sweep_reclaims_files(self, tmp_path):
        directory = tmp_path / "uploads"
        directory.mkdir()
        touch(directory / "stale.png", age_seconds=120)
        janitor = ResourceJanitor(directory, ttl_seconds=60, interval_seconds=0.01)

        await janitor.start()
        try:
            for _ in range(100):
                if not (directory / "stale.png").exists():
                    break
                await asyncio.sleep(0.01)
        finally:
            await janitor.stop()

        assert not (directory / "stale.png").exists()
        assert janitor.get_stats()["running"] is False

    @pytest.mark.asyncio
    async def test_stop_before_first_sweep(self, tmp_path):
        janitor = ResourceJanitor(tmp_path, ttl_seconds=3600)

        await janitor.start()
        await janitor.stop()

        assert janitor.last_report is None

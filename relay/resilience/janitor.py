"""
TTL janitor for the shared upload directory.

Uploaded images are normally deleted right after the relay attempt that
carried them. The periodic sweep is the backstop for files that were never
cleaned up, e.g. after a crash mid-relay.
"""

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from relay.errors import FileError
from relay.observability.logging import get_logger
from relay.observability.metrics import janitor_errors_total, janitor_files_deleted_total
from relay.observability.tracing import get_tracer


logger = get_logger(__name__)
tracer = get_tracer(__name__)


@dataclass
class SweepReport:
    """Outcome of one sweep."""
    scanned: int = 0
    deleted: List[str] = field(default_factory=list)
    errors: int = 0
    finished_at: float = 0.0


class ResourceJanitor:
    """Deletes uploaded files older than a TTL, periodically and on demand."""

    def __init__(
        self,
        directory: Union[str, Path],
        ttl_seconds: float = 3600.0,
        interval_seconds: Optional[float] = None,
    ):
        self.directory = Path(directory)
        self.ttl_seconds = ttl_seconds
        self.interval_seconds = interval_seconds or ttl_seconds

        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self.last_report: Optional[SweepReport] = None

    def sweep(self) -> SweepReport:
        """
        Delete every regular file whose age exceeds the TTL.

        Safe to run while uploads land: a file created after the listing is
        simply picked up by a later sweep. Per-entry failures are logged and
        skipped.

        Returns:
            SweepReport: Files scanned and deleted, and the error count
        """
        report = SweepReport()

        with tracer.start_as_current_span("janitor_sweep") as span:
            if not self.directory.is_dir():
                report.finished_at = time.time()
                self.last_report = report
                return report

            now = time.time()
            try:
                entries = list(self.directory.iterdir())
            except OSError as e:
                report.errors += 1
                janitor_errors_total.inc()
                logger.error("Failed to list upload directory", directory=str(self.directory), error=str(e))
                entries = []

            for entry in entries:
                report.scanned += 1
                try:
                    stat = entry.stat()
                    if not entry.is_file():
                        continue
                    if now - stat.st_mtime <= self.ttl_seconds:
                        continue
                    entry.unlink()
                except FileNotFoundError:
                    # Removed between listing and stat/unlink
                    continue
                except OSError as e:
                    report.errors += 1
                    janitor_errors_total.inc()
                    logger.error("Failed to reclaim temp file", path=str(entry), error=str(e))
                    continue

                report.deleted.append(entry.name)
                janitor_files_deleted_total.labels(reason="expired").inc()

            span.set_attribute("scanned", report.scanned)
            span.set_attribute("deleted", len(report.deleted))

        report.finished_at = time.time()
        self.last_report = report
        if report.deleted:
            logger.info("Janitor sweep reclaimed temp files", deleted=len(report.deleted))
        return report

    def remove(self, path: Union[str, Path]) -> bool:
        """
        Delete one temp file now, e.g. after its relay attempt finished.

        Returns:
            bool: True if this call deleted the file, False if it was already
            gone or could not be deleted (the periodic sweep retries)
        """
        try:
            Path(path).unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            error = FileError(f"Failed to delete temp file: {e}", path=str(path))
            janitor_errors_total.inc()
            logger.error(error.message, path=error.path)
            return False

        janitor_files_deleted_total.labels(reason="relayed").inc()
        return True

    async def start(self) -> None:
        """Start the periodic sweep loop."""
        if self._task is not None and not self._task.done():
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="resource-janitor")
        logger.info(
            "Resource janitor started",
            directory=str(self.directory),
            ttl_seconds=self.ttl_seconds,
            interval_seconds=self.interval_seconds,
        )

    async def stop(self) -> None:
        """Stop the loop, letting a sweep in progress finish."""
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("Resource janitor stopped")

    def get_stats(self) -> Dict[str, Any]:
        report = self.last_report
        return {
            "directory": self.directory.name,
            "ttl_seconds": self.ttl_seconds,
            "interval_seconds": self.interval_seconds,
            "running": self._task is not None and not self._task.done(),
            "last_sweep": None if report is None else {
                "finished_at": report.finished_at,
                "scanned": report.scanned,
                "deleted": len(report.deleted),
                "errors": report.errors,
            },
        }

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), self.interval_seconds)
                return
            except asyncio.TimeoutError:
                pass

            try:
                await asyncio.to_thread(self.sweep)
            except Exception as e:
                logger.exception("Janitor sweep failed", error=str(e))

"""Ingestion scheduler: select → fetch → extract → record.

This module provides the Scheduler class that repeatedly asks the version
state store for eligible versions, fetches each version's zip, reads it
with bounded extraction, hands the contents to an optional processor, and
records the outcome of every attempt.
"""

from __future__ import annotations

import logging
import signal
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from ..downloaders.proxy import DEFAULT_PROXY_URL, FetchResult, ModuleProxyClient
from ..utils.extract import DEFAULT_MAX_ENTRIES, DEFAULT_MAX_FILE_SIZE, read_module_zip
from ..utils.logging import VersionLogAdapter, get_logger
from ..utils.paths import WorkdirManager
from .errors import DecodeError, PersistenceError, SizeExceededError
from .state import VersionState, VersionStateDB

# Attempt status codes recorded by the scheduler
STATUS_OK = 200
STATUS_TOO_LARGE = 413
STATUS_UNPROCESSABLE = 422
STATUS_PROCESSING_ERROR = 500

RECORD_RETRY_BASE_SECONDS = 0.5

Fetcher = Callable[[str, str], FetchResult]
Processor = Callable[[VersionState, Dict[str, bytes]], None]


@dataclass
class SchedulerConfig:
    """Configuration for the scheduler.

    Attributes:
        workdir: Working directory holding state.db, logs and archives.
        proxy_url: Module proxy base URL used by the default fetcher.
        batch_size: Versions selected per pass (default 10).
        concurrency: Number of concurrent workers (default 3).
        max_file_size: Largest uncompressed size of one zip entry in bytes.
        max_entries: Largest number of entries in one zip.
        record_retries: Attempts at recording an outcome before giving up.
        keep_archives: If True, write fetched zips under workdir/archives.
        dry_run: If True, log selected versions without fetching or recording.
    """

    workdir: Path
    proxy_url: str = DEFAULT_PROXY_URL
    batch_size: int = 10
    concurrency: int = 3
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    max_entries: int = DEFAULT_MAX_ENTRIES
    record_retries: int = 3
    keep_archives: bool = False
    dry_run: bool = False


@dataclass
class SchedulerStats:
    """Statistics for scheduler execution.

    Attributes:
        passes: Number of completed passes.
        selected: Versions selected across passes.
        succeeded: Versions recorded with STATUS_OK.
        failed: Versions recorded with any other status.
        bytes_fetched: Total zip bytes fetched.
        start_time: Start timestamp.
        end_time: End timestamp (None if still running).
    """

    passes: int = 0
    selected: int = 0
    succeeded: int = 0
    failed: int = 0
    bytes_fetched: int = 0
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None

    def duration_seconds(self) -> float:
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()

    def merge(self, other: SchedulerStats) -> None:
        """Add the counters of another pass to these stats."""
        self.passes += other.passes
        self.selected += other.selected
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.bytes_fetched += other.bytes_fetched

    def summary(self) -> str:
        """Generate a summary string of the scheduler execution.

        Returns:
            Human-readable summary of statistics.
        """
        return (
            f"Scheduler ran {self.passes} pass(es) in {self.duration_seconds():.1f}s: "
            f"{self.selected} selected, {self.succeeded} succeeded, {self.failed} failed. "
            f"Fetched: {self.bytes_fetched:,} bytes"
        )


class Scheduler:
    """Drives ingestion of module versions from the state store.

    Features:
    - Priority selection (newest index timestamp first) with retry backoff
    - Concurrent processing with configurable workers
    - Bounded zip extraction
    - Outcome recording with retries on store failures
    - Graceful shutdown between passes

    Attributes:
        config: Scheduler configuration.
        logger: Logger instance for the scheduler.
    """

    def __init__(
        self,
        config: SchedulerConfig,
        fetcher: Optional[Fetcher] = None,
        processor: Optional[Processor] = None,
        state_db: Optional[VersionStateDB] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            config: Scheduler configuration object.
            fetcher: Callable returning a FetchResult for (module_path,
                version). Defaults to a ModuleProxyClient on config.proxy_url.
            processor: Optional callable receiving each version and its
                extracted files. Exceptions it raises are recorded as
                STATUS_PROCESSING_ERROR.
            state_db: Optional state store. Defaults to workdir/state.db.
            logger: Optional logger. Defaults to the package logger.
        """
        self.config = config
        self.logger = logger or get_logger("scheduler")
        self._workdir_manager = WorkdirManager(config.workdir)
        self._workdir_manager.ensure_dirs()

        self._state_db = state_db or VersionStateDB(self._workdir_manager.state_db_path)
        self._state_db.init_db()

        self._proxy_client: Optional[ModuleProxyClient] = None
        if fetcher is None:
            self._proxy_client = ModuleProxyClient(config.proxy_url, logger=self.logger)
            fetcher = self._proxy_client.download_zip
        self._fetcher = fetcher
        self._processor = processor

        self._shutdown_requested = threading.Event()
        self._stats_lock = threading.Lock()

        self.logger.info(f"Scheduler initialized with config: {config}")

    @property
    def state_db(self) -> VersionStateDB:
        return self._state_db

    def run_once(self) -> SchedulerStats:
        """Run one pass over the next batch of eligible versions.

        Returns:
            SchedulerStats for this pass.
        """
        stats = SchedulerStats(start_time=datetime.now())
        versions = self._state_db.get_next_versions_to_fetch(self.config.batch_size)
        stats.selected = len(versions)

        if not versions:
            self.logger.debug("No versions eligible for processing")
        elif self.config.dry_run:
            self._dry_run_versions(versions)
        else:
            self.logger.info(f"Processing {len(versions)} version(s)")
            with ThreadPoolExecutor(max_workers=self.config.concurrency) as executor:
                futures = [executor.submit(self._process_version, v, stats) for v in versions]
                for future in futures:
                    # Re-raises record failures that survived retries
                    future.result()

        stats.passes = 1
        stats.end_time = datetime.now()
        return stats

    def run(self, max_passes: Optional[int] = None, idle_sleep: float = 0.0) -> SchedulerStats:
        """Run passes until nothing is eligible, max_passes is reached, or
        shutdown is requested.

        Args:
            max_passes: Optional cap on the number of passes.
            idle_sleep: Seconds to sleep between passes.

        Returns:
            Aggregated SchedulerStats.
        """
        total = SchedulerStats(start_time=datetime.now())
        previous_handlers = self._register_signal_handlers()

        try:
            while not self._shutdown_requested.is_set():
                if max_passes is not None and total.passes >= max_passes:
                    break
                pass_stats = self.run_once()
                total.merge(pass_stats)
                if pass_stats.selected == 0 or self.config.dry_run:
                    break
                if idle_sleep > 0:
                    self._shutdown_requested.wait(idle_sleep)
        finally:
            for signum, handler in previous_handlers.items():
                # None means the handler was not installed from Python
                if handler is not None:
                    signal.signal(signum, handler)
            total.end_time = datetime.now()
            self.logger.info(total.summary())

        return total

    def request_shutdown(self) -> None:
        """Ask the scheduler to stop after the current pass."""
        self._shutdown_requested.set()

    def _dry_run_versions(self, versions: List[VersionState]) -> None:
        self.logger.info("=== DRY RUN MODE ===")
        for v in versions:
            self.logger.info(
                f"Would process: {v.module_path}@{v.version} "
                f"(indexed {v.index_timestamp.isoformat()}, tries: {v.try_count})"
            )
        self.logger.info(f"=== Would process {len(versions)} version(s) ===")

    def _process_version(self, version: VersionState, stats: SchedulerStats) -> int:
        """Process one version and record the outcome.

        Args:
            version: The version to process.
            stats: Pass statistics to update.

        Returns:
            The recorded status code.
        """
        vlog = VersionLogAdapter(self.logger, version.module_path, version.version)
        status, error, fetched = self._attempt(version, vlog)

        self._record_with_retry(version, status, error, vlog)

        with self._stats_lock:
            stats.bytes_fetched += fetched
            if status == STATUS_OK:
                stats.succeeded += 1
            else:
                stats.failed += 1
        return status

    def _attempt(
        self,
        version: VersionState,
        vlog: VersionLogAdapter,
    ) -> Tuple[int, Optional[str], int]:
        """Fetch, extract and process one version.

        Returns:
            Tuple of (status_code, error message or None, bytes fetched).
        """
        vlog.info(f"Fetching (try {version.try_count + 1})")
        try:
            result = self._fetcher(version.module_path, version.version)
        except Exception as e:
            vlog.error(f"Fetcher raised: {e}", exc_info=True)
            return STATUS_PROCESSING_ERROR, f"fetch error: {e}", 0

        if not result.success:
            vlog.warning(f"Fetch failed with status {result.status_code}: {result.error}")
            return result.status_code, result.error or f"fetch failed: HTTP {result.status_code}", 0

        content = result.content or b""
        if self.config.keep_archives:
            path = self._workdir_manager.save_archive(version.module_path, version.version, content)
            vlog.debug(f"Saved archive to {path}")

        try:
            files = read_module_zip(
                content,
                max_size=self.config.max_file_size,
                max_entries=self.config.max_entries,
                logger=self.logger,
            )
        except SizeExceededError as e:
            vlog.warning(f"Archive too large: {e}")
            return STATUS_TOO_LARGE, str(e), len(content)
        except DecodeError as e:
            vlog.warning(f"Archive unreadable: {e}")
            return STATUS_UNPROCESSABLE, str(e), len(content)

        vlog.info(f"Extracted {len(files)} file(s)")

        if self._processor is not None:
            try:
                self._processor(version, files)
            except Exception as e:
                vlog.error(f"Processing failed: {e}", exc_info=True)
                return STATUS_PROCESSING_ERROR, str(e), len(content)

        return STATUS_OK, None, len(content)

    def _record_with_retry(
        self,
        version: VersionState,
        status: int,
        error: Optional[str],
        vlog: VersionLogAdapter,
    ) -> None:
        """Record an attempt, retrying when the store is unavailable.

        Raises:
            PersistenceError: If every record attempt failed.
        """
        attempts = max(1, self.config.record_retries)
        for attempt in range(attempts):
            try:
                updated = self._state_db.record_attempt(
                    version.module_path,
                    version.version,
                    version.index_timestamp,
                    status,
                    error,
                )
                vlog.debug(
                    f"Recorded status {status}; next eligible after "
                    f"{updated.next_processed_after.isoformat()}"
                )
                return
            except PersistenceError as e:
                if attempt == attempts - 1:
                    vlog.error(f"Could not record status {status} after {attempts} attempts: {e}")
                    raise
                delay = RECORD_RETRY_BASE_SECONDS * (2 ** attempt)
                vlog.warning(f"Recording failed ({e}), retrying in {delay:.1f}s...")
                time.sleep(delay)

    def _register_signal_handlers(self) -> Dict[int, object]:
        """Register signal handlers for graceful shutdown.

        Returns:
            The handlers that were replaced, keyed by signal number.
        """
        previous: Dict[int, object] = {}
        if threading.current_thread() is not threading.main_thread():
            self.logger.debug("Could not register signal handlers (not main thread)")
            return previous

        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, self._handle_shutdown)
        self.logger.debug("Signal handlers registered for graceful shutdown")
        return previous

    def _handle_shutdown(self, signum: int, frame: object) -> None:
        signal_name = signal.Signals(signum).name
        self.logger.warning(f"Received {signal_name}, stopping after the current pass...")
        self._shutdown_requested.set()

    def close(self) -> None:
        """Release the default proxy client, if one was created."""
        if self._proxy_client is not None:
            self._proxy_client.close()

    def __repr__(self) -> str:
        return (
            f"Scheduler("
            f"workdir={self.config.workdir!r}, "
            f"batch_size={self.config.batch_size}, "
            f"concurrency={self.config.concurrency})"
        )

"""SQLite-based state tracking for module version ingestion.

This module provides persistent per-version processing state using SQLite:
which module versions have been discovered, how many times each has been
processed, the outcome of the latest attempt, and when a version becomes
eligible to be processed again.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Generator, Iterable, List, Optional, Union

from .errors import NotFoundError, PersistenceError

# Returned when the store holds no versions yet
ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

# Key used in VersionStats.version_counts for rows never processed
UNATTEMPTED = "unattempted"

BACKOFF_BASE = timedelta(minutes=1)
MAX_BACKOFF_DOUBLINGS = 16  # 2**16 minutes is roughly 45 days

DEFAULT_DB_TIMEOUT = 30.0  # seconds to wait on a locked database


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to UTC, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _format_ts(value: datetime) -> str:
    # Fixed width with microseconds, so text order matches time order
    return to_utc(value).replace(tzinfo=None).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value).replace(tzinfo=timezone.utc)


def backoff(try_count: int) -> timedelta:
    """Compute the retry delay after a given number of attempts.

    The delay doubles with every attempt starting from one minute, then
    grows linearly once it reaches ``2**MAX_BACKOFF_DOUBLINGS`` minutes.
    It is strictly increasing in ``try_count``.

    Args:
        try_count: Number of attempts made so far (1 or more).

    Returns:
        Delay to add to the version's creation time.

    Raises:
        ValueError: If try_count is less than 1.
    """
    if try_count < 1:
        raise ValueError(f"try_count must be at least 1, got {try_count}")
    if try_count <= MAX_BACKOFF_DOUBLINGS + 1:
        return BACKOFF_BASE * (2 ** (try_count - 1))
    step = BACKOFF_BASE * (2 ** MAX_BACKOFF_DOUBLINGS)
    return step * (try_count - MAX_BACKOFF_DOUBLINGS)


@dataclass(frozen=True)
class DiscoveredVersion:
    """A module version announced by the index feed.

    Attributes:
        module_path: Module path, e.g. "golang.org/x/text".
        version: Version string, e.g. "v0.3.2".
        timestamp: Discovery or publication time. None means unknown and is
            stored as ZERO_TIME until a later observation refreshes it.
    """

    module_path: str
    version: str
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class NotAttempted:
    """Attempt state of a version that has never been processed."""


@dataclass(frozen=True)
class Attempted:
    """Outcome of the most recent processing attempt.

    Attributes:
        status: Outcome code of the attempt (HTTP-style, always positive).
        error: Error message of the attempt, None on success.
        last_processed_at: When the attempt was recorded.
        next_processed_after: Earliest time the version may be selected again.
    """

    status: int
    error: Optional[str]
    last_processed_at: datetime
    next_processed_after: datetime


AttemptState = Union[NotAttempted, Attempted]


@dataclass
class VersionState:
    """Durable processing record of one module version.

    Attributes:
        module_path: Module path (identity, with version).
        version: Module version (identity, with module_path).
        index_timestamp: Discovery/publication time, used for prioritization.
        created_at: When the record was first created. Never changes.
        try_count: Number of processing attempts made so far.
        attempt: NotAttempted, or the outcome of the latest attempt.
    """

    module_path: str
    version: str
    index_timestamp: datetime
    created_at: datetime
    try_count: int = 0
    attempt: AttemptState = field(default_factory=NotAttempted)

    @property
    def attempted(self) -> bool:
        return isinstance(self.attempt, Attempted)

    @property
    def status(self) -> Optional[int]:
        return self.attempt.status if isinstance(self.attempt, Attempted) else None

    @property
    def error(self) -> Optional[str]:
        return self.attempt.error if isinstance(self.attempt, Attempted) else None

    @property
    def last_processed_at(self) -> Optional[datetime]:
        if isinstance(self.attempt, Attempted):
            return self.attempt.last_processed_at
        return None

    @property
    def next_processed_after(self) -> Optional[datetime]:
        if isinstance(self.attempt, Attempted):
            return self.attempt.next_processed_after
        return None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> VersionState:
        """Create a VersionState from a database row.

        Args:
            row: SQLite row from the version_states table.

        Returns:
            VersionState populated from the row.
        """
        attempt: AttemptState
        if row["status"] is None:
            attempt = NotAttempted()
        else:
            attempt = Attempted(
                status=row["status"],
                error=row["error"],
                last_processed_at=_parse_ts(row["last_processed_at"]),
                next_processed_after=_parse_ts(row["next_processed_after"]),
            )
        return cls(
            module_path=row["module_path"],
            version=row["version"],
            index_timestamp=_parse_ts(row["index_timestamp"]),
            created_at=_parse_ts(row["created_at"]),
            try_count=row["try_count"],
            attempt=attempt,
        )

    def to_dict(self) -> dict:
        """Convert the version state to a JSON-friendly dictionary.

        Returns:
            Dictionary with state data; attempt fields are None when the
            version has not been processed.
        """

        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value is not None else None

        return {
            "module_path": self.module_path,
            "version": self.version,
            "index_timestamp": iso(self.index_timestamp),
            "created_at": iso(self.created_at),
            "try_count": self.try_count,
            "status": self.status,
            "error": self.error,
            "last_processed_at": iso(self.last_processed_at),
            "next_processed_after": iso(self.next_processed_after),
        }


@dataclass
class VersionStats:
    """Aggregate view over all version states.

    Attributes:
        latest_timestamp: Maximum index_timestamp over all rows, or
            ZERO_TIME when the store is empty.
        version_counts: Row count per status code. Rows that were never
            processed are counted under UNATTEMPTED.
    """

    latest_timestamp: datetime = ZERO_TIME
    version_counts: Dict[Union[int, str], int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.version_counts.values())


class VersionStateDB:
    """SQLite-backed store of per-version processing state.

    Provides:
    - Idempotent bulk upsert of discovered versions
    - Selection of the next versions eligible for processing
    - Atomic recording of processing attempts with retry backoff
    - Point lookups and aggregate statistics

    Every write runs in its own ``BEGIN IMMEDIATE`` transaction, so
    concurrent writers (threads or processes) are serialized per call and
    each call is applied entirely or not at all.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(
        self,
        db_path: Path,
        clock: Optional[Callable[[], datetime]] = None,
        timeout: float = DEFAULT_DB_TIMEOUT,
    ) -> None:
        """Initialize the state database.

        Args:
            db_path: Path to the SQLite database file.
            clock: Optional callable returning the current time. Defaults to
                the system clock in UTC.
            timeout: Seconds to wait for a locked database before failing.
        """
        self.db_path = Path(db_path)
        self._clock = clock or utc_now
        self._timeout = timeout
        self._ensure_parent_dir()

    def _ensure_parent_dir(self) -> None:
        """Ensure the parent directory for the database exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _now(self) -> datetime:
        return to_utc(self._clock())

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with row factory configured.

        The connection runs in autocommit mode; transactions are opened
        explicitly by ``_transaction``.

        Yields:
            Configured SQLite connection.

        Raises:
            PersistenceError: If the database cannot be opened or a
                statement fails.
        """
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self._timeout,
                isolation_level=None,
            )
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open state database {self.db_path}: {e}") from e

        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as e:
            raise PersistenceError(f"State database error: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a connection inside a write transaction.

        Yields:
            Connection with an open ``BEGIN IMMEDIATE`` transaction that is
            committed on success and rolled back on any exception.
        """
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    def init_db(self) -> None:
        """Initialize the database schema.

        Creates the version_states table if it doesn't exist. Safe to call
        multiple times - will not affect existing data.
        """
        with self._get_connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")

        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS version_states (
                    module_path TEXT NOT NULL,
                    version TEXT NOT NULL,
                    index_timestamp TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    last_processed_at TEXT,
                    try_count INTEGER NOT NULL DEFAULT 0,
                    status INTEGER,
                    error TEXT,
                    next_processed_after TEXT,
                    PRIMARY KEY (module_path, version)
                )
            """)

            # Indexes for selection and statistics
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_version_states_index_timestamp
                ON version_states(index_timestamp DESC)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_version_states_next_processed_after
                ON version_states(next_processed_after)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_version_states_status
                ON version_states(status)
            """)

    def insert_discovered_versions(self, versions: Iterable[DiscoveredVersion]) -> int:
        """Insert or refresh discovered versions.

        New versions get a fresh, never-attempted record. For versions
        already present only index_timestamp is overwritten; created_at and
        all processing fields are left untouched. The whole batch is
        applied in one transaction.

        Args:
            versions: Discovered versions to upsert.

        Returns:
            Number of versions applied.

        Raises:
            ValueError: If a version has an empty module path or version.
            PersistenceError: If the database write fails.
        """
        now = _format_ts(self._now())
        rows = []
        for v in versions:
            if not v.module_path or not v.version:
                raise ValueError(f"Module path and version are required: {v!r}")
            timestamp = v.timestamp if v.timestamp is not None else ZERO_TIME
            rows.append((v.module_path, v.version, _format_ts(timestamp), now))

        if not rows:
            return 0

        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO version_states (module_path, version, index_timestamp, created_at, try_count)
                VALUES (?, ?, ?, ?, 0)
                ON CONFLICT(module_path, version)
                DO UPDATE SET index_timestamp = excluded.index_timestamp
                """,
                rows,
            )

        return len(rows)

    def get_next_versions_to_fetch(self, limit: int) -> List[VersionState]:
        """Select versions that are eligible for processing.

        A version is eligible when it has never been attempted or its
        next_processed_after time has passed. Newest index_timestamp comes
        first; ties are broken by module path then version. Rows are not
        claimed, so concurrent callers may receive the same versions.

        Args:
            limit: Maximum number of versions to return.

        Returns:
            Up to ``limit`` eligible versions, possibly empty.

        Raises:
            ValueError: If limit is not positive.
        """
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")

        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM version_states
                WHERE next_processed_after IS NULL OR next_processed_after <= ?
                ORDER BY index_timestamp DESC, module_path, version
                LIMIT ?
                """,
                (_format_ts(self._now()), limit),
            )
            return [VersionState.from_row(row) for row in cursor.fetchall()]

    def record_attempt(
        self,
        module_path: str,
        version: str,
        index_timestamp: Optional[datetime],
        status_code: int,
        error: Union[BaseException, str, None] = None,
    ) -> VersionState:
        """Record the outcome of one processing attempt.

        Increments try_count, stores the status and error, and pushes
        next_processed_after to ``created_at + backoff(try_count)``. For
        versions discovered long ago that point may already have passed, so
        the result is never earlier than ``backoff(1)`` after both now and
        the previous next_processed_after. It therefore always lies after
        the attempt and strictly increases with try_count. A supplied
        index_timestamp later than the stored one refreshes it.

        Args:
            module_path: Module path of the processed version.
            version: Processed version.
            index_timestamp: Index timestamp the caller saw, or None.
            status_code: Positive outcome code of the attempt. 0 is reserved
                for "not attempted" and cannot be recorded.
            error: Exception or message of a failed attempt, None on success.

        Returns:
            The updated VersionState.

        Raises:
            ValueError: If status_code is not a positive integer, including
                the reserved value 0.
            NotFoundError: If the version has not been discovered.
            PersistenceError: If the database write fails.
        """
        if isinstance(status_code, bool) or not isinstance(status_code, int):
            raise ValueError(f"status_code must be an integer, got {status_code!r}")
        if status_code == 0:
            raise ValueError("status_code 0 is reserved for versions not yet attempted")
        if status_code < 0:
            raise ValueError(f"status_code must be positive, got {status_code}")

        error_text = str(error) if error is not None else None
        now = self._now()

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM version_states WHERE module_path = ? AND version = ?",
                (module_path, version),
            ).fetchone()
            if row is None:
                raise NotFoundError(module_path, version)

            current = VersionState.from_row(row)
            try_count = current.try_count + 1
            # Never eligible again before one base delay past the later of
            # now and the previous retry time
            floor = max(now, current.next_processed_after or now) + backoff(1)
            next_after = max(current.created_at + backoff(try_count), floor)

            new_timestamp = current.index_timestamp
            if index_timestamp is not None and to_utc(index_timestamp) > new_timestamp:
                new_timestamp = to_utc(index_timestamp)

            conn.execute(
                """
                UPDATE version_states
                SET try_count = ?, status = ?, error = ?, last_processed_at = ?,
                    next_processed_after = ?, index_timestamp = ?
                WHERE module_path = ? AND version = ?
                """,
                (
                    try_count,
                    status_code,
                    error_text,
                    _format_ts(now),
                    _format_ts(next_after),
                    _format_ts(new_timestamp),
                    module_path,
                    version,
                ),
            )

        return VersionState(
            module_path=module_path,
            version=version,
            index_timestamp=new_timestamp,
            created_at=current.created_at,
            try_count=try_count,
            attempt=Attempted(
                status=status_code,
                error=error_text,
                last_processed_at=now,
                next_processed_after=next_after,
            ),
        )

    def get_version_state(self, module_path: str, version: str) -> VersionState:
        """Retrieve the state of one version.

        Args:
            module_path: Module path.
            version: Module version.

        Returns:
            The stored VersionState.

        Raises:
            NotFoundError: If the version is not in the store.
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM version_states WHERE module_path = ? AND version = ?",
                (module_path, version),
            ).fetchone()

        if row is None:
            raise NotFoundError(module_path, version)
        return VersionState.from_row(row)

    def get_latest_index_timestamp(self) -> datetime:
        """Get the most recent index timestamp in the store.

        Returns:
            Maximum index_timestamp over all versions, or ZERO_TIME if the
            store is empty.
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT MAX(index_timestamp) AS latest FROM version_states"
            ).fetchone()
        return _parse_ts(row["latest"]) or ZERO_TIME

    def get_version_stats(self) -> VersionStats:
        """Compute statistics over all versions.

        Returns:
            VersionStats with the latest index timestamp and the number of
            versions per last status.
        """
        with self._get_connection() as conn:
            # Both aggregates read from one snapshot
            conn.execute("BEGIN")
            latest = conn.execute(
                "SELECT MAX(index_timestamp) AS latest FROM version_states"
            ).fetchone()["latest"]
            counts = conn.execute(
                "SELECT status, COUNT(*) AS count FROM version_states GROUP BY status"
            ).fetchall()
            conn.execute("COMMIT")

        version_counts: Dict[Union[int, str], int] = {}
        for row in counts:
            key = UNATTEMPTED if row["status"] is None else row["status"]
            version_counts[key] = row["count"]

        return VersionStats(
            latest_timestamp=_parse_ts(latest) or ZERO_TIME,
            version_counts=version_counts,
        )

    def get_failed_versions(self, limit: int = 20) -> List[VersionState]:
        """Get the most recently failed versions.

        A version counts as failed when its last status is 400 or above.

        Args:
            limit: Maximum number of versions to return.

        Returns:
            Failed versions, most recently processed first.
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM version_states
                WHERE status >= 400
                ORDER BY last_processed_at DESC, module_path, version
                LIMIT ?
                """,
                (limit,),
            )
            return [VersionState.from_row(row) for row in cursor.fetchall()]

    def __repr__(self) -> str:
        """Return string representation of VersionStateDB.

        Returns:
            String representation showing the database path.
        """
        return f"VersionStateDB(db_path={self.db_path!r})"

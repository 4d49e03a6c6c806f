"""
module_ingest.core - Core functionality and business logic.

This module contains:
- The version state store (discovery, selection, attempt recording, stats)
- The error taxonomy
- The ingestion scheduler
"""

from module_ingest.core.errors import (
    DecodeError,
    EntryOpenError,
    ModuleIngestError,
    NotFoundError,
    PersistenceError,
    SizeExceededError,
)
from module_ingest.core.state import (
    UNATTEMPTED,
    ZERO_TIME,
    Attempted,
    DiscoveredVersion,
    NotAttempted,
    VersionState,
    VersionStateDB,
    VersionStats,
    backoff,
)
from module_ingest.core.scheduler import Scheduler, SchedulerConfig, SchedulerStats

__all__ = [
    # Errors
    "DecodeError",
    "EntryOpenError",
    "ModuleIngestError",
    "NotFoundError",
    "PersistenceError",
    "SizeExceededError",
    # State
    "UNATTEMPTED",
    "ZERO_TIME",
    "Attempted",
    "DiscoveredVersion",
    "NotAttempted",
    "VersionState",
    "VersionStateDB",
    "VersionStats",
    "backoff",
    # Scheduler
    "Scheduler",
    "SchedulerConfig",
    "SchedulerStats",
]

"""
module-ingest: ingestion-state tracking for a module-indexing pipeline.

Tracks which discovered module versions still need to be fetched and
processed, records the outcome of every processing attempt, schedules
retries with backoff, and reads module zips with decompression-bomb
protection.
"""

from module_ingest.core.errors import ModuleIngestError, NotFoundError, PersistenceError
from module_ingest.core.state import DiscoveredVersion, VersionState, VersionStateDB, VersionStats
from module_ingest.core.scheduler import Scheduler, SchedulerConfig

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "DiscoveredVersion",
    "ModuleIngestError",
    "NotFoundError",
    "PersistenceError",
    "Scheduler",
    "SchedulerConfig",
    "VersionState",
    "VersionStateDB",
    "VersionStats",
]

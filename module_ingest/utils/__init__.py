"""
module_ingest.utils - Utility functions and helpers.

This module contains shared utilities for:
- Logging configuration
- Bounded archive extraction
- Working directory layout
- Versions file parsing
"""

from module_ingest.utils.logging import (
    setup_logging,
    get_logger,
    VersionLogAdapter,
)
from module_ingest.utils.paths import WorkdirManager
from module_ingest.utils.extract import (
    DEFAULT_MAX_FILE_SIZE,
    open_entry,
    read_entry,
    read_module_zip,
    is_zip_archive,
)
from module_ingest.utils.versions_file import (
    parse_versions_file,
    parse_version_line,
    parse_timestamp,
    validate_module_path,
)

__all__ = [
    # Logging
    "setup_logging",
    "get_logger",
    "VersionLogAdapter",
    # Paths
    "WorkdirManager",
    # Extraction
    "DEFAULT_MAX_FILE_SIZE",
    "open_entry",
    "read_entry",
    "read_module_zip",
    "is_zip_archive",
    # Versions file
    "parse_versions_file",
    "parse_version_line",
    "parse_timestamp",
    "validate_module_path",
]

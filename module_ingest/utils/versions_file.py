"""Parsing of discovered-version seed files.

A versions file lists one module version per line:

    # module path            version    timestamp (optional, RFC 3339)
    golang.org/x/text        v0.3.2     2019-04-10T19:08:52.997264Z
    github.com/pkg/errors    v0.8.1

Blank lines and lines starting with # are ignored.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import List, Optional

from ..core.state import DiscoveredVersion, to_utc


def validate_module_path(module_path: str) -> tuple[bool, Optional[str]]:
    """Validate a module path and return validation result with error message.

    Args:
        module_path: Module path to validate.

    Returns:
        Tuple of (is_valid, error_message). error_message is None if valid.

    Examples:
        >>> validate_module_path("golang.org/x/text")
        (True, None)
        >>> validate_module_path("../etc")
        (False, "Module path contains '.' or '..' element")
    """
    if not module_path:
        return False, "Module path is empty"

    if any(c.isspace() for c in module_path):
        return False, "Module path contains whitespace"

    if module_path.startswith("/") or module_path.endswith("/"):
        return False, "Module path has a leading or trailing slash"

    elements = module_path.split("/")
    if any(e in (".", "..") for e in elements):
        return False, "Module path contains '.' or '..' element"
    if any(not e for e in elements):
        return False, "Module path contains an empty element"

    return True, None


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp into a UTC datetime.

    Args:
        value: Timestamp such as "2019-04-10T19:08:52.997264Z".

    Returns:
        Timezone-aware UTC datetime.

    Raises:
        ValueError: If the timestamp cannot be parsed.
    """
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    return to_utc(datetime.fromisoformat(value))


def parse_version_line(line: str, line_number: int = 0) -> Optional[DiscoveredVersion]:
    """Parse one line of a versions file.

    Args:
        line: Raw line.
        line_number: Line number used in error messages.

    Returns:
        DiscoveredVersion, or None for blank and comment lines.

    Raises:
        ValueError: If the line is malformed.
    """
    line = line.strip()
    if not line or line.startswith("#"):
        return None

    fields = line.split()
    if len(fields) not in (2, 3):
        raise ValueError(
            f"line {line_number}: expected '<module path> <version> [timestamp]', got {line!r}"
        )

    module_path, version = fields[0], fields[1]
    is_valid, error = validate_module_path(module_path)
    if not is_valid:
        raise ValueError(f"line {line_number}: {error}: {module_path!r}")

    timestamp = None
    if len(fields) == 3:
        try:
            timestamp = parse_timestamp(fields[2])
        except ValueError as e:
            raise ValueError(f"line {line_number}: invalid timestamp {fields[2]!r}: {e}") from e

    return DiscoveredVersion(module_path=module_path, version=version, timestamp=timestamp)


def parse_versions_file(filepath: Path) -> List[DiscoveredVersion]:
    """Parse a versions file.

    Args:
        filepath: Path to the versions file.

    Returns:
        Discovered versions in file order.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        ValueError: If a line is malformed.
    """
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"Versions file not found: {filepath}")

    results: List[DiscoveredVersion] = []
    with open(filepath, "r", encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            discovered = parse_version_line(line, line_number)
            if discovered is not None:
                results.append(discovered)

    return results

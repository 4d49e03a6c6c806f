"""Path utilities and working directory management.

This module provides the WorkdirManager class for managing the working
directory used by module_ingest.
"""

from __future__ import annotations

from pathlib import Path


class WorkdirManager:
    """Manages the working directory layout.

    The working directory follows this structure:
        workdir/
        ├── archives/                 # Fetched module zips (when kept)
        │   └── <module path>/@v/     # One directory per module
        ├── logs/                     # Log files
        └── state.db                  # SQLite state database

    Attributes:
        workdir: The root working directory path.
    """

    def __init__(self, workdir: Path) -> None:
        """Initialize the WorkdirManager with a root working directory.

        Args:
            workdir: Path to the root working directory. Can be a string
                that will be converted to Path.
        """
        self._workdir = Path(workdir).resolve()

    @property
    def workdir(self) -> Path:
        return self._workdir

    @property
    def archives_dir(self) -> Path:
        return self._workdir / "archives"

    @property
    def logs_dir(self) -> Path:
        return self._workdir / "logs"

    @property
    def state_db_path(self) -> Path:
        return self._workdir / "state.db"

    def ensure_dirs(self) -> None:
        """Create the archives/ and logs/ directories if they don't exist."""
        self.archives_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def archive_path(self, module_path: str, version: str) -> Path:
        """Get the file path for a module version's zip.

        Args:
            module_path: Module path, e.g. "golang.org/x/text".
            version: Module version, e.g. "v0.3.2".

        Returns:
            Path of the form archives/<module path>/@v/<version>.zip.

        Raises:
            ValueError: If the module path or version would escape the
                archives directory.
        """
        self._validate_component(module_path, allow_slash=True)
        self._validate_component(version, allow_slash=False)

        path = (self.archives_dir / module_path / "@v" / f"{version}.zip").resolve()
        if self.archives_dir not in path.parents:
            raise ValueError(f"Archive path escapes archives directory: {path}")
        return path

    def save_archive(self, module_path: str, version: str, data: bytes) -> Path:
        """Write a module zip under the archives directory.

        Args:
            module_path: Module path.
            version: Module version.
            data: Zip payload.

        Returns:
            Path of the written file.
        """
        path = self.archive_path(module_path, version)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path

    @staticmethod
    def _validate_component(value: str, allow_slash: bool) -> None:
        """Validate a module path or version for use in file paths.

        Raises:
            ValueError: If value is empty, contains traversal sequences,
                or contains other invalid characters.
        """
        if not value or not value.strip():
            raise ValueError("Path component cannot be empty")

        invalid = ["\\", "\0"]
        if not allow_slash:
            invalid.append("/")
        for char in invalid:
            if char in value:
                raise ValueError(f"Invalid character in {value!r}: {char!r}")

        if value.startswith("/") or any(part in ("", ".", "..") for part in value.split("/")):
            raise ValueError(f"Invalid path element in {value!r}")

    def __repr__(self) -> str:
        return f"WorkdirManager(workdir={self._workdir!r})"

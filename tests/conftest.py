"""Shared pytest fixtures for module_ingest tests."""

import io
import tempfile
import zipfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


class FakeClock:
    """Controllable clock for VersionStateDB."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_zip(files, compression=zipfile.ZIP_DEFLATED) -> bytes:
    """Build an in-memory zip from a {name: bytes or str} mapping."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression) as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buf.getvalue()


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests.

    Yields:
        Path to the temporary directory that is automatically
        cleaned up after the test.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock():
    """Fake clock starting at 2026-01-01T00:00:00Z."""
    return FakeClock(datetime(2026, 1, 1, tzinfo=timezone.utc))


@pytest.fixture
def temp_state_db(temp_dir, clock):
    """Create a temporary state database driven by the fake clock.

    Returns:
        Initialized VersionStateDB instance.
    """
    from module_ingest.core.state import VersionStateDB

    db = VersionStateDB(temp_dir / "state.db", clock=clock)
    db.init_db()
    return db


@pytest.fixture
def zip_factory():
    """Return the in-memory zip builder."""
    return make_zip


@pytest.fixture
def module_zip_bytes():
    """A small module zip with two files and a directory entry."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("example.com/mod@v1.0.0/", "")
        zf.writestr("example.com/mod@v1.0.0/go.mod", "module example.com/mod\n")
        zf.writestr("example.com/mod@v1.0.0/mod.go", "package mod\n\nfunc Hello() {}\n")
    return buf.getvalue()


@pytest.fixture
def sample_versions_file(temp_dir):
    """Create a versions file with comments, timestamps and blank lines.

    Returns:
        Path to the created versions file.
    """
    content = """# Sample versions file for testing

golang.org/x/text        v0.3.2    2019-04-10T19:08:52.997264Z
github.com/pkg/errors    v0.8.1

# Same version again with a later timestamp
golang.org/x/text        v0.3.2    2019-04-11T08:00:00Z
"""
    path = temp_dir / "versions.txt"
    path.write_text(content, encoding="utf-8")
    return path


@pytest.fixture
def workdir_manager(temp_dir):
    """Create a WorkdirManager with a temporary directory."""
    from module_ingest.utils.paths import WorkdirManager

    manager = WorkdirManager(temp_dir)
    manager.ensure_dirs()
    return manager

"""Tests for the module-ingest command line interface."""

import logging
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from module_ingest import cli
from module_ingest.cli import app
from module_ingest.core.state import VersionStateDB
from module_ingest.downloaders.proxy import FetchResult
from module_ingest.utils.logging import ROOT_LOGGER_NAME

runner = CliRunner()


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    """Keep rich tables from wrapping module paths."""
    monkeypatch.setattr(cli.console, "width", 200)


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers installed by setup_logging during a command."""
    yield
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def workdir(temp_dir):
    return temp_dir / "work"


@pytest.fixture
def seeded_workdir(workdir, sample_versions_file):
    result = runner.invoke(app, ["seed", "-f", str(sample_versions_file), "-w", str(workdir)])
    assert result.exit_code == 0, result.output
    return workdir


class TestSeedCommand:
    """Tests for the seed command."""

    def test_seed_inserts_versions(self, workdir, sample_versions_file):
        result = runner.invoke(app, ["seed", "-f", str(sample_versions_file), "-w", str(workdir)])

        assert result.exit_code == 0
        assert "Seeded 3 version(s)." in result.output

        db = VersionStateDB(workdir / "state.db")
        state = db.get_version_state("golang.org/x/text", "v0.3.2")
        # Later line for the same version wins
        assert state.index_timestamp.day == 11
        assert db.get_version_stats().total == 2

    def test_missing_file(self, workdir, temp_dir):
        result = runner.invoke(app, ["seed", "-f", str(temp_dir / "nope.txt"), "-w", str(workdir)])

        assert result.exit_code == 1
        assert "Versions file not found" in result.output

    def test_malformed_file(self, workdir, temp_dir):
        path = temp_dir / "bad.txt"
        path.write_text("just-a-path\n", encoding="utf-8")

        result = runner.invoke(app, ["seed", "-f", str(path), "-w", str(workdir)])

        assert result.exit_code == 1
        assert "line 1" in result.output

    def test_empty_file(self, workdir, temp_dir):
        path = temp_dir / "empty.txt"
        path.write_text("# nothing yet\n", encoding="utf-8")

        result = runner.invoke(app, ["seed", "-f", str(path), "-w", str(workdir)])

        assert result.exit_code == 0
        assert "No versions found" in result.output


class TestInspectionCommands:
    """Tests for queue, show and stats."""

    def test_commands_require_database(self, workdir):
        for args in (["queue"], ["show", "golang.org/x/text", "v0.3.2"], ["stats"]):
            result = runner.invoke(app, args + ["-w", str(workdir)])
            assert result.exit_code == 1
            assert "No state database found" in result.output

    def test_queue(self, seeded_workdir):
        result = runner.invoke(app, ["queue", "-w", str(seeded_workdir)])

        assert result.exit_code == 0
        assert "Fetch Queue" in result.output
        assert "v0.3.2" in result.output
        assert "v0.8.1" in result.output

    def test_show(self, seeded_workdir):
        result = runner.invoke(app, ["show", "github.com/pkg/errors", "v0.8.1", "-w", str(seeded_workdir)])

        assert result.exit_code == 0
        assert "github.com/pkg/errors@v0.8.1" in result.output
        assert "unattempted" in result.output

    def test_show_unknown_version(self, seeded_workdir):
        result = runner.invoke(app, ["show", "example.com/nope", "v1.0.0", "-w", str(seeded_workdir)])

        assert result.exit_code == 1
        assert "Version not found" in result.output

    def test_stats(self, seeded_workdir):
        result = runner.invoke(app, ["stats", "-w", str(seeded_workdir)])

        assert result.exit_code == 0
        assert "Version Statistics" in result.output
        assert "Total: 2" in result.output
        assert "2019-04-11 08:00:00" in result.output


class TestRunCommand:
    """Tests for the run command."""

    def test_dry_run(self, seeded_workdir):
        result = runner.invoke(app, ["run", "-w", str(seeded_workdir), "--dry-run"])

        assert result.exit_code == 0
        assert "Scheduler Summary" in result.output

        db = VersionStateDB(seeded_workdir / "state.db")
        assert db.get_version_state("golang.org/x/text", "v0.3.2").try_count == 0

    def test_run_once_records_failures(self, seeded_workdir):
        with patch(
            "module_ingest.downloaders.proxy.ModuleProxyClient.download_zip",
            return_value=FetchResult(404, error="not found"),
        ):
            result = runner.invoke(app, ["run", "-w", str(seeded_workdir), "--once"])

        assert result.exit_code == 0, result.output
        assert "Failed versions will be retried" in result.output

        result = runner.invoke(app, ["stats", "-w", str(seeded_workdir), "--failures", "5"])
        assert "Recent Failures" in result.output
        assert "404" in result.output

        db = VersionStateDB(seeded_workdir / "state.db")
        assert db.get_version_stats().version_counts == {404: 2}
        assert (seeded_workdir / "logs").is_dir()

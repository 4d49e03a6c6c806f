"""Logging for module_ingest runs.

Console records go through rich; every run also writes a plain-text log
under ``<workdir>/logs`` so a long ingestion can be inspected afterwards.
Messages about a single module version carry a ``[path@version]`` prefix
via VersionLogAdapter.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.logging import RichHandler

ROOT_LOGGER_NAME = "module_ingest"

FILE_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _console_handler(verbose: bool) -> RichHandler:
    # Module paths and errors are printed verbatim, without rich markup
    handler = RichHandler(
        show_time=True,
        show_path=False,
        rich_tracebacks=True,
        tracebacks_show_locals=verbose,
        markup=False,
    )
    handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def _file_handler(log_file: Path) -> logging.FileHandler:
    handler = logging.FileHandler(log_file, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT, datefmt=FILE_DATE_FORMAT))
    return handler


def setup_logging(workdir: Path, verbose: bool = False) -> logging.Logger:
    """Attach console and run-file handlers to the module_ingest logger.

    Handlers left over from an earlier call are closed and replaced, so
    calling this once per CLI command is safe. The run file always
    receives DEBUG records; the console shows INFO unless ``verbose``.

    Args:
        workdir: Ingestion working directory. The run log is written to
            ``logs/run_<timestamp>.log`` beneath it.
        verbose: Show DEBUG records and tracebacks with locals on the console.

    Returns:
        The ``module_ingest`` logger.
    """
    logs_dir = Path(workdir) / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_file = logs_dir / f"run_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.addHandler(_console_handler(verbose))
    logger.addHandler(_file_handler(log_file))
    logger.debug(f"Run log: {log_file}")
    return logger


class VersionLogAdapter(logging.LoggerAdapter):
    """Logger adapter that prefixes messages with a module version.

    Usage:
        logger = VersionLogAdapter(base_logger, "golang.org/x/text", "v0.3.2")
        logger.info("Fetching")  # Logs: [golang.org/x/text@v0.3.2] Fetching
    """

    def __init__(self, logger: logging.Logger, module_path: str, version: str) -> None:
        super().__init__(logger, {"module_path": module_path, "version": version})
        self.module_path = module_path
        self.version = version

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        return f"[{self.module_path}@{self.version}] {msg}", kwargs


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Get a logger instance for the module_ingest package.

    Args:
        name: Optional sub-logger name. If None, returns the main logger.

    Returns:
        Logger instance.
    """
    if name:
        return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
    return logging.getLogger(ROOT_LOGGER_NAME)

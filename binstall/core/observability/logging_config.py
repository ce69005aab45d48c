"""
Logging configuration: central setup for the CLI entrypoint.

Called once at startup by main.py. Library code only does
``logger = logging.getLogger(__name__)`` and never configures handlers.

Levels are resolved in precedence order:
    CLI flag  >  BINSTALL_LOG_LEVEL env var  >  WARNING (default)

Optional file output via BINSTALL_LOG_FILE / BINSTALL_LOG_FILE_LEVEL.
"""

from __future__ import annotations

import logging
import os
import sys

# ── Format strings ──────────────────────────────────────────────

# WARNING and above: message only, progress output stays readable
_FMT_MINIMAL = "%(levelname)s: %(message)s"

# INFO: timestamped with module context
_FMT_VERBOSE = "%(asctime)s [%(name)s] %(message)s"

# DEBUG and file output: full diagnostic with file:line
_FMT_DEBUG = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d: %(message)s"

_DATEFMT_SHORT = "%H:%M:%S"
_DATEFMT_FILE = "%Y-%m-%d %H:%M:%S"

# Library loggers kept at WARNING unless we're debugging
_NOISY_LOGGERS = ("asyncio", "aiofiles")

ENV_LEVEL = "BINSTALL_LOG_LEVEL"
ENV_FILE = "BINSTALL_LOG_FILE"
ENV_FILE_LEVEL = "BINSTALL_LOG_FILE_LEVEL"


def resolve_level(*, debug: bool = False, verbose: bool = False, quiet: bool = False) -> str:
    """Map CLI flags (then the environment) to a level name."""
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    if quiet:
        return "ERROR"
    return os.environ.get(ENV_LEVEL, "WARNING")


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
    quiet_third_party: bool = True,
) -> None:
    """Configure the root logger for the whole process.

    Args:
        level: Console level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Optional log file path (default: ``BINSTALL_LOG_FILE``).
        log_file_level: Level for the file handler (default:
            ``BINSTALL_LOG_FILE_LEVEL``, then ``level``).
        quiet_third_party: Hold library loggers at WARNING above DEBUG.
    """
    numeric_level = parse_level(level)
    log_file = log_file or os.environ.get(ENV_FILE)
    log_file_level = log_file_level or os.environ.get(ENV_FILE_LEVEL)

    if numeric_level <= logging.DEBUG:
        formatter = logging.Formatter(_FMT_DEBUG, datefmt=_DATEFMT_SHORT)
    elif numeric_level <= logging.INFO:
        formatter = logging.Formatter(_FMT_VERBOSE, datefmt=_DATEFMT_SHORT)
    else:
        formatter = logging.Formatter(_FMT_MINIMAL)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(numeric_level)
    console.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    effective_level = numeric_level

    if log_file:
        file_level = parse_level(log_file_level) if log_file_level else numeric_level
        effective_level = min(effective_level, file_level)

        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(file_level)
        fh.setFormatter(logging.Formatter(_FMT_DEBUG, datefmt=_DATEFMT_FILE))
        root.addHandler(fh)

    root.setLevel(effective_level)

    if quiet_third_party and numeric_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def parse_level(level: str | None) -> int:
    """Convert a level name to its numeric constant (WARNING if unknown)."""
    if not level:
        return logging.WARNING
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        return logging.WARNING
    return numeric

"""Centralized logging configuration using Loguru.

Usage:
    from pipewright.utils.logging import logger
    logger.info("Message")
    logger.debug("Debug message")  # Only shows if PIPEWRIGHT_LOG_LEVEL=DEBUG

Environment Variables:
    PIPEWRIGHT_LOG_LEVEL: DEBUG|INFO|WARNING|ERROR (default: INFO)
    PIPEWRIGHT_LOG_JSON: 0|1 (default: 0, human-readable)
    PIPEWRIGHT_LOG_FILE: path to log file (optional)
    PIPEWRIGHT_REQUEST_ID: correlation ID shared with child processes
"""

import json
import os
import sys
import uuid
from pathlib import Path

from loguru import logger

from .constants import ENV_LOG_FILE, ENV_LOG_JSON, ENV_LOG_LEVEL, ENV_REQUEST_ID, PIPELINE_LOG_NAME

# Remove default handler
logger.remove()

NUMERIC_LEVELS = {
    "TRACE": 10,
    "DEBUG": 20,
    "INFO": 30,
    "SUCCESS": 35,
    "WARNING": 40,
    "ERROR": 50,
    "CRITICAL": 60,
}

_log_level = os.environ.get(ENV_LOG_LEVEL, "INFO").upper()
_json_mode = os.environ.get(ENV_LOG_JSON, "0") == "1"
_log_file = os.environ.get(ENV_LOG_FILE)
_request_id = os.environ.get(ENV_REQUEST_ID) or str(uuid.uuid4())


def _to_ndjson(record) -> str:
    """Render a loguru record as one JSON line."""
    entry = {
        "level": NUMERIC_LEVELS.get(record["level"].name, 30),
        "time": int(record["time"].timestamp() * 1000),
        "msg": record["message"],
        "pid": record["process"].id,
        "request_id": record["extra"].get("request_id", _request_id),
    }

    for key, value in record["extra"].items():
        if key != "request_id":
            entry[key] = value

    if record["exception"]:
        entry["err"] = {
            "type": record["exception"].type.__name__ if record["exception"].type else "Error",
            "message": str(record["exception"].value) if record["exception"].value else "",
        }

    return json.dumps(entry, default=str)


def ndjson_sink(message):
    """Write structured log lines to stdout.

    CRITICAL: Never call logger.* inside a sink - causes infinite recursion
    """
    sys.stdout.write(_to_ndjson(message.record) + "\n")
    sys.stdout.flush()


_human_format = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}:{function}:{line}</cyan> - "
    "<level>{message}</level>"
)

logger.level("DEBUG", color="<blue>")
logger.level("INFO", color="<white>")
logger.level("WARNING", color="<yellow>")
logger.level("ERROR", color="<red>")
logger.level("CRITICAL", color="<red><bold>")

# Tracked so it can be swapped for the Rich live sink
_human_handler_id: int | None = None

if _json_mode:
    logger.add(
        ndjson_sink,
        level=_log_level,
        colorize=False,
    )
else:
    _human_handler_id = logger.add(
        sys.stderr,
        level=_log_level,
        format=_human_format,
        colorize=None,
    )

if _log_file:

    def _file_sink(message):
        """Append NDJSON lines to the configured log file."""
        with open(_log_file, "a", encoding="utf-8") as f:
            f.write(_to_ndjson(message.record) + "\n")

    logger.add(
        _file_sink,
        level="DEBUG",
    )


def configure_file_logging(log_dir: Path, level: str = "DEBUG") -> int:
    """Add the rotating execution log (pipeline.log) under the state directory.

    Args:
        log_dir: Directory for log files (e.g., Path(".pipewright"))
        level: Minimum log level for file output

    Returns:
        Handler id, so callers can remove it when the run ends.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / PIPELINE_LOG_NAME

    return logger.add(
        log_file,
        rotation="10 MB",
        retention="7 days",
        level=level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
    )


def swap_to_rich_sink(rich_sink_fn) -> int | None:
    """Swap stderr handler to a Rich-compatible sink for Live display integration.

    When Rich Live is active, logs to stderr get overwritten by Live's refresh.
    The replacement sink routes records through the Live console instead.

    Returns:
        The new handler ID, or None if in JSON mode (no swap needed).
    """
    global _human_handler_id

    if _json_mode or _human_handler_id is None:
        return None

    logger.remove(_human_handler_id)
    _human_handler_id = None

    return logger.add(
        rich_sink_fn,
        level=_log_level,
        format=_human_format,
        colorize=True,
    )


def restore_stderr_sink(rich_handler_id: int | None) -> None:
    """Restore the default stderr handler after Rich Live display ends."""
    global _human_handler_id

    if _json_mode:
        return

    if rich_handler_id is not None:
        try:
            logger.remove(rich_handler_id)
        except ValueError:
            pass  # Already removed

    if _human_handler_id is None:
        _human_handler_id = logger.add(
            sys.stderr,
            level=_log_level,
            format=_human_format,
            colorize=None,
        )


def get_subprocess_env() -> dict[str, str]:
    """Get environment dict with REQUEST_ID for stage processes.

    Child commands inherit the correlation id so their own logs can be
    joined with the pipeline log.
    """
    env = os.environ.copy()
    env[ENV_REQUEST_ID] = _request_id
    return env


__all__ = [
    "logger",
    "configure_file_logging",
    "get_subprocess_env",
    "swap_to_rich_sink",
    "restore_stderr_sink",
]

"""Centralized error handler for pipewright commands."""

import traceback
from collections.abc import Callable
from datetime import datetime
from functools import wraps
from pathlib import Path
from typing import Any

import click

from pipewright.utils.logging import logger

from .constants import ERROR_LOG_NAME


def error_log_path(root: str | Path | None) -> Path:
    """error.log inside the state directory of the project at ``root``."""
    # Imported here: config_runtime itself imports this package
    from pipewright.config_runtime import load_runtime_config

    root = Path(root or ".")
    state_dir = Path(load_runtime_config(str(root))["paths"]["state_dir"])
    if not state_dir.is_absolute():
        state_dir = root / state_dir
    return state_dir / ERROR_LOG_NAME


def handle_exceptions(func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator that provides robust error handling with detailed logging.

    click's own exceptions (usage errors, explicit exits) pass through
    untouched; anything else is logged with its traceback to the project's
    error.log (following the command's --root) and re-raised as a
    ClickException.
    """

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        """Inner wrapper that implements the try-except logic."""
        try:
            return func(*args, **kwargs)
        except (click.ClickException, click.exceptions.Exit, click.Abort):
            raise
        except Exception as e:
            log_path = error_log_path(kwargs.get("root"))
            log_path.parent.mkdir(parents=True, exist_ok=True)

            error_type = type(e).__name__
            error_msg = str(e)
            tb = traceback.format_exc()

            logger.opt(exception=True).error(
                "Command '{cmd}' failed: {err}",
                cmd=func.__name__,
                err=error_msg,
            )

            with open(log_path, "a", encoding="utf-8") as f:
                f.write("\n" + "=" * 80 + "\n")
                f.write(f"[{datetime.now().isoformat()}] Error in command: {func.__name__}\n")
                f.write("=" * 80 + "\n")
                f.write(f"{error_type}: {error_msg}\n\n")
                f.write(tb)
                f.write("=" * 80 + "\n\n")

            user_message = (
                f"{error_type}: {error_msg}\n\n"
                f"Full traceback logged to: {log_path}"
            )

            raise click.ClickException(user_message) from e

    return wrapper

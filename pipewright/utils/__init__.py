"""pipewright utilities package."""

from .constants import (
    BUILTIN_VARIABLES,
    DEFAULT_PIPELINE_FILE,
)
from .error_handler import handle_exceptions
from .exit_codes import ExitCodes
from .logging import logger

__all__ = [
    "BUILTIN_VARIABLES",
    "DEFAULT_PIPELINE_FILE",
    "handle_exceptions",
    "ExitCodes",
    "logger",
]

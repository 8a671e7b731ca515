"""Pipeline execution infrastructure."""
from .structures import RunContext, RunResult, StageResult, TaskStatus
from .renderer import RichRenderer
from .ui import console, print_error, print_warning, print_success, print_status_panel

__all__ = [
    "RunContext", "RunResult", "StageResult", "TaskStatus", "RichRenderer",
    "console", "print_error", "print_warning", "print_success", "print_status_panel",
]

"""Central UI handler for pipewright.

Single source of truth for Rich console styling. Import this instead of
instantiating Console() in every command file.

Usage:
    from pipewright.pipeline.ui import console, print_error

    console.print("[success]All stages passed[/success]")
    print_error("Pipeline file not found")
"""

import sys

from rich.console import Console
from rich.panel import Panel
from rich.text import Text
from rich.theme import Theme

PIPEWRIGHT_THEME = Theme({
    "info": "bold cyan",
    "warning": "bold yellow",
    "error": "bold red",
    "success": "bold green",
    "skipped": "dim yellow",
    "waiting": "bold magenta",
    "cmd": "bold magenta",
    "path": "bold cyan",
    "stage": "cyan",
    "dim": "dim white",
})

# Single console instance - import this, don't create your own
console = Console(
    theme=PIPEWRIGHT_THEME,
    force_terminal=sys.stdout.isatty()
)

STATUS_STYLES = {
    "success": "success",
    "failed": "error",
    "skipped": "skipped",
    "running": "info",
    "awaiting_approval": "waiting",
    "pending": "dim",
}


def print_error(msg: str) -> None:
    """Print an error message in red."""
    console.print(f"[error]ERROR:[/error] {msg}")


def print_warning(msg: str) -> None:
    """Print a warning message in yellow."""
    console.print(f"[warning]WARNING:[/warning] {msg}")


def print_success(msg: str) -> None:
    """Print a success message in green."""
    console.print(f"[success]OK:[/success] {msg}")


def print_status_panel(
    status: str,
    message: str,
    detail: str,
    level: str = "info"
) -> None:
    """Print a status panel with colored border.

    Args:
        status: Status label (e.g., "SUCCESS", "FAILED")
        message: Main message line
        detail: Additional detail line
        level: One of "critical", "warning", "success", "info"
    """
    style_map = {
        "critical": ("bold red", "red"),
        "warning": ("bold yellow", "yellow"),
        "success": ("bold green", "green"),
        "info": ("bold cyan", "cyan"),
    }
    text_style, border_style = style_map.get(level, ("white", "white"))

    panel = Panel(
        Text.assemble(
            (f"STATUS: [{status}]\n", text_style),
            (f"{message}\n", border_style),
            (detail, border_style)
        ),
        border_style=border_style,
        expand=False
    )
    console.print(panel)

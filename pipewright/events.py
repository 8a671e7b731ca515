"""Event system for pipeline observers.

Decouples pipeline execution from presentation logic.
Observers must handle their own exceptions.
"""

import sys
from typing import Protocol


class PipelineObserver(Protocol):
    """Observer interface for pipeline events."""

    def on_section_start(self, title: str, section_num: int) -> None:
        """Called when a logical section (main stages, post hooks) begins."""
        ...

    def on_stage_start(self, name: str, index: int, total: int) -> None:
        """Called when a stage begins running."""
        ...

    def on_stage_complete(self, name: str, elapsed: float) -> None:
        """Called when a stage succeeds."""
        ...

    def on_stage_failed(self, name: str, error: str, exit_code: int | None) -> None:
        """Called when a stage fails."""
        ...

    def on_stage_skipped(self, name: str, reason: str) -> None:
        """Called when a stage is not admitted or skipped after a failure."""
        ...

    def on_approval_requested(self, name: str, message: str) -> None:
        """Called when a stage enters the awaiting-approval state."""
        ...

    def on_log(self, message: str, is_error: bool = False) -> None:
        """Called for generic log messages (e.g., stage output previews)."""
        ...

    def on_parallel_group_start(self, group_name: str, members: list[str]) -> None:
        """Called when a parallel group fans out."""
        ...

    def on_parallel_group_complete(self, group_name: str, elapsed: float, success: bool) -> None:
        """Called when every member of a parallel group has joined."""
        ...


class ConsoleLogger:
    """ASCII-safe console logger.

    This is the DEFAULT observer for non-interactive output (CI logs, pipes).
    """

    def __init__(self, quiet: bool = False):
        self.quiet = quiet

    def on_section_start(self, title: str, section_num: int) -> None:
        if not self.quiet:
            print("\n" + "=" * 60, flush=True)
            print(f"[SECTION {section_num}] {title}", flush=True)
            print("=" * 60, flush=True)

    def on_stage_start(self, name: str, index: int, total: int) -> None:
        if not self.quiet:
            print(f"\n[Stage {index}/{total}] {name}", flush=True)

    def on_stage_complete(self, name: str, elapsed: float) -> None:
        if not self.quiet:
            print(f"[OK] {name} completed in {elapsed:.1f}s", flush=True)

    def on_stage_failed(self, name: str, error: str, exit_code: int | None) -> None:
        # Errors print even in quiet mode
        print(f"[FAILED] {name} failed (exit code {exit_code})", file=sys.stderr, flush=True)
        if error:
            display_err = error.strip()[:200]
            if len(error) > 200:
                display_err += "..."
            print(f"  Error: {display_err}", file=sys.stderr, flush=True)

    def on_stage_skipped(self, name: str, reason: str) -> None:
        if not self.quiet:
            print(f"[SKIPPED] {name}: {reason}", flush=True)

    def on_approval_requested(self, name: str, message: str) -> None:
        # Always shown: someone has to act on it
        print(f"[WAITING] {name} awaiting approval: {message}", flush=True)

    def on_log(self, message: str, is_error: bool = False) -> None:
        if not self.quiet or is_error:
            msg = str(message) if message is not None else ""
            print(msg, file=sys.stderr if is_error else sys.stdout, flush=True)

    def on_parallel_group_start(self, group_name: str, members: list[str]) -> None:
        if not self.quiet:
            try:
                print(f"[START] {group_name} ({len(members)} parallel: {', '.join(members)})", flush=True)
            except OSError:
                pass  # Windows console buffer issue - ignore

    def on_parallel_group_complete(self, group_name: str, elapsed: float, success: bool) -> None:
        if not self.quiet:
            status = "COMPLETED" if success else "FAILED"
            try:
                print(f"[{status}] {group_name} ({elapsed:.1f}s)", flush=True)
            except OSError:
                pass  # Windows console buffer issue - ignore

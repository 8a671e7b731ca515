"""Error taxonomy for pipeline construction and execution."""


class PipewrightError(Exception):
    """Base class for all pipewright errors."""


class MalformedSpec(PipewrightError):
    """Pipeline description is structurally invalid.

    Raised before any stage executes. Carries every problem found so the
    author can fix the file in one pass.
    """

    def __init__(self, problems: list[str] | str, source: str | None = None):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        self.source = source
        where = f" in {source}" if source else ""
        detail = "\n".join(f"  - {p}" for p in self.problems)
        super().__init__(f"Malformed pipeline{where}:\n{detail}")


class StageExecutionError(PipewrightError):
    """A stage's command exited non-zero (or could not be run)."""

    def __init__(self, stage: str, exit_code: int | None, detail: str = ""):
        self.stage = stage
        self.exit_code = exit_code
        self.detail = detail
        msg = f"Stage '{stage}' failed (exit code {exit_code})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class GroupFailure(PipewrightError):
    """One or more members of a parallel group failed."""

    def __init__(self, group: str, failed_members: list[str]):
        self.group = group
        self.failed_members = list(failed_members)
        super().__init__(
            f"Parallel group '{group}' failed: {', '.join(self.failed_members)}"
        )


class HealthCheckTimeout(PipewrightError, TimeoutError):
    """Readiness probe never succeeded before the deadline."""

    def __init__(self, target: str, timeout: float):
        self.target = target
        self.timeout = timeout
        super().__init__(f"Health check for {target} did not succeed within {timeout:g}s")


class DeliveryError(PipewrightError):
    """Notification could not be delivered to its channel."""

    def __init__(self, channel: str, reason: str):
        self.channel = channel
        self.reason = reason
        super().__init__(f"Notification to '{channel}' failed: {reason}")


class ResourceUnavailable(StageExecutionError):
    """A stage's resource could not be acquired."""

    def __init__(self, stage: str, resource: str, exit_code: int | None, detail: str = ""):
        self.resource = resource
        reason = f"resource '{resource}' could not be acquired"
        if detail:
            reason += f" ({detail})"
        super().__init__(stage, exit_code, reason)

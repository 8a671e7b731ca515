"""Data contracts for pipeline execution."""
import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from pipewright.errors import MalformedSpec, PipewrightError


class TaskStatus(Enum):
    """Status of a pipeline stage.

    PENDING -> AWAITING_APPROVAL -> RUNNING -> SUCCESS | FAILED, with SKIPPED
    reachable from PENDING and AWAITING_APPROVAL.
    """
    PENDING = "pending"
    AWAITING_APPROVAL = "awaiting_approval"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StageResult:
    """Result of a single stage (or parallel group) execution.

    Frozen once the stage finishes. JSON-serializable via to_dict().
    """
    name: str
    status: TaskStatus
    elapsed: float = 0.0
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    failure: PipewrightError | None = field(default=None, compare=False)
    reason: str = ""
    truncated: bool = False
    children: tuple["StageResult", ...] = ()
    artifacts: tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        """True if stage completed successfully."""
        return self.status == TaskStatus.SUCCESS

    @property
    def failed(self) -> bool:
        return self.status == TaskStatus.FAILED

    @property
    def skipped(self) -> bool:
        return self.status == TaskStatus.SKIPPED

    @property
    def is_group(self) -> bool:
        return bool(self.children)

    @property
    def error(self) -> str:
        return str(self.failure) if self.failure else ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        return {
            "name": self.name,
            "status": self.status.value,
            "elapsed": round(self.elapsed, 3),
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "truncated": self.truncated,
            "reason": self.reason,
            "error": self.error,
            "error_type": type(self.failure).__name__ if self.failure else None,
            "artifacts": list(self.artifacts),
            "children": [c.to_dict() for c in self.children],
        }


@dataclass(frozen=True)
class RunContext:
    """Process-wide state for one pipeline invocation.

    Never mutated in place: the executor derives a new context at stage
    boundaries with with_env(). Parallel group members all see the same
    snapshot.
    """
    job_name: str
    branch: str
    build_number: int
    commit: str = ""
    build_id: str = ""
    env: MappingProxyType = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self) -> None:
        if not isinstance(self.env, MappingProxyType):
            object.__setattr__(self, "env", MappingProxyType(dict(self.env)))
        if not self.build_id:
            object.__setattr__(self, "build_id", f"{self.job_name}-{self.build_number}")

    def with_env(self, **overrides: str) -> "RunContext":
        """Return a new context with additional environment overrides."""
        merged = dict(self.env)
        merged.update(overrides)
        return dataclasses.replace(self, env=MappingProxyType(merged))

    def builtin_variables(self) -> dict[str, str]:
        """Variables every stage sees regardless of pipeline environment."""
        return {
            "BRANCH_NAME": self.branch,
            "BUILD_ID": self.build_id,
            "BUILD_NUMBER": str(self.build_number),
            "GIT_COMMIT": self.commit,
            "JOB_NAME": self.job_name,
        }

    def variables(self, base: dict[str, str] | None = None) -> dict[str, str]:
        """Resolved variable namespace: base, then built-ins, then overrides."""
        resolved = dict(base or {})
        resolved.update(self.builtin_variables())
        resolved.update(self.env)
        return resolved


@dataclass(frozen=True)
class RunResult:
    """Terminal outcome of one pipeline invocation."""
    job_name: str
    stages: tuple[StageResult, ...]
    hooks: tuple[StageResult, ...]
    context: RunContext
    elapsed: float
    config_errors: tuple[str, ...] = ()
    interrupted: bool = False

    @property
    def success(self) -> bool:
        if self.config_errors or self.interrupted:
            return False
        return not any(r.failed for r in self.all_results())

    @property
    def status(self) -> TaskStatus:
        return TaskStatus.SUCCESS if self.success else TaskStatus.FAILED

    def all_results(self) -> tuple[StageResult, ...]:
        return self.stages + self.hooks

    def failed_stages(self) -> list[str]:
        return [r.name for r in self.all_results() if r.failed]

    def find(self, name: str) -> StageResult | None:
        """Look up a stage result by name, searching inside groups too."""
        for result in self.all_results():
            if result.name == name:
                return result
            for child in result.children:
                if child.name == name:
                    return child
        return None

    def raise_for_status(self) -> None:
        """Raise the error of the first failure, if the run failed."""
        for result in self.all_results():
            if result.failed and result.failure is not None:
                raise result.failure
        if self.config_errors:
            raise MalformedSpec(list(self.config_errors))

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        return {
            "job": self.job_name,
            "build_number": self.context.build_number,
            "build_id": self.context.build_id,
            "branch": self.context.branch,
            "commit": self.context.commit,
            "status": self.status.value,
            "elapsed": round(self.elapsed, 3),
            "interrupted": self.interrupted,
            "config_errors": list(self.config_errors),
            "stages": [r.to_dict() for r in self.stages],
            "hooks": [r.to_dict() for r in self.hooks],
            "env": dict(self.context.env),
        }

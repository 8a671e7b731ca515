"""Stage graph builder: pipeline description -> validated execution plan.

Pipeline file shape (YAML)::

    name: api
    environment:
      REGISTRY: registry.example.com
    resources:
      test-env:
        acquire: docker compose -f docker-compose.test.yml up -d
        release: docker compose -f docker-compose.test.yml down -v
    stages:
      - name: Checkout
        run: git rev-parse --short HEAD
        export: COMMIT_TAG
      - name: Test
        parallel:
          - {name: Unit, run: npm test}
          - {name: Integration, run: npm run test:e2e, resources: [test-env]}
      - name: Containerize
        image: {tag: "${REGISTRY}/api:${COMMIT_TAG}", target: production}
      - name: Deploy
        when: {branch: main}
        approval: Deploy to production?
        run: docker compose up -d
    post:
      always:
        - {name: Cleanup, run: docker system prune -f}
    notify:
      channel: "#deployments"
      webhook: https://hooks.example.com/T000/B000

Validation collects every problem before raising MalformedSpec. Building has
no side effects.
"""

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from types import MappingProxyType
from typing import Any

import yaml

from pipewright.errors import MalformedSpec
from pipewright.gates import (
    AnyBranchGate,
    ApprovalGate,
    BranchGate,
    EnvironmentGate,
    Gate,
    UnrecognizedGate,
    template_variables,
)
from pipewright.health import HealthCheckSpec
from pipewright.images import ImageSpec
from pipewright.notify import NotifySettings
from pipewright.process import Command
from pipewright.utils.constants import BUILTIN_VARIABLES

BODY_KEYS = ("run", "image", "health", "parallel")

STAGE_KEYS = frozenset(
    {
        "name",
        *BODY_KEYS,
        "when",
        "approval",
        "always",
        "timeout",
        "export",
        "artifacts",
        "resources",
        "dir",
        "environment",
    }
)

TOP_LEVEL_KEYS = frozenset({"name", "environment", "resources", "stages", "post", "notify"})

POST_OUTCOMES = ("always", "success", "failure")


@dataclass(frozen=True)
class Resource:
    """Exclusive capability held for the duration of one stage."""

    name: str
    acquire: Command | None = None
    release: Command | None = None


@dataclass(frozen=True)
class Stage:
    """A named unit of pipeline work: one body, optional gates."""

    name: str
    command: Command | None = None
    image: ImageSpec | None = None
    health: HealthCheckSpec | None = None
    parallel: tuple["Stage", ...] = ()
    gates: tuple[Gate, ...] = ()
    always: bool = False
    timeout: float | None = None
    export: str | None = None
    artifacts: tuple[str, ...] = ()
    resources: tuple[str, ...] = ()
    workdir: str | None = None
    environment: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def is_group(self) -> bool:
        return bool(self.parallel)

    @property
    def kind(self) -> str:
        if self.parallel:
            return "parallel"
        if self.image is not None:
            return "image"
        if self.health is not None:
            return "health"
        return "run"

    @property
    def needs_approval(self) -> bool:
        return any(isinstance(g, ApprovalGate) for g in self.gates)


@dataclass(frozen=True)
class ExecutionPlan:
    """Validated, immutable pipeline ready for the executor."""

    name: str
    stages: tuple[Stage, ...]
    environment: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    resources: Mapping[str, Resource] = field(default_factory=lambda: MappingProxyType({}))
    post: Mapping[str, tuple[Stage, ...]] = field(default_factory=lambda: MappingProxyType({}))
    notify: NotifySettings | None = None
    source: str | None = None

    def hooks(self, outcome: str) -> tuple[Stage, ...]:
        return self.post.get(outcome, ())

    def iter_stages(self) -> Iterator[Stage]:
        """Every stage including group members and post hooks, in order."""
        for stage in self.stages:
            yield stage
            yield from stage.parallel
        for outcome in POST_OUTCOMES:
            yield from self.hooks(outcome)

    def stage_count(self) -> int:
        return sum(1 for s in self.iter_stages() if not s.is_group)


def load_plan(path: str | Path) -> ExecutionPlan:
    """Read a YAML pipeline file and build its plan."""
    source = str(path)
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise MalformedSpec(f"cannot read pipeline file: {e}", source=source) from e

    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise MalformedSpec(f"invalid YAML: {e}", source=source) from e

    return build_plan(raw, source=source)


def build_plan(raw: Any, source: str | None = None) -> ExecutionPlan:
    """Validate an already-parsed pipeline description."""
    return PlanBuilder(source=source).build(raw)


class PlanBuilder:
    """Turns a raw mapping into an ExecutionPlan, collecting every problem."""

    def __init__(self, source: str | None = None):
        self.source = source
        self.problems: list[str] = []
        self._names: set[str] = set()

    def build(self, raw: Any) -> ExecutionPlan:
        if not isinstance(raw, Mapping):
            raise MalformedSpec("pipeline must be a mapping with a 'stages' list", source=self.source)

        for key in raw:
            if key not in TOP_LEVEL_KEYS:
                self.problems.append(f"unknown top-level key '{key}'")

        name = str(raw.get("name") or "pipeline")
        environment = self._environment(raw.get("environment"), "pipeline")
        resources = self._resources(raw.get("resources"))

        raw_stages = raw.get("stages")
        if not isinstance(raw_stages, list) or not raw_stages:
            self.problems.append("'stages' must be a non-empty list")
            raw_stages = []

        known = set(environment) | BUILTIN_VARIABLES
        stages: list[Stage] = []
        for index, raw_stage in enumerate(raw_stages):
            stage = self._stage(raw_stage, f"stages[{index}]", known, resources, in_group=False)
            if stage is None:
                continue
            stages.append(stage)
            if stage.export:
                known.add(stage.export)

        post = self._post(raw.get("post"), known, resources)
        notify = self._notify(raw.get("notify"))

        if self.problems:
            raise MalformedSpec(self.problems, source=self.source)

        return ExecutionPlan(
            name=name,
            stages=tuple(stages),
            environment=MappingProxyType(environment),
            resources=MappingProxyType(resources),
            post=MappingProxyType(post),
            notify=notify,
            source=self.source,
        )

    # ------------------------------------------------------------------
    # sections
    # ------------------------------------------------------------------

    def _environment(self, raw: Any, where: str) -> dict[str, str]:
        if raw is None:
            return {}
        if not isinstance(raw, Mapping):
            self.problems.append(f"{where}: 'environment' must be a mapping")
            return {}
        env = {}
        for key, value in raw.items():
            if value is None or isinstance(value, (dict, list)):
                self.problems.append(f"{where}: environment value for '{key}' must be a scalar")
                continue
            env[str(key)] = _scalar(value)
        return env

    def _resources(self, raw: Any) -> dict[str, Resource]:
        if raw is None:
            return {}
        if not isinstance(raw, Mapping):
            self.problems.append("'resources' must be a mapping of name -> {acquire, release}")
            return {}
        resources = {}
        for name, body in raw.items():
            where = f"resources.{name}"
            if not isinstance(body, Mapping):
                self.problems.append(f"{where}: must be a mapping with 'acquire' and/or 'release'")
                continue
            unknown = set(body) - {"acquire", "release"}
            if unknown:
                self.problems.append(f"{where}: unknown keys {sorted(unknown)}")
            acquire = self._command(body.get("acquire"), f"{where}.acquire", optional=True)
            release = self._command(body.get("release"), f"{where}.release", optional=True)
            if acquire is None and release is None:
                self.problems.append(f"{where}: needs an 'acquire' or 'release' command")
                continue
            resources[str(name)] = Resource(name=str(name), acquire=acquire, release=release)
        return resources

    def _post(self, raw: Any, known: set[str], resources: dict[str, Resource]) -> dict[str, tuple[Stage, ...]]:
        if raw is None:
            return {}
        if not isinstance(raw, Mapping):
            self.problems.append("'post' must be a mapping of always/success/failure -> stages")
            return {}
        post = {}
        for outcome, raw_hooks in raw.items():
            if outcome not in POST_OUTCOMES:
                self.problems.append(f"post: unknown outcome '{outcome}' (expected one of {', '.join(POST_OUTCOMES)})")
                continue
            if not isinstance(raw_hooks, list) or not raw_hooks:
                self.problems.append(f"post.{outcome}: must be a non-empty list of stages")
                continue
            hooks = []
            for index, raw_hook in enumerate(raw_hooks):
                hook = self._stage(raw_hook, f"post.{outcome}[{index}]", set(known), resources, in_group=False)
                if hook is not None:
                    hooks.append(hook)
            post[outcome] = tuple(hooks)
        return post

    def _notify(self, raw: Any) -> NotifySettings | None:
        if raw is None:
            return None
        if not isinstance(raw, Mapping) or not raw.get("channel"):
            self.problems.append("notify: must be a mapping with a 'channel'")
            return None
        unknown = set(raw) - {"channel", "webhook", "on"}
        if unknown:
            self.problems.append(f"notify: unknown keys {sorted(unknown)}")
        on = raw.get("on", ["success", "failure"])
        if isinstance(on, str):
            on = [on]
        if not isinstance(on, list) or any(o not in ("success", "failure") for o in on):
            self.problems.append("notify.on: must list 'success' and/or 'failure'")
            on = ["success", "failure"]
        webhook = raw.get("webhook")
        return NotifySettings(
            channel=str(raw["channel"]),
            webhook=str(webhook) if webhook else None,
            on=tuple(on),
        )

    # ------------------------------------------------------------------
    # stages
    # ------------------------------------------------------------------

    def _stage(
        self,
        raw: Any,
        where: str,
        known: set[str],
        resources: dict[str, Resource],
        in_group: bool,
    ) -> Stage | None:
        if not isinstance(raw, Mapping):
            self.problems.append(f"{where}: stage must be a mapping")
            return None

        name = raw.get("name")
        if not name or not isinstance(name, str):
            self.problems.append(f"{where}: stage needs a 'name'")
            return None
        where = f"{where} ('{name}')"
        if name in self._names:
            self.problems.append(f"{where}: duplicate stage name")
        self._names.add(name)

        unknown = set(raw) - STAGE_KEYS
        if unknown:
            self.problems.append(f"{where}: unknown keys {sorted(unknown)}")

        bodies = [key for key in BODY_KEYS if raw.get(key) is not None]
        if not bodies:
            self.problems.append(f"{where}: stage has no runnable body (one of {', '.join(BODY_KEYS)})")
            return None
        if len(bodies) > 1:
            self.problems.append(f"{where}: stage declares more than one body: {', '.join(bodies)}")
            return None

        gates = self._gates(raw.get("when"), raw.get("approval"), name, where)
        for gate in gates:
            self._check_variables(gate.variables(), known, f"{where} gate '{gate.describe()}'")

        command = None
        image = None
        health = None
        members: tuple[Stage, ...] = ()
        body = bodies[0]

        if body == "run":
            command = self._command(raw["run"], f"{where}.run")
        elif body == "image":
            image = self._image(raw["image"], where, known)
        elif body == "health":
            health = self._health(raw["health"], where)
        else:
            if in_group:
                self.problems.append(f"{where}: parallel groups cannot be nested")
                return None
            members = self._members(raw["parallel"], where, known, resources)

        export = raw.get("export")
        if export is not None:
            if not isinstance(export, str) or not export.isidentifier():
                self.problems.append(f"{where}: 'export' must be a variable name")
                export = None
            elif in_group:
                self.problems.append(f"{where}: parallel members cannot export variables")
                export = None
            elif members:
                self.problems.append(f"{where}: a parallel group cannot export variables")
                export = None

        stage_resources = self._stage_resources(raw.get("resources"), where, resources)
        if members and stage_resources:
            self.problems.append(f"{where}: resources belong on group members, not the group")

        timeout = raw.get("timeout")
        if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0):
            self.problems.append(f"{where}: 'timeout' must be a positive number of seconds")
            timeout = None

        always = raw.get("always", False)
        if not isinstance(always, bool):
            self.problems.append(f"{where}: 'always' must be true or false")
            always = False

        workdir = raw.get("dir")
        if workdir is not None and not isinstance(workdir, str):
            self.problems.append(f"{where}: 'dir' must be a path")
            workdir = None

        return Stage(
            name=name,
            command=command,
            image=image,
            health=health,
            parallel=members,
            gates=gates,
            always=always,
            timeout=float(timeout) if timeout is not None else None,
            export=export,
            artifacts=self._artifacts(raw.get("artifacts"), where),
            resources=stage_resources,
            workdir=workdir,
            environment=MappingProxyType(self._environment(raw.get("environment"), where)),
        )

    def _members(self, raw: Any, where: str, known: set[str], resources: dict[str, Resource]) -> tuple[Stage, ...]:
        if not isinstance(raw, list) or not raw:
            self.problems.append(f"{where}: parallel group is empty")
            return ()
        members = []
        for index, raw_member in enumerate(raw):
            # Members only see what existed before the group started
            member = self._stage(raw_member, f"{where}.parallel[{index}]", set(known), resources, in_group=True)
            if member is not None:
                members.append(member)
        return tuple(members)

    def _gates(self, when: Any, approval: Any, name: str, where: str) -> tuple[Gate, ...]:
        gates: list[Gate] = []

        if when is not None:
            if not isinstance(when, Mapping):
                self.problems.append(f"{where}: 'when' must be a mapping of gate -> value")
            else:
                for kind, value in when.items():
                    gate = self._gate(kind, value, where)
                    if gate is not None:
                        gates.append(gate)

        if approval is not None and approval is not False:
            if approval is True:
                message = f"Proceed with '{name}'?"
            elif isinstance(approval, str) and approval.strip():
                message = approval.strip()
            elif isinstance(approval, Mapping) and isinstance(approval.get("message"), str):
                message = approval["message"]
            else:
                self.problems.append(f"{where}: 'approval' must be true, a message, or {{message: ...}}")
                message = None
            if message:
                gates.append(ApprovalGate(message=message))

        return tuple(gates)

    def _gate(self, kind: str, value: Any, where: str) -> Gate | None:
        if kind == "branch":
            if isinstance(value, list):
                return self._any_branch(value, where)
            if not isinstance(value, str) or not value:
                self.problems.append(f"{where}: 'when.branch' must be a branch name")
                return None
            return BranchGate(branch=value)

        if kind == "branches":
            return self._any_branch(value, where)

        if kind == "environment":
            if not isinstance(value, Mapping) or not value:
                self.problems.append(f"{where}: 'when.environment' must map variable -> value")
                return None
            return EnvironmentGate(expected=tuple((str(k), _scalar(v)) for k, v in value.items()))

        if kind == "approval":
            self.problems.append(f"{where}: use the stage-level 'approval' key instead of 'when.approval'")
            return None

        # Fails closed at evaluation time
        return UnrecognizedGate(kind=str(kind), value=value)

    def _any_branch(self, value: Any, where: str) -> Gate | None:
        if not isinstance(value, list) or not value or not all(isinstance(b, str) and b for b in value):
            self.problems.append(f"{where}: 'when.branches' must be a non-empty list of branch names")
            return None
        return AnyBranchGate(branches=tuple(value))

    def _check_variables(self, names: set[str], known: set[str], where: str) -> None:
        for missing in sorted(names - known):
            self.problems.append(f"{where}: references undefined variable '{missing}'")

    def _command(self, raw: Any, where: str, optional: bool = False) -> Command | None:
        if raw is None and optional:
            return None
        if isinstance(raw, str) and raw.strip():
            return raw
        if isinstance(raw, list) and raw and all(isinstance(p, (str, int, float)) for p in raw):
            return tuple(str(p) for p in raw)
        self.problems.append(f"{where}: command must be a non-empty string or list")
        return None

    def _image(self, raw: Any, where: str, known: set[str]) -> ImageSpec | None:
        if not isinstance(raw, Mapping) or not isinstance(raw.get("tag"), str) or not raw["tag"]:
            self.problems.append(f"{where}: 'image' needs at least a 'tag'")
            return None
        unknown = set(raw) - {"tag", "context", "dockerfile", "target", "build_args", "push"}
        if unknown:
            self.problems.append(f"{where}.image: unknown keys {sorted(unknown)}")
        self._check_variables(template_variables(raw["tag"]), known, f"{where} image tag")

        build_args = raw.get("build_args") or {}
        if not isinstance(build_args, Mapping):
            self.problems.append(f"{where}.image: 'build_args' must be a mapping")
            build_args = {}

        return ImageSpec(
            tag=raw["tag"],
            context=str(raw.get("context", ".")),
            dockerfile=raw.get("dockerfile"),
            target=raw.get("target"),
            build_args=tuple((str(k), _scalar(v)) for k, v in build_args.items()),
            push=bool(raw.get("push", False)),
        )

    def _health(self, raw: Any, where: str) -> HealthCheckSpec | None:
        if isinstance(raw, str):
            raw = {"url": raw}
        if not isinstance(raw, Mapping) or not isinstance(raw.get("url"), str):
            self.problems.append(f"{where}: 'health' needs a 'url'")
            return None
        unknown = set(raw) - {"url", "expect", "timeout", "interval"}
        if unknown:
            self.problems.append(f"{where}.health: unknown keys {sorted(unknown)}")

        numbers = {}
        for key in ("timeout", "interval"):
            value = raw.get(key)
            if value is None:
                numbers[key] = None
            elif isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                self.problems.append(f"{where}.health: '{key}' must be a non-negative number")
                numbers[key] = None
            else:
                numbers[key] = float(value)
        if numbers["interval"] == 0:
            self.problems.append(f"{where}.health: 'interval' must be positive")

        return HealthCheckSpec(
            url=raw["url"],
            expect=str(raw.get("expect", "ok")),
            timeout=numbers["timeout"],
            interval=numbers["interval"],
        )

    def _artifacts(self, raw: Any, where: str) -> tuple[str, ...]:
        if raw is None:
            return ()
        if isinstance(raw, str):
            raw = [raw]
        if not isinstance(raw, list) or not all(isinstance(p, str) and p for p in raw):
            self.problems.append(f"{where}: 'artifacts' must be a path pattern or list of them")
            return ()
        for pattern in raw:
            pure = PurePosixPath(pattern)
            if not pure.parts:
                self.problems.append(f"{where}: artifact pattern '{pattern}' does not name anything to collect")
            elif pure.is_absolute() or ".." in pure.parts:
                self.problems.append(f"{where}: artifact pattern '{pattern}' must stay inside the workspace")
        return tuple(raw)

    def _stage_resources(self, raw: Any, where: str, resources: dict[str, Resource]) -> tuple[str, ...]:
        if raw is None:
            return ()
        if isinstance(raw, str):
            raw = [raw]
        if not isinstance(raw, list) or not all(isinstance(r, str) for r in raw):
            self.problems.append(f"{where}: 'resources' must be a list of resource names")
            return ()
        for name in raw:
            if name not in resources:
                self.problems.append(f"{where}: undeclared resource '{name}'")
        return tuple(raw)


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)

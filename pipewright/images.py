"""Container image builds.

The engine never looks inside images: an image stage is translated into
container CLI invocations and executed through the process runner, so the
same capture, timeout and exit-code rules apply as for any other command.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol

from pipewright.process import ProcessOutcome, ProcessRunner


@dataclass(frozen=True)
class ImageSpec:
    """Declarative image build, e.g. a multi-stage Dockerfile's production target."""

    tag: str
    context: str = "."
    dockerfile: str | None = None
    target: str | None = None
    build_args: tuple[tuple[str, str], ...] = field(default_factory=tuple)
    push: bool = False


class ImageBuilder(Protocol):
    """Capability that builds (and optionally pushes) a container image."""

    async def build(
        self,
        spec: ImageSpec,
        *,
        tag: str,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        max_output_bytes: int | None = None,
    ) -> ProcessOutcome:
        ...


class DockerImageBuilder:
    """Builds images with a docker-compatible CLI (docker, podman, nerdctl)."""

    def __init__(self, runner: ProcessRunner, binary: str = "docker"):
        self.runner = runner
        self.binary = binary

    def build_command(self, spec: ImageSpec, tag: str) -> list[str]:
        cmd = [self.binary, "build", "-t", tag]
        if spec.dockerfile:
            cmd += ["-f", spec.dockerfile]
        if spec.target:
            cmd += ["--target", spec.target]
        for key, value in spec.build_args:
            cmd += ["--build-arg", f"{key}={value}"]
        cmd.append(spec.context)
        return cmd

    def push_command(self, tag: str) -> list[str]:
        return [self.binary, "push", tag]

    async def build(
        self,
        spec: ImageSpec,
        *,
        tag: str,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        max_output_bytes: int | None = None,
    ) -> ProcessOutcome:
        built = await self.runner.run(
            self.build_command(spec, tag),
            cwd=cwd,
            env=env,
            timeout=timeout,
            max_output_bytes=max_output_bytes,
        )
        if not built.success or not spec.push:
            return built

        pushed = await self.runner.run(
            self.push_command(tag),
            cwd=cwd,
            env=env,
            timeout=timeout,
            max_output_bytes=max_output_bytes,
        )
        return ProcessOutcome(
            returncode=pushed.returncode,
            stdout=built.stdout + pushed.stdout,
            stderr=built.stderr + pushed.stderr,
            elapsed=built.elapsed + pushed.elapsed,
            truncated=built.truncated or pushed.truncated,
            timed_out=pushed.timed_out,
            spawn_error=pushed.spawn_error,
        )

"""Run context resolution.

Branch, commit and build number come from the CI environment when present
(Jenkins, GitLab and GitHub variable names are understood), otherwise from
git and the local build counter.
"""

import os
import subprocess
from pathlib import Path

from pipewright.pipeline.structures import RunContext
from pipewright.utils.constants import (
    BRANCH_ENV_VARS,
    BUILD_NUMBER_ENV_VARS,
    BUILD_NUMBER_FILE,
    COMMIT_ENV_VARS,
)
from pipewright.utils.logging import logger


def _first_env(names: tuple[str, ...]) -> str | None:
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return None


def _git(root: Path, *args: str) -> str | None:
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=root,
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("git {} unavailable: {}", " ".join(args), e)
        return None
    if proc.returncode != 0:
        return None
    return proc.stdout.strip() or None


def detect_branch(root: Path) -> str:
    branch = _first_env(BRANCH_ENV_VARS)
    if branch:
        # Jenkins multibranch reports "origin/main"
        return branch.removeprefix("origin/")
    branch = _git(root, "rev-parse", "--abbrev-ref", "HEAD")
    if branch and branch != "HEAD":
        return branch
    return "detached"


def detect_commit(root: Path) -> str:
    return _first_env(COMMIT_ENV_VARS) or _git(root, "rev-parse", "HEAD") or ""


def next_build_number(state_dir: Path) -> int:
    """Increment and return the local build counter."""
    state_dir.mkdir(parents=True, exist_ok=True)
    counter = state_dir / BUILD_NUMBER_FILE
    current = 0
    if counter.exists():
        try:
            current = int(counter.read_text(encoding="utf-8").strip() or 0)
        except ValueError:
            logger.warning("Corrupt build counter at {} - restarting from 1", counter)
    number = current + 1
    counter.write_text(f"{number}\n", encoding="utf-8")
    return number


def resolve_run_context(
    job_name: str,
    root: str | Path = ".",
    state_dir: str | Path | None = None,
    branch: str | None = None,
    commit: str | None = None,
    build_number: int | None = None,
) -> RunContext:
    """Create the RunContext for a new invocation.

    Explicit arguments win over CI variables, which win over git.
    """
    root = Path(root)

    if build_number is None:
        from_env = _first_env(BUILD_NUMBER_ENV_VARS)
        if from_env and from_env.isdigit():
            build_number = int(from_env)
        else:
            build_number = next_build_number(Path(state_dir) if state_dir else root / ".pipewright")

    context = RunContext(
        job_name=job_name,
        branch=branch or detect_branch(root),
        build_number=build_number,
        commit=commit if commit is not None else detect_commit(root),
    )
    logger.debug(
        "Run context: job={} branch={} build={} commit={}",
        context.job_name,
        context.branch,
        context.build_number,
        context.commit[:12],
    )
    return context

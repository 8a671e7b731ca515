"""Collection of build outputs into the durable artifact directory."""

import shutil
from collections.abc import Iterable
from pathlib import Path

from pipewright.utils.logging import logger


def stage_slug(name: str) -> str:
    """Filesystem-safe directory name for a stage."""
    slug = "".join(c.lower() if c.isalnum() else "-" for c in name).strip("-")
    return slug or "stage"


class ArtifactCollector:
    """Copies files matching a stage's artifact patterns.

    Patterns are relative globs resolved against the stage's working
    directory; a matched directory contributes every file beneath it.
    Layout: <dest>/<stage-slug>/<path relative to working directory>.
    """

    def __init__(self, dest: Path):
        self.dest = Path(dest)

    def collect(self, stage_name: str, patterns: Iterable[str], cwd: Path) -> list[str]:
        base = Path(cwd)
        target_root = self.dest / stage_slug(stage_name)
        copied: list[str] = []

        for pattern in patterns:
            matches = sorted(base.glob(pattern))
            if not matches:
                logger.warning("Stage '{}': artifact pattern '{}' matched nothing", stage_name, pattern)
                continue

            for match in matches:
                files = [match] if match.is_file() else sorted(p for p in match.rglob("*") if p.is_file())
                for src in files:
                    rel = src.relative_to(base)
                    dst = target_root / rel
                    dst.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(src, dst)
                    copied.append(dst.relative_to(self.dest).as_posix())

        if copied:
            logger.info("Stage '{}': collected {} artifact(s) into {}", stage_name, len(copied), target_root)
        return sorted(set(copied))

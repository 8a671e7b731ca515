"""Runtime configuration for pipewright - centralized configuration management."""

import copy
import json
import os
from pathlib import Path
from typing import Any

from pipewright.utils.constants import ENV_PREFIX, STATE_DIR_NAME
from pipewright.utils.logging import logger

DEFAULTS = {
    "paths": {
        "state_dir": f"./{STATE_DIR_NAME}",
        "pipeline_file": "./pipewright.yml",
    },
    "limits": {
        # Per stream (stdout and stderr each)
        "max_output_bytes": 1024 * 1024,
        "output_preview_lines": 3,
    },
    "timeouts": {
        "stage": 900,
        "approval": 3600,
        "health": 60,
        "health_interval": 5,
        "notify": 10,
    },
    "approval": {
        "auto_approve": False,
        "approved_stages": [],
    },
}


def load_runtime_config(root: str = ".") -> dict[str, Any]:
    """
    Load runtime configuration from .pipewright/config.json and environment variables.

    Config priority (highest to lowest):
    1. Environment variables (PIPEWRIGHT_<SECTION>_<KEY>)
    2. .pipewright/config.json file
    3. Built-in defaults

    Values whose type does not match the default are ignored.

    Args:
        root: Root directory to look for config file

    Returns:
        Configuration dictionary with merged values
    """

    cfg = copy.deepcopy(DEFAULTS)

    path = Path(root) / STATE_DIR_NAME / "config.json"
    try:
        if path.exists():
            with open(path, encoding="utf-8") as f:
                user = json.load(f)

            if isinstance(user, dict):
                for section in cfg:
                    if section in user and isinstance(user[section], dict):
                        for key, value in user[section].items():
                            if key in cfg[section] and _same_type(value, cfg[section][key]):
                                cfg[section][key] = value
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Could not load config file from {}: {}", path, e)
        logger.info("Continuing with default configuration")

    for section in cfg:
        for key in cfg[section]:
            env_var = f"{ENV_PREFIX}_{section.upper()}_{key.upper()}"
            if env_var in os.environ:
                value = os.environ[env_var]
                try:
                    cfg[section][key] = _coerce(value, cfg[section][key])
                except (ValueError, AttributeError) as e:
                    logger.warning(
                        "Invalid value for environment variable {}: '{}' - {}", env_var, value, e
                    )
                    logger.info("Using default value: {}", cfg[section][key])

    return cfg


def _same_type(value: Any, default: Any) -> bool:
    if isinstance(default, bool):
        return isinstance(value, bool)
    if isinstance(default, (int, float)):
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    return isinstance(value, type(default))


def _coerce(value: str, default: Any) -> Any:
    if isinstance(default, bool):
        lowered = value.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ValueError("expected a boolean")
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    if isinstance(default, list):
        return [v.strip() for v in value.split(",") if v.strip()]
    return value


def get_stage_timeout(stage_name: str, declared: float | None, config: dict[str, Any]) -> float:
    """
    Determine the timeout for a stage.

    A stage's own ``timeout`` wins, then PIPEWRIGHT_TIMEOUT_<STAGE>_SECONDS,
    then the configured default.

    Args:
        stage_name: Stage name as declared in the pipeline
        declared: Timeout declared on the stage, if any
        config: Runtime configuration

    Returns:
        Timeout in seconds
    """
    if declared is not None:
        return float(declared)

    slug = "".join(c if c.isalnum() else "_" for c in stage_name.upper())
    env_key = f"{ENV_PREFIX}_TIMEOUT_{slug}_SECONDS"
    if env_key in os.environ:
        try:
            return float(os.environ[env_key])
        except ValueError:
            logger.warning("Ignoring non-numeric {}={}", env_key, os.environ[env_key])

    return float(config["timeouts"]["stage"])

"""Environment helpers for child processes spawned by the engine."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}

BASE_PORT = 50000
PORT_SLOTS = 1000
PORT_STRIDE = 10


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9-]", "-", value.lower())
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def _hash32(seed: str) -> int:
    value = 0
    for char in seed:
        value = (value << 5) - value + ord(char)
        value = ((value + 2**31) % 2**32) - 2**31
    return value


def base_port(seed: str) -> int:
    """Deterministic per-task port block so parallel dev servers do not collide."""

    return BASE_PORT + (abs(_hash32(seed)) % PORT_SLOTS) * PORT_STRIDE


def task_env_vars(
    *,
    task_id: str,
    task_path: str,
    project_path: str,
    task_name: str | None = None,
    default_branch: str | None = None,
    port_seed: str | None = None,
) -> dict[str, str]:
    """Variables describing the task that lifecycle scripts can rely on."""

    name = slugify(task_name or Path(task_path).name) or "task"
    seed = port_seed or task_path or task_id
    return {
        "VALKYR_TASK_ID": task_id,
        "VALKYR_TASK_NAME": name,
        "VALKYR_TASK_PATH": task_path,
        "VALKYR_ROOT_PATH": project_path,
        "VALKYR_DEFAULT_BRANCH": default_branch or "main",
        "VALKYR_PORT": str(base_port(seed)),
    }


__all__ = ["base_port", "sanitize_environment", "slugify", "task_env_vars"]

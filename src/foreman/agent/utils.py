"""Environment helpers for spawned subprocesses."""

from __future__ import annotations

import os
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}

IDENTITY_HOME_VARS = ("HOME", "GEMINI_CLI_HOME")


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def identity_environment(home_directory: str | os.PathLike[str] | None) -> dict[str, str]:
    """Variables that point a worker CLI at one identity's credential home."""

    env = {"GEMINI_FORCE_FILE_STORAGE": "true"}
    if home_directory:
        for key in IDENTITY_HOME_VARS:
            env[key] = str(home_directory)
    return env

"""Resolve the node name used as the ``nodename`` label value."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Callable, Optional, Sequence, Tuple

from loguru import logger

NODE_NAME_ENV = "NODE_NAME"
HOSTNAME_FILES: Tuple[str, ...] = ("/host/etc/hostname", "/etc/hostname")
HOSTNAME_COMMAND: Tuple[str, ...] = ("hostname",)
FALLBACK = "unknown"


def _from_env(env_var: str) -> Optional[str]:
    return os.getenv(env_var, "").strip() or None


def _from_file(path: str) -> Optional[str]:
    try:
        return Path(path).read_text(encoding="utf-8").strip() or None
    except (OSError, UnicodeError) as e:
        logger.debug("Host identity file {} unusable: {}", path, e)
        return None


def _from_command(command: Sequence[str], runner: Callable = subprocess.run) -> Optional[str]:
    try:
        result = runner(list(command), capture_output=True, text=True, timeout=5)
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("Host identity command {} failed: {}", command, e)
        return None
    if result.returncode != 0:
        logger.debug("Host identity command {} exited with {}", command, result.returncode)
        return None
    return result.stdout.strip() or None


def resolve_host_identity(
    env_var: str = NODE_NAME_ENV,
    files: Sequence[str] = HOSTNAME_FILES,
    command: Sequence[str] = HOSTNAME_COMMAND,
    runner: Callable = subprocess.run,
) -> str:
    """Return the first non-empty node name from the fallback chain.

    Order: environment variable, each mounted hostname file, the ``hostname``
    command, then the literal ``"unknown"``.
    """
    value = _from_env(env_var)
    if value:
        logger.info("Node name {!r} taken from ${}", value, env_var)
        return value

    for path in files:
        value = _from_file(path)
        if value:
            logger.info("Node name {!r} taken from {}", value, path)
            return value

    value = _from_command(command, runner)
    if value:
        logger.info("Node name {!r} taken from `{}`", value, " ".join(command))
        return value

    logger.warning("Could not determine node name, using {!r}", FALLBACK)
    return FALLBACK

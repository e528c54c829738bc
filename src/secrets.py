"""Helpers for reading secrets and settings from env or the macOS Keychain."""

from __future__ import annotations

import logging
import os
import subprocess

logger = logging.getLogger(__name__)


def get_env_or_keychain(
    env_var: str,
    keychain_service: str,
    user_env: str = "USER",
    allow_missing: bool = False,
) -> str | None:
    """Return env var if set, else fall back to a Keychain lookup."""
    value = os.environ.get(env_var)
    if value:
        return value

    cmd = ["security", "find-generic-password", "-s", keychain_service]
    user = os.environ.get(user_env, "")
    if user:
        cmd += ["-a", user]
    cmd.append("-w")

    try:
        # Keychain can prompt interactively, bound the wait
        output = subprocess.check_output(cmd, text=True, timeout=5).strip()
    except (subprocess.CalledProcessError, FileNotFoundError, subprocess.TimeoutExpired):
        output = ""

    if output:
        return output
    if allow_missing:
        return None

    raise RuntimeError(
        f"No {env_var} found. Set env var or add to Keychain: "
        f"security add-generic-password -s '{keychain_service}' -a \"$USER\" -w '<KEY>'"
    )


def require_env(env_var: str) -> str:
    """Return required env var or raise a clear error."""
    value = os.environ.get(env_var)
    if value:
        return value
    raise RuntimeError(f"{env_var} environment variable not set")


def get_int_env(env_var: str, default: int) -> int:
    """Positive integer setting from the environment, else ``default``."""
    raw = os.environ.get(env_var, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", env_var, raw)
        return default
    return value if value > 0 else default

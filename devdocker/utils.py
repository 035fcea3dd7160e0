"""Shared helpers: log lines, error types and tolerant subprocess calls.

Every line emitted by the entrypoint goes to *stderr* with the ``[devdocker]``
prefix so that container logs can be grepped for the component.  Debug lines
are only printed when the caller says verbose output was requested.
"""

from __future__ import annotations

import os
import pwd
import subprocess
import sys
from typing import Mapping, Sequence

__all__ = [
    "LOG_PREFIX",
    "DevdockerError",
    "ConfigError",
    "ServiceControlError",
    "ReconcileError",
    "log",
    "debug",
    "run_command",
    "is_truthy",
    "parse_list",
]

LOG_PREFIX = "[devdocker]"

_TRUTHY = {"1", "true", "yes", "on"}


class DevdockerError(RuntimeError):
    """Base class for every error raised on purpose by the entrypoint."""


class ConfigError(DevdockerError, ValueError):
    """The environment holds a value that cannot be interpreted."""


class ServiceControlError(DevdockerError):
    """The administrative instance could not be started or stopped."""


class ReconcileError(DevdockerError):
    """The reconciliation pass had to abort before touching the service."""


def log(message: str) -> None:
    print(f"{LOG_PREFIX} {message}", file=sys.stderr)


def debug(verbose: bool, message: str) -> None:
    if verbose:
        log(f"DEBUG: {message}")


def is_truthy(value: str | None) -> bool:
    """Return *True* for the usual ``1/true/yes/on`` spellings."""

    return bool(value) and value.strip().lower() in _TRUTHY  # type: ignore[union-attr]


def parse_list(value: str | None) -> tuple[str, ...]:
    """Split a comma separated *value*, trimming items and dropping blanks.

    ``" pgcrypto, ,hstore "`` yields ``("pgcrypto", "hstore")``.  Order is
    preserved and duplicates are removed so that a name listed twice is only
    processed once per pass.
    """

    if not value:
        return ()

    seen: dict[str, None] = {}
    for item in value.split(","):
        item = item.strip()
        if item:
            seen.setdefault(item, None)
    return tuple(seen)


def run_command(
    command: Sequence[str],
    *,
    input: str | None = None,  # noqa: A002 - mirrors subprocess.run
    env: Mapping[str, str] | None = None,
    user: str | None = None,
    capture: bool = True,
) -> bool:
    """Run *command* and report success instead of raising.

    Failures (non-zero exit or missing binary) are logged together with the
    captured *stderr* and turned into ``False`` so that callers can decide
    whether the step is fatal.  Pass ``capture=False`` for commands that
    leave a daemon behind, their output then goes straight to the container
    log.

    With *user* the child runs as that account: its UID, its primary GID, no
    supplementary groups and its home directory as ``$HOME``, the same
    switch ``su-exec`` performs.
    """

    kwargs: dict[str, object] = {"check": True, "text": True}
    if capture:
        kwargs["capture_output"] = True
    if input is not None:
        kwargs["input"] = input
    if env is not None:
        kwargs["env"] = dict(env)
    if user is not None:
        try:
            record = pwd.getpwnam(user)
        except KeyError:
            log(f"Command failed: {' '.join(command)}: system user '{user}' not found")
            return False
        child_env = dict(os.environ if env is None else env)
        child_env["HOME"] = record.pw_dir
        kwargs["env"] = child_env
        kwargs["user"] = user
        kwargs["group"] = record.pw_gid
        kwargs["extra_groups"] = []

    try:
        subprocess.run(list(command), **kwargs)  # type: ignore[call-overload]
    except subprocess.CalledProcessError as err:
        detail = (err.stderr or "").strip() or f"exit status {err.returncode}"
        log(f"Command failed: {' '.join(command)}: {detail}")
        return False
    except (FileNotFoundError, PermissionError) as err:
        log(f"Command failed: {' '.join(command)}: {err}")
        return False
    return True

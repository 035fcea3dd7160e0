#!/usr/bin/env python3
"""Durable Devdocker - **container entry-point**
======================================================================

Wraps the official PostgreSQL, MySQL and Valkey images so that changing an
environment variable on an *existing* data volume actually takes effect.
The upstream images only honour ``POSTGRES_USER``, ``MYSQL_DATABASE`` & co.
on the very first boot; afterwards they are silently ignored.

Every container start goes through the same sequence:

```
Step | Concern                               | Python helper       | Failure policy
-----+---------------------------------------+---------------------+----------------------
1    | Gather & validate env vars            | gather_env          | fatal (exit 1)
2    | Runtime UID/GID mutation              | apply_runtime_user  | logged, tolerated
2    | Recursive ownership fix of data dir   | fix_permissions     | logged, tolerated
3    | Load previous state record            | PersistedState.load | -
4    | Opt-out / first-run decision          | reconcile           | -
4    | Start admin instance (no network)     | reconcile           | fatal (exit 1)
4    | Wait until admin instance answers     | wait_until_ready    | fatal (exit 1)
4    | Login / database / extensions         | reconcile           | logged, pass continues
4    | Stop admin instance                   | reconcile           | logged, state not saved
5    | Persist applied state                 | PersistedState.write| logged
6    | exec upstream docker-entrypoint.sh    | handoff             | -
```

The first boot of a fresh volume is left entirely to the upstream
entry-point: it creates the initial user and database from the very same
variables.  Reconciliation kicks in from the next start on, once the data
directory carries an initialised cluster.

Setting ``DEVDOCKER_SKIP_CONFIG_UPDATE=true`` restores the behaviour of the
stock image (UID/GID alignment still applies).
"""

from __future__ import annotations

import os
import pwd
import sys
import time
from typing import Sequence

from devdocker.config import (
    DEFAULT_HANDOFF,
    SERVICES,
    STATE_FILENAME,
    DeclaredConfig,
    ServiceProfile,
    gather_env,
)
from devdocker.controllers import (
    MySQLController,
    PostgresController,
    ServiceController,
    make_controller,
)
from devdocker.state import PersistedState
from devdocker.utils import (
    ConfigError,
    DevdockerError,
    ReconcileError,
    ServiceControlError,
    debug,
    log,
    run_command,
)

__all__ = [
    "DeclaredConfig",
    "ServiceProfile",
    "PersistedState",
    "ServiceController",
    "PostgresController",
    "MySQLController",
    "DevdockerError",
    "ConfigError",
    "ServiceControlError",
    "ReconcileError",
    "SERVICES",
    "STATE_FILENAME",
    "DEFAULT_HANDOFF",
    "gather_env",
    "make_controller",
    "apply_runtime_user",
    "fix_permissions",
    "wait_until_ready",
    "reconcile",
    "handoff",
    "main",
]


# ---------------------------------------------------------------------------
#  Runtime user
# ---------------------------------------------------------------------------


def apply_runtime_user(config: DeclaredConfig) -> None:  # noqa: D401
    """Mutate the service account to match ``$DEVDOCKER_UID`` / ``$DEVDOCKER_GID``.

    Bind-mounted data directories are owned by whatever UID the host user
    has, which rarely matches the static account baked into the image.  The
    helper aligns the account *before* anything touches the data directory:

    1. Early-exit when neither variable is set.
    2. A missing half defaults to the account's current value, so setting
       only the UID keeps the GID untouched.
    3. ``groupmod`` then ``usermod`` rewrite ``/etc/group`` and
       ``/etc/passwd``; :pyfunc:`fix_permissions` re-owns the data tree.

    Failures of the shadow-utils commands are logged and tolerated: the
    service may still start fine when the volume already has usable
    permissions.  This step runs regardless of whether the instance is new.
    """

    if config.uid is None and config.gid is None:
        return

    account = config.profile.account
    try:
        record = pwd.getpwnam(account)
    except KeyError:
        log(f"Warning: system user '{account}' not found, skipping UID/GID update")
        return

    current_uid, current_gid = record.pw_uid, record.pw_gid
    target_uid = current_uid if config.uid is None else config.uid
    target_gid = current_gid if config.gid is None else config.gid

    if (current_uid, current_gid) == (target_uid, target_gid):
        debug(config.verbose, f"{account} user already runs as {current_uid}:{current_gid}")
        return

    if os.geteuid() != 0:
        log(f"Warning: not running as root, cannot change {account} user to {target_uid}:{target_gid}")
        return

    log(
        f"Updating {account} user UID:GID from {current_uid}:{current_gid} "
        f"to {target_uid}:{target_gid}"
    )

    # Group first so that usermod can point the account at the new GID.  The
    # host ids may already be taken inside the image, hence ``-o``.
    if target_gid != current_gid:
        if not run_command(["groupmod", "-o", "-g", str(target_gid), account]):
            log(f"Warning: could not change GID of group '{account}' to {target_gid}")

    if not run_command(["usermod", "-o", "-u", str(target_uid), "-g", str(target_gid), account]):
        log(f"Warning: could not change {account} user to {target_uid}:{target_gid}")

    # Numeric owner: the names may still resolve to the old ids when a
    # shadow-utils step above failed.
    fix_permissions(config, owner=f"{target_uid}:{target_gid}")


def fix_permissions(config: DeclaredConfig, owner: str | None = None) -> None:  # noqa: D401
    """Recursively chown the data directory to *owner* (default: the service account)."""

    data_dir = config.data_dir
    account = config.profile.account
    owner = owner or f"{account}:{account}"

    if not data_dir.is_dir():
        debug(config.verbose, f"{data_dir} does not exist yet, nothing to re-own")
        return

    if os.geteuid() != 0:
        return

    log(f"Updating ownership of {data_dir}")
    if not run_command(["chown", "-R", owner, str(data_dir)]):
        log(f"Warning: could not change ownership of {data_dir}")


# ---------------------------------------------------------------------------
#  Reconciliation
# ---------------------------------------------------------------------------


def _stop_quietly(controller: ServiceController) -> None:
    try:
        controller.stop_admin()
    except ServiceControlError as exc:
        log(f"Warning: {exc}")


def wait_until_ready(config: DeclaredConfig, controller: ServiceController) -> None:
    """Poll *controller* until it answers, at a fixed interval.

    Raises:
        ReconcileError: the instance never answered within
            ``config.ready_attempts`` polls.  The administrative instance is
            stopped on a best-effort basis first.
    """

    title = config.profile.title
    attempts = config.ready_attempts

    for attempt in range(1, attempts + 1):
        if controller.is_ready():
            debug(config.verbose, f"{title} answered after {attempt} attempt(s)")
            return
        if attempt < attempts:
            debug(config.verbose, f"Attempt {attempt} of {attempts}: {title} is not up yet, waiting...")
            time.sleep(config.ready_interval)

    _stop_quietly(controller)
    raise ReconcileError(f"{title} did not become ready after {attempts} attempts")


def _apply_statements(config: DeclaredConfig, controller: ServiceController) -> None:
    """Run every declared statement, logging and skipping the ones that fail."""

    verbose = config.verbose
    user, database = config.user, config.database

    if user and config.password:
        log(f"Ensuring user '{user}' exists with current password")
        if not controller.run_statement(controller.ensure_login_sql(user, config.password)):
            log(f"Warning: Failed to ensure user '{user}'")

        if database:
            log(f"Ensuring database '{database}' exists")
            if not controller.run_statement(controller.ensure_database_sql(database, user)):
                log(f"Warning: Failed to ensure database '{database}'")
    elif user or config.password:
        debug(verbose, "Login name and password must both be set, skipping user setup")

    target = database or None
    label = database or "default database"

    for name in config.extensions:
        statement = controller.enable_extension_sql(name)
        if statement is None:
            debug(verbose, f"{config.profile.title} has no extensions, ignoring '{name}'")
            continue
        log(f"Enabling extension: {name} in database {label}")
        if controller.run_statement(statement, database=target):
            debug(verbose, f"Successfully enabled extension: {name}")
        else:
            log(f"Warning: Failed to enable extension: {name} (extension may not be available)")

    for name in config.extensions_disable:
        statement = controller.disable_extension_sql(name)
        if statement is None:
            debug(verbose, f"{config.profile.title} has no extensions, ignoring '{name}'")
            continue
        log(f"Disabling extension: {name} in database {label}")
        if controller.run_statement(statement, database=target):
            debug(verbose, f"Successfully disabled extension: {name}")
        else:
            log(f"Warning: Failed to disable extension: {name}")


def reconcile(
    config: DeclaredConfig,
    prior_state: PersistedState | None,
    controller: ServiceController | None,
) -> PersistedState | None:
    """Converge the running service to *config*; return the state to persist.

    ``None`` means nothing must be written: the pass was skipped (opt-out
    flag, first boot of an empty volume) or did not complete cleanly (the
    administrative instance refused to stop).  The caller persists the
    returned record, this function never touches the state file.

    Individual statement failures do not abort the pass.  Failing to bring
    the administrative instance up does, before any statement ran.

    Raises:
        ServiceControlError: the administrative instance could not start.
        ReconcileError: the administrative instance never became ready.
    """

    verbose = config.verbose
    title = config.profile.title

    if config.skip_update:
        debug(verbose, "Configuration updates disabled")
        return None

    new_state = PersistedState.from_config(config)

    if controller is None:
        return new_state

    if not controller.data_initialized():
        if prior_state is None:
            debug(verbose, "First run, standard initialization will handle setup")
        else:
            log(f"State record found but {config.data_dir} holds no initialised data, skipping configuration updates")
        return None

    if prior_state is None:
        debug(verbose, "No previous state recorded, adopting existing data directory")
    else:
        debug(verbose, "Previous state found, applying configuration updates")
    for key, (before, after) in new_state.changes(prior_state).items():
        debug(verbose, f"{key}: {before!r} -> {after!r}")

    log(f"Starting {title} temporarily for configuration updates")
    controller.start_admin()
    wait_until_ready(config, controller)

    try:
        _apply_statements(config, controller)
    except Exception:
        _stop_quietly(controller)
        raise

    try:
        controller.stop_admin()
    except ServiceControlError as exc:
        log(f"Warning: {exc}; configuration state not recorded, next start will retry")
        return None

    return new_state


# ---------------------------------------------------------------------------
#  Main
# ---------------------------------------------------------------------------


def handoff(config: DeclaredConfig, args: Sequence[str]) -> None:  # pragma: no cover - exec
    """Replace the current process with the upstream entry-point."""

    cmd = [*config.handoff, *args]
    debug(config.verbose, f"Handing off to {' '.join(cmd)}")
    os.execvp(cmd[0], cmd)


def main(argv: Sequence[str] | None = None, *, service: str | None = None) -> None:
    """Run the whole start-up sequence then ``exec`` the upstream entry-point.

    The function never returns in production.  Anything going wrong before
    the handoff is reported as ``[devdocker] FATAL: ...`` with exit code 1 so
    that the orchestrator can restart the container; the wrapped service is
    then never started against a half-applied configuration.
    """

    args = list(sys.argv[1:] if argv is None else argv)

    try:
        config = gather_env(service=service)
        log(f"Durable Devdocker {config.profile.title} starting")

        apply_runtime_user(config)

        prior_state = PersistedState.load(config.state_file)
        new_state = reconcile(config, prior_state, make_controller(config))

        if new_state is not None:
            try:
                new_state.write(config.state_file)
            except OSError as exc:
                log(f"Warning: could not record configuration state in {config.state_file}: {exc}")
            else:
                debug(config.verbose, f"Configuration state recorded in {config.state_file}")
    except SystemExit:
        raise
    except Exception as exc:
        log(f"FATAL: {exc}")
        sys.exit(1)

    handoff(config, args)


def postgres_main() -> None:  # pragma: no cover - console script
    main(service="postgres")


def mysql_main() -> None:  # pragma: no cover - console script
    main(service="mysql")


def valkey_main() -> None:  # pragma: no cover - console script
    main(service="valkey")


if __name__ == "__main__":  # pragma: no cover
    main()

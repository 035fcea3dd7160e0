"""Declared configuration - the environment, read once per container start.

:pyfunc:`gather_env` is the single place that looks at ``os.environ``.  It
returns an immutable :class:`DeclaredConfig` which every other helper
receives explicitly, so nothing re-reads the environment halfway through a
reconciliation pass.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from os import environ
from pathlib import Path
from typing import Mapping

from devdocker.utils import ConfigError, is_truthy, parse_list

__all__ = [
    "ServiceProfile",
    "DeclaredConfig",
    "SERVICES",
    "STATE_FILENAME",
    "DEFAULT_READY_ATTEMPTS",
    "DEFAULT_READY_INTERVAL",
    "DEFAULT_HANDOFF",
    "gather_env",
]

# Name of the record written inside the data directory after a completed
# reconciliation pass.  Shared with the historical shell entrypoints so that
# existing volumes keep their state.
STATE_FILENAME = ".devdocker-state"

DEFAULT_READY_ATTEMPTS = 30
DEFAULT_READY_INTERVAL = 1.0
DEFAULT_HANDOFF = "docker-entrypoint.sh"


@dataclass(frozen=True, slots=True)
class ServiceProfile:
    """Static description of one wrapped database image.

    The ``*_var`` attributes name the environment variables the upstream
    image already understands.  ``None`` means the service has no such
    concept (Valkey has neither logins nor databases to reconcile).
    """

    name: str
    title: str
    account: str
    data_dir: str
    data_dir_var: str | None = None
    user_var: str | None = None
    password_var: str | None = None
    database_var: str | None = None
    admin_password_var: str | None = None
    extensions_var: str | None = None
    extensions_disable_var: str | None = None

    @property
    def state_keys(self) -> tuple[str, ...]:
        keys = (
            self.user_var,
            self.database_var,
            self.extensions_var,
            self.extensions_disable_var,
            "DEVDOCKER_UID",
            "DEVDOCKER_GID",
        )
        return tuple(k for k in keys if k)


SERVICES: dict[str, ServiceProfile] = {
    "postgres": ServiceProfile(
        name="postgres",
        title="PostgreSQL",
        account="postgres",
        data_dir="/var/lib/postgresql/data",
        data_dir_var="PGDATA",
        user_var="POSTGRES_USER",
        password_var="POSTGRES_PASSWORD",
        database_var="POSTGRES_DB",
        extensions_var="POSTGRES_EXTENSIONS",
        extensions_disable_var="POSTGRES_EXTENSIONS_DISABLE",
    ),
    "mysql": ServiceProfile(
        name="mysql",
        title="MySQL",
        account="mysql",
        data_dir="/var/lib/mysql",
        user_var="MYSQL_USER",
        password_var="MYSQL_PASSWORD",
        database_var="MYSQL_DATABASE",
        admin_password_var="MYSQL_ROOT_PASSWORD",
    ),
    "valkey": ServiceProfile(
        name="valkey",
        title="Valkey",
        account="valkey",
        data_dir="/data",
    ),
}


@dataclass(frozen=True, slots=True)
class DeclaredConfig:
    """Desired state of the container for the current start."""

    profile: ServiceProfile
    data_dir: Path
    user: str = ""
    password: str = ""
    database: str = ""
    admin_password: str = ""
    extensions: tuple[str, ...] = ()
    extensions_disable: tuple[str, ...] = ()
    uid: int | None = None
    gid: int | None = None
    skip_update: bool = False
    verbose: bool = False
    ready_attempts: int = DEFAULT_READY_ATTEMPTS
    ready_interval: float = DEFAULT_READY_INTERVAL
    handoff: tuple[str, ...] = (DEFAULT_HANDOFF,)

    @property
    def service(self) -> str:
        return self.profile.name

    @property
    def state_file(self) -> Path:
        return self.data_dir / STATE_FILENAME

    def state_values(self) -> dict[str, str]:
        """Return the ``KEY -> value`` pairs recorded after a successful pass.

        Passwords are deliberately absent: the record lives on the data
        volume and only needs to describe *what* was applied.
        """

        p = self.profile
        values = {
            p.user_var: self.user,
            p.database_var: self.database,
            p.extensions_var: ",".join(self.extensions),
            p.extensions_disable_var: ",".join(self.extensions_disable),
            "DEVDOCKER_UID": "" if self.uid is None else str(self.uid),
            "DEVDOCKER_GID": "" if self.gid is None else str(self.gid),
        }
        return {key: values[key] for key in p.state_keys}


def gather_env(
    env: Mapping[str, str] | None = None,
    *,
    service: str | None = None,
) -> DeclaredConfig:
    """Build the :class:`DeclaredConfig` for *service* from *env*.

    *env* defaults to ``os.environ``; unknown keys are ignored so callers
    may pass the real environment directly.  The service name falls back to
    ``$DEVDOCKER_SERVICE`` when *service* is not given.

    Raises:
        ConfigError: the service is unknown, a numeric setting is not a
            number or a recorded value spans several lines.
    """

    src = environ if env is None else env

    def _get(key: str | None, default: str = "") -> str:  # noqa: WPS430 - tiny nested helper
        if not key:
            return default
        return str(src.get(key, default))

    def _int(key: str, default: int | None, minimum: int) -> int | None:
        raw = _get(key).strip()
        if not raw:
            return default
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc
        if value < minimum:
            raise ConfigError(f"{key} must be >= {minimum}, got {value}")
        return value

    name = (service or _get("DEVDOCKER_SERVICE")).strip().lower()
    if not name:
        raise ConfigError("DEVDOCKER_SERVICE is not set")
    try:
        profile = SERVICES[name]
    except KeyError as exc:
        known = ", ".join(sorted(SERVICES))
        raise ConfigError(f"unknown service {name!r} (expected one of: {known})") from exc

    raw_interval = _get("DEVDOCKER_READY_INTERVAL").strip()
    try:
        ready_interval = float(raw_interval) if raw_interval else DEFAULT_READY_INTERVAL
    except ValueError as exc:
        raise ConfigError(f"DEVDOCKER_READY_INTERVAL must be a number, got {raw_interval!r}") from exc
    if ready_interval < 0:
        raise ConfigError("DEVDOCKER_READY_INTERVAL must not be negative")

    handoff = tuple(shlex.split(_get("DEVDOCKER_HANDOFF"))) or (DEFAULT_HANDOFF,)

    config = DeclaredConfig(
        profile=profile,
        data_dir=Path(_get(profile.data_dir_var) or profile.data_dir),
        user=_get(profile.user_var),
        password=_get(profile.password_var),
        database=_get(profile.database_var),
        admin_password=_get(profile.admin_password_var),
        extensions=parse_list(_get(profile.extensions_var)),
        extensions_disable=parse_list(_get(profile.extensions_disable_var)),
        uid=_int("DEVDOCKER_UID", None, 0),
        gid=_int("DEVDOCKER_GID", None, 0),
        skip_update=is_truthy(_get("DEVDOCKER_SKIP_CONFIG_UPDATE")),
        verbose=is_truthy(_get("DEVDOCKER_VERBOSE")),
        ready_attempts=_int("DEVDOCKER_READY_ATTEMPTS", DEFAULT_READY_ATTEMPTS, 1),  # type: ignore[arg-type]
        ready_interval=ready_interval,
        handoff=handoff,
    )

    # The state record is line oriented.
    for key, value in config.state_values().items():
        if "\n" in value or "\r" in value:
            raise ConfigError(f"{key} must not contain line breaks")
    return config

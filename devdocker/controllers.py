"""Administrative-mode bindings for the wrapped database services.

A controller knows how to start its service *without* a network listener,
tell when that instance answers, feed it administrative statements and stop
it again.  It also renders the statements in its own SQL dialect so the
reconciler in :pymod:`devdocker.entrypoint` stays service-agnostic.

Everything shells out to the tools that ship inside the upstream images
(``pg_ctl``, ``psql``, ``mysqld``, ``mysqladmin``, ``mysql``).  The only
exception is the PostgreSQL readiness probe which opens a real client
connection through :pymod:`psycopg2` over the local unix socket.
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import psycopg2
from psycopg2 import OperationalError

from devdocker.utils import ServiceControlError, debug, run_command

if TYPE_CHECKING:  # pragma: no cover
    from devdocker.config import DeclaredConfig

__all__ = [
    "ServiceController",
    "PostgresController",
    "MySQLController",
    "make_controller",
    "pg_quote_ident",
    "pg_quote_literal",
    "mysql_quote_ident",
    "mysql_quote_literal",
]


class ServiceController(Protocol):
    """Capability handed to :pyfunc:`devdocker.entrypoint.reconcile`."""

    def data_initialized(self) -> bool: ...

    def start_admin(self) -> None: ...

    def is_ready(self) -> bool: ...

    def run_statement(self, statement: str, *, database: str | None = None) -> bool: ...

    def stop_admin(self) -> None: ...

    def ensure_login_sql(self, user: str, password: str) -> str: ...

    def ensure_database_sql(self, database: str, owner: str) -> str: ...

    def enable_extension_sql(self, name: str) -> str | None: ...

    def disable_extension_sql(self, name: str) -> str | None: ...


def _run_as(account: str) -> str | None:
    """Return *account* when we are root and can switch to it, else ``None``."""

    return account if os.geteuid() == 0 else None


# ---------------------------------------------------------------------------
#  PostgreSQL
# ---------------------------------------------------------------------------


def pg_quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def pg_quote_literal(value: str) -> str:
    # standard_conforming_strings is on by default since 9.1, backslashes
    # are therefore literal and only the quote needs doubling.
    return "'" + value.replace("'", "''") + "'"


class PostgresController:
    """Drive a PostgreSQL cluster through ``pg_ctl`` and ``psql``."""

    socket_dir = "/var/run/postgresql"
    default_database = "postgres"
    superuser = "postgres"
    connect_timeout = 2

    def __init__(self, config: DeclaredConfig) -> None:
        self.data_dir = Path(config.data_dir)
        self.account = config.profile.account
        self.verbose = config.verbose

    def data_initialized(self) -> bool:
        marker = self.data_dir / "PG_VERSION"
        try:
            return marker.is_file() and marker.stat().st_size > 0
        except OSError:
            return False

    def start_admin(self) -> None:
        # Output is not captured: the postmaster inherits the descriptors and
        # would keep a pipe open for as long as it runs.
        ok = run_command(
            [
                "pg_ctl",
                "-D",
                str(self.data_dir),
                "-o",
                "-c listen_addresses=''",
                "-w",
                "start",
            ],
            user=_run_as(self.account),
            capture=False,
        )
        if not ok:
            raise ServiceControlError("could not start PostgreSQL in administrative mode")

    def is_ready(self) -> bool:
        try:
            conn = psycopg2.connect(
                host=self.socket_dir,
                user=self.superuser,
                dbname=self.default_database,
                connect_timeout=self.connect_timeout,
            )
        except OperationalError as exc:
            debug(self.verbose, f"PostgreSQL not ready yet: {str(exc).strip()}")
            return False
        conn.close()
        return True

    def run_statement(self, statement: str, *, database: str | None = None) -> bool:
        return run_command(
            [
                "psql",
                "-v",
                "ON_ERROR_STOP=1",
                "--username",
                self.superuser,
                "--no-password",
                "--dbname",
                database or self.default_database,
            ],
            input=statement,
            user=_run_as(self.account),
        )

    def stop_admin(self) -> None:
        ok = run_command(
            ["pg_ctl", "-D", str(self.data_dir), "-m", "fast", "-w", "stop"],
            user=_run_as(self.account),
            capture=False,
        )
        if not ok:
            raise ServiceControlError("could not stop the administrative PostgreSQL instance")

    def ensure_login_sql(self, user: str, password: str) -> str:
        ident, name, secret = pg_quote_ident(user), pg_quote_literal(user), pg_quote_literal(password)
        return (
            "DO $devdocker$\n"
            "BEGIN\n"
            f"    IF NOT EXISTS (SELECT FROM pg_catalog.pg_roles WHERE rolname = {name}) THEN\n"
            f"        CREATE ROLE {ident} WITH LOGIN PASSWORD {secret};\n"
            "    ELSE\n"
            f"        ALTER ROLE {ident} WITH LOGIN PASSWORD {secret};\n"
            "    END IF;\n"
            "END\n"
            "$devdocker$;\n"
        )

    def ensure_database_sql(self, database: str, owner: str) -> str:
        # CREATE DATABASE cannot run inside a DO block, psql's \gexec runs the
        # generated statement only when the SELECT returns a row.
        create = f"CREATE DATABASE {pg_quote_ident(database)} OWNER {pg_quote_ident(owner)}"
        return (
            f"SELECT {pg_quote_literal(create)}\n"
            f"WHERE NOT EXISTS (SELECT FROM pg_database WHERE datname = {pg_quote_literal(database)})\\gexec\n"
            f"GRANT ALL PRIVILEGES ON DATABASE {pg_quote_ident(database)} TO {pg_quote_ident(owner)};\n"
        )

    def enable_extension_sql(self, name: str) -> str | None:
        return f"CREATE EXTENSION IF NOT EXISTS {pg_quote_ident(name)};\n"

    def disable_extension_sql(self, name: str) -> str | None:
        return f"DROP EXTENSION IF EXISTS {pg_quote_ident(name)} CASCADE;\n"


# ---------------------------------------------------------------------------
#  MySQL
# ---------------------------------------------------------------------------


def mysql_quote_ident(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


def mysql_quote_literal(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "''") + "'"


class MySQLController:
    """Drive a private ``mysqld`` listening on a unix socket only."""

    socket = "/tmp/mysql-devdocker.sock"
    shutdown_timeout = 60

    def __init__(self, config: DeclaredConfig) -> None:
        self.data_dir = Path(config.data_dir)
        self.account = config.profile.account
        self.root_password = config.admin_password
        self.verbose = config.verbose
        self._process: subprocess.Popen | None = None

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self.root_password:
            env["MYSQL_PWD"] = self.root_password
        return env

    def data_initialized(self) -> bool:
        return (self.data_dir / "mysql").is_dir()

    def start_admin(self) -> None:
        cmd = [
            "mysqld",
            f"--user={self.account}",
            f"--datadir={self.data_dir}",
            "--skip-networking",
            f"--socket={self.socket}",
        ]
        try:
            self._process = subprocess.Popen(cmd)
        except OSError as exc:
            raise ServiceControlError(f"could not start MySQL in administrative mode: {exc}") from exc

    def is_ready(self) -> bool:
        if self._process is not None and self._process.poll() is not None:
            debug(self.verbose, f"mysqld exited with status {self._process.returncode}")
            return False
        try:
            result = subprocess.run(
                ["mysqladmin", "ping", f"--socket={self.socket}", "--user=root"],
                capture_output=True,
                text=True,
                env=self._env(),
            )
        except OSError as exc:
            debug(self.verbose, f"mysqladmin unavailable: {exc}")
            return False
        return result.returncode == 0

    def run_statement(self, statement: str, *, database: str | None = None) -> bool:
        cmd = ["mysql", f"--socket={self.socket}", "--user=root"]
        if database:
            cmd.append(database)
        return run_command(cmd, input=statement, env=self._env())

    def stop_admin(self) -> None:
        ok = run_command(
            ["mysqladmin", f"--socket={self.socket}", "--user=root", "shutdown"],
            env=self._env(),
        )
        if not ok:
            raise ServiceControlError("could not stop the administrative MySQL instance")
        if self._process is None:
            return
        try:
            self._process.wait(timeout=self.shutdown_timeout)
        except subprocess.TimeoutExpired as exc:
            raise ServiceControlError(
                f"mysqld did not exit within {self.shutdown_timeout}s of shutdown"
            ) from exc
        self._process = None

    def ensure_login_sql(self, user: str, password: str) -> str:
        account = f"{mysql_quote_literal(user)}@'%'"
        secret = mysql_quote_literal(password)
        return (
            f"CREATE USER IF NOT EXISTS {account} IDENTIFIED BY {secret};\n"
            f"ALTER USER {account} IDENTIFIED BY {secret};\n"
        )

    def ensure_database_sql(self, database: str, owner: str) -> str:
        db = mysql_quote_ident(database)
        return (
            f"CREATE DATABASE IF NOT EXISTS {db};\n"
            f"GRANT ALL PRIVILEGES ON {db}.* TO {mysql_quote_literal(owner)}@'%';\n"
            "FLUSH PRIVILEGES;\n"
        )

    def enable_extension_sql(self, name: str) -> str | None:
        return None

    def disable_extension_sql(self, name: str) -> str | None:
        return None


_CONTROLLERS = {
    "postgres": PostgresController,
    "mysql": MySQLController,
}


def make_controller(config: DeclaredConfig) -> ServiceController | None:
    """Return the controller for *config*'s service.

    ``None`` means the service has no logical configuration to reconcile
    (Valkey) and therefore no administrative mode.
    """

    factory = _CONTROLLERS.get(config.service)
    return factory(config) if factory is not None else None

"""Pytest configuration - make the local *devdocker* package importable and
provide an in-memory stand-in for the database services.

The :class:`FakeController` mirrors the ``ServiceController`` capability but
keeps its "database" in plain dictionaries.  The SQL builders return tiny
``KIND|arg|arg`` records that :pymeth:`FakeController.run_statement`
interprets, which lets the tests assert on the resulting *state* (who can
log in, which extensions exist) rather than on SQL text.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Callable

import pytest


def pytest_configure() -> None:  # noqa: D401 – Pytest hook name
    root = Path(os.getenv("PYTEST_PROJECT_ROOT", Path(__file__).resolve().parents[1])).resolve()
    if str(root) not in sys.path:  # pragma: no cover – executed once
        sys.path.insert(0, str(root))


class FakeController:
    def __init__(
        self,
        *,
        initialized: bool = True,
        ready_after: int | None = 1,
        fail_start: bool = False,
        fail_stop: bool = False,
        available_extensions: tuple[str, ...] = ("pgcrypto", "hstore", "uuid-ossp"),
        supports_extensions: bool = True,
        unremovable_extensions: tuple[str, ...] = (),
        failing_kinds: tuple[str, ...] = (),
    ) -> None:
        from devdocker.utils import ServiceControlError

        self._error = ServiceControlError
        self.initialized = initialized
        self.ready_after = ready_after
        self.fail_start = fail_start
        self.fail_stop = fail_stop
        self.available_extensions = set(available_extensions)
        self.supports_extensions = supports_extensions
        self.unremovable_extensions = set(unremovable_extensions)
        self.failing_kinds = set(failing_kinds)

        self.calls: list[str] = []
        self.statements: list[tuple[str, str | None]] = []
        self.polls = 0
        self.mutations = 0
        self.running = False

        self.logins: dict[str, str] = {}
        self.databases: dict[str, str] = {}
        self.grants: set[tuple[str, str]] = set()
        self.extensions: set[str] = set()

    # -- capability ---------------------------------------------------------

    def data_initialized(self) -> bool:
        return self.initialized

    def start_admin(self) -> None:
        self.calls.append("start")
        if self.fail_start:
            raise self._error("could not start fake service")
        self.running = True

    def is_ready(self) -> bool:
        self.polls += 1
        self.calls.append("ready")
        return self.ready_after is not None and self.polls >= self.ready_after

    def run_statement(self, statement: str, *, database: str | None = None) -> bool:
        assert self.running, "statement issued while the admin instance is down"
        self.statements.append((statement, database))
        kind, *args = statement.split("|")
        if kind in self.failing_kinds:
            return False

        if kind == "LOGIN":
            user, password = args
            if self.logins.get(user) != password:
                self.logins[user] = password
                self.mutations += 1
        elif kind == "DATABASE":
            name, owner = args
            if name not in self.databases:
                self.databases[name] = owner
                self.mutations += 1
            self.grants.add((name, owner))
        elif kind == "ENABLE":
            (name,) = args
            if name not in self.available_extensions:
                return False
            if name not in self.extensions:
                self.extensions.add(name)
                self.mutations += 1
        elif kind == "DISABLE":
            (name,) = args
            if name in self.unremovable_extensions:
                return False
            if name in self.extensions:
                self.extensions.discard(name)
                self.mutations += 1
        else:  # pragma: no cover - would be a bug in the test double
            raise AssertionError(f"unexpected statement {statement!r}")
        return True

    def stop_admin(self) -> None:
        self.calls.append("stop")
        if self.fail_stop:
            raise self._error("could not stop fake service")
        self.running = False

    def ensure_login_sql(self, user: str, password: str) -> str:
        return f"LOGIN|{user}|{password}"

    def ensure_database_sql(self, database: str, owner: str) -> str:
        return f"DATABASE|{database}|{owner}"

    def enable_extension_sql(self, name: str) -> str | None:
        return f"ENABLE|{name}" if self.supports_extensions else None

    def disable_extension_sql(self, name: str) -> str | None:
        return f"DISABLE|{name}" if self.supports_extensions else None

    # -- assertions helpers -------------------------------------------------

    def authenticates(self, user: str, password: str) -> bool:
        return self.logins.get(user) == password


@pytest.fixture
def fake_controller() -> Callable[..., FakeController]:
    return FakeController


@pytest.fixture
def make_config(tmp_path: Path):
    """Return a factory building a *DeclaredConfig* rooted under *tmp_path*."""

    from devdocker.config import gather_env

    def _make(service: str = "postgres", **env: str):
        src = {"PGDATA": str(tmp_path / "pgdata")}
        src.update(env)
        return gather_env(src, service=service)

    return _make

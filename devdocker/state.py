"""Persisted state - the last configuration that was fully applied.

The record is a flat ``KEY=value`` text file inside the service's data
directory.  Its absence is meaningful (nothing was ever applied), which is
why :pymeth:`PersistedState.load` returns ``None`` rather than an empty
record.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Mapping

if TYPE_CHECKING:  # pragma: no cover
    from devdocker.config import DeclaredConfig

__all__ = ["PersistedState"]


@dataclass(frozen=True)
class PersistedState:
    values: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: DeclaredConfig) -> PersistedState:
        return cls(config.state_values())

    @classmethod
    def parse(cls, text: str) -> PersistedState:
        """Parse the on-disk format.

        Blank lines and ``#`` comments are skipped, the value is everything
        after the *first* ``=`` so it may itself contain equal signs.  Lines
        without a separator are ignored.
        """

        values: dict[str, str] = {}
        for line in text.splitlines():
            if not line.strip() or line.lstrip().startswith("#"):
                continue
            key, sep, value = line.partition("=")
            if not sep:
                continue
            values[key.strip()] = value
        return cls(values)

    @classmethod
    def load(cls, path: Path) -> PersistedState | None:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return cls.parse(text)

    def dump(self) -> str:
        return "".join(f"{key}={value}\n" for key, value in self.values.items())

    def write(self, path: Path) -> None:
        """Replace *path* with this record in a single atomic step.

        The data is written to a temporary sibling first and then renamed
        over the target, so a crash leaves either the old record or the new
        one but never a truncated file.
        """

        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(self.dump())
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
            raise

    def changes(self, previous: PersistedState | None) -> dict[str, tuple[str | None, str | None]]:
        """Return ``key -> (old, new)`` for every value that differs from *previous*."""

        old = {} if previous is None else dict(previous.values)
        diff: dict[str, tuple[str | None, str | None]] = {}
        for key in sorted(set(old) | set(self.values)):
            before, after = old.get(key), self.values.get(key)
            if before != after:
                diff[key] = (before, after)
        return diff

"""Symlink forest between Cellar kegs and the shared prefix."""

from __future__ import annotations

import os
import time
from pathlib import Path

from brewengine.core.config import BrewEnv
from brewengine.core.errors import LinkConflictError
from brewengine.core.logging import get_logger
from brewengine.core.models import CellarSlot, LinkState

log = get_logger(__name__)

LINKED_DIRS = ("bin", "etc", "include", "lib", "sbin", "share", "var", "Frameworks")


class Linker:
    """Creates and removes the prefix symlinks of a formula.

    A prefix path belongs to a formula when it is a symlink resolving into
    ``<cellar>/<name>/``. Anything else in the way is a conflict.
    """

    def __init__(self, env: BrewEnv):
        self.env = env

    def _rack(self, name: str) -> Path:
        return self.env.cellar / name

    def _owned_by(self, target: Path, name: str) -> bool:
        if not target.is_symlink():
            return False
        resolved = Path(os.path.realpath(target))
        rack = Path(os.path.realpath(self._rack(name)))
        return resolved.is_relative_to(rack)

    def _mapping(self, slot: CellarSlot) -> list[tuple[Path, Path]]:
        pairs = []
        for top in LINKED_DIRS:
            base = slot.path / top
            if not base.is_dir():
                continue
            for source in sorted(base.rglob("*")):
                if source.is_dir() and not source.is_symlink():
                    continue
                pairs.append((source, self.env.prefix / source.relative_to(slot.path)))
        return pairs

    def state(self, name: str) -> LinkState:
        record = self.env.linked_dir / name
        if not record.is_symlink():
            return LinkState(name=name, version=None, record=record)
        return LinkState(name=name, version=Path(os.readlink(record)).name, record=record)

    def linked_version(self, name: str) -> str | None:
        return self.state(name).version

    def is_linked(self, slot: CellarSlot) -> bool:
        return self.linked_version(slot.name) == slot.version

    def link(self, slot: CellarSlot) -> list[Path]:
        """Symlink every file of ``slot`` into the prefix.

        Args:
            slot: The keg to expose.

        Returns:
            The symlinks created.

        Raises:
            LinkConflictError: If any target exists and is not owned by
                this formula. Nothing is changed in that case.
        """
        start = time.perf_counter()
        pairs = self._mapping(slot)

        conflicts = [
            str(target) for _, target in pairs
            if (target.exists() or target.is_symlink()) and not self._owned_by(target, slot.name)
        ]
        if conflicts:
            log.error("link_conflict", package=slot.name, version=slot.version, count=len(conflicts))
            raise LinkConflictError(slot.name, conflicts)

        current = self.linked_version(slot.name)
        if current is not None and current != slot.version:
            self.unlink(slot.name)

        created = []
        for source, target in pairs:
            target.parent.mkdir(parents=True, exist_ok=True)
            if target.is_symlink():
                if Path(os.path.realpath(target)) == Path(os.path.realpath(source)):
                    continue
                target.unlink()
            target.symlink_to(source)
            created.append(target)

        record = self.env.linked_dir / slot.name
        record.parent.mkdir(parents=True, exist_ok=True)
        if record.is_symlink():
            record.unlink()
        record.symlink_to(slot.path)

        duration_ms = int((time.perf_counter() - start) * 1000)
        log.info(
            "link_complete",
            package=slot.name,
            version=slot.version,
            links=len(created),
            duration_ms=duration_ms
        )
        return created

    def unlink(self, name: str) -> list[Path]:
        """Remove the prefix symlinks owned by ``name``.

        Each candidate is resolved back into the formula's rack before it
        is removed; links that now point elsewhere are left alone.

        Returns:
            The symlinks removed.
        """
        removed = []
        rack = self._rack(name)
        kegs = sorted(p for p in rack.iterdir() if p.is_dir()) if rack.is_dir() else []

        for keg in kegs:
            slot = CellarSlot(name=name, version=keg.name, path=keg)
            for _, target in self._mapping(slot):
                if self._owned_by(target, name):
                    target.unlink()
                    removed.append(target)
                    self._prune_empty_dirs(target.parent)

        record = self.env.linked_dir / name
        if record.is_symlink():
            record.unlink()

        log.info("unlink_complete", package=name, links=len(removed))
        return removed

    def _prune_empty_dirs(self, directory: Path) -> None:
        prefix = self.env.prefix
        while directory != prefix and directory.is_relative_to(prefix):
            try:
                directory.rmdir()
            except OSError:
                return
            directory = directory.parent

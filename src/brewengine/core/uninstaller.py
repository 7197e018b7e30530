"""Uninstaller: reverses installs, guarding against breaking dependents."""

from __future__ import annotations

import shutil
import time
from dataclasses import dataclass

from brewengine.core.config import BrewEnv
from brewengine.core.errors import DependentsExistError
from brewengine.core.linker import Linker
from brewengine.core.locks import formula_lock
from brewengine.core.logging import get_logger
from brewengine.core.models import CellarSlot
from brewengine.core.receipts import ReceiptStore

log = get_logger(__name__)


@dataclass(frozen=True)
class RemovedKeg:
    """A keg deleted by uninstall, with its size before removal."""

    slot: CellarSlot
    file_count: int
    size_bytes: int


class Uninstaller:
    def __init__(self, env: BrewEnv, receipts: ReceiptStore, linker: Linker):
        self.env = env
        self.receipts = receipts
        self.linker = linker

    def uninstall(self, name: str, force: bool = False) -> list[RemovedKeg]:
        """Remove every keg of ``name`` together with its receipts.

        Args:
            name: Canonical formula name.
            force: Remove even if other installed formulae depend on it.

        Returns:
            The removed kegs; empty when nothing was installed.

        Raises:
            DependentsExistError: If dependents exist and ``force`` is false.
        """
        name = name.lower()
        with formula_lock(self.env, name):
            kegs = self.receipts.kegs(name)
            if not kegs:
                log.info("uninstall_noop", package=name)
                return []

            dependents = self.receipts.dependents(name)
            if dependents and not force:
                log.warning("uninstall_blocked", package=name, dependents=dependents)
                raise DependentsExistError(name, dependents)
            if dependents:
                log.warning("uninstall_forced", package=name, dependents=dependents)

            start = time.perf_counter()
            self.linker.unlink(name)

            removed = []
            for slot in kegs:
                count, size = slot.disk_usage()
                self.receipts.delete(slot.name, slot.version)
                shutil.rmtree(slot.path)
                removed.append(RemovedKeg(slot=slot, file_count=count, size_bytes=size))
                log.info("keg_removed", package=name, version=slot.version, path=str(slot.path))

            rack = self.env.cellar / name
            if rack.is_dir() and not any(rack.iterdir()):
                rack.rmdir()

            duration_ms = int((time.perf_counter() - start) * 1000)
            log.info("uninstall_complete", package=name, kegs=len(removed), duration_ms=duration_ms)
            return removed

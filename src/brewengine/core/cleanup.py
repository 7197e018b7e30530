"""Cleanup of the download cache and superseded Cellar versions."""

from __future__ import annotations

import shutil
from pathlib import Path

from brewengine.core.cache import CacheManager
from brewengine.core.config import BrewEnv
from brewengine.core.linker import Linker
from brewengine.core.locks import formula_lock
from brewengine.core.logging import get_logger
from brewengine.core.receipts import ReceiptStore

log = get_logger(__name__)


class Cleanup:
    def __init__(self, env: BrewEnv, cache: CacheManager, receipts: ReceiptStore, linker: Linker):
        self.env = env
        self.cache = cache
        self.receipts = receipts
        self.linker = linker

    def run(self, prune: str = "stale", force: bool = False) -> list[Path]:
        """Remove old kegs, then prune the cache.

        Args:
            prune: Cache prune scope, ``"stale"`` or ``"all"``.
            force: Also remove old versions that other receipts still
                record as their dependency version.

        Returns:
            Every removed path, kegs first.
        """
        removed = self.old_kegs(force=force)
        removed += self.cache.prune(prune)
        log.info("cleanup_complete", prune=prune, removed=len(removed))
        return removed

    def old_kegs(self, force: bool = False) -> list[Path]:
        """Remove kegs that are neither linked nor the newest install."""
        removed = []
        for name in self.receipts.names():
            with formula_lock(self.env, name):
                removed += self._clean_rack(name, force)
        return removed

    def _clean_rack(self, name: str, force: bool) -> list[Path]:
        kegs = self.receipts.kegs(name)
        if len(kegs) < 2:
            return []

        keep = set()
        latest = self.receipts.latest(name)
        if latest is not None:
            keep.add(latest.version)
        linked = self.linker.linked_version(name)
        if linked is not None:
            keep.add(linked)
        if not force:
            keep |= {
                dep.version
                for receipt in self.receipts.all() if receipt.name != name
                for dep in receipt.dependencies if dep.name == name and dep.version
            }

        removed = []
        for slot in kegs:
            if slot.version in keep:
                continue
            shutil.rmtree(slot.path)
            removed.append(slot.path)
            log.info("old_keg_removed", package=name, version=slot.version, path=str(slot.path))
        return removed

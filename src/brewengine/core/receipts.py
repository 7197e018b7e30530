"""Install receipt store backed by the Cellar."""

from __future__ import annotations

import json
import os
from pathlib import Path

from brewengine.core.config import BrewEnv
from brewengine.core.logging import get_logger
from brewengine.core.models import CellarSlot, InstallReceipt

log = get_logger(__name__)


class ReceiptStore:
    """One ``INSTALL_RECEIPT.json`` per keg; the Cellar is the database.

    Every query re-reads the disk so separate processes see each other's
    installs and uninstalls.
    """

    def __init__(self, env: BrewEnv):
        self.env = env

    def slot(self, name: str, version: str) -> CellarSlot:
        return CellarSlot(name=name, version=version, path=self.env.cellar / name / version)

    def kegs(self, name: str) -> list[CellarSlot]:
        """All kegs of ``name`` on disk, with or without receipts."""
        rack = self.env.cellar / name
        if not rack.is_dir():
            return []
        return [
            self.slot(name, p.name)
            for p in sorted(rack.iterdir())
            if p.is_dir() and not p.name.startswith(".")
        ]

    def names(self) -> list[str]:
        if not self.env.cellar.is_dir():
            return []
        return sorted(
            p.name for p in self.env.cellar.iterdir()
            if p.is_dir() and not p.name.startswith(".")
        )

    def read(self, name: str, version: str) -> InstallReceipt | None:
        path = self.slot(name, version).receipt_path
        if not path.is_file():
            return None
        try:
            return InstallReceipt.from_dict(json.loads(path.read_text()))
        except (json.JSONDecodeError, KeyError, ValueError):
            log.warning("receipt_corrupted", path=str(path), exc_info=True)
            return None

    def write(self, receipt: InstallReceipt) -> Path:
        """Atomically write a receipt into its keg."""
        path = self.slot(receipt.name, receipt.version).receipt_path
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(receipt.to_dict(), indent=2, sort_keys=True))
        os.replace(tmp, path)
        log.info("receipt_written", package=receipt.name, version=receipt.version)
        return path

    def delete(self, name: str, version: str) -> None:
        self.slot(name, version).receipt_path.unlink(missing_ok=True)

    def exists(self, name: str, version: str | None = None) -> bool:
        if version is not None:
            return self.slot(name, version).receipt_path.is_file()
        return any(k.receipt_path.is_file() for k in self.kegs(name))

    def for_name(self, name: str) -> list[InstallReceipt]:
        """Receipts of ``name``, oldest install first."""
        receipts = [r for k in self.kegs(name) if (r := self.read(name, k.version))]
        return sorted(receipts, key=lambda r: r.time)

    def latest(self, name: str) -> InstallReceipt | None:
        receipts = self.for_name(name)
        return receipts[-1] if receipts else None

    def all(self) -> list[InstallReceipt]:
        return [r for name in self.names() for r in self.for_name(name)]

    def dependents(self, name: str) -> list[str]:
        """Names of other installed formulae whose receipts list ``name``."""
        return sorted({
            r.name for r in self.all()
            if r.name != name and r.depends_on(name)
        })

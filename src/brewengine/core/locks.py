"""Advisory file locks shared by concurrent brewengine processes."""

from __future__ import annotations

import fcntl
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from brewengine.core.config import BrewEnv
from brewengine.core.logging import get_logger

log = get_logger(__name__)


@contextmanager
def file_lock(path: Path) -> Iterator[None]:
    """Hold an exclusive ``flock`` on ``path`` for the duration of the block.

    Blocks until the lock is available. Locks are per open file, so the
    same process must not nest two locks on the same path.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    start = time.perf_counter()
    with open(path, "a") as handle:
        fcntl.flock(handle, fcntl.LOCK_EX)
        waited_ms = int((time.perf_counter() - start) * 1000)
        log.debug("lock_acquired", path=str(path), waited_ms=waited_ms)
        try:
            yield
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)
            log.debug("lock_released", path=str(path))


def formula_lock(env: BrewEnv, name: str):
    """Lock guarding a formula's kegs and receipts."""
    return file_lock(env.lock_dir / f"{name}.formula.lock")


def download_lock(env: BrewEnv, key: str):
    """Lock guarding a single cache key while it is downloaded."""
    return file_lock(env.lock_dir / f"{key}.download.lock")

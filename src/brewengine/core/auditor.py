"""Report runtime dependencies whose formulae are no longer installed."""

from __future__ import annotations

from typing import Iterable

from brewengine.core.logging import get_logger
from brewengine.core.receipts import ReceiptStore

log = get_logger(__name__)


def missing(receipts: ReceiptStore, names: Iterable[str] | None = None) -> list[str]:
    """Sorted, de-duplicated names of missing runtime dependencies.

    Build-time dependencies are ignored: they are not needed once a
    formula is installed.

    Args:
        receipts: The receipt store to audit.
        names: Only audit these installed formulae.
    """
    wanted = {n.lower() for n in names} if names is not None else None
    result = set()
    for receipt in receipts.all():
        if wanted is not None and receipt.name not in wanted:
            continue
        for dep in receipt.runtime_dependencies:
            if not receipts.exists(dep.name):
                result.add(dep.name)

    log.info("missing_audit_complete", missing=sorted(result))
    return sorted(result)

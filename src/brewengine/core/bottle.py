"""Package an installed keg as a bottle archive."""

from __future__ import annotations

import tarfile
from pathlib import Path

from brewengine.core.cache import sha256_file
from brewengine.core.config import BrewEnv
from brewengine.core.errors import FormulaUnavailableError, UserError
from brewengine.core.logging import get_logger
from brewengine.core.models import Formula
from brewengine.core.receipts import ReceiptStore

log = get_logger(__name__)


def bottle_filename(formula: Formula, tag: str, revision: int | None = None) -> str:
    rev = f".{revision}" if revision else ""
    return f"{formula.name}-{formula.version}.{tag}.bottle{rev}.tar.gz"


def build_bottle(
    env: BrewEnv,
    receipts: ReceiptStore,
    formula: Formula,
    dest: Path,
    revision: int | None = None,
) -> tuple[Path, str]:
    """Write ``<name>/<version>/…`` of an installed keg to a tar.gz.

    Args:
        env: The active configuration.
        receipts: Receipt store used to find the keg.
        formula: A registry-resident formula.
        dest: Directory to write the archive to.
        revision: Bottle revision, omitted from the name when None.

    Returns:
        The archive path and its sha256.

    Raises:
        UserError: If the formula was loaded from a bare file.
        FormulaUnavailableError: If the formula is not installed.
    """
    if formula.tap is None:
        raise UserError("Formula not from core or any taps", context={"package": formula.name})

    slot = receipts.slot(formula.name, formula.version)
    if not receipts.exists(formula.name, formula.version):
        raise FormulaUnavailableError(
            f"Formula not installed: {formula.name} {formula.version}", name=formula.name
        )

    archive = dest / bottle_filename(formula, env.bottle_tag, revision)
    with tarfile.open(archive, "w:gz") as tar:
        tar.add(slot.path, arcname=f"{formula.name}/{formula.version}")

    checksum = sha256_file(archive)
    log.info("bottle_built", package=formula.name, path=str(archive), sha256=checksum)
    return archive, checksum

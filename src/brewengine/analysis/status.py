"""Derive the display status of an installed formula."""

from __future__ import annotations

from enum import Flag, auto

from brewengine.core.models import Formula, InstallReceipt


class PackageStatus(Flag):
    """Status flags shown by ``list`` and ``info``."""

    NONE = 0
    OUTDATED = auto()
    NOT_LINKED = auto()
    KEG_ONLY = auto()
    BOTTLE = auto()
    DEPENDENCY = auto()


def derive_status(
    receipt: InstallReceipt, formula: Formula | None, linked_version: str | None
) -> PackageStatus:
    """Combine receipt, current definition and link state into flags.

    Args:
        receipt: Newest install receipt of the formula.
        formula: Current registry definition, None if no longer available.
        linked_version: Version exposed in the prefix, if any.
    """
    status = PackageStatus.NONE

    if formula is not None and formula.version != receipt.version:
        status |= PackageStatus.OUTDATED
    if formula is not None and formula.keg_only:
        status |= PackageStatus.KEG_ONLY
    elif linked_version != receipt.version:
        status |= PackageStatus.NOT_LINKED
    if receipt.poured_from_bottle:
        status |= PackageStatus.BOTTLE
    if receipt.installed_as_dependency:
        status |= PackageStatus.DEPENDENCY

    return status

"""Renderers for displaying formula information in the CLI using Rich."""

from __future__ import annotations

from typing import Iterable

from rich import box
from rich.console import Console
from rich.table import Table

from brewengine.analysis.status import PackageStatus
from brewengine.core.models import Formula, InstallReceipt

console = Console(soft_wrap=True)

STATUS_LABELS = {
    PackageStatus.OUTDATED: "[red]Outdated[/red]",
    PackageStatus.NOT_LINKED: "[blue]Not Linked[/blue]",
    PackageStatus.KEG_ONLY: "[magenta]Keg-Only[/magenta]",
    PackageStatus.BOTTLE: "[cyan]Bottle[/cyan]",
    PackageStatus.DEPENDENCY: "[dim]Dependency[/dim]",
}


def status_to_str(status: PackageStatus) -> str:
    """Convert PackageStatus to a human-readable string with color coding.

    Args:
        status: The PackageStatus to convert.

    Returns:
        A human-readable string representation of the PackageStatus.
    """
    if status == PackageStatus.NONE:
        return "[green]Up-to-date[/green]"
    bits = [label for flag, label in STATUS_LABELS.items() if flag in status]
    return ", ".join(bits)


def human_size(size_bytes: int) -> str:
    """Convert a size in bytes to a human-readable string."""
    units = ["B", "KB", "MB", "GB", "TB"]
    size = float(size_bytes)
    i = 0
    while size >= 1024 and i < len(units) - 1:
        size /= 1024
        i += 1
    return f"{size:.1f}{units[i]}"


def installed_table(rows: Iterable[tuple[InstallReceipt, Formula | None, PackageStatus]]) -> Table:
    """Create a Rich Table of installed formulae.

    Args:
        rows: Receipt, current definition (if any) and derived status.

    Returns:
        A Rich Table displaying installed formulae.
    """
    table = Table(box=box.MINIMAL_HEAVY_HEAD)
    table.add_column("Name", style="bold")
    table.add_column("Installed")
    table.add_column("Latest")
    table.add_column("Status")
    table.add_column("Tap", style="dim")
    table.add_column("Installed On", style="dim")

    for receipt, formula, status in rows:
        table.add_row(
            receipt.name,
            receipt.version,
            formula.version if formula else "",
            status_to_str(status),
            receipt.tap or "",
            receipt.time.strftime("%Y-%m-%d %H:%M"),
        )

    return table


def formula_table(formulae: Iterable[Formula]) -> Table:
    """Create a Rich Table of formula definitions, used by ``search``."""
    table = Table(box=box.MINIMAL_HEAVY_HEAD)
    table.add_column("Name", style="bold")
    table.add_column("Version")
    table.add_column("Description")

    for f in formulae:
        table.add_row(f.full_name, f.version, f.desc or "")

    return table


def formula_details(formula: Formula, receipts: list[InstallReceipt], linked: str | None) -> Table:
    """Display detailed information about a formula.

    Args:
        formula: The formula definition.
        receipts: Installed versions of the formula.
        linked: Currently linked version.

    Returns:
        A Rich Table displaying detailed information about the formula.
    """
    t = Table(box=box.MINIMAL_HEAVY_HEAD)
    t.add_column("Field", style="bold")
    t.add_column("Value")
    t.add_row("Name", formula.full_name)
    t.add_row("Version", formula.version)
    t.add_row("Description", formula.desc or "")
    if formula.homepage:
        t.add_row("Homepage", formula.homepage)
    t.add_row("Source", formula.url)
    t.add_row("Installed Versions", ", ".join(r.version for r in receipts) or "Not installed")
    t.add_row("Linked", linked or "")
    if formula.keg_only:
        t.add_row("Keg-Only", "yes")
    if formula.dependencies:
        t.add_row(
            "Depends on",
            ", ".join(
                d.name if d.kind.value == "runtime" else f"{d.name} ({d.kind.value})"
                for d in formula.dependencies
            ),
        )
    if formula.options:
        t.add_row("Options", ", ".join(f"--{o.name}" for o in formula.options))
    if formula.bottles:
        t.add_row("Bottles", ", ".join(b.tag for b in formula.bottles))
    if formula.tap:
        t.add_row("Tap", formula.tap)

    return t

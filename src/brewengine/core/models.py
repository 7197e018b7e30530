"""Data models for formulae, receipts and on-disk state."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from brewengine.core.config import CORE_TAP

RECEIPT_FILE = "INSTALL_RECEIPT.json"


class DependencyKind(Enum):
    """How a dependency is needed."""

    RUNTIME = "runtime"
    BUILD = "build"
    OPTIONAL = "optional"


class BuildStrategy(Enum):
    """The closed set of ways a formula gets into the Cellar."""

    SOURCE = "source"
    BOTTLE = "bottle"


class InstallState(Enum):
    """States of a single formula install."""

    PENDING = "pending"
    FETCHING = "fetching"
    VERIFYING = "verifying"
    BUILDING = "building"
    EXTRACTING = "extracting"
    LINKING = "linking"
    INSTALLED = "installed"
    FAILED = "failed"


@dataclass(frozen=True)
class Dependency:
    """A dependency edge declared by a formula."""

    name: str
    kind: DependencyKind = DependencyKind.RUNTIME


@dataclass(frozen=True)
class BuildOption:
    name: str
    description: str = ""


@dataclass(frozen=True)
class Bottle:
    """Precompiled archive for one platform tag."""

    tag: str
    url: str
    sha256: str


@dataclass(frozen=True)
class Formula:
    """An immutable formula definition produced by the loader."""

    name: str
    version: str
    url: str
    sha256: str | None = None
    desc: str | None = None
    homepage: str | None = None
    dependencies: tuple[Dependency, ...] = ()
    options: tuple[BuildOption, ...] = ()
    bottles: tuple[Bottle, ...] = ()
    install_steps: tuple[str, ...] = ()
    keg_only: bool = False
    tap: str | None = None
    path: Path | None = None

    @property
    def full_name(self) -> str:
        if self.tap is None or self.tap == CORE_TAP:
            return self.name
        return f"{self.tap}/{self.name}"

    def bottle_for(self, tag: str) -> Bottle | None:
        """Return the bottle descriptor for ``tag``, if one exists."""
        return next((b for b in self.bottles if b.tag == tag), None)

    def dependencies_for(self, options: tuple[str, ...] | list[str] = ()) -> list[Dependency]:
        """Dependencies that apply under the given build options.

        Optional dependencies are only included when ``with-<name>`` is set.
        """
        return [
            d for d in self.dependencies
            if d.kind is not DependencyKind.OPTIONAL or f"with-{d.name}" in options
        ]


@dataclass(frozen=True)
class Tap:
    """A namespace of formula definitions on disk."""

    user: str
    repo: str
    path: Path
    pinned: bool = False

    @property
    def name(self) -> str:
        return f"{self.user}/{self.repo}"

    @property
    def formula_dir(self) -> Path:
        candidate = self.path / "Formula"
        return candidate if candidate.is_dir() else self.path

    @property
    def alias_dir(self) -> Path:
        return self.path / "Aliases"

    @property
    def official(self) -> bool:
        return self.user == "homebrew"


@dataclass(frozen=True)
class ReceiptDependency:
    name: str
    version: str | None
    kind: DependencyKind = DependencyKind.RUNTIME


@dataclass
class InstallReceipt:
    """Persisted record of a completed install."""

    name: str
    version: str
    tap: str | None = None
    options: list[str] = field(default_factory=list)
    dependencies: list[ReceiptDependency] = field(default_factory=list)
    poured_from_bottle: bool = False
    built_as_bottle: bool = False
    installed_as_dependency: bool = False
    installed_on_request: bool = True
    time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source_url: str | None = None
    checksum: str | None = None

    def depends_on(self, name: str) -> bool:
        return any(d.name == name for d in self.dependencies)

    @property
    def runtime_dependencies(self) -> list[ReceiptDependency]:
        return [d for d in self.dependencies if d.kind is not DependencyKind.BUILD]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["time"] = self.time.isoformat()
        data["dependencies"] = [
            {"name": d.name, "version": d.version, "kind": d.kind.value}
            for d in self.dependencies
        ]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InstallReceipt:
        deps = [
            ReceiptDependency(
                name=d["name"],
                version=d.get("version"),
                kind=DependencyKind(d.get("kind", "runtime")),
            )
            for d in data.get("dependencies", [])
        ]
        return cls(
            name=data["name"],
            version=data["version"],
            tap=data.get("tap"),
            options=list(data.get("options", [])),
            dependencies=deps,
            poured_from_bottle=bool(data.get("poured_from_bottle", False)),
            built_as_bottle=bool(data.get("built_as_bottle", False)),
            installed_as_dependency=bool(data.get("installed_as_dependency", False)),
            installed_on_request=bool(data.get("installed_on_request", True)),
            time=datetime.fromisoformat(data["time"]) if data.get("time") else datetime.now(timezone.utc),
            source_url=data.get("source_url"),
            checksum=data.get("checksum"),
        )


@dataclass(frozen=True)
class CacheEntry:
    """A verified artifact in the download cache."""

    name: str
    version: str
    checksum: str
    path: Path


@dataclass(frozen=True)
class CellarSlot:
    """An installed keg: ``<cellar>/<name>/<version>``."""

    name: str
    version: str
    path: Path

    @property
    def receipt_path(self) -> Path:
        return self.path / RECEIPT_FILE

    def files(self) -> list[Path]:
        """Every regular file and symlink in the keg, sorted."""
        if not self.path.is_dir():
            return []
        return sorted(p for p in self.path.rglob("*") if p.is_symlink() or p.is_file())

    def disk_usage(self) -> tuple[int, int]:
        """Return ``(file_count, total_bytes)`` for the keg."""
        files = self.files()
        size = sum(p.lstat().st_size for p in files)
        return len(files), size


@dataclass(frozen=True)
class LinkState:
    """Which keg of a formula, if any, is exposed in the prefix."""

    name: str
    version: str | None
    record: Path


@dataclass
class InstallResult:
    """Outcome of installing a single formula."""

    receipt: InstallReceipt
    slot: CellarSlot
    strategy: BuildStrategy
    linked: list[Path] = field(default_factory=list)
    link_error: Exception | None = None
    states: list[InstallState] = field(default_factory=list)


@dataclass(frozen=True)
class FormulaInfo:
    """A definition together with its install and link state."""

    formula: Formula
    receipts: list[InstallReceipt]
    linked_version: str | None

    @property
    def installed(self) -> bool:
        return bool(self.receipts)

"""Engine facade: the in-process library interface behind the CLI."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Iterable

from brewengine.core import auditor
from brewengine.core.bottle import build_bottle
from brewengine.core.cache import CacheManager
from brewengine.core.cleanup import Cleanup
from brewengine.core.config import BrewEnv
from brewengine.core.errors import (
    AlreadyInstalledError,
    BrewError,
    UserError,
)
from brewengine.core.installer import Installer, build_environment
from brewengine.core.linker import Linker
from brewengine.core.logging import get_logger
from brewengine.core.models import (
    BuildStrategy,
    Formula,
    FormulaInfo,
    InstallReceipt,
    InstallResult,
)
from brewengine.core.receipts import ReceiptStore
from brewengine.core.registry import Registry
from brewengine.core.resolver import DependencyGraph, Resolver
from brewengine.core.taps import TapManager
from brewengine.core.uninstaller import RemovedKeg, Uninstaller

log = get_logger(__name__)


class Engine:
    """Wires the core components around one explicit BrewEnv."""

    def __init__(self, env: BrewEnv):
        self.env = env
        self.receipts = ReceiptStore(env)
        self.registry = Registry(env, self.receipts)
        self.resolver = Resolver(self.registry)
        self.cache = CacheManager(env, self.registry, self.receipts)
        self.linker = Linker(env)
        self.installer = Installer(env, self.cache, self.receipts, self.linker)
        self.uninstaller = Uninstaller(env, self.receipts, self.linker)
        self.cleaner = Cleanup(env, self.cache, self.receipts, self.linker)
        self.taps = TapManager(env, self.registry)

    def lookup(self, name: str) -> Formula:
        return self.registry.lookup(name)

    def resolve(self, name: str, options: Iterable[str] = ()) -> list[Formula]:
        return self.resolver.resolve(name, tuple(options))

    def graph(self, name: str, options: Iterable[str] = ()) -> DependencyGraph:
        return self.resolver.graph(name, tuple(options))

    def install(
        self,
        name: str,
        options: Iterable[str] = (),
        *,
        force: bool = False,
        build_from_source: bool = False,
        build_bottle: bool = False,
    ) -> list[InstallResult]:
        """Resolve ``name`` and install it after any missing dependencies.

        Dependencies that already have a receipt (any version) are skipped.
        A failure stops the pipeline; dependencies installed so far and
        their cache entries are kept.

        Returns:
            One InstallResult per formula installed, the requested one last.

        Raises:
            AlreadyInstalledError: If the requested version is installed
                and ``force`` is false. Raised before any other work.
        """
        start = time.perf_counter()
        options = tuple(options)
        root = self.registry.lookup(name)
        if self.receipts.exists(root.name, root.version) and not force:
            raise AlreadyInstalledError(root.name, root.version)

        known = {o.name for o in root.options}
        for option in options:
            if option not in known and not option.startswith("with-"):
                log.warning("unknown_option", package=root.name, option=option)

        graph = self.resolver.graph(root, options)
        results = []
        for formula in graph.order[:-1]:
            if self.receipts.exists(formula.name):
                log.debug("dependency_satisfied", package=formula.name, required_by=root.name)
                continue
            results.append(self.installer.install(
                formula,
                as_dependency=True,
                build_from_source=build_from_source,
                dependencies=graph.edges[formula.name],
            ))

        results.append(self.installer.install(
            root,
            options,
            force=force,
            build_from_source=build_from_source,
            build_bottle=build_bottle,
            dependencies=graph.edges[root.name],
        ))

        duration_ms = int((time.perf_counter() - start) * 1000)
        log.info(
            "pipeline_complete",
            package=root.name,
            installed=[r.receipt.name for r in results],
            duration_ms=duration_ms
        )
        return results

    def upgrade(self, name: str) -> list[InstallResult]:
        """Install the registry version of an installed formula.

        Returns:
            The install results, or an empty list if already up to date.
        """
        formula = self.registry.lookup(name)
        current = self.receipts.latest(formula.name)
        if current is None:
            raise UserError(f"{formula.name} not installed", context={"package": formula.name})
        if current.version == formula.version:
            log.info("upgrade_not_needed", package=formula.name, version=current.version)
            return []

        log.info("upgrade_start", package=formula.name, old=current.version, new=formula.version)
        target = str(formula.path) if formula.tap is None else formula.full_name
        return self.install(target, current.options)

    def outdated(self) -> list[tuple[InstallReceipt, Formula]]:
        """Installed formulae whose registry version differs."""
        result = []
        for receipt in self.installed():
            try:
                formula = self.registry.lookup(receipt.name)
            except BrewError:
                continue
            if formula.version != receipt.version:
                result.append((receipt, formula))
        return result

    def info(self, name: str) -> FormulaInfo:
        formula = self.registry.lookup(name)
        return FormulaInfo(
            formula=formula,
            receipts=self.receipts.for_name(formula.name),
            linked_version=self.linker.linked_version(formula.name),
        )

    def installed(self) -> list[InstallReceipt]:
        """Newest receipt of every installed formula, sorted by name."""
        return [r for name in self.receipts.names() if (r := self.receipts.latest(name))]

    def canonical_name(self, name: str) -> str:
        """Best-effort canonical name; falls back to ``name`` itself so
        formulae whose definition is gone can still be removed.
        """
        try:
            return self.registry.lookup(name).name
        except BrewError:
            return Path(name).stem.lower() if name.endswith((".yaml", ".yml")) else name.lower()

    def uninstall(self, name: str, force: bool = False) -> list[RemovedKeg]:
        return self.uninstaller.uninstall(self.canonical_name(name), force=force)

    def link(self, name: str, force: bool = False) -> list[Path]:
        """Link the newest keg of ``name``; keg-only formulae need ``force``."""
        canonical = self.canonical_name(name)
        latest = self.receipts.latest(canonical)
        if latest is None:
            raise UserError(f"{canonical} not installed", context={"package": canonical})
        try:
            keg_only = self.registry.lookup(name).keg_only
        except BrewError:
            keg_only = False
        if keg_only and not force:
            raise UserError(
                f"{canonical} is keg-only and must be linked with --force",
                context={"package": canonical}
            )
        return self.linker.link(self.receipts.slot(canonical, latest.version))

    def unlink(self, name: str) -> list[Path]:
        return self.linker.unlink(self.canonical_name(name))

    def cleanup(self, prune: str = "stale", force: bool = False) -> list[Path]:
        return self.cleaner.run(prune=prune, force=force)

    def missing(self, names: Iterable[str] | None = None) -> list[str]:
        return auditor.missing(self.receipts, names)

    def bottle(self, name: str, dest: Path, revision: int | None = None) -> tuple[Path, str]:
        return build_bottle(self.env, self.receipts, self.registry.lookup(name), dest, revision)

    def prefix(self, name: str | None = None) -> Path:
        if name is None:
            return self.env.prefix
        formula = self.registry.lookup(name)
        return self.receipts.slot(formula.name, formula.version).path

    def cellar_path(self, name: str | None = None) -> Path:
        if name is None:
            return self.env.cellar
        return self.env.cellar / self.registry.lookup(name).name

    def cache_path(self, name: str | None = None) -> Path:
        if name is None:
            return self.env.cache
        formula = self.registry.lookup(name)
        bottle = None
        if self.installer.select_strategy(formula) is BuildStrategy.BOTTLE:
            bottle = formula.bottle_for(self.env.bottle_tag)
        return self.cache.path_for(formula, bottle)

    def build_environment(self) -> dict[str, str]:
        return build_environment(self.env)

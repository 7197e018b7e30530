"""Installer: drives a single formula from artifact to linked keg."""

from __future__ import annotations

import os
import shutil
import tarfile
import tempfile
import time
import zipfile
from pathlib import Path
from typing import Iterable

from brewengine.core.cache import CacheManager
from brewengine.core.config import BrewEnv
from brewengine.core.errors import (
    AlreadyInstalledError,
    BrewError,
    BuildError,
    ChecksumMismatchError,
    LinkConflictError,
)
from brewengine.core.linker import Linker
from brewengine.core.locks import formula_lock
from brewengine.core.logging import get_logger
from brewengine.core.models import (
    BuildStrategy,
    CacheEntry,
    CellarSlot,
    DependencyKind,
    Formula,
    InstallReceipt,
    InstallResult,
    InstallState,
    ReceiptDependency,
)
from brewengine.core.receipts import ReceiptStore
from brewengine.core.shell import run_capture

log = get_logger(__name__)

TRANSITIONS = {
    InstallState.PENDING: {InstallState.FETCHING},
    InstallState.FETCHING: {InstallState.VERIFYING},
    InstallState.VERIFYING: {InstallState.BUILDING, InstallState.EXTRACTING},
    InstallState.BUILDING: {InstallState.LINKING},
    InstallState.EXTRACTING: {InstallState.LINKING},
    InstallState.LINKING: {InstallState.INSTALLED},
    InstallState.INSTALLED: set(),
    InstallState.FAILED: set(),
}


class InstallJob:
    """State machine for one install. ``history`` records every state."""

    def __init__(self, formula: Formula):
        self.formula = formula
        self.state = InstallState.PENDING
        self.history = [InstallState.PENDING]
        self.reason: str | None = None

    def advance(self, state: InstallState) -> None:
        if state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal install transition {self.state.value} -> {state.value}")
        log.debug("install_state", package=self.formula.name, state=state.value)
        self.state = state
        self.history.append(state)

    def fail(self, reason: str) -> None:
        if self.state in (InstallState.INSTALLED, InstallState.FAILED):
            raise RuntimeError(f"Cannot fail a job in state {self.state.value}")
        self.state = InstallState.FAILED
        self.reason = reason
        self.history.append(InstallState.FAILED)


def build_environment(env: BrewEnv, prefix: Path | None = None) -> dict[str, str]:
    """Environment variables exported to build steps.

    Args:
        env: The active configuration.
        prefix: Keg being built, exported as ``PREFIX``.
    """
    base = env.prefix
    variables = {
        "PATH": os.pathsep.join([str(base / "bin"), "/usr/bin", "/bin", "/usr/sbin", "/sbin"]),
        "HOMEBREW_PREFIX": str(base),
        "CELLAR": str(env.cellar),
        "CMAKE_PREFIX_PATH": str(base),
        "PKG_CONFIG_PATH": str(base / "lib" / "pkgconfig"),
        "CPPFLAGS": f"-I{base / 'include'}",
        "LDFLAGS": f"-L{base / 'lib'}",
    }
    if prefix is not None:
        variables["PREFIX"] = str(prefix)
    if "HOME" in os.environ:
        variables["HOME"] = os.environ["HOME"]
    return variables


def _unpack(archive: Path, dest: Path) -> Path:
    """Unpack an archive and return its effective root.

    A single top-level directory is stripped. Non-archives are copied in
    as-is.
    """
    if tarfile.is_tarfile(archive):
        with tarfile.open(archive) as tar:
            tar.extractall(dest, filter="data")
    elif zipfile.is_zipfile(archive):
        with zipfile.ZipFile(archive) as zf:
            zf.extractall(dest)
    else:
        shutil.copy2(archive, dest / archive.name)

    children = [p for p in dest.iterdir() if not p.name.startswith(".")]
    if len(children) == 1 and children[0].is_dir():
        return children[0]
    return dest


class Installer:
    """Installs single formulae; callers supply an install order."""

    def __init__(
        self,
        env: BrewEnv,
        cache: CacheManager,
        receipts: ReceiptStore,
        linker: Linker,
    ):
        self.env = env
        self.cache = cache
        self.receipts = receipts
        self.linker = linker

    def select_strategy(
        self,
        formula: Formula,
        options: Iterable[str] = (),
        build_from_source: bool = False,
        build_bottle: bool = False,
    ) -> BuildStrategy:
        """Pour a bottle only for a default build on a supported platform."""
        if build_from_source or build_bottle or list(options):
            return BuildStrategy.SOURCE
        if formula.bottle_for(self.env.bottle_tag) is None:
            return BuildStrategy.SOURCE
        return BuildStrategy.BOTTLE

    def install(
        self,
        formula: Formula,
        options: Iterable[str] = (),
        *,
        force: bool = False,
        build_from_source: bool = False,
        build_bottle: bool = False,
        as_dependency: bool = False,
        link: bool = True,
        dependencies: Iterable[tuple[str, DependencyKind]] | None = None,
    ) -> InstallResult:
        """Install ``formula`` into the Cellar, write its receipt and link it.

        Args:
            formula: The formula to install. Its dependencies must already
                be installed.
            options: Build options requested for this formula.
            force: Reinstall even if this version has a receipt.
            build_from_source: Never pour a bottle.
            build_bottle: Build from source and mark the receipt as
                suitable for bottling.
            as_dependency: Installed to satisfy another formula.
            link: Link into the prefix unless the formula is keg-only.
            dependencies: Resolved (canonical name, kind) edges to record
                in the receipt; defaults to the declared names.

        Returns:
            The InstallResult. ``link_error`` is set if linking conflicted;
            the install itself still counts as successful.

        Raises:
            AlreadyInstalledError: If this version is installed and
                ``force`` is false.
            ChecksumMismatchError: If the artifact fails verification.
            BuildError: If a build step fails.
        """
        options = list(options)
        with formula_lock(self.env, formula.name):
            if self.receipts.exists(formula.name, formula.version) and not force:
                raise AlreadyInstalledError(formula.name, formula.version)
            return self._install_locked(
                formula, options, force, build_from_source, build_bottle, as_dependency, link,
                dependencies
            )

    def _install_locked(
        self,
        formula: Formula,
        options: list[str],
        force: bool,
        build_from_source: bool,
        build_bottle: bool,
        as_dependency: bool,
        link: bool,
        dependencies: Iterable[tuple[str, DependencyKind]] | None,
    ) -> InstallResult:
        start = time.perf_counter()
        job = InstallJob(formula)
        strategy = self.select_strategy(formula, options, build_from_source, build_bottle)
        bottle = formula.bottle_for(self.env.bottle_tag) if strategy is BuildStrategy.BOTTLE else None
        slot = self.receipts.slot(formula.name, formula.version)
        log.info(
            "install_start",
            package=formula.name,
            version=formula.version,
            strategy=strategy.value,
            options=options
        )

        try:
            job.advance(InstallState.FETCHING)
            entry = self.cache.fetch(formula, bottle)

            job.advance(InstallState.VERIFYING)
            if not self.cache.verify(entry):
                self.cache.evict(entry)
                raise ChecksumMismatchError(str(entry.path), entry.checksum, "changed on disk")
        except BrewError as e:
            job.fail(e.message)
            log.error("install_failed", package=formula.name, state="fetching", error=str(e))
            raise

        backup, was_linked = None, False
        if force and slot.path.exists():
            was_linked = self.linker.is_linked(slot)
            backup = self._set_aside(slot)

        try:
            if strategy is BuildStrategy.BOTTLE:
                job.advance(InstallState.EXTRACTING)
                self._pour(formula, entry, slot)
            else:
                job.advance(InstallState.BUILDING)
                self._build(formula, entry, slot)
        except (BrewError, OSError, tarfile.TarError, zipfile.BadZipFile) as e:
            job.fail(str(e))
            shutil.rmtree(slot.path, ignore_errors=True)
            if backup is not None:
                os.replace(backup, slot.path)
                if was_linked:
                    self._relink(slot)
            elif slot.path.parent.is_dir() and not any(slot.path.parent.iterdir()):
                slot.path.parent.rmdir()
            log.error(
                "install_failed",
                package=formula.name,
                state=job.history[-2].value,
                error=str(e),
                rolled_back=True
            )
            raise

        if backup is not None:
            shutil.rmtree(backup, ignore_errors=True)

        receipt = InstallReceipt(
            name=formula.name,
            version=formula.version,
            tap=formula.tap,
            options=options,
            dependencies=self._recorded_dependencies(formula, options, dependencies),
            poured_from_bottle=strategy is BuildStrategy.BOTTLE,
            built_as_bottle=build_bottle,
            installed_as_dependency=as_dependency,
            installed_on_request=not as_dependency,
            source_url=bottle.url if bottle else formula.url,
            checksum=entry.checksum or None,
        )
        self.receipts.write(receipt)

        job.advance(InstallState.LINKING)
        result = InstallResult(receipt=receipt, slot=slot, strategy=strategy)
        if link and not formula.keg_only:
            try:
                result.linked = self.linker.link(slot)
            except LinkConflictError as e:
                result.link_error = e
                log.warning("link_skipped", package=formula.name, error=str(e))
        elif formula.keg_only:
            log.info("keg_only_not_linked", package=formula.name)

        job.advance(InstallState.INSTALLED)
        result.states = list(job.history)

        duration_ms = int((time.perf_counter() - start) * 1000)
        log.info(
            "install_complete",
            package=formula.name,
            version=formula.version,
            path=str(slot.path),
            duration_ms=duration_ms
        )
        return result

    def _recorded_dependencies(
        self,
        formula: Formula,
        options: list[str],
        dependencies: Iterable[tuple[str, DependencyKind]] | None,
    ) -> list[ReceiptDependency]:
        """Receipt entries keyed by the canonical names that were installed.

        ``dependencies`` are resolved graph edges. Without them the names
        are taken as declared.
        """
        if dependencies is None:
            dependencies = [(d.name, d.kind) for d in formula.dependencies_for(options)]
        recorded = {}
        for name, kind in dependencies:
            if name in recorded:
                continue
            installed = self.receipts.latest(name)
            recorded[name] = ReceiptDependency(
                name=name,
                version=installed.version if installed else None,
                kind=kind,
            )
        return list(recorded.values())

    def _set_aside(self, slot: CellarSlot) -> Path:
        if self.linker.is_linked(slot):
            self.linker.unlink(slot.name)
        backup = slot.path.with_name(f".{slot.version}.reinstall")
        shutil.rmtree(backup, ignore_errors=True)
        os.replace(slot.path, backup)
        return backup

    def _relink(self, slot: CellarSlot) -> None:
        try:
            self.linker.link(slot)
        except LinkConflictError as e:
            log.warning("relink_failed", package=slot.name, version=slot.version, error=str(e))

    def _build(self, formula: Formula, entry: CacheEntry, slot: CellarSlot) -> None:
        log_path = self.env.logs / formula.name / "build.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        slot.path.mkdir(parents=True, exist_ok=True)
        transcript = []

        with tempfile.TemporaryDirectory(prefix=f"{formula.name}-") as staging:
            workdir = _unpack(entry.path, Path(staging))

            if not formula.install_steps:
                shutil.copytree(workdir, slot.path, symlinks=True, dirs_exist_ok=True)
                transcript.append(f"Copied {workdir} to {slot.path}")
            else:
                variables = build_environment(self.env, slot.path)
                for step in formula.install_steps:
                    output, code = run_capture(step, cwd=workdir, env=variables)
                    transcript.append(f"==> {step}\n{output}")
                    if code != 0:
                        text = "\n".join(transcript)
                        log_path.write_text(text)
                        raise BuildError(formula.name, step, code, log=text)

        log_path.write_text("\n".join(transcript))

    def _pour(self, formula: Formula, entry: CacheEntry, slot: CellarSlot) -> None:
        self.env.cellar.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix=f".{formula.name}-", dir=self.env.cellar) as staging:
            with tarfile.open(entry.path) as tar:
                tar.extractall(staging, filter="data")
            poured = Path(staging) / formula.name / formula.version
            if not poured.is_dir():
                raise BuildError(
                    formula.name,
                    f"pour {entry.path.name}",
                    1,
                    log=f"Bottle has no {formula.name}/{formula.version} directory"
                )
            slot.path.parent.mkdir(parents=True, exist_ok=True)
            os.replace(poured, slot.path)

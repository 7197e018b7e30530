"""Formula registry: resolves names to definitions across taps."""

from __future__ import annotations

import time
from pathlib import Path

from brewengine.core.config import CORE_TAP, BrewEnv
from brewengine.core.errors import (
    AmbiguousFormulaError,
    FormulaInvalidError,
    FormulaUnavailableError,
)
from brewengine.core.formula import FORMULA_SUFFIXES, is_formula_file, load_formula, read_definition
from brewengine.core.logging import get_logger
from brewengine.core.models import Formula, Tap
from brewengine.core.receipts import ReceiptStore

log = get_logger(__name__)

TAP_PREFIX = "homebrew-"


def tap_path(env: BrewEnv, name: str) -> Path:
    """Directory of the tap ``user/repo``."""
    user, repo = name.lower().split("/", 1)
    return env.taps_dir / user / f"{TAP_PREFIX}{repo}"


def pin_path(env: BrewEnv, name: str) -> Path:
    user, repo = name.lower().split("/", 1)
    return env.pinned_taps_dir / user / f"{TAP_PREFIX}{repo}"


class Registry:
    """Read-only view of every tap on disk.

    Nothing is cached between calls: taps added, removed or pinned by
    another command are visible on the next lookup.

    Tie-break when several taps define the same name:
        1. the tap recorded in an install receipt for that name
        2. the core tap
        3. the only pinned tap among the candidates
        4. otherwise AmbiguousFormulaError
    """

    def __init__(self, env: BrewEnv, receipts: ReceiptStore | None = None):
        self.env = env
        self.receipts = receipts or ReceiptStore(env)

    def taps(self) -> list[Tap]:
        """All installed taps, sorted by name."""
        root = self.env.taps_dir
        if not root.is_dir():
            return []
        taps = []
        for user_dir in sorted(p for p in root.iterdir() if p.is_dir()):
            for repo_dir in sorted(p for p in user_dir.iterdir() if p.is_dir()):
                if not repo_dir.name.startswith(TAP_PREFIX):
                    continue
                repo = repo_dir.name[len(TAP_PREFIX):]
                name = f"{user_dir.name}/{repo}"
                pinned = pin_path(self.env, name).exists()
                taps.append(Tap(user=user_dir.name, repo=repo, path=repo_dir, pinned=pinned))
        return taps

    def tap(self, name: str) -> Tap | None:
        name = name.lower()
        return next((t for t in self.taps() if t.name == name), None)

    def _formula_file(self, tap: Tap, name: str) -> Path | None:
        for suffix in FORMULA_SUFFIXES:
            candidate = tap.formula_dir / f"{name}{suffix}"
            if candidate.is_file():
                return candidate
        return next((f for f in self.formula_files(tap) if f.stem.lower() == name), None)

    def formula_files(self, tap: Tap) -> list[Path]:
        if not tap.formula_dir.is_dir():
            return []
        return sorted(p for p in tap.formula_dir.iterdir() if is_formula_file(p))

    def aliases(self, tap: Tap) -> dict[str, str]:
        """Alias name to canonical formula name for one tap.

        An alias is either a symlink to a formula file or a text file
        holding the canonical name.
        """
        if not tap.alias_dir.is_dir():
            return {}
        table = {}
        for entry in sorted(tap.alias_dir.iterdir()):
            if entry.is_symlink():
                target = Path(entry.readlink()).stem
            elif entry.is_file():
                target = entry.read_text().strip()
            else:
                continue
            if target:
                table[entry.name.lower()] = target.lower()
        return table

    def lookup(self, name: str) -> Formula:
        """Resolve ``name`` to exactly one Formula.

        Args:
            name: A formula name, alias, ``user/repo/name`` or a path to a
                definition file.

        Returns:
            The loaded Formula.

        Raises:
            FormulaUnavailableError: If no tap provides the name.
            AmbiguousFormulaError: If several taps do and no rule decides.
        """
        start = time.perf_counter()

        path = Path(name)
        if path.suffix in FORMULA_SUFFIXES and path.is_file():
            formula = load_formula(path.resolve())
            log.debug("formula_resolved", package=formula.name, source="path")
            return formula

        parts = name.lower().split("/")
        if len(parts) == 3:
            tap = self.tap("/".join(parts[:2]))
            if tap is None:
                raise FormulaUnavailableError(name=name)
            candidates = self._candidates([tap], parts[2])
        elif len(parts) == 1:
            candidates = self._candidates(self.taps(), parts[0])
        else:
            raise FormulaUnavailableError(name=name)

        if not candidates:
            raise FormulaUnavailableError(name=name)

        tap, file = self._choose(parts[-1], candidates)
        formula = load_formula(file, tap=tap.name)
        duration_ms = int((time.perf_counter() - start) * 1000)
        log.debug(
            "formula_resolved",
            package=formula.name,
            tap=tap.name,
            duration_ms=duration_ms
        )
        return formula

    def _candidates(self, taps: list[Tap], name: str) -> list[tuple[Tap, Path]]:
        found = [(t, f) for t in taps if (f := self._formula_file(t, name))]
        if found:
            return found
        for tap in taps:
            canonical = self.aliases(tap).get(name)
            if canonical and (file := self._formula_file(tap, canonical)):
                found.append((tap, file))
        return found

    def _choose(self, name: str, candidates: list[tuple[Tap, Path]]) -> tuple[Tap, Path]:
        if len(candidates) == 1:
            return candidates[0]

        by_tap = {tap.name: (tap, file) for tap, file in candidates}
        canonical = candidates[0][1].stem.lower()

        installed = self.receipts.latest(canonical)
        if installed and installed.tap in by_tap:
            return by_tap[installed.tap]
        if CORE_TAP in by_tap:
            return by_tap[CORE_TAP]
        pinned = [c for c in candidates if c[0].pinned]
        if len(pinned) == 1:
            return pinned[0]

        raise AmbiguousFormulaError(
            name, [f"{tap.name}/{file.stem.lower()}" for tap, file in candidates]
        )

    def all_names(self) -> list[str]:
        """Every formula name (fully qualified outside core), sorted."""
        names = set()
        for tap in self.taps():
            for file in self.formula_files(tap):
                stem = file.stem.lower()
                names.add(stem if tap.name == CORE_TAP else f"{tap.name}/{stem}")
        return sorted(names)

    def search(self, query: str) -> list[Formula]:
        """Formulae whose name or description contains ``query``."""
        q = query.lower()
        results = []
        for tap in self.taps():
            for file in self.formula_files(tap):
                try:
                    formula = load_formula(file, tap=tap.name)
                except FormulaInvalidError:
                    log.warning("search_skip_invalid", path=str(file))
                    continue
                if q in formula.name or (formula.desc and q in formula.desc.lower()):
                    results.append(formula)
        return sorted(results, key=lambda f: f.full_name)

    def validate(
        self, tap_name: str | None = None, aliases: bool = False, syntax: bool = False
    ) -> list[str]:
        """Load every definition and report problems, for ``readall``.

        Args:
            tap_name: Restrict to one tap.
            aliases: Also check that every alias points at a formula.
            syntax: Only check that each file decodes, skip field validation.

        Returns:
            Human-readable problem descriptions, empty when all is well.
        """
        if tap_name is not None:
            tap = self.tap(tap_name)
            if tap is None:
                return [f"No such tap: {tap_name}"]
            taps = [tap]
        else:
            taps = self.taps()

        problems = []
        for tap in taps:
            for file in self.formula_files(tap):
                try:
                    if syntax:
                        read_definition(file)
                    else:
                        load_formula(file, tap=tap.name)
                except FormulaInvalidError as e:
                    problems.append(f"{tap.name}/{file.stem}: {e.message}")
            if aliases:
                for alias, target in self.aliases(tap).items():
                    if self._formula_file(tap, target) is None:
                        problems.append(f"{tap.name}: alias {alias} points to missing {target}")

        log.info("readall_complete", taps=len(taps), problems=len(problems))
        return problems

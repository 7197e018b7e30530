"""Dependency resolution: graph construction, cycle detection, install order."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator

from brewengine.core.errors import BrewError, CyclicDependencyError
from brewengine.core.logging import get_logger
from brewengine.core.models import Dependency, DependencyKind, Formula
from brewengine.core.registry import Registry

log = get_logger(__name__)


class Color(Enum):
    WHITE = 0
    GRAY = 1
    BLACK = 2


@dataclass
class DependencyGraph:
    """Nodes keyed by canonical name; edges point at dependencies.

    ``order`` lists every node after all of its dependencies.
    """

    root: Formula
    nodes: dict[str, Formula] = field(default_factory=dict)
    edges: dict[str, list[tuple[str, DependencyKind]]] = field(default_factory=dict)
    order: list[Formula] = field(default_factory=list)


class Resolver:
    """Builds dependency graphs with a colouring depth-first search.

    Nodes are memoised by canonical name, so a formula reached through
    several paths (a diamond) is visited once. Reaching a node that is
    still on the current path is a cycle and fails immediately.
    """

    def __init__(self, registry: Registry):
        self.registry = registry

    def graph(self, root: str | Formula, options: tuple[str, ...] | list[str] = ()) -> DependencyGraph:
        """Build and validate the graph reachable from ``root``.

        Args:
            root: Requested formula or name.
            options: Build options of the root; ``with-<dep>`` enables
                optional dependencies.

        Returns:
            The acyclic DependencyGraph with its install order.

        Raises:
            CyclicDependencyError: If the graph has a cycle.
            FormulaUnavailableError: If any dependency cannot be found.
            AmbiguousFormulaError: If any dependency name is ambiguous.
        """
        start = time.perf_counter()
        root_formula = root if isinstance(root, Formula) else self.registry.lookup(root)

        graph = DependencyGraph(root=root_formula)
        color: dict[str, Color] = {}
        by_request: dict[str, Formula] = {}
        path: list[str] = []
        stack: list[tuple[Formula, Iterator[Dependency]]] = []

        def enter(formula: Formula, opts: tuple[str, ...] | list[str]) -> None:
            deps = formula.dependencies_for(opts)
            graph.nodes[formula.name] = formula
            graph.edges[formula.name] = []
            color[formula.name] = Color.GRAY
            path.append(formula.name)
            stack.append((formula, iter(deps)))

        enter(root_formula, options)

        while stack:
            formula, deps = stack[-1]
            dep = next(deps, None)

            if dep is None:
                stack.pop()
                path.pop()
                color[formula.name] = Color.BLACK
                graph.order.append(formula)
                continue

            child = self._lookup(dep.name, by_request, formula.name)
            graph.edges[formula.name].append((child.name, dep.kind))
            state = color.get(child.name, Color.WHITE)

            if state is Color.GRAY:
                cycle = path[path.index(child.name):] + [child.name]
                log.error("dependency_cycle", package=root_formula.name, cycle=cycle)
                raise CyclicDependencyError(cycle)
            if state is Color.WHITE:
                enter(child, ())

        duration_ms = int((time.perf_counter() - start) * 1000)
        log.info(
            "resolve_complete",
            package=root_formula.name,
            nodes=len(graph.nodes),
            order=[f.name for f in graph.order],
            duration_ms=duration_ms
        )
        return graph

    def resolve(self, root: str | Formula, options: tuple[str, ...] | list[str] = ()) -> list[Formula]:
        """Install order for ``root``: dependencies first, ``root`` last."""
        return self.graph(root, options).order

    def _lookup(self, name: str, memo: dict[str, Formula], required_by: str) -> Formula:
        if name not in memo:
            try:
                memo[name] = self.registry.lookup(name)
            except BrewError as e:
                raise e.with_context(required_by=required_by)
        return memo[name]

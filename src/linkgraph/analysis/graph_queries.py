"""Read-only analyses of the stored build graph."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from linkgraph.io.toolchain import ProcessResult, ldd_unused
from linkgraph.parsing.commands import EXECUTABLE, SHARED
from linkgraph.storage.graph_store import Artifact, Dependency, GraphStore, Symbol, SymbolUsage

LINK_OUTPUT_TYPES = (SHARED, EXECUTABLE)


def find_duplicate_symbols(
    store: GraphStore,
    *,
    artifact_types: Optional[Iterable[str]] = None,
    excluded_artifact_types: Optional[Iterable[str]] = None,
    categories: Optional[Iterable[str]] = None,
    excluded_categories: Optional[Iterable[str]] = None,
) -> List[SymbolUsage]:
    """Sized symbols occurring more than once, ordered by total size then name."""

    return store.duplicate_symbols(artifact_types, excluded_artifact_types, categories, excluded_categories)


def generated_link_artifacts(store: GraphStore, selection: Sequence[str] = ()) -> List[Artifact]:
    """
    Artifacts the undefined and useless analyses run on by default.

    Without ``selection`` these are the shared libraries and executables produced by a recorded
    command; otherwise the generated artifacts whose name is listed.
    """

    if not selection:
        return [artifact for _, artifact in store.generated_artifacts(LINK_OUTPUT_TYPES)]
    wanted = set(selection)
    return [artifact for _, artifact in store.generated_artifacts() if artifact.name in wanted]


def find_unresolved_symbols(store: GraphStore, artifact_id: int) -> List[Symbol]:
    """Undefined symbols of an artifact that none of its direct dependencies exports."""

    unresolved = {symbol.id: symbol for symbol in store.undefined_symbols(artifact_id)}
    for dependency in store.dependencies(artifact_id):
        if not unresolved:
            break
        for symbol in store.external_symbols(dependency.id):
            unresolved.pop(symbol.id, None)
    return sorted(unresolved.values(), key=lambda symbol: symbol.name)


@dataclass(slots=True)
class UnresolvedSymbol:
    """An undefined symbol nothing links in, with the artifacts that could provide it."""

    symbol: Symbol
    candidates: List[Artifact] = field(default_factory=list)


def analyse_undefined_symbols(store: GraphStore, artifact_id: int) -> List[UnresolvedSymbol]:
    """Annotate every unresolved symbol with each artifact of the graph exporting it."""

    return [
        UnresolvedSymbol(symbol=symbol, candidates=store.exporters(symbol.id))
        for symbol in find_unresolved_symbols(store, artifact_id)
    ]


@dataclass(slots=True)
class UselessDependencyReport:
    artifact: Artifact
    useless: List[Artifact] = field(default_factory=list)
    useful: Dict[int, List[Symbol]] = field(default_factory=dict)


def find_useless_dependencies(store: GraphStore, artifact: Artifact) -> UselessDependencyReport:
    """
    Split the shared dependencies of ``artifact`` into useful and useless ones.

    A shared dependency is useful when it exports at least one of the symbols ``artifact`` leaves
    undefined; ``useful`` maps its id to those symbols. Every other shared dependency is useless.
    """

    report = UselessDependencyReport(artifact=artifact)
    undefined = {symbol.id for symbol in store.undefined_symbols(artifact.id)}
    for dependency in store.dependencies(artifact.id, types=[SHARED]):
        resolved = [symbol for symbol in store.external_symbols(dependency.id) if symbol.id in undefined]
        if resolved:
            report.useful[dependency.id] = resolved
        else:
            report.useless.append(dependency)
    report.useless.sort(key=lambda dependency: dependency.name)
    return report


@dataclass(slots=True)
class LddReport:
    artifact: Artifact
    unused: List[str]
    process: ProcessResult


def useless_dependencies_ldd(artifact: Artifact, tool: str = "ldd") -> LddReport:
    """Ask the dynamic loader which direct dependencies of ``artifact`` are unused."""

    unused, process = ldd_unused(artifact.name, tool)
    return LddReport(artifact=artifact, unused=unused, process=process)


@dataclass(slots=True)
class ClosureResult:
    visited: List[Artifact] = field(default_factory=list)
    edges: set[Dependency] = field(default_factory=set)


def walk_dependencies(
    store: GraphStore,
    artifact_id: int,
    *,
    reverse: bool = False,
    types: Optional[Iterable[str]] = None,
    excluded_types: Optional[Iterable[str]] = None,
) -> ClosureResult:
    """
    Breadth-first closure of the dependencies (or dependees with ``reverse``) of one artifact.

    Neighbours whose type does not pass the filters are neither visited nor traversed. Edges are
    always reported in the ``dependee -> dependency`` direction. Cycles are tolerated.
    """

    types = list(types) if types else None
    excluded_types = list(excluded_types) if excluded_types else None
    neighbours = store.dependees if reverse else store.dependencies

    result = ClosureResult()
    start = store.get_artifact(artifact_id)
    if start is None:
        return result

    seen = {start.id}
    result.visited.append(start)
    worklist = deque([start.id])
    while worklist:
        current = worklist.popleft()
        for artifact in neighbours(current, types, excluded_types):
            edge = Dependency(artifact.id, current) if reverse else Dependency(current, artifact.id)
            result.edges.add(edge)
            if artifact.id not in seen:
                seen.add(artifact.id)
                result.visited.append(artifact)
                worklist.append(artifact.id)
    return result


__all__ = [
    "ClosureResult",
    "LddReport",
    "UnresolvedSymbol",
    "UselessDependencyReport",
    "analyse_undefined_symbols",
    "find_duplicate_symbols",
    "find_unresolved_symbols",
    "find_useless_dependencies",
    "generated_link_artifacts",
    "useless_dependencies_ldd",
    "walk_dependencies",
]

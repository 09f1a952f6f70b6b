"""Per-artifact symbol table extraction."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Sequence

from linkgraph.io.nm import NmMode, SymbolEntry, run_nm
from linkgraph.io.toolchain import ProcessResult, demangle
from linkgraph.parsing.commands import SHARED
from linkgraph.storage.graph_store import EXTERNAL, INTERNAL, UNDEFINED, Artifact, GraphStore

LOGGER = logging.getLogger(__name__)

ELF_MAGIC = b"\x7fELF"
ARCHIVE_MAGIC = b"!<arch>\n"

NmRunner = Callable[..., "tuple[set[SymbolEntry], ProcessResult]"]
Demangler = Callable[[Sequence[str]], Mapping[str, str]]


def is_binary_object(path: Path | str) -> bool:
    """Whether the file starts like an ELF object or an archive of them, as opposed to a linker script."""

    with Path(path).open("rb") as handle:
        head = handle.read(len(ARCHIVE_MAGIC))
    return head.startswith(ELF_MAGIC) or head == ARCHIVE_MAGIC


@dataclass(slots=True)
class SymbolExtraction:
    """Symbols found in one artifact together with every ``nm`` run that produced them."""

    artifact: Artifact
    undefined: set[SymbolEntry] = field(default_factory=set)
    external: set[SymbolEntry] = field(default_factory=set)
    internal: set[SymbolEntry] = field(default_factory=set)
    processes: List[ProcessResult] = field(default_factory=list)
    demangled: Dict[str, str] = field(default_factory=dict)
    linker_script: bool = False
    missing: bool = False

    @property
    def failed(self) -> bool:
        return self.missing or self.linker_script or any(process.failed for process in self.processes)

    @property
    def failures(self) -> List[ProcessResult]:
        return [process for process in self.processes if process.failed]

    def categories(self) -> Dict[str, set[SymbolEntry]]:
        return {UNDEFINED: self.undefined, EXTERNAL: self.external, INTERNAL: self.internal}

    def names(self) -> List[str]:
        return sorted({entry.name for entries in self.categories().values() for entry in entries})

    def store(self, store: GraphStore) -> int:
        """Write the references into ``store``; the caller is expected to hold ``store.lock``."""

        return sum(
            store.insert_symbol_references(self.artifact.id, category, sorted(entries, key=_entry_key), self.demangled)
            for category, entries in self.categories().items()
        )


def _entry_key(entry: SymbolEntry) -> tuple:
    return (entry.name, entry.type, entry.address, -1 if entry.size is None else entry.size)


class SymbolExtractor:
    """
    Interrogate one artifact with ``nm``.

    ``runner`` and ``demangler`` default to the real ``nm`` and ``c++filt`` programs; tests pass
    callables returning canned listings instead. The extractor holds no per-artifact state and can
    be shared by worker threads.
    """

    def __init__(
        self,
        nm: str = "nm",
        cxxfilt: str = "c++filt",
        *,
        runner: NmRunner | None = None,
        demangler: Demangler | None = None,
    ) -> None:
        self.runner = runner or partial(run_nm, tool=nm)
        self.demangler = demangler or partial(demangle, tool=cxxfilt)

    def _list(self, artifact: Artifact, mode: NmMode, extraction: SymbolExtraction) -> set[SymbolEntry]:
        entries, process = self.runner(artifact.name, mode, dynamic=False)
        extraction.processes.append(process)
        if not entries and artifact.type == SHARED:
            # stripped shared objects only keep their dynamic symbol table
            entries, process = self.runner(artifact.name, mode, dynamic=True)
            extraction.processes.append(process)
        return entries

    def extract(self, artifact: Artifact) -> SymbolExtraction:
        extraction = SymbolExtraction(artifact=artifact)
        path = Path(artifact.name)
        if not path.is_file():
            extraction.missing = True
            return extraction
        if not is_binary_object(path):
            extraction.linker_script = True
            return extraction

        extraction.undefined = self._list(artifact, NmMode.UNDEFINED, extraction)
        extraction.external = self._list(artifact, NmMode.DEFINED_EXTERN, extraction)
        defined = self._list(artifact, NmMode.DEFINED, extraction)
        external_names = {entry.name for entry in extraction.external}
        extraction.internal = {entry for entry in defined if entry.name not in external_names}

        names = extraction.names()
        if names:
            extraction.demangled = dict(self.demangler(names))
        LOGGER.debug(
            "%s: %d undefined, %d external, %d internal",
            artifact.name,
            len(extraction.undefined),
            len(extraction.external),
            len(extraction.internal),
        )
        return extraction


__all__ = ["SymbolExtraction", "SymbolExtractor", "is_binary_object"]

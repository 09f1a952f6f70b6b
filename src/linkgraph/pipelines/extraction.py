"""Command import and the concurrent dependency and symbol extraction phases."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import IO, Callable, Iterable, Iterator, List, Optional, Protocol, Tuple, TypeVar

from linkgraph.config import ExtractionConfig, ToolchainConfig
from linkgraph.parsing.commands import CommandRecord, build_command, iter_command_lines, iter_compile_commands
from linkgraph.parsing.dependencies import DependencyResolver
from linkgraph.pipelines.symbols import SymbolExtraction, SymbolExtractor
from linkgraph.storage.graph_store import (
    EXTRACT_DEPENDENCIES,
    EXTRACT_SYMBOLS,
    IMPORT_COMMANDS,
    Artifact,
    Command,
    GraphStore,
)

LOGGER = logging.getLogger(__name__)

LIST_FORMAT = "list"
JSON_FORMAT = "json"
INPUT_FORMATS = (LIST_FORMAT, JSON_FORMAT)

DEPENDENCIES_PHASE = "dependencies"
SYMBOLS_PHASE = "symbols"

T = TypeVar("T")
R = TypeVar("R")


class InvalidCommandError(ValueError):
    """Raised when an imported command lacks its directory, executable or output."""


@dataclass(slots=True)
class ImportReport:
    commands: int = 0
    artifacts: int = 0


def _validate(record: CommandRecord) -> None:
    command = record.command
    if not command.directory:
        raise InvalidCommandError(f"Invalid command #{record.item}: directory could not be identified")
    if not command.executable:
        raise InvalidCommandError(f"Invalid command #{record.item}: executable could not be identified")
    if not command.output:
        raise InvalidCommandError(f"Invalid command #{record.item}: output could not be identified")


def _records(stream: IO[str], fmt: str) -> Iterator[CommandRecord]:
    if fmt not in INPUT_FORMATS:
        raise ValueError(f"Unknown input format: {fmt}")
    return iter_compile_commands(stream) if fmt == JSON_FORMAT else iter_command_lines(stream)


def import_sources(
    store: GraphStore,
    sources: Iterable[Tuple[IO[str], str]],
    *,
    dry_run: bool = False,
) -> ImportReport:
    """
    Record every invocation of every ``(stream, fmt)`` source with the artifact it produces.

    ``fmt`` is ``list`` (one ``directory executable args...`` per line) or ``json`` (a compilation
    database). The whole import is one transaction; an invalid command aborts it.
    """

    report = ImportReport()
    with store.transaction(dry_run=dry_run):
        artifacts_before = store.count_artifacts()
        for stream, fmt in sources:
            for record in _records(stream, fmt):
                LOGGER.debug("Command #%d: %s", record.item, record.line)
                _validate(record)
                command = record.command
                with store.lock:
                    stored = store.create_command(command.directory, command.executable, command.args)
                    store.upsert_artifact(command.output, command.output_type, stored.id)
                LOGGER.debug("Output: %s (%s)", command.output, command.output_type)
                report.commands += 1
        report.artifacts = store.count_artifacts() - artifacts_before
        store.set_timestamp(IMPORT_COMMANDS)

    LOGGER.info("%d commands imported", report.commands)
    return report


def import_commands(store: GraphStore, stream: IO[str], fmt: str = LIST_FORMAT, *, dry_run: bool = False) -> ImportReport:
    """Import a single command list or compilation database."""

    return import_sources(store, [(stream, fmt)], dry_run=dry_run)


class ExtractionObserver(Protocol):
    """Receives the progress of an extraction phase."""

    def on_start(self, phase: str, total: int) -> None:
        ...

    def on_item_start(self, phase: str, item: object) -> None:
        ...

    def on_item_done(self, phase: str, item: object, outcome: object, progress: int) -> None:
        ...


@dataclass(slots=True)
class DependencyOutcome:
    """What dependency extraction recorded for one command."""

    command: Command
    output: Optional[Artifact] = None
    dependencies: List[Artifact] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return bool(self.errors)


class LoggingObserver:
    """Report per-item details at DEBUG and per-item problems at WARNING."""

    def on_start(self, phase: str, total: int) -> None:
        LOGGER.info("Extracting %s from %d items", phase, total)

    def on_item_start(self, phase: str, item: object) -> None:
        pass

    def on_item_done(self, phase: str, item: object, outcome: object, progress: int) -> None:
        if isinstance(outcome, DependencyOutcome):
            self._dependencies_done(outcome)
        elif isinstance(outcome, SymbolExtraction):
            self._symbols_done(outcome)

    @staticmethod
    def _dependencies_done(outcome: DependencyOutcome) -> None:
        command = outcome.command
        level = logging.WARNING if outcome.errors else logging.DEBUG
        LOGGER.log(level, "Command #%d %s %s", command.id, command.directory, command.line)
        for error in outcome.errors:
            LOGGER.warning("Error: %s", error)
        if outcome.output is not None:
            LOGGER.debug("> (%s) %d %s", outcome.output.type, outcome.output.id, outcome.output.name)
        for dependency in outcome.dependencies:
            LOGGER.debug("< (%s) %d %s", dependency.type, dependency.id, dependency.name)

    @staticmethod
    def _symbols_done(extraction: SymbolExtraction) -> None:
        artifact = extraction.artifact
        level = logging.WARNING if extraction.failed else logging.DEBUG
        LOGGER.log(level, "Artifact #%d %s", artifact.id, artifact.name)
        if extraction.missing:
            LOGGER.warning("File not found")
        if extraction.linker_script:
            LOGGER.warning("Linker scripts are not supported")
        for process in extraction.failures:
            LOGGER.warning("%s", process.command)
            if process.returncode != 0:
                LOGGER.warning("Status: %d", process.returncode)
            if process.stderr:
                LOGGER.warning("stderr: %s", process.stderr)


@dataclass(slots=True)
class PhaseReport:
    phase: str
    skipped: bool = False
    items: int = 0
    failed: int = 0


class ExtractionScheduler:
    """
    Run dependency and symbol extraction over the whole store with a pool of worker threads.

    Workers perform the subprocess and parsing work in parallel and write their results while
    holding ``store.lock``, so a read followed by a write never interleaves with another worker.
    Each phase is skipped when its timestamp is newer than the one of the phase it builds on,
    unless ``force`` is given.
    """

    def __init__(
        self,
        store: GraphStore,
        toolchain: Optional[ToolchainConfig] = None,
        config: Optional[ExtractionConfig] = None,
        observer: Optional[ExtractionObserver] = None,
        *,
        resolver: Optional[DependencyResolver] = None,
        extractor: Optional[SymbolExtractor] = None,
    ) -> None:
        self.store = store
        self.toolchain = toolchain or ToolchainConfig()
        self.config = config or ExtractionConfig()
        self.observer = observer or LoggingObserver()
        self.resolver = resolver or DependencyResolver(self.toolchain.library_directories)
        self.extractor = extractor or SymbolExtractor(self.toolchain.nm, self.toolchain.cxxfilt)

    def _run(self, phase: str, items: List[T], work: Callable[[T], R], failed: Callable[[R], bool]) -> PhaseReport:
        report = PhaseReport(phase=phase, items=len(items))
        self.observer.on_start(phase, len(items))

        def task(item: T) -> R:
            self.observer.on_item_start(phase, item)
            return work(item)

        progress = 0
        with ThreadPoolExecutor(max_workers=self.config.workers) as executor:
            futures: dict[Future, T] = {executor.submit(task, item): item for item in items}
            try:
                for future in as_completed(futures):
                    outcome = future.result()
                    progress += 1
                    if failed(outcome):
                        report.failed += 1
                    self.observer.on_item_done(phase, futures[future], outcome, progress)
            except BaseException:
                for pending in futures:
                    pending.cancel()
                raise
        return report

    def _extract_command(self, command: Command) -> DependencyOutcome:
        parsed = build_command(command.directory, command.executable, command.args, expand=True)
        resolved = self.resolver.resolve(parsed)
        outcome = DependencyOutcome(command=command, errors=list(resolved.errors))
        if not resolved.output:
            outcome.errors.append("Output could not be identified")
            return outcome
        with self.store.lock:
            outcome.output = self.store.upsert_artifact(resolved.output, resolved.output_type, command.id)
            for path, artifact_type in resolved.files.items():
                dependency = self.store.upsert_artifact(path, artifact_type)
                self.store.create_dependency(outcome.output.id, dependency.id)
                outcome.dependencies.append(dependency)
        return outcome

    def _extract_artifact(self, artifact: Artifact) -> SymbolExtraction:
        extraction = self.extractor.extract(artifact)
        if not extraction.missing and not extraction.linker_script:
            with self.store.lock:
                extraction.store(self.store)
        return extraction

    def _load_dependencies(self, force: bool) -> PhaseReport:
        if not force and self.store.is_up_to_date(EXTRACT_DEPENDENCIES, IMPORT_COMMANDS):
            LOGGER.info("Dependencies table is up to date")
            return PhaseReport(phase=DEPENDENCIES_PHASE, skipped=True)

        report = self._run(DEPENDENCIES_PHASE, self.store.commands(), self._extract_command, lambda outcome: outcome.failed)
        for artifact_type, count in self.store.count_artifacts_by_type().items():
            LOGGER.info("%d %s", count, artifact_type)
        LOGGER.info("%d dependencies", self.store.count_dependencies())
        self.store.set_timestamp(EXTRACT_DEPENDENCIES)
        return report

    def _load_symbols(self, force: bool) -> PhaseReport:
        if not force and self.store.is_up_to_date(EXTRACT_SYMBOLS, EXTRACT_DEPENDENCIES):
            LOGGER.info("Symbols table is up to date")
            return PhaseReport(phase=SYMBOLS_PHASE, skipped=True)

        self.store.truncate_symbol_references()
        artifacts = self.store.artifacts(excluded_types=self.config.symbol_excluded_types)
        report = self._run(SYMBOLS_PHASE, artifacts, self._extract_artifact, lambda extraction: extraction.failed)
        LOGGER.info(
            "%d symbols (%d references)",
            self.store.count_symbols(),
            self.store.count_symbol_references(),
        )
        self.store.set_timestamp(EXTRACT_SYMBOLS)
        return report

    def extract_dependencies(self, *, force: bool = False, dry_run: bool = False) -> PhaseReport:
        """Resolve the dependencies of every stored command."""

        with self.store.transaction(dry_run=dry_run):
            return self._load_dependencies(force)

    def extract_symbols(self, *, force: bool = False, dry_run: bool = False) -> List[PhaseReport]:
        """Bring dependencies up to date, then extract the symbols of every non-source artifact."""

        with self.store.transaction(dry_run=dry_run):
            dependencies = self._load_dependencies(force)
            # fresh dependencies always invalidate the symbol tables
            symbols = self._load_symbols(force or not dependencies.skipped)
        return [dependencies, symbols]


def run_extraction(
    store: GraphStore,
    phases: Iterable[str],
    toolchain: Optional[ToolchainConfig] = None,
    config: Optional[ExtractionConfig] = None,
    observer: Optional[ExtractionObserver] = None,
    *,
    force: bool = False,
    dry_run: bool = False,
) -> List[PhaseReport]:
    """Convenience wrapper used by the command line: run the requested phases in order."""

    scheduler = ExtractionScheduler(store, toolchain, config, observer)
    phases = list(phases)
    if SYMBOLS_PHASE in phases:
        return scheduler.extract_symbols(force=force, dry_run=dry_run)
    if DEPENDENCIES_PHASE in phases:
        return [scheduler.extract_dependencies(force=force, dry_run=dry_run)]
    return []


__all__ = [
    "DEPENDENCIES_PHASE",
    "DependencyOutcome",
    "ExtractionObserver",
    "ExtractionScheduler",
    "INPUT_FORMATS",
    "ImportReport",
    "InvalidCommandError",
    "JSON_FORMAT",
    "LIST_FORMAT",
    "LoggingObserver",
    "PhaseReport",
    "SYMBOLS_PHASE",
    "import_commands",
    "import_sources",
    "run_extraction",
]

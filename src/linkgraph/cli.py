"""Command line entry points for the project."""

from __future__ import annotations

import logging
import sys
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import typer

from linkgraph import __version__
from linkgraph.analysis.graph_loader import (
    build_dependency_graph,
    export_dot,
    export_generic_graph,
    export_graphml,
    export_text,
)
from linkgraph.analysis.graph_queries import (
    analyse_undefined_symbols,
    find_duplicate_symbols,
    find_useless_dependencies,
    generated_link_artifacts,
    useless_dependencies_ldd,
    walk_dependencies,
)
from linkgraph.analysis.visualization import plot_dependency_graph
from linkgraph.config import DEFAULT_DATABASE, DEFAULT_WORKERS, ExtractionConfig, ToolchainConfig
from linkgraph.pipelines.extraction import (
    DEPENDENCIES_PHASE,
    JSON_FORMAT,
    LIST_FORMAT,
    SYMBOLS_PHASE,
    import_sources,
    run_extraction,
)
from linkgraph.storage.graph_store import Artifact, ArtifactConflictError, Dependency, GraphStore

LOGGER = logging.getLogger(__name__)

STDIN = "-"
EXPORT_FORMATS = ("txt", "json", "graphml", "dot")
USELESS_MODES = ("symbols", "ldd")

# Fatal errors of the import and extraction phases, including missing toolchain programs.
FATAL_ERRORS = (ValueError, ArtifactConflictError, OSError)


@dataclass(slots=True)
class CliState:
    db: Path = DEFAULT_DATABASE


app = typer.Typer(help="Build-graph extraction and link analysis for native C/C++ projects.")


def _configure_logging(verbose: int) -> None:
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    display_version: bool = typer.Option(False, "--version", "-V", help="Show version and exit."),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Increase log verbosity (-v info, -vv debug)."),
    db: Path = typer.Option(DEFAULT_DATABASE, "--db", envvar="LINKGRAPH_DB", help="Path of the graph database."),
) -> None:
    """Print the package version when requested and set up logging."""

    if display_version:
        typer.echo(__version__)
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()

    _configure_logging(verbose)
    ctx.obj = CliState(db=db.expanduser())


def _open_store(ctx: typer.Context) -> GraphStore:
    state: CliState = ctx.obj or CliState()
    return GraphStore(state.db)


def _fail(exc: Exception) -> None:
    typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1) from exc


def _lookup(store: GraphStore, name: str) -> Artifact:
    artifact = store.artifact_by_name(name)
    if artifact is None:
        artifact = store.artifact_by_name(str(Path(name).expanduser().resolve()))
    if artifact is None:
        raise typer.BadParameter(f"Unknown artifact: {name}")
    return artifact


def _select(store: GraphStore, names: List[str]) -> List[Artifact]:
    if not names:
        return generated_link_artifacts(store)
    return [_lookup(store, name) for name in names]


def _print_counts(store: GraphStore) -> None:
    typer.echo(f"Commands: {store.count_commands()}")
    typer.echo(f"Artifacts: {store.count_artifacts()}")
    for artifact_type, count in store.count_artifacts_by_type().items():
        typer.echo(f"  {artifact_type}: {count}")
    typer.echo(f"Dependencies: {store.count_dependencies()}")
    typer.echo(f"Symbols: {store.count_symbols()}")
    typer.echo(f"Symbol references: {store.count_symbol_references()}")


@app.command("import")
def import_command(
    ctx: typer.Context,
    list_files: List[str] = typer.Option([], "--list", help="Text file with one command per line (- for stdin)."),
    json_files: List[str] = typer.Option([], "--json", help="JSON compilation database (- for stdin)."),
    dry_run: bool = typer.Option(False, help="Parse and validate without saving anything."),
) -> None:
    """Import recorded compiler and archiver invocations."""

    sources = [(name, JSON_FORMAT) for name in json_files] + [(name, LIST_FORMAT) for name in list_files]
    if not sources:
        sources = [(STDIN, LIST_FORMAT)]
    if sum(1 for name, _ in sources if name == STDIN) > 1:
        raise typer.BadParameter("The standard input can only be read once.")
    for name, _ in sources:
        if name != STDIN and not Path(name).expanduser().is_file():
            raise typer.BadParameter(f"Input not found: {name}")

    with _open_store(ctx) as store, ExitStack() as stack:
        streams = []
        for name, fmt in sources:
            stream = sys.stdin if name == STDIN else stack.enter_context(Path(name).expanduser().open("r", encoding="utf-8"))
            streams.append((stream, fmt))
        try:
            report = import_sources(store, streams, dry_run=dry_run)
        except FATAL_ERRORS as exc:
            _fail(exc)
        typer.secho(f"{report.commands} commands imported", fg=typer.colors.GREEN)
        typer.echo(f"New artifacts: {report.artifacts}")


@app.command("extract")
def extract_command(
    ctx: typer.Context,
    dependencies: bool = typer.Option(False, "--dependencies", help="Extract dependencies from commands."),
    symbols: bool = typer.Option(False, "--symbols", help="Extract symbols from artifacts (implies --dependencies)."),
    workers: int = typer.Option(DEFAULT_WORKERS, "--workers", "-j", envvar="LINKGRAPH_WORKERS", help="Number of parallel workers."),
    compiler: str = typer.Option("gcc", envvar="LINKGRAPH_CC", help="Compiler driver queried for default library directories."),
    library_dir: List[Path] = typer.Option([], "--library-dir", "-L", help="Extra library directory searched before the defaults."),
    force: bool = typer.Option(False, help="Extract even when the tables look up to date."),
    dry_run: bool = typer.Option(False, help="Run the extraction without saving anything."),
) -> None:
    """Resolve dependencies and extract symbol tables of the imported build."""

    phases = []
    if dependencies or not symbols:
        phases.append(DEPENDENCIES_PHASE)
    if symbols:
        phases.append(SYMBOLS_PHASE)
    try:
        config = ExtractionConfig(workers=workers)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    toolchain = ToolchainConfig.from_compiler(compiler, extra_library_directories=library_dir)
    with _open_store(ctx) as store:
        try:
            reports = run_extraction(store, phases, toolchain, config, force=force, dry_run=dry_run)
        except FATAL_ERRORS as exc:
            _fail(exc)
        for report in reports:
            if report.skipped:
                typer.echo(f"{report.phase}: up to date")
                continue
            colour = typer.colors.YELLOW if report.failed else typer.colors.GREEN
            typer.secho(f"{report.phase}: {report.items} processed, {report.failed} with errors", fg=colour)
        _print_counts(store)


@app.command("artifacts")
def artifacts_command(
    ctx: typer.Context,
    artifact_type: List[str] = typer.Option([], "--type", "-t", help="Only list artifacts of these types."),
    exclude_type: List[str] = typer.Option([], "--exclude-type", "-T", help="Do not list artifacts of these types."),
    generated: bool = typer.Option(False, help="Only list artifacts produced by a recorded command."),
) -> None:
    """List stored artifacts."""

    with _open_store(ctx) as store:
        for artifact in store.artifacts(artifact_type or None, exclude_type or None):
            if generated and not artifact.generated:
                continue
            typer.echo(f"{artifact.id}\t{artifact.type}\t{artifact.name}")


@app.command("dependencies")
def dependencies_command(
    ctx: typer.Context,
    artifacts: List[str] = typer.Argument(..., help="Artifacts to start from."),
    reverse: bool = typer.Option(False, "--reverse", "-r", help="Follow dependees instead of dependencies."),
    recursive: bool = typer.Option(False, "--recursive", "-R", help="Follow edges transitively."),
    artifact_type: List[str] = typer.Option([], "--type", "-t", help="Only traverse artifacts of these types."),
    exclude_type: List[str] = typer.Option([], "--exclude-type", "-T", help="Do not traverse artifacts of these types."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the graph to this file."),
    format: str = typer.Option("txt", "--format", "-f", help="Output format: txt, json, graphml or dot (dot needs igraph)."),
    full_path: bool = typer.Option(False, help="Label nodes with their full path."),
) -> None:
    """Show the dependencies (or dependees) of artifacts."""

    fmt = format.lower()
    if fmt not in EXPORT_FORMATS:
        raise typer.BadParameter(f"Unknown format: {format}")

    with _open_store(ctx) as store:
        edges: set[Dependency] = set()
        for name in artifacts:
            artifact = _lookup(store, name)
            if recursive:
                edges |= walk_dependencies(
                    store, artifact.id, reverse=reverse, types=artifact_type, excluded_types=exclude_type
                ).edges
                continue
            neighbours = store.dependees if reverse else store.dependencies
            for other in neighbours(artifact.id, artifact_type or None, exclude_type or None):
                edges.add(Dependency(other.id, artifact.id) if reverse else Dependency(artifact.id, other.id))

        graph = build_dependency_graph(store, sorted(edges), full_path=full_path)

    if output is None:
        for source, target in graph.edges():
            typer.echo(f"{graph.nodes[source]['label']} -> {graph.nodes[target]['label']}")
        return

    if fmt == "json":
        export_generic_graph(graph, output)
    elif fmt == "graphml":
        export_graphml(graph, output)
    elif fmt == "dot":
        try:
            export_dot(graph, output)
        except ImportError as exc:
            _fail(exc)
    else:
        export_text(graph, output)
    typer.secho(f"{graph.number_of_edges()} edges written to {output}", fg=typer.colors.GREEN)


@app.command("duplicates")
def duplicates_command(
    ctx: typer.Context,
    artifact_type: List[str] = typer.Option([], "--type", "-t", help="Only count references in these artifact types."),
    exclude_type: List[str] = typer.Option([], "--exclude-type", "-T", help="Ignore references in these artifact types."),
    category: List[str] = typer.Option([], "--category", "-c", help="Only count references of these categories."),
    exclude_category: List[str] = typer.Option([], "--exclude-category", "-C", help="Ignore references of these categories."),
    top: Optional[int] = typer.Option(None, help="Print at most this many symbols."),
    locations: bool = typer.Option(False, help="List the artifacts referencing each symbol."),
) -> None:
    """Report sized symbols defined more than once."""

    with _open_store(ctx) as store:
        usages = find_duplicate_symbols(
            store,
            artifact_types=artifact_type or None,
            excluded_artifact_types=exclude_type or None,
            categories=category or None,
            excluded_categories=exclude_category or None,
        )
        if top is not None:
            usages = usages[:top]
        for usage in usages:
            typer.echo(
                f"{usage.symbol.display_name}: occurrences: {usage.occurrences}, total size: {usage.total_size}"
            )
            if locations:
                for artifact in store.symbol_artifacts(usage.symbol.id):
                    typer.echo(f"  {artifact.name}")


@app.command("undefined")
def undefined_command(
    ctx: typer.Context,
    artifacts: List[str] = typer.Argument(None, help="Artifacts to analyse (default: generated shared libraries and executables)."),
) -> None:
    """Report undefined symbols that no direct dependency provides."""

    with _open_store(ctx) as store:
        for artifact in _select(store, artifacts or []):
            unresolved = analyse_undefined_symbols(store, artifact.id)
            if not unresolved:
                continue
            typer.secho(artifact.name, fg=typer.colors.GREEN)
            for entry in unresolved:
                line = f"\t{entry.symbol.display_name}"
                if entry.candidates:
                    line += " -> " + ", ".join(candidate.name for candidate in entry.candidates)
                typer.echo(line)


@app.command("useless")
def useless_command(
    ctx: typer.Context,
    artifacts: List[str] = typer.Argument(None, help="Artifacts to analyse (default: generated shared libraries and executables)."),
    mode: str = typer.Option("symbols", help="Analysis mode: symbols or ldd."),
    details: bool = typer.Option(False, help="Also list useful dependencies and the symbols they resolve."),
    ldd: str = typer.Option("ldd", help="Program used by the ldd mode."),
) -> None:
    """Report shared dependencies that resolve no undefined symbol."""

    mode = mode.lower()
    if mode not in USELESS_MODES:
        raise typer.BadParameter(f"Unknown mode: {mode}")

    with _open_store(ctx) as store:
        for artifact in _select(store, artifacts or []):
            if mode == "ldd":
                try:
                    report = useless_dependencies_ldd(artifact, ldd)
                except FileNotFoundError as exc:
                    _fail(exc)
                if not report.unused and not report.process.stderr:
                    continue
                typer.secho(f"Artifact #{artifact.id} {artifact.name}", fg=typer.colors.GREEN)
                if report.process.stderr:
                    typer.secho(f"  stderr: {report.process.stderr}", fg=typer.colors.RED)
                for name in report.unused:
                    typer.echo(f"  {name}")
                continue

            report = find_useless_dependencies(store, artifact)
            if not report.useless and not details:
                continue
            typer.secho(f"Artifact #{artifact.id} {artifact.name}", fg=typer.colors.GREEN)
            if details:
                typer.echo("  Useful dependencies:")
                for dependency_id, resolved in report.useful.items():
                    dependency = store.get_artifact(dependency_id)
                    typer.echo(f"    {dependency.name if dependency else dependency_id}")
                    for symbol in resolved:
                        typer.echo(f"      {symbol.display_name}")
            if report.useless:
                typer.secho("  Useless dependencies:", fg=typer.colors.YELLOW)
                for dependency in report.useless:
                    typer.echo(f"    {dependency.name}")


@app.command("plot")
def plot_command(
    ctx: typer.Context,
    artifact: str = typer.Argument(..., help="Artifact whose dependency closure is drawn."),
    output: Path = typer.Option(Path("dependencies.png"), "--output", "-o", help="Destination image."),
    reverse: bool = typer.Option(False, "--reverse", "-r", help="Draw dependees instead of dependencies."),
    exclude_type: List[str] = typer.Option([], "--exclude-type", "-T", help="Do not draw artifacts of these types."),
    layout: str = typer.Option("layered", help="Layout: layered, spring or kamada-kawai."),
    full_path: bool = typer.Option(False, help="Label nodes with their full path."),
) -> None:
    """Render the dependency closure of an artifact with matplotlib."""

    with _open_store(ctx) as store:
        start = _lookup(store, artifact)
        closure = walk_dependencies(store, start.id, reverse=reverse, excluded_types=exclude_type)
        graph = build_dependency_graph(store, sorted(closure.edges), full_path=full_path)

    try:
        path = plot_dependency_graph(graph, output, layout=layout, root=start.id, title=start.name)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    except ImportError as exc:
        _fail(exc)
    typer.secho(f"Plot written to {path}", fg=typer.colors.GREEN)


@app.command("db")
def db_command(
    ctx: typer.Context,
    truncate_symbols: bool = typer.Option(False, help="Delete symbols and symbol references."),
    optimize: bool = typer.Option(False, help="Let SQLite optimize its indexes."),
    vacuum: bool = typer.Option(False, help="Rebuild the database file."),
) -> None:
    """Show database statistics and run maintenance operations."""

    with _open_store(ctx) as store:
        if truncate_symbols:
            with store.transaction():
                store.truncate_symbols()
            typer.echo("Symbols truncated")
        if optimize:
            store.optimize()
        if vacuum:
            store.vacuum()
        _print_counts(store)


__all__ = ["app"]

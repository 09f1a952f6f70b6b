"""Tests for the SQLite graph store."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from linkgraph.io.nm import SymbolEntry
from linkgraph.storage.graph_store import (
    EXTRACT_DEPENDENCIES,
    IMPORT_COMMANDS,
    ArtifactConflictError,
    GraphStore,
    SelfDependencyError,
)


@pytest.fixture()
def store():
    with GraphStore() as graph_store:
        yield graph_store


def test_commands_are_unique(store: GraphStore) -> None:
    first = store.create_command("/build", "gcc", "-o a.o -c a.c")
    second = store.create_command("/build", "gcc", "-o a.o -c a.c")
    third = store.create_command("/build", "gcc", "-o b.o -c b.c")

    assert first == second
    assert third.id != first.id
    assert store.count_commands() == 2
    assert first.line == "gcc -o a.o -c a.c"


def test_artifacts_are_unique_by_name(store: GraphStore) -> None:
    first = store.upsert_artifact("/build/a.o", "object")
    second = store.upsert_artifact("/build/a.o", "object")

    assert first.id == second.id
    assert store.count_artifacts() == 1


def test_generic_types_are_refined(store: GraphStore) -> None:
    store.upsert_artifact("/lib/libz.so", "library")
    refined = store.upsert_artifact("/lib/libz.so", "shared")
    kept = store.upsert_artifact("/lib/libz.so", "library")

    assert refined.type == "shared"
    assert kept.type == "shared"
    assert store.artifact_by_name("/lib/libz.so").type == "shared"


def test_concrete_type_conflict(store: GraphStore) -> None:
    store.upsert_artifact("/build/thing", "object")

    with pytest.raises(ArtifactConflictError):
        store.upsert_artifact("/build/thing", "static")


def test_generating_command(store: GraphStore) -> None:
    first = store.create_command("/build", "gcc", "-o a.o -c a.c")
    other = store.create_command("/build", "gcc", "-O2 -o a.o -c a.c")

    store.upsert_artifact("/build/a.o", "object")
    artifact = store.upsert_artifact("/build/a.o", "object", first.id)
    assert artifact.generating_command_id == first.id
    assert store.upsert_artifact("/build/a.o", "object").generating_command_id == first.id

    with pytest.raises(ArtifactConflictError):
        store.upsert_artifact("/build/a.o", "object", other.id)

    [(command, generated)] = store.generated_artifacts()
    assert command == first
    assert generated.name == "/build/a.o"


def test_dependencies(store: GraphStore) -> None:
    app = store.upsert_artifact("/build/app", "executable")
    obj = store.upsert_artifact("/build/main.o", "object")
    lib = store.upsert_artifact("/lib/libz.so", "shared")

    assert store.create_dependency(app.id, obj.id)
    assert store.create_dependency(app.id, lib.id)
    assert not store.create_dependency(app.id, lib.id)

    assert store.count_dependencies() == 2
    assert [artifact.name for artifact in store.dependencies(app.id)] == ["/build/main.o", "/lib/libz.so"]
    assert store.dependencies(app.id, types=["shared"]) == [lib]
    assert store.dependencies(app.id, excluded_types=["shared"]) == [obj]
    assert store.dependees(lib.id) == [app]
    assert len(store.all_dependencies(dependency_types=["object"])) == 1

    assert store.remove_dependency(app.id, lib.id)
    assert store.dependencies(app.id) == [obj]


def test_self_dependencies_are_rejected(store: GraphStore) -> None:
    artifact = store.upsert_artifact("/build/a.o", "object")

    with pytest.raises(SelfDependencyError):
        store.create_dependency(artifact.id, artifact.id)
    with pytest.raises(sqlite3.IntegrityError):
        store.connection.execute(
            "INSERT INTO dependencies (dependee_id, dependency_id) VALUES (?, ?)", (artifact.id, artifact.id)
        )


def test_symbol_versions_collapse(store: GraphStore) -> None:
    versioned = store.get_or_create_symbol("foo@@GLIBC_2.2.5")
    plain = store.get_or_create_symbol("foo")

    assert versioned.id == plain.id
    assert plain.name == "foo"
    assert store.symbol_by_name("foo@GLIBC_2.2.5") == plain


def test_demangled_name_is_filled_later(store: GraphStore) -> None:
    store.get_or_create_symbol("_Z3foov")
    symbol = store.get_or_create_symbol("_Z3foov", "foo()")

    assert symbol.dname == "foo()"
    assert symbol.display_name == "foo()"


def test_symbol_references(store: GraphStore) -> None:
    artifact = store.upsert_artifact("/build/a.o", "object")
    count = store.insert_symbol_references(
        artifact.id,
        "external",
        [SymbolEntry("f", "T", 0, 4), SymbolEntry("g", "D", 16, None)],
        {"f": "f()"},
    )
    store.insert_symbol_references(artifact.id, "undefined", [SymbolEntry("puts", "U")])

    assert count == 2
    assert [symbol.name for symbol in store.external_symbols(artifact.id)] == ["f", "g"]
    assert [symbol.name for symbol in store.undefined_symbols(artifact.id)] == ["puts"]
    assert store.exporters(store.symbol_by_name("f").id) == [artifact]
    sizes = {reference.size for reference in store.symbol_references(artifact.id, "external")}
    assert sizes == {4, None}

    with pytest.raises(ValueError):
        store.insert_symbol_references(artifact.id, "weird", [])

    store.truncate_symbol_references()
    assert store.count_symbol_references() == 0
    assert store.count_symbols() == 3
    store.truncate_symbols()
    assert store.count_symbols() == 0


def test_transaction_commit_and_rollback(store: GraphStore) -> None:
    with store.transaction():
        store.upsert_artifact("/kept", "object")

    with store.transaction(dry_run=True):
        store.upsert_artifact("/discarded", "object")

    with pytest.raises(KeyError):
        with store.transaction():
            store.upsert_artifact("/failed", "object")
            raise KeyError("boom")

    assert [artifact.name for artifact in store.artifacts()] == ["/kept"]


def test_transactions_do_not_nest(store: GraphStore) -> None:
    with store.transaction():
        with pytest.raises(RuntimeError):
            with store.transaction():
                pass


def test_timestamps_are_strictly_increasing(store: GraphStore) -> None:
    assert store.timestamp(IMPORT_COMMANDS) is None
    assert not store.is_up_to_date(EXTRACT_DEPENDENCIES, IMPORT_COMMANDS)

    imported = store.set_timestamp(IMPORT_COMMANDS)
    extracted = store.set_timestamp(EXTRACT_DEPENDENCIES)
    assert extracted > imported
    assert store.is_up_to_date(EXTRACT_DEPENDENCIES, IMPORT_COMMANDS)

    assert store.set_timestamp(IMPORT_COMMANDS) > extracted
    assert not store.is_up_to_date(EXTRACT_DEPENDENCIES, IMPORT_COMMANDS)


def test_store_persists_to_disk(tmp_path: Path) -> None:
    path = tmp_path / "graph.db"
    with GraphStore(path) as store:
        with store.transaction():
            store.upsert_artifact("/build/a.o", "object")
        store.optimize()
        store.vacuum()

    with GraphStore(path) as store:
        assert store.count_artifacts_by_type() == {"object": 1}


def test_command_line_quotes_the_executable(store: GraphStore) -> None:
    command = store.create_command("/build", "/opt/my tools/gcc", "-c a.c -o a.o")

    assert command.line == "'/opt/my tools/gcc' -c a.c -o a.o"

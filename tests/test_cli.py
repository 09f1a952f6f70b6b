"""Tests for the command line interface."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from linkgraph import __version__
from linkgraph.cli import app
from linkgraph.io.nm import SymbolEntry
from linkgraph.storage.graph_store import GraphStore

runner = CliRunner()

MISSING_COMPILER = "definitely-not-a-compiler-xyz"


@pytest.fixture()
def commands(tmp_path: Path) -> Path:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "main.c").write_text("int main(void) { return 0; }\n")
    (tmp_path / "src" / "util.c").write_text("int util(void) { return 0; }\n")
    path = tmp_path / "commands.txt"
    path.write_text(
        "\n".join(
            [
                f"{tmp_path / 'src'} gcc -c main.c -o main.o",
                f"{tmp_path / 'src'} gcc -c util.c -o util.o",
            ]
        )
        + "\n"
    )
    return path


def _invoke(db: Path, *args: str):
    return runner.invoke(app, ["--db", str(db), *args])


def test_version() -> None:
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_import_and_list_artifacts(tmp_path: Path, commands: Path) -> None:
    db = tmp_path / "graph.db"

    result = _invoke(db, "import", "--list", str(commands))
    assert result.exit_code == 0, result.output
    assert "2 commands imported" in result.output

    result = _invoke(db, "artifacts", "--type", "object")
    assert result.exit_code == 0
    assert str((tmp_path / "src" / "main.o").resolve()) in result.output

    result = _invoke(db, "db")
    assert "Commands: 2" in result.output


def test_import_json_dry_run(tmp_path: Path) -> None:
    db = tmp_path / "graph.db"
    database = tmp_path / "compile_commands.json"
    database.write_text(json.dumps([{"directory": str(tmp_path), "command": "cc -c a.c -o a.o"}]))

    result = _invoke(db, "import", "--json", str(database), "--dry-run")

    assert result.exit_code == 0, result.output
    with GraphStore(db) as store:
        assert store.count_commands() == 0


def test_invalid_command_exits_with_error(tmp_path: Path) -> None:
    db = tmp_path / "graph.db"
    path = tmp_path / "commands.txt"
    path.write_text(f"{tmp_path} gcc -c main.c\n")

    result = _invoke(db, "import", "--list", str(path))

    assert result.exit_code == 1
    assert "output could not be identified" in result.output


def test_missing_input_is_a_bad_parameter(tmp_path: Path) -> None:
    result = _invoke(tmp_path / "graph.db", "import", "--list", str(tmp_path / "absent.txt"))

    assert result.exit_code != 0


def test_extract_dependencies_and_show_them(tmp_path: Path, commands: Path) -> None:
    db = tmp_path / "graph.db"
    _invoke(db, "import", "--list", str(commands))

    result = _invoke(db, "extract", "--dependencies", "--compiler", MISSING_COMPILER, "--workers", "2")
    assert result.exit_code == 0, result.output
    assert "dependencies: 2 processed, 0 with errors" in result.output

    result = _invoke(db, "extract", "--dependencies", "--compiler", MISSING_COMPILER)
    assert "dependencies: up to date" in result.output

    main_o = str((tmp_path / "src" / "main.o").resolve())
    result = _invoke(db, "dependencies", main_o)
    assert result.exit_code == 0
    assert "main.o -> main.c" in result.output

    output = tmp_path / "deps.json"
    result = _invoke(db, "dependencies", main_o, "--recursive", "--output", str(output), "--format", "json")
    assert result.exit_code == 0, result.output
    assert json.loads(output.read_text())["edge_count"] == 1


def test_unknown_artifact(tmp_path: Path) -> None:
    result = _invoke(tmp_path / "graph.db", "dependencies", "/nowhere/thing.o")

    assert result.exit_code != 0


def test_analysis_commands(tmp_path: Path) -> None:
    db = tmp_path / "graph.db"
    with GraphStore(db) as store:
        command = store.create_command("/build", "gcc", "-o app main.o -lz -lm")
        app_artifact = store.upsert_artifact("/build/app", "executable", command.id)
        libz = store.upsert_artifact("/usr/lib/libz.so", "shared")
        libm = store.upsert_artifact("/usr/lib/libm.so", "shared")
        libother = store.upsert_artifact("/usr/lib/libother.so", "shared")
        store.create_dependency(app_artifact.id, libz.id)
        store.create_dependency(app_artifact.id, libm.id)
        store.insert_symbol_references(app_artifact.id, "undefined", [SymbolEntry("deflate", "U"), SymbolEntry("frob", "U")])
        store.insert_symbol_references(libz.id, "external", [SymbolEntry("deflate", "T", 0, 64)])
        store.insert_symbol_references(libm.id, "external", [SymbolEntry("sin", "T", 0, 32)])
        store.insert_symbol_references(libother.id, "external", [SymbolEntry("frob", "T", 0, 16), SymbolEntry("sin", "T", 0, 32)])

    result = _invoke(db, "undefined")
    assert result.exit_code == 0, result.output
    assert "frob -> /usr/lib/libother.so" in result.output
    assert "deflate" not in result.output

    result = _invoke(db, "useless", "--details")
    assert result.exit_code == 0, result.output
    assert "/usr/lib/libm.so" in result.output
    assert "deflate" in result.output

    result = _invoke(db, "duplicates")
    assert result.exit_code == 0
    assert "sin: occurrences: 2, total size: 64" in result.output

    result = _invoke(db, "useless", "--mode", "bogus")
    assert result.exit_code != 0


def _plot_store(db: Path) -> None:
    with GraphStore(db) as store:
        app_artifact = store.upsert_artifact("/build/app", "executable")
        libz = store.upsert_artifact("/usr/lib/libz.so", "shared")
        store.create_dependency(app_artifact.id, libz.id)


def test_plot_layouts(tmp_path: Path) -> None:
    pytest.importorskip("matplotlib")
    db = tmp_path / "graph.db"
    _plot_store(db)

    for layout in ("layered", "kamada-kawai"):
        output = tmp_path / f"{layout}.png"
        result = _invoke(db, "plot", "/build/app", "--output", str(output), "--layout", layout)
        assert result.exit_code == 0, result.output
        assert output.exists()


def test_plot_reports_missing_layout_backend(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    db = tmp_path / "graph.db"
    _plot_store(db)

    def missing_backend(*args, **kwargs):
        raise ModuleNotFoundError("No module named 'scipy'")

    monkeypatch.setattr("linkgraph.cli.plot_dependency_graph", missing_backend)
    result = _invoke(db, "plot", "/build/app", "--output", str(tmp_path / "deps.png"))

    assert result.exit_code == 1
    assert "scipy" in result.output


def test_dependencies_dot_export(tmp_path: Path) -> None:
    pytest.importorskip("igraph")
    db = tmp_path / "graph.db"
    _plot_store(db)
    output = tmp_path / "deps.dot"

    result = _invoke(db, "dependencies", "/build/app", "--output", str(output), "--format", "dot")

    assert result.exit_code == 0, result.output
    assert "1 edges written" in result.output
    assert output.read_text(encoding="utf-8").count("->") == 1

"""Tests for dependency resolution of parsed commands."""

from __future__ import annotations

import shlex
from pathlib import Path

import pytest

from linkgraph.parsing.commands import parse_command
from linkgraph.parsing.dependencies import DependencyResolver, UnknownExecutableError


def _touch(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"")
    return path.resolve()


def _command(directory: Path, text: str):
    return parse_command(f"{shlex.quote(str(directory))} {text}", expand=True)


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    _touch(tmp_path / "src" / "main.c")
    _touch(tmp_path / "src" / "util.o")
    _touch(tmp_path / "lib" / "libfoo.so")
    _touch(tmp_path / "lib" / "libfoo.a")
    _touch(tmp_path / "lib" / "libbar.a")
    return tmp_path


def test_compile_link_dependencies(project: Path) -> None:
    lib = project / "lib"
    command = _command(
        project / "src",
        f"gcc -O2 -Wall -g -MF deps.d -Iinclude -isystem /opt/include -o app main.c util.o -L{lib} -lfoo -lbar -lmissing",
    )

    result = DependencyResolver().resolve(command)

    assert result.output == str((project / "src" / "app").resolve())
    assert result.output_type == "executable"
    assert result.files == {
        str((project / "src" / "main.c").resolve()): "source",
        str((project / "src" / "util.o").resolve()): "object",
        str((lib / "libfoo.so").resolve()): "shared",
        str((lib / "libbar.a").resolve()): "static",
    }
    assert result.errors == ["Unable to locate library missing"]
    assert result.include_directories == ["include", "/opt/include"]


def test_flag_values_are_not_inputs(project: Path) -> None:
    command = _command(
        project / "src",
        "gcc -include config.h -x c -Xlinker --no-undefined -z defs -o app main.c",
    )

    result = DependencyResolver().resolve(command)

    assert result.files == {str((project / "src" / "main.c").resolve()): "source"}
    assert result.errors == []


def test_local_directories_are_searched_before_defaults(tmp_path: Path) -> None:
    local = tmp_path / "local"
    default = tmp_path / "default"
    expected = _touch(local / "libfoo.so")
    _touch(default / "libfoo.so")
    _touch(tmp_path / "main.o")

    resolver = DependencyResolver([default])
    result = resolver.resolve(_command(tmp_path, f"gcc -o app main.o -L {local} -lfoo"))

    assert str(expected) in result.files
    assert not result.errors


def test_shared_objects_are_preferred_over_archives(tmp_path: Path) -> None:
    local = tmp_path / "local"
    default = tmp_path / "default"
    _touch(local / "libbaz.a")
    shared = _touch(default / "libbaz.so")

    resolver = DependencyResolver([default])

    assert resolver.locate_library("baz", [local]) == str(shared)
    assert resolver.locate_library("nothing", [local]) is None


def test_exact_namespec(tmp_path: Path) -> None:
    exact = _touch(tmp_path / "libexact.so.1")

    assert DependencyResolver([tmp_path]).locate_library(":libexact.so.1", []) == str(exact)


def test_openmp_adds_runtime_to_shared_outputs(tmp_path: Path) -> None:
    runtime = tmp_path / "runtime"
    gomp = _touch(runtime / "libgomp.so")
    pthread = _touch(runtime / "libpthread.so")
    _touch(tmp_path / "x.o")
    resolver = DependencyResolver([runtime])

    shared = resolver.resolve(_command(tmp_path, "gcc -shared -fopenmp -o libx.so x.o"))
    executable = resolver.resolve(_command(tmp_path, "gcc -fopenmp -o x x.o"))

    assert str(gomp) in shared.files and str(pthread) in shared.files
    assert str(gomp) not in executable.files


def test_archive_dependencies(tmp_path: Path) -> None:
    a = _touch(tmp_path / "a.o")
    b = _touch(tmp_path / "b.o")
    other = _touch(tmp_path / "other.a")

    result = DependencyResolver().resolve(_command(tmp_path, "ar qc libs.a a.o b.o other.a"))

    assert result.output == str((tmp_path / "libs.a").resolve())
    assert result.output_type == "static"
    assert result.files == {str(a): "object", str(b): "object", str(other): "static"}


def test_resolution_errors_are_collected(tmp_path: Path) -> None:
    _touch(tmp_path / "main.o")
    result = DependencyResolver().resolve(
        _command(tmp_path, "gcc -o app main.o absent.o -L/does/not/exist -Xlinker")
    )

    assert list(result.files) == [str((tmp_path / "main.o").resolve())]
    assert "Unable to resolve absent.o" in result.errors
    assert "Invalid -L /does/not/exist" in result.errors
    assert "Unsupported argument -Xlinker" in result.errors


def test_self_dependency_is_dropped(tmp_path: Path) -> None:
    _touch(tmp_path / "x.o")

    result = DependencyResolver().resolve(_command(tmp_path, "gcc -r -o x.o x.o"))

    assert result.files == {}
    assert any("on itself" in error for error in result.errors)


def test_unknown_executable_is_fatal(tmp_path: Path) -> None:
    with pytest.raises(UnknownExecutableError):
        DependencyResolver().resolve(_command(tmp_path, "python build.py"))


def test_resolver_keeps_no_state_between_commands(tmp_path: Path) -> None:
    local = tmp_path / "local"
    _touch(local / "libfoo.so")
    _touch(tmp_path / "main.o")
    resolver = DependencyResolver()

    first = resolver.resolve(_command(tmp_path, f"gcc -o a main.o -L{local} -lfoo"))
    second = resolver.resolve(_command(tmp_path, "gcc -o b main.o -lfoo"))

    assert not first.errors
    assert second.errors == ["Unable to locate library foo"]

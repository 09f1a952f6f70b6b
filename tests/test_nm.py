"""Tests for nm output parsing."""

from __future__ import annotations

import pytest

from linkgraph.io.nm import NmMode, SymbolEntry, is_noise, nm_command, parse_nm_line, parse_nm_output, strip_version


def test_parse_sized_line() -> None:
    entry = parse_nm_line("0000000000001139 000000000000000b T main\n")

    assert entry == SymbolEntry(name="main", type="T", address=0x1139, size=11)


def test_parse_addressed_line_without_size() -> None:
    entry = parse_nm_line("0000000000004010 B counter")

    assert entry == SymbolEntry(name="counter", type="B", address=0x4010, size=None)


def test_parse_undefined_line_strips_version() -> None:
    entry = parse_nm_line("                 U printf@GLIBC_2.2.5")

    assert entry == SymbolEntry(name="printf", type="U")


def test_parse_weak_undefined_line() -> None:
    entry = parse_nm_line("                 w __cxa_finalize@@GLIBC_2.2.5")

    assert entry is not None
    assert entry.name == "__cxa_finalize"
    assert entry.type == "w"


@pytest.mark.parametrize(
    "line",
    [
        "",
        "libfoo.o:",
        "0000000000000000 r .LC0",
        "0000000000000020 0000000000000015 t _GLOBAL__sub_I_main.cpp",
        "0000000000000100 0000000000000005 t compute.cold",
        "                 w __gmon_start__",
        "                 w _ITM_registerTMCloneTable",
        "garbage",
    ],
)
def test_noise_and_malformed_lines_are_dropped(line: str) -> None:
    assert parse_nm_line(line) is None


def test_strip_version() -> None:
    assert strip_version("foo@@GLIBC_2.2.5") == "foo"
    assert strip_version("foo@GLIBC_2.2.5") == "foo"
    assert strip_version("_ZN3fooC2Ev") == "_ZN3fooC2Ev"


def test_is_noise() -> None:
    assert is_noise("")
    assert is_noise("a.b")
    assert not is_noise("_Z3foov")


def test_parse_output_deduplicates() -> None:
    lines = [
        "member.o:",
        "0000000000000000 0000000000000004 T f",
        "",
        "other.o:",
        "0000000000000000 0000000000000004 T f",
        "                 U g",
    ]

    assert parse_nm_output(lines) == {
        SymbolEntry(name="f", type="T", address=0, size=4),
        SymbolEntry(name="g", type="U"),
    }


def test_nm_command_flags() -> None:
    assert nm_command("a.o", NmMode.UNDEFINED) == ["nm", "--undefined-only", "a.o"]
    assert nm_command("a.so", NmMode.DEFINED_EXTERN, dynamic=True, tool="llvm-nm") == [
        "llvm-nm",
        "-S",
        "--defined-only",
        "--extern-only",
        "-D",
        "a.so",
    ]

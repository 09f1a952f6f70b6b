"""Symbol table interrogation through the binutils ``nm`` tool."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from linkgraph.io.toolchain import ProcessResult, run_tool

ADDRESS_WIDTH = 16
TYPE_COLUMN = ADDRESS_WIDTH + 1
SIZED_TYPE_COLUMN = 2 * (ADDRESS_WIDTH + 1)

# Everything from the first character outside this set on is a symbol version.
_SYMBOL_KEY = re.compile(r"[A-Za-z0-9_$.]*")

GMON_START = "__gmon_start__"
TRANSACTIONAL_MEMORY_PREFIX = "_ITM_"


class NmMode(Enum):
    """Flag sets passed to ``nm`` for each kind of listing."""

    UNDEFINED = ("--undefined-only",)
    DEFINED = ("-S", "--defined-only")
    DEFINED_EXTERN = ("-S", "--defined-only", "--extern-only")


@dataclass(frozen=True, slots=True)
class SymbolEntry:
    """One parsed ``nm`` line. ``size`` is ``None`` when the listing carries no size."""

    name: str
    type: str
    address: int = -1
    size: Optional[int] = None


def strip_version(name: str) -> str:
    """Drop the ``@VERSION`` / ``@@VERSION`` suffix from a linker name."""

    match = _SYMBOL_KEY.match(name)
    return match.group(0) if match else name


def is_noise(name: str) -> bool:
    """Compiler-generated labels that never take part in linking."""

    if not name or "." in name:
        # .LC constant pools, "[clone .cold]" parts, _GLOBAL__sub_I_*.cpp
        return True
    return name == GMON_START or name.startswith(TRANSACTIONAL_MEMORY_PREFIX)


def parse_nm_line(line: str) -> SymbolEntry | None:
    """
    Parse one line of ``nm`` output.

    Addressed lines carry a 16 hex digit address, optionally followed by a 16 hex digit size when
    ``-S`` was requested; undefined lines leave the address column blank. The presence of the size
    column is detected by a digit sitting where the type code would otherwise be.
    """

    line = line.rstrip("\n")
    if not line or line.endswith(":"):
        # archive member headers ("member.o:")
        return None
    if len(line) <= TYPE_COLUMN + 2:
        return None

    offset = TYPE_COLUMN
    address = -1
    size: Optional[int] = None
    if line[offset].isdigit():
        if len(line) <= SIZED_TYPE_COLUMN + 2:
            return None
        try:
            address = int(line[:ADDRESS_WIDTH], 16)
            size = int(line[TYPE_COLUMN:TYPE_COLUMN + ADDRESS_WIDTH], 16)
        except ValueError:
            return None
        offset = SIZED_TYPE_COLUMN
    elif line[:ADDRESS_WIDTH].strip():
        try:
            address = int(line[:ADDRESS_WIDTH], 16)
        except ValueError:
            return None

    name = strip_version(line[offset + 2:])
    if is_noise(name):
        return None
    return SymbolEntry(name=name, type=line[offset], address=address, size=size)


def parse_nm_output(lines: Iterable[str]) -> set[SymbolEntry]:
    """Parse a whole listing into a de-duplicated set of entries."""

    symbols: set[SymbolEntry] = set()
    for line in lines:
        entry = parse_nm_line(line)
        if entry is not None:
            symbols.add(entry)
    return symbols


def nm_command(path: str, mode: NmMode, *, dynamic: bool = False, tool: str = "nm") -> list[str]:
    cmd = [tool, *mode.value]
    if dynamic:
        cmd.append("-D")
    cmd.append(path)
    return cmd


def run_nm(
    path: str,
    mode: NmMode,
    *,
    dynamic: bool = False,
    tool: str = "nm",
) -> tuple[set[SymbolEntry], ProcessResult]:
    """Invoke ``nm`` on ``path`` and parse whatever it printed, even when it failed."""

    result = run_tool(nm_command(path, mode, dynamic=dynamic, tool=tool))
    return parse_nm_output(result.stdout.splitlines()), result


__all__ = [
    "NmMode",
    "SymbolEntry",
    "is_noise",
    "nm_command",
    "parse_nm_line",
    "parse_nm_output",
    "run_nm",
    "strip_version",
]

"""Adapters for invoking the native toolchain programs."""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

LOGGER = logging.getLogger(__name__)

SEARCH_DIRS_PREFIX = "libraries: ="


@dataclass(slots=True)
class ProcessResult:
    """Outcome of one external tool invocation."""

    command: str
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def failed(self) -> bool:
        return self.returncode != 0 or bool(self.stderr)


def run_tool(
    cmd: Sequence[str],
    *,
    cwd: Path | str | None = None,
    input_text: str | None = None,
) -> ProcessResult:
    """
    Run an external program and capture both of its output streams.

    Standard output and standard error are drained together so a chatty tool cannot block on a
    full pipe. No timeout is applied. Output is decoded as UTF-8, invalid bytes are replaced.
    """

    completed = subprocess.run(
        list(cmd),
        check=False,
        text=True,
        encoding="utf-8",
        errors="replace",
        capture_output=True,
        cwd=cwd,
        input=input_text,
    )
    return ProcessResult(
        command=shlex.join(str(part) for part in cmd),
        returncode=completed.returncode,
        stdout=completed.stdout,
        stderr=completed.stderr.strip(),
    )


def parse_search_dirs(output: str) -> list[Path]:
    """Extract the library directories from ``-print-search-dirs`` output."""

    paths: list[Path] = []
    for line in output.splitlines():
        if not line.startswith(SEARCH_DIRS_PREFIX):
            continue
        for entry in line[len(SEARCH_DIRS_PREFIX):].split(":"):
            if not entry:
                continue
            try:
                path = Path(entry).resolve(strict=True)
            except OSError:
                LOGGER.warning("Unable to resolve %s", entry)
                continue
            if path not in paths:
                paths.append(path)
    return paths


def default_library_directories(compiler: str = "gcc") -> list[Path]:
    """Ask the compiler driver where it looks for libraries."""

    LOGGER.info("Extracting system libraries potential locations from %s", compiler)
    try:
        result = run_tool([compiler, "-print-search-dirs"])
    except FileNotFoundError:
        LOGGER.warning("%s not found, only explicit library directories will be searched", compiler)
        return []
    if result.returncode != 0:
        LOGGER.warning("%s exited with status %d: %s", result.command, result.returncode, result.stderr)
    return parse_search_dirs(result.stdout)


def demangle(names: Sequence[str], tool: str = "c++filt") -> dict[str, str]:
    """
    Demangle linker names in one batch.

    Returns a mapping from raw name to display name. Names the tool leaves untouched map to an empty
    string, as do all names when the tool is not installed.
    """

    if not names:
        return {}
    try:
        result = run_tool([tool], input_text="\n".join(names) + "\n")
    except FileNotFoundError:
        LOGGER.warning("%s not found, symbols will not be demangled", tool)
        return {name: "" for name in names}

    demangled = result.stdout.splitlines()
    if result.returncode != 0 or len(demangled) != len(names):
        LOGGER.warning("Unexpected output from %s (status %d)", result.command, result.returncode)
        return {name: "" for name in names}

    return {name: (display if display != name else "") for name, display in zip(names, demangled)}


def parse_ldd_unused(result: ProcessResult) -> list[str]:
    """Return the unused dependencies listed by ``ldd -u``, sorted."""

    if result.returncode == 0:
        return []
    lines = result.stdout.splitlines()[1:]
    return sorted(line.strip() for line in lines if line.strip())


def ldd_unused(path: str, tool: str = "ldd") -> tuple[list[str], ProcessResult]:
    """Run the platform report of shared dependencies that resolve no symbol."""

    result = run_tool([tool, "-u", "-r", path])
    return parse_ldd_unused(result), result


__all__ = [
    "ProcessResult",
    "default_library_directories",
    "demangle",
    "ldd_unused",
    "parse_ldd_unused",
    "parse_search_dirs",
    "run_tool",
]

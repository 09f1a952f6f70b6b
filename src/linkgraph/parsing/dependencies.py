"""Resolution of the files a recorded command depends on."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Sequence

from linkgraph.parsing.commands import (
    SHARED,
    CommandFamily,
    ParsedCommand,
    expand_path,
    input_type,
    library_type,
    output_type,
)

LOGGER = logging.getLogger(__name__)

# Flags that never name a dependency, matched by prefix.
IGNORED_SINGLE_ARGS = (
    "-D", "-U", "-w", "-W", "-O", "-m", "-g", "-f", "-MD", "-MMD", "-MP", "-c",
    "-std", "-rdynamic", "-shared", "-pipe", "-ansi", "-pedantic", "-pthread",
)
# Flags followed by a value token that never names a dependency.
IGNORED_DOUBLE_ARGS = ("-MT", "-MF", "-MQ")
# Flags taking the next token as a value that is not an input file, matched exactly.
IGNORED_VALUE_ARGS = (
    "-include", "-imacros", "-x", "-Xlinker", "-Xassembler", "-Xpreprocessor", "-z", "--sysroot",
    "-iquote", "-idirafter", "-isysroot", "-arch",
)

OPENMP_FLAG = "-fopenmp"
OPENMP_RUNTIME = ("gomp", "pthread")


class UnknownExecutableError(ValueError):
    """Raised when a command is neither a compiler driver nor an archiver invocation."""


@dataclass(slots=True)
class ResolvedDependencies:
    """Dependencies of one command, keyed by canonical path, plus non-fatal resolution errors."""

    files: Dict[str, str] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    output: str = ""
    output_type: str = ""
    include_directories: List[str] = field(default_factory=list)
    library_directories: List[Path] = field(default_factory=list)

    def add(self, path: str, artifact_type: str) -> None:
        if path == self.output:
            self.errors.append(f"Ignoring dependency of {path} on itself")
            return
        self.files.setdefault(path, artifact_type)


def _starts_with_any(arg: str, prefixes: Sequence[str]) -> bool:
    return any(arg.startswith(prefix) for prefix in prefixes)


def _option_value(arg: str, argv: List[str], i: int) -> tuple[str, int]:
    """Value of a flag that accepts both the attached (``-Lpath``) and separate (``-L path``) forms."""

    if len(arg) > 2:
        return arg[2:], i
    if i < len(argv):
        return argv[i], i + 1
    return "", i


class DependencyResolver:
    """
    Turn a parsed command into the set of files it reads.

    ``library_directories`` are the toolchain default search directories; they are consulted after
    the command's own ``-L`` directories. The resolver keeps no state between calls.
    """

    def __init__(self, library_directories: Sequence[Path | str] = ()) -> None:
        self.library_directories = [Path(directory) for directory in library_directories]

    def resolve(self, command: ParsedCommand) -> ResolvedDependencies:
        family = command.family
        if family is None:
            raise UnknownExecutableError(f"Unknown executable: {command.executable}")

        result = ResolvedDependencies()
        if command.output:
            result.output = expand_path(command.output, command.directory)
            result.output_type = command.output_type or output_type(command.output)

        argv = command.argv()
        if family is CommandFamily.COMPILE_LINK:
            self._resolve_compile_link(command.directory, argv, result)
        else:
            self._resolve_archive(command.directory, argv, result)

        LOGGER.debug("%s: %d dependencies, %d errors", result.output, len(result.files), len(result.errors))
        return result

    def locate_library(self, namespec: str, local_directories: Sequence[Path]) -> str | None:
        """
        Find the file ``-l<namespec>`` refers to.

        Shared objects are preferred to static archives, and for each the command-local directories
        are searched before the toolchain ones. ``-l:file`` names the file exactly.
        """

        if namespec.startswith(":"):
            candidates = [namespec[1:]]
        else:
            candidates = [f"lib{namespec}.so", f"lib{namespec}.a"]

        for candidate in candidates:
            for directories in (local_directories, self.library_directories):
                for directory in directories:
                    path = directory / candidate
                    if path.exists():
                        return str(path.resolve())
        return None

    def _add_library(self, namespec: str, result: ResolvedDependencies) -> None:
        path = self.locate_library(namespec, result.library_directories)
        if path is None:
            result.errors.append(f"Unable to locate library {namespec}")
        else:
            result.add(path, library_type(path))

    def _add_input(self, arg: str, directory: str, result: ResolvedDependencies) -> None:
        try:
            path = expand_path(arg, directory, strict=True)
        except OSError:
            result.errors.append(f"Unable to resolve {arg}")
            return
        result.add(path, input_type(path))

    def _resolve_compile_link(self, directory: str, argv: List[str], result: ResolvedDependencies) -> None:
        openmp = False
        i = 0
        while i < len(argv):
            arg = argv[i]
            i += 1

            if arg == OPENMP_FLAG:
                openmp = True
            elif _starts_with_any(arg, IGNORED_SINGLE_ARGS):
                continue
            elif _starts_with_any(arg, IGNORED_DOUBLE_ARGS) or arg in IGNORED_VALUE_ARGS:
                i += 1
            elif arg.startswith("-L"):
                library_directory, i = _option_value(arg, argv, i)
                if not library_directory:
                    result.errors.append(f"Missing value for {arg}")
                    continue
                try:
                    result.library_directories.append(Path(expand_path(library_directory, directory, strict=True)))
                except OSError:
                    result.errors.append(f"Invalid -L {library_directory}")
            elif arg.startswith("-l"):
                namespec, i = _option_value(arg, argv, i)
                if namespec:
                    self._add_library(namespec, result)
                else:
                    result.errors.append(f"Missing value for {arg}")
            elif arg.startswith("-o"):
                output, i = _option_value(arg, argv, i)
                if output:
                    result.output = expand_path(output, directory)
                    result.output_type = output_type(output)
            elif arg.startswith("-isystem"):
                include = arg[len("-isystem"):]
                if not include and i < len(argv):
                    include = argv[i]
                    i += 1
                result.include_directories.append(include)
            elif arg.startswith("-I"):
                include, i = _option_value(arg, argv, i)
                if include:
                    result.include_directories.append(include)
            elif arg.startswith("-"):
                result.errors.append(f"Unsupported argument {arg}")
            else:
                self._add_input(arg, directory, result)

        if openmp and result.output_type == SHARED:
            for namespec in OPENMP_RUNTIME:
                self._add_library(namespec, result)

    def _resolve_archive(self, directory: str, argv: List[str], result: ResolvedDependencies) -> None:
        output_found = False
        for arg in argv:
            if arg.endswith(".a"):
                if not output_found:
                    output_found = True
                    continue
                self._add_input(arg, directory, result)
            elif arg.endswith(".o"):
                self._add_input(arg, directory, result)


__all__ = [
    "DependencyResolver",
    "IGNORED_DOUBLE_ARGS",
    "IGNORED_SINGLE_ARGS",
    "IGNORED_VALUE_ARGS",
    "ResolvedDependencies",
    "UnknownExecutableError",
]

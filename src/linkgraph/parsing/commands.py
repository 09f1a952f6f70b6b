"""Parsing of recorded compiler and archiver invocations."""

from __future__ import annotations

import json
import os
import re
import shlex
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Iterator, List, Optional

SOURCE = "source"
OBJECT = "object"
STATIC = "static"
SHARED = "shared"
LIBRARY = "library"
EXECUTABLE = "executable"

ARTIFACT_TYPES = (SOURCE, OBJECT, STATIC, SHARED, LIBRARY, EXECUTABLE)

_SHARED_OBJECT = re.compile(r".*\.so(?:\.\d+)*$")

COMPILER_SUFFIXES = ("cc", "c++", "gcc", "g++")
ARCHIVER_SUFFIX = "ar"


class CompilationDatabaseError(ValueError):
    """Raised when a JSON compilation database cannot be read."""


class CommandFamily(Enum):
    """Argument grammars understood by the parser and the dependency resolver."""

    COMPILE_LINK = "cc"
    ARCHIVE = "ar"


def _classify(path: str, fallback: str) -> str:
    if path.endswith(".o"):
        return OBJECT
    if path.endswith(".a"):
        return STATIC
    if _SHARED_OBJECT.match(path):
        return SHARED
    return fallback


def output_type(path: str) -> str:
    """Type of an artifact produced by a command."""

    return _classify(path, EXECUTABLE)


def input_type(path: str) -> str:
    """Type of an artifact consumed by a command."""

    return _classify(path, SOURCE)


def library_type(path: str) -> str:
    """Type of a library located through a namespec."""

    if path.endswith(".a"):
        return STATIC
    if _SHARED_OBJECT.match(path):
        return SHARED
    return LIBRARY


def command_family(executable: str) -> Optional[CommandFamily]:
    """Recognise the compiler driver or archiver, tolerating cross-compilation prefixes."""

    name = os.path.basename(executable)
    if name.endswith(COMPILER_SUFFIXES):
        return CommandFamily.COMPILE_LINK
    if name.endswith(ARCHIVER_SUFFIX):
        return CommandFamily.ARCHIVE
    return None


def _lexer(text: str) -> shlex.shlex:
    lexer = shlex.shlex(text, posix=True)
    lexer.whitespace_split = True
    lexer.commenters = ""
    return lexer


def split_arguments(text: str) -> List[str]:
    """Shell-split an argument string, honouring quotes and backslash escapes."""

    return list(_lexer(text))


def expand_path(path: str, base: str, *, strict: bool = False) -> str:
    """
    Expand ``~`` and environment variables, then make ``path`` absolute relative to ``base``.

    With ``strict`` the path must exist; :class:`OSError` is raised otherwise.
    """

    expanded = os.path.expandvars(os.path.expanduser(path))
    return str((Path(base) / expanded).resolve(strict=strict))


@dataclass(slots=True)
class ParsedCommand:
    """Structured view of one recorded invocation."""

    directory: str = ""
    executable: str = ""
    args: str = ""
    output: str = ""
    output_type: str = ""
    family: Optional[CommandFamily] = None

    @property
    def recognized(self) -> bool:
        return self.family is not None

    def argv(self) -> List[str]:
        return split_arguments(self.args)


def _compile_output(argv: List[str]) -> str:
    output = ""
    iterator = iter(argv)
    for arg in iterator:
        if arg.startswith("-o"):
            output = arg[2:] if len(arg) > 2 else next(iterator, "")
    return output


def _archive_output(argv: List[str]) -> str:
    return next((arg for arg in argv if arg.endswith(".a")), "")


def parse_command(line: str, *, directory: str | None = None, expand: bool = False) -> ParsedCommand:
    """
    Parse a recorded invocation.

    When ``directory`` is not given the first token of ``line`` is the working directory. ``args``
    keeps the text following the executable verbatim so the command can be replayed. Only compiler
    and archiver invocations get an ``output``; any other executable yields a command with
    ``family`` left to ``None``.
    """

    lexer = _lexer(line)
    if directory is None:
        directory = lexer.get_token() or ""
    executable = lexer.get_token() or ""
    return build_command(directory, executable, lexer.instream.read().strip(), expand=expand)


def build_command(directory: str, executable: str, args: str, *, expand: bool = False) -> ParsedCommand:
    """Classify an invocation whose directory, executable and argument string are already known."""

    command = ParsedCommand(directory=directory, executable=executable, args=args)
    family = command_family(command.executable)
    if family is None:
        return command
    command.family = family

    argv = split_arguments(command.args)
    output = _compile_output(argv) if family is CommandFamily.COMPILE_LINK else _archive_output(argv)
    if output:
        if expand and command.directory:
            output = expand_path(output, command.directory)
        command.output = output
        command.output_type = output_type(output)
    return command


@dataclass(slots=True)
class CommandRecord:
    """A parsed command together with its position and source text in the input."""

    item: int
    line: str
    command: ParsedCommand = field(default_factory=ParsedCommand)


def iter_command_lines(stream: IO[str]) -> Iterator[CommandRecord]:
    """Read one ``directory executable args...`` invocation per line."""

    item = 0
    for raw in stream:
        line = raw.strip()
        if not line:
            continue
        yield CommandRecord(item=item, line=line, command=parse_command(line, expand=True))
        item += 1


def iter_compile_commands(stream: IO[str]) -> Iterator[CommandRecord]:
    """Read a JSON compilation database (``compile_commands.json``)."""

    try:
        entries = json.load(stream)
    except json.JSONDecodeError as exc:
        raise CompilationDatabaseError(f"Unable to parse JSON: {exc}") from exc
    if not isinstance(entries, list):
        raise CompilationDatabaseError("A compilation database must be a JSON array.")

    for item, entry in enumerate(entries):
        if not isinstance(entry, dict) or "directory" not in entry:
            raise CompilationDatabaseError(f"Entry #{item} has no directory.")
        line = entry.get("command")
        if line is None and isinstance(entry.get("arguments"), list):
            line = shlex.join(str(arg) for arg in entry["arguments"])
        if not isinstance(line, str):
            raise CompilationDatabaseError(f"Entry #{item} has neither command nor arguments.")
        command = parse_command(line, directory=str(entry["directory"]), expand=True)
        yield CommandRecord(item=item, line=line, command=command)


__all__ = [
    "ARTIFACT_TYPES",
    "CommandFamily",
    "CommandRecord",
    "CompilationDatabaseError",
    "EXECUTABLE",
    "LIBRARY",
    "OBJECT",
    "ParsedCommand",
    "build_command",
    "SHARED",
    "SOURCE",
    "STATIC",
    "command_family",
    "expand_path",
    "input_type",
    "iter_command_lines",
    "iter_compile_commands",
    "library_type",
    "output_type",
    "parse_command",
    "split_arguments",
]

"""Persistent relational storage of the build graph."""

from __future__ import annotations

import logging
import shlex
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from linkgraph.io.nm import SymbolEntry, strip_version
from linkgraph.parsing.commands import LIBRARY, SOURCE

LOGGER = logging.getLogger(__name__)

UNDEFINED = "undefined"
EXTERNAL = "external"
INTERNAL = "internal"
CATEGORIES = (UNDEFINED, EXTERNAL, INTERNAL)

# Types assigned before the real nature of a file is known.
GENERIC_TYPES = (LIBRARY, SOURCE)

IMPORT_COMMANDS = "import-commands"
EXTRACT_DEPENDENCIES = "extract-dependencies"
EXTRACT_SYMBOLS = "extract-symbols"

SCHEMA = """
CREATE TABLE IF NOT EXISTS commands (
    id INTEGER PRIMARY KEY,
    directory TEXT NOT NULL,
    executable TEXT NOT NULL,
    args TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS commands_identity ON commands (directory, executable, args);

CREATE TABLE IF NOT EXISTS artifacts (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    generating_command_id INTEGER REFERENCES commands (id)
);
CREATE UNIQUE INDEX IF NOT EXISTS artifacts_name ON artifacts (name);

CREATE TABLE IF NOT EXISTS dependencies (
    dependee_id INTEGER NOT NULL REFERENCES artifacts (id),
    dependency_id INTEGER NOT NULL REFERENCES artifacts (id),
    CHECK (dependee_id <> dependency_id)
);
CREATE UNIQUE INDEX IF NOT EXISTS dependencies_edge ON dependencies (dependee_id, dependency_id);
CREATE INDEX IF NOT EXISTS dependencies_reverse ON dependencies (dependency_id);

CREATE TABLE IF NOT EXISTS symbols (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    dname TEXT NOT NULL DEFAULT ''
);
CREATE UNIQUE INDEX IF NOT EXISTS symbols_name ON symbols (name);
CREATE INDEX IF NOT EXISTS symbols_dname ON symbols (dname);

CREATE TABLE IF NOT EXISTS symbol_references (
    artifact_id INTEGER NOT NULL REFERENCES artifacts (id),
    symbol_id INTEGER NOT NULL REFERENCES symbols (id),
    category TEXT NOT NULL,
    type TEXT NOT NULL,
    size INTEGER
);
CREATE INDEX IF NOT EXISTS symbol_references_artifact ON symbol_references (artifact_id, category);
CREATE INDEX IF NOT EXISTS symbol_references_symbol ON symbol_references (symbol_id, category);

CREATE TABLE IF NOT EXISTS timestamps (
    name TEXT PRIMARY KEY,
    value INTEGER NOT NULL
);
"""


class ArtifactConflictError(RuntimeError):
    """Raised when an artifact is re-observed with incompatible facts."""


class SelfDependencyError(ValueError):
    """Raised when an artifact would be recorded as depending on itself."""


@dataclass(frozen=True, slots=True)
class Command:
    id: int
    directory: str
    executable: str
    args: str

    @property
    def line(self) -> str:
        return f"{shlex.quote(self.executable)} {self.args}".strip()


@dataclass(frozen=True, slots=True)
class Artifact:
    id: int
    name: str
    type: str
    generating_command_id: Optional[int] = None

    @property
    def generated(self) -> bool:
        return self.generating_command_id is not None


@dataclass(frozen=True, slots=True, order=True)
class Dependency:
    dependee_id: int
    dependency_id: int


@dataclass(frozen=True, slots=True)
class Symbol:
    id: int
    name: str
    dname: str = ""

    @property
    def display_name(self) -> str:
        return self.dname or self.name


@dataclass(frozen=True, slots=True)
class SymbolReference:
    artifact_id: int
    symbol_id: int
    category: str
    type: str
    size: Optional[int] = None


@dataclass(frozen=True, slots=True)
class SymbolUsage:
    """Aggregated references of one symbol, as returned by :meth:`GraphStore.duplicate_symbols`."""

    symbol: Symbol
    occurrences: int
    total_size: int


def _type_filter(column: str, types: Optional[Iterable[str]], excluded: Optional[Iterable[str]]) -> Tuple[str, list]:
    clauses: List[str] = []
    params: list = []
    if types:
        values = list(types)
        clauses.append(f"{column} IN ({', '.join('?' * len(values))})")
        params.extend(values)
    if excluded:
        values = list(excluded)
        clauses.append(f"{column} NOT IN ({', '.join('?' * len(values))})")
        params.extend(values)
    return " AND ".join(clauses), params


def _where(*filters: Tuple[str, list]) -> Tuple[str, list]:
    clauses = [clause for clause, _ in filters if clause]
    params = [param for _, values in filters for param in values]
    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


def _artifact(row: sqlite3.Row) -> Artifact:
    return Artifact(row["id"], row["name"], row["type"], row["generating_command_id"])


def _command(row: sqlite3.Row) -> Command:
    return Command(row["id"], row["directory"], row["executable"], row["args"])


def _symbol(row: sqlite3.Row) -> Symbol:
    return Symbol(row["id"], row["name"], row["dname"])


class GraphStore:
    """
    SQLite backed store of commands, artifacts, dependencies and symbols.

    One connection is shared by every thread. All statements run under :attr:`lock`; a caller that
    reads before writing (for instance to check whether an artifact already exists) must hold the
    lock across the whole sequence. Transactions are explicit, see :meth:`transaction`.
    """

    def __init__(self, path: Path | str = ":memory:") -> None:
        self.path = str(path)
        self.lock = threading.RLock()
        self.connection = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
        self.connection.row_factory = sqlite3.Row
        self._in_transaction = False
        with self.lock:
            self.connection.execute("PRAGMA foreign_keys = ON")
            self.connection.executescript(SCHEMA)

    def __enter__(self) -> "GraphStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        with self.lock:
            self.connection.close()

    def _execute(self, sql: str, params: Sequence = ()) -> sqlite3.Cursor:
        with self.lock:
            return self.connection.execute(sql, params)

    def query(self, sql: str, params: Sequence = ()) -> List[sqlite3.Row]:
        """Run a read-only statement and return every row."""

        with self.lock:
            return self.connection.execute(sql, params).fetchall()

    @contextmanager
    def transaction(self, dry_run: bool = False) -> Iterator["GraphStore"]:
        """
        Group every write of the enclosed block into one transaction.

        The transaction is rolled back when the block raises, and also when ``dry_run`` is set so a
        whole phase can be computed without mutating the store. Transactions do not nest.
        """

        with self.lock:
            if self._in_transaction:
                raise RuntimeError("A transaction is already in progress.")
            self.connection.execute("BEGIN IMMEDIATE")
            self._in_transaction = True
        try:
            yield self
        except BaseException:
            with self.lock:
                self.connection.execute("ROLLBACK")
                self._in_transaction = False
            raise
        with self.lock:
            self.connection.execute("ROLLBACK" if dry_run else "COMMIT")
            self._in_transaction = False
        if dry_run:
            LOGGER.info("Dry run, changes discarded")

    # Commands

    def create_command(self, directory: str, executable: str, args: str) -> Command:
        """Record an invocation, returning the existing row when the identical one is known."""

        with self.lock:
            self.connection.execute(
                "INSERT OR IGNORE INTO commands (directory, executable, args) VALUES (?, ?, ?)",
                (directory, executable, args),
            )
            row = self.connection.execute(
                "SELECT * FROM commands WHERE directory = ? AND executable = ? AND args = ?",
                (directory, executable, args),
            ).fetchone()
        return _command(row)

    def commands(self) -> List[Command]:
        return [_command(row) for row in self.query("SELECT * FROM commands ORDER BY id")]

    # Artifacts

    def artifact_by_name(self, name: str) -> Optional[Artifact]:
        row = self._execute("SELECT * FROM artifacts WHERE name = ?", (name,)).fetchone()
        return _artifact(row) if row else None

    def get_artifact(self, artifact_id: int) -> Optional[Artifact]:
        row = self._execute("SELECT * FROM artifacts WHERE id = ?", (artifact_id,)).fetchone()
        return _artifact(row) if row else None

    def upsert_artifact(self, name: str, artifact_type: str, generating_command_id: Optional[int] = None) -> Artifact:
        """
        Create the artifact ``name`` or reconcile it with what is already stored.

        A generic type (``library`` or ``source``) is replaced by a concrete one, a concrete type is
        never downgraded, and two different concrete types are a conflict. An artifact keeps the
        first generating command it is given; a different one is a conflict too.
        """

        with self.lock:
            existing = self.artifact_by_name(name)
            if existing is None:
                cursor = self.connection.execute(
                    "INSERT INTO artifacts (name, type, generating_command_id) VALUES (?, ?, ?)",
                    (name, artifact_type, generating_command_id),
                )
                return Artifact(cursor.lastrowid, name, artifact_type, generating_command_id)

            new_type = existing.type
            if artifact_type != existing.type and artifact_type not in GENERIC_TYPES:
                if existing.type not in GENERIC_TYPES:
                    raise ArtifactConflictError(
                        f"Artifact {name} was recorded as {existing.type} and is now seen as {artifact_type}"
                    )
                new_type = artifact_type

            new_command = existing.generating_command_id
            if generating_command_id is not None and generating_command_id != new_command:
                if new_command is not None:
                    raise ArtifactConflictError(
                        f"Artifact {name} is generated by both command #{new_command} and command #{generating_command_id}"
                    )
                new_command = generating_command_id

            if (new_type, new_command) == (existing.type, existing.generating_command_id):
                return existing
            LOGGER.debug("Updating %s: %s -> %s", name, existing.type, new_type)
            self.connection.execute(
                "UPDATE artifacts SET type = ?, generating_command_id = ? WHERE id = ?",
                (new_type, new_command, existing.id),
            )
            return Artifact(existing.id, name, new_type, new_command)

    def artifacts(self, types: Optional[Iterable[str]] = None, excluded_types: Optional[Iterable[str]] = None) -> List[Artifact]:
        where, params = _where(_type_filter("type", types, excluded_types))
        return [_artifact(row) for row in self.query(f"SELECT * FROM artifacts{where} ORDER BY name", params)]

    def generated_artifacts(self, types: Optional[Iterable[str]] = None) -> List[Tuple[Command, Artifact]]:
        """Artifacts produced by a recorded command, paired with that command."""

        type_clause, params = _type_filter("a.type", types, None)
        sql = (
            "SELECT a.id, a.name, a.type, a.generating_command_id, c.directory, c.executable, c.args "
            "FROM artifacts a JOIN commands c ON c.id = a.generating_command_id"
        )
        if type_clause:
            sql += f" WHERE {type_clause}"
        sql += " ORDER BY a.name"
        pairs = []
        for row in self.query(sql, params):
            command = Command(row["generating_command_id"], row["directory"], row["executable"], row["args"])
            pairs.append((command, _artifact(row)))
        return pairs

    # Dependencies

    def create_dependency(self, dependee_id: int, dependency_id: int) -> bool:
        """Record an edge, returning whether it was new."""

        if dependee_id == dependency_id:
            raise SelfDependencyError(f"Artifact #{dependee_id} cannot depend on itself")
        cursor = self._execute(
            "INSERT OR IGNORE INTO dependencies (dependee_id, dependency_id) VALUES (?, ?)",
            (dependee_id, dependency_id),
        )
        return cursor.rowcount > 0

    def remove_dependency(self, dependee_id: int, dependency_id: int) -> bool:
        cursor = self._execute(
            "DELETE FROM dependencies WHERE dependee_id = ? AND dependency_id = ?",
            (dependee_id, dependency_id),
        )
        return cursor.rowcount > 0

    def _neighbours(
        self,
        artifact_id: int,
        source_column: str,
        target_column: str,
        types: Optional[Iterable[str]],
        excluded_types: Optional[Iterable[str]],
    ) -> List[Artifact]:
        type_clause, params = _type_filter("a.type", types, excluded_types)
        sql = (
            f"SELECT a.* FROM dependencies d JOIN artifacts a ON a.id = d.{target_column} "
            f"WHERE d.{source_column} = ?"
        )
        if type_clause:
            sql += f" AND {type_clause}"
        sql += " ORDER BY a.name"
        return [_artifact(row) for row in self.query(sql, [artifact_id, *params])]

    def dependencies(
        self,
        artifact_id: int,
        types: Optional[Iterable[str]] = None,
        excluded_types: Optional[Iterable[str]] = None,
    ) -> List[Artifact]:
        """Direct dependencies of an artifact, optionally filtered on their type."""

        return self._neighbours(artifact_id, "dependee_id", "dependency_id", types, excluded_types)

    def dependees(
        self,
        artifact_id: int,
        types: Optional[Iterable[str]] = None,
        excluded_types: Optional[Iterable[str]] = None,
    ) -> List[Artifact]:
        """Artifacts directly depending on an artifact, optionally filtered on their type."""

        return self._neighbours(artifact_id, "dependency_id", "dependee_id", types, excluded_types)

    def all_dependencies(
        self,
        dependee_types: Optional[Iterable[str]] = None,
        dependency_types: Optional[Iterable[str]] = None,
    ) -> List[Dependency]:
        where, params = _where(
            _type_filter("dependee.type", dependee_types, None),
            _type_filter("dependency.type", dependency_types, None),
        )
        sql = (
            "SELECT d.dependee_id, d.dependency_id FROM dependencies d "
            "JOIN artifacts dependee ON dependee.id = d.dependee_id "
            "JOIN artifacts dependency ON dependency.id = d.dependency_id"
            f"{where} ORDER BY d.dependee_id, d.dependency_id"
        )
        return [Dependency(row[0], row[1]) for row in self.query(sql, params)]

    # Symbols

    def get_or_create_symbol(self, name: str, dname: str = "") -> Symbol:
        """Return the symbol for a linker name, ignoring its version suffix."""

        name = strip_version(name)
        with self.lock:
            self.connection.execute("INSERT OR IGNORE INTO symbols (name, dname) VALUES (?, ?)", (name, dname))
            if dname:
                self.connection.execute("UPDATE symbols SET dname = ? WHERE name = ? AND dname = ''", (dname, name))
            row = self.connection.execute("SELECT * FROM symbols WHERE name = ?", (name,)).fetchone()
        return _symbol(row)

    def symbol_by_name(self, name: str) -> Optional[Symbol]:
        row = self._execute("SELECT * FROM symbols WHERE name = ?", (strip_version(name),)).fetchone()
        return _symbol(row) if row else None

    def insert_symbol_references(
        self,
        artifact_id: int,
        category: str,
        entries: Iterable[SymbolEntry],
        demangled: Optional[Mapping[str, str]] = None,
    ) -> int:
        """Store one reference per entry, creating symbols on the fly. Returns the number stored."""

        if category not in CATEGORIES:
            raise ValueError(f"Unknown symbol category: {category}")
        demangled = demangled or {}
        count = 0
        with self.lock:
            for entry in entries:
                symbol = self.get_or_create_symbol(entry.name, demangled.get(entry.name, ""))
                self.connection.execute(
                    "INSERT INTO symbol_references (artifact_id, symbol_id, category, type, size) VALUES (?, ?, ?, ?, ?)",
                    (artifact_id, symbol.id, category, entry.type, entry.size),
                )
                count += 1
        return count

    def symbol_references(self, artifact_id: int, category: Optional[str] = None) -> List[SymbolReference]:
        sql = "SELECT * FROM symbol_references WHERE artifact_id = ?"
        params: list = [artifact_id]
        if category is not None:
            sql += " AND category = ?"
            params.append(category)
        return [
            SymbolReference(row["artifact_id"], row["symbol_id"], row["category"], row["type"], row["size"])
            for row in self.query(sql, params)
        ]

    def symbols_of(self, artifact_id: int, category: str) -> List[Symbol]:
        """Distinct symbols an artifact references in the given category."""

        rows = self.query(
            "SELECT DISTINCT s.* FROM symbol_references r JOIN symbols s ON s.id = r.symbol_id "
            "WHERE r.artifact_id = ? AND r.category = ? ORDER BY s.name",
            (artifact_id, category),
        )
        return [_symbol(row) for row in rows]

    def undefined_symbols(self, artifact_id: int) -> List[Symbol]:
        return self.symbols_of(artifact_id, UNDEFINED)

    def external_symbols(self, artifact_id: int) -> List[Symbol]:
        return self.symbols_of(artifact_id, EXTERNAL)

    def exporters(self, symbol_id: int) -> List[Artifact]:
        """Every artifact defining the symbol as externally visible."""

        rows = self.query(
            "SELECT DISTINCT a.* FROM symbol_references r JOIN artifacts a ON a.id = r.artifact_id "
            "WHERE r.symbol_id = ? AND r.category = ? ORDER BY a.name",
            (symbol_id, EXTERNAL),
        )
        return [_artifact(row) for row in rows]

    def duplicate_symbols(
        self,
        artifact_types: Optional[Iterable[str]] = None,
        excluded_artifact_types: Optional[Iterable[str]] = None,
        categories: Optional[Iterable[str]] = None,
        excluded_categories: Optional[Iterable[str]] = None,
    ) -> List[SymbolUsage]:
        """Sized symbols referenced more than once, largest total size first."""

        where, params = _where(
            ("r.size > 0", []),
            _type_filter("a.type", artifact_types, excluded_artifact_types),
            _type_filter("r.category", categories, excluded_categories),
        )
        sql = (
            "SELECT s.id, s.name, s.dname, COUNT(*) AS occurrences, SUM(r.size) AS total_size "
            "FROM symbol_references r "
            "JOIN symbols s ON s.id = r.symbol_id "
            "JOIN artifacts a ON a.id = r.artifact_id"
            f"{where} GROUP BY s.id HAVING occurrences > 1 "
            "ORDER BY total_size DESC, s.name ASC"
        )
        return [SymbolUsage(_symbol(row), row["occurrences"], row["total_size"]) for row in self.query(sql, params)]

    def symbol_artifacts(self, symbol_id: int, category: Optional[str] = None) -> List[Artifact]:
        sql = (
            "SELECT DISTINCT a.* FROM symbol_references r JOIN artifacts a ON a.id = r.artifact_id "
            "WHERE r.symbol_id = ?"
        )
        params: list = [symbol_id]
        if category is not None:
            sql += " AND r.category = ?"
            params.append(category)
        return [_artifact(row) for row in self.query(sql + " ORDER BY a.name", params)]

    # Timestamps

    def timestamp(self, name: str) -> Optional[int]:
        row = self._execute("SELECT value FROM timestamps WHERE name = ?", (name,)).fetchone()
        return row[0] if row else None

    def set_timestamp(self, name: str) -> int:
        """Stamp ``name`` with the current time in milliseconds, later than any stored stamp."""

        with self.lock:
            latest = self.connection.execute("SELECT MAX(value) FROM timestamps").fetchone()[0]
            value = int(time.time() * 1000)
            if latest is not None and value <= latest:
                value = latest + 1
            self.connection.execute(
                "INSERT INTO timestamps (name, value) VALUES (?, ?) "
                "ON CONFLICT (name) DO UPDATE SET value = excluded.value",
                (name, value),
            )
        return value

    def is_up_to_date(self, name: str, prerequisite: str) -> bool:
        """Whether phase ``name`` completed after phase ``prerequisite`` last did."""

        done = self.timestamp(name)
        if done is None:
            return False
        before = self.timestamp(prerequisite)
        return before is None or done > before

    # Maintenance

    def clear_timestamp(self, name: str) -> None:
        self._execute("DELETE FROM timestamps WHERE name = ?", (name,))

    def truncate_symbol_references(self) -> None:
        """Delete every symbol reference; the symbol phase is then no longer up to date."""

        with self.lock:
            self.connection.execute("DELETE FROM symbol_references")
            self.clear_timestamp(EXTRACT_SYMBOLS)

    def truncate_symbols(self) -> None:
        with self.lock:
            self.truncate_symbol_references()
            self.connection.execute("DELETE FROM symbols")

    def optimize(self) -> None:
        self._execute("PRAGMA optimize")

    def vacuum(self) -> None:
        if self._in_transaction:
            raise RuntimeError("Cannot vacuum inside a transaction.")
        self._execute("VACUUM")

    def _count(self, table: str) -> int:
        return self._execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def count_commands(self) -> int:
        return self._count("commands")

    def count_artifacts(self) -> int:
        return self._count("artifacts")

    def count_artifacts_by_type(self) -> Dict[str, int]:
        rows = self.query("SELECT type, COUNT(*) FROM artifacts GROUP BY type ORDER BY type")
        return {row[0]: row[1] for row in rows}

    def count_dependencies(self) -> int:
        return self._count("dependencies")

    def count_symbols(self) -> int:
        return self._count("symbols")

    def count_symbol_references(self) -> int:
        return self._count("symbol_references")


__all__ = [
    "Artifact",
    "ArtifactConflictError",
    "CATEGORIES",
    "Command",
    "Dependency",
    "EXTERNAL",
    "EXTRACT_DEPENDENCIES",
    "EXTRACT_SYMBOLS",
    "GraphStore",
    "IMPORT_COMMANDS",
    "INTERNAL",
    "SelfDependencyError",
    "Symbol",
    "SymbolReference",
    "SymbolUsage",
    "UNDEFINED",
]

"""Configuration primitives for the project."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Tuple

from linkgraph.io.toolchain import default_library_directories
from linkgraph.parsing.commands import SOURCE

DEFAULT_DATABASE = Path("linkgraph.db")
DEFAULT_WORKERS = 4


@dataclass(slots=True)
class ToolchainConfig:
    """Programs of the native toolchain and the library search path they imply."""

    library_directories: List[Path] = field(default_factory=list)
    compiler: str = "gcc"
    nm: str = "nm"
    cxxfilt: str = "c++filt"
    ldd: str = "ldd"

    @classmethod
    def from_compiler(
        cls,
        compiler: str = "gcc",
        *,
        extra_library_directories: Iterable[Path] = (),
        **tools: str,
    ) -> "ToolchainConfig":
        """Factory helper that asks the compiler driver for its default library directories."""

        directories = [Path(directory).resolve() for directory in extra_library_directories]
        for directory in default_library_directories(compiler):
            if directory not in directories:
                directories.append(directory)
        return cls(library_directories=directories, compiler=compiler, **tools)


@dataclass(slots=True)
class ExtractionConfig:
    """Settings guiding the dependency and symbol extraction phases."""

    workers: int = DEFAULT_WORKERS
    symbol_excluded_types: Tuple[str, ...] = (SOURCE,)

    def __post_init__(self) -> None:
        if self.workers < 1:
            raise ValueError(f"At least one worker is required, got {self.workers}.")


__all__ = ["DEFAULT_DATABASE", "DEFAULT_WORKERS", "ExtractionConfig", "ToolchainConfig"]

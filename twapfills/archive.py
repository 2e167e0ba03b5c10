"""
Decompression of downloaded objects.

Expanders work in place: ``x.lz4`` becomes ``x`` and the compressed file is
removed.
"""

import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, List, Optional

from .errors import ArchiveError

LZ4_SUFFIX = ".lz4"


def list_files_recursive(directory: Path) -> List[Path]:
    return sorted(p for p in Path(directory).rglob("*") if p.is_file())


def expanded_path(path: Path) -> Path:
    """Path a file will have after expansion."""
    path = Path(path)
    return path.with_suffix("") if path.suffix == LZ4_SUFFIX else path


class ArchiveExpander(ABC):
    @abstractmethod
    def expand(self, directory: Path) -> None:
        """Decompress every recognized file under directory in place."""


class Lz4CliExpander(ArchiveExpander):
    def __init__(self, unlz4_bin: str = "unlz4"):
        self.unlz4_bin = unlz4_bin

    def expand(self, directory: Path) -> None:
        for path in list_files_recursive(directory):
            if path.suffix != LZ4_SUFFIX:
                continue
            try:
                proc = subprocess.run(
                    [self.unlz4_bin, "-f", "--rm", str(path)],
                    capture_output=True,
                    text=True,
                    check=False,
                )
            except OSError as e:
                raise ArchiveError(f"Cannot run {self.unlz4_bin}: {e}") from e
            if proc.returncode != 0:
                raise ArchiveError(f"unlz4 failed for {path}: {proc.stderr.strip()}")


class InMemoryExpander(ArchiveExpander):
    """Renames ``.lz4`` files, optionally transforming their bytes."""

    def __init__(self, codec: Optional[Callable[[bytes], bytes]] = None):
        self.codec = codec
        self.expanded: List[Path] = []

    def expand(self, directory: Path) -> None:
        for path in list_files_recursive(directory):
            if path.suffix != LZ4_SUFFIX:
                continue
            target = expanded_path(path)
            data = path.read_bytes()
            if self.codec is not None:
                try:
                    data = self.codec(data)
                except Exception as e:
                    raise ArchiveError(f"decode failed for {path}: {e}") from e
            target.write_bytes(data)
            path.unlink()
            self.expanded.append(target)

"""
MPCA Storage Adapter

Text file access for the orchestrator. Every failure is reported as
one of: PathNotFound, StoragePermissionDenied, or a generic read/write
error, because recovery branches on the difference.
"""

from __future__ import annotations

import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from loguru import logger

from mpca.errors import (
    InvalidPath,
    MPCAError,
    PathNotFound,
    StoragePermissionDenied,
    StorageReadError,
    StorageWriteError,
)


class Storage(ABC):
    """Capability contract for file storage."""

    @abstractmethod
    def read(self, path: Path) -> str:
        ...

    @abstractmethod
    def write(self, path: Path, text: str) -> None:
        """Replace the file's content. Implementations must be atomic."""
        ...

    @abstractmethod
    def exists(self, path: Path) -> bool:
        ...

    @abstractmethod
    def mkdir_all(self, path: Path) -> None:
        """Create a directory and its parents. Existing directories are fine."""
        ...

    @abstractmethod
    def list(self, path: Path) -> list[str]:
        """Sorted entry names in a directory."""
        ...


# ---------------------------------------------------------------------------
# Local filesystem
# ---------------------------------------------------------------------------

class LocalStorage(Storage):
    """
    Real filesystem access, optionally confined to a root directory.
    Writes go to a temp sibling, get fsync'd, then os.replace the target.
    """

    def __init__(self, root: Path | None = None):
        self.root = root.resolve() if root else None

    def read(self, path: Path) -> str:
        path = self._check(path)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise PathNotFound(path) from e
        except PermissionError as e:
            raise StoragePermissionDenied(path, "read") from e
        except IsADirectoryError as e:
            raise StorageReadError(path, "is a directory") from e
        except (OSError, UnicodeDecodeError) as e:
            raise StorageReadError(path, str(e)) from e

    def write(self, path: Path, text: str) -> None:
        path = self._check(path)
        tmp_path: Path | None = None
        try:
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=path.parent,
                prefix=f".{path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_path = Path(tmp.name)
                tmp.write(text)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_path, path)
        except FileNotFoundError as e:
            raise PathNotFound(path.parent) from e
        except PermissionError as e:
            raise StoragePermissionDenied(path, "write") from e
        except OSError as e:
            raise StorageWriteError(path, str(e)) from e
        finally:
            if tmp_path is not None and tmp_path.exists():
                tmp_path.unlink()
        logger.debug(f"[STORAGE] Wrote {path} ({len(text)} chars)")

    def exists(self, path: Path) -> bool:
        return self._check(path).exists()

    def mkdir_all(self, path: Path) -> None:
        path = self._check(path)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            raise StoragePermissionDenied(path, "create directory") from e
        except FileExistsError as e:
            raise InvalidPath(path, "exists and is not a directory") from e
        except OSError as e:
            raise StorageWriteError(path, str(e)) from e

    def list(self, path: Path) -> list[str]:
        path = self._check(path)
        try:
            return sorted(entry.name for entry in path.iterdir())
        except FileNotFoundError as e:
            raise PathNotFound(path) from e
        except PermissionError as e:
            raise StoragePermissionDenied(path, "list") from e
        except NotADirectoryError as e:
            raise InvalidPath(path, "not a directory") from e
        except OSError as e:
            raise StorageReadError(path, str(e)) from e

    def _check(self, path: Path) -> Path:
        path = Path(path)
        if self.root is None:
            return path
        resolved = path.resolve()
        if not resolved.is_relative_to(self.root):
            raise InvalidPath(path, f"outside of {self.root}")
        return resolved


# ---------------------------------------------------------------------------
# In-memory double
# ---------------------------------------------------------------------------

class MemoryStorage(Storage):
    """
    Dict-backed storage for tests. Records every call as
    (operation, path) and raises scripted failures.

        storage.fail_on("write", path, StorageWriteError(path, "disk full"))
    """

    def __init__(self, files: dict[Path | str, str] | None = None):
        self.files: dict[Path, str] = {Path(p): t for p, t in (files or {}).items()}
        self.dirs: set[Path] = set()
        self.calls: list[tuple[str, Path]] = []
        self._failures: dict[tuple[str, Path], list[MPCAError | None]] = {}
        for p in self.files:
            self.dirs.update(p.parents)

    def fail_on(
        self,
        operation: str,
        path: Path | str,
        error: MPCAError,
        times: int = 1,
        after: int = 0,
    ) -> None:
        """Fail the next `times` matching calls, once `after` of them have succeeded."""
        queue = self._failures.setdefault((operation, Path(path)), [])
        queue.extend([None] * after + [error] * times)

    def calls_for(self, operation: str) -> list[Path]:
        return [p for op, p in self.calls if op == operation]

    def read(self, path: Path) -> str:
        path = self._record("read", path)
        if path not in self.files:
            raise PathNotFound(path)
        return self.files[path]

    def write(self, path: Path, text: str) -> None:
        path = self._record("write", path)
        if path.parent not in self.dirs:
            raise PathNotFound(path.parent)
        self.files[path] = text

    def exists(self, path: Path) -> bool:
        path = self._record("exists", path)
        return path in self.files or path in self.dirs

    def mkdir_all(self, path: Path) -> None:
        path = self._record("mkdir_all", path)
        if path in self.files:
            raise InvalidPath(path, "exists and is not a directory")
        self.dirs.add(path)
        self.dirs.update(path.parents)

    def list(self, path: Path) -> list[str]:
        path = self._record("list", path)
        if path not in self.dirs:
            raise PathNotFound(path)
        names = {p.name for p in self.files if p.parent == path}
        names.update(d.name for d in self.dirs if d.parent == path and d != path)
        return sorted(names)

    def _record(self, operation: str, path: Path) -> Path:
        path = Path(path)
        self.calls.append((operation, path))
        pending = self._failures.get((operation, path))
        if pending:
            error = pending.pop(0)
            if error is not None:
                raise error
        return path

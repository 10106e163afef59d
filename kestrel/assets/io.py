# kestrel/assets/io.py
from __future__ import annotations

import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from kestrel.assets.errors import AssetIoError

logger = logging.getLogger(__name__)


class SourceIO(ABC):
    """
    Byte access to one asset source. Paths are ``/``-separated and relative
    to the source root. Implementations must be thread-safe.
    """

    @abstractmethod
    def read(self, path: str) -> bytes:
        """Return the bytes at ``path`` or raise AssetIoError."""

    @abstractmethod
    def write(self, path: str, data: bytes) -> None:
        """Replace the bytes at ``path`` atomically."""

    @abstractmethod
    def exists(self, path: str) -> bool: ...

    @abstractmethod
    def is_dir(self, path: str) -> bool: ...

    @abstractmethod
    def read_directory(self, path: str) -> List[str]:
        """Direct children of ``path`` as source-relative paths."""

    def watch(self, path: str) -> None:
        """Start reporting changes to ``path`` through ``poll_changes``."""

    def unwatch(self, path: str) -> None:
        pass

    def poll_changes(self) -> List[str]:
        """Paths changed since the last poll. Sources without watching return []."""
        return []


class FileAssetIO(SourceIO):
    """Local filesystem source rooted at ``root``; watching polls mtimes."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)
        self._mtimes: Dict[str, Optional[float]] = {}
        self._lock = threading.Lock()

    def _full(self, path: str) -> Path:
        return self.root / path

    def read(self, path: str) -> bytes:
        try:
            with open(self._full(path), "rb") as f:
                return f.read()
        except OSError as e:
            raise AssetIoError(f"Cannot read {path}: {e}") from e

    def write(self, path: str, data: bytes) -> None:
        target = self._full(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=target.parent, prefix=f".{target.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, target)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise AssetIoError(f"Cannot write {path}: {e}") from e

    def exists(self, path: str) -> bool:
        return self._full(path).exists()

    def is_dir(self, path: str) -> bool:
        return self._full(path).is_dir()

    def read_directory(self, path: str) -> List[str]:
        full = self._full(path)
        if not full.is_dir():
            raise AssetIoError(f"Not a directory: {path}")
        return sorted(
            child.relative_to(self.root).as_posix() for child in full.iterdir()
        )

    def _mtime(self, path: str) -> Optional[float]:
        try:
            return self._full(path).stat().st_mtime_ns / 1e9
        except OSError:
            return None

    def watch(self, path: str) -> None:
        with self._lock:
            if path not in self._mtimes:
                self._mtimes[path] = self._mtime(path)

    def unwatch(self, path: str) -> None:
        with self._lock:
            self._mtimes.pop(path, None)

    def poll_changes(self) -> List[str]:
        changed = []
        with self._lock:
            for path, previous in self._mtimes.items():
                current = self._mtime(path)
                if current != previous:
                    self._mtimes[path] = current
                    changed.append(path)
        if changed:
            logger.debug("Filesystem changes under %s: %s", self.root, changed)
        return changed


class MemoryAssetIO(SourceIO):
    """
    In-memory source, e.g. for generated content or tests. Every write to a
    watched path is reported once by ``poll_changes``.
    """

    def __init__(self, files: Optional[Dict[str, bytes | str]] = None) -> None:
        self._files: Dict[str, bytes] = {}
        self._watched: Set[str] = set()
        self._changed: List[str] = []
        self._lock = threading.Lock()
        for path, data in (files or {}).items():
            self._files[path] = data.encode() if isinstance(data, str) else data

    def read(self, path: str) -> bytes:
        with self._lock:
            try:
                return self._files[path]
            except KeyError:
                raise AssetIoError(f"No such asset: {path}") from None

    def write(self, path: str, data: bytes | str) -> None:
        if isinstance(data, str):
            data = data.encode()
        with self._lock:
            self._files[path] = data
            if path in self._watched and path not in self._changed:
                self._changed.append(path)

    def remove(self, path: str) -> None:
        with self._lock:
            self._files.pop(path, None)

    def exists(self, path: str) -> bool:
        with self._lock:
            return path in self._files or self._is_dir(path)

    def is_dir(self, path: str) -> bool:
        with self._lock:
            return self._is_dir(path)

    def _is_dir(self, path: str) -> bool:
        prefix = path.rstrip("/") + "/" if path else ""
        return any(name.startswith(prefix) for name in self._files)

    def read_directory(self, path: str) -> List[str]:
        with self._lock:
            if not self._is_dir(path):
                raise AssetIoError(f"Not a directory: {path}")
            prefix = path.rstrip("/") + "/" if path else ""
            children = set()
            for name in self._files:
                if name.startswith(prefix):
                    head = name[len(prefix):].split("/", 1)[0]
                    children.add(prefix + head)
            return sorted(children)

    def paths(self) -> Iterable[str]:
        with self._lock:
            return list(self._files)

    def watch(self, path: str) -> None:
        with self._lock:
            self._watched.add(path)

    def unwatch(self, path: str) -> None:
        with self._lock:
            self._watched.discard(path)

    def poll_changes(self) -> List[str]:
        with self._lock:
            changed, self._changed = self._changed, []
        return changed

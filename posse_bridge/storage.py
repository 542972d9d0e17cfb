"""JSON file persistence shared by the stores.

Each store keeps its records in memory and mirrors them to one JSON
document. Writes go to a temp file that is then swapped in with
os.replace, so a crash never leaves a half-written document behind.
A store without a path is purely in-memory.

Several processes may share a data directory (the server plus CLI runs
of publish, retry or import-events). Every read-modify-write therefore
happens under an exclusive OS lock on a sidecar ``<name>.lock`` file, and
a store re-reads its document under that lock whenever another process
has replaced it since the last read.
"""

from __future__ import annotations

import json
import logging
import os
import platform
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator

logger = logging.getLogger(__name__)


def _lock_fd(fd: int) -> None:
    if platform.system() == "Windows":
        import msvcrt

        msvcrt.locking(fd, msvcrt.LK_LOCK, 1)
    else:
        import fcntl

        fcntl.flock(fd, fcntl.LOCK_EX)


def _unlock_fd(fd: int) -> None:
    if platform.system() == "Windows":
        import msvcrt

        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
    else:
        import fcntl

        fcntl.flock(fd, fcntl.LOCK_UN)


class JsonDocument:
    """One JSON file plus the locks that serialize its writers.

    ``on_load`` receives the freshly parsed document whenever ``locked()``
    finds the file changed by someone else.
    """

    def __init__(
        self,
        path: Path | None = None,
        on_load: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self._path = path
        self._on_load = on_load
        self.lock = threading.RLock()
        self._depth = 0
        self._fd: int | None = None
        self._stamp: tuple[int, int, int] | None = None

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def lock_path(self) -> Path | None:
        return self._path.with_name(self._path.name + ".lock") if self._path else None

    def _current_stamp(self) -> tuple[int, int, int] | None:
        try:
            st = os.stat(self._path)  # type: ignore[arg-type]
        except FileNotFoundError:
            return None
        return (st.st_ino, st.st_mtime_ns, st.st_size)

    def changed(self) -> bool:
        """True when the file on disk differs from the one last read or written."""
        if not self._path:
            return False
        return self._current_stamp() != self._stamp

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the thread lock and the inter-process file lock; re-entrant."""
        with self.lock:
            outermost = self._depth == 0
            if outermost and self._path:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                self._fd = os.open(str(self.lock_path), os.O_CREAT | os.O_RDWR)
                try:
                    _lock_fd(self._fd)
                except OSError:
                    os.close(self._fd)
                    self._fd = None
                    raise
            self._depth += 1
            try:
                if outermost and self._on_load is not None and self.changed():
                    logger.debug("Reloading %s, changed on disk", self._path)
                    self._on_load(self.load())
                yield
            finally:
                self._depth -= 1
                if outermost and self._fd is not None:
                    try:
                        _unlock_fd(self._fd)
                    finally:
                        os.close(self._fd)
                        self._fd = None

    def refresh(self) -> None:
        """Hand the current file contents to on_load if they changed."""
        with self.locked():
            pass

    def load(self) -> dict[str, Any]:
        if not self._path or not self._path.exists():
            self._stamp = None
            return {}
        self._stamp = self._current_stamp()
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.error("Corrupt JSON document %s, starting empty", self._path)
            return {}
        return data if isinstance(data, dict) else {}

    def save(self, data: dict[str, Any]) -> None:
        if not self._path:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(f"{self._path.name}.{os.getpid()}.tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(str(tmp), str(self._path))
        self._stamp = self._current_stamp()

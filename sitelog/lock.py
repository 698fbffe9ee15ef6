from __future__ import annotations

import contextlib
import logging
import threading
import time
from pathlib import Path
from typing import Iterator, Optional


log = logging.getLogger("sitelog.lock")

_POLL_SECONDS = 0.05


class LockTimeout(RuntimeError):
    pass


class FileLock:
    def __init__(self, path: Path) -> None:
        self._path = path
        self._fp = None

    def try_acquire(self) -> bool:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fp = self._path.open("a+")
        try:
            import fcntl  # type: ignore

            fcntl.flock(fp.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            fp.close()
            return False

        self._fp = fp
        return True

    def acquire(self, timeout: float) -> bool:
        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            if self.try_acquire():
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(_POLL_SECONDS)

    def release(self) -> None:
        fp = self._fp
        self._fp = None
        if fp is None:
            return
        try:
            import fcntl  # type: ignore

            fcntl.flock(fp.fileno(), fcntl.LOCK_UN)
        finally:
            fp.close()


class RequestLock:
    """Single-writer lock around mutating requests.

    Waits at most ``timeout`` seconds; a timeout raises LockTimeout instead of
    letting the request run unguarded. When ``path`` is given, an advisory file
    lock extends the guarantee across worker processes.
    """

    def __init__(self, timeout: float = 30.0, path: Optional[Path] = None) -> None:
        self._timeout = float(timeout)
        self._local = threading.Lock()
        self._file = FileLock(path) if path is not None else None

    @contextlib.contextmanager
    def acquired(self, timeout: float | None = None) -> Iterator[None]:
        wait = self._timeout if timeout is None else float(timeout)
        started = time.monotonic()
        if not self._local.acquire(timeout=wait):
            log.warning("Request lock wait exceeded %.1fs", wait)
            raise LockTimeout("lock_timeout")
        try:
            if self._file is not None:
                remaining = wait - (time.monotonic() - started)
                if not self._file.acquire(remaining):
                    log.warning("File lock wait exceeded %.1fs", wait)
                    raise LockTimeout("lock_timeout")
            try:
                yield
            finally:
                if self._file is not None:
                    self._file.release()
        finally:
            self._local.release()

# lfsmeta/locks.py
"""
locks.py - per-package advisory locks

One lock file per (name, version, purpose) under the configured lock
directory, held with a non-blocking fcntl.flock. A second holder fails
immediately with LockBusy; nobody waits. Release is idempotent.

Policy lives with the callers: the fetcher downgrades a busy download lock to
a warning, the construction run treats a busy build lock as fatal.
"""

from __future__ import annotations

import os
import fcntl
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterator, Optional

from lfsmeta.config import Layout
from lfsmeta.errors import LockBusy
from lfsmeta.logging import get_logger

logger = get_logger("locks")

PURPOSES = ("download", "build")


class PackageLock:
    def __init__(self, layout: Layout, name: str, version: str, purpose: str):
        if purpose not in PURPOSES:
            raise ValueError(f"unknown lock purpose '{purpose}' (expected one of {', '.join(PURPOSES)})")
        self.name = name
        self.version = version
        self.purpose = purpose
        self.path: Path = layout.lock_file(name, version, purpose)
        self._fh: Optional[IO[str]] = None

    @property
    def held(self) -> bool:
        return self._fh is not None

    def acquire(self) -> "PackageLock":
        if self._fh is not None:
            return self
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(self.path, "a+")
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            fh.close()
            raise LockBusy(f"another process holds the {self.purpose} lock",
                           package=f"{self.name}-{self.version}", lock=str(self.path))
        except OSError:
            fh.close()
            raise
        fh.seek(0)
        fh.truncate()
        fh.write(f"{os.getpid()}\n")
        fh.flush()
        self._fh = fh
        logger.debug("acquired %s lock for %s-%s", self.purpose, self.name, self.version)
        return self

    def release(self) -> None:
        fh, self._fh = self._fh, None
        if fh is None:
            return
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        finally:
            fh.close()
        logger.debug("released %s lock for %s-%s", self.purpose, self.name, self.version)

    def __enter__(self) -> "PackageLock":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.release()
        return False


def acquire(layout: Layout, name: str, version: str, purpose: str) -> PackageLock:
    return PackageLock(layout, name, version, purpose).acquire()


def release(handle: Optional[PackageLock]) -> None:
    if handle is not None:
        handle.release()


@contextmanager
def package_lock(layout: Layout, name: str, version: str, purpose: str) -> Iterator[PackageLock]:
    lock = PackageLock(layout, name, version, purpose)
    with lock:
        yield lock

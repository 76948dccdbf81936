#!/usr/bin/env python3
"""Advisory lock so only one orchestrator rewrites the target configs at a time."""

from __future__ import annotations

import fcntl
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class RunLockError(RuntimeError):
    pass


@contextmanager
def run_lock(path: Path) -> Iterator[Path]:
    """Hold an exclusive ``flock`` on ``path`` for the duration of the block.

    The kernel drops the lock if the process dies, so a crashed run never leaves
    a lock behind; the file itself only records the owner's PID for operators.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            owner = _read_owner(fd)
            raise RunLockError(
                f"another matrix run holds {path} (pid {owner or 'unknown'}); "
                "concurrent runs would overwrite each other's target configs"
            ) from None
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode("ascii"))
        try:
            yield path
        finally:
            # Truncate rather than unlink: a waiter may already have the inode open.
            os.ftruncate(fd, 0)
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


def _read_owner(fd: int) -> str:
    try:
        os.lseek(fd, 0, os.SEEK_SET)
        return os.read(fd, 32).decode("ascii", errors="ignore").strip()
    except OSError:
        return ""

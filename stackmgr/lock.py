#!/usr/bin/env python3
"""
Advisory lock on the backup root.

Backup and restore both mutate `backups/` and the running stack, so only
one of them may run at a time on a host.
"""
from __future__ import annotations

import fcntl
import os
from pathlib import Path
from typing import Optional

from stackmgr.errors import LockError


class BackupRootLock:
    """Exclusive, non-blocking flock held for the duration of a `with` block."""

    def __init__(self, path: Path):
        self.path = path
        self.fd: Optional[int] = None

    def __enter__(self) -> "BackupRootLock":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.path), os.O_CREAT | os.O_RDWR, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise LockError(
                "Another backup or restore is already running", {"lock": str(self.path)}
            ) from None
        self.fd = fd
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.fd is None:
            return
        fcntl.flock(self.fd, fcntl.LOCK_UN)
        os.close(self.fd)
        self.fd = None

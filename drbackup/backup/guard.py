"""
Execution guard - per-kind mutual exclusion for pipeline runs.

Each pipeline kind owns one lock file under the lock directory. Ownership
is an exclusive, non-blocking flock on that file, so:
- any process acquiring the same kind sees it as busy while held
- the kernel drops the lock if the holder dies, so no stale locks remain
- lock files are never deleted (deleting a locked path races with new holders)
"""

import fcntl
import logging
import os
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from drbackup.models import LockToken, PipelineKind
from .errors import PipelineError


logger = logging.getLogger(__name__)


class GuardBusy(PipelineError):
    """Raised when another run already holds the lock for a kind."""

    def __init__(self, kind: PipelineKind, holder: str = ''):
        self.kind = kind
        self.holder = holder
        message = f"Pipeline '{kind.value}' is already running"
        if holder:
            message = f"{message} (holder pid {holder})"
        super().__init__(message)


class ExecutionGuard:
    """
    Hands out LockTokens, at most one live token per pipeline kind.
    """

    def __init__(self, lock_dir: str):
        """
        Initialize execution guard.

        Args:
            lock_dir: Directory holding one lock file per pipeline kind
        """
        self.lock_dir = Path(lock_dir)
        self.lock_dir.mkdir(parents=True, exist_ok=True)

    def lock_path(self, kind: PipelineKind) -> Path:
        return self.lock_dir / f"drbackup_{kind.value}.lock"

    def acquire(self, kind: PipelineKind) -> LockToken:
        """
        Take the execution right for a kind without waiting.

        Args:
            kind: Pipeline kind (lock domain)

        Returns:
            LockToken owned by the caller

        Raises:
            GuardBusy: If the kind is held by this or another process
        """
        path = self.lock_path(kind)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            holder = self._read_holder(fd)
            os.close(fd)
            raise GuardBusy(kind, holder)
        except Exception:
            os.close(fd)
            raise

        # Record the holder for operators inspecting the lock directory
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        os.fsync(fd)

        token = LockToken(kind=kind, path=str(path), fd=fd, acquired_at=datetime.utcnow())
        logger.debug(f"Acquired lock {path}")
        return token

    def release(self, token: LockToken):
        """
        Give up a token. Releasing an already released token is a no-op.

        Args:
            token: Token returned by acquire()
        """
        if token.released:
            return

        try:
            os.ftruncate(token.fd, 0)
            fcntl.flock(token.fd, fcntl.LOCK_UN)
        finally:
            os.close(token.fd)
            token.released = True
            logger.debug(f"Released lock {token.path}")

    @contextmanager
    def hold(self, kind: PipelineKind) -> Iterator[LockToken]:
        """
        Scoped acquisition; the token is released on every exit path.

        Raises:
            GuardBusy: If the kind is already held
        """
        token = self.acquire(kind)
        try:
            yield token
        finally:
            self.release(token)

    def is_held(self, kind: PipelineKind) -> bool:
        """
        Check whether a live process currently holds the lock for a kind.

        Reads the holder PID recorded in the lock file without taking the
        lock, so a status check never makes a concurrent acquire fail.

        Returns:
            True if held, False if free
        """
        pid = self.holder_pid(kind)
        if pid is None:
            return False

        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Alive, owned by another user
            return True
        return True

    def holder_pid(self, kind: PipelineKind) -> Optional[int]:
        """PID recorded by the current holder, or None if none is recorded."""
        try:
            content = self.lock_path(kind).read_text().strip()
        except FileNotFoundError:
            return None

        if not content.isdigit() or int(content) <= 0:
            return None
        return int(content)

    @staticmethod
    def _read_holder(fd: int) -> str:
        try:
            os.lseek(fd, 0, os.SEEK_SET)
            return os.read(fd, 32).decode(errors='replace').strip()
        except OSError:
            return ''

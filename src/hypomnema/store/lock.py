"""Per-session exclusive lock files."""

from __future__ import annotations

import fcntl
from pathlib import Path
from types import TracebackType
from typing import IO

import structlog

from hypomnema.store.records import StoreError

_logger = structlog.get_logger("hypomnema.store.lock")


class SessionBusyError(StoreError):
    """Raised when another writer already holds the session."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session busy: {session_id!r} is open in another process")
        self.session_id = session_id


class SessionLock:
    """
    Non-blocking exclusive ``flock`` on ``<lock_dir>/<session_id>.lock``.

    The lock is tied to the open file description, so it is released by the
    kernel if the process dies. Acquiring a lock that is already held, even
    from the same process, fails immediately with ``SessionBusyError``.

    Usage::

        with SessionLock(lock_dir, session_id):
            ...  # exclusive access to the session
    """

    def __init__(self, lock_dir: Path, session_id: str) -> None:
        self._path = Path(lock_dir) / f"{session_id}.lock"
        self._session_id = session_id
        self._fh: IO[str] | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._fh is not None

    def acquire(self) -> None:
        """
        Take the lock.

        Raises:
            SessionBusyError: If another holder has the lock.
            OSError: If the lock directory or file cannot be created.
        """
        if self._fh is not None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(self._path, "a+")  # noqa: SIM115
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            fh.close()
            raise SessionBusyError(self._session_id) from exc
        except BaseException:
            fh.close()
            raise
        self._fh = fh
        _logger.debug("session_lock_acquired", session_id=self._session_id, path=str(self._path))

    def release(self) -> None:
        """Drop the lock. No-op when not held."""
        fh = self._fh
        if fh is None:
            return
        self._fh = None
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        finally:
            fh.close()
        _logger.debug("session_lock_released", session_id=self._session_id)

    def __enter__(self) -> SessionLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

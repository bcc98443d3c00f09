"""Advisory locks that serialise migration runners.

One runner holds a stream's lock for the whole run; others wait (polling
until a timeout) or fail fast with LockContention. The lock primitive depends
on the database:

- PostgreSQL: session-level ``pg_try_advisory_lock`` on a dedicated connection
- MySQL / MariaDB: ``GET_LOCK`` on a dedicated connection
- SQLite files: an exclusive lock file beside the database
- anything else: no lock; the ledger's primary key is the only guard
"""

from __future__ import annotations

import hashlib
import os
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

from tidemark.config import LockConfig
from tidemark.database import sqlite_database_file
from tidemark.errors import LockContention
from tidemark.logging import get_logger

log = get_logger("locking")

_UNWRITTEN_GRACE_SECONDS = 5.0


class AdvisoryLock:
    """Base class: a named lock with a non-blocking ``try_acquire``."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._held = False

    def try_acquire(self) -> bool:
        raise NotImplementedError

    def release(self) -> None:
        raise NotImplementedError

    def is_held(self) -> bool:
        return self._held


class NullLock(AdvisoryLock):
    """Lock used where the database offers no primitive."""

    def try_acquire(self) -> bool:
        self._held = True
        return True

    def release(self) -> None:
        self._held = False


class PostgresAdvisoryLock(AdvisoryLock):
    """Session-level PostgreSQL advisory lock.

    The lock belongs to the database session, so a dedicated autocommit
    connection is kept open while it is held.
    """

    def __init__(self, engine: Engine, name: str) -> None:
        super().__init__(name)
        self._engine = engine
        self._conn: Connection | None = None
        self.key = lock_key(name)

    def try_acquire(self) -> bool:
        if self._held:
            return True
        if self._conn is None:
            self._conn = self._engine.connect().execution_options(
                isolation_level="AUTOCOMMIT"
            )
        acquired = self._conn.execute(
            text("SELECT pg_try_advisory_lock(:key)"), {"key": self.key}
        ).scalar()
        self._held = bool(acquired)
        return self._held

    def release(self) -> None:
        if self._conn is None:
            return
        try:
            if self._held:
                self._conn.execute(
                    text("SELECT pg_advisory_unlock(:key)"), {"key": self.key}
                )
        finally:
            self._held = False
            self._conn.close()
            self._conn = None


class MySQLNamedLock(AdvisoryLock):
    """MySQL / MariaDB named lock (``GET_LOCK``)."""

    def __init__(self, engine: Engine, name: str) -> None:
        # MySQL caps lock names at 64 characters
        super().__init__(name[:64])
        self._engine = engine
        self._conn: Connection | None = None

    def try_acquire(self) -> bool:
        if self._held:
            return True
        if self._conn is None:
            self._conn = self._engine.connect().execution_options(
                isolation_level="AUTOCOMMIT"
            )
        acquired = self._conn.execute(
            text("SELECT GET_LOCK(:name, 0)"), {"name": self.name}
        ).scalar()
        self._held = acquired == 1
        return self._held

    def release(self) -> None:
        if self._conn is None:
            return
        try:
            if self._held:
                self._conn.execute(text("SELECT RELEASE_LOCK(:name)"), {"name": self.name})
        finally:
            self._held = False
            self._conn.close()
            self._conn = None


class FileLock(AdvisoryLock):
    """PID+timestamp lock file for SQLite databases.

    Acquisition uses ``O_CREAT | O_EXCL`` for atomicity. A lock file whose
    PID is no longer running is stale and is taken over.
    """

    def __init__(self, path: Path, name: str) -> None:
        super().__init__(name)
        self.path = path

    def try_acquire(self) -> bool:
        if self._held:
            return True
        if self._create():
            return True

        observed = self._inspect()
        if observed is None:
            return self._create()
        stat, content = observed
        pid = _parse_pid(content)
        if pid is not None and _is_process_alive(pid):
            return False
        if pid is None and time.time() - stat.st_mtime < _UNWRITTEN_GRACE_SECONDS:
            # Holder created the file but has not written its PID yet
            return False

        log.warning("stale_lock_removed", path=str(self.path), pid=pid)
        return self._take_over(stat, content)

    def release(self) -> None:
        if not self._held:
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        self._held = False

    def _take_over(self, stat: os.stat_result, content: str) -> bool:
        """Replace the stale lock file that was inspected, and nothing newer.

        The stale file is renamed aside first, which only one runner can do.
        If what was renamed is not the inspected file, another runner has
        already taken over, so its lock file is put back.
        """
        claim = self.path.with_name(f"{self.path.name}.{os.getpid()}.{threading.get_ident()}")
        try:
            os.rename(self.path, claim)
        except FileNotFoundError:
            return self._create()
        try:
            moved = claim.stat()
            if (moved.st_ino, moved.st_mtime_ns) != (stat.st_ino, stat.st_mtime_ns) or (
                claim.read_text() != content
            ):
                try:
                    os.link(claim, self.path)
                except FileExistsError:
                    pass
                return False
        finally:
            claim.unlink(missing_ok=True)
        return self._create()

    def _create(self) -> bool:
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        try:
            content = f"{os.getpid()}\n{datetime.now(timezone.utc).isoformat()}\n{self.name}\n"
            os.write(fd, content.encode())
        finally:
            os.close(fd)
        self._held = True
        return True

    def _inspect(self) -> tuple[os.stat_result, str] | None:
        """The lock file's stat and content, or None if it is gone."""
        try:
            return self.path.stat(), self.path.read_text()
        except FileNotFoundError:
            return None


def _parse_pid(content: str) -> int | None:
    try:
        return int(content.splitlines()[0])
    except (IndexError, ValueError):
        return None


def _is_process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # Process exists but belongs to another user
        return True
    except (OSError, OverflowError):
        return False


def lock_key(name: str) -> int:
    """Signed 64-bit integer derived from a lock name."""
    digest = hashlib.sha256(name.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def lock_for(engine: Engine, name: str) -> AdvisoryLock:
    """Pick the lock implementation for an engine's dialect."""
    dialect = engine.dialect.name
    if dialect == "postgresql":
        return PostgresAdvisoryLock(engine, name)
    if dialect in ("mysql", "mariadb"):
        return MySQLNamedLock(engine, name)
    if dialect == "sqlite":
        db_file = sqlite_database_file(engine)
        if db_file is not None:
            return FileLock(db_file.with_name(f"{db_file.name}.{name}.lock"), name)
        return NullLock(name)
    log.warning("advisory_lock_unsupported", dialect=dialect, lock=name)
    return NullLock(name)


@contextmanager
def acquire(
    engine: Engine,
    name: str,
    settings: LockConfig,
    lock: AdvisoryLock | None = None,
) -> Iterator[AdvisoryLock]:
    """Hold the named lock for the duration of the block.

    Raises:
        LockContention: If the lock is held elsewhere and either waiting is
            disabled or the timeout elapsed.
    """
    if not settings.enabled:
        yield NullLock(name)
        return

    lock = lock or lock_for(engine, name)
    started = time.monotonic()

    while not lock.try_acquire():
        waited = time.monotonic() - started
        if not settings.wait:
            log.warning("lock_contention", lock=name)
            raise LockContention(name)
        if settings.timeout_seconds is not None and waited >= settings.timeout_seconds:
            log.warning("lock_timeout", lock=name, waited=round(waited, 3))
            raise LockContention(name, waited=settings.timeout_seconds)
        time.sleep(settings.poll_interval_seconds)

    log.debug("lock_acquired", lock=name)
    try:
        yield lock
    finally:
        lock.release()
        log.debug("lock_released", lock=name)

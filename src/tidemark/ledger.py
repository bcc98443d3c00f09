"""The migration ledger: which scripts were applied, when, and with what body.

The ledger is an ordinary table in the target database. Its primary key on
``identifier`` is what keeps two racing runners from both recording the same
migration.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import inspect, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from tidemark.logging import get_logger
from tidemark.scripts import MigrationScript

log = get_logger("ledger")

_TICK = timedelta(microseconds=1)


@dataclass(frozen=True)
class LedgerEntry:
    """One recorded migration."""

    identifier: str
    applied_at: datetime
    checksum: str


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive timestamps (SQLite returns them naive)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def ledger_exists(engine: Engine, table) -> bool:
    """Check whether the ledger table has been created."""
    return inspect(engine).has_table(table.name)


def ensure_ledger(engine: Engine, table) -> None:
    """Create the ledger table if absent (migration zero).

    Runs in its own transaction before any script. A concurrent runner
    creating the same table first is not an error.
    """
    try:
        with engine.begin() as conn:
            table.create(conn, checkfirst=True)
    except SQLAlchemyError:
        if not ledger_exists(engine, table):
            raise
        log.debug("ledger_created_concurrently", table=table.name)
        return
    log.debug("ledger_ready", table=table.name)


def read_entries(conn: Connection, table) -> dict[str, LedgerEntry]:
    """Load every ledger row keyed by identifier."""
    rows = conn.execute(select(table).order_by(table.c.identifier)).fetchall()
    return {
        row.identifier: LedgerEntry(
            identifier=row.identifier,
            applied_at=as_utc(row.applied_at),
            checksum=row.checksum,
        )
        for row in rows
    }


def load_entries(engine: Engine, table) -> dict[str, LedgerEntry]:
    """Read-only ledger load; an absent ledger reads as empty."""
    if not ledger_exists(engine, table):
        return {}
    with engine.connect() as conn:
        return read_entries(conn, table)


def is_recorded(engine: Engine, table, identifier: str) -> bool:
    """Check on a fresh connection whether ``identifier`` is in the ledger."""
    with engine.connect() as conn:
        found = conn.execute(
            select(table.c.identifier).where(table.c.identifier == identifier)
        ).first()
    return found is not None


def next_applied_at(previous: datetime | None) -> datetime:
    """Current UTC time, nudged past ``previous`` so timestamps strictly increase."""
    now = datetime.now(timezone.utc)
    if previous is not None and now <= previous:
        return previous + _TICK
    return now


def record(conn: Connection, table, script: MigrationScript, applied_at: datetime) -> LedgerEntry:
    """Insert the ledger row for ``script`` inside the caller's transaction."""
    entry = LedgerEntry(
        identifier=script.identifier,
        applied_at=applied_at,
        checksum=script.checksum,
    )
    conn.execute(
        table.insert().values(
            identifier=entry.identifier,
            applied_at=entry.applied_at,
            checksum=entry.checksum,
        )
    )
    return entry

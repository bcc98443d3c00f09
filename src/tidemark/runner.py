"""Migration runner for forward-only SQL schema evolution.

This module provides the core migration functionality:
- Planning which scripts are pending for a stream
- Detecting drift between applied scripts and the ledger
- Applying pending scripts, one transaction each, under an advisory lock
- Reporting per-script status
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from tidemark import ledger as ledger_store
from tidemark import locking
from tidemark.config import (
    DEFAULT_LEDGER_TABLE,
    DEFAULT_STREAM,
    Config,
    LockConfig,
    OrderPolicy,
)
from tidemark.database import ledger_table
from tidemark.errors import ConfigurationError, DriftDetected, ExecutionError
from tidemark.ledger import LedgerEntry
from tidemark.logging import get_logger
from tidemark.scripts import MigrationScript, validate_scripts
from tidemark.splitter import split_statements

log = get_logger("runner")

_VERBATIM = {"no_parameters": True}


class MigrationState(str, Enum):
    """Lifecycle of a script within one run."""

    PENDING = "pending"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"


@dataclass
class ApplyResult:
    """Outcome of one ``apply`` call for a stream."""

    stream: str = DEFAULT_STREAM
    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    error: Exception | None = None
    current: str | None = None

    @property
    def success(self) -> bool:
        return not self.failed and not self.blocked and self.error is None

    def state_of(self, identifier: str) -> MigrationState:
        if identifier == self.current:
            return MigrationState.APPLYING
        if identifier in self.applied:
            return MigrationState.APPLIED
        if identifier in self.failed:
            return MigrationState.FAILED
        if identifier in self.skipped:
            return MigrationState.SKIPPED
        if identifier in self.blocked:
            return MigrationState.BLOCKED
        return MigrationState.PENDING


@dataclass(frozen=True)
class MigrationStatus:
    """Status of one script against the ledger."""

    identifier: str
    description: str
    state: MigrationState
    applied_at: datetime | None = None
    checksum_matches: bool | None = None


@dataclass
class StatusReport:
    """Status of every known script, plus ledger rows with no script."""

    stream: str
    ledger_table: str
    migrations: list[MigrationStatus]
    unknown: list[str] = field(default_factory=list)

    @property
    def pending(self) -> list[MigrationStatus]:
        return [m for m in self.migrations if m.state is MigrationState.PENDING]

    @property
    def applied(self) -> list[MigrationStatus]:
        return [m for m in self.migrations if m.state is MigrationState.APPLIED]

    @property
    def drifted(self) -> list[MigrationStatus]:
        return [m for m in self.migrations if m.checksum_matches is False]


class MigrationRunner:
    """Applies one stream's scripts to a database, exactly once each.

    Args:
        engine: SQLAlchemy engine for the target database.
        ledger_table_name: Table recording applied scripts.
        stream: Stream name, used in logs and results.
        order_policy: Whether an unapplied script ordered before an applied
            one is run (OUT_OF_ORDER) or rejected (STRICT).
        verify_checksums: Compare applied scripts with the ledger before
            running anything.
        lock: Advisory lock settings.
    """

    def __init__(
        self,
        engine: Engine,
        ledger_table_name: str = DEFAULT_LEDGER_TABLE,
        *,
        stream: str = DEFAULT_STREAM,
        order_policy: OrderPolicy = OrderPolicy.OUT_OF_ORDER,
        verify_checksums: bool = True,
        lock: LockConfig | None = None,
    ) -> None:
        self.engine = engine
        self.stream = stream
        self.table = ledger_table(ledger_table_name)
        self.order_policy = OrderPolicy(order_policy)
        self.verify_checksums = verify_checksums
        self.lock_settings = lock or LockConfig()

    @classmethod
    def from_config(cls, engine: Engine, config: Config, stream: str) -> "MigrationRunner":
        """Build a runner for a configured stream.

        Raises:
            ConfigurationError: If the stream is not configured.
        """
        try:
            config.get_stream(stream)
        except KeyError as e:
            raise ConfigurationError(e.args[0]) from None
        return cls(
            engine,
            config.ledger_table_for(stream),
            stream=stream,
            order_policy=config.migrations.order_policy,
            verify_checksums=config.migrations.verify_checksums,
            lock=config.migrations.lock,
        )

    @property
    def lock_name(self) -> str:
        return f"tidemark.{self.table.name}"

    # -------------------------------------------------------------------------
    # Read-only operations
    # -------------------------------------------------------------------------

    def plan(
        self, scripts: Sequence[MigrationScript], target: str | None = None
    ) -> list[MigrationScript]:
        """Scripts that ``apply`` would run, in order. Writes nothing."""
        ordered = validate_scripts(scripts)
        entries = ledger_store.load_entries(self.engine, self.table)
        return self._pending(ordered, entries, target)

    def verify(self, scripts: Sequence[MigrationScript]) -> None:
        """Check applied scripts against the ledger. Writes nothing.

        Raises:
            DriftDetected: If any applied script's checksum changed.
        """
        ordered = validate_scripts(scripts)
        entries = ledger_store.load_entries(self.engine, self.table)
        self._check_drift(ordered, entries)

    def status(self, scripts: Sequence[MigrationScript], verify: bool = True) -> StatusReport:
        """Per-script status against the ledger. Writes nothing."""
        ordered = validate_scripts(scripts)
        entries = ledger_store.load_entries(self.engine, self.table)

        rows = []
        for script in ordered:
            entry = entries.get(script.identifier)
            if entry is None:
                rows.append(
                    MigrationStatus(
                        identifier=script.identifier,
                        description=script.description,
                        state=MigrationState.PENDING,
                    )
                )
            else:
                rows.append(
                    MigrationStatus(
                        identifier=script.identifier,
                        description=script.description,
                        state=MigrationState.APPLIED,
                        applied_at=entry.applied_at,
                        checksum_matches=(entry.checksum == script.checksum) if verify else None,
                    )
                )

        known = {s.identifier for s in ordered}
        return StatusReport(
            stream=self.stream,
            ledger_table=self.table.name,
            migrations=rows,
            unknown=sorted(set(entries) - known),
        )

    # -------------------------------------------------------------------------
    # Apply
    # -------------------------------------------------------------------------

    def apply(
        self, scripts: Sequence[MigrationScript], target: str | None = None
    ) -> ApplyResult:
        """Apply every pending script in identifier order.

        Args:
            scripts: The stream's scripts, in any order.
            target: Stop after this identifier (inclusive). None applies all.

        Returns:
            ApplyResult listing applied and skipped identifiers.

        Raises:
            ConfigurationError: Invalid scripts, unknown target, or a strict
                ordering violation. Nothing is executed.
            LockContention: Another runner holds the lock.
            DriftDetected: An applied script changed. Nothing is executed.
            ExecutionError: A script failed. Earlier scripts stay applied;
                the partial result is attached to the error.
        """
        ordered = validate_scripts(scripts)
        self._check_target(ordered, target)

        with locking.acquire(self.engine, self.lock_name, self.lock_settings):
            ledger_store.ensure_ledger(self.engine, self.table)

            with self.engine.connect() as conn:
                entries = ledger_store.read_entries(conn, self.table)

            if self.verify_checksums:
                self._check_drift(ordered, entries)
            self._warn_unknown(ordered, entries)

            pending = self._pending(ordered, entries, target)
            result = ApplyResult(
                stream=self.stream,
                skipped=[s.identifier for s in ordered if s.identifier in entries],
            )

            if not pending:
                log.info("no_pending_migrations", stream=self.stream)
                return result

            last_applied = max((e.applied_at for e in entries.values()), default=None)

            for index, script in enumerate(pending):
                result.current = script.identifier
                try:
                    entry = self._apply_one(script, last_applied)
                except _AppliedElsewhere:
                    result.current = None
                    result.skipped.append(script.identifier)
                    continue
                except ExecutionError as e:
                    result.current = None
                    result.failed.append(script.identifier)
                    result.blocked.extend(s.identifier for s in pending[index + 1 :])
                    result.error = e
                    e.result = result
                    log.error(
                        "migration_failed",
                        stream=self.stream,
                        identifier=script.identifier,
                        error=str(e.cause),
                        blocked=len(result.blocked),
                    )
                    raise

                last_applied = entry.applied_at
                result.current = None
                result.applied.append(script.identifier)

            log.info("migrations_complete", stream=self.stream, count=len(result.applied))
            return result

    def _apply_one(self, script: MigrationScript, last_applied: datetime | None) -> LedgerEntry:
        """Run one script and record it, in a single transaction."""
        log.info(
            "applying_migration",
            stream=self.stream,
            identifier=script.identifier,
            state=MigrationState.APPLYING.value,
            description=script.description,
        )
        statement: str | None = None
        try:
            with self.engine.begin() as conn:
                # No parameters, so % in a body stays literal on pyformat drivers
                for statement in split_statements(script.body):
                    conn.exec_driver_sql(statement, execution_options=_VERBATIM)
                statement = None
                entry = ledger_store.record(
                    conn, self.table, script, ledger_store.next_applied_at(last_applied)
                )
        except SQLAlchemyError as e:
            # A uniqueness failure on the ledger row, or a DDL failure because
            # the objects already exist, both mean another runner got here first.
            if self._recorded_elsewhere(script):
                log.info(
                    "migration_applied_concurrently",
                    stream=self.stream,
                    identifier=script.identifier,
                )
                raise _AppliedElsewhere() from e
            raise ExecutionError(script.identifier, e, statement=statement) from e

        log.info("migration_applied", stream=self.stream, identifier=script.identifier)
        return entry

    def _recorded_elsewhere(self, script: MigrationScript) -> bool:
        try:
            return ledger_store.is_recorded(self.engine, self.table, script.identifier)
        except SQLAlchemyError as e:
            log.warning(
                "ledger_recheck_failed",
                stream=self.stream,
                identifier=script.identifier,
                error=str(e),
            )
            return False

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    def _check_target(self, ordered: list[MigrationScript], target: str | None) -> None:
        if target is not None and target not in {s.identifier for s in ordered}:
            raise ConfigurationError(f"Unknown target migration: {target}", target)

    def _pending(
        self,
        ordered: list[MigrationScript],
        entries: dict[str, LedgerEntry],
        target: str | None,
    ) -> list[MigrationScript]:
        self._check_target(ordered, target)
        pending = [s for s in ordered if s.identifier not in entries]

        applied_known = [s.identifier for s in ordered if s.identifier in entries]
        if applied_known:
            latest = applied_known[-1]
            behind = [s.identifier for s in pending if s.identifier < latest]
            if behind:
                if self.order_policy is OrderPolicy.STRICT:
                    raise ConfigurationError(
                        f"Migration {behind[0]} is unapplied but ordered before "
                        f"applied migration {latest}",
                        behind[0],
                    )
                log.info(
                    "out_of_order_migrations",
                    stream=self.stream,
                    identifiers=behind,
                    latest_applied=latest,
                )

        if target is not None:
            pending = [s for s in pending if s.identifier <= target]
        return pending

    def _check_drift(
        self, ordered: list[MigrationScript], entries: dict[str, LedgerEntry]
    ) -> None:
        drifted = [
            s.identifier
            for s in ordered
            if s.identifier in entries and entries[s.identifier].checksum != s.checksum
        ]
        if drifted:
            log.error("migration_drift_detected", stream=self.stream, identifiers=drifted)
            raise DriftDetected(drifted)

    def _warn_unknown(
        self, ordered: list[MigrationScript], entries: dict[str, LedgerEntry]
    ) -> None:
        known = {s.identifier for s in ordered}
        unknown = sorted(set(entries) - known)
        if unknown:
            log.warning("ledger_entries_without_script", stream=self.stream, identifiers=unknown)


class _AppliedElsewhere(Exception):
    """Another runner recorded the script first."""


def migrate(
    engine: Engine,
    scripts: Sequence[MigrationScript],
    *,
    target: str | None = None,
    ledger_table_name: str = DEFAULT_LEDGER_TABLE,
    order_policy: OrderPolicy = OrderPolicy.OUT_OF_ORDER,
    verify_checksums: bool = True,
    lock: LockConfig | None = None,
) -> ApplyResult:
    """Apply pending scripts to ``engine``; see ``MigrationRunner.apply``."""
    runner = MigrationRunner(
        engine,
        ledger_table_name,
        order_policy=order_policy,
        verify_checksums=verify_checksums,
        lock=lock,
    )
    return runner.apply(scripts, target=target)

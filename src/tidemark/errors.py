"""Error types raised by the migration runner.

Every error carries the identifier of the offending migration where one
exists, and the process exit code the CLI uses when reporting it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tidemark.runner import ApplyResult


class MigrationError(Exception):
    """Base class for all runner errors."""

    exit_code = 1

    def __init__(self, message: str, identifier: str | None = None) -> None:
        super().__init__(message)
        self.identifier = identifier


class ConfigurationError(MigrationError):
    """The script collection or runner settings are invalid.

    Raised before any script executes.
    """

    exit_code = 3


class ExecutionError(MigrationError):
    """A script's statements failed against the database.

    Scripts committed earlier in the same run stay applied. The partial
    outcome of the run is available as ``result``.
    """

    exit_code = 1

    def __init__(
        self,
        identifier: str,
        cause: BaseException,
        statement: str | None = None,
        result: ApplyResult | None = None,
    ) -> None:
        super().__init__(f"Migration {identifier} failed: {cause}", identifier)
        self.cause = cause
        self.statement = statement
        self.result = result


class DriftDetected(MigrationError):
    """An applied script no longer matches the checksum in the ledger."""

    exit_code = 4

    def __init__(self, identifiers: list[str]) -> None:
        joined = ", ".join(identifiers)
        super().__init__(
            f"Applied migration(s) changed since they were recorded: {joined}",
            identifiers[0] if identifiers else None,
        )
        self.identifiers = identifiers


class LockContention(MigrationError):
    """Another runner holds the migration lock."""

    exit_code = 5

    def __init__(self, lock_name: str, waited: float | None = None) -> None:
        if waited:
            message = f"Could not acquire migration lock {lock_name!r} within {waited:g}s"
        else:
            message = f"Migration lock {lock_name!r} is held by another runner"
        super().__init__(message)
        self.lock_name = lock_name

"""Database connection management and the ledger table definition.

Uses SQLAlchemy Core (not ORM) for explicit SQL control. Migration bodies are
sent to the driver verbatim; only the ledger table is described here.
"""

from pathlib import Path

from sqlalchemy import Column, DateTime, MetaData, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

from tidemark.config import Config


def ledger_table(name: str, metadata: MetaData | None = None) -> Table:
    """Build the ledger table for a stream.

    Args:
        name: Table name.
        metadata: MetaData to attach to. A fresh one is used by default so
            several streams can be described side by side.

    Returns:
        The ledger Table.
    """
    return Table(
        name,
        metadata if metadata is not None else MetaData(),
        Column("identifier", Text, primary_key=True),
        Column("applied_at", DateTime(timezone=True), nullable=False),
        Column("checksum", Text, nullable=False),
    )


def get_engine(config: Config) -> Engine:
    """Create SQLAlchemy engine from config.

    Args:
        config: Application configuration.

    Returns:
        SQLAlchemy Engine instance.
    """
    url = config.database_url

    if not url.startswith("sqlite"):
        return create_engine(url, echo=config.database.echo, pool_pre_ping=True)

    if config.database.url is None:
        # Ensure data directory exists
        config.database_path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        url,
        echo=config.database.echo,
        connect_args={"timeout": config.database.busy_timeout_seconds},
    )
    enable_sqlite_transactional_ddl(engine)
    return engine


def enable_sqlite_transactional_ddl(engine: Engine) -> None:
    """Make pysqlite wrap DDL in the surrounding transaction.

    The sqlite3 module only opens transactions implicitly before DML, so a
    failing script would leave its CREATE TABLE statements behind. Driver
    transaction handling is switched off and SQLAlchemy emits BEGIN itself.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        if engine.url.database not in (None, "", ":memory:"):
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def sqlite_database_file(engine: Engine) -> Path | None:
    """Path of a SQLite engine's database file, or None (memory / other)."""
    if engine.dialect.name != "sqlite":
        return None
    database = engine.url.database
    if not database or database == ":memory:" or database.startswith("file:"):
        return None
    return Path(database)

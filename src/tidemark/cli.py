"""Command-line interface for Tidemark."""

from datetime import datetime, timezone
from pathlib import Path

import click
from sqlalchemy.exc import SQLAlchemyError

from tidemark import __version__
from tidemark.config import Config, OrderPolicy
from tidemark.errors import (
    ConfigurationError,
    DriftDetected,
    ExecutionError,
    MigrationError,
)
from tidemark.logging import get_logger, setup_logging
from tidemark.scripts import IDENTIFIER_PATTERN, load_stream

log = get_logger("cli")


@click.group()
@click.option(
    "-c",
    "--config-file",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to configuration file.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Set logging level (overrides config).",
)
@click.option(
    "--log-json/--no-log-json",
    default=None,
    help="Output logs as JSON or human-readable format (overrides config).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_file: Path | None,
    log_level: str | None,
    log_json: bool | None,
) -> None:
    """Tidemark - forward-only SQL schema migrations.

    Applies timestamp-prefixed SQL scripts exactly once, in order, and
    records each one in a ledger table inside the target database.
    """
    ctx.ensure_object(dict)

    config = Config.load_or_default(config_file)
    ctx.obj["config"] = config
    ctx.obj["config_file"] = config_file

    # CLI overrides config
    effective_log_level = log_level or config.log_level
    effective_log_json = log_json if log_json is not None else config.log_json

    setup_logging(json_output=effective_log_json, level=effective_log_level)


@cli.command()
def version() -> None:
    """Print version information."""
    click.echo(f"tidemark {__version__}")


def _selected_streams(config: Config, streams: tuple[str, ...]) -> list[str]:
    """Streams named on the command line, or every configured stream."""
    if not streams:
        return list(config.streams)
    unknown = [name for name in streams if name not in config.streams]
    if unknown:
        raise ConfigurationError(f"Unknown migration stream: {', '.join(unknown)}")
    return list(streams)


def _fail(error: MigrationError) -> None:
    """Report a runner error on stderr and exit with its code."""
    if error.identifier:
        click.echo(f"Error [{error.identifier}]: {error}", err=True)
    else:
        click.echo(f"Error: {error}", err=True)
    raise SystemExit(error.exit_code)


def _database_error(error: SQLAlchemyError) -> MigrationError:
    """Wrap a database failure outside any single migration."""
    cause = getattr(error, "orig", None) or error
    return MigrationError(f"Database error: {cause}")


stream_option = click.option(
    "--stream",
    "streams",
    multiple=True,
    help="Migration stream to use (repeatable, default: all configured streams).",
)


@cli.group()
def db() -> None:
    """Database migration commands."""
    pass


@db.command(name="status")
@stream_option
@click.option(
    "--verify/--no-verify",
    default=True,
    help="Compare applied scripts against recorded checksums.",
)
@click.pass_context
def db_status(ctx: click.Context, streams: tuple[str, ...], verify: bool) -> None:
    """Show migration status for each stream."""
    from tidemark.database import get_engine
    from tidemark.runner import MigrationRunner, MigrationState

    config = ctx.obj["config"]

    try:
        names = _selected_streams(config, streams)
        engine = get_engine(config)
        click.echo(f"Database: {engine.url.render_as_string(hide_password=True)}")

        drifted = False
        for name in names:
            scripts = load_stream(config.get_stream(name))
            report = MigrationRunner.from_config(engine, config, name).status(
                scripts, verify=verify
            )

            click.echo(f"Stream: {name} (ledger {report.ledger_table})")
            click.echo(f"  Available migrations: {len(report.migrations)}")
            click.echo(f"  Applied migrations: {len(report.applied)}")
            for row in report.migrations:
                if row.state is MigrationState.APPLIED:
                    mark = "applied"
                    if row.checksum_matches is False:
                        mark = "DRIFTED"
                        drifted = True
                    stamp = row.applied_at.isoformat() if row.applied_at else ""
                    click.echo(f"  [{mark}] {row.identifier}: {row.description} {stamp}".rstrip())
                else:
                    click.echo(f"  [pending] {row.identifier}: {row.description}")
            if report.pending:
                click.echo(f"  Pending migrations: {len(report.pending)}")
            else:
                click.echo("  No pending migrations")
            for identifier in report.unknown:
                click.echo(f"  [unknown] {identifier}: recorded in ledger, no script found")
    except MigrationError as e:
        _fail(e)
    except SQLAlchemyError as e:
        _fail(_database_error(e))

    if drifted:
        raise SystemExit(DriftDetected.exit_code)


@db.command(name="migrate")
@stream_option
@click.option(
    "--target",
    default=None,
    help="Stop after this migration identifier (default: latest).",
)
@click.option("--dry-run", is_flag=True, help="List pending migrations without applying them.")
@click.option(
    "--verify/--no-verify",
    default=None,
    help="Check applied scripts for drift first (overrides config).",
)
@click.option(
    "--strict/--out-of-order",
    default=None,
    help="Reject or allow unapplied scripts ordered before applied ones (overrides config).",
)
@click.option(
    "--wait/--no-wait",
    default=None,
    help="Wait for, or fail fast on, a lock held by another runner (overrides config).",
)
@click.pass_context
def db_migrate(
    ctx: click.Context,
    streams: tuple[str, ...],
    target: str | None,
    dry_run: bool,
    verify: bool | None,
    strict: bool | None,
    wait: bool | None,
) -> None:
    """Apply pending database migrations."""
    from tidemark.database import get_engine
    from tidemark.runner import MigrationRunner

    config = ctx.obj["config"]

    migrations = config.migrations.model_copy(deep=True)
    if verify is not None:
        migrations.verify_checksums = verify
    if strict is not None:
        migrations.order_policy = OrderPolicy.STRICT if strict else OrderPolicy.OUT_OF_ORDER
    if wait is not None:
        migrations.lock.wait = wait
    effective = config.model_copy(update={"migrations": migrations})

    try:
        names = _selected_streams(effective, streams)
        if target is not None and len(names) != 1:
            raise ConfigurationError("--target requires exactly one stream", target)

        engine = get_engine(effective)
        log.info("migrate_command_invoked", streams=names, dry_run=dry_run, target=target)

        for name in names:
            scripts = load_stream(effective.get_stream(name))
            runner = MigrationRunner.from_config(engine, effective, name)

            if dry_run:
                if migrations.verify_checksums:
                    runner.verify(scripts)
                pending = runner.plan(scripts, target=target)
                if pending:
                    click.echo(f"[{name}] Would apply {len(pending)} migration(s):")
                    for script in pending:
                        click.echo(f"  {script.identifier}: {script.description}")
                else:
                    click.echo(f"[{name}] No pending migrations")
                continue

            try:
                result = runner.apply(scripts, target=target)
            except ExecutionError as e:
                if e.result is not None:
                    for identifier in e.result.applied:
                        click.echo(f"[{name}] Applied {identifier}")
                    if e.result.blocked:
                        click.echo(
                            f"[{name}] Not attempted: {', '.join(e.result.blocked)}", err=True
                        )
                raise

            for identifier in result.applied:
                click.echo(f"[{name}] Applied {identifier}")
            if result.applied:
                click.echo(f"[{name}] Applied {len(result.applied)} migration(s)")
            else:
                click.echo(f"[{name}] Database already up to date")
    except MigrationError as e:
        _fail(e)
    except SQLAlchemyError as e:
        _fail(_database_error(e))


@db.command(name="verify")
@stream_option
@click.pass_context
def db_verify(ctx: click.Context, streams: tuple[str, ...]) -> None:
    """Check applied migrations against their recorded checksums."""
    from tidemark.database import get_engine
    from tidemark.runner import MigrationRunner

    config = ctx.obj["config"]

    try:
        names = _selected_streams(config, streams)
        engine = get_engine(config)
        for name in names:
            scripts = load_stream(config.get_stream(name))
            MigrationRunner.from_config(engine, config, name).verify(scripts)
            click.echo(f"[{name}] No drift detected")
    except MigrationError as e:
        _fail(e)
    except SQLAlchemyError as e:
        _fail(_database_error(e))


@cli.command()
@click.argument("slug")
@click.option("--stream", default=None, help="Stream to add the migration to.")
@click.pass_context
def new(ctx: click.Context, slug: str, stream: str | None) -> None:
    """Create an empty timestamp-prefixed migration script."""
    config = ctx.obj["config"]

    try:
        name = stream or next(iter(config.streams))
        _selected_streams(config, (name,))
        stream_config = config.get_stream(name)
        if stream_config.package:
            raise ConfigurationError(f"Stream {name} reads scripts from a package")

        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        identifier = f"{stamp}_{slug.strip().replace(' ', '_').replace('-', '_')}"
        if not IDENTIFIER_PATTERN.match(identifier):
            raise ConfigurationError(f"Invalid migration name: {slug!r}", identifier)

        directory = stream_config.directory
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{identifier}.sql"
        if path.exists():
            raise ConfigurationError(f"Migration already exists: {path}", identifier)

        path.write_text(f"/*\n  # {slug.replace('_', ' ')}\n*/\n\n", encoding="utf-8")
    except MigrationError as e:
        _fail(e)

    log.info("migration_created", stream=name, identifier=identifier, path=str(path))
    click.echo(f"Created {path}")


@cli.group()
def config() -> None:
    """Configuration management commands."""
    pass


@config.command(name="check")
@click.option(
    "-c",
    "--config-file",
    type=click.Path(exists=True, path_type=Path),
    default="tidemark.yaml",
    help="Path to configuration file.",
)
def config_check(config_file: Path) -> None:
    """Validate configuration file."""
    try:
        cfg = Config.load(config_file)
        click.echo(f"Configuration valid: {config_file}")
        click.echo(f"  Data directory: {cfg.data_dir}")
        click.echo(f"  Database URL: {cfg.database_url}")
        click.echo(f"  Log level: {cfg.log_level}")
        click.echo(f"  Order policy: {cfg.migrations.order_policy.value}")
        click.echo(f"  Verify checksums: {cfg.migrations.verify_checksums}")
        click.echo(f"  Streams: {len(cfg.streams)}")
        for name, stream in cfg.streams.items():
            source = f"package {stream.package}" if stream.package else str(stream.directory)
            click.echo(f"    {name}: {source} -> {cfg.ledger_table_for(name)}")

    except FileNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(ConfigurationError.exit_code)
    except Exception as e:
        click.echo(f"Configuration error: {e}", err=True)
        raise SystemExit(ConfigurationError.exit_code)

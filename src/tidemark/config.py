"""Configuration loading and validation for Tidemark."""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_STREAM = "default"
DEFAULT_LEDGER_TABLE = "_schema_migrations"


class OrderPolicy(str, Enum):
    """How to treat an unapplied script ordered before an applied one."""

    OUT_OF_ORDER = "out_of_order"
    STRICT = "strict"


class LockConfig(BaseModel):
    """Advisory lock settings for a migration run."""

    enabled: bool = True
    wait: bool = True
    timeout_seconds: float | None = 60.0  # None waits forever
    poll_interval_seconds: float = 0.5

    @field_validator("poll_interval_seconds")
    @classmethod
    def validate_poll_interval(cls, v: float) -> float:
        """Poll interval must be positive."""
        if v <= 0:
            raise ValueError("poll_interval_seconds must be positive")
        return v


class MigrationsConfig(BaseModel):
    """Runner behaviour shared by all streams."""

    order_policy: OrderPolicy = OrderPolicy.OUT_OF_ORDER
    verify_checksums: bool = True
    lock: LockConfig = Field(default_factory=LockConfig)


class StreamConfig(BaseModel):
    """One independent migration lineage.

    Scripts come from ``directory`` or, when set, from the ``*.sql``
    resources of the importable ``package``.
    """

    directory: Path = Path("migrations")
    package: str | None = None
    ledger_table: str | None = None


class DatabaseConfig(BaseModel):
    """Database configuration."""

    url: str | None = None
    path: str = "tidemark.db"
    busy_timeout_seconds: float = 30.0
    echo: bool = False


class Config(BaseModel):
    """Root configuration for Tidemark."""

    data_dir: Path = Path("./data")
    log_level: str = "INFO"
    log_json: bool = True

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    migrations: MigrationsConfig = Field(default_factory=MigrationsConfig)
    streams: dict[str, StreamConfig] = Field(
        default_factory=lambda: {DEFAULT_STREAM: StreamConfig()}
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log_level is valid."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v_upper

    @model_validator(mode="after")
    def validate_streams(self) -> "Config":
        """Require at least one stream and distinct ledger tables."""
        if not self.streams:
            raise ValueError("at least one migration stream must be configured")
        tables = [self.ledger_table_for(name) for name in self.streams]
        if len(tables) != len(set(tables)):
            raise ValueError("migration streams must use distinct ledger tables")
        return self

    @property
    def database_path(self) -> Path:
        """Get full path to the SQLite database file."""
        return self.data_dir / self.database.path

    @property
    def database_url(self) -> str:
        """Get the SQLAlchemy URL, defaulting to the SQLite file."""
        if self.database.url:
            return self.database.url
        return f"sqlite:///{self.database_path}"

    def get_stream(self, name: str) -> StreamConfig:
        """Get configuration for a named stream.

        Raises:
            KeyError: If the stream is not configured.
        """
        try:
            return self.streams[name]
        except KeyError:
            raise KeyError(f"Unknown migration stream: {name}") from None

    def ledger_table_for(self, name: str) -> str:
        """Ledger table name for a stream."""
        stream = self.get_stream(name)
        if stream.ledger_table:
            return stream.ledger_table
        if name == DEFAULT_STREAM:
            return DEFAULT_LEDGER_TABLE
        return f"{DEFAULT_LEDGER_TABLE}_{name}"

    @classmethod
    def load(cls, config_path: Path | str = Path("tidemark.yaml")) -> "Config":
        """Load configuration from YAML file with env var overlay.

        Args:
            config_path: Path to YAML configuration file.

        Returns:
            Validated Config instance.

        Raises:
            FileNotFoundError: If config file doesn't exist.
            ValueError: If config is invalid.
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path) as f:
            yaml_config = yaml.safe_load(f) or {}

        return cls.model_validate(_apply_env_overrides(yaml_config))

    @classmethod
    def load_or_default(cls, config_path: Path | str | None = None) -> "Config":
        """Load configuration, falling back to defaults if file not found.

        Args:
            config_path: Optional path to YAML configuration file.

        Returns:
            Config instance (from file or defaults).
        """
        if config_path is None:
            for path in [Path("tidemark.yaml"), Path("config.yaml"), Path("config.yml")]:
                if path.exists():
                    return cls.load(path)
            return cls.model_validate(_apply_env_overrides({}))

        try:
            return cls.load(config_path)
        except FileNotFoundError:
            return cls.model_validate(_apply_env_overrides({}))


def _apply_env_overrides(raw: dict) -> dict:
    """Overlay TIDEMARK_* environment variables onto raw config data."""
    if "TIDEMARK_DATA_DIR" in os.environ:
        raw["data_dir"] = os.environ["TIDEMARK_DATA_DIR"]
    if "TIDEMARK_LOG_LEVEL" in os.environ:
        raw["log_level"] = os.environ["TIDEMARK_LOG_LEVEL"]
    if "TIDEMARK_LOG_JSON" in os.environ:
        raw["log_json"] = os.environ["TIDEMARK_LOG_JSON"].lower() == "true"
    if "TIDEMARK_DATABASE_URL" in os.environ:
        database = dict(raw.get("database") or {})
        database["url"] = os.environ["TIDEMARK_DATABASE_URL"]
        raw["database"] = database
    return raw

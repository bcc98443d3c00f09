"""Tests for the configuration module."""

from pathlib import Path

import pytest
import yaml

from tidemark.config import (
    Config,
    DatabaseConfig,
    LockConfig,
    MigrationsConfig,
    OrderPolicy,
    StreamConfig,
)


@pytest.fixture
def sample_config_yaml(tmp_path: Path) -> Path:
    """Create a sample config file for testing."""
    config = {
        "data_dir": str(tmp_path / "data"),
        "log_level": "debug",
        "log_json": False,
        "database": {"path": "test.db", "busy_timeout_seconds": 5},
        "migrations": {
            "order_policy": "strict",
            "verify_checksums": False,
            "lock": {"wait": False, "timeout_seconds": None},
        },
        "streams": {
            "medical": {"directory": "supabase/medical"},
            "classifieds": {"directory": "supabase/classifieds", "ledger_table": "_ads_ledger"},
        },
    }
    config_path = tmp_path / "tidemark.yaml"
    with open(config_path, "w") as f:
        yaml.dump(config, f, sort_keys=False)
    return config_path


def test_config_load(sample_config_yaml: Path) -> None:
    """Test loading a valid configuration file."""
    config = Config.load(sample_config_yaml)

    assert config.log_level == "DEBUG"
    assert config.log_json is False
    assert config.database.path == "test.db"
    assert config.database.busy_timeout_seconds == 5
    assert config.migrations.order_policy is OrderPolicy.STRICT
    assert config.migrations.verify_checksums is False
    assert config.migrations.lock.wait is False
    assert config.migrations.lock.timeout_seconds is None
    assert list(config.streams) == ["medical", "classifieds"]
    assert config.streams["medical"].directory == Path("supabase/medical")


def test_config_load_not_found() -> None:
    """Test that missing config file raises FileNotFoundError."""
    with pytest.raises(FileNotFoundError):
        Config.load(Path("/nonexistent/tidemark.yaml"))


def test_config_load_empty_file(tmp_path: Path) -> None:
    """An empty YAML file yields defaults."""
    path = tmp_path / "empty.yaml"
    path.write_text("")
    config = Config.load(path)
    assert list(config.streams) == ["default"]


def test_config_defaults() -> None:
    config = Config()
    assert config.log_level == "INFO"
    assert config.log_json is True
    assert config.migrations.order_policy is OrderPolicy.OUT_OF_ORDER
    assert config.migrations.verify_checksums is True
    assert config.migrations.lock == LockConfig()
    assert config.streams == {"default": StreamConfig()}


def test_invalid_log_level() -> None:
    with pytest.raises(ValueError):
        Config(log_level="CHATTY")


def test_invalid_order_policy() -> None:
    with pytest.raises(ValueError):
        MigrationsConfig(order_policy="whenever")


def test_invalid_poll_interval() -> None:
    with pytest.raises(ValueError):
        LockConfig(poll_interval_seconds=0)


def test_empty_streams_rejected() -> None:
    with pytest.raises(ValueError):
        Config(streams={})


def test_conflicting_ledger_tables_rejected() -> None:
    with pytest.raises(ValueError):
        Config(
            streams={
                "a": StreamConfig(ledger_table="_ledger"),
                "b": StreamConfig(ledger_table="_ledger"),
            }
        )


class TestLedgerTableNames:
    """Tests for per-stream ledger naming."""

    def test_default_stream(self) -> None:
        assert Config().ledger_table_for("default") == "_schema_migrations"

    def test_named_stream(self, sample_config_yaml: Path) -> None:
        config = Config.load(sample_config_yaml)
        assert config.ledger_table_for("medical") == "_schema_migrations_medical"

    def test_explicit_table(self, sample_config_yaml: Path) -> None:
        config = Config.load(sample_config_yaml)
        assert config.ledger_table_for("classifieds") == "_ads_ledger"

    def test_unknown_stream(self) -> None:
        with pytest.raises(KeyError):
            Config().ledger_table_for("nope")


class TestDatabaseUrl:
    """Tests for database URL resolution."""

    def test_sqlite_default(self, tmp_path: Path) -> None:
        config = Config(data_dir=tmp_path)
        assert config.database_path == tmp_path / "tidemark.db"
        assert config.database_url == f"sqlite:///{tmp_path / 'tidemark.db'}"

    def test_explicit_url(self) -> None:
        config = Config(database=DatabaseConfig(url="postgresql://localhost/app"))
        assert config.database_url == "postgresql://localhost/app"


class TestEnvOverrides:
    """Tests for TIDEMARK_* environment overrides."""

    def test_env_overrides(self, sample_config_yaml: Path, monkeypatch, tmp_path: Path) -> None:
        monkeypatch.setenv("TIDEMARK_DATA_DIR", str(tmp_path / "other"))
        monkeypatch.setenv("TIDEMARK_LOG_LEVEL", "WARNING")
        monkeypatch.setenv("TIDEMARK_LOG_JSON", "true")
        monkeypatch.setenv("TIDEMARK_DATABASE_URL", "sqlite:///:memory:")

        config = Config.load(sample_config_yaml)

        assert config.data_dir == tmp_path / "other"
        assert config.log_level == "WARNING"
        assert config.log_json is True
        assert config.database_url == "sqlite:///:memory:"
        assert config.database.path == "test.db"

    def test_env_applies_to_defaults(self, monkeypatch, tmp_path: Path) -> None:
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("TIDEMARK_LOG_LEVEL", "ERROR")
        config = Config.load_or_default()
        assert config.log_level == "ERROR"


class TestLoadOrDefault:
    """Tests for fallback loading."""

    def test_missing_path_returns_defaults(self, tmp_path: Path) -> None:
        config = Config.load_or_default(tmp_path / "missing.yaml")
        assert config.log_level == "INFO"

    def test_discovers_tidemark_yaml(self, tmp_path: Path, monkeypatch) -> None:
        (tmp_path / "tidemark.yaml").write_text(yaml.dump({"log_level": "DEBUG"}))
        monkeypatch.chdir(tmp_path)
        assert Config.load_or_default().log_level == "DEBUG"

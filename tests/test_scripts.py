"""Tests for migration script discovery and validation."""

from pathlib import Path

import pytest

from tidemark.config import StreamConfig
from tidemark.errors import ConfigurationError
from tidemark.scripts import (
    MigrationScript,
    compute_checksum,
    extract_description,
    from_mapping,
    load_directory,
    load_stream,
    validate_scripts,
)


class TestMigrationScript:
    """Tests for identifier parsing and derived fields."""

    def test_version_and_slug(self) -> None:
        script = MigrationScript("20250414074315_frosty_rain", "SELECT 1;")
        assert script.version == "20250414074315"
        assert script.slug == "frosty_rain"

    def test_checksum_is_sha256_of_body(self) -> None:
        script = MigrationScript("001_a", "SELECT 1;")
        assert script.checksum == compute_checksum("SELECT 1;")
        assert len(script.checksum) == 64

    def test_checksum_ignores_line_ending_style(self) -> None:
        assert compute_checksum("SELECT 1;\r\nSELECT 2;\r\n") == compute_checksum(
            "SELECT 1;\nSELECT 2;\n"
        )

    def test_checksum_changes_with_body(self) -> None:
        assert compute_checksum("SELECT 1;") != compute_checksum("SELECT 2;")

    def test_description_falls_back_to_slug(self) -> None:
        script = MigrationScript("001_create_doctors", "CREATE TABLE doctors (id int);")
        assert script.description == "create doctors"


class TestExtractDescription:
    """Tests for reading descriptions from header comments."""

    def test_block_header_with_markdown_heading(self) -> None:
        body = "/*\n  # Medical Center Database Schema\n\n  1. New Tables\n*/\nSELECT 1;"
        assert extract_description(body) == "Medical Center Database Schema"

    def test_line_header_description_wins(self) -> None:
        body = "-- Migration: 001_x\n-- Description: Add visits\nSELECT 1;"
        assert extract_description(body) == "Add visits"

    def test_line_header_first_line(self) -> None:
        body = "-- Create posts table\nCREATE TABLE posts (id int);"
        assert extract_description(body) == "Create posts table"

    def test_no_header(self) -> None:
        assert extract_description("SELECT 1;") is None


class TestValidation:
    """Tests for collection validation."""

    def test_sorts_by_identifier(self) -> None:
        scripts = validate_scripts(
            [
                MigrationScript("003_c", ""),
                MigrationScript("001_a", ""),
                MigrationScript("002_b", ""),
            ]
        )
        assert [s.identifier for s in scripts] == ["001_a", "002_b", "003_c"]

    def test_duplicate_identifiers_rejected(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            validate_scripts([MigrationScript("001_a", "x"), MigrationScript("001_a", "y")])
        assert exc_info.value.identifier == "001_a"

    @pytest.mark.parametrize("identifier", ["create_doctors", "001", "001-create", "abc_def", "001__x"])
    def test_malformed_identifier_rejected(self, identifier: str) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            validate_scripts([MigrationScript(identifier, "")])
        assert exc_info.value.identifier == identifier

    def test_mixed_prefix_widths_rejected(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            validate_scripts([MigrationScript("9_a", ""), MigrationScript("10_b", "")])
        assert exc_info.value.identifier == "9_a"

    def test_empty_collection_is_valid(self) -> None:
        assert validate_scripts([]) == []

    def test_from_mapping(self) -> None:
        scripts = from_mapping({"002_b": "SELECT 2;", "001_a": "SELECT 1;"})
        assert [s.identifier for s in scripts] == ["001_a", "002_b"]


class TestLoadDirectory:
    """Tests for loading scripts from disk."""

    def test_loads_sql_files_in_order(self, migrations_dir: Path) -> None:
        scripts = load_directory(migrations_dir)
        assert [s.identifier for s in scripts] == [
            "001_create_doctors",
            "002_create_patients",
            "003_create_visits",
        ]
        assert all(s.path is not None for s in scripts)

    def test_ignores_hidden_and_non_sql_files(self, migrations_dir: Path) -> None:
        (migrations_dir / "README.md").write_text("notes")
        (migrations_dir / ".004_hidden.sql").write_text("SELECT 1;")
        scripts = load_directory(migrations_dir)
        assert len(scripts) == 3

    def test_malformed_sql_filename_rejected(self, migrations_dir: Path) -> None:
        (migrations_dir / "seed_data.sql").write_text("SELECT 1;")
        with pytest.raises(ConfigurationError):
            load_directory(migrations_dir)

    def test_missing_directory(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError):
            load_directory(tmp_path / "nope")

    def test_load_stream_uses_directory(self, migrations_dir: Path) -> None:
        scripts = load_stream(StreamConfig(directory=migrations_dir))
        assert len(scripts) == 3

    def test_load_stream_package_not_importable(self) -> None:
        with pytest.raises(ConfigurationError):
            load_stream(StreamConfig(package="tidemark_no_such_package"))

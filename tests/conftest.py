"""Pytest configuration and shared fixtures."""

from pathlib import Path

import pytest
from click.testing import CliRunner

from tidemark.config import Config
from tidemark.database import get_engine

DOCTORS = """/*
  # Create doctors table
*/
CREATE TABLE IF NOT EXISTS doctors (
  id INTEGER PRIMARY KEY,
  name TEXT NOT NULL,
  specialty TEXT
);
"""

PATIENTS = """-- Description: Create patients table
CREATE TABLE IF NOT EXISTS patients (
  id INTEGER PRIMARY KEY,
  name TEXT NOT NULL,
  date_of_birth DATE NOT NULL
);
"""

VISITS = """CREATE TABLE IF NOT EXISTS visits (
  id INTEGER PRIMARY KEY,
  doctor_id INTEGER NOT NULL REFERENCES doctors(id) ON DELETE CASCADE,
  patient_id INTEGER NOT NULL REFERENCES patients(id) ON DELETE CASCADE,
  notes TEXT
);

INSERT INTO doctors (id, name, specialty) VALUES (1, 'Dr. Smith; MD', 'Cardiology');
INSERT INTO patients (id, name, date_of_birth) VALUES (1, 'John Doe', '1980-05-15');
INSERT INTO visits (doctor_id, patient_id, notes) VALUES (1, 1, 'Regular checkup');
"""


@pytest.fixture
def cli_runner() -> CliRunner:
    """Provide a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def temp_data_dir(tmp_path):
    """Provide a temporary data directory for tests."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def test_config(temp_data_dir: Path) -> Config:
    """Create a test configuration with temp database."""
    return Config(data_dir=temp_data_dir)


@pytest.fixture
def engine(test_config: Config):
    """Create a test database engine (no tables yet)."""
    eng = get_engine(test_config)
    yield eng
    eng.dispose()


@pytest.fixture
def medical_bodies() -> dict[str, str]:
    """Three dependent medical-center migrations."""
    return {
        "001_create_doctors": DOCTORS,
        "002_create_patients": PATIENTS,
        "003_create_visits": VISITS,
    }


@pytest.fixture
def migrations_dir(tmp_path: Path, medical_bodies: dict[str, str]) -> Path:
    """A directory holding the medical-center migrations as .sql files."""
    directory = tmp_path / "migrations"
    directory.mkdir()
    for identifier, body in medical_bodies.items():
        (directory / f"{identifier}.sql").write_text(body)
    return directory

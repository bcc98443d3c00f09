"""Migration scripts: naming, discovery, checksums and validation.

A migration is a ``.sql`` file named ``<digits>_<slug>.sql``. The digit
prefix is usually a UTC timestamp (``20250414074315_frosty_rain.sql``) but
any fixed-width counter works (``001_create_doctors.sql``). Scripts are
ordered lexicographically by identifier (the file stem), which is why all
prefixes within one stream must have the same width.
"""

from __future__ import annotations

import hashlib
import re
from collections import Counter
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Iterable, Mapping

from tidemark.config import StreamConfig
from tidemark.errors import ConfigurationError
from tidemark.logging import get_logger

log = get_logger("scripts")

IDENTIFIER_PATTERN = re.compile(r"^(?P<version>\d+)_(?P<slug>[A-Za-z0-9][A-Za-z0-9_\-]*)$")
SCRIPT_SUFFIX = ".sql"

_BLOCK_HEADER = re.compile(r"^\s*/\*(?P<body>.*?)\*/", re.DOTALL)
_LINE_HEADER = re.compile(r"^\s*((?:--[^\n]*\n?)+)")
_DESCRIPTION_PREFIX = re.compile(r"^(?:description|migration)\s*:\s*", re.IGNORECASE)


def compute_checksum(body: str) -> str:
    """SHA-256 hex digest of a script body.

    Line endings are normalised to LF so a checkout with CRLF endings does
    not read as drift.
    """
    normalised = body.replace("\r\n", "\n")
    return hashlib.sha256(normalised.encode("utf-8")).hexdigest()


def extract_description(body: str) -> str | None:
    """Pull a one-line description from a script's leading comment.

    Recognises a leading ``/* ... */`` block (first non-empty line, Markdown
    heading marks removed) or a run of ``--`` comment lines (a
    ``Description:`` line wins, else the first non-empty line).
    """
    match = _BLOCK_HEADER.match(body)
    if match:
        for line in match.group("body").splitlines():
            line = line.strip().lstrip("#").strip()
            if line:
                return line
        return None

    match = _LINE_HEADER.match(body)
    if match:
        lines = [
            line.strip()[2:].strip()
            for line in match.group(1).splitlines()
            if line.strip().startswith("--")
        ]
        for line in lines:
            if line.lower().startswith("description:"):
                return _DESCRIPTION_PREFIX.sub("", line)
        for line in lines:
            if line:
                return _DESCRIPTION_PREFIX.sub("", line)
    return None


@dataclass(frozen=True)
class MigrationScript:
    """A single named schema-change script."""

    identifier: str
    body: str = field(repr=False)
    path: Path | None = field(default=None, compare=False)

    @property
    def version(self) -> str:
        """Digit prefix of the identifier."""
        match = IDENTIFIER_PATTERN.match(self.identifier)
        return match.group("version") if match else ""

    @property
    def slug(self) -> str:
        """Name part after the digit prefix."""
        match = IDENTIFIER_PATTERN.match(self.identifier)
        return match.group("slug") if match else self.identifier

    @property
    def checksum(self) -> str:
        return compute_checksum(self.body)

    @property
    def description(self) -> str:
        return extract_description(self.body) or self.slug.replace("_", " ")


def load_directory(directory: Path | str) -> list[MigrationScript]:
    """Read all migration scripts in a directory.

    Hidden files and files without a ``.sql`` suffix are ignored. The result
    is validated and sorted.

    Raises:
        ConfigurationError: If the directory is missing or the scripts are
            malformed.
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise ConfigurationError(f"Migration directory not found: {directory}")

    scripts = []
    for path in directory.iterdir():
        if path.name.startswith(".") or not path.is_file():
            continue
        if path.suffix.lower() != SCRIPT_SUFFIX:
            continue
        scripts.append(
            MigrationScript(
                identifier=path.stem,
                body=path.read_text(encoding="utf-8"),
                path=path,
            )
        )

    log.debug("scripts_discovered", directory=str(directory), count=len(scripts))
    return validate_scripts(scripts)


def load_package(package: str) -> list[MigrationScript]:
    """Read migration scripts embedded as resources of an importable package.

    Raises:
        ConfigurationError: If the package cannot be imported or the scripts
            are malformed.
    """
    try:
        root = resources.files(package)
    except ModuleNotFoundError as e:
        raise ConfigurationError(f"Migration package not importable: {package}") from e

    scripts = [
        MigrationScript(identifier=entry.name[: -len(SCRIPT_SUFFIX)], body=entry.read_text("utf-8"))
        for entry in root.iterdir()
        if entry.is_file()
        and not entry.name.startswith(".")
        and entry.name.lower().endswith(SCRIPT_SUFFIX)
    ]
    log.debug("scripts_discovered", package=package, count=len(scripts))
    return validate_scripts(scripts)


def from_mapping(bodies: Mapping[str, str]) -> list[MigrationScript]:
    """Build a validated, sorted script list from identifier -> body."""
    return validate_scripts(
        MigrationScript(identifier=identifier, body=body) for identifier, body in bodies.items()
    )


def validate_scripts(scripts: Iterable[MigrationScript]) -> list[MigrationScript]:
    """Check a script collection and return it in ordering-key order.

    Raises:
        ConfigurationError: On duplicate identifiers, identifiers that are not
            ``<digits>_<slug>``, or digit prefixes of different widths.
    """
    scripts = list(scripts)

    duplicates = sorted(
        identifier
        for identifier, count in Counter(s.identifier for s in scripts).items()
        if count > 1
    )
    if duplicates:
        raise ConfigurationError(
            f"Duplicate migration identifiers: {', '.join(duplicates)}",
            duplicates[0],
        )

    for script in scripts:
        if not IDENTIFIER_PATTERN.match(script.identifier):
            raise ConfigurationError(
                f"Malformed migration identifier {script.identifier!r}: "
                "expected <digits>_<slug>",
                script.identifier,
            )

    widths = {len(s.version) for s in scripts}
    if len(widths) > 1:
        shortest = min(scripts, key=lambda s: len(s.version))
        raise ConfigurationError(
            "Migration prefixes have mixed widths "
            f"({', '.join(str(w) for w in sorted(widths))}); "
            "identifiers would not sort in version order",
            shortest.identifier,
        )

    return sorted(scripts, key=lambda s: s.identifier)


def load_stream(stream: StreamConfig) -> list[MigrationScript]:
    """Load a configured stream from its package or directory."""
    if stream.package:
        return load_package(stream.package)
    return load_directory(stream.directory)

"""
Migration repository: the ordered set of migration files on disk.

Layout:

    migrations/
    ├── 000_create_migrations_table.sql
    ├── 001_create_users_table.sql
    ├── ...
    ├── TEMPLATE.sql          (ignored)
    └── rollback/
        ├── 017_down.sql      (used only by `ledger-migrate rollback`)
        └── 018_down.sql

Every top-level `*.sql` file except TEMPLATE.sql is a migration unit and must
be named `<digits>_<name>.sql`. All versions share one digit width so that
string order equals numeric order; anything else is a RepositoryError rather
than a silently ambiguous ordering.
"""

import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import date
from pathlib import Path

from ledger_migrate.config.constants import (
    DEFAULT_LEDGER_TABLE,
    DEFAULT_VERSION_WIDTH,
    IGNORED_FILENAMES,
    ROLLBACK_DIRNAME,
)
from ledger_migrate.exceptions import DuplicateVersionError, RepositoryError

logger = logging.getLogger(__name__)

MIGRATION_FILENAME = re.compile(
    r"^(?P<version>\d+)_(?P<name>[A-Za-z0-9][A-Za-z0-9_\-]*)\.sql$"
)

_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-]*$")

# Used by `new` when the repository has no TEMPLATE.sql of its own
DEFAULT_TEMPLATE = """\
-- Migration: NNN_descriptive_name
-- Description: Brief description of what this migration does
-- Date: YYYY-MM-DD

BEGIN;

-- Your migration SQL here

INSERT INTO schema_migrations (version, name, applied_at)
VALUES ('NNN', 'descriptive_name', NOW())
ON CONFLICT (version) DO NOTHING;

COMMIT;
"""


def compute_checksum(body: bytes) -> str:
    """Return the sha256 hex digest of a migration body."""
    return hashlib.sha256(body).hexdigest()


@dataclass(frozen=True)
class MigrationUnit:
    """
    One migration file.

    Attributes:
        version: Fixed-width version string ("001")
        name: Descriptive name ("create_users_table")
        body: SQL text as authored
        checksum: sha256 hex digest of the file bytes
        path: Source file, when loaded from disk
    """

    version: str
    name: str
    body: str
    checksum: str
    path: Path | None = None

    @property
    def full_name(self) -> str:
        """Identifier as it appears in the filename (version_name)."""
        return f"{self.version}_{self.name}"

    @classmethod
    def from_text(cls, version: str, name: str, body: str) -> "MigrationUnit":
        """Build a unit from in-memory SQL (checksum computed from UTF-8 bytes)."""
        return cls(
            version=version,
            name=name,
            body=body,
            checksum=compute_checksum(body.encode("utf-8")),
        )


class MigrationRepository:
    """
    Discovers and validates migration files in one directory.

    Args:
        migrations_dir: Directory holding the `NNN_name.sql` files

    Example:
        >>> repo = MigrationRepository("docker/postgres/migrations")
        >>> [unit.full_name for unit in repo.list_units()][:2]
        ['000_create_migrations_table', '001_create_users_table']
    """

    def __init__(self, migrations_dir: str | Path):
        self.migrations_dir = Path(migrations_dir)

    def list_units(self) -> list[MigrationUnit]:
        """
        Load every migration unit, sorted ascending by version.

        Returns:
            Units in apply order (may be empty)

        Raises:
            RepositoryError: Missing directory, malformed filename, unreadable
                or empty body, or inconsistent version widths
            DuplicateVersionError: Two files share a version
        """
        if not self.migrations_dir.is_dir():
            raise RepositoryError(
                f"Migrations directory not found: {self.migrations_dir}"
            )

        by_version: dict[str, MigrationUnit] = {}
        for path in sorted(self.migrations_dir.glob("*.sql")):
            if path.name in IGNORED_FILENAMES or not path.is_file():
                continue

            match = MIGRATION_FILENAME.match(path.name)
            if not match:
                raise RepositoryError(
                    f"Invalid migration filename {path.name!r}: "
                    f"expected <digits>_<name>.sql"
                )

            version = match.group("version")
            if version in by_version:
                existing = by_version[version].path
                raise DuplicateVersionError(
                    f"Duplicate migration version {version}: "
                    f"{existing.name if existing else '?'} and {path.name}",
                    version=version,
                    paths=[str(existing), str(path)],
                )

            by_version[version] = self._load(path, version, match.group("name"))

        widths = {len(version) for version in by_version}
        if len(widths) > 1:
            raise RepositoryError(
                f"Inconsistent version widths in {self.migrations_dir}: "
                f"{sorted(widths)} digits; zero-pad all versions to one width"
            )

        units = [by_version[version] for version in sorted(by_version)]
        logger.debug(
            f"Discovered {len(units)} migration(s)",
            extra={"context": {"migrations_dir": str(self.migrations_dir)}},
        )
        return units

    def _load(self, path: Path, version: str, name: str) -> MigrationUnit:
        try:
            raw = path.read_bytes()
            body = raw.decode("utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise RepositoryError(f"Cannot read migration {path.name}: {e}") from e

        if not body.strip():
            raise RepositoryError(f"Migration {path.name} is empty")

        return MigrationUnit(
            version=version,
            name=name,
            body=body,
            checksum=compute_checksum(raw),
            path=path,
        )

    def get(self, version: str) -> MigrationUnit:
        """
        Return the unit for version.

        Raises:
            RepositoryError: If no such version exists
        """
        for unit in self.list_units():
            if unit.version == version:
                return unit
        raise RepositoryError(f"Migration version {version} not found")

    def rollback_script(self, version: str) -> str:
        """
        Read `rollback/<version>_down.sql`.

        Raises:
            RepositoryError: If the script is missing, unreadable or empty
        """
        path = self.migrations_dir / ROLLBACK_DIRNAME / f"{version}_down.sql"
        if not path.is_file():
            raise RepositoryError(f"No rollback script for version {version}: {path}")
        try:
            body = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise RepositoryError(f"Cannot read rollback script {path}: {e}") from e
        if not body.strip():
            raise RepositoryError(f"Rollback script {path} is empty")
        return body

    def next_version(self) -> str:
        """
        Return the version following the highest existing one.

        Keeps the repository's digit width; an empty repository starts at "001".
        """
        units = self.list_units()
        if not units:
            return str(1).zfill(DEFAULT_VERSION_WIDTH)

        last = units[-1].version
        following = str(int(last) + 1)
        if len(following) > len(last):
            raise RepositoryError(
                f"Version {last} is the last {len(last)}-digit version; "
                f"widen every existing filename before adding more"
            )
        return following.zfill(len(last))

    def create_unit(
        self,
        name: str,
        ledger_table: str = DEFAULT_LEDGER_TABLE,
        today: date | None = None,
    ) -> Path:
        """
        Scaffold the next migration file from the repository template.

        Uses TEMPLATE.sql from the migrations directory when present,
        otherwise DEFAULT_TEMPLATE. The placeholders NNN, descriptive_name
        and YYYY-MM-DD are filled in.

        Args:
            name: Descriptive name (letters, digits, underscore, hyphen)
            ledger_table: Ledger table referenced by the self-recording insert
            today: Date written into the header (defaults to today)

        Returns:
            Path of the new file

        Raises:
            RepositoryError: Invalid name, or the target file already exists
        """
        name = name.strip().replace(" ", "_")
        if not _NAME.match(name):
            raise RepositoryError(
                f"Invalid migration name {name!r}: use letters, digits, '_' or '-'"
            )

        version = self.next_version()
        template_path = self.migrations_dir / "TEMPLATE.sql"
        if template_path.is_file():
            template = template_path.read_text(encoding="utf-8")
        else:
            template = DEFAULT_TEMPLATE

        body = (
            template.replace("NNN", version)
            .replace("descriptive_name", name)
            .replace("YYYY-MM-DD", (today or date.today()).isoformat())
        )
        if ledger_table != DEFAULT_LEDGER_TABLE:
            body = body.replace(DEFAULT_LEDGER_TABLE, ledger_table)

        path = self.migrations_dir / f"{version}_{name}.sql"
        if path.exists():
            raise RepositoryError(f"Migration file already exists: {path}")

        path.write_text(body, encoding="utf-8")
        logger.info(
            f"Created migration {path.name}",
            extra={"context": {"version": version, "name": name}},
        )
        return path

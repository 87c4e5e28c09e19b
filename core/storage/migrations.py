"""
Schema migrations for the ClickHouse store.

Migrations are plain SQL files named ``<version>_<name>.<up|down>.sql``.
Files sharing ``<version>_<name>`` form one migration. They are applied
in ascending version order, compared as strings, so versions must be
zero-padded to a fixed width (``000001``, ``000002``, ...).

Applied versions are recorded in a ledger table in the same database.
ClickHouse has no multi-statement transactions: a failure halfway through
a file leaves the earlier statements of that file applied and the
migration unrecorded, which needs manual repair.
"""

import asyncio
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from core.exceptions import EventStoreError, MigrationError
from core.logging import get_logger
from core.storage.clickhouse import ClickHouseDatabase


logger = get_logger(__name__)

MIGRATION_FILE_RE = re.compile(r"^(\d+)_(.+)\.(up|down)\.sql$")

LEDGER_TABLE = "schema_migrations"

# ALTER TABLE ... DELETE is an asynchronous mutation in ClickHouse
DELETE_SETTLE_SECONDS = 0.1


@dataclass
class Migration:
    version: str
    name: str
    up_sql: str = ""
    down_sql: str = ""

    @property
    def filename(self) -> str:
        return f"{self.version}_{self.name}"


@dataclass(frozen=True)
class MigrationStatus:
    version: str
    name: str
    applied: bool


def load_migrations(directory: Path) -> list[Migration]:
    """
    Discover migration files in ``directory``.

    Files that don't match the naming pattern are ignored.

    Returns:
        Migrations sorted by version string ascending
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise MigrationError(f"migrations directory not found: {directory}")

    migrations: dict[str, Migration] = {}
    for path in sorted(directory.iterdir()):
        if not path.is_file():
            continue
        match = MIGRATION_FILE_RE.match(path.name)
        if match is None:
            continue

        version, name, direction = match.groups()
        key = f"{version}_{name}"
        migration = migrations.setdefault(key, Migration(version=version, name=name))

        content = path.read_text(encoding="utf-8")
        if direction == "up":
            migration.up_sql = content
        else:
            migration.down_sql = content

    return sorted(migrations.values(), key=lambda m: m.version)


def _strip_block_comments(line: str, in_block_comment: bool) -> tuple[str, bool]:
    """Remove ``/* ... */`` spans from one line, carrying open comments over."""
    kept: list[str] = []
    rest = line
    while rest:
        if in_block_comment:
            end = rest.find("*/")
            if end < 0:
                break
            rest = rest[end + 2:]
            in_block_comment = False
        else:
            start = rest.find("/*")
            if start < 0:
                kept.append(rest)
                break
            kept.append(rest[:start])
            rest = rest[start + 2:]
            in_block_comment = True
    return "".join(kept), in_block_comment


def split_statements(sql: str) -> list[str]:
    """
    Split a SQL script into individual statements.

    A statement ends at a line whose last character is ``;``. Blank lines,
    ``--`` comment lines and ``/* ... */`` blocks, wherever they open, are
    dropped. A trailing statement without ``;`` is kept.
    """
    statements: list[str] = []
    current: list[str] = []
    in_block_comment = False

    for line in sql.splitlines():
        line, in_block_comment = _strip_block_comments(line, in_block_comment)
        stripped = line.strip()
        if not stripped or stripped.startswith("--"):
            continue

        current.append(line.rstrip())
        if stripped.endswith(";"):
            statement = "\n".join(current).strip().rstrip(";").strip()
            if statement:
                statements.append(statement)
            current = []

    tail = "\n".join(current).strip()
    if tail:
        statements.append(tail)

    return statements


class ClickHouseMigrator:
    """
    Applies and rolls back versioned SQL migrations.

    Usage:
        migrator = ClickHouseMigrator(database, settings.clickhouse_migrations_dir)
        await migrator.up()
        for status in await migrator.status():
            print(status.version, status.applied)
    """

    def __init__(
        self,
        database: ClickHouseDatabase,
        migrations_dir: Path,
        *,
        settle_seconds: float = DELETE_SETTLE_SECONDS,
    ):
        self._db = database
        self._settle_seconds = settle_seconds
        self.migrations = load_migrations(migrations_dir)

    async def _ensure_ledger(self) -> None:
        await self._db.command(
            f"""
            CREATE TABLE IF NOT EXISTS {LEDGER_TABLE} (
                version     String,
                name        String,
                applied_at  DateTime DEFAULT now()
            ) ENGINE = MergeTree()
            ORDER BY version
            """,
            operation="failed to ensure migration table",
        )

    async def _ledger_exists(self) -> bool:
        rows = await self._db.query(
            "SELECT count() AS n FROM system.tables "
            "WHERE database = currentDatabase() AND name = %(table)s",
            {"table": LEDGER_TABLE},
            operation="failed to inspect migration table",
        )
        return bool(rows) and int(rows[0]["n"]) > 0

    async def _applied_versions(self) -> set[str]:
        rows = await self._db.query(
            f"SELECT version FROM {LEDGER_TABLE}",
            operation="failed to get applied migrations",
        )
        return {row["version"] for row in rows}

    async def _record(self, migration: Migration) -> None:
        await self._db.command(
            f"INSERT INTO {LEDGER_TABLE} (version, name) VALUES (%(version)s, %(name)s)",
            {"version": migration.version, "name": migration.name},
            operation=f"failed to record migration {migration.filename}",
        )

    async def _forget(self, migration: Migration) -> None:
        await self._db.command(
            f"ALTER TABLE {LEDGER_TABLE} DELETE WHERE version = %(version)s",
            {"version": migration.version},
            operation=f"failed to remove migration record {migration.filename}",
        )

    async def _run_script(self, migration: Migration, script: str, action: str) -> None:
        for statement in split_statements(script):
            try:
                await self._db.command(
                    statement,
                    operation=f"failed to {action} migration {migration.filename}",
                )
            except EventStoreError as exc:
                raise MigrationError(f"{exc}\nStatement: {statement}") from exc

    async def up(self) -> list[Migration]:
        """
        Apply every pending migration in ascending version order.

        Returns:
            The migrations applied by this call (empty when up to date)
        """
        await self._ensure_ledger()
        applied = await self._applied_versions()

        newly_applied: list[Migration] = []
        for migration in self.migrations:
            if migration.version in applied:
                logger.debug("Skipping migration (already applied)", migration=migration.filename)
                continue
            if not migration.up_sql.strip():
                logger.info("Skipping migration (no up script)", migration=migration.filename)
                continue

            logger.info("Applying migration", migration=migration.filename)
            await self._run_script(migration, migration.up_sql, "apply")
            await self._record(migration)
            newly_applied.append(migration)
            logger.info("Applied migration", migration=migration.filename)

        return newly_applied

    async def down(self) -> Optional[Migration]:
        """
        Roll back the most recently applied migration.

        Returns:
            The rolled back migration, or None when nothing is applied

        Raises:
            MigrationError: If that migration has no down script
        """
        await self._ensure_ledger()
        applied = await self._applied_versions()

        last_applied = next(
            (m for m in reversed(self.migrations) if m.version in applied),
            None,
        )
        if last_applied is None:
            logger.info("No migrations to roll back")
            return None

        await self._rollback(last_applied)
        await asyncio.sleep(self._settle_seconds)
        return last_applied

    async def down_all(self) -> list[Migration]:
        """
        Roll back every applied migration, newest first.

        Nothing is rolled back if any applied migration lacks a down script.
        """
        await self._ensure_ledger()
        applied = await self._applied_versions()

        pending = [m for m in reversed(self.migrations) if m.version in applied]
        for migration in pending:
            if not migration.down_sql.strip():
                raise MigrationError(f"migration {migration.filename} has no down migration")

        rolled_back: list[Migration] = []
        for migration in pending:
            await self._rollback(migration)
            rolled_back.append(migration)

        await asyncio.sleep(self._settle_seconds)
        return rolled_back

    async def _rollback(self, migration: Migration) -> None:
        if not migration.down_sql.strip():
            raise MigrationError(f"migration {migration.filename} has no down migration")

        logger.info("Rolling back migration", migration=migration.filename)
        await self._run_script(migration, migration.down_sql, "roll back")
        await self._forget(migration)
        logger.info("Rolled back migration", migration=migration.filename)

    async def status(self) -> list[MigrationStatus]:
        """Report every discovered migration and whether it is applied."""
        applied = await self._applied_versions() if await self._ledger_exists() else set()
        return [
            MigrationStatus(
                version=migration.version,
                name=migration.name,
                applied=migration.version in applied,
            )
            for migration in self.migrations
        ]

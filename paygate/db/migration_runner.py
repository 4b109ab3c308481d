"""
Migration Runner - Applies pending Alembic migrations at application startup.

Runs over the application's own async engine, so no separate sync driver
is needed.
"""

from pathlib import Path

from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncEngine

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from paygate.observability.logging import get_logger

logger = get_logger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


def _alembic_config() -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("script_location", str(ALEMBIC_INI_PATH.parent / "alembic"))
    alembic_cfg.attributes["configure_logger"] = False
    return alembic_cfg


def _current_revision(connection: Connection) -> str | None:
    return MigrationContext.configure(connection).get_current_revision()


def _head_revision(alembic_cfg: Config) -> str | None:
    return ScriptDirectory.from_config(alembic_cfg).get_current_head()


async def run_migrations(engine: AsyncEngine) -> None:
    """
    Upgrade the database to the head revision if it is behind.

    Raises:
        RuntimeError: A migration failed
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    alembic_cfg = _alembic_config()
    head = _head_revision(alembic_cfg)

    def _upgrade(connection: Connection) -> None:
        alembic_cfg.attributes["connection"] = connection
        command.upgrade(alembic_cfg, "head")

    try:
        async with engine.begin() as conn:
            current = await conn.run_sync(_current_revision)
            if current == head:
                logger.info("database_schema_current", revision=current)
                return

            logger.info("database_migrating", from_revision=current, to_revision=head)
            await conn.run_sync(_upgrade)
    except Exception as e:
        logger.error("database_migration_failed", error=str(e))
        raise RuntimeError(f"Database migration failed: {e}") from e

    logger.info("database_migrated", revision=head)

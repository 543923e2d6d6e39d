"""
Schema migrations for the Typerush store.
Each migration is idempotent SQL recorded by name in the `migration` table.
"""

from sqlalchemy import DateTime
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, Field, text, Session, select
from typing import Optional
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)


class Migration(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    applied_at: datetime = Field(sa_type=DateTime(timezone=True))


MIGRATIONS = [
    (
        "001_leaderboard_indexes",
        """
        CREATE INDEX IF NOT EXISTS idx_gameresult_mode_score ON gameresult(game_mode, score);
        CREATE INDEX IF NOT EXISTS idx_gameresult_player ON gameresult(player_name)
        """,
    ),
    (
        "002_run_indexes",
        """
        CREATE INDEX IF NOT EXISTS idx_gamerun_expires_at ON gamerun(expires_at);
        CREATE INDEX IF NOT EXISTS idx_gamerun_cleanup ON gamerun(used_at, expires_at)
        """,
    ),
    (
        # tables created before the unique constraint existed need it for
        # compare-and-replace to be race free
        "003_unique_player_mode",
        """
        CREATE UNIQUE INDEX IF NOT EXISTS uq_gameresult_player_mode_idx ON gameresult(player_name, game_mode)
        """,
    ),
]


def ensure_migration_table(engine: Engine) -> None:
    Migration.metadata.create_all(engine, tables=[Migration.__table__])


def has_migration_been_applied(engine: Engine, migration_name: str) -> bool:
    ensure_migration_table(engine)
    with Session(engine) as session:
        result = session.exec(select(Migration).where(Migration.name == migration_name)).first()
        return result is not None


def apply_migration(engine: Engine, migration_name: str, migration_sql: str) -> bool:
    """Apply a migration and record it. Returns False if it was already applied."""
    if has_migration_been_applied(engine, migration_name):
        logger.info(f"Migration {migration_name} already applied, skipping")
        return False

    logger.info(f"Applying migration: {migration_name}")
    with Session(engine) as session:
        try:
            for statement in migration_sql.strip().split(';'):
                statement = statement.strip()
                if statement:
                    session.execute(text(statement))
            session.add(Migration(name=migration_name, applied_at=datetime.now(timezone.utc)))
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to apply migration {migration_name}: {e}")
            raise
    logger.info(f"Migration {migration_name} applied successfully")
    return True


def run_migrations(engine: Engine) -> int:
    """Run all pending migrations against `engine`; return how many were applied"""
    applied = 0
    for name, sql in MIGRATIONS:
        if apply_migration(engine, name, sql):
            applied += 1
    logger.info("All migrations completed")
    return applied


if __name__ == "__main__":
    from .config import database_url, database_timeout
    from .init_db import create_db_engine

    logging.basicConfig(level=logging.INFO)
    run_migrations(create_db_engine(database_url(), database_timeout()))

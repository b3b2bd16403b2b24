"""
Database migration utilities.
"""
import os

from sqlalchemy import text

from ..logging_config import logger
from ..models import Base


def run_sql_migrations(engine):
    """
    Run all SQL migration files in the scripts directory.

    Migration files should:
    - Be named with a sortable prefix (e.g., 001_indexes.sql)
    - End with .sql extension
    - Be idempotent (safe to run multiple times)
    """
    migrations_dir = os.path.join(os.path.dirname(__file__), "scripts")

    if not os.path.exists(migrations_dir):
        logger.warning("Migrations directory not found", path=migrations_dir)
        return

    migration_files = sorted(f for f in os.listdir(migrations_dir) if f.endswith(".sql"))
    if not migration_files:
        logger.info("No migration files found")
        return

    with engine.begin() as conn:
        for filename in migration_files:
            with open(os.path.join(migrations_dir, filename), "r", encoding="utf-8") as f:
                sql = f.read()
            logger.info("Running migration", file=filename)
            conn.execute(text(sql))

    logger.info("Executed SQL migrations", count=len(migration_files))


def run_migrations(engine=None):
    """Enable pgvector, create the ORM tables, then apply the SQL scripts."""
    if engine is None:
        from . import engine

    with engine.begin() as conn:
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
    Base.metadata.create_all(bind=engine)
    run_sql_migrations(engine)

"""
Database initialization script.
Creates all tables defined in models.
Run this ONCE before first use (main.py also calls init_db on startup).
"""

import logging
import sys

from sqlalchemy import inspect

from Database.base import Base, engine

logger = logging.getLogger(__name__)

REQUIRED_TABLES = [
    'agent_runs',
    'supervisor_checks',
    'data_quality_snapshots',
    'weekly_reports',
    'companies'
]


def check_tables_exist(bind=None) -> dict:
    """
    Check which tables currently exist in database.

    Returns:
        dict: Table existence status
    """
    inspector = inspect(bind or engine)
    existing_tables = inspector.get_table_names()

    status = {}
    for table in REQUIRED_TABLES:
        exists = table in existing_tables
        status[table] = exists
        logger.info(f"Table '{table}': {'✓ EXISTS' if exists else '✗ MISSING'}")

    return status


def init_db(bind=None) -> bool:
    """
    Create all tables from models.
    Safe to run multiple times (won't recreate existing tables).
    """
    # Importing the package registers every model with Base
    import Database  # noqa: F401

    bind = bind or engine
    logger.info("Creating database tables...")
    Base.metadata.create_all(bind=bind)

    status = check_tables_exist(bind)
    missing = [table for table, exists in status.items() if not exists]
    if missing:
        logger.error(f"✗ Tables still missing: {missing}")
        return False

    logger.info("✓ All required tables are present!")
    return True


def drop_all_tables(bind=None):
    """
    WARNING: Drops ALL tables (use only for testing/reset).
    """
    logger.warning("⚠️  Dropping all tables...")
    Base.metadata.drop_all(bind=bind or engine)
    logger.info("✓ All tables dropped")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    if len(sys.argv) > 1 and sys.argv[1] == "--drop":
        # Danger zone: drop all tables
        confirm = input("⚠️  This will DELETE ALL DATA. Type 'yes' to confirm: ")
        if confirm.lower() == 'yes':
            drop_all_tables()
        else:
            logger.info("Cancelled")
    elif len(sys.argv) > 1 and sys.argv[1] == "--check":
        logger.info("Checking database tables...\n")
        check_tables_exist()
    else:
        logger.info("Initializing database...\n")
        init_db()

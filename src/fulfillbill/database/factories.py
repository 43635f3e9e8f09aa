"""Database factory functions for creating database instances."""

import os
from pathlib import Path
from typing import Optional

from fulfillbill.database.sqlalchemy_db import SQLAlchemyDatabase


def create_sqlite_database(database_path: Optional[str] = None) -> SQLAlchemyDatabase:
    """Create a SQLite database instance.

    Args:
        database_path: Path to SQLite database file. If None, checks FULFILLBILL_DB_PATH
            environment variable, then defaults to ~/.fulfillbill/fulfillbill.db

    Returns:
        SQLAlchemyDatabase instance configured for SQLite
    """
    if database_path is None:
        database_path = os.environ.get("FULFILLBILL_DB_PATH")

    if database_path is None:
        db_dir = Path.home() / ".fulfillbill"
        db_dir.mkdir(exist_ok=True)
        database_path = str(db_dir / "fulfillbill.db")

    return SQLAlchemyDatabase(f"sqlite:///{database_path}")


def create_database(database_url: str) -> SQLAlchemyDatabase:
    """Create a database instance from any SQLAlchemy URL.

    Plain filesystem paths are treated as SQLite files.
    """
    if "://" not in database_url:
        return create_sqlite_database(database_url)
    return SQLAlchemyDatabase(database_url)

"""Database layer for fulfillbill application."""

from fulfillbill.database.base import Database
from fulfillbill.database.factories import create_database, create_sqlite_database

__all__ = ["Database", "create_database", "create_sqlite_database"]

"""
Database package for the spending category classifier.

This package provides:
- SQLAlchemy ORM models (mappings, store embeddings, expense records)
- Async connection and session management over aiosqlite
- CRUD operations used by the matching and learning layers

Quick start:
    from spendcat.database import DatabaseManager
    from spendcat.database.crud import insert_expense

    db = DatabaseManager("data/spendcat.db")
    await db.create_all_tables()

    async with db.session_scope() as session:
        await insert_expense(session, store_name="Blue Bottle", amount=5500)
"""

from .connection import DatabaseManager
from .models import (
    Base,
    CategoryMapping,
    StoreEmbedding,
    ExpenseRecord,
    MappingSource,
    UNCLASSIFIED,
)


async def create_test_db() -> DatabaseManager:
    """Create an in-memory DatabaseManager with all tables for testing."""
    db = DatabaseManager(db_path=":memory:")
    await db.create_all_tables()
    return db


__all__ = [
    "DatabaseManager",
    "create_test_db",
    "Base",
    "CategoryMapping",
    "StoreEmbedding",
    "ExpenseRecord",
    "MappingSource",
    "UNCLASSIFIED",
]

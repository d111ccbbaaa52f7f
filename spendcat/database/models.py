"""
SQLAlchemy ORM models for the spending category classifier.

This module defines the database schema including:
- Category mappings (store name -> category, with provenance)
- Store embeddings (vector memory with confidence and match counts)
- Expense records (the card/SMS transactions being classified)
"""

from datetime import datetime
from typing import Optional
import enum

import numpy as np
from sqlalchemy import (
    String,
    Integer,
    Float,
    DateTime,
    Text,
    LargeBinary,
    Index,
    CheckConstraint,
    Enum,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


UNCLASSIFIED = "Unclassified"


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class MappingSource(enum.Enum):
    """Provenance of a category assignment."""
    LOCAL = "local"
    USER = "user"
    VECTOR = "vector"
    ORACLE = "oracle"
    PROPAGATED = "propagated"


class VectorType(TypeDecorator):
    """Stores a float vector as raw float32 bytes."""

    impl = LargeBinary
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return np.asarray(value, dtype=np.float32).tobytes()

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return np.frombuffer(value, dtype=np.float32).tolist()


class CategoryMapping(Base):
    """
    Learned store name -> category mapping.

    One row per distinct store name. Rows written by a manual correction
    carry ``source=USER`` and are never replaced by automated writers.
    """
    __tablename__ = "category_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False, unique=True, index=True)
    category: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    source: Mapped[MappingSource] = mapped_column(Enum(MappingSource), nullable=False, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<CategoryMapping(name='{self.name}', category='{self.category}', source={self.source.value})>"


class StoreEmbedding(Base):
    """
    Embedding vector memory for store names.

    Confidence reflects how much the category can be trusted
    (1.0 for manual corrections). ``match_count`` is bumped every time the
    record decides a vector-tier classification.
    """
    __tablename__ = "store_embeddings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False, unique=True, index=True)
    category: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    vector: Mapped[list] = mapped_column(VectorType, nullable=False)
    source: Mapped[MappingSource] = mapped_column(Enum(MappingSource), nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.8)
    match_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="check_embedding_confidence"),
        CheckConstraint("match_count >= 0", name="check_match_count"),
        Index("idx_embedding_confidence", "confidence"),
    )

    def __repr__(self) -> str:
        return (
            f"<StoreEmbedding(name='{self.name}', category='{self.category}', "
            f"confidence={self.confidence}, match_count={self.match_count})>"
        )


class ExpenseRecord(Base):
    """
    A single spending transaction.

    Records whose category equals ``UNCLASSIFIED`` are the input of the bulk
    classification pipeline.
    """
    __tablename__ = "expense_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_name: Mapped[str] = mapped_column(String(500), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    category: Mapped[str] = mapped_column(String(100), nullable=False, default=UNCLASSIFIED, index=True)
    original_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<ExpenseRecord(id={self.id}, store_name='{self.store_name}', category='{self.category}')>"

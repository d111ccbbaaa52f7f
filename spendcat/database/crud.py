"""
CRUD operations for the spending classifier database.

Provides async database operations for:
- Category mappings (exact / partial lookup, protected upserts)
- Store embeddings (vector memory, match counts, guarded category updates)
- Expense records (unclassified scan, bulk category updates)
"""

from typing import Optional, List, Dict, Iterable, Sequence, Tuple, Any
from sqlalchemy import select, func, or_, update, delete, literal
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    CategoryMapping,
    StoreEmbedding,
    ExpenseRecord,
    MappingSource,
    UNCLASSIFIED,
)


# ============================================================================
# CATEGORY MAPPING CRUD OPERATIONS
# ============================================================================

async def get_mapping_exact(session: AsyncSession, name: str) -> Optional[CategoryMapping]:
    """
    Retrieve a mapping by exact store name.

    Args:
        session: Database session
        name: Store name

    Returns:
        CategoryMapping or None if not found
    """
    result = await session.execute(
        select(CategoryMapping).where(CategoryMapping.name == name)
    )
    return result.scalar_one_or_none()


async def get_mapping_partial(session: AsyncSession, name: str) -> Optional[CategoryMapping]:
    """
    Retrieve a mapping whose stored name contains, or is contained in, ``name``.

    When several stored names qualify, the longest one wins.

    Args:
        session: Database session
        name: Store name

    Returns:
        CategoryMapping or None if nothing overlaps
    """
    if not name:
        return None
    query_name = literal(name)
    result = await session.execute(
        select(CategoryMapping)
        .where(
            or_(
                func.instr(query_name, CategoryMapping.name) > 0,
                func.instr(CategoryMapping.name, query_name) > 0,
            )
        )
        .order_by(func.length(CategoryMapping.name).desc(), CategoryMapping.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def upsert_mappings(
    session: AsyncSession,
    entries: Iterable[Tuple[str, str]],
    source: MappingSource,
) -> int:
    """
    Insert or replace mappings for a batch of (name, category) pairs.

    Existing USER mappings are only replaced by another USER write.

    Args:
        session: Database session
        entries: (name, category) pairs; later duplicates win
        source: Provenance written with every entry

    Returns:
        Number of rows inserted or updated
    """
    latest: Dict[str, str] = {}
    for name, category in entries:
        if name:
            latest[name] = category
    if not latest:
        return 0

    result = await session.execute(
        select(CategoryMapping).where(CategoryMapping.name.in_(list(latest)))
    )
    existing = {m.name: m for m in result.scalars()}

    written = 0
    for name, category in latest.items():
        mapping = existing.get(name)
        if mapping is None:
            session.add(CategoryMapping(name=name, category=category, source=source))
            written += 1
        elif mapping.source == MappingSource.USER and source != MappingSource.USER:
            continue
        else:
            mapping.category = category
            mapping.source = source
            written += 1

    await session.flush()
    return written


async def upsert_mapping(
    session: AsyncSession,
    name: str,
    category: str,
    source: MappingSource,
) -> bool:
    """Insert or replace a single mapping. Returns False if a USER row blocked it."""
    return await upsert_mappings(session, [(name, category)], source) > 0


async def get_all_mappings(session: AsyncSession) -> List[CategoryMapping]:
    """Retrieve every stored mapping."""
    result = await session.execute(select(CategoryMapping).order_by(CategoryMapping.id))
    return list(result.scalars())


async def count_mappings_by_source(session: AsyncSession) -> Dict[str, int]:
    """Count mappings grouped by source value."""
    result = await session.execute(
        select(CategoryMapping.source, func.count(CategoryMapping.id))
        .group_by(CategoryMapping.source)
    )
    return {source.value: count for source, count in result.all()}


async def delete_all_mappings(session: AsyncSession) -> int:
    result = await session.execute(delete(CategoryMapping))
    return result.rowcount or 0


# ============================================================================
# STORE EMBEDDING CRUD OPERATIONS
# ============================================================================

async def get_all_embeddings(session: AsyncSession) -> List[StoreEmbedding]:
    """Retrieve every stored embedding, ordered by id."""
    result = await session.execute(select(StoreEmbedding).order_by(StoreEmbedding.id))
    return list(result.scalars())


async def get_embedding_by_name(session: AsyncSession, name: str) -> Optional[StoreEmbedding]:
    result = await session.execute(
        select(StoreEmbedding).where(StoreEmbedding.name == name)
    )
    return result.scalar_one_or_none()


async def get_embeddings_below_confidence(
    session: AsyncSession, threshold: float
) -> List[StoreEmbedding]:
    """
    Retrieve embeddings whose confidence is strictly below ``threshold``.

    Args:
        session: Database session
        threshold: Confidence cut-off

    Returns:
        Matching StoreEmbedding rows
    """
    result = await session.execute(
        select(StoreEmbedding)
        .where(StoreEmbedding.confidence < threshold)
        .order_by(StoreEmbedding.id)
    )
    return list(result.scalars())


async def upsert_embeddings(
    session: AsyncSession,
    records: Sequence[Dict[str, Any]],
) -> int:
    """
    Insert or replace embeddings keyed by name.

    A replaced row takes every field from the new record, so its
    ``match_count`` restarts at zero. Existing USER rows are only replaced
    by another USER record.

    Args:
        session: Database session
        records: Dicts with name, category, vector, source, confidence

    Returns:
        Number of rows written
    """
    if not records:
        return 0

    names = [r["name"] for r in records]
    result = await session.execute(
        select(StoreEmbedding).where(StoreEmbedding.name.in_(names))
    )
    existing = {e.name: e for e in result.scalars()}

    written = 0
    for record in records:
        row = existing.get(record["name"])
        if row is not None and row.source == MappingSource.USER and record["source"] != MappingSource.USER:
            continue
        if row is None:
            row = StoreEmbedding(name=record["name"])
            session.add(row)
            existing[record["name"]] = row
        row.category = record["category"]
        row.vector = list(record["vector"])
        row.source = record["source"]
        row.confidence = record["confidence"]
        row.match_count = 0
        written += 1

    await session.flush()
    return written


async def increment_match_counts(session: AsyncSession, embedding_ids: Iterable[int]) -> None:
    """Add one to ``match_count`` of every listed embedding."""
    ids = list(embedding_ids)
    if not ids:
        return
    await session.execute(
        update(StoreEmbedding)
        .where(StoreEmbedding.id.in_(ids))
        .values(match_count=StoreEmbedding.match_count + 1)
    )


async def update_embedding_category(
    session: AsyncSession,
    name: str,
    category: str,
    source: MappingSource,
    confidence: Optional[float] = None,
) -> int:
    """
    Update category and source of the embedding stored under ``name``.

    Returns:
        Number of rows updated (0 or 1)
    """
    values: Dict[str, Any] = {"category": category, "source": source}
    if confidence is not None:
        values["confidence"] = confidence
    result = await session.execute(
        update(StoreEmbedding).where(StoreEmbedding.name == name).values(**values)
    )
    return result.rowcount or 0


async def update_embedding_category_if_not_user(
    session: AsyncSession,
    embedding_id: int,
    category: str,
    source: MappingSource,
) -> bool:
    """
    Update an embedding's category unless it was set by the user.

    The source check happens inside the UPDATE statement, so a concurrent
    manual correction is never overwritten.

    Returns:
        True if the row was updated
    """
    result = await session.execute(
        update(StoreEmbedding)
        .where(StoreEmbedding.id == embedding_id)
        .where(StoreEmbedding.source != MappingSource.USER)
        .values(category=category, source=source)
    )
    return (result.rowcount or 0) > 0


async def count_embeddings(session: AsyncSession) -> int:
    result = await session.execute(select(func.count(StoreEmbedding.id)))
    return result.scalar_one()


async def delete_all_embeddings(session: AsyncSession) -> int:
    result = await session.execute(delete(StoreEmbedding))
    return result.rowcount or 0


# ============================================================================
# EXPENSE RECORD CRUD OPERATIONS
# ============================================================================

async def insert_expense(
    session: AsyncSession,
    store_name: str,
    amount: int = 0,
    category: str = UNCLASSIFIED,
    original_text: Optional[str] = None,
) -> ExpenseRecord:
    """
    Insert a new expense record.

    Args:
        session: Database session
        store_name: Merchant name as it appears on the transaction
        amount: Amount in minor currency units
        category: Initial category (defaults to unclassified)
        original_text: Raw notification text (optional)

    Returns:
        Created ExpenseRecord instance
    """
    record = ExpenseRecord(
        store_name=store_name,
        amount=amount,
        category=category,
        original_text=original_text,
    )
    session.add(record)
    await session.flush()
    return record


async def get_unclassified_name_totals(
    session: AsyncSession, limit: Optional[int] = None
) -> List[Tuple[str, int]]:
    """
    Distinct unclassified store names with their summed amounts.

    Args:
        session: Database session
        limit: Keep only the top ``limit`` names by total amount

    Returns:
        (store_name, total_amount) pairs, largest total first
    """
    total = func.sum(ExpenseRecord.amount).label("total")
    query = (
        select(ExpenseRecord.store_name, total)
        .where(ExpenseRecord.category == UNCLASSIFIED)
        .group_by(ExpenseRecord.store_name)
        .order_by(total.desc(), ExpenseRecord.store_name)
    )
    if limit is not None:
        query = query.limit(limit)
    result = await session.execute(query)
    return [(name, int(amount or 0)) for name, amount in result.all()]


async def count_unclassified(session: AsyncSession) -> int:
    """Count expense records still flagged unclassified."""
    result = await session.execute(
        select(func.count(ExpenseRecord.id)).where(ExpenseRecord.category == UNCLASSIFIED)
    )
    return result.scalar_one()


async def update_expense_category_by_store_name(
    session: AsyncSession,
    store_name: str,
    category: str,
    only_unclassified: bool = False,
) -> int:
    """
    Set the category of every expense with the given store name.

    Args:
        session: Database session
        store_name: Exact store name
        category: New category
        only_unclassified: Restrict the update to records still unclassified

    Returns:
        Number of records updated
    """
    stmt = update(ExpenseRecord).where(ExpenseRecord.store_name == store_name)
    if only_unclassified:
        stmt = stmt.where(ExpenseRecord.category == UNCLASSIFIED)
    result = await session.execute(stmt.values(category=category))
    return result.rowcount or 0


async def update_expense_category_by_id(
    session: AsyncSession, expense_id: int, category: str
) -> bool:
    result = await session.execute(
        update(ExpenseRecord).where(ExpenseRecord.id == expense_id).values(category=category)
    )
    return (result.rowcount or 0) > 0

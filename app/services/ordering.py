"""Dense 1..N positions for sibling rows (chapters, audio chapters, parts).

Ordered models declare the name of their parent column in
``__order_parent__``. Nothing here commits: callers own the transaction, so
a rejected reorder leaves the session exactly as it found it.
"""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import OrderingError

logger = logging.getLogger(__name__)


def is_dense(orders: Iterable[int]) -> bool:
    values = sorted(orders)
    return values == list(range(1, len(values) + 1))


def check_sequential_insert(existing: Iterable[int], proposed: int) -> Optional[str]:
    current_max = max(existing, default=0)
    if proposed != current_max + 1:
        return (
            f"The next position must be {current_max + 1}. "
            "You cannot skip or reuse positions."
        )
    return None


def check_sequential_update(existing: Dict[int, int], child_id: int, proposed: int) -> Optional[str]:
    """``existing`` maps sibling id to its current order."""
    if proposed < 1:
        return "Order must be a positive integer."
    resulting = dict(existing)
    resulting[child_id] = proposed
    if not is_dense(resulting.values()):
        return "Orders must be sequential without gaps or duplicates. Use reorder to move items."
    return None


def check_permutation(current_ids: Iterable[int], proposed_ids: Sequence[int]) -> Optional[str]:
    current = set(current_ids)
    if len(proposed_ids) != len(set(proposed_ids)):
        return "Duplicate ids in reorder request."
    if len(proposed_ids) != len(current):
        return f"Reorder must list all {len(current)} items exactly once."
    foreign = [i for i in proposed_ids if i not in current]
    if foreign:
        return f"Ids {foreign} do not belong to this parent."
    return None


def _parent_col(model):
    return getattr(model, model.__order_parent__)


async def sibling_orders(db: AsyncSession, model, parent_id: int) -> Dict[int, int]:
    rows = await db.execute(select(model.id, model.order).where(_parent_col(model) == parent_id))
    return {cid: order for cid, order in rows.all()}


async def next_order(db: AsyncSession, model, parent_id: int) -> int:
    # always append after the current max; gaps are never backfilled
    current_max = await db.scalar(
        select(func.max(model.order)).where(_parent_col(model) == parent_id)
    )
    return (current_max or 0) + 1


async def assign_order(db: AsyncSession, model, parent_id: int, proposed: Optional[int] = None) -> int:
    """Order for a new child: auto-append, or validate an explicit value."""
    if proposed is None:
        return await next_order(db, model, parent_id)
    existing = (await sibling_orders(db, model, parent_id)).values()
    reason = check_sequential_insert(existing, proposed)
    if reason:
        raise OrderingError(reason, errors=[{"field": "order", "message": reason}])
    return proposed


async def validate_update(db: AsyncSession, model, parent_id: int, child_id: int, proposed: int) -> None:
    existing = await sibling_orders(db, model, parent_id)
    reason = check_sequential_update(existing, child_id, proposed)
    if reason:
        raise OrderingError(reason, errors=[{"field": "order", "message": reason}])


async def _rewrite(db: AsyncSession, model, ordered_ids: Sequence[int]) -> None:
    # park every row on a negative slot first so the (parent, order)
    # unique constraint never sees two rows on the same position
    for idx, cid in enumerate(ordered_ids):
        await db.execute(
            update(model).where(model.id == cid).values(order=-(idx + 1))
            .execution_options(synchronize_session=False)
        )
    for idx, cid in enumerate(ordered_ids):
        await db.execute(
            update(model).where(model.id == cid).values(order=idx + 1)
            .execution_options(synchronize_session=False)
        )


async def list_children(db: AsyncSession, model, parent_id: int, *, refresh: bool = False) -> List:
    stmt = select(model).where(_parent_col(model) == parent_id).order_by(model.order.asc(), model.id.asc())
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    return list((await db.execute(stmt)).scalars().all())


async def reorder_all(db: AsyncSession, model, parent_id: int, ordered_ids: Sequence[int]) -> List:
    """Give element i of ``ordered_ids`` position i+1.

    The id list must be an exact permutation of the parent's children; it is
    checked before any row is written.
    """
    ordered_ids = [int(i) for i in ordered_ids]
    current = await sibling_orders(db, model, parent_id)
    reason = check_permutation(current.keys(), ordered_ids)
    if reason:
        logger.warning("Rejected reorder of %s under %s=%s: %s",
                       model.__tablename__, model.__order_parent__, parent_id, reason)
        raise OrderingError(reason)
    await _rewrite(db, model, ordered_ids)
    return await list_children(db, model, parent_id, refresh=True)


async def close_gap(db: AsyncSession, model, parent_id: int) -> None:
    """Renumber the remaining children 1..N after one was removed."""
    await db.flush()
    rows = await db.execute(
        select(model.id, model.order).where(_parent_col(model) == parent_id)
        .order_by(model.order.asc(), model.id.asc())
    )
    pairs = rows.all()
    if is_dense(order for _, order in pairs):
        return
    await _rewrite(db, model, [cid for cid, _ in pairs])


__all__ = [
    "is_dense", "check_sequential_insert", "check_sequential_update", "check_permutation",
    "sibling_orders", "next_order", "assign_order", "validate_update",
    "reorder_all", "close_gap", "list_children",
]

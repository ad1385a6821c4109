from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import ConflictError, ValidationError
from app.models import (
    Audio, Book, Category, SubCategory, audio_sub_categories, book_sub_categories,
)

logger = logging.getLogger(__name__)


def check_linkage(category_id: Optional[int], sub_categories: Sequence[SubCategory]) -> Optional[str]:
    for sub in sub_categories:
        if not sub.is_active:
            return f"Subcategory '{sub.name}' is not active"
        if category_id is not None and sub.category_id != category_id:
            return f"Subcategory '{sub.name}' does not belong to the selected category"
    if category_id is None and len({s.category_id for s in sub_categories}) > 1:
        return "Subcategories must all belong to the same category"
    return None


async def validate_assignment(
    db: AsyncSession,
    category_id: Optional[int],
    sub_category_ids: Sequence[int] = (),
) -> Tuple[Optional[Category], List[SubCategory]]:
    """Resolve and check the category and subcategory ids a content item asserts.

    Without an explicit category, the subcategories' shared parent is used.
    """
    category = None
    if category_id is not None:
        category = await db.get(Category, category_id)
        if category is None or not category.is_active:
            raise ValidationError(
                "Invalid category",
                errors=[{"field": "category_id", "message": "category does not exist or is inactive"}],
            )

    ids = list(dict.fromkeys(int(i) for i in sub_category_ids))
    subs: List[SubCategory] = []
    if ids:
        subs = list((await db.execute(select(SubCategory).where(SubCategory.id.in_(ids)))).scalars().all())
        missing = sorted(set(ids) - {s.id for s in subs})
        if missing:
            raise ValidationError(
                "Invalid subcategory",
                errors=[{"field": "sub_category_ids", "message": f"unknown subcategories {missing}"}],
            )
        by_id = {s.id: s for s in subs}
        subs = [by_id[i] for i in ids]

    reason = check_linkage(category_id, subs)
    if reason:
        raise ValidationError(reason, errors=[{"field": "sub_category_ids", "message": reason}])

    if category is None and subs:
        category = await db.get(Category, subs[0].category_id)
        if category is None or not category.is_active:
            raise ValidationError("Subcategory belongs to an inactive category")
    return category, subs


async def ensure_unique_category_name(db: AsyncSession, name: str, *, exclude_id: Optional[int] = None) -> None:
    stmt = select(Category.id).where(func.lower(Category.name) == name.strip().lower())
    if exclude_id is not None:
        stmt = stmt.where(Category.id != exclude_id)
    if (await db.execute(stmt)).first():
        raise ConflictError("Category with this name already exists")


async def ensure_unique_subcategory_name(db: AsyncSession, category_id: int, name: str, *,
                                         exclude_id: Optional[int] = None) -> None:
    stmt = select(SubCategory.id).where(
        SubCategory.category_id == category_id,
        func.lower(SubCategory.name) == name.strip().lower(),
    )
    if exclude_id is not None:
        stmt = stmt.where(SubCategory.id != exclude_id)
    if (await db.execute(stmt)).first():
        raise ConflictError("Subcategory with this name already exists in this category")


async def subcategory_usage(db: AsyncSession, sub_category_ids: Sequence[int]) -> int:
    if not sub_category_ids:
        return 0
    books = await db.scalar(
        select(func.count()).select_from(book_sub_categories)
        .where(book_sub_categories.c.sub_category_id.in_(sub_category_ids))
    )
    audio = await db.scalar(
        select(func.count()).select_from(audio_sub_categories)
        .where(audio_sub_categories.c.sub_category_id.in_(sub_category_ids))
    )
    return (books or 0) + (audio or 0)


async def category_usage(db: AsyncSession, category_id: int) -> int:
    sub_ids = list((await db.execute(
        select(SubCategory.id).where(SubCategory.category_id == category_id)
    )).scalars().all())
    books = await db.scalar(select(func.count(Book.id)).where(Book.category_id == category_id))
    audio = await db.scalar(select(func.count(Audio.id)).where(Audio.category_id == category_id))
    return (books or 0) + (audio or 0) + await subcategory_usage(db, sub_ids)


async def can_delete_category(db: AsyncSession, category_id: int) -> bool:
    return await category_usage(db, category_id) == 0


async def can_delete_subcategory(db: AsyncSession, sub_category_id: int) -> bool:
    return await subcategory_usage(db, [sub_category_id]) == 0


__all__ = [
    "check_linkage", "validate_assignment",
    "ensure_unique_category_name", "ensure_unique_subcategory_name",
    "category_usage", "subcategory_usage", "can_delete_category", "can_delete_subcategory",
]

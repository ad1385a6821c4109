from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.errors import NotFoundError, ValidationError
from app.models import Category, Role, SubCategory, User
from app.routes_shared import api_success
from app.schemas import (
    CategoryCreate, CategoryRead, CategoryUpdate, SubCategoryCreate, SubCategoryRead, SubCategoryUpdate,
)
from app.services import taxonomy
from app.services.access_control import TAXONOMY, Operation, ensure_allowed
from app.utils import get_current_user, require_authenticated_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/categories", tags=["categories"])


def _dump(category: Category, *, active_only: bool = False) -> dict:
    data = CategoryRead.model_validate(category).model_dump()
    if active_only:
        data["sub_categories"] = [s for s in data["sub_categories"] if s["is_active"]]
    return data


async def _load_category(db: AsyncSession, category_id: int) -> Category:
    category = await db.get(Category, category_id)
    if not category:
        raise NotFoundError("Category not found")
    return category


async def _load_subcategory(db: AsyncSession, sub_category_id: int) -> SubCategory:
    sub = await db.get(SubCategory, sub_category_id)
    if not sub:
        raise NotFoundError("Subcategory not found")
    return sub


@router.get("")
async def list_categories(db: AsyncSession = Depends(get_db)):
    rows = (await db.execute(
        select(Category).where(Category.is_active.is_(True)).order_by(Category.sort_order.asc(), Category.name.asc())
    )).scalars().all()
    return api_success([_dump(c, active_only=True) for c in rows], "Categories retrieved successfully")


@router.get("/{category_id}")
async def get_category(category_id: int, user: Optional[User] = Depends(get_current_user),
                       db: AsyncSession = Depends(get_db)):
    category = await _load_category(db, category_id)
    is_admin = getattr(user, "role", None) == Role.ADMIN
    if not category.is_active and not is_admin:
        raise NotFoundError("Category not found")
    return api_success(_dump(category, active_only=not is_admin), "Category retrieved successfully")


@router.post("", status_code=201)
async def create_category(payload: CategoryCreate, user: User = Depends(require_authenticated_user),
                          db: AsyncSession = Depends(get_db)):
    ensure_allowed(user, TAXONOMY, Operation.CREATE)
    name = payload.name.strip()
    await taxonomy.ensure_unique_category_name(db, name)
    category = Category(
        name=name,
        description=payload.description,
        image=payload.image,
        color=payload.color,
        sort_order=payload.sort_order,
        is_active=payload.is_active,
        sub_categories=[],
    )
    db.add(category)
    await db.commit()
    logger.info("Category %s (%s) created by admin %s", category.id, name, user.id)
    return api_success(_dump(category), "Category created successfully", status_code=201)


@router.put("/{category_id}")
async def update_category(category_id: int, payload: CategoryUpdate,
                          user: User = Depends(require_authenticated_user),
                          db: AsyncSession = Depends(get_db)):
    ensure_allowed(user, TAXONOMY, Operation.UPDATE)
    category = await _load_category(db, category_id)
    if payload.name is not None:
        name = payload.name.strip()
        await taxonomy.ensure_unique_category_name(db, name, exclude_id=category.id)
        category.name = name
    for field in ("description", "image", "color", "sort_order", "is_active"):
        value = getattr(payload, field)
        if value is not None:
            setattr(category, field, value)
    await db.commit()
    return api_success(_dump(category), "Category updated successfully")


@router.delete("/{category_id}")
async def delete_category(category_id: int, user: User = Depends(require_authenticated_user),
                          db: AsyncSession = Depends(get_db)):
    ensure_allowed(user, TAXONOMY, Operation.DELETE)
    category = await _load_category(db, category_id)
    usage = await taxonomy.category_usage(db, category.id)
    if usage:
        raise ValidationError(f"Cannot delete category: it is used by {usage} content item(s)")
    await db.delete(category)
    await db.commit()
    logger.info("Category %s deleted by admin %s", category_id, user.id)
    return api_success(message="Category deleted successfully")


# ----------------------
# Subcategories
# ----------------------
@router.post("/subcategories", status_code=201)
async def create_subcategory(payload: SubCategoryCreate, user: User = Depends(require_authenticated_user),
                             db: AsyncSession = Depends(get_db)):
    ensure_allowed(user, TAXONOMY, Operation.CREATE)
    category = await _load_category(db, payload.category_id)
    name = payload.name.strip()
    await taxonomy.ensure_unique_subcategory_name(db, category.id, name)
    sub = SubCategory(
        category=category,
        name=name,
        description=payload.description,
        sort_order=payload.sort_order,
        is_active=payload.is_active,
    )
    db.add(sub)
    await db.commit()
    logger.info("Subcategory %s created under category %s", sub.id, category.id)
    return api_success(SubCategoryRead.model_validate(sub).model_dump(), "Subcategory created successfully",
                       status_code=201)


@router.put("/subcategories/{sub_category_id}")
async def update_subcategory(sub_category_id: int, payload: SubCategoryUpdate,
                             user: User = Depends(require_authenticated_user),
                             db: AsyncSession = Depends(get_db)):
    ensure_allowed(user, TAXONOMY, Operation.UPDATE)
    sub = await _load_subcategory(db, sub_category_id)
    if payload.name is not None:
        name = payload.name.strip()
        await taxonomy.ensure_unique_subcategory_name(db, sub.category_id, name, exclude_id=sub.id)
        sub.name = name
    for field in ("description", "sort_order", "is_active"):
        value = getattr(payload, field)
        if value is not None:
            setattr(sub, field, value)
    await db.commit()
    return api_success(SubCategoryRead.model_validate(sub).model_dump(), "Subcategory updated successfully")


@router.delete("/subcategories/{sub_category_id}")
async def delete_subcategory(sub_category_id: int, user: User = Depends(require_authenticated_user),
                             db: AsyncSession = Depends(get_db)):
    ensure_allowed(user, TAXONOMY, Operation.DELETE)
    sub = await _load_subcategory(db, sub_category_id)
    if not await taxonomy.can_delete_subcategory(db, sub.id):
        raise ValidationError("Cannot delete subcategory: it is assigned to existing content")
    await db.delete(sub)
    await db.commit()
    logger.info("Subcategory %s deleted by admin %s", sub_category_id, user.id)
    return api_success(message="Subcategory deleted successfully")

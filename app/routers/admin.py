from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.blobstore import BlobStore
from app.database import get_db
from app.errors import ConflictError, NotFoundError, ValidationError
from app.models import Audio, AudioChapter, AudioPart, Book, Role, User
from app.routes_shared import api_paginated, api_success, paginate
from app.routers.loaders import get_blob_store
from app.schemas import AdminUserUpdate, AudioRead, BookRead, UserBrief, UserRead
from app.services.access_control import Operation, Resource, ensure_allowed
from app.services.segments import AUDIO_KIND, schedule_destroy
from app.utils import require_admin_user, search_clause

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])

SORTABLE = {
    "created_at": User.created_at,
    "updated_at": User.updated_at,
    "last_login": User.last_login,
    "email": User.email,
    "first_name": User.first_name,
    "last_name": User.last_name,
    "role": User.role,
}

STATUS_FILTERS = {
    "active": User.is_active.is_(True),
    "inactive": User.is_active.is_(False),
    "verified": User.is_verified.is_(True),
    "unverified": User.is_verified.is_(False),
}


async def _load_user(db: AsyncSession, user_id: int) -> User:
    user = await db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


@router.get("/users")
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = None,
    role: Optional[Role] = None,
    status: Optional[str] = None,
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc"),
    admin: User = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(User)
    clause = search_clause([User.first_name, User.last_name, User.email, User.phone], search)
    if clause is not None:
        stmt = stmt.where(clause)
    if role is not None:
        stmt = stmt.where(User.role == role)
    if status:
        if status not in STATUS_FILTERS:
            raise ValidationError(
                "Invalid status filter",
                errors=[{"field": "status", "message": f"must be one of {sorted(STATUS_FILTERS)}"}],
            )
        stmt = stmt.where(STATUS_FILTERS[status])

    column = SORTABLE.get(sort_by)
    if column is None:
        raise ValidationError("Invalid sort field", errors=[{"field": "sort_by", "message": "unsupported"}])
    stmt = stmt.order_by(column.asc() if sort_order.lower() == "asc" else column.desc(), User.id.asc())

    rows, total = await paginate(db, stmt, page, limit)
    return api_paginated([UserBrief.model_validate(u).model_dump() for u in rows],
                         page=page, limit=limit, total=total, message="Users retrieved successfully")


@router.get("/users/stats")
async def user_stats(admin: User = Depends(require_admin_user), db: AsyncSession = Depends(get_db)):
    by_role = dict((await db.execute(select(User.role, func.count(User.id)).group_by(User.role))).all())
    data = {
        "total_users": await db.scalar(select(func.count(User.id))) or 0,
        "active_users": await db.scalar(select(func.count(User.id)).where(User.is_active.is_(True))) or 0,
        "verified_users": await db.scalar(select(func.count(User.id)).where(User.is_verified.is_(True))) or 0,
        "by_role": {r.value: by_role.get(r, 0) for r in Role},
    }
    return api_success(data, "User statistics retrieved successfully")


@router.get("/users/{user_id}")
async def get_user(user_id: int, admin: User = Depends(require_admin_user), db: AsyncSession = Depends(get_db)):
    user = await _load_user(db, user_id)
    data = UserRead.model_validate(user).model_dump()
    data["counts"] = {
        "books": await db.scalar(select(func.count(Book.id)).where(Book.owner_id == user.id)) or 0,
        "audio": await db.scalar(select(func.count(Audio.id)).where(Audio.owner_id == user.id)) or 0,
    }
    return api_success(data, "User retrieved successfully")


@router.put("/users/{user_id}")
async def update_user(user_id: int, payload: AdminUserUpdate, admin: User = Depends(require_admin_user),
                      db: AsyncSession = Depends(get_db)):
    user = await _load_user(db, user_id)
    changes = payload.model_dump(exclude_unset=True)
    ensure_allowed(admin, Resource.user(user), Operation.UPDATE, changes)

    if "role" in changes and changes["role"] is None:
        raise ValidationError("Invalid role", errors=[{"field": "role", "message": "role cannot be empty"}])
    if changes.get("email") and changes["email"].lower() != user.email.lower():
        taken = await db.scalar(select(User.id).where(func.lower(User.email) == changes["email"].lower()))
        if taken:
            raise ConflictError("Email is already in use by another account")
        changes["email"] = changes["email"].lower()
    if changes.get("phone") and changes["phone"] != user.phone:
        taken = await db.scalar(select(User.id).where(User.phone == changes["phone"], User.id != user.id))
        if taken:
            raise ConflictError("Phone number is already in use by another account")

    for field, value in changes.items():
        if field in ("is_active", "is_verified") and value is None:
            continue
        setattr(user, field, value)
    user.is_superuser = user.role == Role.ADMIN
    await db.commit()
    logger.info("Admin %s updated user %s (%s)", admin.id, user.id, ", ".join(sorted(changes)) or "no changes")
    return api_success(UserRead.model_validate(user).model_dump(), "User updated successfully")


async def _owned_blobs(db: AsyncSession, user_id: int) -> List[Tuple[str, str]]:
    blobs: List[Tuple[str, str]] = []
    for cover, file_id in (await db.execute(
        select(Book.cover_image_public_id, Book.file_public_id).where(Book.owner_id == user_id)
    )).all():
        if cover:
            blobs.append((cover, "image"))
        if file_id:
            blobs.append((file_id, "raw"))
    for primary, seg_ids in (await db.execute(
        select(Audio.public_id, Audio.segment_public_ids).where(Audio.owner_id == user_id)
    )).all():
        blobs.extend((pid, AUDIO_KIND) for pid in [primary, *(seg_ids or [])] if pid)
    part_ids = (await db.execute(
        select(AudioPart.public_id)
        .join(AudioChapter, AudioPart.chapter_id == AudioChapter.id)
        .join(Audio, AudioChapter.audio_id == Audio.id)
        .where(Audio.owner_id == user_id, AudioPart.public_id.is_not(None))
    )).scalars().all()
    blobs.extend((pid, AUDIO_KIND) for pid in part_ids)
    return list(dict.fromkeys(blobs))


@router.delete("/users/{user_id}")
async def delete_user(user_id: int, admin: User = Depends(require_admin_user),
                      store: BlobStore = Depends(get_blob_store), db: AsyncSession = Depends(get_db)):
    user = await _load_user(db, user_id)
    ensure_allowed(admin, Resource.user(user), Operation.DELETE)
    blobs = await _owned_blobs(db, user.id)

    await db.delete(user)
    await db.commit()
    for public_id, kind in blobs:
        schedule_destroy(store, public_id, resource_kind=kind)
    logger.info("Admin %s deleted user %s (%d blobs queued for removal)", admin.id, user_id, len(blobs))
    return api_success(message="User deleted successfully")


@router.get("/users/{user_id}/content")
async def user_content(user_id: int, type: str = Query("all"), admin: User = Depends(require_admin_user),
                       db: AsyncSession = Depends(get_db)):
    if type not in ("all", "books", "audio"):
        raise ValidationError("Invalid content type", errors=[{"field": "type", "message": "all, books or audio"}])
    user = await _load_user(db, user_id)
    data = {"user": {"id": user.id, "first_name": user.first_name, "last_name": user.last_name}}
    if type in ("all", "books"):
        books = (await db.execute(
            select(Book).where(Book.owner_id == user.id).order_by(Book.created_at.desc())
        )).scalars().all()
        data["books"] = [BookRead.model_validate(b).model_dump() for b in books]
    if type in ("all", "audio"):
        audio = (await db.execute(
            select(Audio).where(Audio.owner_id == user.id).order_by(Audio.created_at.desc())
        )).scalars().all()
        data["audio"] = [AudioRead.model_validate(a).model_dump() for a in audio]
    return api_success(data, "User content retrieved successfully")

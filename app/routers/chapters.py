from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.errors import ConflictError
from app.models import Chapter, ContentStatus, Role, User
from app.routes_shared import api_success
from app.routers.loaders import book_child_resource, load_book, load_chapter
from app.schemas import ChapterCreate, ChapterRead, ChapterUpdate, ReorderRequest
from app.services import lifecycle, ordering
from app.services.access_control import Operation, Resource, authorize, ensure_allowed
from app.utils import get_current_user, reading_time, require_authenticated_user, word_count

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["chapters"])


def _dump(chapter: Chapter) -> dict:
    return ChapterRead.model_validate(chapter).model_dump()


def _count_words(chapter: Chapter) -> None:
    chapter.word_count = word_count(chapter.content)
    chapter.reading_time = reading_time(chapter.word_count)


@router.get("/books/{book_id}/chapters")
async def list_chapters(book_id: int, include_unpublished: bool = Query(False),
                        user: Optional[User] = Depends(get_current_user),
                        db: AsyncSession = Depends(get_db)):
    book = await load_book(db, book_id)
    parent = await book_child_resource(db, book)
    ensure_allowed(user, Resource.content(book, contributor_ids=parent.contributor_ids), Operation.READ,
                   not_found="Book not found")

    stmt = select(Chapter).where(Chapter.book_id == book.id).order_by(Chapter.order.asc())
    # drafts are listed only for people who could also edit the book's chapters
    can_edit = user is not None and authorize(user, parent, Operation.UPDATE).allowed
    sees_all = include_unpublished and (can_edit or getattr(user, "role", None) == Role.ADMIN)
    if not sees_all:
        stmt = stmt.where(Chapter.status == ContentStatus.PUBLISHED)
    rows = (await db.execute(stmt)).scalars().all()
    return api_success([_dump(c) for c in rows], "Chapters retrieved successfully")


@router.get("/chapters/{chapter_id}")
async def get_chapter(chapter_id: int, user: Optional[User] = Depends(get_current_user),
                      db: AsyncSession = Depends(get_db)):
    chapter, book = await load_chapter(db, chapter_id)
    ensure_allowed(user, await book_child_resource(db, book, chapter), Operation.READ,
                   not_found="Chapter not found")
    return api_success(_dump(chapter), "Chapter retrieved successfully")


@router.post("/books/{book_id}/chapters", status_code=201)
async def create_chapter(book_id: int, payload: ChapterCreate,
                         user: User = Depends(require_authenticated_user),
                         db: AsyncSession = Depends(get_db)):
    book = await load_book(db, book_id)
    ensure_allowed(user, await book_child_resource(db, book), Operation.CREATE)

    order = await ordering.assign_order(db, Chapter, book.id, payload.order)
    chapter = Chapter(
        book_id=book.id,
        author_id=user.id,
        title=payload.title.strip(),
        content=payload.content or "",
        order=order,
        status=ContentStatus.DRAFT,
    )
    _count_words(chapter)
    if payload.status:
        lifecycle.apply_transition(chapter, payload.status)
    db.add(chapter)
    try:
        await db.commit()
    except IntegrityError:
        # a concurrent insert took the same position
        await db.rollback()
        raise ConflictError("A chapter with this order already exists for this book")
    logger.info("Chapter %s created in book %s at position %s", chapter.id, book.id, order)
    return api_success(_dump(chapter), "Chapter created successfully", status_code=201)


@router.put("/chapters/{chapter_id}")
async def update_chapter(chapter_id: int, payload: ChapterUpdate,
                         user: User = Depends(require_authenticated_user),
                         db: AsyncSession = Depends(get_db)):
    chapter, book = await load_chapter(db, chapter_id)
    ensure_allowed(user, await book_child_resource(db, book, chapter), Operation.UPDATE)

    if payload.order is not None and payload.order != chapter.order:
        await ordering.validate_update(db, Chapter, book.id, chapter.id, payload.order)
        chapter.order = payload.order
    if payload.title is not None:
        chapter.title = payload.title.strip()
    if payload.content is not None:
        chapter.content = payload.content
        _count_words(chapter)
    if payload.status is not None:
        lifecycle.apply_transition(chapter, payload.status)
    await db.commit()
    return api_success(_dump(chapter), "Chapter updated successfully")


@router.delete("/chapters/{chapter_id}")
async def delete_chapter(chapter_id: int, user: User = Depends(require_authenticated_user),
                         db: AsyncSession = Depends(get_db)):
    chapter, book = await load_chapter(db, chapter_id)
    ensure_allowed(user, await book_child_resource(db, book, chapter), Operation.DELETE)
    await db.delete(chapter)
    await ordering.close_gap(db, Chapter, book.id)
    await db.commit()
    logger.info("Chapter %s deleted from book %s", chapter_id, book.id)
    return api_success(message="Chapter deleted successfully")


@router.patch("/books/{book_id}/chapters/reorder")
async def reorder_chapters(book_id: int, payload: ReorderRequest,
                           user: User = Depends(require_authenticated_user),
                           db: AsyncSession = Depends(get_db)):
    book = await load_book(db, book_id)
    ensure_allowed(user, await book_child_resource(db, book), Operation.REORDER)
    rows = await ordering.reorder_all(db, Chapter, book.id, payload.order)
    await db.commit()
    return api_success([_dump(c) for c in rows], "Chapters reordered successfully")

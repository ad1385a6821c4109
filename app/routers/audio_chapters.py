from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.blobstore import BlobStore
from app.database import get_db
from app.errors import ConflictError
from app.models import AudioChapter, AudioPart, ContentStatus, User
from app.routes_shared import api_success
from app.routers.loaders import audio_child_resource, get_blob_store, load_audio, load_audio_chapter
from app.schemas import AudioChapterCreate, AudioChapterRead, AudioChapterUpdate, ReorderRequest
from app.services import lifecycle, ordering, segments
from app.services.access_control import Operation, Resource, authorize, ensure_allowed
from app.utils import get_current_user, require_authenticated_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/audio", tags=["audio-chapters"])


def _dump(chapter: AudioChapter) -> dict:
    return AudioChapterRead.model_validate(chapter).model_dump()


@router.get("/{audio_id}/chapters")
async def list_audio_chapters(audio_id: int, include_unpublished: bool = Query(False),
                              user: Optional[User] = Depends(get_current_user),
                              db: AsyncSession = Depends(get_db)):
    audio = await load_audio(db, audio_id)
    ensure_allowed(user, Resource.content(audio), Operation.READ, not_found="Audio not found")

    stmt = select(AudioChapter).where(AudioChapter.audio_id == audio.id).order_by(AudioChapter.order.asc())
    sees_all = include_unpublished and user is not None and \
        authorize(user, audio_child_resource(audio), Operation.UPDATE).allowed
    if not sees_all:
        stmt = stmt.where(AudioChapter.status == ContentStatus.PUBLISHED)
    rows = (await db.execute(stmt)).scalars().all()
    return api_success([_dump(c) for c in rows], "Audio chapters retrieved successfully")


@router.post("/{audio_id}/chapters", status_code=201)
async def create_audio_chapter(audio_id: int, payload: AudioChapterCreate,
                               user: User = Depends(require_authenticated_user),
                               db: AsyncSession = Depends(get_db)):
    audio = await load_audio(db, audio_id)
    ensure_allowed(user, audio_child_resource(audio), Operation.CREATE)

    order = await ordering.assign_order(db, AudioChapter, audio.id, payload.order)
    chapter = AudioChapter(
        audio_id=audio.id,
        author_id=user.id,
        title=payload.title.strip(),
        description=payload.description,
        order=order,
        duration=payload.duration,
        word_count=payload.word_count,
        status=ContentStatus.DRAFT,
    )
    if payload.status:
        lifecycle.apply_transition(chapter, payload.status)
    db.add(chapter)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("An audio chapter with this order already exists")
    logger.info("Audio chapter %s created in audio %s at position %s", chapter.id, audio.id, order)
    return api_success(_dump(chapter), "Audio chapter created successfully", status_code=201)


@router.get("/chapters/{chapter_id}")
async def get_audio_chapter(chapter_id: int, user: Optional[User] = Depends(get_current_user),
                            db: AsyncSession = Depends(get_db)):
    chapter, audio = await load_audio_chapter(db, chapter_id)
    ensure_allowed(user, audio_child_resource(audio, chapter), Operation.READ,
                   not_found="Audio chapter not found")
    return api_success(_dump(chapter), "Audio chapter retrieved successfully")


@router.patch("/chapters/{chapter_id}")
async def update_audio_chapter(chapter_id: int, payload: AudioChapterUpdate,
                               user: User = Depends(require_authenticated_user),
                               db: AsyncSession = Depends(get_db)):
    chapter, audio = await load_audio_chapter(db, chapter_id)
    ensure_allowed(user, audio_child_resource(audio, chapter), Operation.UPDATE)

    if payload.order is not None and payload.order != chapter.order:
        await ordering.validate_update(db, AudioChapter, audio.id, chapter.id, payload.order)
        chapter.order = payload.order
    if payload.title is not None:
        chapter.title = payload.title.strip()
    for field in ("description", "duration", "word_count"):
        value = getattr(payload, field)
        if value is not None:
            setattr(chapter, field, value)
    if payload.status is not None:
        lifecycle.apply_transition(chapter, payload.status)
    await db.commit()
    return api_success(_dump(chapter), "Audio chapter updated successfully")


@router.delete("/chapters/{chapter_id}")
async def delete_audio_chapter(chapter_id: int, user: User = Depends(require_authenticated_user),
                               store: BlobStore = Depends(get_blob_store),
                               db: AsyncSession = Depends(get_db)):
    chapter, audio = await load_audio_chapter(db, chapter_id)
    ensure_allowed(user, audio_child_resource(audio, chapter), Operation.DELETE)
    part_blobs = (await db.execute(
        select(AudioPart.public_id).where(AudioPart.chapter_id == chapter.id, AudioPart.public_id.is_not(None))
    )).scalars().all()

    await db.delete(chapter)
    await ordering.close_gap(db, AudioChapter, audio.id)
    await db.commit()
    for public_id in part_blobs:
        segments.schedule_destroy(store, public_id)
    logger.info("Audio chapter %s deleted from audio %s", chapter_id, audio.id)
    return api_success(message="Audio chapter deleted successfully")


@router.patch("/{audio_id}/chapters/reorder")
async def reorder_audio_chapters(audio_id: int, payload: ReorderRequest,
                                 user: User = Depends(require_authenticated_user),
                                 db: AsyncSession = Depends(get_db)):
    audio = await load_audio(db, audio_id)
    ensure_allowed(user, audio_child_resource(audio), Operation.REORDER)
    rows = await ordering.reorder_all(db, AudioChapter, audio.id, payload.order)
    await db.commit()
    return api_success([_dump(c) for c in rows], "Audio chapters reordered successfully")

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.blobstore import BlobStore
from app.database import get_db
from app.errors import ConflictError, ValidationError
from app.models import AudioPart, ContentStatus, User
from app.routes_shared import api_success
from app.routers.loaders import (
    audio_child_resource, check_audio_type, get_blob_store, load_audio_chapter, load_audio_part, read_upload,
)
from app.schemas import AudioPartRead, AudioPartUpdate, ReorderRequest
from app.services import lifecycle, ordering, segments
from app.services.access_control import Operation, authorize, ensure_allowed
from app.utils import get_current_user, public_id_hint, require_authenticated_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/audio", tags=["audio-parts"])

PART_FOLDER = "audio-parts"


def _dump(part: AudioPart) -> dict:
    return AudioPartRead.model_validate(part).model_dump()


@router.get("/chapters/{chapter_id}/parts")
async def list_parts(chapter_id: int, include_unpublished: bool = Query(False),
                     user: Optional[User] = Depends(get_current_user),
                     db: AsyncSession = Depends(get_db)):
    chapter, audio = await load_audio_chapter(db, chapter_id)
    ensure_allowed(user, audio_child_resource(audio, chapter), Operation.READ,
                   not_found="Audio chapter not found")

    stmt = select(AudioPart).where(AudioPart.chapter_id == chapter.id).order_by(AudioPart.order.asc())
    sees_all = include_unpublished and user is not None and \
        authorize(user, audio_child_resource(audio), Operation.UPDATE).allowed
    if not sees_all:
        stmt = stmt.where(AudioPart.status == ContentStatus.PUBLISHED)
    rows = (await db.execute(stmt)).scalars().all()
    return api_success([_dump(p) for p in rows], "Audio parts retrieved successfully")


@router.post("/chapters/{chapter_id}/parts", status_code=201)
async def create_part(
    chapter_id: int,
    request: Request,
    title: str = Form(...),
    description: Optional[str] = Form(None),
    order: Optional[int] = Form(None),
    part_status: Optional[str] = Form(None, alias="status"),
    duration: Optional[float] = Form(None),
    file: Optional[UploadFile] = File(None),
    user: User = Depends(require_authenticated_user),
    store: BlobStore = Depends(get_blob_store),
    db: AsyncSession = Depends(get_db),
):
    chapter, audio = await load_audio_chapter(db, chapter_id)
    ensure_allowed(user, audio_child_resource(audio, chapter), Operation.CREATE)
    if not title.strip():
        raise ValidationError("Title is required", errors=[{"field": "title", "message": "required"}])

    position = await ordering.assign_order(db, AudioPart, chapter.id, order)
    part = AudioPart(
        chapter_id=chapter.id,
        author_id=user.id,
        title=title.strip(),
        description=description,
        order=position,
        duration=duration,
        status=ContentStatus.DRAFT,
    )
    if part_status:
        lifecycle.apply_transition(part, part_status)

    blob = None
    if file is not None and file.filename:
        check_audio_type(file, "file")
        data = await read_upload(request, file, "file")
        blob = await store.upload(data, folder=PART_FOLDER, resource_kind=segments.AUDIO_KIND,
                                  public_id_hint=public_id_hint(file.filename), filename=file.filename)
        part.file_url = blob.url
        part.public_id = blob.public_id
        part.file_name = file.filename
        part.mime_type = file.content_type

    db.add(part)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        if blob is not None:
            segments.schedule_destroy(store, blob.public_id)
        raise ConflictError("An audio part with this order already exists")
    logger.info("Audio part %s created in chapter %s at position %s", part.id, chapter.id, position)
    return api_success(_dump(part), "Audio part created successfully", status_code=201)


@router.get("/parts/{part_id}")
async def get_part(part_id: int, user: Optional[User] = Depends(get_current_user),
                   db: AsyncSession = Depends(get_db)):
    part, chapter, audio = await load_audio_part(db, part_id)
    ensure_allowed(user, audio_child_resource(audio, chapter, part), Operation.READ,
                   not_found="Audio part not found")
    return api_success(_dump(part), "Audio part retrieved successfully")


@router.patch("/parts/{part_id}")
async def update_part(part_id: int, payload: AudioPartUpdate,
                      user: User = Depends(require_authenticated_user),
                      db: AsyncSession = Depends(get_db)):
    part, chapter, audio = await load_audio_part(db, part_id)
    ensure_allowed(user, audio_child_resource(audio, chapter, part), Operation.UPDATE)

    if payload.order is not None and payload.order != part.order:
        await ordering.validate_update(db, AudioPart, chapter.id, part.id, payload.order)
        part.order = payload.order
    if payload.title is not None:
        part.title = payload.title.strip()
    if payload.description is not None:
        part.description = payload.description
    if payload.duration is not None:
        part.duration = payload.duration
    if payload.status is not None:
        lifecycle.apply_transition(part, payload.status)
    await db.commit()
    return api_success(_dump(part), "Audio part updated successfully")


@router.delete("/parts/{part_id}")
async def delete_part(part_id: int, user: User = Depends(require_authenticated_user),
                      store: BlobStore = Depends(get_blob_store),
                      db: AsyncSession = Depends(get_db)):
    part, chapter, audio = await load_audio_part(db, part_id)
    ensure_allowed(user, audio_child_resource(audio, chapter, part), Operation.DELETE)
    blob_id = part.public_id

    await db.delete(part)
    await ordering.close_gap(db, AudioPart, chapter.id)
    await db.commit()
    if blob_id:
        segments.schedule_destroy(store, blob_id)
    logger.info("Audio part %s deleted from chapter %s", part_id, chapter.id)
    return api_success(message="Audio part deleted successfully")


@router.patch("/chapters/{chapter_id}/parts/reorder")
async def reorder_parts(chapter_id: int, payload: ReorderRequest,
                        user: User = Depends(require_authenticated_user),
                        db: AsyncSession = Depends(get_db)):
    chapter, audio = await load_audio_chapter(db, chapter_id)
    ensure_allowed(user, audio_child_resource(audio, chapter), Operation.REORDER)
    rows = await ordering.reorder_all(db, AudioPart, chapter.id, payload.order)
    await db.commit()
    return api_success([_dump(p) for p in rows], "Audio parts reordered successfully")

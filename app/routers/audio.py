from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.blobstore import BlobStore
from app.database import get_db
from app.errors import ValidationError
from app.models import Audio, AudioChapter, AudioPart, ContentStatus, User
from app.routes_shared import api_paginated, api_success, paginate
from app.routers.loaders import check_audio_type, get_assembler, get_blob_store, load_audio, read_upload
from app.schemas import AudioRead, AudioUpdate, MergeRequest, PublishRequest, SegmentOrderRequest, StatusUpdate
from app.services import lifecycle, segments
from app.services.access_control import Operation, Resource, ensure_allowed
from app.services.assembly import AudioAssembler
from app.services.streaming import stream_blob
from app.services.taxonomy import validate_assignment
from app.utils import (
    get_current_user, parse_int_list, parse_string_or_array, public_id_hint, require_authenticated_user,
    search_clause,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/audio", tags=["audio"])

AUDIO_FOLDER = "audio-files"


def _dump(audio: Audio) -> dict:
    return AudioRead.model_validate(audio).model_dump()


async def _owned_audio(db: AsyncSession, audio_id: int, user: User, op: Operation = Operation.UPDATE) -> Audio:
    audio = await load_audio(db, audio_id)
    ensure_allowed(user, Resource.content(audio), op)
    return audio


@router.post("", status_code=201)
async def upload_audio(
    request: Request,
    title: str = Form(...),
    description: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
    category_id: Optional[int] = Form(None),
    sub_category_ids: Optional[str] = Form(None),
    duration: Optional[float] = Form(None),
    audio_file: UploadFile = File(...),
    user: User = Depends(require_authenticated_user),
    store: BlobStore = Depends(get_blob_store),
    db: AsyncSession = Depends(get_db),
):
    ensure_allowed(user, Resource(kind="content"), Operation.CREATE)
    if not title.strip():
        raise ValidationError("Title is required", errors=[{"field": "title", "message": "required"}])
    check_audio_type(audio_file)
    category, subs = await validate_assignment(db, category_id, parse_int_list(sub_category_ids, "sub_category_ids"))
    data = await read_upload(request, audio_file, "audio_file")

    blob = await store.upload(data, folder=AUDIO_FOLDER, resource_kind=segments.AUDIO_KIND,
                              public_id_hint=public_id_hint(audio_file.filename), filename=audio_file.filename)
    audio = Audio(
        owner_id=user.id,
        title=title.strip(),
        description=description,
        tags=parse_string_or_array(tags),
        file_url=blob.url,
        public_id=blob.public_id,
        file_name=audio_file.filename,
        mime_type=audio_file.content_type,
        total_duration=duration,
        segment_urls=[],
        segment_public_ids=[],
        status=ContentStatus.DRAFT,
        category=category,
        sub_categories=subs,
    )
    db.add(audio)
    try:
        await db.commit()
    except Exception:
        segments.schedule_destroy(store, blob.public_id)
        raise
    logger.info("Audio %s uploaded by user %s", audio.id, user.id)
    return api_success(_dump(audio), "Audio uploaded successfully", status_code=201)


@router.get("")
async def list_published_audio(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = None,
    category_id: Optional[int] = None,
    db: AsyncSession = Depends(get_db),
):
    stmt = select(Audio).where(Audio.status == ContentStatus.PUBLISHED)
    clause = search_clause([Audio.title, Audio.description], search)
    if clause is not None:
        stmt = stmt.where(clause)
    if category_id is not None:
        stmt = stmt.where(Audio.category_id == category_id)
    stmt = stmt.order_by(Audio.published_at.desc(), Audio.id.desc())
    rows, total = await paginate(db, stmt, page, limit)
    return api_paginated([_dump(a) for a in rows], page=page, limit=limit, total=total,
                         message="Audio retrieved successfully")


@router.get("/drafts")
async def list_my_drafts(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: User = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    stmt = (
        select(Audio)
        .where(Audio.owner_id == user.id, Audio.status == ContentStatus.DRAFT)
        .order_by(Audio.updated_at.desc(), Audio.id.desc())
    )
    rows, total = await paginate(db, stmt, page, limit)
    return api_paginated([_dump(a) for a in rows], page=page, limit=limit, total=total,
                         message="Draft audio retrieved successfully")


@router.get("/{audio_id}")
async def get_audio(audio_id: int, user: Optional[User] = Depends(get_current_user),
                    db: AsyncSession = Depends(get_db)):
    audio = await load_audio(db, audio_id)
    ensure_allowed(user, Resource.content(audio), Operation.READ, not_found="Audio not found")
    return api_success(_dump(audio), "Audio retrieved successfully")


@router.patch("/{audio_id}")
async def update_audio(audio_id: int, payload: AudioUpdate, user: User = Depends(require_authenticated_user),
                       db: AsyncSession = Depends(get_db)):
    audio = await _owned_audio(db, audio_id, user)
    if payload.title is not None:
        audio.title = payload.title.strip()
    if payload.description is not None:
        audio.description = payload.description
    if payload.tags is not None:
        audio.tags = payload.tags
    if payload.total_duration is not None:
        audio.total_duration = payload.total_duration
    if payload.category_id is not None or payload.sub_category_ids is not None:
        wanted_category = payload.category_id if payload.category_id is not None else audio.category_id
        wanted_subs = (payload.sub_category_ids if payload.sub_category_ids is not None
                       else [s.id for s in audio.sub_categories])
        category, subs = await validate_assignment(db, wanted_category, wanted_subs)
        audio.category = category
        audio.sub_categories = subs
    await db.commit()
    return api_success(_dump(audio), "Audio updated successfully")


@router.patch("/{audio_id}/status")
async def update_audio_status(audio_id: int, payload: StatusUpdate, user: User = Depends(require_authenticated_user),
                              db: AsyncSession = Depends(get_db)):
    audio = await _owned_audio(db, audio_id, user)
    lifecycle.apply_transition(audio, payload.status)
    await db.commit()
    return api_success(_dump(audio), f"Audio status set to {audio.status.value}")


@router.post("/{audio_id}/publish")
async def publish_audio(audio_id: int, payload: Optional[PublishRequest] = None,
                        user: User = Depends(require_authenticated_user),
                        assembler: AudioAssembler = Depends(get_assembler),
                        db: AsyncSession = Depends(get_db)):
    payload = payload or PublishRequest()
    audio = await _owned_audio(db, audio_id, user)
    result = await assembler.publish_audio(db, audio, merge=payload.merge, background=payload.background)
    if result.queued:
        message = "Audio published; segments are being merged in the background"
    elif result.merged:
        message = "Audio merged and published successfully"
    else:
        message = "Audio published successfully"
    data = {**_dump(result.audio), "merged": result.merged, "merge_queued": result.queued}
    return api_success(data, message, warning=result.warning)


@router.post("/{audio_id}/merge")
async def merge_audio(audio_id: int, payload: Optional[MergeRequest] = None,
                      user: User = Depends(require_authenticated_user),
                      assembler: AudioAssembler = Depends(get_assembler),
                      db: AsyncSession = Depends(get_db)):
    payload = payload or MergeRequest()
    audio = await _owned_audio(db, audio_id, user)
    result = await assembler.merge_segments(db, audio, publish=payload.publish)
    message = "Audio segments merged successfully" if result.merged else "Audio published without merging"
    data = {**_dump(result.audio), "merged": result.merged}
    return api_success(data, message, warning=result.warning)


# ----------------------
# Segments
# ----------------------
@router.post("/{audio_id}/segments", status_code=201)
async def add_segment(audio_id: int, request: Request, file: UploadFile = File(...),
                      user: User = Depends(require_authenticated_user),
                      store: BlobStore = Depends(get_blob_store),
                      db: AsyncSession = Depends(get_db)):
    audio = await _owned_audio(db, audio_id, user)
    check_audio_type(file, "file")
    data = await read_upload(request, file, "file")
    blob = await store.upload(data, folder=segments.SEGMENT_FOLDER, resource_kind=segments.AUDIO_KIND,
                              public_id_hint=public_id_hint(file.filename), filename=file.filename)
    count = segments.append_segment(audio, blob)
    try:
        await db.commit()
    except Exception:
        segments.schedule_destroy(store, blob.public_id)
        raise
    data = {**_dump(audio), "segment": {"url": blob.url, "public_id": blob.public_id, "index": count - 1}}
    return api_success(data, "Segment added successfully", status_code=201)


@router.patch("/{audio_id}/segments/order")
async def reorder_segments(audio_id: int, payload: SegmentOrderRequest,
                           user: User = Depends(require_authenticated_user),
                           db: AsyncSession = Depends(get_db)):
    audio = await _owned_audio(db, audio_id, user, Operation.REORDER)
    segments.reorder_segments(audio, payload.order)
    await db.commit()
    return api_success(_dump(audio), "Segments reordered successfully")


@router.delete("/{audio_id}/segments")
async def remove_segment(audio_id: int, public_id: str = Query(..., min_length=1),
                         user: User = Depends(require_authenticated_user),
                         store: BlobStore = Depends(get_blob_store),
                         db: AsyncSession = Depends(get_db)):
    audio = await _owned_audio(db, audio_id, user)
    _, removed_id = segments.remove_segment(audio, public_id)
    await db.commit()
    segments.schedule_destroy(store, removed_id)
    return api_success(_dump(audio), "Segment removed successfully")


# ----------------------
# Playback / delete
# ----------------------
@router.get("/{audio_id}/stream")
async def stream_audio(audio_id: int, request: Request, user: Optional[User] = Depends(get_current_user),
                       store: BlobStore = Depends(get_blob_store), db: AsyncSession = Depends(get_db)):
    audio = await load_audio(db, audio_id)
    ensure_allowed(user, Resource.content(audio), Operation.READ, not_found="Audio not found")
    return await stream_blob(store, audio.file_url, audio.public_id,
                             range_header=request.headers.get("range"),
                             media_type=audio.mime_type or "audio/mpeg")


@router.delete("/{audio_id}")
async def delete_audio(audio_id: int, user: User = Depends(require_authenticated_user),
                       store: BlobStore = Depends(get_blob_store), db: AsyncSession = Depends(get_db)):
    audio = await _owned_audio(db, audio_id, user, Operation.DELETE)
    part_blobs = (await db.execute(
        select(AudioPart.public_id)
        .join(AudioChapter, AudioPart.chapter_id == AudioChapter.id)
        .where(AudioChapter.audio_id == audio.id, AudioPart.public_id.is_not(None))
    )).scalars().all()
    blob_ids = [audio.public_id, *(audio.segment_public_ids or []), *part_blobs]

    await db.delete(audio)
    await db.commit()
    for public_id in dict.fromkeys(blob_ids):
        segments.schedule_destroy(store, public_id)
    logger.info("Audio %s deleted by user %s (%d blobs queued for removal)", audio_id, user.id, len(blob_ids))
    return api_success(message="Audio deleted successfully")

"""Row loaders and request-scoped collaborators shared by the routers."""
from __future__ import annotations

from typing import Optional, Tuple

from fastapi import Request, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from app.blobstore import BlobStore
from app.errors import NotFoundError, PayloadTooLargeError, ValidationError
from app.models import Audio, AudioChapter, AudioPart, Book, Chapter, ContentStatus
from app.services.access_control import Resource
from app.services.assembly import AudioAssembler
from app.services.lifecycle import approved_contributor_ids

ALLOWED_AUDIO_TYPES = {
    "audio/mpeg", "audio/mp3", "audio/wav", "audio/x-wav", "audio/ogg", "audio/webm",
    "audio/x-m4a", "audio/m4a", "audio/mp4", "audio/aac", "audio/flac",
}


def get_blob_store(request: Request) -> BlobStore:
    return request.app.state.blob_store


def get_assembler(request: Request) -> AudioAssembler:
    return request.app.state.assembler


async def read_upload(request: Request, upload: UploadFile, field: str) -> bytes:
    limit = request.app.state.settings.max_upload_bytes
    data = await upload.read(limit + 1)
    if len(data) > limit:
        raise PayloadTooLargeError(
            f"File too large. Maximum size is {limit // (1024 * 1024)}MB",
            errors=[{"field": field, "message": "file too large"}],
        )
    if not data:
        raise ValidationError("Uploaded file is empty", errors=[{"field": field, "message": "empty file"}])
    return data


def check_audio_type(upload: UploadFile, field: str = "audio_file") -> None:
    ctype = (upload.content_type or "").split(";", 1)[0].strip().lower()
    if ctype not in ALLOWED_AUDIO_TYPES:
        raise ValidationError(
            f"Invalid file type: {upload.content_type}. Only audio files are allowed.",
            errors=[{"field": field, "message": "unsupported audio type"}],
        )


async def load_book(db: AsyncSession, book_id: int) -> Book:
    book = await db.get(Book, book_id)
    if not book:
        raise NotFoundError("Book not found")
    return book


async def load_audio(db: AsyncSession, audio_id: int) -> Audio:
    audio = await db.get(Audio, audio_id)
    if not audio:
        raise NotFoundError("Audio not found")
    return audio


async def load_chapter(db: AsyncSession, chapter_id: int) -> Tuple[Chapter, Book]:
    chapter = await db.get(Chapter, chapter_id)
    if not chapter:
        raise NotFoundError("Chapter not found")
    return chapter, await load_book(db, chapter.book_id)


async def load_audio_chapter(db: AsyncSession, chapter_id: int) -> Tuple[AudioChapter, Audio]:
    chapter = await db.get(AudioChapter, chapter_id)
    if not chapter:
        raise NotFoundError("Audio chapter not found")
    return chapter, await load_audio(db, chapter.audio_id)


async def load_audio_part(db: AsyncSession, part_id: int) -> Tuple[AudioPart, AudioChapter, Audio]:
    part = await db.get(AudioPart, part_id)
    if not part:
        raise NotFoundError("Audio part not found")
    chapter, audio = await load_audio_chapter(db, part.chapter_id)
    return part, chapter, audio


async def book_child_resource(db: AsyncSession, book: Book, chapter: Optional[Chapter] = None) -> Resource:
    contributors = await approved_contributor_ids(db, book.id) if book.allow_chapter_contributions else ()
    return Resource.child(book, chapter, contributor_ids=contributors)


def _combined(*statuses: ContentStatus) -> ContentStatus:
    for status in statuses:
        if status != ContentStatus.PUBLISHED:
            return status
    return ContentStatus.PUBLISHED


def audio_child_resource(audio: Audio, chapter: Optional[AudioChapter] = None,
                         part: Optional[AudioPart] = None) -> Resource:
    """Audio chapters and parts are always owned by the audio's owner."""
    if part is not None:
        child, parent_status = part, _combined(audio.status, chapter.status)
    elif chapter is not None:
        child, parent_status = chapter, audio.status
    else:
        return Resource.child(audio)
    return Resource(
        kind="child",
        owner_id=audio.owner_id,
        status=child.status,
        parent_status=parent_status,
        author_id=child.author_id,
    )

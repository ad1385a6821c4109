from __future__ import annotations

import logging
import mimetypes
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.background import run_sync
from app.blobstore import BlobStore, StoredBlob
from app.database import get_db
from app.errors import ConflictError, NotFoundError, ValidationError
from app.media_pipeline import normalize_cover_image
from app.models import Book, BookContributor, ContentStatus, ContributorStatus, User
from app.routes_shared import api_paginated, api_success, paginate
from app.routers.loaders import get_blob_store, load_book, read_upload
from app.schemas import (
    BookDetail, BookRead, ContributorDecision, ContributorRead, ContributorRequest, StatusUpdate,
)
from app.services import lifecycle
from app.services.access_control import Operation, Resource, ensure_allowed
from app.services.book_text import extract_book_content
from app.services.lifecycle import approved_contributor_ids
from app.services.segments import schedule_destroy
from app.services.streaming import stream_blob
from app.services.taxonomy import validate_assignment
from app.utils import (
    get_current_user, parse_int_list, parse_string_or_array, public_id_hint, require_authenticated_user,
    search_clause,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/books", tags=["books"])

COVER_FOLDER = "book-covers"
FILE_FOLDER = "book-files"


async def _upload_cover(request: Request, store: BlobStore, upload: UploadFile) -> StoredBlob:
    if not (upload.content_type or "").lower().startswith("image/"):
        raise ValidationError("Cover must be an image", errors=[{"field": "cover_image", "message": "not an image"}])
    data = await read_upload(request, upload, "cover_image")
    jpeg = await run_sync(normalize_cover_image, data)
    return await store.upload(jpeg, folder=COVER_FOLDER, resource_kind="image",
                              public_id_hint=public_id_hint(upload.filename), filename="cover.jpg")


async def _upload_book_file(request: Request, store: BlobStore, upload: UploadFile,
                            extract: bool = False) -> Tuple[StoredBlob, Optional[str]]:
    """Store the file; with ``extract`` also pull its text for ``Book.content``."""
    data = await read_upload(request, upload, "book_file")
    text = None
    if extract:
        text = await extract_book_content(data, upload.filename,
                                          timeout=request.app.state.settings.BOOK_EXTRACT_TIMEOUT_SEC)
    blob = await store.upload(data, folder=FILE_FOLDER, resource_kind="raw",
                              public_id_hint=public_id_hint(upload.filename), filename=upload.filename)
    return blob, text


def _has_file(upload: Optional[UploadFile]) -> bool:
    return upload is not None and bool(upload.filename)


def _dump(book: Book, detail: bool = False) -> dict:
    schema = BookDetail if detail else BookRead
    return schema.model_validate(book).model_dump()


async def _visible_book(db: AsyncSession, book_id: int, user: Optional[User]) -> Book:
    book = await load_book(db, book_id)
    contributors = await approved_contributor_ids(db, book.id) if book.allow_chapter_contributions else ()
    ensure_allowed(user, Resource.content(book, contributor_ids=contributors), Operation.READ,
                   not_found="Book not found")
    return book


# ----------------------
# Listing
# ----------------------
@router.get("")
async def list_published_books(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = None,
    category_id: Optional[int] = None,
    db: AsyncSession = Depends(get_db),
):
    stmt = select(Book).where(Book.status == ContentStatus.PUBLISHED)
    clause = search_clause([Book.title, Book.author, Book.description], search)
    if clause is not None:
        stmt = stmt.where(clause)
    if category_id is not None:
        stmt = stmt.where(Book.category_id == category_id)
    stmt = stmt.order_by(Book.published_at.desc(), Book.id.desc())
    rows, total = await paginate(db, stmt, page, limit)
    return api_paginated([_dump(b) for b in rows], page=page, limit=limit, total=total,
                         message="Books retrieved successfully")


@router.get("/mine")
async def list_my_books(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    user: User = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(Book).where(Book.owner_id == user.id)
    if status:
        stmt = stmt.where(Book.status == lifecycle.normalize_status(status))
    stmt = stmt.order_by(Book.updated_at.desc(), Book.id.desc())
    rows, total = await paginate(db, stmt, page, limit)
    return api_paginated([_dump(b) for b in rows], page=page, limit=limit, total=total,
                         message="Your books retrieved successfully")


@router.get("/{book_id}")
async def get_book(book_id: int, user: Optional[User] = Depends(get_current_user),
                   db: AsyncSession = Depends(get_db)):
    book = await _visible_book(db, book_id, user)
    return api_success(_dump(book, detail=True), "Book retrieved successfully")


# ----------------------
# Create / update / delete
# ----------------------
@router.post("", status_code=201)
async def create_book(
    request: Request,
    title: str = Form(...),
    author: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    isbn: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
    content: Optional[str] = Form(None),
    category_id: Optional[int] = Form(None),
    sub_category_ids: Optional[str] = Form(None),
    allow_chapter_contributions: bool = Form(False),
    status_value: Optional[str] = Form(None, alias="status"),
    cover_image: Optional[UploadFile] = File(None),
    book_file: Optional[UploadFile] = File(None),
    user: User = Depends(require_authenticated_user),
    store: BlobStore = Depends(get_blob_store),
    db: AsyncSession = Depends(get_db),
):
    ensure_allowed(user, Resource(kind="content"), Operation.CREATE)
    if not title.strip():
        raise ValidationError("Title is required", errors=[{"field": "title", "message": "required"}])
    category, subs = await validate_assignment(db, category_id, parse_int_list(sub_category_ids, "sub_category_ids"))

    book = Book(
        owner_id=user.id,
        title=title.strip(),
        author=(author or "").strip() or "Unknown Author",
        description=description,
        isbn=isbn,
        tags=parse_string_or_array(tags),
        content=content,
        allow_chapter_contributions=allow_chapter_contributions,
        status=ContentStatus.DRAFT,
        category=category,
        sub_categories=subs,
    )
    if status_value:
        lifecycle.apply_transition(book, status_value)

    uploaded: List[Tuple[StoredBlob, str]] = []
    try:
        if _has_file(cover_image):
            cover = await _upload_cover(request, store, cover_image)
            uploaded.append((cover, "image"))
            book.cover_image_url, book.cover_image_public_id = cover.url, cover.public_id
        if _has_file(book_file):
            blob, text = await _upload_book_file(request, store, book_file, extract=content is None)
            uploaded.append((blob, "raw"))
            if text is not None:
                book.content = text
            book.file_url, book.file_public_id = blob.url, blob.public_id
            book.file_name = book_file.filename
        db.add(book)
        await db.flush()
        if book.file_url:
            book.read_url = f"/api/books/{book.id}/read"
            book.download_url = f"/api/books/{book.id}/download"
        await db.commit()
    except Exception:
        for blob, kind in uploaded:
            schedule_destroy(store, blob.public_id, resource_kind=kind)
        raise

    logger.info("Book %s created by user %s", book.id, user.id)
    return api_success(_dump(book, detail=True), "Book created successfully", status_code=201)


@router.put("/{book_id}")
async def update_book(
    book_id: int,
    request: Request,
    title: Optional[str] = Form(None),
    author: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    isbn: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
    content: Optional[str] = Form(None),
    category_id: Optional[int] = Form(None),
    sub_category_ids: Optional[str] = Form(None),
    allow_chapter_contributions: Optional[bool] = Form(None),
    cover_image: Optional[UploadFile] = File(None),
    book_file: Optional[UploadFile] = File(None),
    user: User = Depends(require_authenticated_user),
    store: BlobStore = Depends(get_blob_store),
    db: AsyncSession = Depends(get_db),
):
    book = await load_book(db, book_id)
    ensure_allowed(user, Resource.content(book), Operation.UPDATE)

    if title is not None:
        if not title.strip():
            raise ValidationError("Title cannot be empty", errors=[{"field": "title", "message": "required"}])
        book.title = title.strip()
    if author is not None:
        book.author = author.strip() or "Unknown Author"
    if description is not None:
        book.description = description
    if isbn is not None:
        book.isbn = isbn
    if tags is not None:
        book.tags = parse_string_or_array(tags)
    if content is not None:
        book.content = content
    if allow_chapter_contributions is not None:
        book.allow_chapter_contributions = allow_chapter_contributions
    if category_id is not None or sub_category_ids is not None:
        wanted_category = category_id if category_id is not None else book.category_id
        wanted_subs = (parse_int_list(sub_category_ids, "sub_category_ids") if sub_category_ids is not None
                       else [s.id for s in book.sub_categories])
        category, subs = await validate_assignment(db, wanted_category, wanted_subs)
        book.category = category
        book.sub_categories = subs

    superseded = []
    if _has_file(cover_image):
        cover = await _upload_cover(request, store, cover_image)
        if book.cover_image_public_id:
            superseded.append((book.cover_image_public_id, "image"))
        book.cover_image_url, book.cover_image_public_id = cover.url, cover.public_id
    if _has_file(book_file):
        blob, text = await _upload_book_file(request, store, book_file, extract=content is None)
        if text is not None:
            book.content = text
        if book.file_public_id:
            superseded.append((book.file_public_id, "raw"))
        book.file_url, book.file_public_id, book.file_name = blob.url, blob.public_id, book_file.filename
        book.read_url = f"/api/books/{book.id}/read"
        book.download_url = f"/api/books/{book.id}/download"

    await db.commit()
    for public_id, kind in superseded:
        schedule_destroy(store, public_id, resource_kind=kind)
    return api_success(_dump(book, detail=True), "Book updated successfully")


@router.patch("/{book_id}/status")
async def update_book_status(book_id: int, payload: StatusUpdate,
                             user: User = Depends(require_authenticated_user),
                             db: AsyncSession = Depends(get_db)):
    book = await load_book(db, book_id)
    ensure_allowed(user, Resource.content(book), Operation.UPDATE)
    lifecycle.apply_transition(book, payload.status)
    await db.commit()
    return api_success(_dump(book), f"Book status set to {book.status.value}")


@router.post("/{book_id}/publish")
async def publish_book(book_id: int, user: User = Depends(require_authenticated_user),
                       db: AsyncSession = Depends(get_db)):
    book = await load_book(db, book_id)
    ensure_allowed(user, Resource.content(book), Operation.UPDATE)
    lifecycle.publish(book)
    await db.commit()
    return api_success(_dump(book), "Book published successfully")


@router.delete("/{book_id}")
async def delete_book(book_id: int, user: User = Depends(require_authenticated_user),
                      store: BlobStore = Depends(get_blob_store), db: AsyncSession = Depends(get_db)):
    book = await load_book(db, book_id)
    ensure_allowed(user, Resource.content(book), Operation.DELETE)
    blobs = [(book.cover_image_public_id, "image"), (book.file_public_id, "raw")]
    await db.delete(book)
    await db.commit()
    for public_id, kind in blobs:
        if public_id:
            schedule_destroy(store, public_id, resource_kind=kind)
    logger.info("Book %s deleted by user %s", book_id, user.id)
    return api_success(message="Book deleted successfully")


# ----------------------
# File proxies
# ----------------------
async def _serve_file(request: Request, book_id: int, user, db, store, *, attachment: bool):
    book = await _visible_book(db, book_id, user)
    if not book.file_url or not book.file_public_id:
        raise NotFoundError("This book has no file")
    media_type = mimetypes.guess_type(book.file_name or book.file_url)[0]
    return await stream_blob(store, book.file_url, book.file_public_id,
                             range_header=request.headers.get("range"), media_type=media_type,
                             filename=book.file_name or f"book-{book.id}", attachment=attachment)


@router.get("/{book_id}/read")
async def read_book_file(book_id: int, request: Request, user: Optional[User] = Depends(get_current_user),
                         store: BlobStore = Depends(get_blob_store), db: AsyncSession = Depends(get_db)):
    return await _serve_file(request, book_id, user, db, store, attachment=False)


@router.get("/{book_id}/download")
async def download_book_file(book_id: int, request: Request, user: Optional[User] = Depends(get_current_user),
                             store: BlobStore = Depends(get_blob_store), db: AsyncSession = Depends(get_db)):
    return await _serve_file(request, book_id, user, db, store, attachment=True)


# ----------------------
# Contributors
# ----------------------
@router.post("/{book_id}/contributors", status_code=201)
async def request_contribution(book_id: int, payload: Optional[ContributorRequest] = None,
                               user: User = Depends(require_authenticated_user),
                               db: AsyncSession = Depends(get_db)):
    book = await _visible_book(db, book_id, user)
    if not book.allow_chapter_contributions:
        raise ValidationError("This book does not accept chapter contributions")
    if book.owner_id == user.id:
        raise ValidationError("You already own this book")
    message = payload.message if payload else None
    existing = (await db.execute(
        select(BookContributor).where(BookContributor.book_id == book.id, BookContributor.user_id == user.id)
    )).scalars().first()
    if existing and existing.status != ContributorStatus.REJECTED:
        raise ConflictError("You have already requested to contribute to this book")
    if existing:
        existing.status, existing.message, existing.decided_at = ContributorStatus.PENDING, message, None
        row = existing
    else:
        row = BookContributor(book_id=book.id, user_id=user.id, message=message)
        db.add(row)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("You have already requested to contribute to this book")
    return api_success(ContributorRead.model_validate(row).model_dump(), "Contribution request sent", status_code=201)


@router.get("/{book_id}/contributors")
async def list_contributors(book_id: int, user: User = Depends(require_authenticated_user),
                            db: AsyncSession = Depends(get_db)):
    book = await load_book(db, book_id)
    ensure_allowed(user, Resource.content(book), Operation.UPDATE)
    rows = (await db.execute(
        select(BookContributor).where(BookContributor.book_id == book.id).order_by(BookContributor.created_at.asc())
    )).scalars().all()
    return api_success([ContributorRead.model_validate(r).model_dump() for r in rows], "Contributors retrieved")


@router.patch("/{book_id}/contributors/{user_id}")
async def decide_contribution(book_id: int, user_id: int, payload: ContributorDecision,
                              user: User = Depends(require_authenticated_user),
                              db: AsyncSession = Depends(get_db)):
    book = await load_book(db, book_id)
    ensure_allowed(user, Resource.content(book), Operation.UPDATE)
    row = (await db.execute(
        select(BookContributor).where(BookContributor.book_id == book.id, BookContributor.user_id == user_id)
    )).scalars().first()
    if not row:
        raise NotFoundError("Contribution request not found")
    row.status = ContributorStatus(payload.status)
    row.decided_at = datetime.now(timezone.utc)
    await db.commit()
    logger.info("Contributor %s on book %s -> %s", user_id, book.id, row.status.value)
    return api_success(ContributorRead.model_validate(row).model_dump(), "Contribution request updated")

from sqlalchemy import (
    Column, Integer, String, Boolean, ForeignKey, Text, DateTime, Float,
    Table, UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy import Enum as SAEnum
from datetime import datetime, timezone
import enum

from .database import Base

# JSONB on Postgres, plain JSON elsewhere (sqlite in dev/tests)
JSONList = sa.JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, enum.Enum):
    USER = "USER"
    CREATOR = "CREATOR"
    MODERATOR = "MODERATOR"
    ADMIN = "ADMIN"


class ContentStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


class ContributorStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


# ---------------------------
# USER MODEL
# ---------------------------
class User(Base):
    __tablename__ = "user"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    username = Column(String, index=True)
    hashed_password = Column(String, nullable=False)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    phone = Column(String, unique=True, nullable=True)
    bio = Column(Text, nullable=True)
    location = Column(String, nullable=True)
    profile_picture = Column(String, nullable=True)

    role = Column(SAEnum(Role, name="user_role"), default=Role.USER, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    # fastapi-users bookkeeping; ``role`` is what the access layer reads
    is_superuser = Column(Boolean, default=False, nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)

    last_login = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


# ---------------------------
# TAXONOMY
# ---------------------------
class Category(Base):
    __tablename__ = "category"

    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)
    description = Column(Text, nullable=True)
    image = Column(String, nullable=True)
    color = Column(String, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    sub_categories = relationship(
        "SubCategory",
        back_populates="category",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="SubCategory.sort_order",
        lazy="selectin",
    )


class SubCategory(Base):
    __tablename__ = "sub_category"
    __table_args__ = (UniqueConstraint("category_id", "name", name="uq_sub_category_name"),)

    id = Column(Integer, primary_key=True)
    # parent is fixed at creation; updates never move a subcategory
    category_id = Column(ForeignKey("category.id", ondelete="CASCADE"), index=True, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    category = relationship("Category", back_populates="sub_categories")


book_sub_categories = Table(
    "book_sub_categories",
    Base.metadata,
    Column("book_id", ForeignKey("book.id", ondelete="CASCADE"), primary_key=True),
    Column("sub_category_id", ForeignKey("sub_category.id", ondelete="CASCADE"), primary_key=True),
)

audio_sub_categories = Table(
    "audio_sub_categories",
    Base.metadata,
    Column("audio_id", ForeignKey("audio.id", ondelete="CASCADE"), primary_key=True),
    Column("sub_category_id", ForeignKey("sub_category.id", ondelete="CASCADE"), primary_key=True),
)


# ---------------------------
# BOOKS
# ---------------------------
class Book(Base):
    __tablename__ = "book"

    id = Column(Integer, primary_key=True)
    owner_id = Column(ForeignKey("user.id", ondelete="CASCADE"), index=True, nullable=False)
    title = Column(String, nullable=False)
    author = Column(String, nullable=False, default="Unknown Author")
    description = Column(Text, nullable=True)
    isbn = Column(String, nullable=True)
    tags = Column(JSONList, nullable=False, default=list)
    content = Column(Text, nullable=True)

    cover_image_url = Column(String, nullable=True)
    cover_image_public_id = Column(String, nullable=True)
    file_url = Column(String, nullable=True)
    file_public_id = Column(String, nullable=True)
    file_name = Column(String, nullable=True)
    read_url = Column(String, nullable=True)
    download_url = Column(String, nullable=True)

    allow_chapter_contributions = Column(Boolean, nullable=False, default=False)
    category_id = Column(ForeignKey("category.id", ondelete="SET NULL"), index=True, nullable=True)
    status = Column(SAEnum(ContentStatus, name="content_status"), nullable=False, default=ContentStatus.DRAFT)
    published_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    category = relationship("Category", lazy="selectin")
    sub_categories = relationship("SubCategory", secondary=book_sub_categories, lazy="selectin")


class BookContributor(Base):
    __tablename__ = "book_contributor"
    __table_args__ = (UniqueConstraint("book_id", "user_id", name="uq_book_contributor"),)

    id = Column(Integer, primary_key=True)
    book_id = Column(ForeignKey("book.id", ondelete="CASCADE"), index=True, nullable=False)
    user_id = Column(ForeignKey("user.id", ondelete="CASCADE"), index=True, nullable=False)
    status = Column(SAEnum(ContributorStatus, name="contributor_status"), nullable=False,
                    default=ContributorStatus.PENDING)
    message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    decided_at = Column(DateTime(timezone=True), nullable=True)


class Chapter(Base):
    __tablename__ = "chapter"
    __table_args__ = (UniqueConstraint("book_id", "order", name="uq_chapter_book_order"),)
    __order_parent__ = "book_id"

    id = Column(Integer, primary_key=True)
    book_id = Column(ForeignKey("book.id", ondelete="CASCADE"), index=True, nullable=False)
    author_id = Column(ForeignKey("user.id", ondelete="SET NULL"), nullable=True)
    title = Column(String, nullable=False)
    content = Column(Text, nullable=False, default="")
    order = Column(Integer, nullable=False)
    status = Column(SAEnum(ContentStatus, name="content_status"), nullable=False, default=ContentStatus.DRAFT)
    word_count = Column(Integer, nullable=False, default=0)
    reading_time = Column(Integer, nullable=False, default=0)  # minutes
    published_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


# ---------------------------
# AUDIO
# ---------------------------
class Audio(Base):
    __tablename__ = "audio"

    id = Column(Integer, primary_key=True)
    owner_id = Column(ForeignKey("user.id", ondelete="CASCADE"), index=True, nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    tags = Column(JSONList, nullable=False, default=list)

    # primary playable asset; replaced by the merged file after assembly
    file_url = Column(String, nullable=False)
    public_id = Column(String, nullable=False)
    file_name = Column(String, nullable=True)
    mime_type = Column(String, nullable=True)
    total_duration = Column(Float, nullable=True)

    # index-aligned: segment_urls[i] belongs to segment_public_ids[i]
    segment_urls = Column(JSONList, nullable=False, default=list)
    segment_public_ids = Column(JSONList, nullable=False, default=list)

    category_id = Column(ForeignKey("category.id", ondelete="SET NULL"), index=True, nullable=True)
    status = Column(SAEnum(ContentStatus, name="content_status"), nullable=False, default=ContentStatus.DRAFT)
    published_at = Column(DateTime(timezone=True), nullable=True)
    last_merged_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    category = relationship("Category", lazy="selectin")
    sub_categories = relationship("SubCategory", secondary=audio_sub_categories, lazy="selectin")


class AudioChapter(Base):
    __tablename__ = "audio_chapter"
    __table_args__ = (UniqueConstraint("audio_id", "order", name="uq_audio_chapter_order"),)
    __order_parent__ = "audio_id"

    id = Column(Integer, primary_key=True)
    audio_id = Column(ForeignKey("audio.id", ondelete="CASCADE"), index=True, nullable=False)
    author_id = Column(ForeignKey("user.id", ondelete="SET NULL"), nullable=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    order = Column(Integer, nullable=False)
    status = Column(SAEnum(ContentStatus, name="content_status"), nullable=False, default=ContentStatus.DRAFT)
    duration = Column(Float, nullable=True)
    word_count = Column(Integer, nullable=True)
    published_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class AudioPart(Base):
    __tablename__ = "audio_part"
    __table_args__ = (UniqueConstraint("chapter_id", "order", name="uq_audio_part_order"),)
    __order_parent__ = "chapter_id"

    id = Column(Integer, primary_key=True)
    chapter_id = Column(ForeignKey("audio_chapter.id", ondelete="CASCADE"), index=True, nullable=False)
    author_id = Column(ForeignKey("user.id", ondelete="SET NULL"), nullable=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    order = Column(Integer, nullable=False)
    status = Column(SAEnum(ContentStatus, name="content_status"), nullable=False, default=ContentStatus.DRAFT)
    file_name = Column(String, nullable=True)
    file_url = Column(String, nullable=True)
    public_id = Column(String, nullable=True)
    mime_type = Column(String, nullable=True)
    duration = Column(Float, nullable=True)
    published_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


Index("ix_book_status_published_at", Book.status, Book.published_at)
Index("ix_audio_status_published_at", Audio.status, Audio.published_at)

from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Any, List, Literal, Optional
from datetime import datetime

from fastapi_users import schemas

from .models import ContentStatus, ContributorStatus, Role
from .utils import parse_string_or_array

# =========================
# USER SCHEMAS
# =========================
class UserRead(schemas.BaseUser[int]):
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    bio: Optional[str] = None
    location: Optional[str] = None
    profile_picture: Optional[str] = None
    role: Role
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None


class UserCreate(schemas.BaseUserCreate):
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    # self-registration can only pick the non-privileged tiers
    role: Literal["USER", "CREATOR"] = "USER"


class UserUpdate(schemas.BaseUserUpdate):
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    bio: Optional[str] = None
    location: Optional[str] = None
    profile_picture: Optional[str] = None


class AdminUserUpdate(BaseModel):
    email: Optional[EmailStr] = None
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    bio: Optional[str] = None
    location: Optional[str] = None
    role: Optional[Role] = None
    is_active: Optional[bool] = None
    is_verified: Optional[bool] = None


class UserBrief(BaseModel):
    id: int
    email: str
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    role: Role
    is_active: bool
    is_verified: bool
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# =========================
# TAXONOMY SCHEMAS
# =========================
class SubCategoryRead(BaseModel):
    id: int
    category_id: int
    name: str
    description: Optional[str] = None
    sort_order: int
    is_active: bool

    class Config:
        from_attributes = True


class CategoryRead(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    image: Optional[str] = None
    color: Optional[str] = None
    sort_order: int
    is_active: bool
    sub_categories: List[SubCategoryRead] = []

    class Config:
        from_attributes = True


class CategoryBrief(BaseModel):
    id: int
    name: str

    class Config:
        from_attributes = True


class CategoryCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    image: Optional[str] = None
    color: Optional[str] = None
    sort_order: int = 0
    is_active: bool = True


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    image: Optional[str] = None
    color: Optional[str] = None
    sort_order: Optional[int] = None
    is_active: Optional[bool] = None


class SubCategoryCreate(BaseModel):
    category_id: int
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    sort_order: int = 0
    is_active: bool = True


class SubCategoryUpdate(BaseModel):
    # category_id is intentionally absent: a subcategory never changes parent
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    sort_order: Optional[int] = None
    is_active: Optional[bool] = None


# =========================
# CONTENT SCHEMAS
# =========================
class _Tagged(BaseModel):
    tags: Optional[List[str]] = None
    sub_category_ids: Optional[List[int]] = None

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, v: Any):
        return None if v is None else parse_string_or_array(v)

    @field_validator("sub_category_ids", mode="before")
    @classmethod
    def _subs(cls, v: Any):
        return None if v is None else parse_string_or_array(v)


class BookRead(BaseModel):
    id: int
    owner_id: int
    title: str
    author: str
    description: Optional[str] = None
    isbn: Optional[str] = None
    tags: List[str] = []
    cover_image_url: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    read_url: Optional[str] = None
    download_url: Optional[str] = None
    allow_chapter_contributions: bool
    category: Optional[CategoryBrief] = None
    sub_categories: List[SubCategoryRead] = []
    status: ContentStatus
    published_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BookDetail(BookRead):
    content: Optional[str] = None


class StatusUpdate(BaseModel):
    status: str


class ReorderRequest(BaseModel):
    order: List[int]


class SegmentOrderRequest(BaseModel):
    order: List[str]


class ContributorRequest(BaseModel):
    message: Optional[str] = None


class ContributorDecision(BaseModel):
    status: Literal["APPROVED", "REJECTED"]


class ContributorRead(BaseModel):
    id: int
    book_id: int
    user_id: int
    status: ContributorStatus
    message: Optional[str] = None
    created_at: Optional[datetime] = None
    decided_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ChapterCreate(BaseModel):
    title: str = Field(min_length=1)
    content: str = ""
    order: Optional[int] = None
    status: Optional[str] = None


class ChapterUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    content: Optional[str] = None
    order: Optional[int] = None
    status: Optional[str] = None


class ChapterRead(BaseModel):
    id: int
    book_id: int
    author_id: Optional[int] = None
    title: str
    content: str
    order: int
    status: ContentStatus
    word_count: int
    reading_time: int
    published_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AudioRead(BaseModel):
    id: int
    owner_id: int
    title: str
    description: Optional[str] = None
    tags: List[str] = []
    file_url: str
    public_id: str
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    total_duration: Optional[float] = None
    segment_urls: List[str] = []
    segment_public_ids: List[str] = []
    category: Optional[CategoryBrief] = None
    sub_categories: List[SubCategoryRead] = []
    status: ContentStatus
    published_at: Optional[datetime] = None
    last_merged_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AudioUpdate(_Tagged):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    category_id: Optional[int] = None
    total_duration: Optional[float] = None


class PublishRequest(BaseModel):
    merge: bool = True
    background: bool = False


class MergeRequest(BaseModel):
    publish: bool = False


class AudioChapterCreate(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    order: Optional[int] = None
    status: Optional[str] = None
    duration: Optional[float] = None
    word_count: Optional[int] = None


class AudioChapterUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    order: Optional[int] = None
    status: Optional[str] = None
    duration: Optional[float] = None
    word_count: Optional[int] = None


class AudioChapterRead(BaseModel):
    id: int
    audio_id: int
    author_id: Optional[int] = None
    title: str
    description: Optional[str] = None
    order: int
    status: ContentStatus
    duration: Optional[float] = None
    word_count: Optional[int] = None
    published_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AudioPartUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    order: Optional[int] = None
    status: Optional[str] = None
    duration: Optional[float] = None


class AudioPartRead(BaseModel):
    id: int
    chapter_id: int
    author_id: Optional[int] = None
    title: str
    description: Optional[str] = None
    order: int
    status: ContentStatus
    file_name: Optional[str] = None
    file_url: Optional[str] = None
    public_id: Optional[str] = None
    mime_type: Optional[str] = None
    duration: Optional[float] = None
    published_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

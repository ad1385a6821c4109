from fastapi import Depends
import json
import logging
import math
import os
import re
import time
import random
from typing import Any, List, Optional

from sqlalchemy import or_

from .errors import AuthenticationError, AuthorizationError, ValidationError
from .models import Role, User
from .users import current_user_optional

logger = logging.getLogger(__name__)

WORDS_PER_MINUTE = 200
_TAG_RE = re.compile(r"<[^>]+>")


# Dependency to get the current user (if any); inactive accounts included
async def get_current_user(user: Optional[User] = Depends(current_user_optional)) -> Optional[User]:
    return user


# Dependency to enforce authentication (non-admin user is OK)
async def require_authenticated_user(user: Optional[User] = Depends(current_user_optional)) -> User:
    if not user:
        raise AuthenticationError("Access token required")
    if not user.is_active:
        raise AuthorizationError("Account is deactivated", reason="NOT_ACTIVE")
    return user


async def require_admin_user(user: User = Depends(require_authenticated_user)) -> User:
    if user.role != Role.ADMIN:
        raise AuthorizationError("Admin access required", reason="NOT_OWNER")
    return user


def public_id_hint(filename: Optional[str]) -> str:
    """``my_song-1700000000000-123456789`` style id from an upload's name."""
    stem = os.path.splitext(os.path.basename(filename or "file"))[0]
    stem = re.sub(r"\s+", "_", stem).lower()
    stem = re.sub(r"[^\w\-]", "", stem) or "file"
    return f"{stem}-{int(time.time() * 1000)}-{random.randint(0, 10**9)}"


def parse_string_or_array(value: Any) -> List[str]:
    """Normalize a JSON array string, a comma list or a real list to ``[str]``."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        items: List[Any] = []
        for v in value:
            # multipart forms repeat the field or send one JSON/comma string
            items.extend(parse_string_or_array(v) if isinstance(v, str) else [v])
    else:
        raw = str(value).strip()
        if not raw:
            return []
        if raw.startswith("["):
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                return [str(p).strip() for p in parsed if p is not None and str(p).strip()]
        items = raw.split(",")
    return [str(i).strip() for i in items if i is not None and str(i).strip()]


def parse_int_list(value: Any, field: str) -> List[int]:
    out: List[int] = []
    for item in parse_string_or_array(value):
        try:
            out.append(int(item))
        except ValueError:
            raise ValidationError(f"Invalid {field}", errors=[{"field": field, "message": f"'{item}' is not an id"}])
    return out


def strip_html(text: Optional[str]) -> str:
    return _TAG_RE.sub(" ", text or "")


def word_count(text: Optional[str]) -> int:
    return len(strip_html(text).split())


def reading_time(words: int) -> int:
    """Minutes at 200 words per minute, rounded up."""
    return math.ceil(words / WORDS_PER_MINUTE) if words else 0


def search_clause(columns, term: Optional[str]):
    if not term or not term.strip():
        return None
    pattern = f"%{term.strip()}%"
    return or_(*[col.ilike(pattern) for col in columns])

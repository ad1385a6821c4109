"""DRAFT / PUBLISHED / ARCHIVED transitions shared by every publishable row."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select

from app.errors import InvalidTransitionError, ValidationError
from app.models import BookContributor, ContentStatus, ContributorStatus

logger = logging.getLogger(__name__)

_TRANSITIONS = {
    ContentStatus.DRAFT: {ContentStatus.PUBLISHED, ContentStatus.ARCHIVED},
    ContentStatus.PUBLISHED: {ContentStatus.ARCHIVED, ContentStatus.DRAFT},
    ContentStatus.ARCHIVED: {ContentStatus.DRAFT},
}


def normalize_status(value: Any) -> ContentStatus:
    if isinstance(value, ContentStatus):
        return value
    try:
        return ContentStatus(str(value or "").strip().upper())
    except ValueError:
        allowed = ", ".join(s.value for s in ContentStatus)
        raise ValidationError(
            f"Invalid status. Must be one of: {allowed}",
            errors=[{"field": "status", "message": f"must be one of {allowed}"}],
        )


def check_transition(current: ContentStatus, target: ContentStatus, *, explicit: bool = True) -> Optional[str]:
    """Return why ``current -> target`` is refused, or None.

    ``explicit`` is False for the publish shortcut, which may never move a
    published item back to draft.
    """
    if current == target:
        return None
    if target not in _TRANSITIONS[current]:
        return f"Cannot change status from {current.value} to {target.value}"
    if not explicit and current == ContentStatus.PUBLISHED and target == ContentStatus.DRAFT:
        return "Publishing cannot return an item to draft"
    return None


def apply_transition(entity: Any, target: Any, *, explicit: bool = True) -> bool:
    """Move ``entity`` to ``target``; returns False for a same-state no-op."""
    target = normalize_status(target)
    current = entity.status
    reason = check_transition(current, target, explicit=explicit)
    if reason:
        raise InvalidTransitionError(reason)
    if current == target:
        return False
    entity.status = target
    if target == ContentStatus.PUBLISHED and getattr(entity, "published_at", None) is None:
        entity.published_at = datetime.now(timezone.utc)
    logger.info("%s %s: %s -> %s", type(entity).__name__, entity.id, current.value, target.value)
    return True


def publish(entity: Any) -> bool:
    return apply_transition(entity, ContentStatus.PUBLISHED, explicit=False)


async def approved_contributor_ids(db, book_id: int) -> set:
    rows = await db.execute(
        select(BookContributor.user_id).where(
            BookContributor.book_id == book_id,
            BookContributor.status == ContributorStatus.APPROVED,
        )
    )
    return set(rows.scalars().all())


__all__ = [
    "normalize_status", "check_transition", "apply_transition", "publish",
    "approved_contributor_ids",
]

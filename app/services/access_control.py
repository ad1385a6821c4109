"""Single decision point for "may this actor do this to that".

``authorize`` is pure: it looks only at the actor and a small ``Resource``
descriptor, never at the database. Routers build the descriptor from the
rows they already loaded and call ``ensure_allowed``.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, FrozenSet, Mapping, NamedTuple, Optional

from app.errors import AuthenticationError, AuthorizationError, NotFoundError
from app.models import ContentStatus, Role


class Operation(str, enum.Enum):
    READ = "read"
    LIST = "list"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    REORDER = "reorder"


class Reason(str, enum.Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    NOT_OWNER = "NOT_OWNER"
    NOT_ACTIVE = "NOT_ACTIVE"
    PROTECTED_ADMIN = "PROTECTED_ADMIN"
    FORBIDDEN_SELF = "FORBIDDEN_SELF"


READ_OPS = {Operation.READ, Operation.LIST}

_MESSAGES = {
    Reason.UNAUTHENTICATED: "Authentication required",
    Reason.NOT_OWNER: "You do not have permission to perform this action",
    Reason.NOT_ACTIVE: "Account is deactivated",
    Reason.PROTECTED_ADMIN: "Admin accounts cannot be modified by other admins",
    Reason.FORBIDDEN_SELF: "You cannot perform this action on your own account",
}


class Decision(NamedTuple):
    allowed: bool
    reason: Optional[Reason] = None


ALLOW = Decision(True)


@dataclass(frozen=True)
class Resource:
    # "content" (Book/Audio), "child" (chapters/parts), "user", "taxonomy"
    kind: str
    owner_id: Optional[int] = None
    status: Optional[ContentStatus] = None
    parent_status: Optional[ContentStatus] = None
    author_id: Optional[int] = None
    collaborative: bool = False
    contributor_ids: FrozenSet[int] = field(default_factory=frozenset)
    target_id: Optional[int] = None
    target_role: Optional[Role] = None

    @property
    def publicly_visible(self) -> bool:
        if self.status != ContentStatus.PUBLISHED:
            return False
        return self.parent_status in (None, ContentStatus.PUBLISHED)

    @classmethod
    def content(cls, item: Any, *, contributor_ids=()) -> "Resource":
        return cls(
            kind="content",
            owner_id=item.owner_id,
            status=item.status,
            collaborative=bool(getattr(item, "allow_chapter_contributions", False)),
            contributor_ids=frozenset(contributor_ids),
        )

    @classmethod
    def child(cls, parent: Any, child: Any = None, *, contributor_ids=()) -> "Resource":
        return cls(
            kind="child",
            owner_id=parent.owner_id,
            status=child.status if child is not None else parent.status,
            parent_status=parent.status if child is not None else None,
            author_id=child.author_id if child is not None else None,
            collaborative=bool(getattr(parent, "allow_chapter_contributions", False)),
            contributor_ids=frozenset(contributor_ids),
        )

    @classmethod
    def user(cls, target: Any) -> "Resource":
        return cls(kind="user", target_id=target.id, target_role=target.role)


TAXONOMY = Resource(kind="taxonomy")


def _is_admin(actor: Any) -> bool:
    return getattr(actor, "role", None) == Role.ADMIN


def _authorize_user_target(actor: Any, resource: Resource, op: Operation,
                           changes: Optional[Mapping[str, Any]]) -> Decision:
    is_self = actor.id == resource.target_id
    if op == Operation.DELETE and is_self:
        return Decision(False, Reason.FORBIDDEN_SELF)
    if is_self:
        new_role = (changes or {}).get("role")
        if new_role is not None and new_role != actor.role:
            # nobody changes their own tier, admins included
            return Decision(False, Reason.FORBIDDEN_SELF)
        if op in READ_OPS or op == Operation.UPDATE:
            return ALLOW
    if not _is_admin(actor):
        return Decision(False, Reason.NOT_OWNER)
    if resource.target_role == Role.ADMIN and not is_self:
        if op == Operation.DELETE or op == Operation.UPDATE:
            return Decision(False, Reason.PROTECTED_ADMIN)
    return ALLOW


def authorize(actor: Any, resource: Resource, operation: Operation,
              changes: Optional[Mapping[str, Any]] = None) -> Decision:
    op = Operation(operation)

    # published material is readable by everyone, signed in or not
    if op in READ_OPS and resource.kind in ("content", "child", "taxonomy") and (
        resource.kind == "taxonomy" or resource.publicly_visible
    ):
        return ALLOW

    if actor is None:
        return Decision(False, Reason.UNAUTHENTICATED)
    if not getattr(actor, "is_active", False):
        return Decision(False, Reason.NOT_ACTIVE)

    if resource.kind == "user":
        return _authorize_user_target(actor, resource, op, changes)

    if resource.kind == "taxonomy":
        return ALLOW if _is_admin(actor) else Decision(False, Reason.NOT_OWNER)

    # new top-level content has no owner yet; any active account may create
    if resource.kind == "content" and op == Operation.CREATE and resource.owner_id is None:
        return ALLOW

    if resource.owner_id is not None and actor.id == resource.owner_id:
        return ALLOW

    is_contributor = resource.collaborative and actor.id in resource.contributor_ids
    if op in READ_OPS and (_is_admin(actor) or is_contributor):
        return ALLOW

    if resource.kind == "child" and is_contributor:
        if op in (Operation.CREATE, Operation.UPDATE, Operation.REORDER):
            return ALLOW
        if op == Operation.DELETE and resource.author_id == actor.id:
            return ALLOW

    return Decision(False, Reason.NOT_OWNER)


def ensure_allowed(actor: Any, resource: Resource, operation: Operation,
                   changes: Optional[Mapping[str, Any]] = None, *,
                   not_found: Optional[str] = None) -> None:
    """Raise the matching API error when ``authorize`` denies.

    Pass ``not_found`` on read paths so a hidden entity answers 404 with that
    message instead of disclosing that it exists.
    """
    decision = authorize(actor, resource, operation, changes)
    if decision.allowed:
        return
    if decision.reason == Reason.UNAUTHENTICATED and not (not_found and Operation(operation) in READ_OPS):
        raise AuthenticationError(_MESSAGES[decision.reason])
    if not_found and Operation(operation) in READ_OPS:
        raise NotFoundError(not_found)
    raise AuthorizationError(_MESSAGES[decision.reason], reason=decision.reason.value)


__all__ = [
    "Operation", "Reason", "Decision", "Resource", "TAXONOMY",
    "authorize", "ensure_allowed",
]

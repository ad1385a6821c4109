from __future__ import annotations

from types import SimpleNamespace

import pytest

from app.errors import AuthenticationError, AuthorizationError, NotFoundError
from app.models import ContentStatus, Role
from app.services.access_control import (
    TAXONOMY, Operation, Reason, Resource, authorize, ensure_allowed,
)


def actor(id_, role=Role.USER, active=True):
    return SimpleNamespace(id=id_, role=role, is_active=active)


OWNER = actor(1, Role.CREATOR)
STRANGER = actor(2)
CONTRIBUTOR = actor(3)
ADMIN = actor(9, Role.ADMIN)


def book(status=ContentStatus.DRAFT, collaborative=False):
    return SimpleNamespace(owner_id=OWNER.id, status=status, allow_chapter_contributions=collaborative)


def chapter(status=ContentStatus.DRAFT, author_id=OWNER.id):
    return SimpleNamespace(status=status, author_id=author_id)


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------
def test_published_content_is_public():
    res = Resource.content(book(ContentStatus.PUBLISHED))
    assert authorize(None, res, Operation.READ).allowed
    assert authorize(STRANGER, res, Operation.LIST).allowed


@pytest.mark.parametrize("status", [ContentStatus.DRAFT, ContentStatus.ARCHIVED])
def test_unpublished_content_visibility(status):
    res = Resource.content(book(status))
    assert authorize(None, res, Operation.READ) == (False, Reason.UNAUTHENTICATED)
    assert authorize(STRANGER, res, Operation.READ) == (False, Reason.NOT_OWNER)
    assert authorize(OWNER, res, Operation.READ).allowed
    assert authorize(ADMIN, res, Operation.READ).allowed


def test_only_owner_mutates_content():
    res = Resource.content(book(ContentStatus.PUBLISHED))
    for op in (Operation.UPDATE, Operation.DELETE):
        assert authorize(OWNER, res, op).allowed
        assert authorize(STRANGER, res, op) == (False, Reason.NOT_OWNER)
        # admins moderate users, not other people's books
        assert not authorize(ADMIN, res, op).allowed


def test_inactive_actor_is_refused():
    res = Resource.content(book())
    sleeper = actor(1, Role.CREATOR, active=False)
    assert authorize(sleeper, res, Operation.UPDATE) == (False, Reason.NOT_ACTIVE)


def test_any_active_account_may_create_content():
    assert authorize(STRANGER, Resource(kind="content"), Operation.CREATE).allowed
    assert authorize(None, Resource(kind="content"), Operation.CREATE) == (False, Reason.UNAUTHENTICATED)


# ---------------------------------------------------------------------------
# Children and contributors
# ---------------------------------------------------------------------------
def test_child_visible_only_when_whole_chain_is_published():
    published_book = book(ContentStatus.PUBLISHED)
    draft_book = book(ContentStatus.DRAFT)
    assert authorize(None, Resource.child(published_book, chapter(ContentStatus.PUBLISHED)), Operation.READ).allowed
    assert not authorize(None, Resource.child(published_book, chapter(ContentStatus.DRAFT)), Operation.READ).allowed
    assert not authorize(None, Resource.child(draft_book, chapter(ContentStatus.PUBLISHED)), Operation.READ).allowed


def test_contributor_rights_on_collaborative_book():
    parent = book(ContentStatus.PUBLISHED, collaborative=True)
    contributors = {CONTRIBUTOR.id}
    res = Resource.child(parent, contributor_ids=contributors)
    assert authorize(CONTRIBUTOR, res, Operation.CREATE).allowed
    assert authorize(CONTRIBUTOR, res, Operation.REORDER).allowed
    assert not authorize(STRANGER, res, Operation.CREATE).allowed

    own = Resource.child(parent, chapter(author_id=CONTRIBUTOR.id), contributor_ids=contributors)
    theirs = Resource.child(parent, chapter(author_id=OWNER.id), contributor_ids=contributors)
    assert authorize(CONTRIBUTOR, own, Operation.DELETE).allowed
    assert authorize(CONTRIBUTOR, theirs, Operation.UPDATE).allowed
    assert authorize(CONTRIBUTOR, theirs, Operation.DELETE) == (False, Reason.NOT_OWNER)
    assert authorize(CONTRIBUTOR, theirs, Operation.READ).allowed


def test_contributor_list_ignored_when_book_is_not_collaborative():
    res = Resource.child(book(collaborative=False), contributor_ids={CONTRIBUTOR.id})
    assert not authorize(CONTRIBUTOR, res, Operation.CREATE).allowed


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
def user_target(target):
    return Resource.user(SimpleNamespace(id=target.id, role=target.role))


def test_users_manage_themselves_but_not_their_role():
    res = user_target(STRANGER)
    assert authorize(STRANGER, res, Operation.UPDATE, {"first_name": "Ada"}).allowed
    assert authorize(STRANGER, res, Operation.UPDATE, {"role": Role.ADMIN}) == (False, Reason.FORBIDDEN_SELF)
    assert authorize(STRANGER, res, Operation.DELETE) == (False, Reason.FORBIDDEN_SELF)


def test_non_admin_cannot_touch_other_users():
    assert authorize(STRANGER, user_target(OWNER), Operation.READ) == (False, Reason.NOT_OWNER)


def test_admin_rules():
    assert authorize(ADMIN, user_target(STRANGER), Operation.UPDATE, {"role": Role.CREATOR}).allowed
    assert authorize(ADMIN, user_target(STRANGER), Operation.DELETE).allowed

    other_admin = actor(10, Role.ADMIN)
    assert authorize(ADMIN, user_target(other_admin), Operation.READ).allowed
    assert authorize(ADMIN, user_target(other_admin), Operation.UPDATE) == (False, Reason.PROTECTED_ADMIN)
    assert authorize(ADMIN, user_target(other_admin), Operation.DELETE) == (False, Reason.PROTECTED_ADMIN)
    assert authorize(ADMIN, user_target(ADMIN), Operation.DELETE) == (False, Reason.FORBIDDEN_SELF)
    assert authorize(ADMIN, user_target(ADMIN), Operation.UPDATE, {"role": Role.USER}) == \
        (False, Reason.FORBIDDEN_SELF)


def test_taxonomy_is_public_to_read_and_admin_to_write():
    assert authorize(None, TAXONOMY, Operation.LIST).allowed
    assert authorize(ADMIN, TAXONOMY, Operation.CREATE).allowed
    assert authorize(OWNER, TAXONOMY, Operation.DELETE) == (False, Reason.NOT_OWNER)


# ---------------------------------------------------------------------------
# ensure_allowed error mapping
# ---------------------------------------------------------------------------
def test_ensure_allowed_maps_reasons_to_errors():
    hidden = Resource.content(book())
    with pytest.raises(AuthenticationError):
        ensure_allowed(None, hidden, Operation.UPDATE)
    with pytest.raises(AuthorizationError) as exc:
        ensure_allowed(STRANGER, hidden, Operation.UPDATE)
    assert exc.value.reason == "NOT_OWNER"
    with pytest.raises(NotFoundError):
        ensure_allowed(STRANGER, hidden, Operation.READ, not_found="Book not found")
    with pytest.raises(NotFoundError):
        ensure_allowed(None, hidden, Operation.READ, not_found="Book not found")

from __future__ import annotations

import io
from contextlib import contextmanager

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from app.background import drain
from app.main import create_app
from app.models import Role
from app.settings.config import Settings
from app.users import get_jwt_strategy
from conftest import Database, FailingTranscoder, run


class Api:
    def __init__(self, client: TestClient, db, store, transcoder):
        self.client = client
        self.db = db
        self.store = store
        self.transcoder = transcoder

    def user(self, email, role=Role.USER, **kw):
        user = run(self.db.add_user(email, role=role, **kw))
        token = run(get_jwt_strategy().write_token(user))
        user.headers = {"Authorization": f"Bearer {token}"}
        return user

    def settle(self):
        """Wait for fire-and-forget work (blob deletes, background merges)."""
        self.client.portal.call(drain)


@contextmanager
def _api(db, store, transcoder, tmp_path, **overrides):
    overrides.setdefault("RUN_DB_CREATE_ALL", False)
    settings = Settings(MAX_UPLOAD_MB=1, UPLOAD_ROOT=str(tmp_path / "uploads"), **overrides)
    app = create_app(settings, blob_store=store, transcoder=transcoder, session_maker=db.session_maker)
    with TestClient(app) as client:
        yield Api(client, db, store, transcoder)


@pytest.fixture()
def api(db, blob_store, transcoder, tmp_path):
    with _api(db, blob_store, transcoder, tmp_path) as harness:
        yield harness


def _png(size=(40, 60)):
    buf = io.BytesIO()
    Image.new("RGB", size, "red").save(buf, format="PNG")
    return buf.getvalue()


def _book(api, owner, **form):
    form.setdefault("title", "The Long Road")
    files = form.pop("files", None)
    resp = api.client.post("/api/books", data=form, files=files, headers=owner.headers)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def _audio(api, owner, content=b"MAIN", title="Episode 1"):
    resp = api.client.post(
        "/api/audio",
        data={"title": title},
        files={"audio_file": ("episode.mp3", content, "audio/mpeg")},
        headers=owner.headers,
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


# ---------------------------------------------------------------------------
# Envelope, auth
# ---------------------------------------------------------------------------
def test_health(api):
    resp = api.client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "success" and "timestamp" in body


def test_register_login_and_me(api):
    resp = api.client.post("/api/auth/register", json={"email": "new@example.com", "password": "s3cret-pass"})
    assert resp.status_code == 201, resp.text
    assert resp.json()["role"] == "USER"

    resp = api.client.post("/api/auth/jwt/login", data={"username": "new@example.com", "password": "s3cret-pass"})
    assert resp.status_code == 200
    token = resp.json()["access_token"]

    me = api.client.get("/api/users/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["email"] == "new@example.com"
    assert me.json()["last_login"] is not None


def test_self_registration_cannot_pick_admin(api):
    resp = api.client.post("/api/auth/register",
                           json={"email": "sneaky@example.com", "password": "s3cret-pass", "role": "ADMIN"})
    assert resp.status_code == 400
    assert resp.json()["errors"][0]["field"] == "role"


def test_bad_login_uses_envelope(api):
    resp = api.client.post("/api/auth/jwt/login", data={"username": "ghost@example.com", "password": "nope"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["status"] == "error"
    assert body["message"] == "Invalid credentials"


def test_missing_token_is_401(api):
    resp = api.client.post("/api/books", data={"title": "x"})
    assert resp.status_code == 401
    assert resp.json()["code"] == "UNAUTHENTICATED"


def test_inactive_account_is_403(api):
    sleeper = api.user("sleeper@example.com", is_active=False)
    resp = api.client.post("/api/books", data={"title": "x"}, headers=sleeper.headers)
    assert resp.status_code == 403
    assert resp.json()["code"] == "NOT_ACTIVE"


def test_users_router_only_serves_me(api):
    admin = api.user("admin@example.com", Role.ADMIN)
    other_admin = api.user("root@example.com", Role.ADMIN)

    assert api.client.delete(f"/api/users/{other_admin.id}", headers=admin.headers).status_code in (403, 404)
    resp = api.client.patch(f"/api/users/{other_admin.id}", json={"is_active": False}, headers=admin.headers)
    assert resp.status_code in (403, 404)
    assert api.client.delete(f"/api/users/{admin.id}", headers=admin.headers).status_code in (403, 404)

    still_there = api.client.get(f"/api/admin/users/{other_admin.id}", headers=admin.headers)
    assert still_there.status_code == 200
    assert still_there.json()["data"]["is_active"] is True
    assert api.client.get("/api/users/me", headers=admin.headers).status_code == 200


def test_cors_is_closed_unless_debugging(db, blob_store, transcoder, tmp_path):
    origin = {"Origin": "https://elsewhere.example"}
    with _api(db, blob_store, transcoder, tmp_path) as harness:
        assert "access-control-allow-origin" not in harness.client.get("/health", headers=origin).headers
    with _api(db, blob_store, transcoder, tmp_path, DEBUG=True) as harness:
        assert harness.client.get("/health", headers=origin).headers["access-control-allow-origin"] == "*"
    with _api(db, blob_store, transcoder, tmp_path, CORS_ORIGINS=["https://elsewhere.example"]) as harness:
        resp = harness.client.get("/health", headers=origin)
        assert resp.headers["access-control-allow-origin"] == "https://elsewhere.example"


def test_startup_creates_tables_on_the_injected_database(blob_store, transcoder, tmp_path):
    fresh = Database(tmp_path / "fresh.db")
    try:
        with _api(fresh, blob_store, transcoder, tmp_path, RUN_DB_CREATE_ALL=True) as harness:
            resp = harness.client.get("/api/books")
            assert resp.status_code == 200
            assert resp.json()["data"] == []
    finally:
        run(fresh.engine.dispose())


# ---------------------------------------------------------------------------
# Books
# ---------------------------------------------------------------------------
def test_book_visibility_follows_status(api):
    owner = api.user("owner@example.com", Role.CREATOR)
    stranger = api.user("stranger@example.com")
    book = _book(api, owner, tags='["epic", "saga"]')
    assert book["status"] == "DRAFT"
    assert book["author"] == "Unknown Author"
    assert book["tags"] == ["epic", "saga"]

    assert api.client.get(f"/api/books/{book['id']}").status_code == 404
    assert api.client.get(f"/api/books/{book['id']}", headers=stranger.headers).status_code == 404
    assert api.client.get(f"/api/books/{book['id']}", headers=owner.headers).status_code == 200
    assert api.client.get("/api/books").json()["pagination"]["totalCount"] == 0

    resp = api.client.post(f"/api/books/{book['id']}/publish", headers=owner.headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["published_at"] is not None

    assert api.client.get(f"/api/books/{book['id']}").status_code == 200
    listing = api.client.get("/api/books", params={"search": "long"}).json()
    assert [b["id"] for b in listing["data"]] == [book["id"]]


def test_only_owner_edits_book(api):
    owner = api.user("owner@example.com", Role.CREATOR)
    stranger = api.user("stranger@example.com")
    book = _book(api, owner, status="PUBLISHED")

    resp = api.client.put(f"/api/books/{book['id']}", data={"title": "Mine now"}, headers=stranger.headers)
    assert resp.status_code == 403
    assert resp.json()["code"] == "NOT_OWNER"
    resp = api.client.delete(f"/api/books/{book['id']}", headers=stranger.headers)
    assert resp.status_code == 403


def test_book_status_transitions(api):
    owner = api.user("owner@example.com", Role.CREATOR)
    book = _book(api, owner)
    url = f"/api/books/{book['id']}/status"

    assert api.client.patch(url, json={"status": "ARCHIVED"}, headers=owner.headers).status_code == 200
    resp = api.client.patch(url, json={"status": "PUBLISHED"}, headers=owner.headers)
    assert resp.status_code == 400
    assert api.client.post(f"/api/books/{book['id']}/publish", headers=owner.headers).status_code == 400
    resp = api.client.patch(url, json={"status": "bogus"}, headers=owner.headers)
    assert resp.status_code == 400
    assert resp.json()["errors"][0]["field"] == "status"


def test_mine_lists_all_statuses(api):
    owner = api.user("owner@example.com", Role.CREATOR)
    _book(api, owner, title="Draft one")
    _book(api, owner, title="Live one", status="PUBLISHED")
    mine = api.client.get("/api/books/mine", headers=owner.headers).json()
    assert mine["pagination"]["totalCount"] == 2
    drafts = api.client.get("/api/books/mine", params={"status": "draft"}, headers=owner.headers).json()
    assert [b["title"] for b in drafts["data"]] == ["Draft one"]


def test_cover_replacement_destroys_old_blob(api):
    owner = api.user("owner@example.com", Role.CREATOR)
    book = _book(api, owner, files={"cover_image": ("cover.png", _png(), "image/png")})
    old_cover = book["cover_image_url"]
    old_id = next(pid for pid in api.store.blobs if pid.startswith("book-covers/"))
    assert api.store.blobs[old_id][:2] == b"\xff\xd8"  # re-encoded as JPEG

    resp = api.client.put(f"/api/books/{book['id']}", files={"cover_image": ("new.png", _png((10, 10)), "image/png")},
                          headers=owner.headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["cover_image_url"] != old_cover
    api.settle()
    assert api.store.destroyed == [old_id]


def test_unreadable_cover_is_rejected(api):
    owner = api.user("owner@example.com", Role.CREATOR)
    resp = api.client.post("/api/books", data={"title": "Bad cover"},
                           files={"cover_image": ("cover.png", b"not an image", "image/png")},
                           headers=owner.headers)
    assert resp.status_code == 400
    assert api.store.blobs == {}


def test_book_download_supports_ranges(api):
    owner = api.user("owner@example.com", Role.CREATOR)
    book = _book(api, owner, status="PUBLISHED",
                 files={"book_file": ("novel.txt", b"Once upon a time", "text/plain")})
    assert book["download_url"] == f"/api/books/{book['id']}/download"

    resp = api.client.get(book["download_url"], headers={"Range": "bytes=5-8"})
    assert resp.status_code == 206
    assert resp.content == b"upon"
    assert resp.headers["content-range"] == "bytes 5-8/16"
    assert resp.headers["content-disposition"].startswith("attachment;")

    resp = api.client.get(book["read_url"])
    assert resp.status_code == 200
    assert resp.content == b"Once upon a time"

    resp = api.client.get(book["download_url"], headers={"Range": "bytes=99-"})
    assert resp.status_code == 416


def test_book_file_fills_missing_content(api):
    owner = api.user("owner@example.com", Role.CREATOR)
    book = _book(api, owner, files={"book_file": ("novel.txt", b"Once upon a time", "text/plain")})
    assert book["content"] == "Once upon a time"

    book = _book(api, owner, content="Typed by hand",
                 files={"book_file": ("novel.txt", b"Once upon a time", "text/plain")})
    assert book["content"] == "Typed by hand"

    resp = api.client.put(f"/api/books/{book['id']}",
                          files={"book_file": ("second.txt", b"A second draft", "text/plain")},
                          headers=owner.headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["content"] == "A second draft"

    resp = api.client.put(f"/api/books/{book['id']}",
                          files={"book_file": ("scan.pdf", b"%PDF-1.7", "application/pdf")},
                          headers=owner.headers)
    assert resp.json()["data"]["content"] == "A second draft"
    assert resp.json()["data"]["file_name"] == "scan.pdf"


def test_delete_book_cascades_and_cleans_blobs(api):
    owner = api.user("owner@example.com", Role.CREATOR)
    book = _book(api, owner, files={"book_file": ("novel.txt", b"text", "text/plain")})
    api.client.post(f"/api/books/{book['id']}/chapters", json={"title": "One"}, headers=owner.headers)

    assert api.client.delete(f"/api/books/{book['id']}", headers=owner.headers).status_code == 200
    api.settle()
    assert len(api.store.destroyed) == 1
    assert api.client.get(f"/api/books/{book['id']}", headers=owner.headers).status_code == 404
    assert api.client.get(f"/api/books/{book['id']}/chapters", headers=owner.headers).status_code == 404


# ---------------------------------------------------------------------------
# Chapters
# ---------------------------------------------------------------------------
def _chapter(api, user, book_id, **payload):
    payload.setdefault("title", "Chapter")
    return api.client.post(f"/api/books/{book_id}/chapters", json=payload, headers=user.headers)


def test_chapter_ordering(api):
    owner = api.user("owner@example.com", Role.CREATOR)
    book = _book(api, owner)
    ids = []
    for n in range(3):
        resp = _chapter(api, owner, book["id"], title=f"Ch {n + 1}", content="<p>a few words here</p>")
        assert resp.status_code == 201
        ids.append(resp.json()["data"]["id"])
        assert resp.json()["data"]["order"] == n + 1
    assert resp.json()["data"]["word_count"] == 4
    assert resp.json()["data"]["reading_time"] == 1

    resp = _chapter(api, owner, book["id"], order=6)
    assert resp.status_code == 400
    assert "must be 4" in resp.json()["message"]

    resp = api.client.put(f"/api/chapters/{ids[0]}", json={"order": 3}, headers=owner.headers)
    assert resp.status_code == 400

    url = f"/api/books/{book['id']}/chapters/reorder"
    resp = api.client.patch(url, json={"order": [ids[2], ids[0], ids[1]]}, headers=owner.headers)
    assert resp.status_code == 200
    assert [(c["id"], c["order"]) for c in resp.json()["data"]] == [(ids[2], 1), (ids[0], 2), (ids[1], 3)]

    assert api.client.patch(url, json={"order": ids[:2]}, headers=owner.headers).status_code == 400

    assert api.client.delete(f"/api/chapters/{ids[2]}", headers=owner.headers).status_code == 200
    listing = api.client.get(f"/api/books/{book['id']}/chapters", params={"include_unpublished": True},
                             headers=owner.headers).json()["data"]
    assert [(c["id"], c["order"]) for c in listing] == [(ids[0], 1), (ids[1], 2)]


def test_public_only_sees_published_chapters(api):
    owner = api.user("owner@example.com", Role.CREATOR)
    reader = api.user("reader@example.com")
    book = _book(api, owner, status="PUBLISHED")
    _chapter(api, owner, book["id"], title="Live", status="PUBLISHED")
    hidden = _chapter(api, owner, book["id"], title="Hidden").json()["data"]

    for headers in ({}, reader.headers):
        listing = api.client.get(f"/api/books/{book['id']}/chapters", params={"include_unpublished": True},
                                 headers=headers).json()["data"]
        assert [c["title"] for c in listing] == ["Live"]
    assert api.client.get(f"/api/chapters/{hidden['id']}").status_code == 404
    assert api.client.get(f"/api/chapters/{hidden['id']}", headers=owner.headers).status_code == 200


def test_contributor_workflow(api):
    owner = api.user("owner@example.com", Role.CREATOR)
    helper = api.user("helper@example.com")
    book = _book(api, owner, status="PUBLISHED", allow_chapter_contributions="true")
    owners_chapter = _chapter(api, owner, book["id"], title="Owner's").json()["data"]

    assert _chapter(api, helper, book["id"]).status_code == 403

    resp = api.client.post(f"/api/books/{book['id']}/contributors", json={"message": "let me help"},
                           headers=helper.headers)
    assert resp.status_code == 201
    assert resp.json()["data"]["status"] == "PENDING"
    assert api.client.post(f"/api/books/{book['id']}/contributors", headers=helper.headers).status_code == 409

    resp = api.client.patch(f"/api/books/{book['id']}/contributors/{helper.id}", json={"status": "APPROVED"},
                            headers=owner.headers)
    assert resp.status_code == 200

    mine = _chapter(api, helper, book["id"], title="Helper's")
    assert mine.status_code == 201
    assert mine.json()["data"]["author_id"] == helper.id

    resp = api.client.put(f"/api/chapters/{owners_chapter['id']}", json={"content": "edited"},
                          headers=helper.headers)
    assert resp.status_code == 200
    assert api.client.delete(f"/api/chapters/{owners_chapter['id']}", headers=helper.headers).status_code == 403
    assert api.client.delete(f"/api/chapters/{mine.json()['data']['id']}", headers=helper.headers).status_code == 200


# ---------------------------------------------------------------------------
# Audio
# ---------------------------------------------------------------------------
def test_audio_upload_validation(api):
    owner = api.user("owner@example.com", Role.CREATOR)
    resp = api.client.post("/api/audio", data={"title": "Bad"},
                           files={"audio_file": ("x.txt", b"text", "text/plain")}, headers=owner.headers)
    assert resp.status_code == 400

    too_big = b"0" * (1024 * 1024 + 1)
    resp = api.client.post("/api/audio", data={"title": "Huge"},
                           files={"audio_file": ("x.mp3", too_big, "audio/mpeg")}, headers=owner.headers)
    assert resp.status_code == 413
    assert api.store.blobs == {}


def test_audio_drafts_are_private(api):
    owner = api.user("owner@example.com", Role.CREATOR)
    audio = _audio(api, owner)
    assert audio["status"] == "DRAFT"
    assert api.client.get(f"/api/audio/{audio['id']}").status_code == 404
    assert api.client.get(f"/api/audio/{audio['id']}/stream").status_code == 404
    drafts = api.client.get("/api/audio/drafts", headers=owner.headers).json()
    assert [a["id"] for a in drafts["data"]] == [audio["id"]]
    assert api.client.get("/api/audio").json()["data"] == []


def test_segments_merge_and_stream(api):
    owner = api.user("owner@example.com", Role.CREATOR)
    audio = _audio(api, owner)
    seg_ids = []
    for name, data in (("s1.mp3", b"S1"), ("s2.mp3", b"S2"), ("s3.mp3", b"S3")):
        resp = api.client.post(f"/api/audio/{audio['id']}/segments",
                               files={"file": (name, data, "audio/mpeg")}, headers=owner.headers)
        assert resp.status_code == 201
        seg_ids.append(resp.json()["data"]["segment"]["public_id"])

    resp = api.client.patch(f"/api/audio/{audio['id']}/segments/order",
                            json={"order": [seg_ids[1], seg_ids[0], seg_ids[2]]}, headers=owner.headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["segment_public_ids"] == [seg_ids[1], seg_ids[0], seg_ids[2]]

    resp = api.client.delete(f"/api/audio/{audio['id']}/segments", params={"public_id": seg_ids[2]},
                             headers=owner.headers)
    assert resp.status_code == 200
    api.settle()
    assert api.store.destroyed == [seg_ids[2]]

    resp = api.client.post(f"/api/audio/{audio['id']}/publish", json={"merge": True}, headers=owner.headers)
    assert resp.status_code == 200, resp.text
    data = resp.json()["data"]
    assert data["merged"] is True and data["status"] == "PUBLISHED"
    assert data["mime_type"] == "audio/mp4"
    assert api.transcoder.calls == [[b"MAIN", b"S2", b"S1"]]

    resp = api.client.get(f"/api/audio/{audio['id']}/stream", headers={"Range": "bytes=4-5"})
    assert resp.status_code == 206
    assert resp.content == b"S2"
    assert resp.headers["accept-ranges"] == "bytes"


def test_segment_reorder_rejects_partial_lists(api):
    owner = api.user("owner@example.com", Role.CREATOR)
    audio = _audio(api, owner)
    for name in ("a.mp3", "b.mp3"):
        api.client.post(f"/api/audio/{audio['id']}/segments", files={"file": (name, b"x", "audio/mpeg")},
                        headers=owner.headers)
    current = api.client.get(f"/api/audio/{audio['id']}", headers=owner.headers).json()["data"]
    resp = api.client.patch(f"/api/audio/{audio['id']}/segments/order",
                            json={"order": current["segment_public_ids"][:1]}, headers=owner.headers)
    assert resp.status_code == 400


def test_merge_fallback_publishes_with_warning(db, blob_store, tmp_path):
    with _api(db, blob_store, FailingTranscoder(), tmp_path) as api:
        owner = api.user("owner@example.com", Role.CREATOR)
        audio = _audio(api, owner)
        api.client.post(f"/api/audio/{audio['id']}/segments", files={"file": ("s.mp3", b"S", "audio/mpeg")},
                        headers=owner.headers)

        resp = api.client.post(f"/api/audio/{audio['id']}/merge", json={"publish": False}, headers=owner.headers)
        assert resp.status_code == 500
        assert resp.json()["message"] == "Audio merge failed"

        resp = api.client.post(f"/api/audio/{audio['id']}/publish", headers=owner.headers)
        assert resp.status_code == 200
        body = resp.json()
        assert body["warning"]
        assert body["data"]["status"] == "PUBLISHED"
        assert body["data"]["merged"] is False
        assert body["data"]["public_id"] == audio["public_id"]


def test_background_publish_merges_later(api):
    owner = api.user("owner@example.com", Role.CREATOR)
    audio = _audio(api, owner)
    api.client.post(f"/api/audio/{audio['id']}/segments", files={"file": ("s.mp3", b"S", "audio/mpeg")},
                    headers=owner.headers)
    resp = api.client.post(f"/api/audio/{audio['id']}/publish", json={"background": True}, headers=owner.headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["merge_queued"] is True

    api.settle()
    fresh = api.client.get(f"/api/audio/{audio['id']}").json()["data"]
    assert fresh["public_id"].startswith("audio-merged/")
    assert fresh["last_merged_at"] is not None


def test_delete_audio_removes_every_blob(api):
    owner = api.user("owner@example.com", Role.CREATOR)
    audio = _audio(api, owner)
    api.client.post(f"/api/audio/{audio['id']}/segments", files={"file": ("s.mp3", b"S", "audio/mpeg")},
                    headers=owner.headers)
    chapter = api.client.post(f"/api/audio/{audio['id']}/chapters", json={"title": "Intro"},
                              headers=owner.headers).json()["data"]
    api.client.post(f"/api/audio/chapters/{chapter['id']}/parts", data={"title": "Part"},
                    files={"file": ("p.mp3", b"P", "audio/mpeg")}, headers=owner.headers)
    expected = set(api.store.blobs)
    assert len(expected) == 3

    assert api.client.delete(f"/api/audio/{audio['id']}", headers=owner.headers).status_code == 200
    api.settle()
    assert set(api.store.destroyed) == expected
    assert api.client.get(f"/api/audio/chapters/{chapter['id']}", headers=owner.headers).status_code == 404


# ---------------------------------------------------------------------------
# Audio chapters and parts
# ---------------------------------------------------------------------------
def test_audio_chapters_and_parts(api):
    owner = api.user("owner@example.com", Role.CREATOR)
    stranger = api.user("stranger@example.com")
    audio = _audio(api, owner)
    base = f"/api/audio/{audio['id']}/chapters"

    first = api.client.post(base, json={"title": "One"}, headers=owner.headers).json()["data"]
    second = api.client.post(base, json={"title": "Two", "order": 2}, headers=owner.headers).json()["data"]
    assert (first["order"], second["order"]) == (1, 2)
    assert api.client.post(base, json={"title": "Skip", "order": 5}, headers=owner.headers).status_code == 400
    assert api.client.post(base, json={"title": "Nope"}, headers=stranger.headers).status_code == 403

    resp = api.client.patch(f"{base}/reorder", json={"order": [second["id"], first["id"]]}, headers=owner.headers)
    assert [c["title"] for c in resp.json()["data"]] == ["Two", "One"]

    parts_url = f"/api/audio/chapters/{first['id']}/parts"
    with_file = api.client.post(parts_url, data={"title": "A"}, files={"file": ("a.mp3", b"A", "audio/mpeg")},
                                headers=owner.headers)
    assert with_file.status_code == 201, with_file.text
    without_file = api.client.post(parts_url, data={"title": "B"}, headers=owner.headers)
    assert without_file.status_code == 201
    assert without_file.json()["data"]["order"] == 2
    assert without_file.json()["data"]["file_url"] is None

    part_id = with_file.json()["data"]["id"]
    part_blob = with_file.json()["data"]["public_id"]
    assert api.client.delete(f"/api/audio/parts/{part_id}", headers=owner.headers).status_code == 200
    api.settle()
    assert api.store.destroyed == [part_blob]

    remaining = api.client.get(parts_url, params={"include_unpublished": True}, headers=owner.headers).json()["data"]
    assert [(p["title"], p["order"]) for p in remaining] == [("B", 1)]

    assert api.client.delete(f"/api/audio/chapters/{second['id']}", headers=owner.headers).status_code == 200
    chapters = api.client.get(base, params={"include_unpublished": True}, headers=owner.headers).json()["data"]
    assert [(c["title"], c["order"]) for c in chapters] == [("One", 1)]


def test_published_audio_hides_draft_parts(api):
    owner = api.user("owner@example.com", Role.CREATOR)
    audio = _audio(api, owner)
    api.client.post(f"/api/audio/{audio['id']}/publish", json={"merge": False}, headers=owner.headers)
    chapter = api.client.post(f"/api/audio/{audio['id']}/chapters", json={"title": "Ch", "status": "PUBLISHED"},
                              headers=owner.headers).json()["data"]
    draft_part = api.client.post(f"/api/audio/chapters/{chapter['id']}/parts", data={"title": "Draft"},
                                 headers=owner.headers).json()["data"]

    assert api.client.get(f"/api/audio/chapters/{chapter['id']}").status_code == 200
    assert api.client.get(f"/api/audio/chapters/{chapter['id']}/parts").json()["data"] == []
    assert api.client.get(f"/api/audio/parts/{draft_part['id']}").status_code == 404


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------
def test_category_admin_and_assignment(api):
    admin = api.user("admin@example.com", Role.ADMIN)
    owner = api.user("owner@example.com", Role.CREATOR)

    resp = api.client.post("/api/categories", json={"name": "Fiction"}, headers=owner.headers)
    assert resp.status_code == 403

    fiction = api.client.post("/api/categories", json={"name": "Fiction"}, headers=admin.headers).json()["data"]
    assert api.client.post("/api/categories", json={"name": "fiction"}, headers=admin.headers).status_code == 409
    science = api.client.post("/api/categories", json={"name": "Science"}, headers=admin.headers).json()["data"]

    fantasy = api.client.post("/api/categories/subcategories", json={"category_id": fiction["id"], "name": "Fantasy"},
                              headers=admin.headers).json()["data"]
    resp = api.client.post("/api/categories/subcategories", json={"category_id": fiction["id"], "name": "FANTASY"},
                           headers=admin.headers)
    assert resp.status_code == 409
    api.client.post("/api/categories/subcategories", json={"category_id": fiction["id"], "name": "Old",
                                                           "is_active": False}, headers=admin.headers)

    listing = api.client.get("/api/categories").json()["data"]
    by_name = {c["name"]: c for c in listing}
    assert [s["name"] for s in by_name["Fiction"]["sub_categories"]] == ["Fantasy"]

    resp = api.client.post("/api/books", data={"title": "Mismatch", "category_id": science["id"],
                                               "sub_category_ids": f"[{fantasy['id']}]"}, headers=owner.headers)
    assert resp.status_code == 400

    book = _book(api, owner, sub_category_ids=str(fantasy["id"]))
    assert book["category"]["id"] == fiction["id"]
    assert [s["id"] for s in book["sub_categories"]] == [fantasy["id"]]

    assert api.client.delete(f"/api/categories/subcategories/{fantasy['id']}",
                             headers=admin.headers).status_code == 400
    assert api.client.delete(f"/api/categories/{fiction['id']}", headers=admin.headers).status_code == 400
    assert api.client.delete(f"/api/categories/{science['id']}", headers=admin.headers).status_code == 200

    resp = api.client.put(f"/api/categories/{fiction['id']}", json={"is_active": False}, headers=admin.headers)
    assert resp.status_code == 200
    assert api.client.get(f"/api/categories/{fiction['id']}").status_code == 404
    assert api.client.get(f"/api/categories/{fiction['id']}", headers=admin.headers).status_code == 200


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------
def test_admin_user_listing_and_stats(api):
    admin = api.user("admin@example.com", Role.ADMIN)
    api.user("ada@example.com", first_name="Ada", phone="555-0100")
    api.user("bob@example.com", Role.CREATOR, is_active=False)

    resp = api.client.get("/api/admin/users", params={"search": "ada"}, headers=admin.headers)
    assert [u["email"] for u in resp.json()["data"]] == ["ada@example.com"]

    resp = api.client.get("/api/admin/users", params={"status": "inactive"}, headers=admin.headers)
    assert [u["email"] for u in resp.json()["data"]] == ["bob@example.com"]

    resp = api.client.get("/api/admin/users", params={"sort_by": "email", "sort_order": "asc", "limit": 2},
                          headers=admin.headers).json()
    assert [u["email"] for u in resp["data"]] == ["ada@example.com", "admin@example.com"]
    assert resp["pagination"]["hasNextPage"] is True

    stats = api.client.get("/api/admin/users/stats", headers=admin.headers).json()["data"]
    assert stats["total_users"] == 3
    assert stats["active_users"] == 2
    assert stats["by_role"] == {"USER": 1, "CREATOR": 1, "MODERATOR": 0, "ADMIN": 1}

    reader = api.user("reader@example.com")
    assert api.client.get("/api/admin/users", headers=reader.headers).status_code == 403


def test_admin_user_mutations(api):
    admin = api.user("admin@example.com", Role.ADMIN)
    other_admin = api.user("root@example.com", Role.ADMIN)
    ada = api.user("ada@example.com", phone="555-0100")
    bob = api.user("bob@example.com", phone="555-0199")

    resp = api.client.put(f"/api/admin/users/{ada.id}", json={"role": "CREATOR", "first_name": "Ada"},
                          headers=admin.headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["role"] == "CREATOR"

    resp = api.client.put(f"/api/admin/users/{ada.id}", json={"role": "ADMIN"}, headers=admin.headers)
    assert resp.json()["data"]["is_superuser"] is True

    resp = api.client.put(f"/api/admin/users/{bob.id}", json={"phone": "555-0100"}, headers=admin.headers)
    assert resp.status_code == 409
    resp = api.client.put(f"/api/admin/users/{bob.id}", json={"role": "WIZARD"}, headers=admin.headers)
    assert resp.status_code == 400

    resp = api.client.put(f"/api/admin/users/{other_admin.id}", json={"first_name": "X"}, headers=admin.headers)
    assert resp.status_code == 403
    assert resp.json()["code"] == "PROTECTED_ADMIN"
    resp = api.client.delete(f"/api/admin/users/{admin.id}", headers=admin.headers)
    assert resp.status_code == 403
    assert resp.json()["code"] == "FORBIDDEN_SELF"
    resp = api.client.put(f"/api/admin/users/{admin.id}", json={"role": "USER"}, headers=admin.headers)
    assert resp.json()["code"] == "FORBIDDEN_SELF"


def test_admin_deletes_user_and_their_content(api):
    admin = api.user("admin@example.com", Role.ADMIN)
    creator = api.user("creator@example.com", Role.CREATOR)
    book = _book(api, creator, files={"book_file": ("novel.txt", b"text", "text/plain")})
    audio = _audio(api, creator)

    content = api.client.get(f"/api/admin/users/{creator.id}/content", headers=admin.headers).json()["data"]
    assert [b["id"] for b in content["books"]] == [book["id"]]
    assert [a["id"] for a in content["audio"]] == [audio["id"]]
    only_audio = api.client.get(f"/api/admin/users/{creator.id}/content", params={"type": "audio"},
                                headers=admin.headers).json()["data"]
    assert "books" not in only_audio

    book_file = next(pid for pid in api.store.blobs if pid.startswith("book-files/"))

    assert api.client.delete(f"/api/admin/users/{creator.id}", headers=admin.headers).status_code == 200
    api.settle()
    assert sorted(api.store.destroyed) == sorted([audio["public_id"], book_file])
    assert api.client.get(f"/api/admin/users/{creator.id}", headers=admin.headers).status_code == 404
    assert api.client.get(f"/api/books/{book['id']}", headers=admin.headers).status_code == 404

from __future__ import annotations

import pytest

from app.blobstore import LocalBlobStore, destroy_quietly
from app.errors import BlobStoreError
from conftest import run


@pytest.fixture()
def store(tmp_path):
    return LocalBlobStore(tmp_path / "uploads", public_base_url="http://cdn.test/")


def test_upload_fetch_and_range(store, tmp_path):
    async def scenario():
        blob = await store.upload(b"hello world", folder="audio-segments", resource_kind="video",
                                  public_id_hint="take-1", filename="Take 1.MP3")
        assert blob.public_id == "audio-segments/take-1.mp3"
        assert blob.url == "http://cdn.test/uploads/audio-segments/take-1.mp3"
        assert blob.size_bytes == 11
        assert await store.content_length(blob.url, blob.public_id) == 11

        dest = tmp_path / "copy.bin"
        await store.fetch_to(blob.url, blob.public_id, dest)
        assert dest.read_bytes() == b"hello world"

        chunks = [c async for c in store.iter_range(blob.url, blob.public_id, 6, 10)]
        assert b"".join(chunks) == b"world"

    run(scenario())


def test_destroy_prunes_empty_folders(store):
    async def scenario():
        blob = await store.upload(b"x", folder="book-covers/2024", resource_kind="image", public_id_hint="c")
        await store.destroy(blob.public_id, resource_kind="image")
        assert not (store.root / "book-covers").exists()
        # destroying twice is harmless
        await store.destroy(blob.public_id, resource_kind="image")

    run(scenario())


def test_ids_cannot_escape_the_root(store):
    async def scenario():
        with pytest.raises(BlobStoreError):
            await store.content_length("", "../../etc/passwd")

    run(scenario())


def test_fetch_of_missing_blob_fails(store, tmp_path):
    async def scenario():
        with pytest.raises(BlobStoreError):
            await store.fetch_to("", "audio-files/nope.mp3", tmp_path / "out")

    run(scenario())


def test_destroy_quietly_swallows_failures(blob_store):
    class Broken:
        async def destroy(self, public_id, *, resource_kind):
            raise BlobStoreError("remote said no")

    async def scenario():
        assert await destroy_quietly(Broken(), "audio-files/a", resource_kind="video") is False
        assert await destroy_quietly(blob_store, None, resource_kind="video") is False
        assert await destroy_quietly(blob_store, "audio-files/a", resource_kind="video") is True
        assert blob_store.destroyed == ["audio-files/a"]

    run(scenario())

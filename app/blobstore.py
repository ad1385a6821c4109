"""Blob storage adapters.

The rest of the app only ever holds a ``(url, public_id)`` pair. Two
backends implement the same async surface:

* ``LocalBlobStore`` keeps files under ``UPLOAD_ROOT`` and serves them from
  the ``/uploads`` static mount (dev, tests, single-box installs).
* ``CloudinaryBlobStore`` talks to Cloudinary through its SDK. Credentials
  are checked when the store is built, not on first upload.

Resource kinds follow Cloudinary's names: ``image`` for covers, ``raw`` for
book files and ``video`` for audio.
"""
from __future__ import annotations

import io
import logging
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional, Protocol, Union

import cloudinary.exceptions
import cloudinary.uploader
import httpx

from .background import run_sync
from .errors import BlobStoreError
from .settings.config import Settings

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class StoredBlob:
    url: str
    public_id: str
    size_bytes: Optional[int] = None


class BlobStore(Protocol):
    async def upload(self, source: Union[bytes, Path], *, folder: str, resource_kind: str,
                     public_id_hint: Optional[str] = None, filename: Optional[str] = None) -> StoredBlob: ...

    async def destroy(self, public_id: str, *, resource_kind: str) -> None: ...

    async def fetch_to(self, url: str, public_id: str, dest: Path) -> Path: ...

    async def content_length(self, url: str, public_id: str) -> int: ...

    def iter_range(self, url: str, public_id: str, start: int, end: int) -> AsyncIterator[bytes]: ...


async def destroy_quietly(store: BlobStore, public_id: Optional[str], *, resource_kind: str) -> bool:
    """Best-effort delete; failures are logged and swallowed."""
    if not public_id:
        return False
    try:
        await store.destroy(public_id, resource_kind=resource_kind)
        return True
    except Exception as exc:  # noqa: BLE001
        logger.warning("Could not destroy blob %s (%s): %s", public_id, resource_kind, exc)
        return False


# ---------------------------------------------------------------------------
# Local filesystem
# ---------------------------------------------------------------------------
class LocalBlobStore:
    def __init__(self, root: Union[str, Path], *, public_base_url: str = "", mount_path: str = "/uploads"):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")
        self.mount_path = "/" + mount_path.strip("/")

    def _path_for(self, public_id: str) -> Path:
        candidate = (self.root / public_id.lstrip("/")).resolve()
        # never step outside the upload root
        if self.root not in candidate.parents:
            raise BlobStoreError(f"blob id escapes upload root: {public_id}")
        return candidate

    def url_for(self, public_id: str) -> str:
        return f"{self.public_base_url}{self.mount_path}/{public_id}"

    async def upload(self, source, *, folder, resource_kind, public_id_hint=None, filename=None) -> StoredBlob:
        suffix = Path(filename or (source.name if isinstance(source, Path) else "")).suffix.lower()
        stem = public_id_hint or uuid.uuid4().hex
        public_id = f"{folder.strip('/')}/{stem}{suffix}"
        dest = self._path_for(public_id)

        def _write() -> int:
            dest.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(source, Path):
                shutil.copyfile(source, dest)
            else:
                dest.write_bytes(source)
            return dest.stat().st_size

        try:
            size = await run_sync(_write)
        except OSError as exc:
            raise BlobStoreError(f"local upload failed: {exc}") from exc
        return StoredBlob(url=self.url_for(public_id), public_id=public_id, size_bytes=size)

    async def destroy(self, public_id, *, resource_kind) -> None:
        path = self._path_for(public_id)

        def _unlink() -> None:
            if not path.exists():
                return
            path.unlink()
            # prune empty folders up to the upload root
            cur = path.parent
            while cur != self.root and self.root in cur.parents:
                try:
                    cur.rmdir()
                except OSError:
                    break
                cur = cur.parent

        try:
            await run_sync(_unlink)
        except OSError as exc:
            raise BlobStoreError(f"local destroy failed: {exc}") from exc

    async def fetch_to(self, url, public_id, dest: Path) -> Path:
        src = self._path_for(public_id)
        if not src.exists() or src.stat().st_size == 0:
            raise BlobStoreError(f"missing_or_empty: {public_id}")
        await run_sync(shutil.copyfile, src, dest)
        return dest

    async def content_length(self, url, public_id) -> int:
        path = self._path_for(public_id)
        if not path.exists():
            raise BlobStoreError(f"missing blob: {public_id}")
        return path.stat().st_size

    async def iter_range(self, url, public_id, start: int, end: int) -> AsyncIterator[bytes]:
        path = self._path_for(public_id)
        remaining = end - start + 1
        with path.open("rb") as fh:
            fh.seek(start)
            while remaining > 0:
                chunk = await run_sync(fh.read, min(CHUNK_SIZE, remaining))
                if not chunk:
                    break
                remaining -= len(chunk)
                yield chunk


# ---------------------------------------------------------------------------
# Cloudinary
# ---------------------------------------------------------------------------
class CloudinaryBlobStore:
    def __init__(self, *, cloud_name: Optional[str], api_key: Optional[str], api_secret: Optional[str],
                 fetch_timeout: float = 30.0):
        missing = [n for n, v in (("CLOUDINARY_CLOUD_NAME", cloud_name),
                                  ("CLOUDINARY_API_KEY", api_key),
                                  ("CLOUDINARY_API_SECRET", api_secret)) if not v]
        if missing:
            raise RuntimeError(f"Missing Cloudinary configuration: {', '.join(missing)}")
        # passed on every call instead of mutating the SDK's global config
        self._auth = {"cloud_name": cloud_name, "api_key": api_key, "api_secret": api_secret, "secure": True}
        self.fetch_timeout = fetch_timeout

    async def upload(self, source, *, folder, resource_kind, public_id_hint=None, filename=None) -> StoredBlob:
        payload = str(source) if isinstance(source, Path) else io.BytesIO(source)
        options = {"folder": folder, "resource_type": resource_kind, **self._auth}
        if public_id_hint:
            # raw assets keep their extension inside the public id
            suffix = Path(filename or "").suffix.lower() if resource_kind == "raw" else ""
            options["public_id"] = f"{public_id_hint}{suffix}"
        try:
            res = await run_sync(cloudinary.uploader.upload, payload, **options)
        except cloudinary.exceptions.Error as exc:
            raise BlobStoreError(f"cloudinary upload failed: {exc}") from exc
        return StoredBlob(url=res["secure_url"], public_id=res["public_id"], size_bytes=res.get("bytes"))

    async def destroy(self, public_id, *, resource_kind) -> None:
        try:
            res = await run_sync(cloudinary.uploader.destroy, public_id,
                                 resource_type=resource_kind, invalidate=True, **self._auth)
        except cloudinary.exceptions.Error as exc:
            raise BlobStoreError(f"cloudinary destroy failed: {exc}") from exc
        if res.get("result") not in ("ok", "not found"):
            raise BlobStoreError(f"cloudinary destroy returned {res.get('result')}")

    async def fetch_to(self, url, public_id, dest: Path) -> Path:
        try:
            async with httpx.AsyncClient(timeout=self.fetch_timeout, follow_redirects=True) as client:
                async with client.stream("GET", url) as resp:
                    resp.raise_for_status()
                    with dest.open("wb") as fh:
                        async for chunk in resp.aiter_bytes(CHUNK_SIZE):
                            fh.write(chunk)
        except httpx.HTTPError as exc:
            raise BlobStoreError(f"download failed for {public_id}: {exc}") from exc
        return dest

    async def content_length(self, url, public_id) -> int:
        try:
            async with httpx.AsyncClient(timeout=self.fetch_timeout, follow_redirects=True) as client:
                resp = await client.head(url)
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise BlobStoreError(f"head failed for {public_id}: {exc}") from exc
        length = resp.headers.get("content-length")
        if length is None:
            raise BlobStoreError(f"no content-length for {public_id}")
        return int(length)

    async def iter_range(self, url, public_id, start: int, end: int) -> AsyncIterator[bytes]:
        headers = {"Range": f"bytes={start}-{end}"}
        async with httpx.AsyncClient(timeout=self.fetch_timeout, follow_redirects=True) as client:
            async with client.stream("GET", url, headers=headers) as resp:
                resp.raise_for_status()
                # origin ignored the Range header: skip to the slice ourselves
                skip = start if resp.status_code == 200 else 0
                remaining = end - start + 1
                async for chunk in resp.aiter_bytes(CHUNK_SIZE):
                    if skip:
                        if len(chunk) <= skip:
                            skip -= len(chunk)
                            continue
                        chunk = chunk[skip:]
                        skip = 0
                    if len(chunk) > remaining:
                        chunk = chunk[:remaining]
                    remaining -= len(chunk)
                    yield chunk
                    if remaining <= 0:
                        break


def build_blob_store(settings: Settings) -> BlobStore:
    if settings.BLOB_BACKEND == "cloudinary":
        return CloudinaryBlobStore(
            cloud_name=settings.CLOUDINARY_CLOUD_NAME,
            api_key=settings.CLOUDINARY_API_KEY,
            api_secret=settings.CLOUDINARY_API_SECRET,
            fetch_timeout=settings.BLOB_FETCH_TIMEOUT_SEC,
        )
    return LocalBlobStore(settings.UPLOAD_ROOT, public_base_url=settings.PUBLIC_BASE_URL)


__all__ = [
    "StoredBlob", "BlobStore", "LocalBlobStore", "CloudinaryBlobStore",
    "build_blob_store", "destroy_quietly",
]

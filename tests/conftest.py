from __future__ import annotations

import asyncio
import os
import sys
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# app.settings reads the environment at import time
os.environ["SECRET"] = "test-secret-for-jwt-signing-only-0123456789"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["RUN_DB_CREATE_ALL"] = "false"
os.environ["UPLOAD_ROOT"] = tempfile.mkdtemp(prefix="publishing-uploads-")
os.environ.pop("ADMIN_EMAIL", None)
os.environ.pop("ADMIN_PASSWORD", None)

from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from app import models  # noqa: E402,F401
from app.blobstore import StoredBlob  # noqa: E402
from app.database import Base, enable_sqlite_foreign_keys, make_session_maker  # noqa: E402
from app.errors import BlobStoreError, TranscodeError  # noqa: E402
from app.models import Role, User  # noqa: E402


# ---------------------------------------------------------------------------
# Fakes for the external collaborators
# ---------------------------------------------------------------------------
class FakeBlobStore:
    """In-memory blob store with the same async surface as the real ones."""

    def __init__(self):
        self.blobs: Dict[str, bytes] = {}
        self.destroyed: List[str] = []
        self.fail_fetch = set()
        self._seq = 0

    def put(self, public_id: str, data: bytes) -> StoredBlob:
        self.blobs[public_id] = data
        return StoredBlob(url=f"https://blobs.test/{public_id}", public_id=public_id, size_bytes=len(data))

    async def upload(self, source, *, folder, resource_kind, public_id_hint=None, filename=None):
        data = source.read_bytes() if isinstance(source, Path) else bytes(source)
        self._seq += 1
        return self.put(f"{folder}/{public_id_hint or f'blob-{self._seq}'}", data)

    async def destroy(self, public_id, *, resource_kind):
        self.destroyed.append(public_id)
        self.blobs.pop(public_id, None)

    async def fetch_to(self, url, public_id, dest: Path) -> Path:
        if public_id in self.fail_fetch or public_id not in self.blobs:
            raise BlobStoreError(f"missing_or_empty: {public_id}")
        dest.write_bytes(self.blobs[public_id])
        return dest

    async def content_length(self, url, public_id) -> int:
        if public_id not in self.blobs:
            raise BlobStoreError(f"missing blob: {public_id}")
        return len(self.blobs[public_id])

    async def iter_range(self, url, public_id, start, end):
        data = self.blobs[public_id][start:end + 1]
        for i in range(0, len(data), 4):
            yield data[i:i + 4]


class FakeTranscoder:
    """Concatenates raw bytes; records what it was given."""

    def __init__(self):
        self.calls: List[List[bytes]] = []

    async def concatenate(self, sources, workdir: Path) -> Path:
        chunks = [Path(s).read_bytes() for s in sources]
        self.calls.append(chunks)
        merged = Path(workdir) / "merged.m4a"
        merged.write_bytes(b"".join(chunks))
        return merged


class FailingTranscoder:
    def __init__(self):
        self.calls = 0

    async def concatenate(self, sources, workdir: Path) -> Path:
        self.calls += 1
        raise TranscodeError("concat failed: invalid data found when processing input")


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------
class Database:
    def __init__(self, path: Path):
        self.engine = create_async_engine(f"sqlite+aiosqlite:///{path}", poolclass=NullPool)
        enable_sqlite_foreign_keys(self.engine)
        self.session_maker = make_session_maker(self.engine)

    async def create_all(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def add_user(self, email: str, *, role: Role = Role.USER, is_active: bool = True,
                       first_name: Optional[str] = None, phone: Optional[str] = None) -> User:
        async with self.session_maker() as session:
            user = User(
                email=email,
                hashed_password="not-a-real-hash",
                username=email.split("@")[0],
                first_name=first_name,
                phone=phone,
                role=role,
                is_active=is_active,
                is_superuser=role == Role.ADMIN,
                is_verified=True,
            )
            session.add(user)
            await session.commit()
            return user

    async def add(self, *rows):
        async with self.session_maker() as session:
            session.add_all(rows)
            await session.commit()
        return rows[0] if len(rows) == 1 else rows


def run(coro):
    return asyncio.run(coro)


@pytest.fixture()
def db(tmp_path: Path) -> Database:
    database = Database(tmp_path / "test.db")
    run(database.create_all())
    yield database
    run(database.engine.dispose())


@pytest.fixture()
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture()
def transcoder() -> FakeTranscoder:
    return FakeTranscoder()


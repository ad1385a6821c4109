"""Audio segment assembly.

A merge turns ``[primary, *segments]`` into one AAC file and makes it the
audio's new primary asset. Sources are downloaded one after another into a
per-attempt temporary directory that is removed however the attempt ends.

When the caller also asked to publish, a failed merge falls back to
publishing the unmerged audio and reports a warning instead of an error.
Segments are kept after a successful merge and the previous primary blob is
left in the store; repeated merges orphan the older merged files.
"""
from __future__ import annotations

import logging
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from sqlalchemy.ext.asyncio import AsyncSession

from app.background import spawn
from app.blobstore import BlobStore, StoredBlob
from app.errors import AppError, InvalidTransitionError, UpstreamError, ValidationError
from app.media_pipeline import MERGED_MIME
from app.models import Audio, ContentStatus
from app.services import lifecycle
from app.services.segments import AUDIO_KIND, segment_pairs

logger = logging.getLogger(__name__)

MERGED_FOLDER = "audio-merged"
FALLBACK_WARNING = "Audio was published, but merging its segments failed; segments were kept unmerged."


@dataclass
class MergeResult:
    audio: Audio
    merged: bool
    warning: Optional[str] = None
    queued: bool = False


def _suffix_for(url: str) -> str:
    suffix = PurePosixPath(urlparse(url or "").path).suffix.lower()
    return suffix if 1 < len(suffix) <= 6 else ".bin"


class AudioAssembler:
    def __init__(self, blob_store: BlobStore, transcoder: Any, *, session_maker=None,
                 tmp_root: Optional[Path] = None):
        self.blob_store = blob_store
        self.transcoder = transcoder
        self.session_maker = session_maker
        self.tmp_root = tmp_root

    async def _assemble(self, audio_id: int, sources: Sequence[Tuple[str, str]]) -> StoredBlob:
        with tempfile.TemporaryDirectory(prefix=f"merge-{audio_id}-", dir=self.tmp_root) as tmp:
            workdir = Path(tmp)
            local: List[Path] = []
            # sequential on purpose: the concat list follows download order
            for i, (url, public_id) in enumerate(sources):
                dest = workdir / f"src-{i:03d}{_suffix_for(url)}"
                await self.blob_store.fetch_to(url, public_id, dest)
                local.append(dest)

            merged = await self.transcoder.concatenate(local, workdir)
            stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
            return await self.blob_store.upload(
                merged,
                folder=MERGED_FOLDER,
                resource_kind=AUDIO_KIND,
                public_id_hint=f"audio-{audio_id}-merged-{stamp}",
                filename=merged.name,
            )

    async def merge_segments(self, db: AsyncSession, audio: Audio, *, publish: bool) -> MergeResult:
        if publish:
            reason = lifecycle.check_transition(audio.status, ContentStatus.PUBLISHED, explicit=False)
            if reason:
                raise InvalidTransitionError(reason)

        pairs = segment_pairs(audio)
        if not pairs:
            if not publish:
                raise ValidationError("Nothing to merge: this audio has no segments")
            lifecycle.publish(audio)
            await db.commit()
            return MergeResult(audio, merged=False)

        sources = [(audio.file_url, audio.public_id), *pairs]
        logger.info("Merging %d sources for audio %s", len(sources), audio.id)
        try:
            blob = await self._assemble(audio.id, sources)
        except UpstreamError as exc:
            if not publish:
                raise
            logger.warning("Merge failed for audio %s, publishing unmerged: %s", audio.id, exc.message)
            lifecycle.publish(audio)
            await db.commit()
            return MergeResult(audio, merged=False, warning=FALLBACK_WARNING)

        audio.file_url = blob.url
        audio.public_id = blob.public_id
        audio.mime_type = MERGED_MIME
        audio.last_merged_at = datetime.now(timezone.utc)
        if publish:
            lifecycle.publish(audio)
        await db.commit()
        logger.info("Audio %s merged into %s", audio.id, blob.public_id)
        return MergeResult(audio, merged=True)

    async def merge_in_background(self, audio_id: int) -> None:
        if self.session_maker is None:
            raise RuntimeError("background merges need a session factory")
        async with self.session_maker() as db:
            audio = await db.get(Audio, audio_id)
            if audio is None:
                logger.warning("Background merge skipped, audio %s no longer exists", audio_id)
                return
            try:
                await self.merge_segments(db, audio, publish=False)
            except AppError as exc:
                # the publish response is long gone; the audio stays published, unmerged
                logger.warning("Background merge for audio %s failed: %s", audio_id, exc.message)

    async def publish_audio(self, db: AsyncSession, audio: Audio, *, merge: bool = True,
                            background: bool = False) -> MergeResult:
        if not merge:
            lifecycle.publish(audio)
            await db.commit()
            return MergeResult(audio, merged=False)
        if not background:
            return await self.merge_segments(db, audio, publish=True)

        lifecycle.publish(audio)
        await db.commit()
        has_segments = bool(segment_pairs(audio))
        if has_segments:
            spawn(self.merge_in_background(audio.id), name=f"merge_audio:{audio.id}")
        return MergeResult(audio, merged=False, queued=has_segments)


__all__ = ["AudioAssembler", "MergeResult", "FALLBACK_WARNING", "MERGED_FOLDER"]

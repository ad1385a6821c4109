"""Segment list edits on an Audio row.

``segment_urls`` and ``segment_public_ids`` are always rewritten together as
fresh lists, so the JSON columns are flagged dirty and stay index-aligned.
"""
from __future__ import annotations

import logging
from typing import List, Sequence, Tuple

from app.background import spawn
from app.blobstore import BlobStore, StoredBlob, destroy_quietly
from app.errors import NotFoundError, UpstreamError, ValidationError
from app.models import Audio

logger = logging.getLogger(__name__)

AUDIO_KIND = "video"
SEGMENT_FOLDER = "audio-segments"


def segment_pairs(audio: Audio) -> List[Tuple[str, str]]:
    urls = list(audio.segment_urls or [])
    ids = list(audio.segment_public_ids or [])
    if len(urls) != len(ids):
        raise UpstreamError(f"Audio {audio.id} has misaligned segment lists ({len(urls)} urls, {len(ids)} ids)")
    return list(zip(urls, ids))


def _store(audio: Audio, pairs: Sequence[Tuple[str, str]]) -> None:
    audio.segment_urls = [u for u, _ in pairs]
    audio.segment_public_ids = [i for _, i in pairs]


def append_segment(audio: Audio, blob: StoredBlob) -> int:
    pairs = segment_pairs(audio)
    pairs.append((blob.url, blob.public_id))
    _store(audio, pairs)
    return len(pairs)


def reorder_segments(audio: Audio, ordered_public_ids: Sequence[str]) -> None:
    """Replace the segment order with a full permutation of public ids."""
    pairs = segment_pairs(audio)
    by_id = dict((pid, url) for url, pid in pairs)
    wanted = list(ordered_public_ids)
    if len(wanted) != len(set(wanted)):
        raise ValidationError("Duplicate segment ids in reorder request")
    if set(wanted) != set(by_id) or len(wanted) != len(pairs):
        raise ValidationError(
            "Segment order must list every current segment exactly once",
            errors=[{"field": "order", "message": f"expected {len(pairs)} known segment ids"}],
        )
    _store(audio, [(by_id[pid], pid) for pid in wanted])


def remove_segment(audio: Audio, public_id: str) -> Tuple[str, str]:
    pairs = segment_pairs(audio)
    for idx, (url, pid) in enumerate(pairs):
        if pid == public_id:
            removed = pairs.pop(idx)
            _store(audio, pairs)
            return removed
    raise NotFoundError("Segment not found")


def schedule_destroy(store: BlobStore, public_id: str, *, resource_kind: str = AUDIO_KIND):
    """Fire-and-forget blob delete; the caller never waits on the remote store."""
    return spawn(destroy_quietly(store, public_id, resource_kind=resource_kind),
                 name=f"destroy_blob:{public_id}")


__all__ = [
    "AUDIO_KIND", "SEGMENT_FOLDER", "segment_pairs", "append_segment",
    "reorder_segments", "remove_segment", "schedule_destroy",
]

"""HTTP range streaming of stored blobs (audio playback, book downloads)."""
from __future__ import annotations

import logging
import re
from typing import AsyncIterator, NamedTuple, Optional
from urllib.parse import quote

from fastapi.responses import StreamingResponse

from app.blobstore import BlobStore
from app.routes_shared import api_error

logger = logging.getLogger(__name__)

_RANGE_RE = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$", re.IGNORECASE)


class ByteRange(NamedTuple):
    start: int
    end: int  # inclusive

    @property
    def length(self) -> int:
        return self.end - self.start + 1


class RangeNotSatisfiable(Exception):
    pass


def parse_range(header: Optional[str], size: int) -> Optional[ByteRange]:
    """Resolve a ``Range`` header against a blob of ``size`` bytes.

    Returns None when the whole body should be sent (no header, or a header
    we do not understand). Only the first range of a multi-range request is
    honoured. Raises ``RangeNotSatisfiable`` when the range lies past the end.
    """
    if not header:
        return None
    first = header.split(",", 1)[0]
    m = _RANGE_RE.match(first)
    if not m:
        return None
    start_s, end_s = m.groups()
    if not start_s and not end_s:
        return None
    if not start_s:
        # suffix form: last N bytes
        suffix = int(end_s)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiable()
        return ByteRange(max(size - suffix, 0), size - 1)
    start = int(start_s)
    if start >= size:
        raise RangeNotSatisfiable()
    end = min(int(end_s), size - 1) if end_s else size - 1
    if end < start:
        return None
    return ByteRange(start, end)


async def _guarded(chunks: AsyncIterator[bytes], public_id: str) -> AsyncIterator[bytes]:
    try:
        async for chunk in chunks:
            yield chunk
    except Exception:
        # headers are already out; dropping the connection is all that is left
        logger.exception("Streaming %s aborted mid-body", public_id)
        raise


async def stream_blob(store: BlobStore, url: str, public_id: str, *, range_header: Optional[str],
                      media_type: Optional[str], filename: Optional[str] = None,
                      attachment: bool = False):
    size = await store.content_length(url, public_id)
    headers = {"Accept-Ranges": "bytes"}
    if filename:
        kind = "attachment" if attachment else "inline"
        headers["Content-Disposition"] = f"{kind}; filename*=UTF-8''{quote(filename)}"

    try:
        byte_range = parse_range(range_header, size)
    except RangeNotSatisfiable:
        return api_error("Requested range not satisfiable", status_code=416,
                         headers={"Content-Range": f"bytes */{size}"})

    if byte_range is None:
        status_code, start, end = 200, 0, size - 1
        headers["Content-Length"] = str(size)
    else:
        status_code, start, end = 206, byte_range.start, byte_range.end
        headers["Content-Length"] = str(byte_range.length)
        headers["Content-Range"] = f"bytes {start}-{end}/{size}"

    if size == 0:
        body = _guarded(_empty(), public_id)
    else:
        body = _guarded(store.iter_range(url, public_id, start, end), public_id)
    return StreamingResponse(body, status_code=status_code, headers=headers,
                             media_type=media_type or "application/octet-stream")


async def _empty() -> AsyncIterator[bytes]:
    for chunk in ():
        yield chunk


__all__ = ["ByteRange", "RangeNotSatisfiable", "parse_range", "stream_blob"]

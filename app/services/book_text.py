"""Text pulled out of an uploaded book file to prefill ``Book.content``.

Plain text is decoded as is, EPUB documents are read in spine order with
their markup stripped, and DOCX files are converted to HTML. Anything else,
or a file that cannot be parsed in time, yields ``None`` and the book keeps
whatever content the request carried.
"""
from __future__ import annotations

import asyncio
import html
import io
import logging
import os
import re
import tempfile
import zipfile
from pathlib import Path
from typing import Optional

import ebooklib
import mammoth
from ebooklib import epub

from app.background import run_sync

logger = logging.getLogger(__name__)

CHAPTER_SEPARATOR = "\n\n---\n\n"
_HEAD_RE = re.compile(r"<head\b.*?</head>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]*>")
_BLANKS_RE = re.compile(r"\s*\n\s*")

PARSE_ERRORS = (epub.EpubException, zipfile.BadZipFile, KeyError, ValueError, OSError)


def _html_to_text(markup: str) -> str:
    text = _TAG_RE.sub("\n", _HEAD_RE.sub("", markup))
    text = _BLANKS_RE.sub("\n\n", html.unescape(text))
    return text.strip()


def text_from_txt(data: bytes) -> str:
    return data.decode("utf-8-sig", errors="replace")


def text_from_epub(data: bytes) -> str:
    with tempfile.TemporaryDirectory(prefix="epub-") as tmp:
        path = Path(tmp) / "book.epub"
        path.write_bytes(data)
        book = epub.read_epub(str(path), options={"ignore_ncx": True})

    chapters = []
    for idref, *_ in book.spine:
        item = book.get_item_with_id(idref)
        if item is None or isinstance(item, epub.EpubNav) or item.get_type() != ebooklib.ITEM_DOCUMENT:
            continue
        text = _html_to_text(item.get_content().decode("utf-8", errors="replace"))
        if text:
            chapters.append(text)
    return CHAPTER_SEPARATOR.join(chapters)


def html_from_docx(data: bytes) -> str:
    result = mammoth.convert_to_html(io.BytesIO(data))
    for message in result.messages:
        logger.debug("docx conversion: %s", message)
    return result.value


EXTRACTORS = {
    ".txt": text_from_txt,
    ".epub": text_from_epub,
    ".docx": html_from_docx,
}


def extract_text(data: bytes, filename: Optional[str]) -> Optional[str]:
    suffix = os.path.splitext(filename or "")[1].lower()
    extractor = EXTRACTORS.get(suffix)
    if extractor is None:
        logger.info("No text extractor for %r", filename)
        return None
    try:
        return extractor(data) or None
    except PARSE_ERRORS as exc:
        logger.warning("Could not extract text from %r: %s", filename, exc)
        return None


async def extract_book_content(data: bytes, filename: Optional[str], *, timeout: float = 20.0) -> Optional[str]:
    """Run the blocking parsers off the event loop, bounded by ``timeout``."""
    try:
        return await asyncio.wait_for(run_sync(extract_text, data, filename), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Text extraction from %r timed out after %.0fs", filename, timeout)
        return None


__all__ = ["extract_text", "extract_book_content", "text_from_txt", "text_from_epub", "html_from_docx"]

from __future__ import annotations

import io
import logging
from typing import Optional

from pypdf import PdfReader

from indexer.config import MAX_FIELD_CHARS
from indexer.models import SitePage

logger = logging.getLogger(__name__)


def _reader(data: bytes) -> PdfReader:
    return PdfReader(io.BytesIO(data))


def pdf_text(reader: PdfReader, max_chars: int = MAX_FIELD_CHARS, *, source: str = "") -> str:
    """
    Page text joined by newlines, hard-capped at ``max_chars``. Hitting the
    cap truncates and keeps what was read so far.
    """
    chunks: list[str] = []
    size = 0
    for idx, page in enumerate(reader.pages):
        try:
            extracted = page.extract_text() or ""
        except Exception as e:
            logger.warning("PDF page %d extract failed (%s): %s", idx, source, e)
            extracted = ""
        if not extracted:
            continue
        if chunks:
            extracted = "\n" + extracted
        chunks.append(extracted)
        size += len(extracted)
        if size >= max_chars:
            logger.warning("PDF content truncated at %d chars: %s", max_chars, source)
            break
    return "".join(chunks).strip()[:max_chars]


def pdf_title(reader: PdfReader) -> str:
    candidates: list[Optional[str]] = []
    try:
        meta = reader.metadata
    except Exception:
        meta = None
    if meta is not None:
        candidates.append(meta.title)
        raw = meta.get("/Title")
        candidates.append(str(raw) if raw is not None else None)
    try:
        xmp = reader.xmp_metadata
        dc_title = xmp.dc_title if xmp is not None else None
    except Exception:
        dc_title = None
    if dc_title:
        candidates.append(dc_title.get("x-default") or next(iter(dc_title.values()), None))

    for c in candidates:
        if isinstance(c, str) and c.strip():
            return c.strip()
    return ""


def extract_pdf_page(url: str, data: bytes, max_chars: int = MAX_FIELD_CHARS) -> SitePage:
    """Raises on unreadable PDFs; callers log and skip the page."""
    reader = _reader(data)
    return SitePage(
        url=url,
        title=pdf_title(reader),
        body=pdf_text(reader, max_chars, source=url),
        thumbnail="",
    )

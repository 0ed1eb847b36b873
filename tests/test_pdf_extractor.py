import io

import pytest
from pypdf import PdfWriter

from components.pdf_extractor import extract_pdf_page, pdf_text, pdf_title


class _Page:
    def __init__(self, text=None, fail=False):
        self._text = text
        self._fail = fail

    def extract_text(self):
        if self._fail:
            raise ValueError("broken content stream")
        return self._text


class _Reader:
    def __init__(self, pages, metadata=None):
        self.pages = pages
        self.metadata = metadata
        self.xmp_metadata = None


def _blank_pdf(title=None) -> bytes:
    writer = PdfWriter()
    writer.add_blank_page(width=72, height=72)
    if title:
        writer.add_metadata({"/Title": title})
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


def test_text_capped_at_limit():
    reader = _Reader([_Page("a" * 60_000), _Page("b" * 60_000), _Page("c" * 10)])
    text = pdf_text(reader)
    assert len(text) == 100_000
    assert text.startswith("a" * 60_000 + "\n")
    assert "c" not in text


def test_pages_joined_and_bad_pages_skipped():
    reader = _Reader([_Page("first"), _Page(fail=True), _Page(""), _Page("second")])
    assert pdf_text(reader) == "first\nsecond"


def test_title_from_metadata():
    data = _blank_pdf(title="Product Manual")
    page = extract_pdf_page("https://example.com/docs/manual.pdf", data)
    assert page.url == "https://example.com/docs/manual.pdf"
    assert page.title == "Product Manual"
    assert page.body == ""
    assert page.thumbnail == ""


def test_missing_title_is_empty():
    assert pdf_title(_Reader([])) == ""


def test_unreadable_pdf_raises():
    with pytest.raises(Exception):
        extract_pdf_page("https://example.com/x.pdf", b"definitely not a pdf")

from __future__ import annotations

import logging
import re
from typing import List, Optional

from bs4 import BeautifulSoup
from bs4.element import Tag

from indexer.config import (
    DEFAULT_BODY_SELECTOR,
    LABELS_DELIMITER,
    LABELS_META,
    MAX_FIELD_CHARS,
    THUMBNAIL_META,
)
from indexer.models import SitePage

logger = logging.getLogger(__name__)

_WS = re.compile(r"\s+")
# Elements whose content is never visible page text
_NON_TEXT_TAGS = ("script", "style", "noscript", "template")


def _visible_text(el: Optional[Tag]) -> str:
    if el is None:
        return ""
    return _WS.sub(" ", el.get_text(" ", strip=True)).strip()


def _parse(html: str) -> BeautifulSoup:
    soup = BeautifulSoup(html, "lxml")
    for t in soup.find_all(_NON_TEXT_TAGS):
        t.decompose()
    return soup


def extract_body_text(html_or_soup, selector: str = DEFAULT_BODY_SELECTOR) -> str:
    """
    Visible text of the first element matching ``selector`` inside <body>.
    Falls back to the whole body when the selector matches nothing or only
    yields empty text. Parse failures give "". A soup passed in must come
    from ``_parse``.
    """
    try:
        soup = html_or_soup if isinstance(html_or_soup, BeautifulSoup) else _parse(html_or_soup)
        body = soup.body or soup
        fragment = None
        if selector:
            try:
                fragment = body.select_one(selector)
            except Exception as e:  # invalid selector syntax
                logger.warning("Bad body selector %r: %s", selector, e)
        text = _visible_text(fragment) if fragment is not None else _visible_text(body)
        return text or _visible_text(body)
    except Exception as e:
        logger.warning("extract_body_text failed: %s", e)
        return ""


def meta_content(html_or_soup, name: str) -> Optional[str]:
    try:
        soup = html_or_soup if isinstance(html_or_soup, BeautifulSoup) else BeautifulSoup(html_or_soup, "lxml")
        tag = soup.find("meta", attrs={"name": name})
        if tag is None:
            return None
        val = tag.get("content")
        return val if isinstance(val, str) else None
    except Exception as e:
        logger.warning("meta %s lookup failed: %s", name, e)
        return None


def extract_thumbnail(html_or_soup) -> str:
    val = meta_content(html_or_soup, THUMBNAIL_META)
    if not val or len(val) >= MAX_FIELD_CHARS:
        return ""
    return val


def extract_labels(html_or_soup) -> List[str]:
    val = meta_content(html_or_soup, LABELS_META)
    if not val or len(val) >= MAX_FIELD_CHARS:
        return []
    return [x for x in val.split(LABELS_DELIMITER) if x.strip()]


def extract_html_page(url: str, html: str, title: str = "", selector: str = DEFAULT_BODY_SELECTOR) -> SitePage:
    try:
        soup = _parse(html)
    except Exception as e:
        logger.warning("HTML parse failed for %s: %s", url, e)
        soup = None
    return SitePage(
        url=url,
        title=title or "",
        body=extract_body_text(soup, selector) if soup is not None else "",
        thumbnail=extract_thumbnail(soup) if soup is not None else "",
        labels=extract_labels(soup) if soup is not None else [],
    )

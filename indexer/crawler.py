from __future__ import annotations

import logging
import threading
import uuid
from typing import Callable, Optional

import httpx

from components.html_extractor import extract_html_page
from components.pdf_extractor import extract_pdf_page

from .admission import RobotRules, UrlAdmissionFilter
from .config import DEFAULT_BODY_SELECTOR
from .frontier import CrawledPage
from .models import Indexed, SitePage, Unauthorized, WriteFailed
from .site_service import SiteService, hash_page_id

logger = logging.getLogger(__name__)


class PageCounter:
    """Progress counter for one crawl session; safe under concurrent increments."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._count = 0

    def increment(self) -> int:
        with self._lock:
            self._count += 1
            return self._count

    @property
    def value(self) -> int:
        with self._lock:
            return self._count

    def clear(self) -> None:
        with self._lock:
            self._count = 0


class SiteCrawler:
    """
    Per-page callbacks for one site crawl. ``should_visit`` gates discovered
    links (and indexes admitted PDFs on the side); ``visit`` extracts and
    upserts HTML pages. Every indexed URL is reported through
    ``record_visited``.
    """

    def __init__(
        self,
        site_service: SiteService,
        site_id: uuid.UUID,
        site_secret: uuid.UUID,
        base_url: str,
        robot_rules: RobotRules,
        *,
        page_body_css_selector: str = DEFAULT_BODY_SELECTOR,
        allow_url_with_query: bool = False,
        counter: Optional[PageCounter] = None,
        record_visited: Callable[[str], None] = lambda url: None,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.site_service = site_service
        self.site_id = site_id
        self.site_secret = site_secret
        self.base_url = base_url
        self.page_body_css_selector = page_body_css_selector or DEFAULT_BODY_SELECTOR
        self.counter = counter or PageCounter()
        self.record_visited = record_visited
        self.http_client = http_client
        self.admission = UrlAdmissionFilter(
            base_url,
            robot_rules,
            allow_url_with_query=allow_url_with_query,
            on_pdf=self.index_pdf,
        )

    # ---------------- frontier callbacks ----------------

    def should_visit(self, url: str) -> bool:
        return self.admission.admit(url)

    def visit(self, page: CrawledPage) -> None:
        try:
            if not page.is_html:
                logger.debug("visit skipped (not HTML) - siteId: %s - url: %s", self.site_id, page.url)
                return
            if not page.text:
                logger.warning("visit skipped (empty HTML) - siteId: %s - url: %s", self.site_id, page.url)
                return
            site_page = extract_html_page(page.url, page.text, page.title, self.page_body_css_selector)
            self.index_page(site_page)
            self.count_page(page.url)
        except Exception:
            logger.exception("visit failed - siteId: %s - url: %s", self.site_id, page.url)

    # ---------------- PDF side channel ----------------

    def index_pdf(self, url: str) -> None:
        if self.http_client is None:
            logger.warning("No HTTP client for PDF side channel; skipping %s", url)
            return
        try:
            resp = self.http_client.get(url)
            resp.raise_for_status()
            site_page = extract_pdf_page(url, resp.content)
            self.index_page(site_page)
            self.count_page(url)
        except Exception as e:
            logger.warning("index_pdf failed for %s: %s", url, e)

    # ---------------- indexing ----------------

    def index_page(self, site_page: SitePage) -> None:
        # hash the url exactly as it is stored
        page_id = hash_page_id(self.site_id, (site_page.url or "").strip())
        result = self.site_service.index_existing_page(page_id, self.site_id, self.site_secret, site_page)
        if isinstance(result, Indexed):
            return
        if isinstance(result, Unauthorized):
            logger.warning("Not allowed to index %s for site %s: %s", site_page.url, self.site_id, result.reason)
        elif isinstance(result, WriteFailed):
            logger.warning("Index write failed for %s (%s): %s", site_page.url, result.page_id, result.reason)

    def count_page(self, url: str) -> None:
        count = self.counter.increment()
        logger.info("siteId: %s - pageCount: %d", self.site_id, count)
        self.record_visited(url)

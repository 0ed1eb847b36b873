from __future__ import annotations

import hashlib
import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Union
from urllib.parse import urlsplit

from .config import LABELS_DELIMITER, SITE_PAGE_INDEX
from .index_client import IndexClient
from .models import (
    FeedUrlResult,
    FetchedPage,
    IndexCleanupResult,
    Indexed,
    InvalidUrl,
    SiteConfig,
    SiteCreation,
    SitePage,
    SiteProfile,
    SitesCrawlStatus,
    Unauthorized,
    UpsertResult,
    ValidUrl,
    WriteFailed,
)

logger = logging.getLogger(__name__)

Secret = Union[uuid.UUID, str]


def hash_page_id(site_id: Union[uuid.UUID, str], url: str) -> str:
    """SHA-256 of ``<siteId><url>`` as lowercase hex; the page's document id."""
    return hashlib.sha256(f"{site_id}{url}".encode("utf-8")).hexdigest()


def validate_feed_url(url: str) -> FeedUrlResult:
    try:
        parts = urlsplit(url)
    except ValueError as e:
        return InvalidUrl(f"Malformed URL: {e}")
    scheme = (parts.scheme or "").lower()
    if scheme not in ("http", "https"):
        return InvalidUrl(f"Invalid URL scheme: {scheme or None}. Only HTTP(S) is allowed.")
    if not (parts.hostname or "").strip():
        return InvalidUrl("URL must contain a valid host")
    return ValidUrl(url)


def _labels_field(labels: List[str]) -> str:
    return ", ".join(x.strip() for x in labels)


def _labels_from_field(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(x).strip() for x in value if str(x).strip()]
    return [x.strip() for x in str(value).split(LABELS_DELIMITER) if x.strip()]


def _same_secret(a: Optional[Secret], b: Optional[Secret]) -> bool:
    if a is None or b is None:
        return False
    return str(a).strip().lower() == str(b).strip().lower()


class SiteService:
    """
    Tenant-facing operations on top of the index client: page identity and
    upsert, site profiles, crawl status bookkeeping and cleanup. Secrets are
    checked here; a wrong secret yields an "unauthorized" value, never an
    exception.
    """

    def __init__(
        self,
        index: IndexClient,
        admin_secret: str = "",
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.index = index
        self.admin_secret = admin_secret
        self._clock = clock
        self._status_lock = threading.Lock()

    def is_admin(self, secret: Optional[Secret]) -> bool:
        return bool(self.admin_secret) and _same_secret(self.admin_secret, secret)

    # ---------------- pages ----------------

    def index_existing_page(
        self,
        page_id: str,
        site_id: Optional[uuid.UUID],
        site_secret: Optional[Secret],
        page: SitePage,
    ) -> UpsertResult:
        if site_id is not None and site_secret is not None:
            if not self.is_allowed_to_modify(site_id, site_secret):
                return Unauthorized()
            return self.index_document(page_id, site_id, page)
        if site_id is not None or site_secret is not None:
            return Unauthorized("both site id and secret are required")
        new_site_id = uuid.uuid4()
        return self.index_document(hash_page_id(new_site_id, (page.url or "").strip()), new_site_id, page)

    def index_document(self, page_id: str, site_id: uuid.UUID, page: SitePage) -> UpsertResult:
        """Full replace of the page document, then read it back."""
        doc = {
            "body": (page.body or "").strip(),
            "title": (page.title or "").strip(),
            "url": (page.url or "").strip(),
            "siteId": str(site_id),
            "updated": self._clock().isoformat(),
            "labels": _labels_field(page.labels),
            "thumbnail": (page.thumbnail or "").strip(),
        }
        status = self.index.put_document(SITE_PAGE_INDEX, page_id, doc)
        if not 200 <= status < 300:
            return WriteFailed(page_id, f"index write returned HTTP {status}" if status else "index unreachable")

        logger.info(
            "Indexed page - siteId: %s, bodySize: %d, titleSize: %d, url: %s",
            site_id, len(doc["body"]), len(doc["title"]), doc["url"],
        )
        fetched = self.fetch_by_id(page_id)
        if fetched is None:
            return WriteFailed(page_id, "page not readable after write")
        return Indexed(fetched)

    def fetch_by_id(self, page_id: str) -> Optional[FetchedPage]:
        doc = self.index.get_document(SITE_PAGE_INDEX, page_id)
        if doc is None:
            return None
        try:
            return FetchedPage(
                site_id=doc.get("siteId"),
                id=doc["_id"],
                title=str(doc.get("title") or ""),
                body=str(doc.get("body") or ""),
                url=str(doc.get("url") or ""),
                updated=str(doc.get("updated") or ""),
                labels=_labels_from_field(doc.get("labels")),
                thumbnail=str(doc.get("thumbnail") or ""),
            )
        except ValueError as e:
            logger.warning("Page %s has an unreadable document: %s", page_id, e)
            return None

    def fetch_all_documents(self, site_id: uuid.UUID) -> Optional[List[str]]:
        hits = self.index.fetch_all_site_pages(site_id)
        return [h["_id"] for h in hits if "_id" in h] or None

    def is_deleted(self, site_id: uuid.UUID, site_secret: Secret, page_id: str) -> bool:
        if not page_id.strip() or not self.is_allowed_to_modify(site_id, site_secret):
            return False
        deletion = self.index.delete_pages([page_id])
        return deletion.success and deletion.deleted > 0

    def clear_site(self, site_id: uuid.UUID, site_secret: Secret) -> bool:
        """Delete every page of the site. True only if something was deleted and nothing failed."""
        if not self.is_allowed_to_modify(site_id, site_secret):
            return False
        deletion = self.index.delete_all_site_pages(site_id)
        return deletion.success and deletion.deleted > 0

    def flush(self, service_secret: Secret, index: str) -> int:
        if not self.is_admin(service_secret):
            return 403
        return self.index.refresh(index)

    # ---------------- sites ----------------

    def get_site_profile(self, site_id: uuid.UUID) -> Optional[SiteProfile]:
        return self.index.fetch_site_profile(site_id)

    def fetch_site_profile(self, site_id: uuid.UUID, site_secret: Secret) -> Optional[SiteProfile]:
        """Profile readable with the site's own secret or the admin secret."""
        if self.is_admin(site_secret):
            return self.get_site_profile(site_id)
        profile = self.get_site_profile(site_id)
        if profile is None or not _same_secret(profile.secret, site_secret):
            return None
        return profile

    def fetch_site_secret(self, site_id: uuid.UUID) -> Optional[uuid.UUID]:
        profile = self.get_site_profile(site_id)
        return profile.secret if profile is not None else None

    def is_allowed_to_modify(self, site_id: uuid.UUID, site_secret: Secret) -> bool:
        return _same_secret(self.fetch_site_secret(site_id), site_secret)

    def create_site(self, email: str = "", configs: Optional[List[SiteConfig]] = None) -> SiteCreation:
        site_id, site_secret = uuid.uuid4(), uuid.uuid4()
        self.index.index_site_profile(
            SiteProfile(id=site_id, secret=site_secret, email=email, configs=list(configs or []))
        )
        return SiteCreation(site_id, site_secret)

    def update_site_profile(
        self,
        site_id: uuid.UUID,
        site_secret: Secret,
        new_secret: uuid.UUID,
        email: str,
        configs: List[SiteConfig],
    ) -> Optional[SiteProfile]:
        if not self.is_allowed_to_modify(site_id, site_secret):
            return None
        self.index.index_site_profile(SiteProfile(id=site_id, secret=new_secret, email=email, configs=configs))
        return self.get_site_profile(site_id)

    # ---------------- crawl status ----------------

    def store_crawl_status(self, service_secret: Secret, status: SitesCrawlStatus) -> Optional[SitesCrawlStatus]:
        if not self.is_admin(service_secret):
            logger.warning("Unauthorized crawl status storage attempt with invalid secret")
            return None
        code = self.index.index_crawl_status(status)
        if not 200 <= code < 300:
            logger.error("Failed to store crawl status. HTTP %d", code)
            return None
        logger.debug("Stored crawl status for %d sites", len(status.sites))
        return status

    def fetch_crawl_status(self, service_secret: Secret) -> Optional[SitesCrawlStatus]:
        if not self.is_admin(service_secret):
            return None
        return self.index.fetch_crawl_status()

    def update_crawl_status_in_schedule(self, site_id: uuid.UUID, page_count: int) -> Optional[SitesCrawlStatus]:
        """
        Stamp ``crawled``/``pageCount`` for one site in the crawl-status
        singleton. Concurrent tenant tasks share one document, so the
        read-modify-write runs under a lock.
        """
        with self._status_lock:
            current = self.index.fetch_crawl_status()
            if current is None:
                logger.warning("No crawl status document; cannot record crawl of %s", site_id)
                return None
            crawled = self._clock().isoformat()
            for s in current.sites:
                if s.site_id == site_id:
                    s.crawled = crawled
                    s.page_count = page_count
            updated = SitesCrawlStatus(sites=current.sites)
            self.index.index_crawl_status(updated)
            return updated

    # ---------------- cleanup ----------------

    def remove_old_site_index_pages(
        self,
        site_id: uuid.UUID,
        retention_days: int = 2,
        include_urls: bool = False,
    ) -> Optional[IndexCleanupResult]:
        """
        One server-side delete of the site's pages whose ``updated`` is older
        than now - ``retention_days``. Returns None when nothing was deleted
        and nothing failed.
        """
        cutoff = self._clock() - timedelta(days=retention_days)

        urls: List[str] = []
        if include_urls:
            try:
                urls = [
                    str(h.get("_source", {}).get("url", ""))
                    for h in self.index.fetch_obsolete_site_pages(site_id, cutoff)
                ]
                urls = [u for u in urls if u]
            except Exception as e:
                logger.warning("Could not list obsolete pages of %s: %s", site_id, e)

        result = self.index.delete_obsolete_site_pages(site_id, cutoff)
        if result.deleted == 0 and result.failed == 0:
            return None
        return IndexCleanupResult(deleted=result.deleted, failed=result.failed, urls=urls)

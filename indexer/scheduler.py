from __future__ import annotations

import contextvars
import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout, wait
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set

from .config import Config, DEFAULT_BODY_SELECTOR
from .models import CrawlStatus, CrawlerJobResult, SitesCrawlStatus
from .session import CrawlerService, CrawlRestartRequired
from .site_service import SiteService

logger = logging.getLogger(__name__)


class CrawlAggregate:
    """Statuses collected from concurrently running tenant tasks of one pass."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._statuses: Set[CrawlStatus] = set()

    def add(self, status: CrawlStatus) -> None:
        with self._lock:
            self._statuses.add(status)

    def snapshot(self, exclude: Optional[Set[uuid.UUID]] = None) -> SitesCrawlStatus:
        with self._lock:
            skip = exclude or set()
            return SitesCrawlStatus(sites=[s for s in self._statuses if s.site_id not in skip])

    def __len__(self) -> int:
        with self._lock:
            return len(self._statuses)


class MultiSiteScheduler:
    """
    Runs due sites concurrently (bounded pool), each site's configs
    sequentially, then exactly one status write and one cleanup per site.

    ``task_timeout_s`` bounds how long one site task is waited for; it
    defaults to ``cfg.crawl_timeout_minutes``.
    """

    def __init__(
        self,
        cfg: Config,
        site_service: SiteService,
        crawler_service: CrawlerService,
        *,
        log_ext=None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        task_timeout_s: Optional[float] = None,
    ) -> None:
        self.cfg = cfg
        self.task_timeout_s = task_timeout_s if task_timeout_s is not None else cfg.crawl_timeout_minutes * 60
        self.site_service = site_service
        self.crawler_service = crawler_service
        self.log_ext = log_ext
        self._clock = clock

    # ---------------- selection ----------------

    def due_sites(self, status: SitesCrawlStatus, all_sites_crawl: bool = False) -> List[CrawlStatus]:
        if all_sites_crawl:
            return list(status.sites)
        threshold = self._clock() - timedelta(hours=self.cfg.recrawl_threshold_hours)
        due: List[CrawlStatus] = []
        for s in status.sites:
            crawled = s.crawled_at()
            if crawled is None:
                logger.warning("siteId: %s has unreadable crawl time %r; treating as due", s.site_id, s.crawled)
                due.append(s)
            elif crawled < threshold:
                due.append(s)
        return due

    # ---------------- one site ----------------

    def crawl_site(
        self,
        status: CrawlStatus,
        aggregate: CrawlAggregate,
        *,
        clear_index: bool = False,
        is_throttled: bool = True,
    ) -> Optional[CrawlStatus]:
        site_id = status.site_id
        token = self.log_ext.set_site_context(str(site_id)) if self.log_ext is not None else None
        try:
            site_secret = self.site_service.fetch_site_secret(site_id)
            if site_secret is None:
                logger.warning("Site secret not found for siteId: %s", site_id)
                return None
            profile = self.site_service.get_site_profile(site_id)
            if profile is None:
                logger.warning("Site profile not found for siteId: %s", site_id)
                return None

            if clear_index and not self.site_service.clear_site(profile.id, profile.secret):
                logger.warning("Failed to clear index for siteId: %s, skipping crawl", site_id)
                return None

            total = 0
            for c in profile.configs:
                if not c.url:
                    continue
                try:
                    result = self.crawler_service.crawl(
                        c.url,
                        site_id,
                        site_secret,
                        is_throttled=is_throttled,
                        sitemaps_only=c.sitemaps_only,
                        page_body_css_selector=c.page_body_css_selector,
                        allow_url_with_query=c.allow_url_with_query,
                    )
                except CrawlRestartRequired:
                    raise
                except Exception:
                    logger.exception("Crawl failed for siteId: %s, url: %s", site_id, c.url)
                    continue
                total += result.page_count
                logger.info("Crawled siteId: %s, url: %s, pages: %d", site_id, c.url, result.page_count)

            self.site_service.update_crawl_status_in_schedule(site_id, total)
            cleanup = self.site_service.remove_old_site_index_pages(site_id, self.cfg.retention_days)
            if cleanup is not None:
                logger.info("Cleanup for siteId: %s - deleted: %d, failed: %d", site_id, cleanup.deleted, cleanup.failed)

            done = CrawlStatus(site_id=profile.id, crawled=self._clock().isoformat(), page_count=total)
            aggregate.add(done)
            return done
        finally:
            if token is not None:
                self.log_ext.reset_site_context(token)

    # ---------------- all sites ----------------

    def crawl_sites(
        self,
        service_secret,
        status: SitesCrawlStatus,
        *,
        all_sites_crawl: bool = False,
        is_throttled: bool = True,
        clear_index: bool = False,
    ) -> Optional[SitesCrawlStatus]:
        """
        One scheduler pass. Returns None for a wrong service secret, else the
        statuses of the sites that finished. A site task that times out is
        abandoned for this pass and left out of the result, even if it ends
        later. A :class:`CrawlRestartRequired` from any site
        is re-raised once the pool has been shut down.
        """
        if not self.site_service.is_admin(service_secret):
            logger.warning("Unauthorized crawl attempt with invalid service secret")
            return None

        aggregate = CrawlAggregate()
        due = self.due_sites(status, all_sites_crawl)
        if not due:
            logger.info("No sites need crawling")
            return aggregate.snapshot()

        logger.info("Starting crawl for %d sites", len(due))
        pool = ThreadPoolExecutor(
            max_workers=min(len(due), self.cfg.max_parallel_crawls), thread_name_prefix="site-crawl"
        )
        futures: Dict[Future, uuid.UUID] = {}
        fatal: Optional[CrawlRestartRequired] = None
        abandoned: Set[uuid.UUID] = set()
        try:
            for s in due:
                fut = pool.submit(
                    contextvars.copy_context().run,
                    self.crawl_site, s, aggregate, clear_index=clear_index, is_throttled=is_throttled,
                )
                futures[fut] = s.site_id

            for fut, site_id in futures.items():
                try:
                    fut.result(timeout=self.task_timeout_s)
                except FutureTimeout:
                    logger.error("Crawl task for siteId: %s timed out after %.1fs; abandoned", site_id,
                                 self.task_timeout_s)
                    abandoned.add(site_id)
                    fut.cancel()
                except CrawlRestartRequired as e:
                    logger.error("Crawl task for siteId: %s requires a crawler restart: %s", site_id, e)
                    fatal = fatal or e
                except Exception:
                    logger.exception("Crawl task failed for siteId: %s", site_id)
        finally:
            self._shutdown(pool, list(futures))

        logger.info("Completed crawl for %d sites, collected %d statuses", len(due), len(aggregate))
        if fatal is not None:
            raise fatal
        return aggregate.snapshot(exclude=abandoned)

    def _shutdown(self, pool: ThreadPoolExecutor, futures: List[Future]) -> None:
        pool.shutdown(wait=False)
        _, pending = wait(futures, timeout=self.cfg.shutdown_grace_seconds)
        if pending:
            logger.warning("%d crawl tasks still running after %ds; forcing pool shutdown",
                           len(pending), self.cfg.shutdown_grace_seconds)
            pool.shutdown(wait=False, cancel_futures=True)

    # ---------------- single site entry points ----------------

    def recrawl_site(self, site_id: uuid.UUID, site_secret, clear_index: bool = False) -> Optional[CrawlerJobResult]:
        profile = self.site_service.fetch_site_profile(site_id, site_secret)
        if profile is None:
            return None
        if clear_index:
            self.site_service.clear_site(site_id, site_secret)

        result = self.crawler_service.recrawl(site_id, profile.secret, profile)
        cleanup = self.site_service.remove_old_site_index_pages(site_id, self.cfg.retention_days)
        if cleanup is not None:
            logger.info("Cleanup for siteId: %s - deleted: %d, failed: %d", site_id, cleanup.deleted, cleanup.failed)
        logger.info("Recrawled siteId: %s, pages: %d", site_id, result.page_count)
        return result

    def crawl_url(
        self,
        site_id: uuid.UUID,
        site_secret,
        url: str,
        *,
        sitemaps_only: bool = False,
        allow_url_with_query: bool = False,
        page_body_css_selector: str = DEFAULT_BODY_SELECTOR,
    ) -> Optional[CrawlerJobResult]:
        if not self.site_service.is_allowed_to_modify(site_id, site_secret):
            return None
        result = self.crawler_service.crawl(
            url,
            site_id,
            uuid.UUID(str(site_secret)),
            is_throttled=True,
            sitemaps_only=sitemaps_only,
            page_body_css_selector=page_body_css_selector,
            allow_url_with_query=allow_url_with_query,
        )
        logger.info("Crawl completed - siteId: %s, url: %s, pages: %d", site_id, url, result.page_count)
        return result

from __future__ import annotations

import logging
import random
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

import httpx

from components.sitemap_resolver import has_sitemap, resolve_sitemap_urls

from .admission import load_robot_rules
from .config import Config, DEFAULT_BODY_SELECTOR
from .crawler import PageCounter, SiteCrawler
from .frontier import FrontierController, FrontierSettings, FrontierStorageError
from .models import CrawlerJobResult, SiteProfile
from .site_service import SiteService
from .utils import delete_recursively, httpx_client

logger = logging.getLogger(__name__)


class CrawlRestartRequired(RuntimeError):
    """
    The local frontier store failed twice in one session. Its state is
    unknown; the crawl subsystem has to be restarted.
    """


class SessionState(str, Enum):
    CONFIGURED = "configured"
    RUNNING = "running"
    FAILED_STORAGE = "failed_storage"
    RETRYING_AFTER_PURGE = "retrying_after_purge"
    COMPLETED = "completed"
    FATAL = "fatal"


_TRANSITIONS = {
    SessionState.CONFIGURED: {SessionState.RUNNING},
    SessionState.RUNNING: {SessionState.COMPLETED, SessionState.FAILED_STORAGE},
    SessionState.FAILED_STORAGE: {SessionState.RETRYING_AFTER_PURGE},
    SessionState.RETRYING_AFTER_PURGE: {SessionState.COMPLETED, SessionState.FATAL},
    SessionState.COMPLETED: set(),
    SessionState.FATAL: set(),
}


def random_user_agent(rng: random.Random | None = None) -> str:
    r = rng or random
    return (
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
        f"(KHTML, like Gecko) Chrome/78.0.{r.randrange(9999)}.70 Safari/537.36"
    )


def bot_user_agent(cfg: Config) -> str:
    """Fixed crawler identity; a random UUID when running behind a VPN address."""
    return str(uuid.uuid4()) if cfg.is_vpn_ip else cfg.site_search_user_agent


def storage_folder(root: Path, site_id: uuid.UUID) -> Path:
    """``<root>/siteId-<site>-<uuid>-<timestamp>``: unique per run."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    return root / f"siteId-{site_id}-{uuid.uuid4().hex}-{stamp}"


@dataclass
class SeedPlan:
    seeds: List[str]
    sitemap_only: bool = False


ControllerFactory = Callable[[FrontierSettings], FrontierController]
CrawlerFactory = Callable[[FrontierController], SiteCrawler]


@dataclass
class CrawlSession:
    """
    One crawl of one seed plan for one site.

    configured -> running -> completed
                          -> failed_storage -> retrying_after_purge -> completed | fatal
    """

    site_id: uuid.UUID
    settings: FrontierSettings
    plan: SeedPlan
    crawler_factory: CrawlerFactory
    controller_factory: ControllerFactory = FrontierController
    counter: PageCounter = field(default_factory=PageCounter)
    state: SessionState = SessionState.CONFIGURED
    history: List[SessionState] = field(default_factory=lambda: [SessionState.CONFIGURED])

    def _to(self, new: SessionState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal crawl session transition {self.state.value} -> {new.value}")
        logger.debug("siteId: %s - session %s -> %s", self.site_id, self.state.value, new.value)
        self.state = new
        self.history.append(new)

    def _start_frontier(self) -> FrontierController:
        controller = self.controller_factory(self.settings)
        for seed in self.plan.seeds:
            controller.add_seed(seed)
        crawler = self.crawler_factory(controller)
        controller.start(crawler.should_visit, crawler.visit, self.settings.threads)
        return controller

    def run(self) -> CrawlerJobResult:
        self._to(SessionState.RUNNING)
        controller: Optional[FrontierController] = None
        while controller is None:
            try:
                controller = self._start_frontier()
            except FrontierStorageError as e:
                if self.state is SessionState.RUNNING:
                    logger.error(
                        "Frontier storage failure. Deleting crawl storage and retrying. siteId: %s - storage: %s",
                        self.site_id, self.settings.storage_dir, exc_info=True,
                    )
                    self._to(SessionState.FAILED_STORAGE)
                    delete_recursively(self.settings.storage_dir)
                    self._to(SessionState.RETRYING_AFTER_PURGE)
                    continue
                logger.error("Retry after deleting crawl storage failed. siteId: %s", self.site_id)
                self._to(SessionState.FATAL)
                raise CrawlRestartRequired(
                    f"frontier storage failed twice for site {self.site_id}; force restart"
                ) from e

        self._to(SessionState.COMPLETED)
        urls = [u for u in controller.visited_urls if isinstance(u, str)]
        self.counter.clear()
        return CrawlerJobResult(page_count=len(urls), urls=urls)


class CrawlerService:
    """
    Builds and runs crawl sessions. Throttled crawls (public / scheduled)
    use fewer threads, a random browser user agent and a page cap;
    unthrottled ones use the bot identity and no cap.
    """

    def __init__(
        self,
        cfg: Config,
        site_service: SiteService,
        *,
        controller_factory: Optional[ControllerFactory] = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.cfg = cfg
        self.site_service = site_service
        self._transport = transport
        self.controller_factory = controller_factory or (lambda s: FrontierController(s, transport=transport))
        self.bot_user_agent = bot_user_agent(cfg)

    # ---------------- configuration ----------------

    def frontier_settings(self, site_id: uuid.UUID, is_throttled: bool) -> FrontierSettings:
        cfg = self.cfg
        storage = storage_folder(cfg.crawler_storage_dir, site_id)
        storage.mkdir(parents=True, exist_ok=True)
        return FrontierSettings(
            storage_dir=storage,
            threads=cfg.throttled_crawler_threads if is_throttled else cfg.unthrottled_crawler_threads,
            politeness_delay_ms=cfg.politeness_delay_ms,
            user_agent=random_user_agent() if is_throttled else self.bot_user_agent,
            max_pages=cfg.max_pages_throttled if is_throttled else -1,
            retry_max_attempts=cfg.retry_max_attempts,
            retry_initial_delay_ms=cfg.retry_initial_delay_ms,
            retry_max_delay_ms=cfg.retry_max_delay_ms,
            retry_jitter_ms=cfg.retry_jitter_ms,
            request_timeout_ms=cfg.request_timeout_ms,
            connect_timeout_ms=cfg.connect_timeout_ms,
        )

    def _client(self, user_agent: str) -> httpx.Client:
        return httpx_client(self.cfg, user_agent, transport=self._transport)

    def seed_plan(self, client: httpx.Client, site_id: uuid.UUID, url: str, sitemaps_only: bool) -> SeedPlan:
        if not sitemaps_only:
            return SeedPlan([url])
        if not has_sitemap(client, url):
            logger.warning("siteId: %s - sitemap not found for %s; crawling from the seed instead", site_id, url)
            return SeedPlan([url])
        seeds = resolve_sitemap_urls(client, url)
        logger.info("siteId: %s - %d seed URLs from sitemap of %s", site_id, len(seeds), url)
        return SeedPlan(seeds, sitemap_only=True)

    # ---------------- crawling ----------------

    def crawl(
        self,
        url: str,
        site_id: uuid.UUID,
        site_secret: uuid.UUID,
        is_throttled: bool,
        sitemaps_only: bool = False,
        page_body_css_selector: str = DEFAULT_BODY_SELECTOR,
        allow_url_with_query: bool = False,
    ) -> CrawlerJobResult:
        settings = self.frontier_settings(site_id, is_throttled)
        with self._client(settings.user_agent) as client:
            plan = self.seed_plan(client, site_id, url, sitemaps_only)
            if plan.sitemap_only:
                settings = replace(settings, max_depth=0, max_outgoing_links=0)
            robot_rules = load_robot_rules(client, url, self.bot_user_agent)
            counter = PageCounter()

            def _crawler(controller: FrontierController) -> SiteCrawler:
                return SiteCrawler(
                    self.site_service,
                    site_id,
                    site_secret,
                    url,
                    robot_rules,
                    page_body_css_selector=page_body_css_selector,
                    allow_url_with_query=allow_url_with_query,
                    counter=counter,
                    record_visited=controller.record_visited,
                    http_client=client,
                )

            session = CrawlSession(
                site_id=site_id,
                settings=settings,
                plan=plan,
                crawler_factory=_crawler,
                controller_factory=self.controller_factory,
                counter=counter,
            )
            return session.run()

    def recrawl(self, site_id: uuid.UUID, site_secret: uuid.UUID, profile: SiteProfile) -> CrawlerJobResult:
        """Throttled crawl of every config of ``profile``, one after another."""
        all_urls: List[str] = []
        for c in profile.configs:
            if not c.url:
                continue
            result = self.crawl(
                c.url,
                site_id,
                site_secret,
                is_throttled=True,
                sitemaps_only=c.sitemaps_only,
                page_body_css_selector=c.page_body_css_selector,
                allow_url_with_query=c.allow_url_with_query,
            )
            all_urls.extend(result.urls)
        return CrawlerJobResult(page_count=len(all_urls), urls=all_urls)

from __future__ import annotations

import contextvars
import logging
import sqlite3
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import httpx

from .utils import (
    extract_links_static,
    extract_title_static,
    http_status_to_exc,
    httpx_client,
    is_html_content_type,
    is_http_url,
    normalize_url,
    retry_sync,
)

logger = logging.getLogger(__name__)

FRONTIER_DB_NAME = "frontier.sqlite3"


class FrontierStorageError(Exception):
    """The local frontier store could not be opened or initialised."""


@dataclass(frozen=True)
class FrontierSettings:
    storage_dir: Path
    threads: int = 4
    politeness_delay_ms: int = 200
    user_agent: str = "opty"
    max_pages: int = -1             # -1 = unlimited
    max_depth: int = -1             # -1 = unlimited, 0 = seeds only
    max_outgoing_links: int = -1    # -1 = unlimited, 0 = follow nothing

    retry_max_attempts: int = 3
    retry_initial_delay_ms: int = 500
    retry_max_delay_ms: int = 8000
    retry_jitter_ms: int = 300
    request_timeout_ms: int = 60000
    connect_timeout_ms: int = 30000


@dataclass
class CrawledPage:
    url: str
    status: int
    content_type: str
    content: bytes = b""
    text: str = ""
    title: str = ""
    depth: int = 0
    links: List[str] = field(default_factory=list)

    @property
    def is_html(self) -> bool:
        return is_html_content_type(self.content_type)


# ---------------------------------------------------------------------------
# Local frontier store (sqlite)
# ---------------------------------------------------------------------------

def _connect(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path), check_same_thread=False, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


class FrontierStore:
    """
    Persistent URL frontier for one crawl run. Every URL is stored once
    (``seen``); rows move pending -> in_progress -> done|failed. URLs turned
    away by the page cap are kept as ``capped`` so they are never offered again.
    """

    def __init__(self, storage_dir: Path) -> None:
        self._lock = threading.Lock()
        try:
            storage_dir.mkdir(parents=True, exist_ok=True)
            self.db_path = storage_dir / FRONTIER_DB_NAME
            self._conn = _connect(self.db_path)
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS urls (
                    url   TEXT PRIMARY KEY,
                    depth INTEGER NOT NULL,
                    state TEXT NOT NULL DEFAULT 'pending'
                )
                """
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_urls_state ON urls(state)")
        except (sqlite3.Error, OSError) as e:
            raise FrontierStorageError(f"cannot open frontier store in {storage_dir}: {e}") from e

    def schedule(self, url: str, depth: int, max_pages: int = -1) -> bool:
        """Insert ``url`` unless already known. Past the page cap it is recorded as capped."""
        with self._lock:
            if max_pages >= 0:
                (n,) = self._conn.execute("SELECT COUNT(*) FROM urls WHERE state != 'capped'").fetchone()
                if n >= max_pages:
                    self._conn.execute(
                        "INSERT OR IGNORE INTO urls(url, depth, state) VALUES (?, ?, 'capped')", (url, depth)
                    )
                    return False
            cur = self._conn.execute(
                "INSERT OR IGNORE INTO urls(url, depth) VALUES (?, ?)", (url, depth)
            )
            return cur.rowcount > 0

    def seen(self, url: str) -> bool:
        with self._lock:
            row = self._conn.execute("SELECT 1 FROM urls WHERE url=?", (url,)).fetchone()
            return row is not None

    def claim(self) -> Optional[Tuple[str, int]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT url, depth FROM urls WHERE state='pending' ORDER BY rowid LIMIT 1"
            ).fetchone()
            if row is None:
                return None
            self._conn.execute("UPDATE urls SET state='in_progress' WHERE url=?", (row["url"],))
            return row["url"], int(row["depth"])

    def finish(self, url: str, ok: bool = True) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE urls SET state=? WHERE url=?", ("done" if ok else "failed", url)
            )

    def in_flight(self) -> int:
        with self._lock:
            (n,) = self._conn.execute(
                "SELECT COUNT(*) FROM urls WHERE state IN ('pending', 'in_progress')"
            ).fetchone()
            return int(n)

    def close(self) -> None:
        with self._lock:
            try:
                self._conn.close()
            except sqlite3.Error:
                pass


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class _Politeness:
    """Minimum spacing between consecutive requests of one crawl."""

    def __init__(self, delay_ms: int) -> None:
        self._delay = max(0, delay_ms) / 1000.0
        self._lock = threading.Lock()
        self._next_at = 0.0

    def wait(self) -> None:
        if self._delay <= 0:
            return
        with self._lock:
            now = time.monotonic()
            at = max(now, self._next_at)
            self._next_at = at + self._delay
        if at > now:
            time.sleep(at - now)


ShouldVisit = Callable[[str], bool]
Visit = Callable[[CrawledPage], None]


class FrontierController:
    """
    Runs one crawl: seeds -> worker threads fetch pages -> ``visit`` for every
    fetched page -> discovered links pass ``should_visit`` before being
    scheduled. URLs reported through :meth:`record_visited` are the run's
    result (``visited_urls``).

    Raises :class:`FrontierStorageError` from the constructor or from
    :meth:`add_seed` when the local store is unusable.
    """

    def __init__(self, settings: FrontierSettings, *, transport: httpx.BaseTransport | None = None) -> None:
        self.settings = settings
        self._store = FrontierStore(settings.storage_dir)
        self._transport = transport
        self._politeness = _Politeness(settings.politeness_delay_ms)
        self._visited: List[str] = []
        self._visited_lock = threading.Lock()
        self._stop = threading.Event()
        self.fetched = 0

    # ---------------- seeding / results ----------------

    def add_seed(self, url: str) -> bool:
        if not is_http_url(url):
            logger.warning("Ignoring non-http seed: %s", url)
            return False
        try:
            return self._store.schedule(normalize_url(url), 0, self.settings.max_pages)
        except sqlite3.Error as e:
            raise FrontierStorageError(f"cannot schedule seed {url}: {e}") from e

    def record_visited(self, url: str) -> None:
        with self._visited_lock:
            self._visited.append(url)

    @property
    def visited_urls(self) -> List[str]:
        with self._visited_lock:
            return list(self._visited)

    def shutdown(self) -> None:
        self._stop.set()

    # ---------------- fetching ----------------

    def _fetch(self, client: httpx.Client, url: str) -> httpx.Response:
        s = self.settings

        @retry_sync(s.retry_max_attempts, s.retry_initial_delay_ms, s.retry_max_delay_ms, s.retry_jitter_ms)
        def _get() -> httpx.Response:
            self._politeness.wait()
            resp = client.get(url)
            exc = http_status_to_exc(resp.status_code)
            if exc is not None:
                raise exc
            return resp

        return _get()

    def _to_page(self, url: str, depth: int, resp: httpx.Response) -> CrawledPage:
        page = CrawledPage(
            url=url,
            status=resp.status_code,
            content_type=resp.headers.get("content-type", ""),
            content=resp.content,
            depth=depth,
        )
        if page.is_html:
            page.text = resp.text
            page.title = extract_title_static(page.text) or ""
            page.links = extract_links_static(page.text, str(resp.url or url))
        return page

    def _follow_links(self, page: CrawledPage, should_visit: ShouldVisit) -> None:
        s = self.settings
        if s.max_depth >= 0 and page.depth >= s.max_depth:
            return
        links = page.links if s.max_outgoing_links < 0 else page.links[: s.max_outgoing_links]
        for raw in links:
            if not is_http_url(raw):
                continue
            link = normalize_url(raw)
            if self._store.seen(link):
                continue
            if should_visit(link):
                self._store.schedule(link, page.depth + 1, s.max_pages)

    # ---------------- workers ----------------

    def _worker(self, client: httpx.Client, should_visit: ShouldVisit, visit: Visit) -> None:
        while not self._stop.is_set():
            try:
                item = self._store.claim()
                if item is None:
                    if self._store.in_flight() == 0:
                        return
                    time.sleep(0.05)
                    continue
            except sqlite3.Error as e:
                logger.error("Frontier store failed mid-crawl; stopping workers: %s", e)
                self._stop.set()
                return

            url, depth = item
            ok = False
            try:
                resp = self._fetch(client, url)
                page = self._to_page(url, depth, resp)
                with self._visited_lock:
                    self.fetched += 1
                visit(page)
                if page.is_html:
                    self._follow_links(page, should_visit)
                ok = True
            except Exception as e:
                logger.warning("Fetch/visit failed for %s: %s", url, e)
            finally:
                try:
                    self._store.finish(url, ok)
                except sqlite3.Error as e:
                    logger.error("Frontier store failed mid-crawl; stopping workers: %s", e)
                    self._stop.set()

    def start(self, should_visit: ShouldVisit, visit: Visit, threads: Optional[int] = None) -> None:
        """Block until the frontier is exhausted, the page cap is hit or :meth:`shutdown`."""
        n = max(1, threads or self.settings.threads)
        s = self.settings
        cfg = _ClientSettings(s.request_timeout_ms, s.connect_timeout_ms, s.user_agent)
        client = httpx_client(cfg, s.user_agent, transport=self._transport)
        try:
            with ThreadPoolExecutor(max_workers=n, thread_name_prefix="frontier") as pool:
                futures = [
                    # each worker gets its own copy so log context (site id) follows it
                    pool.submit(contextvars.copy_context().run, self._worker, client, should_visit, visit)
                    for _ in range(n)
                ]
                for f in futures:
                    f.result()
        finally:
            client.close()
            self._store.close()
        logger.info("Frontier finished: fetched=%d visited=%d", self.fetched, len(self._visited))


@dataclass(frozen=True)
class _ClientSettings:
    request_timeout_ms: int
    connect_timeout_ms: int
    site_search_user_agent: str

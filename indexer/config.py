from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from .utils import getenv_bool, getenv_int, getenv_str

# ---------- Project Paths ----------
PROJECT_ROOT: Path = Path(__file__).resolve().parents[1]
LOG_DIR: Path = PROJECT_ROOT / "logs"
CRAWLER_STORAGE_DIR: Path = PROJECT_ROOT / "crawler"
LOG_FILE: Path = LOG_DIR / "indexer.log"

# ---------- Fixed contract values ----------
MAX_FIELD_CHARS = 100_000          # thumbnail / labels / pdf text ceiling
LABELS_DELIMITER = ","
THUMBNAIL_META = "thumbnail"
LABELS_META = "sis-labels"
DEFAULT_BODY_SELECTOR = "body"

SITE_PAGE_INDEX = "site-page"
SITE_PROFILE_INDEX = "site-profile"
SINGLETONS_INDEX = "svc-singletons"
CRAWL_STATUS_DOC_ID = "crawl-status"
SITE_PROFILE_ID_PREFIX = "site-configuration-"
QUERY_PAGE_SIZE = 10_000
INDEX_AUTH_USER = "elastic"


# ---------- Config dataclass ----------
@dataclass(frozen=True)
class Config:
    # Storage engine
    elasticsearch_service: str
    admin_site_secret: str

    # Identity
    is_vpn_ip: bool
    site_search_user_agent: str

    # Crawl sessions
    crawler_storage_dir: Path
    throttled_crawler_threads: int
    unthrottled_crawler_threads: int
    politeness_delay_ms: int
    max_pages_throttled: int            # -1 = unlimited
    request_timeout_ms: int
    connect_timeout_ms: int

    # Retry / backoff (page fetches inside the frontier)
    retry_max_attempts: int
    retry_initial_delay_ms: int
    retry_max_delay_ms: int
    retry_jitter_ms: int

    # Scheduler
    max_parallel_crawls: int
    crawl_timeout_minutes: int
    shutdown_grace_seconds: int
    recrawl_threshold_hours: int

    # Cleanup
    retention_days: int

    # Paths
    project_root: Path
    log_file: Path


# ---------- Loader ----------
def load_config() -> Config:

    cfg = Config(
        elasticsearch_service=getenv_str("ELASTICSEARCH_SERVICE", "http://elasticsearch:9200").rstrip("/"),
        admin_site_secret=getenv_str("ADMIN_SITE_SECRET", ""),

        is_vpn_ip=getenv_bool("IS_VPN_IP", False),
        site_search_user_agent=getenv_str("SITE_SEARCH_USER_AGENT", "opty"),

        crawler_storage_dir=Path(getenv_str("CRAWLER_STORAGE_DIR", str(CRAWLER_STORAGE_DIR))),
        throttled_crawler_threads=getenv_int("THROTTLED_CRAWLER_THREADS", 2, 1, 16),
        unthrottled_crawler_threads=getenv_int("UNTHROTTLED_CRAWLER_THREADS", 4, 1, 64),
        politeness_delay_ms=getenv_int("POLITENESS_DELAY_MS", 200, 0, 60000),
        max_pages_throttled=getenv_int("MAX_PAGES_THROTTLED", 500, -1, 1_000_000),
        request_timeout_ms=getenv_int("REQUEST_TIMEOUT_MS", 60000, 1000, 300000),
        connect_timeout_ms=getenv_int("CONNECT_TIMEOUT_MS", 30000, 1000, 120000),

        retry_max_attempts=getenv_int("RETRY_MAX_ATTEMPTS", 3, 1, 10),
        retry_initial_delay_ms=getenv_int("RETRY_INITIAL_DELAY_MS", 500, 50, 10000),
        retry_max_delay_ms=getenv_int("RETRY_MAX_DELAY_MS", 8000, 500, 60000),
        retry_jitter_ms=getenv_int("RETRY_JITTER_MS", 300, 0, 2000),

        max_parallel_crawls=getenv_int("MAX_PARALLEL_CRAWLS", 4, 1, 64),
        crawl_timeout_minutes=getenv_int("CRAWL_TIMEOUT_MINUTES", 30, 1, 24 * 60),
        shutdown_grace_seconds=getenv_int("SHUTDOWN_GRACE_SECONDS", 60, 0, 3600),
        # Half a day; sites crawled more recently are skipped unless forced.
        recrawl_threshold_hours=getenv_int("RECRAWL_THRESHOLD_HOURS", 12, 0, 24 * 30),

        retention_days=getenv_int("RETENTION_DAYS", 2, 0, 365),

        project_root=PROJECT_ROOT,
        log_file=Path(getenv_str("LOG_FILE", str(LOG_FILE))),
    )
    return cfg

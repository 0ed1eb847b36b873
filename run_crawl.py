from __future__ import annotations

import argparse
import json
import logging
import sys
import uuid
from pathlib import Path
from typing import Optional

from components.csv_loader import load_crawl_status
from extensions.logging import LoggingExtension
from extensions.output_paths import crawl_storage_dirs
from indexer.config import DEFAULT_BODY_SELECTOR, load_config
from indexer.index_client import IndexClient
from indexer.scheduler import MultiSiteScheduler
from indexer.session import CrawlerService, CrawlRestartRequired
from indexer.site_service import SiteService
from indexer.utils import delete_recursively


# ----------------------------
# CLI parsing
# ----------------------------

def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Crawl tenant sites -> extract HTML/PDF -> upsert pages -> drop obsolete pages"
    )
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Console/file log level")
    sub = p.add_subparsers(dest="command", required=True)

    c = sub.add_parser("crawl", help="Crawl one URL for one site")
    c.add_argument("--site-id", type=uuid.UUID, required=True)
    c.add_argument("--site-secret", type=uuid.UUID, required=True)
    c.add_argument("--url", required=True, help="Seed URL; also the prefix every crawled URL must start with")
    c.add_argument("--sitemaps-only", action="store_true", help="Only crawl URLs listed in <site root>/sitemap.xml")
    c.add_argument("--allow-url-with-query", action="store_true", help="Also crawl URLs carrying a query string")
    c.add_argument("--page-body-css-selector", default=DEFAULT_BODY_SELECTOR, help="CSS selector for the indexed body text")

    r = sub.add_parser("recrawl", help="Re-crawl every config of one site profile")
    r.add_argument("--site-id", type=uuid.UUID, required=True)
    r.add_argument("--site-secret", type=uuid.UUID, required=True)
    r.add_argument("--clear-index", action="store_true", help="Delete all of the site's pages first")

    s = sub.add_parser("schedule", help="Crawl all due sites (one scheduler pass)")
    s.add_argument("--service-secret", required=True, help="Admin secret")
    s.add_argument("--status-csv", type=Path, default=None,
                   help="CSV file/dir of site_id,crawled,page_count; default: the stored crawl status")
    s.add_argument("--all-sites", action="store_true", help="Crawl every site, not only the due ones")
    s.add_argument("--unthrottled", action="store_true", help="More threads, bot user agent, no page cap")
    s.add_argument("--clear-index", action="store_true", help="Clear each site's pages before crawling it")

    k = sub.add_parser("cleanup", help="Delete a site's pages older than the retention window")
    k.add_argument("--site-id", type=uuid.UUID, required=True)
    k.add_argument("--retention-days", type=int, default=None)
    k.add_argument("--include-urls", action="store_true", help="List the deleted URLs (one extra query)")
    k.add_argument("--purge-storage", action="store_true", help="Also delete leftover local crawl storage of the site")

    st = sub.add_parser("status", help="Print the stored crawl status")
    st.add_argument("--service-secret", required=True, help="Admin secret")

    return p.parse_args(argv)


def _dump(obj) -> None:
    if hasattr(obj, "to_doc"):
        obj = obj.to_doc()
    elif hasattr(obj, "__dataclass_fields__"):
        obj = {k: getattr(obj, k) for k in obj.__dataclass_fields__}
    print(json.dumps(obj, indent=2, default=str))


def main(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(argv)

    # Logging
    level = getattr(logging, args.log_level)
    cfg = load_config()
    log_ext = LoggingExtension(cfg.log_file.parent, global_level=level, per_site_level=level, log_file=cfg.log_file)
    log = logging.getLogger("run_crawl")
    log.setLevel(level)

    index = IndexClient.from_config(cfg)
    site_service = SiteService(index, cfg.admin_site_secret)
    crawler_service = CrawlerService(cfg, site_service)
    scheduler = MultiSiteScheduler(cfg, site_service, crawler_service, log_ext=log_ext)

    try:
        if args.command == "crawl":
            result = scheduler.crawl_url(
                args.site_id,
                args.site_secret,
                args.url,
                sitemaps_only=args.sitemaps_only,
                allow_url_with_query=args.allow_url_with_query,
                page_body_css_selector=args.page_body_css_selector,
            )
            if result is None:
                log.error("Site %s not found or secret does not match", args.site_id)
                return 2
            _dump(result)

        elif args.command == "recrawl":
            result = scheduler.recrawl_site(args.site_id, args.site_secret, clear_index=args.clear_index)
            if result is None:
                log.error("Site %s not found or secret does not match", args.site_id)
                return 2
            _dump(result)

        elif args.command == "schedule":
            if args.status_csv is not None:
                status = load_crawl_status(args.status_csv)
            else:
                status = site_service.fetch_crawl_status(args.service_secret)
            if status is None:
                log.error("No crawl status available (wrong service secret?)")
                return 2
            done = scheduler.crawl_sites(
                args.service_secret,
                status,
                all_sites_crawl=args.all_sites,
                is_throttled=not args.unthrottled,
                clear_index=args.clear_index,
            )
            if done is None:
                log.error("Unauthorized scheduler run")
                return 2
            _dump(done)

        elif args.command == "cleanup":
            days = cfg.retention_days if args.retention_days is None else args.retention_days
            cleanup = site_service.remove_old_site_index_pages(args.site_id, days, include_urls=args.include_urls)
            if cleanup is None:
                log.info("Nothing to clean up for site %s", args.site_id)
            else:
                _dump(cleanup)
            if args.purge_storage:
                for d in crawl_storage_dirs(cfg.crawler_storage_dir, str(args.site_id)):
                    left = delete_recursively(d)
                    log.info("Purged %s%s", d, f" ({len(left)} paths left)" if left else "")

        elif args.command == "status":
            status = site_service.fetch_crawl_status(args.service_secret)
            if status is None:
                log.error("No crawl status available (wrong service secret?)")
                return 2
            _dump(status)

    except CrawlRestartRequired as e:
        log.critical("%s", e)
        return 3
    finally:
        index.close()
        log_ext.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())

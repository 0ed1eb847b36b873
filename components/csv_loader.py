from __future__ import annotations

import csv
import logging
import uuid
from pathlib import Path
from typing import Iterable, List, Optional, Set

from indexer.models import CrawlStatus, SitesCrawlStatus

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("site_id",)


def _iter_csv_rows(
    path: Path,
    *,
    encoding: str = "utf-8",
    limit: Optional[int] = None,
) -> Iterable[CrawlStatus]:
    """
    Internal helper: yields CrawlStatus from a single CSV file with columns
    ``site_id`` and optionally ``crawled`` (ISO-8601) and ``page_count``.
    Rows missing a valid site id are skipped.
    """
    count = 0
    with path.open("r", encoding=encoding, newline="") as f:
        reader = csv.DictReader(f)
        for row in reader:
            if limit is not None and count >= limit:
                break
            if not all((row.get(field, "") or "").strip() for field in REQUIRED_FIELDS):
                continue
            try:
                site_id = uuid.UUID(row["site_id"].strip())
            except ValueError:
                logger.warning("Skipping row with invalid site_id %r in %s", row.get("site_id"), path)
                continue
            crawled = (row.get("crawled") or "").strip()
            raw_count = (row.get("page_count") or "").strip()
            status = CrawlStatus(
                site_id=site_id,
                # never crawled: epoch, so the site is always due
                crawled=crawled or "1970-01-01T00:00:00+00:00",
                page_count=int(raw_count) if raw_count.isdigit() else 0,
            )
            yield status
            count += 1


def _gather_csv_files(
    root: Path,
    *,
    pattern: str = "*.csv",
    recursive: bool = True,
) -> List[Path]:
    """
    Collect CSV files under a directory (or just return [root] if root is a file).
    """
    if root.is_file():
        return [root]
    if not root.exists():
        return []
    if recursive:
        return sorted(p for p in root.rglob(pattern) if p.is_file())
    else:
        return sorted(p for p in root.glob(pattern) if p.is_file())


def _dedupe_records(records: Iterable[CrawlStatus]) -> List[CrawlStatus]:
    """Keep the first status seen per site id."""
    seen: Set[uuid.UUID] = set()
    out: List[CrawlStatus] = []
    for r in records:
        if r.site_id in seen:
            continue
        seen.add(r.site_id)
        out.append(r)
    return out


def load_crawl_status(
    path_or_dir: Path,
    *,
    encoding: str = "utf-8",
    limit_per_file: Optional[int] = None,
    recursive: bool = True,
    pattern: str = "*.csv",
    dedupe: bool = True,
) -> SitesCrawlStatus:
    """
    Load site crawl statuses from either a single CSV file or a directory of
    CSV files, e.g. to drive a scheduler pass without the stored singleton.

    Args:
        path_or_dir: file or directory path.
        encoding: CSV encoding.
        limit_per_file: if set, limit rows per file (useful for debugging).
        recursive: if True and path_or_dir is a directory, search recursively.
        pattern: glob pattern for matching CSV filenames.
        dedupe: if True, keep one row per site id across all files.

    Returns:
        SitesCrawlStatus
    """
    root = Path(path_or_dir)
    files = _gather_csv_files(root, pattern=pattern, recursive=recursive)
    records: List[CrawlStatus] = []
    for f in files:
        records.extend(_iter_csv_rows(f, encoding=encoding, limit=limit_per_file))
    if dedupe:
        records = _dedupe_records(records)
    return SitesCrawlStatus(sites=records)

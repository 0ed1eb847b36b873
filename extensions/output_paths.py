from __future__ import annotations
from pathlib import Path

# Base directory for per-site logs
LOG_ROOT = Path("logs")


def ensure_site_dirs(site_id: str, root: Path | None = None) -> dict[str, Path]:
    """
    Ensure log folders exist for a given site ID.
    Returns a mapping of the per-site folders.
    """
    base = (root or LOG_ROOT) / str(site_id)
    dirs = {
        "logs": base,
    }
    for d in dirs.values():
        d.mkdir(parents=True, exist_ok=True)
    return dirs


def crawl_storage_dirs(storage_root: Path, site_id: str) -> list[Path]:
    """Run folders left behind under the crawler storage root for one site."""
    if not storage_root.exists():
        return []
    return sorted(p for p in storage_root.glob(f"siteId-{site_id}-*") if p.is_dir())

from __future__ import annotations

import gzip
import logging
from typing import List, Optional, Set, Tuple

import httpx
import xml.etree.ElementTree as ET

from indexer.utils import site_root

log = logging.getLogger(__name__)

SITEMAP_PATH = "/sitemap.xml"
_GZIP_MAGIC = b"\x1f\x8b"


def sitemap_url_for(url: str) -> str:
    """<scheme>://<host>[:port]/sitemap.xml for any URL on the site."""
    return site_root(url) + SITEMAP_PATH


def has_sitemap(client: httpx.Client, url: str) -> bool:
    target = sitemap_url_for(url)
    try:
        resp = client.get(target)
    except httpx.HTTPError as e:
        log.info("No sitemap at %s: %s", target, e)
        return False
    return resp.is_success


# ----------------------------
# Sitemap fetching/parsing
# ----------------------------
def _fetch(client: httpx.Client, url: str) -> Optional[bytes]:
    try:
        resp = client.get(url)
    except httpx.HTTPError as e:
        log.warning("Sitemap fetch failed %s: %s", url, e)
        return None
    if not resp.is_success:
        log.warning("Sitemap fetch %s returned HTTP %d", url, resp.status_code)
        return None
    data = resp.content
    if data[:2] == _GZIP_MAGIC:
        try:
            data = gzip.decompress(data)
        except (OSError, EOFError) as e:
            log.warning("Sitemap %s is not valid gzip: %s", url, e)
            return None
    return data


def parse_sitemap_document(data: bytes) -> Tuple[List[str], List[str]]:
    """Return (page_urls, nested_sitemaps) contained in a sitemap document."""
    try:
        root = ET.fromstring(data)
    except ET.ParseError:
        return [], []

    urls: List[str] = []
    nested: List[str] = []

    tag = root.tag.lower()
    if tag.endswith("sitemapindex"):
        target, path = nested, ".//{*}sitemap/{*}loc"
    elif tag.endswith("urlset"):
        target, path = urls, ".//{*}url/{*}loc"
    else:
        target, path = urls, ".//{*}loc"
    for loc_el in root.findall(path):
        if isinstance(loc_el.text, str) and loc_el.text.strip():
            target.append(loc_el.text.strip())
    return urls, nested


def _resolve(client: httpx.Client, sitemap_url: str, seen: Set[str], out: List[str]) -> None:
    if sitemap_url in seen:
        return
    seen.add(sitemap_url)

    data = _fetch(client, sitemap_url)
    if data is None:
        return
    urls, nested = parse_sitemap_document(data)
    if not urls and not nested:
        log.warning("Sitemap %s has no entries or could not be parsed", sitemap_url)
    out.extend(urls)
    for child in nested:
        _resolve(client, child, seen, out)


def resolve_sitemap_urls(client: httpx.Client, url: str) -> List[str]:
    """
    Walk <site root>/sitemap.xml, recursing through sitemap indexes, and
    return the leaf page URLs in document order (deduplicated). A branch that
    cannot be fetched or parsed contributes nothing.
    """
    found: List[str] = []
    _resolve(client, sitemap_url_for(url), set(), found)
    return list(dict.fromkeys(found))

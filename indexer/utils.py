from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse, urlunparse, urljoin

import httpx
from bs4 import BeautifulSoup
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

logger = logging.getLogger(__name__)

# ========== Environment helpers ==========

def getenv_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return v if v is not None and v.strip() else default

def getenv_int(name: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = int(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

def getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}

# ========== Exceptions & HTTP status mapping ==========

class TransientHTTPError(Exception):
    """Retryable transient HTTP/Net error (429/5xx/timeouts)."""

class NonRetryableHTTPError(Exception):
    """Non-retryable client error (e.g., 404) or policy block."""

def http_status_to_exc(status: Optional[int]) -> Optional[Exception]:
    if status is None:
        return None
    if status in (404, 410):
        return NonRetryableHTTPError(f"HTTP {status}")
    if status in (408, 425, 429) or status >= 500:
        return TransientHTTPError(f"HTTP {status}")
    if status >= 400:
        return NonRetryableHTTPError(f"HTTP {status}")
    return None

# ========== URL helpers ==========

def normalize_url(url: str) -> str:
    url = url.strip()
    parsed = urlparse(url)

    if not parsed.scheme and not parsed.netloc and parsed.path:
        m = re.match(r"^(?P<host>[A-Za-z0-9.-]+)(?::(?P<port>\d+))?$", parsed.path)
        if m and "." in m.group("host"):
            host = m.group("host").lower()
            port = m.group("port")
            netloc = f"{host}:{port}" if port else host
            return urlunparse(("http", netloc, "/", "", "", ""))

    scheme = (parsed.scheme or "http").lower()
    host = parsed.hostname.lower() if parsed.hostname else ""
    netloc = host
    if parsed.port and not ((scheme == "http" and parsed.port == 80) or (scheme == "https" and parsed.port == 443)):
        netloc = f"{host}:{parsed.port}"

    path = parsed.path or "/"
    query = parsed.query
    return urlunparse((scheme, netloc, path, "", query, ""))

def is_http_url(url: str) -> bool:
    s = urlparse(url).scheme.lower()
    return s in {"http", "https"}

def site_root(url: str) -> str:
    """scheme://host[:port] of ``url`` (no trailing slash)."""
    p = urlparse(url)
    host = (p.hostname or "").lower()
    netloc = f"{host}:{p.port}" if p.port else host
    return f"{(p.scheme or 'http').lower()}://{netloc}"

# ========== Retry decorator ==========

def retry_sync(max_attempts: int, initial_delay_ms: int, max_delay_ms: int, jitter_ms: int):
    return retry(
        reraise=True,
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential_jitter(
            initial=initial_delay_ms / 1000.0,
            max=max_delay_ms / 1000.0,
            jitter=jitter_ms / 1000.0,
        ),
        retry=retry_if_exception_type((TransientHTTPError, IOError, TimeoutError, httpx.TransportError)),
    )

# ========== Static parsing / HTML utils ==========

def extract_links_static(html: str, base_url: str) -> list[str]:
    links: list[str] = []
    seen = set()
    try:
        soup = BeautifulSoup(html, "lxml")
        for a in soup.select("a[href]"):
            href = a.get("href") or ""
            if not href:
                continue
            abs_u = urljoin(base_url, href)
            abs_u = re.sub(r"#.*$", "", abs_u)
            if abs_u not in seen:
                seen.add(abs_u)
                links.append(abs_u)
        return links
    except Exception:
        return []

def extract_title_static(html: str) -> str | None:
    try:
        soup = BeautifulSoup(html, "lxml")
        t = soup.title.string if soup.title else None
        return (t or "").strip() or None
    except Exception:
        return None

def is_html_content_type(content_type: str | None) -> bool:
    ct = (content_type or "").split(";", 1)[0].strip().lower()
    return ct in {"text/html", "application/xhtml+xml"}

# ========== File I/O ==========

def delete_recursively(path: Path) -> list[str]:
    """
    Best-effort recursive delete. Returns the paths that could not be removed
    (each one is logged) instead of raising.
    """
    failures: list[str] = []

    if not path.exists():
        return failures
    # children sort after their parent, so reverse order empties dirs first
    for p in sorted(path.rglob("*"), reverse=True) + [path]:
        try:
            if p.is_dir() and not p.is_symlink():
                p.rmdir()
            else:
                p.unlink()
        except OSError as e:
            failures.append(str(p))
            logger.warning("Could not delete %s: %s", p, e)
    return failures

# ========== HTTPX client ==========

def httpx_client(cfg, user_agent: str | None = None, *, transport: httpx.BaseTransport | None = None) -> httpx.Client:
    """
    Return a preconfigured sync Client honoring cfg timeouts. ``transport`` is
    passed through so tests can plug in ``httpx.MockTransport``.
    """
    limits = httpx.Limits(max_keepalive_connections=16, max_connections=64)
    timeout = httpx.Timeout(cfg.request_timeout_ms / 1000.0, connect=cfg.connect_timeout_ms / 1000.0)
    headers = {
        "User-Agent": user_agent or cfg.site_search_user_agent,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,application/pdf;q=0.8,*/*;q=0.7",
        "Accept-Language": "en-US,en;q=0.9",
    }
    return httpx.Client(
        timeout=timeout,
        limits=limits,
        headers=headers,
        follow_redirects=True,
        transport=transport,
    )

from __future__ import annotations

import html
import logging
import re
from typing import Callable, Optional
from urllib import robotparser
from urllib.parse import urlsplit

import httpx

from .utils import site_root

logger = logging.getLogger(__name__)

# Static assets and raw XML are never indexable pages.
BLACKLIST_PATTERN = re.compile(
    r".*\.("
    r"css|js|"
    r"gif|jpg|jpeg|png|svg|ico|webp|"
    r"mp3|mp4|avi|mov|wmv|flv|"
    r"zip|gz|tar|rar|7z|"
    r"xml|"
    r"woff|woff2|ttf|eot|otf"
    r")$",
    re.IGNORECASE,
)
TRAILING_XML_TAG = re.compile(r"</[^>]+>$")
_TAG = re.compile(r"<[^>]*>")
_WS = re.compile(r"\s+")


def sanitize_url(raw_url: str) -> str:
    """
    Decode HTML entities and drop markup captured along with a link, e.g.
    ``https://x.org/a&amp;b</a>`` -> ``https://x.org/a&b``.
    """
    text = TRAILING_XML_TAG.sub("", raw_url or "")
    text = html.unescape(_TAG.sub("", text))
    text = TRAILING_XML_TAG.sub("", text)
    return _WS.sub(" ", text).strip()


def has_no_query(url: str) -> bool:
    try:
        return not urlsplit(url).query
    except ValueError as e:
        logger.warning("Invalid URL format: %s (%s)", url, e)
        return False


class RobotRules:
    """robots.txt verdicts for one user agent; no parser means allow-all."""

    def __init__(self, parser: Optional[robotparser.RobotFileParser], user_agent: str) -> None:
        self._parser = parser
        self.user_agent = user_agent

    @classmethod
    def allow_all(cls, user_agent: str = "*") -> "RobotRules":
        return cls(None, user_agent)

    @classmethod
    def from_text(cls, body: str, user_agent: str, robots_url: str = "") -> "RobotRules":
        parser = robotparser.RobotFileParser()
        if robots_url:
            parser.set_url(robots_url)
        parser.parse(body.splitlines())
        return cls(parser, user_agent)

    def is_allowed(self, url: str) -> bool:
        if self._parser is None:
            return True
        return self._parser.can_fetch(self.user_agent, url)


def load_robot_rules(client: httpx.Client, url: str, user_agent: str) -> RobotRules:
    """Fetch <site root>/robots.txt once per crawl. Missing or unreadable => allow-all."""
    robots_url = site_root(url) + "/robots.txt"
    try:
        resp = client.get(robots_url)
    except httpx.HTTPError as e:
        logger.debug("robots fetch failed %s: %s", robots_url, e)
        return RobotRules.allow_all(user_agent)

    if resp.status_code != 200 or not resp.text.strip():
        return RobotRules.allow_all(user_agent)
    try:
        return RobotRules.from_text(resp.text, user_agent, robots_url)
    except Exception as e:
        logger.debug("robots parse failed %s: %s", robots_url, e)
        return RobotRules.allow_all(user_agent)


class UrlAdmissionFilter:
    """
    Per-crawl gate for discovered links. Checks, in order: sanitization,
    asset blacklist, base-URL prefix (case-insensitive), robots rules, query
    policy. An admitted ``.pdf`` URL is also handed to ``on_pdf``.
    Any error denies the URL.
    """

    def __init__(
        self,
        base_url: str,
        robot_rules: RobotRules,
        allow_url_with_query: bool = False,
        on_pdf: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.base_url = base_url
        self._base_lower = base_url.lower()
        self.robot_rules = robot_rules
        self.allow_url_with_query = allow_url_with_query
        self.on_pdf = on_pdf

    def is_valid_url(self, clean_url: str) -> bool:
        lower = clean_url.lower()
        return (
            not BLACKLIST_PATTERN.match(lower)
            and lower.startswith(self._base_lower)
            and self.robot_rules.is_allowed(clean_url)
            and (self.allow_url_with_query or has_no_query(clean_url))
        )

    def admit(self, raw_url: str) -> bool:
        try:
            clean = sanitize_url(raw_url)
            if not clean:
                logger.warning("Empty URL after sanitization - original: %s", raw_url)
                return False

            ok = self.is_valid_url(clean)
            if ok:
                if clean.lower().endswith(".pdf"):
                    if self.on_pdf is not None:
                        self.on_pdf(clean)
                else:
                    logger.debug("should_visit: %s", clean)
            return ok
        except Exception as e:
            logger.warning("should_visit failed for URL %s: %s", raw_url, e)
            return False

    __call__ = admit

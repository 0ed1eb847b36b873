from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from .config import (
    CRAWL_STATUS_DOC_ID,
    INDEX_AUTH_USER,
    QUERY_PAGE_SIZE,
    SINGLETONS_INDEX,
    SITE_PAGE_INDEX,
    SITE_PROFILE_ID_PREFIX,
    SITE_PROFILE_INDEX,
)
from .models import DeletePagesResult, SiteProfile, SitesCrawlStatus

logger = logging.getLogger(__name__)

HIGHLIGHT_PRE = '<span class="pf-highlight">'
HIGHLIGHT_POST = "</span>"
SEARCH_PAGE_SIZE = 50


def _iso(ts: datetime) -> str:
    return ts.isoformat()


def parse_delete_by_query_response(body: str, requested: int = -1) -> DeletePagesResult:
    """
    Turn a ``_delete_by_query`` response into counts. ``requested`` < 0 means
    the total is unknown and the engine's ``total`` is used. An unparseable
    body is treated as success with fallback counts.
    """
    try:
        node = json.loads(body)
        deleted = int(node.get("deleted", 0) or 0)
        total = int(node.get("total", 0) or 0)
        failures = node.get("failures")
        failed = len(failures) if isinstance(failures, list) else 0
    except (ValueError, TypeError, AttributeError) as e:
        logger.warning("Failed to parse delete response, assuming success: %s", e)
        fallback = 0 if requested < 0 else requested
        return DeletePagesResult(deleted=fallback, failed=0, total=fallback, success=True)

    return DeletePagesResult(
        deleted=deleted,
        failed=failed,
        total=total if requested < 0 else requested,
        success=failed == 0,
        error_message="Some documents failed to delete" if failed > 0 else None,
    )


def obsolete_pages_query(site_id: uuid.UUID, older_than: datetime, size: Optional[int] = None) -> dict:
    q: Dict[str, Any] = {
        "query": {
            "bool": {
                "must": [
                    {"match_phrase": {"siteId": str(site_id)}},
                    {"range": {"updated": {"lt": _iso(older_than)}}},
                ]
            }
        }
    }
    if size is not None:
        q["size"] = size
    return q


class IndexClient:
    """
    Thin JSON-over-HTTP client for the search engine. Every request carries
    basic auth ``elastic:<admin secret>``. Transport errors and non-2xx
    answers are reported through return values, not raised.
    """

    def __init__(
        self,
        base_url: str,
        admin_secret: str,
        *,
        timeout_s: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            auth=httpx.BasicAuth(INDEX_AUTH_USER, admin_secret or ""),
            headers={"Content-Type": "application/json"},
            timeout=timeout_s,
            transport=transport,
        )

    @classmethod
    def from_config(cls, cfg, *, transport: httpx.BaseTransport | None = None) -> "IndexClient":
        return cls(
            cfg.elasticsearch_service,
            cfg.admin_site_secret,
            timeout_s=cfg.request_timeout_ms / 1000.0,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    # ---------------- documents ----------------

    def put_document(self, index: str, doc_id: str, doc: dict) -> int:
        """PUT a full document (replace). Returns the HTTP status, 0 on transport error."""
        try:
            resp = self._client.put(f"/{index}/_doc/{doc_id}", json=doc)
        except httpx.HTTPError as e:
            logger.error("PUT %s/%s failed: %s", index, doc_id, e)
            return 0
        logger.debug("PUT %s/%s status: %d", index, doc_id, resp.status_code)
        if not resp.is_success:
            logger.warning("PUT %s/%s returned %d: %s", index, doc_id, resp.status_code, resp.text[:500])
        return resp.status_code

    def get_document(self, index: str, doc_id: str) -> Optional[dict]:
        """Return ``{"_id": ..., **_source}`` or None when missing/unreadable."""
        try:
            resp = self._client.get(f"/{index}/_doc/{doc_id}")
        except httpx.HTTPError as e:
            logger.error("GET %s/%s failed: %s", index, doc_id, e)
            return None
        if resp.status_code != 200:
            return None
        try:
            node = resp.json()
        except ValueError as e:
            logger.warning("GET %s/%s returned invalid JSON: %s", index, doc_id, e)
            return None
        source = node.get("_source")
        if not isinstance(source, dict):
            return None
        return {"_id": node.get("_id", doc_id), **source}

    def refresh(self, index: str) -> int:
        try:
            return self._client.get(f"/{index}/_refresh").status_code
        except httpx.HTTPError as e:
            logger.error("refresh %s failed: %s", index, e)
            return 0

    # ---------------- typed documents ----------------

    def index_site_profile(self, profile: SiteProfile) -> int:
        return self.put_document(SITE_PROFILE_INDEX, f"{SITE_PROFILE_ID_PREFIX}{profile.id}", profile.to_doc())

    def fetch_site_profile(self, site_id: uuid.UUID) -> Optional[SiteProfile]:
        doc = self.get_document(SITE_PROFILE_INDEX, f"{SITE_PROFILE_ID_PREFIX}{site_id}")
        if doc is None:
            return None
        doc.pop("_id", None)
        return SiteProfile.model_validate(doc)

    def index_crawl_status(self, status: SitesCrawlStatus) -> int:
        for site in status.sites:
            if site.site_profile is not None:
                for c in site.site_profile.configs:
                    logger.info(
                        "%s - %s - %s - %s", c.url, c.allow_url_with_query, c.sitemaps_only, c.page_body_css_selector
                    )
        return self.put_document(SINGLETONS_INDEX, CRAWL_STATUS_DOC_ID, status.to_doc())

    def fetch_crawl_status(self) -> Optional[SitesCrawlStatus]:
        doc = self.get_document(SINGLETONS_INDEX, CRAWL_STATUS_DOC_ID)
        if doc is None:
            return None
        doc.pop("_id", None)
        return SitesCrawlStatus.model_validate(doc)

    # ---------------- delete-by-query ----------------

    def _delete_by_query(self, query: dict, requested: int, what: str) -> DeletePagesResult:
        failed_on_error = max(requested, 0)
        try:
            resp = self._client.post(f"/{SITE_PAGE_INDEX}/_delete_by_query", json=query)
        except httpx.HTTPError as e:
            logger.error("Exception during %s: %s", what, e)
            return DeletePagesResult(
                deleted=0, failed=failed_on_error, total=failed_on_error, success=False, error_message=str(e)
            )
        logger.debug("%s status: %d", what, resp.status_code)
        if resp.is_success:
            return parse_delete_by_query_response(resp.text, requested)
        logger.error("%s failed with status %d: %s", what, resp.status_code, resp.text[:500])
        return DeletePagesResult(
            deleted=0,
            failed=failed_on_error,
            total=failed_on_error,
            success=False,
            error_message=f"HTTP {resp.status_code}: {resp.text}",
        )

    def delete_all_site_pages(self, site_id: uuid.UUID) -> DeletePagesResult:
        return self._delete_by_query({"query": {"match": {"siteId": str(site_id)}}}, -1, "delete all site pages")

    def delete_obsolete_site_pages(self, site_id: uuid.UUID, older_than: datetime) -> DeletePagesResult:
        return self._delete_by_query(obsolete_pages_query(site_id, older_than), -1, "delete obsolete site pages")

    def delete_pages(self, doc_ids: List[str]) -> DeletePagesResult:
        if not doc_ids:
            return DeletePagesResult(deleted=0, failed=0, total=0, success=True)
        return self._delete_by_query({"query": {"terms": {"_id": list(doc_ids)}}}, len(doc_ids), "delete pages")

    # ---------------- search ----------------

    def _search(self, query: dict) -> List[dict]:
        try:
            resp = self._client.post(f"/{SITE_PAGE_INDEX}/_search", json=query)
            resp.raise_for_status()
            hits = resp.json().get("hits", {}).get("hits", [])
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning("Failed to run search request: %s", e)
            return []
        return [h for h in hits if isinstance(h, dict)]

    def fetch_obsolete_site_pages(self, site_id: uuid.UUID, older_than: datetime) -> List[dict]:
        return self._search(obsolete_pages_query(site_id, older_than, QUERY_PAGE_SIZE))

    def search(self, query_text: str, site_id: uuid.UUID, size: int = SEARCH_PAGE_SIZE) -> List[dict]:
        """
        Full-text query over body/title/url restricted to one site. Each hit's
        ``_source`` gets ``hit.teaser.<field>`` set from the highlight (or the
        raw field when there is none).
        """
        query = {
            "query": {
                "bool": {
                    "must": {"query_string": {"fields": ["body", "title", "url"], "query": query_text}},
                    "filter": {"match_phrase": {"siteId": str(site_id)}},
                }
            },
            "highlight": {
                "pre_tags": [HIGHLIGHT_PRE],
                "post_tags": [HIGHLIGHT_POST],
                "number_of_fragments": 1,
                "fragment_size": 150,
                "fields": {"body": {}, "title": {}, "url": {}},
            },
            "size": size,
        }
        hits = self._search(query)
        for h in hits:
            source = h.setdefault("_source", {})
            highlight = h.get("highlight") or {}
            for f in ("title", "body", "url"):
                frag = (highlight.get(f) or [None])[0]
                source[f"hit.teaser.{f}"] = frag if frag is not None else source.get(f, "")
        return hits

    def fetch_all_site_pages(self, site_id: uuid.UUID) -> List[dict]:
        return self.search("*", site_id, QUERY_PAGE_SIZE)

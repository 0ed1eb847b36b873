from __future__ import annotations

import uuid
from datetime import datetime
from typing import Dict, List, Optional

import pytest

from indexer.config import SITE_PAGE_INDEX
from indexer.models import DeletePagesResult, SiteProfile, SitesCrawlStatus


class FakeIndex:
    """In-memory stand-in for IndexClient: same method surface, dict storage."""

    def __init__(self) -> None:
        self.docs: Dict[str, Dict[str, dict]] = {}
        self.profiles: Dict[uuid.UUID, SiteProfile] = {}
        self.crawl_status: Optional[SitesCrawlStatus] = None
        self.put_status = 201
        self.calls: List[str] = []

    # documents
    def put_document(self, index: str, doc_id: str, doc: dict) -> int:
        self.calls.append(f"put:{index}")
        if 200 <= self.put_status < 300:
            self.docs.setdefault(index, {})[doc_id] = dict(doc)
        return self.put_status

    def get_document(self, index: str, doc_id: str) -> Optional[dict]:
        doc = self.docs.get(index, {}).get(doc_id)
        return None if doc is None else {"_id": doc_id, **doc}

    def refresh(self, index: str) -> int:
        return 200

    def close(self) -> None:
        pass

    def pages(self) -> Dict[str, dict]:
        return self.docs.setdefault(SITE_PAGE_INDEX, {})

    # typed documents
    def index_site_profile(self, profile: SiteProfile) -> int:
        self.profiles[profile.id] = profile.model_copy(deep=True)
        return 201

    def fetch_site_profile(self, site_id) -> Optional[SiteProfile]:
        p = self.profiles.get(uuid.UUID(str(site_id)))
        return None if p is None else p.model_copy(deep=True)

    def index_crawl_status(self, status: SitesCrawlStatus) -> int:
        self.calls.append("index_crawl_status")
        self.crawl_status = status.model_copy(deep=True)
        return 201

    def fetch_crawl_status(self) -> Optional[SitesCrawlStatus]:
        return None if self.crawl_status is None else self.crawl_status.model_copy(deep=True)

    # deletes
    def _delete(self, ids: List[str]) -> DeletePagesResult:
        for i in ids:
            self.pages().pop(i, None)
        return DeletePagesResult(deleted=len(ids), failed=0, total=len(ids), success=True)

    def delete_all_site_pages(self, site_id) -> DeletePagesResult:
        self.calls.append("delete_all_site_pages")
        ids = [k for k, d in self.pages().items() if d["siteId"] == str(site_id)]
        return self._delete(ids)

    def _obsolete(self, site_id, older_than: datetime) -> List[str]:
        return [
            k for k, d in self.pages().items()
            if d["siteId"] == str(site_id) and datetime.fromisoformat(d["updated"]) < older_than
        ]

    def delete_obsolete_site_pages(self, site_id, older_than: datetime) -> DeletePagesResult:
        self.calls.append("delete_obsolete_site_pages")
        return self._delete(self._obsolete(site_id, older_than))

    def delete_pages(self, doc_ids: List[str]) -> DeletePagesResult:
        present = [i for i in doc_ids if i in self.pages()]
        res = self._delete(present)
        return DeletePagesResult(deleted=res.deleted, failed=0, total=len(doc_ids), success=True)

    # search
    def fetch_obsolete_site_pages(self, site_id, older_than: datetime) -> List[dict]:
        return [{"_id": k, "_source": self.pages()[k]} for k in self._obsolete(site_id, older_than)]

    def fetch_all_site_pages(self, site_id) -> List[dict]:
        return [
            {"_id": k, "_source": d} for k, d in self.pages().items() if d["siteId"] == str(site_id)
        ]


@pytest.fixture
def fake_index() -> FakeIndex:
    return FakeIndex()


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Drop indexer env overrides so load_config() sees defaults."""
    for name in (
        "ELASTICSEARCH_SERVICE", "ADMIN_SITE_SECRET", "IS_VPN_IP", "SITE_SEARCH_USER_AGENT",
        "CRAWLER_STORAGE_DIR", "THROTTLED_CRAWLER_THREADS", "UNTHROTTLED_CRAWLER_THREADS",
        "POLITENESS_DELAY_MS", "MAX_PAGES_THROTTLED", "REQUEST_TIMEOUT_MS", "CONNECT_TIMEOUT_MS",
        "RETRY_MAX_ATTEMPTS", "RETRY_INITIAL_DELAY_MS", "RETRY_MAX_DELAY_MS", "RETRY_JITTER_MS",
        "MAX_PARALLEL_CRAWLS", "CRAWL_TIMEOUT_MINUTES", "SHUTDOWN_GRACE_SECONDS",
        "RECRAWL_THRESHOLD_HOURS", "RETENTION_DAYS", "LOG_FILE",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CRAWLER_STORAGE_DIR", str(tmp_path / "crawler"))
    return monkeypatch

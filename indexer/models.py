from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .config import DEFAULT_BODY_SELECTOR


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Persisted documents (JSON in the storage engine, camelCase on the wire)
# ---------------------------------------------------------------------------

class _Doc(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_doc(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class SiteConfig(_Doc):
    url: str = Field(..., description="Seed URL; also the admission prefix for the crawl.")
    page_body_css_selector: str = Field(default=DEFAULT_BODY_SELECTOR, alias="pageBodyCssSelector")
    sitemaps_only: bool = Field(default=False, alias="sitemapsOnly")
    allow_url_with_query: bool = Field(default=False, alias="allowUrlWithQuery")


class SiteProfile(_Doc):
    id: uuid.UUID
    secret: uuid.UUID
    email: str = ""
    configs: List[SiteConfig] = Field(default_factory=list)


class CrawlStatus(_Doc):
    site_id: uuid.UUID = Field(..., alias="siteId")
    crawled: str = Field(default_factory=now_iso, description="ISO-8601 time of the last crawl.")
    page_count: int = Field(default=0, alias="pageCount")
    site_profile: Optional[SiteProfile] = Field(default=None, alias="siteProfile")

    def crawled_at(self) -> Optional[datetime]:
        try:
            dt = datetime.fromisoformat(self.crawled.replace("Z", "+00:00"))
        except ValueError:
            return None
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)

    # One status per site; used for set semantics in the aggregate.
    def __hash__(self) -> int:
        return hash(self.site_id)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, CrawlStatus) and other.site_id == self.site_id


class SitesCrawlStatus(_Doc):
    sites: List[CrawlStatus] = Field(default_factory=list)


class FetchedPage(_Doc):
    site_id: uuid.UUID = Field(..., alias="siteId")
    id: str
    title: str = ""
    body: str = ""
    url: str = ""
    updated: str = ""
    labels: List[str] = Field(default_factory=list)
    thumbnail: str = ""


# ---------------------------------------------------------------------------
# Ephemeral values
# ---------------------------------------------------------------------------

@dataclass
class SitePage:
    """A page draft produced by the extractors, before it gets an identity."""
    url: str
    title: str = ""
    body: str = ""
    thumbnail: str = ""
    labels: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SiteCreation:
    site_id: uuid.UUID
    site_secret: uuid.UUID


@dataclass
class CrawlerJobResult:
    page_count: int
    urls: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class DeletePagesResult:
    deleted: int = 0
    failed: int = 0
    total: int = 0
    success: bool = True
    error_message: Optional[str] = None

    @property
    def all_deleted(self) -> bool:
        return self.success and self.deleted == self.total and self.failed == 0


@dataclass(frozen=True)
class IndexCleanupResult:
    deleted: int = 0
    failed: int = 0
    urls: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.deleted + self.failed

    @property
    def all_deleted(self) -> bool:
        return self.failed == 0 and self.deleted > 0


# ---------------------------------------------------------------------------
# Result variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Indexed:
    page: FetchedPage


@dataclass(frozen=True)
class Unauthorized:
    reason: str = "site id and secret do not match"


@dataclass(frozen=True)
class WriteFailed:
    page_id: str
    reason: str


UpsertResult = Union[Indexed, Unauthorized, WriteFailed]


@dataclass(frozen=True)
class ValidUrl:
    url: str


@dataclass(frozen=True)
class InvalidUrl:
    reason: str


FeedUrlResult = Union[ValidUrl, InvalidUrl]

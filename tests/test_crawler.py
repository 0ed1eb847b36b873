import io

import httpx
import pytest
from pypdf import PdfWriter

from indexer.config import load_config
from indexer.crawler import PageCounter, SiteCrawler
from indexer.admission import RobotRules
from indexer.frontier import CrawledPage
from indexer.session import CrawlerService
from indexer.site_service import SiteService, hash_page_id
from indexer.models import SiteConfig, SitePage


def _pdf(title: str) -> bytes:
    writer = PdfWriter()
    writer.add_blank_page(width=72, height=72)
    writer.add_metadata({"/Title": title})
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


def _site_transport(sitemap: bool = False, robots: str = ""):
    pages = {
        "/docs/": (
            '<meta name="sis-labels" content="docs,start">'
            '<a href="/docs/a">a</a>'
            '<a href="/docs/manual.pdf">manual</a>'
            '<a href="/docs/a?page=2">query</a>'
            '<a href="/docs/site.css">css</a>'
            '<a href="/blog/post">off prefix</a>'
            '<a href="/docs/private/x">private</a>'
        ),
        "/docs/a": '<main>Article A</main><a href="/docs/b">b</a>',
        "/docs/b": "<main>Article B</main>",
        "/docs/private/x": "<main>secret</main>",
        "/blog/post": "<main>blog</main>",
    }
    pdf = _pdf("Manual")

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/robots.txt":
            return httpx.Response(200, text=robots) if robots else httpx.Response(404)
        if path == "/sitemap.xml":
            if not sitemap:
                return httpx.Response(404)
            return httpx.Response(200, content=(
                b'<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
                b"<url><loc>https://example.com/docs/b</loc></url></urlset>"
            ))
        if path == "/docs/manual.pdf":
            return httpx.Response(200, content=pdf, headers={"content-type": "application/pdf"})
        body = pages.get(path)
        if body is None:
            return httpx.Response(404)
        return httpx.Response(200, html=f"<html><head><title>{path}</title></head><body>{body}</body></html>")

    return httpx.MockTransport(handler)


@pytest.fixture
def cfg(clean_env):
    clean_env.setenv("POLITENESS_DELAY_MS", "0")
    clean_env.setenv("RETRY_MAX_ATTEMPTS", "1")
    return load_config()


@pytest.fixture
def site_service(fake_index):
    return SiteService(fake_index, "admin")


def _indexed_urls(fake_index):
    return sorted(d["url"] for d in fake_index.pages().values())


def test_crawl_indexes_admitted_html_and_pdf(cfg, site_service, fake_index):
    site = site_service.create_site(configs=[SiteConfig(url="https://example.com/docs/")])
    robots = "User-agent: *\nDisallow: /docs/private\n"
    service = CrawlerService(cfg, site_service, transport=_site_transport(robots=robots))

    result = service.crawl("https://example.com/docs/", site.site_id, site.site_secret, is_throttled=True)

    expected = [
        "https://example.com/docs/",
        "https://example.com/docs/a",
        "https://example.com/docs/b",
        "https://example.com/docs/manual.pdf",
    ]
    assert _indexed_urls(fake_index) == expected
    assert sorted(result.urls) == expected
    assert result.page_count == 4

    home = fake_index.pages()[hash_page_id(site.site_id, "https://example.com/docs/")]
    assert home["labels"] == "docs, start"
    pdf = fake_index.pages()[hash_page_id(site.site_id, "https://example.com/docs/manual.pdf")]
    assert pdf["title"] == "Manual"


def test_query_urls_admitted_when_allowed(cfg, site_service, fake_index):
    site = site_service.create_site()
    service = CrawlerService(cfg, site_service, transport=_site_transport())

    service.crawl(
        "https://example.com/docs/", site.site_id, site.site_secret,
        is_throttled=False, allow_url_with_query=True,
    )

    assert "https://example.com/docs/a?page=2" in _indexed_urls(fake_index)


def test_sitemap_only_crawl_does_not_follow_links(cfg, site_service, fake_index):
    site = site_service.create_site()
    service = CrawlerService(cfg, site_service, transport=_site_transport(sitemap=True))

    result = service.crawl(
        "https://example.com/docs/", site.site_id, site.site_secret,
        is_throttled=True, sitemaps_only=True,
    )

    assert result.urls == ["https://example.com/docs/b"]
    assert _indexed_urls(fake_index) == ["https://example.com/docs/b"]


def test_sitemap_only_without_sitemap_crawls_from_seed(cfg, site_service, fake_index):
    site = site_service.create_site()
    service = CrawlerService(cfg, site_service, transport=_site_transport(sitemap=False))

    result = service.crawl(
        "https://example.com/docs/", site.site_id, site.site_secret,
        is_throttled=True, sitemaps_only=True,
    )

    assert "https://example.com/docs/a" in result.urls


def test_wrong_secret_indexes_nothing(cfg, site_service, fake_index):
    site = site_service.create_site()
    other = site_service.create_site()
    service = CrawlerService(cfg, site_service, transport=_site_transport())

    result = service.crawl("https://example.com/docs/", site.site_id, other.site_secret, is_throttled=True)

    assert fake_index.pages() == {}
    # pages are still counted as visited
    assert result.page_count > 0


def test_visit_uses_body_selector_and_skips_non_html(site_service, fake_index):
    site = site_service.create_site()
    recorded = []
    crawler = SiteCrawler(
        site_service, site.site_id, site.site_secret, "https://example.com/",
        RobotRules.allow_all(), page_body_css_selector="main",
        counter=PageCounter(), record_visited=recorded.append,
    )
    html = "<html><body><nav>Menu</nav><main>Only this</main></body></html>"
    crawler.visit(CrawledPage(url="https://example.com/p", status=200, content_type="text/html", text=html))
    crawler.visit(CrawledPage(url="https://example.com/f.zip", status=200, content_type="application/zip"))

    assert recorded == ["https://example.com/p"]
    assert crawler.counter.value == 1
    doc = fake_index.pages()[hash_page_id(site.site_id, "https://example.com/p")]
    assert doc["body"] == "Only this"


def test_recrawl_runs_each_config(cfg, site_service, fake_index):
    site = site_service.create_site(configs=[
        SiteConfig(url="https://example.com/docs/a"),
        SiteConfig(url="https://example.com/docs/b"),
    ])
    profile = site_service.get_site_profile(site.site_id)
    service = CrawlerService(cfg, site_service, transport=_site_transport())

    result = service.recrawl(site.site_id, site.site_secret, profile)

    # /docs/a links to /docs/b but /docs/b is outside the /docs/a prefix
    assert sorted(result.urls) == ["https://example.com/docs/a", "https://example.com/docs/b"]


def _pages_transport(pages, pdfs=()):
    pdf = _pdf("Doc")

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path in pdfs:
            return httpx.Response(200, content=pdf, headers={"content-type": "application/pdf"})
        body = pages.get(path)
        if body is None:
            return httpx.Response(404)
        return httpx.Response(200, html=f"<html><head><title>{path}</title></head><body>{body}</body></html>")

    return httpx.MockTransport(handler)


def test_seed_without_trailing_slash_is_crawled_once(cfg, site_service, fake_index):
    site = site_service.create_site()
    pages = {"/": '<a href="/">home</a><a href="/a">a</a>', "/a": "<main>A</main>"}
    service = CrawlerService(cfg, site_service, transport=_pages_transport(pages))

    result = service.crawl("https://example.com", site.site_id, site.site_secret, is_throttled=True)

    assert sorted(result.urls) == ["https://example.com/", "https://example.com/a"]
    assert _indexed_urls(fake_index) == ["https://example.com/", "https://example.com/a"]


def test_pdf_past_page_cap_is_indexed_once(clean_env, site_service, fake_index):
    clean_env.setenv("POLITENESS_DELAY_MS", "0")
    clean_env.setenv("RETRY_MAX_ATTEMPTS", "1")
    clean_env.setenv("THROTTLED_CRAWLER_THREADS", "1")
    clean_env.setenv("MAX_PAGES_THROTTLED", "2")
    site = site_service.create_site()
    pages = {
        "/": '<a href="/a">a</a><a href="/m.pdf">pdf</a>',
        "/a": '<a href="/m.pdf">pdf again</a>',
    }
    service = CrawlerService(load_config(), site_service, transport=_pages_transport(pages, pdfs={"/m.pdf"}))

    result = service.crawl("https://example.com/", site.site_id, site.site_secret, is_throttled=True)

    assert result.urls.count("https://example.com/m.pdf") == 1
    assert result.page_count == 3
    assert _indexed_urls(fake_index) == [
        "https://example.com/", "https://example.com/a", "https://example.com/m.pdf",
    ]


def test_overlapping_configs_index_each_page_once(cfg, site_service, fake_index):
    leaves = [f"/p{i}" for i in range(1, 8)]
    pages = {
        "/": "".join(f'<a href="{p}">{p}</a>' for p in leaves + ["/docs/x1", "/docs/x2"]),
        "/docs/": "".join(f'<a href="/docs/{p}">{p}</a>' for p in ("x1", "x2", "y1", "y2")),
    }
    for p in leaves + ["/docs/x1", "/docs/x2", "/docs/y1", "/docs/y2"]:
        pages[p] = f"<main>{p}</main>"
    site = site_service.create_site(configs=[
        SiteConfig(url="https://example.com/"),
        SiteConfig(url="https://example.com/docs/"),
    ])
    profile = site_service.get_site_profile(site.site_id)
    service = CrawlerService(cfg, site_service, transport=_pages_transport(pages))

    result = service.recrawl(site.site_id, site.site_secret, profile)

    # 10 pages under the root config, 5 under /docs/, 2 of them shared
    assert result.page_count == 15
    assert len(fake_index.pages()) == 13

    service.recrawl(site.site_id, site.site_secret, profile)
    assert len(fake_index.pages()) == 13


def test_index_page_hashes_stripped_url(site_service, fake_index):
    site = site_service.create_site()
    crawler = SiteCrawler(
        site_service, site.site_id, site.site_secret, "https://example.com/", RobotRules.allow_all(),
    )

    crawler.index_page(SitePage(url="  https://example.com/p\n", title="P", body="text"))

    assert list(fake_index.pages()) == [hash_page_id(site.site_id, "https://example.com/p")]
    assert fake_index.pages()[hash_page_id(site.site_id, "https://example.com/p")]["url"] == "https://example.com/p"

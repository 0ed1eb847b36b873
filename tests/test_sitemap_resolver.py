import gzip

import httpx

from components.sitemap_resolver import (
    has_sitemap,
    parse_sitemap_document,
    resolve_sitemap_urls,
    sitemap_url_for,
)

NS = 'xmlns="http://www.sitemaps.org/schemas/sitemap/0.9"'


def _urlset(*locs: str) -> bytes:
    items = "".join(f"<url><loc> {u} </loc></url>" for u in locs)
    return f"<urlset {NS}>{items}</urlset>".encode()


def _index(*locs: str) -> bytes:
    items = "".join(f"<sitemap><loc>{u}</loc></sitemap>" for u in locs)
    return f"<sitemapindex {NS}>{items}</sitemapindex>".encode()


def _client(docs: dict) -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        body = docs.get(str(request.url))
        if body is None:
            return httpx.Response(404)
        if isinstance(body, Exception):
            raise body
        return httpx.Response(200, content=body)
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_sitemap_url_for_uses_site_root():
    assert sitemap_url_for("https://Example.com/docs/page?x=1") == "https://example.com/sitemap.xml"


def test_has_sitemap():
    with _client({"https://example.com/sitemap.xml": _urlset()}) as c:
        assert has_sitemap(c, "https://example.com/docs/")
    with _client({}) as c:
        assert not has_sitemap(c, "https://example.com/docs/")


def test_parse_urlset_and_index():
    urls, nested = parse_sitemap_document(_urlset("https://example.com/a"))
    assert (urls, nested) == (["https://example.com/a"], [])
    urls, nested = parse_sitemap_document(_index("https://example.com/s1.xml"))
    assert (urls, nested) == ([], ["https://example.com/s1.xml"])
    assert parse_sitemap_document(b"<not-xml") == ([], [])


def test_index_resolved_to_leaves_in_order():
    docs = {
        "https://example.com/sitemap.xml": _index(
            "https://example.com/s1.xml", "https://example.com/s2.xml.gz", "https://example.com/missing.xml"
        ),
        "https://example.com/s1.xml": _urlset("https://example.com/a", "https://example.com/b"),
        "https://example.com/s2.xml.gz": gzip.compress(_urlset("https://example.com/c", "https://example.com/a")),
    }
    with _client(docs) as c:
        assert resolve_sitemap_urls(c, "https://example.com/docs/") == [
            "https://example.com/a",
            "https://example.com/b",
            "https://example.com/c",
        ]


def test_failing_branch_contributes_nothing():
    docs = {
        "https://example.com/sitemap.xml": _index("https://example.com/boom.xml", "https://example.com/ok.xml"),
        "https://example.com/boom.xml": httpx.ConnectError("reset"),
        "https://example.com/ok.xml": _urlset("https://example.com/ok"),
    }
    with _client(docs) as c:
        assert resolve_sitemap_urls(c, "https://example.com/") == ["https://example.com/ok"]


def test_self_referencing_index_terminates():
    docs = {"https://example.com/sitemap.xml": _index("https://example.com/sitemap.xml")}
    with _client(docs) as c:
        assert resolve_sitemap_urls(c, "https://example.com/") == []


def test_missing_sitemap_gives_empty_list():
    with _client({}) as c:
        assert resolve_sitemap_urls(c, "https://example.com/") == []

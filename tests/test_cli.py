import json
import uuid

import pytest

import run_crawl
from indexer.models import CrawlStatus, SitesCrawlStatus


@pytest.fixture
def cli_env(clean_env, tmp_path, fake_index):
    clean_env.setenv("ADMIN_SITE_SECRET", "admin")
    clean_env.setenv("LOG_FILE", str(tmp_path / "logs" / "indexer.log"))
    clean_env.setattr(run_crawl.IndexClient, "from_config", classmethod(lambda cls, cfg: fake_index))
    return fake_index


def test_status_command(cli_env, capsys):
    site_id = uuid.uuid4()
    cli_env.crawl_status = SitesCrawlStatus(sites=[CrawlStatus(site_id=site_id, page_count=7)])

    assert run_crawl.main(["status", "--service-secret", "admin"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["sites"][0]["siteId"] == str(site_id)
    assert out["sites"][0]["pageCount"] == 7

    assert run_crawl.main(["status", "--service-secret", "wrong"]) == 2


def test_crawl_command_rejects_unknown_site(cli_env):
    code = run_crawl.main([
        "crawl", "--site-id", str(uuid.uuid4()), "--site-secret", str(uuid.uuid4()), "--url", "https://example.com/",
    ])
    assert code == 2


def test_cleanup_command_purges_storage(cli_env, tmp_path):
    site_id = uuid.uuid4()
    leftover = tmp_path / "crawler" / f"siteId-{site_id}-abc-2024"
    leftover.mkdir(parents=True)
    (leftover / "frontier.sqlite3").write_bytes(b"x")

    assert run_crawl.main(["cleanup", "--site-id", str(site_id), "--purge-storage"]) == 0
    assert not leftover.exists()

from pathlib import Path

from indexer.config import load_config


def test_load_config_defaults(clean_env, tmp_path):
    cfg = load_config()

    assert cfg.elasticsearch_service == "http://elasticsearch:9200"
    assert cfg.admin_site_secret == ""
    assert cfg.is_vpn_ip is False
    assert cfg.site_search_user_agent == "opty"
    assert cfg.crawler_storage_dir == tmp_path / "crawler"

    # throttled vs unthrottled sessions
    assert cfg.throttled_crawler_threads == 2
    assert cfg.unthrottled_crawler_threads == 4
    assert cfg.max_pages_throttled == 500
    assert cfg.politeness_delay_ms == 200

    # scheduler
    assert cfg.max_parallel_crawls == 4
    assert cfg.crawl_timeout_minutes == 30
    assert cfg.shutdown_grace_seconds == 60
    assert cfg.recrawl_threshold_hours == 12

    assert cfg.retention_days == 2
    assert isinstance(cfg.log_file, Path)


def test_load_config_env_overrides_and_bounds(clean_env):
    clean_env.setenv("ELASTICSEARCH_SERVICE", "http://es.local:9200/")
    clean_env.setenv("ADMIN_SITE_SECRET", "s3cret")
    clean_env.setenv("IS_VPN_IP", "true")
    clean_env.setenv("THROTTLED_CRAWLER_THREADS", "999")
    clean_env.setenv("POLITENESS_DELAY_MS", "-10")
    clean_env.setenv("MAX_PAGES_THROTTLED", "-5")
    clean_env.setenv("MAX_PARALLEL_CRAWLS", "0")
    clean_env.setenv("RETENTION_DAYS", "not-a-number")

    cfg = load_config()

    # trailing slash dropped so paths can be appended
    assert cfg.elasticsearch_service == "http://es.local:9200"
    assert cfg.admin_site_secret == "s3cret"
    assert cfg.is_vpn_ip is True

    # clamps
    assert cfg.throttled_crawler_threads == 16
    assert cfg.politeness_delay_ms == 0
    assert cfg.max_pages_throttled == -1
    assert cfg.max_parallel_crawls == 1

    # unparseable falls back to the default
    assert cfg.retention_days == 2


def test_blank_string_env_uses_default(clean_env):
    clean_env.setenv("SITE_SEARCH_USER_AGENT", "   ")
    assert load_config().site_search_user_agent == "opty"

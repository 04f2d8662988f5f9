# tests/test_config.py
import os

import pytest
from pydantic import ValidationError

from softvuln.core.config import (
    Settings,
    TestingSettings as TestingConfig,
    get_database_config,
    get_feed_dir_path,
    get_http_client_config,
    get_settings,
)


def test_defaults(tmp_path):
    config = Settings(NVD_FEED_DIR=str(tmp_path / "feeds"))
    assert config.NVD_FEED_BASE_URL == "https://nvd.nist.gov/feeds/json/cve/1.1/"
    assert config.NVD_FEED_START_YEAR == 2002
    assert config.VULNERABILITY_RETENTION_HOURS == 2
    assert (tmp_path / "feeds").is_dir()


def test_log_level_is_normalised(tmp_path):
    assert Settings(LOG_LEVEL="debug", NVD_FEED_DIR=str(tmp_path)).LOG_LEVEL == "DEBUG"
    with pytest.raises(ValidationError):
        Settings(LOG_LEVEL="chatty", NVD_FEED_DIR=str(tmp_path))


def test_concurrency_must_be_positive(tmp_path):
    with pytest.raises(ValidationError):
        Settings(FEED_SYNC_MAX_CONCURRENCY=0, NVD_FEED_DIR=str(tmp_path))


def test_exclusions_are_normalised(tmp_path):
    config = Settings(
        CVE_EXCLUSIONS={"Apple:iCloud": ["cve-2017-13797", "CVE-2017-2383 ", ""]},
        NVD_FEED_DIR=str(tmp_path),
    )
    assert config.CVE_EXCLUSIONS == {"apple:icloud": ["CVE-2017-13797", "CVE-2017-2383"]}


def test_exclusion_key_needs_vendor_and_product(tmp_path):
    with pytest.raises(ValidationError):
        Settings(CVE_EXCLUSIONS={"icloud": ["CVE-2017-2383"]}, NVD_FEED_DIR=str(tmp_path))


def test_sqlite_has_no_pool_arguments():
    config = get_database_config()
    if config['url'].startswith('sqlite'):
        assert 'pool_size' not in config


def test_http_client_config():
    config = get_http_client_config()
    assert config['follow_redirects'] is True
    assert config['headers']['User-Agent'].startswith("SOFTVULN/")


def test_testing_settings(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    config = get_settings("testing")
    assert isinstance(config, TestingConfig)
    assert config.RECONCILE_MAX_WORKERS == 2


def test_feed_dir_path_is_absolute():
    path = get_feed_dir_path("nvdcve-1.1-2021.meta")
    assert os.path.isabs(path)
    assert os.path.basename(path) == "nvdcve-1.1-2021.meta"
    assert get_feed_dir_path() == os.path.dirname(path)

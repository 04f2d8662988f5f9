# tests/conftest.py
# Shared fixtures: small NVD feed archives, in-memory database, fake datastore

import gzip
import hashlib
import json
from datetime import timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from softvuln.core.database import init_db, make_engine
from softvuln.models.feed import FeedMetadata


def cpe_match(cpe23_uri, vulnerable=True, **bounds):
    """One JSON 1.1 cpe_match entry; bounds use the feed's own key names"""
    entry = {"vulnerable": vulnerable, "cpe23Uri": cpe23_uri, "cpe_name": []}
    entry.update(bounds)
    return entry


def cve_item(cve_id, *matches, children=None, operator="OR"):
    node = {"operator": operator, "children": children or [], "cpe_match": list(matches)}
    return {
        "cve": {"data_type": "CVE", "CVE_data_meta": {"ID": cve_id, "ASSIGNER": "cve@mitre.org"}},
        "configurations": {"CVE_data_version": "4.0", "nodes": [node]},
    }


def feed_payload(items):
    """Raw bytes of a gzipped feed plus the descriptor that describes them"""
    raw = json.dumps({
        "CVE_data_type": "CVE",
        "CVE_data_format": "MITRE",
        "CVE_data_version": "4.0",
        "CVE_data_numberOfCVEs": str(len(items)),
        "CVE_Items": items,
    }).encode("utf-8")
    archive = gzip.compress(raw)
    meta = FeedMetadata(
        last_modified_date="2021-10-06T03:01:48-04:00",
        uncompressed_size=len(raw),
        zip_size=len(archive),
        gz_size=len(archive),
        sha256=hashlib.sha256(raw).hexdigest().upper(),
    )
    return archive, meta


@pytest.fixture
def write_feed(tmp_path):
    """Write nvdcve-1.1-<year>.json.gz and its .meta into a feed directory"""
    feed_dir = tmp_path / "nvd"
    feed_dir.mkdir()

    def _write(year, items, directory=None):
        directory = directory or feed_dir
        archive, meta = feed_payload(items)
        (directory / f"nvdcve-1.1-{year}.json.gz").write_bytes(archive)
        (directory / f"nvdcve-1.1-{year}.meta").write_text(meta.render(), encoding="utf-8")
        return meta

    _write.directory = feed_dir
    return _write


@pytest.fixture
def feed_dir(write_feed):
    """Feed directory with two years of sample data"""
    write_feed(2019, [
        cve_item("CVE-2019-20916", cpe_match("cpe:2.3:a:pypa:pip:*:*:*:*:*:python:*:*", versionEndExcluding="19.2")),
        cve_item("CVE-2019-0001", cpe_match("cpe:2.3:a:mozilla:firefox:68.0:*:*:*:*:*:*:*")),
    ])
    write_feed(2021, [
        cve_item("CVE-2021-3572", cpe_match("cpe:2.3:a:pypa:pip:*:*:*:*:*:*:*:*", versionEndExcluding="21.1")),
        cve_item(
            "CVE-2021-0002",
            children=[
                {"operator": "OR", "children": [], "cpe_match": [
                    cpe_match("cpe:2.3:a:mozilla:firefox:*:*:*:*:*:*:*:*",
                              versionStartIncluding="90.0", versionEndIncluding="93.0"),
                ]},
                {"operator": "OR", "children": [], "cpe_match": [
                    cpe_match("cpe:2.3:o:microsoft:windows:-:*:*:*:*:*:*:*", vulnerable=False),
                ]},
            ],
            operator="AND",
        ),
        cve_item("CVE-2021-0003", cpe_match("cpe:2.3:a:mozilla:firefox:*:*:*:*:*:android:*:*")),
    ])
    return write_feed.directory


@pytest.fixture
def db_session():
    """Session on a fresh in-memory SQLite database"""
    engine = make_engine("sqlite://")
    init_db(engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


class FakeSoftwareCPE:
    def __init__(self, software_id, cpe):
        self.software_id = software_id
        self.cpe = cpe


class FakeDatastore:
    """In-process datastore recording every call"""

    def __init__(self, software_cpes=(), fail_on=None, fail_error=None):
        self.software_cpes = [FakeSoftwareCPE(software_id, cpe) for software_id, cpe in software_cpes]
        self.rows = set()
        self.inserts = []
        self.retire_calls = []
        self.fail_on = fail_on
        self.fail_error = fail_error or RuntimeError("datastore down")

    async def list_software_cpes(self):
        return list(self.software_cpes)

    async def insert_software_vulnerability(self, vuln, source):
        if self.fail_on is not None and vuln.cve == self.fail_on:
            raise self.fail_error
        self.inserts.append((vuln.software_id, vuln.cve, source))
        key = (vuln.software_id, vuln.cve, source)
        if key in self.rows:
            return False
        self.rows.add(key)
        return True

    async def delete_out_of_date_vulnerabilities(self, source, older_than):
        self.retire_calls.append((source, older_than))


@pytest.fixture
def fake_datastore():
    """Factory for FakeDatastore instances"""
    return FakeDatastore


@pytest.fixture
def two_hours():
    return timedelta(hours=2)

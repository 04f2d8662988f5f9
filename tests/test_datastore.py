# tests/test_datastore.py
import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from softvuln.core.exceptions import DatastoreError
from softvuln.models.software import (
    SoftwareCPE,
    SoftwareVulnerability,
    SoftwareVulnerabilityIn,
    VulnerabilitySource,
)
from softvuln.services.datastore import SQLAlchemyDatastore
from softvuln.services.vulnerability_reconciler import reconcile
from softvuln.services.feed_index import build_index


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def test_list_software_cpes(db_session):
    db_session.add_all([
        SoftwareCPE(software_id=7, cpe="cpe:2.3:a:pypa:pip:9.0.3:*:*:*:*:python:*:*"),
        SoftwareCPE(software_id=3, cpe="cpe:2.3:a:curl:curl:7.0:*:*:*:*:*:*:*"),
    ])
    db_session.commit()

    rows = asyncio.run(SQLAlchemyDatastore(db_session).list_software_cpes())

    assert [row.software_id for row in rows] == [7, 3]


def test_insert_reports_new_rows_once(db_session):
    clock = Clock(datetime(2021, 10, 6, 12, 0))
    datastore = SQLAlchemyDatastore(db_session, clock=clock)
    vuln = SoftwareVulnerabilityIn(software_id=1, cve="CVE-2021-3572")

    assert asyncio.run(datastore.insert_software_vulnerability(vuln, VulnerabilitySource.NVD)) is True

    clock.now += timedelta(minutes=30)
    assert asyncio.run(datastore.insert_software_vulnerability(vuln, VulnerabilitySource.NVD)) is False

    row, = db_session.query(SoftwareVulnerability).all()
    assert row.updated_at == datetime(2021, 10, 6, 12, 30)
    assert row.source is VulnerabilitySource.NVD


def test_retirement_only_removes_stale_rows(db_session):
    clock = Clock(datetime(2021, 10, 6, 12, 0))
    datastore = SQLAlchemyDatastore(db_session, clock=clock)

    async def scenario():
        await datastore.insert_software_vulnerability(SoftwareVulnerabilityIn(1, "CVE-2019-0001"), VulnerabilitySource.NVD)
        clock.now += timedelta(hours=3)
        await datastore.insert_software_vulnerability(SoftwareVulnerabilityIn(1, "CVE-2021-0002"), VulnerabilitySource.NVD)
        return await datastore.delete_out_of_date_vulnerabilities(VulnerabilitySource.NVD, timedelta(hours=2))

    deleted = asyncio.run(scenario())

    assert deleted == 1
    assert [row.cve for row in db_session.query(SoftwareVulnerability).all()] == ["CVE-2021-0002"]


def test_reconcile_against_database(db_session, feed_dir):
    db_session.add_all([
        SoftwareCPE(software_id=1, cpe="cpe:2.3:a:pypa:pip:9.0.3:*:*:*:*:python:*:*"),
        SoftwareCPE(software_id=2, cpe="cpe:2.3:a:mozilla:firefox:93.0:*:*:*:*:windows:*:*"),
    ])
    db_session.commit()
    index = build_index(feed_dir, exclusions={})

    clock = Clock(datetime(2021, 10, 6, 12, 0))
    datastore = SQLAlchemyDatastore(db_session, clock=clock)
    # Row that no longer matches anything
    asyncio.run(datastore.insert_software_vulnerability(SoftwareVulnerabilityIn(2, "CVE-2000-0001"), VulnerabilitySource.NVD))

    clock.now += timedelta(hours=3)
    first = asyncio.run(reconcile(datastore, index, only_recent=True, retire_after=timedelta(hours=2)))
    second = asyncio.run(reconcile(datastore, index, only_recent=True, retire_after=timedelta(hours=2)))

    assert len(first) == 3
    assert second == []
    stored = {(row.software_id, row.cve) for row in db_session.query(SoftwareVulnerability).all()}
    assert stored == {(1, "CVE-2019-20916"), (1, "CVE-2021-3572"), (2, "CVE-2021-0002")}


def failing_commit():
    raise OperationalError("COMMIT", {}, Exception("database is locked"))


def test_insert_failure_is_wrapped(db_session, monkeypatch):
    datastore = SQLAlchemyDatastore(db_session)
    monkeypatch.setattr(db_session, "commit", failing_commit)

    with pytest.raises(DatastoreError) as exc_info:
        asyncio.run(datastore.insert_software_vulnerability(SoftwareVulnerabilityIn(1, "CVE-2021-3572"),
                                                            VulnerabilitySource.NVD))

    assert exc_info.value.operation == "insert"
    assert "database is locked" in str(exc_info.value)


def test_retirement_failure_is_wrapped(db_session, monkeypatch):
    datastore = SQLAlchemyDatastore(db_session)
    monkeypatch.setattr(db_session, "commit", failing_commit)

    with pytest.raises(DatastoreError) as exc_info:
        asyncio.run(datastore.delete_out_of_date_vulnerabilities(VulnerabilitySource.NVD, timedelta(hours=2)))

    assert exc_info.value.operation == "retire"


def test_row_created_by_another_writer_is_refreshed(db_session, monkeypatch):
    clock = Clock(datetime(2021, 10, 6, 12, 0))
    datastore = SQLAlchemyDatastore(db_session, clock=clock)
    vuln = SoftwareVulnerabilityIn(software_id=1, cve="CVE-2021-3572")
    asyncio.run(datastore.insert_software_vulnerability(vuln, VulnerabilitySource.NVD))

    # The first lookup misses the row, as if it was inserted concurrently
    real_touch = datastore._touch
    lookups = []

    def touch(*args):
        lookups.append(args)
        if len(lookups) == 1:
            return False
        return real_touch(*args)

    monkeypatch.setattr(datastore, "_touch", touch)
    clock.now += timedelta(minutes=30)

    assert asyncio.run(datastore.insert_software_vulnerability(vuln, VulnerabilitySource.NVD)) is False

    assert len(lookups) == 2
    row, = db_session.query(SoftwareVulnerability).all()
    assert row.updated_at == datetime(2021, 10, 6, 12, 30)


def test_concurrent_upserts_report_one_new_row(db_session):
    datastore = SQLAlchemyDatastore(db_session)
    vuln = SoftwareVulnerabilityIn(software_id=1, cve="CVE-2021-3572")

    async def scenario():
        return await asyncio.gather(*(
            datastore.insert_software_vulnerability(vuln, VulnerabilitySource.NVD) for _ in range(10)
        ))

    results = asyncio.run(scenario())

    assert results.count(True) == 1
    assert db_session.query(SoftwareVulnerability).count() == 1

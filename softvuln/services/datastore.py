"""
Datastore contract consumed by the reconciler
softvuln/services/datastore.py

Datastore is the interface the reconciliation run depends on;
SQLAlchemyDatastore implements it on top of the ORM models.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from softvuln.core.exceptions import DatastoreError
from softvuln.models.software import (
    SoftwareCPE,
    SoftwareVulnerability,
    SoftwareVulnerabilityIn,
    VulnerabilitySource,
)

logger = logging.getLogger(__name__)


class Datastore(Protocol):
    async def list_software_cpes(self) -> List[SoftwareCPE]:
        ...

    async def insert_software_vulnerability(self, vuln: SoftwareVulnerabilityIn,
                                            source: VulnerabilitySource) -> bool:
        """Upsert vuln; True only if the row did not exist before"""
        ...

    async def delete_out_of_date_vulnerabilities(self, source: VulnerabilitySource,
                                                 older_than: timedelta) -> None:
        """Remove rows of source whose last-seen marker is older than older_than"""
        ...


def utcnow() -> datetime:
    """Naive UTC timestamp, as stored in DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SQLAlchemyDatastore:
    """Datastore backed by a SQLAlchemy session

    Session calls run synchronously on the event loop thread and no method
    awaits while holding the session, so each call completes before another
    worker can start one. Use one instance per event loop.
    """

    def __init__(self, db: Session, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.clock = clock or utcnow

    async def list_software_cpes(self) -> List[SoftwareCPE]:
        try:
            return self.db.query(SoftwareCPE).order_by(SoftwareCPE.id).all()
        except SQLAlchemyError as e:
            raise DatastoreError(f"listing software CPEs: {e}", operation="list") from e

    async def insert_software_vulnerability(self, vuln: SoftwareVulnerabilityIn,
                                            source: VulnerabilitySource) -> bool:
        now = self.clock()
        try:
            if self._touch(vuln, source, now):
                self.db.commit()
                return False

            self.db.add(SoftwareVulnerability(
                software_id=vuln.software_id,
                cve=vuln.cve,
                source=source,
                updated_at=now,
            ))
            self.db.commit()
            return True

        except IntegrityError:
            # Another writer created the row between our lookup and insert
            self.db.rollback()
            try:
                self._touch(vuln, source, now)
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                raise DatastoreError(f"refreshing {vuln.cve} for software {vuln.software_id}: {e}",
                                     operation="insert") from e
            return False

        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatastoreError(f"inserting {vuln.cve} for software {vuln.software_id}: {e}",
                                 operation="insert") from e

    def _touch(self, vuln: SoftwareVulnerabilityIn, source: VulnerabilitySource, now: datetime) -> bool:
        existing = self.db.query(SoftwareVulnerability).filter(
            SoftwareVulnerability.software_id == vuln.software_id,
            SoftwareVulnerability.cve == vuln.cve,
            SoftwareVulnerability.source == source,
        ).first()
        if existing is None:
            return False
        existing.updated_at = now
        return True

    async def delete_out_of_date_vulnerabilities(self, source: VulnerabilitySource,
                                                 older_than: timedelta) -> int:
        cutoff = self.clock() - older_than
        try:
            deleted = self.db.query(SoftwareVulnerability).filter(
                SoftwareVulnerability.source == source,
                SoftwareVulnerability.updated_at < cutoff,
            ).delete(synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatastoreError(f"retiring {source.value} vulnerabilities: {e}", operation="retire") from e

        logger.info(f"Retired {deleted} {source.value} vulnerabilities not seen since {cutoff.isoformat()}")
        return deleted

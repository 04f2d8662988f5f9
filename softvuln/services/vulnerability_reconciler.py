"""
Vulnerability Reconciler
softvuln/services/vulnerability_reconciler.py

Turns a FeedIndex plus the software inventory into persisted software
vulnerabilities:
- lists every software CPE from the datastore
- matches each CPE against the index on a bounded pool of workers
- upserts one association per matched CVE, remembering the new ones
- retires associations that were not refreshed within the retention window
"""

import asyncio
import logging
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional

from softvuln.core.config import settings
from softvuln.core.exceptions import CPEParseError
from softvuln.models.cpe import CPEIdentifier
from softvuln.models.software import (
    AffectedSoftware,
    SoftwareCPE,
    SoftwareVulnerabilityIn,
    VulnerabilitySource,
)
from softvuln.services.cpe_matcher import match
from softvuln.services.datastore import Datastore
from softvuln.services.feed_index import FeedIndex, build_index

logger = logging.getLogger(__name__)


def default_retention() -> timedelta:
    return timedelta(hours=settings.VULNERABILITY_RETENTION_HOURS)


class VulnerabilityReconciler:
    """Runs one reconciliation of the inventory against a feed index"""

    def __init__(self, datastore: Datastore, index: FeedIndex,
                 max_workers: Optional[int] = None,
                 log: Optional[logging.Logger] = None):
        self.datastore = datastore
        self.index = index
        self.max_workers = max_workers or settings.RECONCILE_MAX_WORKERS
        self.log = log or logger
        self.stats: Dict[str, Any] = {}

        self._recent: List[AffectedSoftware] = []
        self._recent_lock = asyncio.Lock()

    async def reconcile(self, only_recent: bool = False,
                        retire_after: Optional[timedelta] = None) -> List[AffectedSoftware]:
        """Match, upsert and retire; returns newly created associations when only_recent"""
        retire_after = retire_after if retire_after is not None else default_retention()
        self._recent = []
        self.stats = {
            'software_processed': 0,
            'cpes_skipped': 0,
            'associations': 0,
            'new_associations': 0,
            'completion_time': None
        }
        start_time = time.monotonic()

        software_cpes = await self.datastore.list_software_cpes()
        self.log.info(f"Reconciling {len(software_cpes)} software CPEs against {len(self.index)} CVEs")

        await self._run_workers(software_cpes, only_recent)

        await self.datastore.delete_out_of_date_vulnerabilities(VulnerabilitySource.NVD, retire_after)

        self.stats['completion_time'] = time.monotonic() - start_time
        self.log.info(
            f"Reconciliation done: {self.stats['software_processed']} processed, "
            f"{self.stats['cpes_skipped']} skipped, {self.stats['associations']} associations, "
            f"{self.stats['new_associations']} new"
        )

        return sorted(self._recent, key=lambda a: (a.software_id, a.cve))

    async def _run_workers(self, software_cpes: List[SoftwareCPE], only_recent: bool):
        queue: asyncio.Queue = asyncio.Queue()
        for software_cpe in software_cpes:
            queue.put_nowait(software_cpe)

        async def worker():
            while True:
                try:
                    software_cpe = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                # Cancellation checkpoint between software items
                await asyncio.sleep(0)
                await self._process(software_cpe, only_recent)

        worker_count = max(1, min(self.max_workers, len(software_cpes)))
        workers = [asyncio.create_task(worker()) for _ in range(worker_count)]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            # First failure (or cancellation) stops every other worker
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

    async def _process(self, software_cpe: SoftwareCPE, only_recent: bool):
        try:
            cpe = CPEIdentifier.parse(software_cpe.cpe)
        except CPEParseError as e:
            self.log.warning(f"Skipping software {software_cpe.software_id}: {e}")
            self.stats['cpes_skipped'] += 1
            return

        cves = match(self.index, cpe)
        self.log.debug(f"{cpe} matched {len(cves)} CVEs")

        for cve in sorted(cves):
            is_new = await self.datastore.insert_software_vulnerability(
                SoftwareVulnerabilityIn(software_id=software_cpe.software_id, cve=cve),
                VulnerabilitySource.NVD,
            )
            self.stats['associations'] += 1
            if not is_new:
                continue

            self.stats['new_associations'] += 1
            if only_recent:
                async with self._recent_lock:
                    self._recent.append(AffectedSoftware(software_id=software_cpe.software_id, cve=cve))

        self.stats['software_processed'] += 1


async def reconcile(datastore: Datastore, index: FeedIndex, only_recent: bool = False,
                    retire_after: Optional[timedelta] = None,
                    max_workers: Optional[int] = None) -> List[AffectedSoftware]:
    """Reconcile the inventory in datastore against index"""
    reconciler = VulnerabilityReconciler(datastore, index, max_workers=max_workers)
    return await reconciler.reconcile(only_recent=only_recent, retire_after=retire_after)


async def translate(datastore: Datastore, destination_dir, log: Optional[logging.Logger] = None,
                    only_recent: bool = False,
                    retire_after: Optional[timedelta] = None) -> List[AffectedSoftware]:
    """Build the feed index from destination_dir and reconcile the inventory against it"""
    log = log or logger
    index = await asyncio.to_thread(build_index, destination_dir)
    log.info(f"Loaded {index!r} from {destination_dir}")

    reconciler = VulnerabilityReconciler(datastore, index, log=log)
    return await reconciler.reconcile(only_recent=only_recent, retire_after=retire_after)


translate_cpe_to_cve = translate

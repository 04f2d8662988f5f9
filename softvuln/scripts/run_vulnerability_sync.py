# softvuln/scripts/run_vulnerability_sync.py
import argparse
import asyncio
import logging
import sys
from collections import Counter
from datetime import timedelta

from softvuln.core.config import get_feed_dir_path, settings, validate_environment
from softvuln.core.database import SessionLocal, init_db
from softvuln.core.exceptions import NoFeedDataError, SyncError
from softvuln.services.datastore import SQLAlchemyDatastore
from softvuln.services.feed_sync import sync_feeds
from softvuln.services.vulnerability_reconciler import translate
from softvuln.utils.logger import setup_logging

logger = logging.getLogger(__name__)

async def run_vulnerability_sync(feed_dir: str, base_url: str, skip_sync: bool,
                                 only_recent: bool, retire_after: timedelta) -> int:
    """Sync the NVD feeds, then reconcile the inventory; returns a process exit code"""
    if not skip_sync:
        try:
            await sync_feeds(feed_dir, base_url)
        except SyncError as e:
            # Cached feeds are left intact, keep going with the last good copy
            logger.error(f"Feed synchronisation incomplete:\n{e}")

    init_db()
    db = SessionLocal()
    try:
        datastore = SQLAlchemyDatastore(db)
        recent = await translate(datastore, feed_dir, logger, only_recent=only_recent, retire_after=retire_after)
    except NoFeedDataError as e:
        logger.error(f"Cannot match vulnerabilities: {e}")
        return 2
    finally:
        db.close()

    if only_recent:
        by_software = Counter(affected.affected() for affected in recent)
        print(f"\nRecently discovered vulnerabilities: {len(recent)}")
        for software_id, count in sorted(by_software.items()):
            print(f"  software {software_id}: {count} new CVEs")

    return 0

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Synchronise NVD feeds and reconcile software vulnerabilities.")
    parser.add_argument("--feed-dir", default=get_feed_dir_path(),
                        help="Directory holding the cached NVD feeds")
    parser.add_argument("--base-url", default="",
                        help="Feed base URL (defaults to the upstream NVD location)")
    parser.add_argument("--skip-sync", action="store_true",
                        help="Match against the cached feeds without downloading")
    parser.add_argument("--only-recent", action="store_true",
                        help="Report vulnerabilities discovered by this run")
    parser.add_argument("--retire-after-hours", type=float, default=settings.VULNERABILITY_RETENTION_HOURS,
                        help="Retire associations not refreshed within this many hours")
    args = parser.parse_args(argv)

    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    for issue in validate_environment():
        logger.warning(f"Configuration issue: {issue}")

    return asyncio.run(run_vulnerability_sync(
        feed_dir=args.feed_dir,
        base_url=args.base_url,
        skip_sync=args.skip_sync,
        only_recent=args.only_recent,
        retire_after=timedelta(hours=args.retire_after_hours),
    ))

if __name__ == "__main__":
    sys.exit(main())

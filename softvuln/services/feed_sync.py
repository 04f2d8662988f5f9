"""
NVD Feed Synchronizer
softvuln/services/feed_sync.py

Keeps a local copy of the NVD JSON 1.1 yearly feeds up to date:
- fetches each year's ".meta" descriptor
- skips years whose cached archive already matches the descriptor
- downloads and verifies the rest (gz size, uncompressed size, SHA-256)
- replaces cached files atomically, never touching them on failure
- reports every failed year in one aggregated SyncError
"""

import asyncio
import gzip
import hashlib
import logging
import os
import tempfile
import zlib
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import httpx

from softvuln.core.config import settings, get_http_client_config
from softvuln.core.exceptions import FeedIntegrityError, SyncError
from softvuln.models.feed import FeedMetadata

logger = logging.getLogger(__name__)

FEED_FILE_PREFIX = "nvdcve-1.1-"
ARCHIVE_SUFFIX = ".json.gz"
META_SUFFIX = ".meta"


def archive_name(year: int) -> str:
    return f"{FEED_FILE_PREFIX}{year}{ARCHIVE_SUFFIX}"


def meta_name(year: int) -> str:
    return f"{FEED_FILE_PREFIX}{year}{META_SUFFIX}"


def feed_years(start_year: int = None, now: datetime = None) -> List[int]:
    """Every year covered by the feed set, oldest first"""
    start_year = start_year or settings.NVD_FEED_START_YEAR
    current_year = (now or datetime.now(timezone.utc)).year
    return list(range(start_year, current_year + 1))


def resolve_base_url(base_url: str = "") -> str:
    """Empty base URL selects the upstream NVD location"""
    base_url = base_url or settings.NVD_FEED_BASE_URL
    return base_url if base_url.endswith("/") else base_url + "/"


def _describe_status(response: httpx.Response) -> str:
    return f"{response.status_code} {response.reason_phrase}".strip()


def _discard(name: str):
    try:
        os.unlink(name)
    except FileNotFoundError:
        pass


def stage_file(path: Path, data: bytes) -> str:
    """Write data to a temporary file next to path and return its name"""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
    except BaseException:
        _discard(tmp_name)
        raise
    return tmp_name


def replace_files(contents: List[Tuple[Path, bytes]]):
    """Replace every path with its data, or leave all of them as they were"""
    staged: List[Tuple[str, Path]] = []
    try:
        for path, data in contents:
            staged.append((stage_file(path, data), path))

        backups: List[Tuple[str, Path]] = []
        try:
            for tmp_name, path in staged:
                if path.exists():
                    backup = str(path.with_name(f".{path.name}.bak"))
                    os.replace(path, backup)
                    backups.append((backup, path))
                os.replace(tmp_name, path)
        except BaseException:
            for backup, path in reversed(backups):
                os.replace(backup, path)
            raise

        for backup, _ in backups:
            _discard(backup)
    finally:
        for tmp_name, _ in staged:
            _discard(tmp_name)


def read_cached_metadata(path: Path) -> Optional[FeedMetadata]:
    """Return the cached descriptor, or None if missing or unreadable"""
    try:
        return FeedMetadata.parse(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable cached descriptor {path}: {e}")
        return None


class FeedSynchronizer:
    """Synchronises NVD yearly feeds into a destination directory"""

    def __init__(self, destination_dir, base_url: str = "",
                 years: Optional[Iterable[int]] = None,
                 client: Optional[httpx.AsyncClient] = None,
                 max_concurrency: Optional[int] = None):
        self.destination_dir = Path(destination_dir)
        self.base_url = resolve_base_url(base_url)
        self.years = list(years) if years is not None else feed_years()
        self.client = client
        self.max_concurrency = max_concurrency or settings.FEED_SYNC_MAX_CONCURRENCY

    def url_for(self, name: str) -> str:
        return f"{self.base_url}{name}"

    async def sync(self) -> None:
        """Synchronise every year, raising SyncError listing each failure"""
        self.destination_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Synchronising {len(self.years)} NVD feeds from {self.base_url} into {self.destination_dir}")

        if self.client is not None:
            errors = await self._sync_all(self.client)
        else:
            async with httpx.AsyncClient(**get_http_client_config()) as client:
                errors = await self._sync_all(client)

        if errors:
            logger.error(f"NVD feed synchronisation finished with {len(errors)} error(s)")
            raise SyncError(errors)

        logger.info("NVD feed synchronisation completed")

    async def _sync_all(self, client: httpx.AsyncClient) -> List[str]:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def bounded(year: int) -> Optional[str]:
            async with semaphore:
                return await self._sync_year(client, year)

        results = await asyncio.gather(*(bounded(year) for year in self.years))
        return [error for error in results if error]

    async def _sync_year(self, client: httpx.AsyncClient, year: int) -> Optional[str]:
        """Synchronise one year; returns an error line instead of raising"""
        archive_path = self.destination_dir / archive_name(year)
        meta_path = self.destination_dir / meta_name(year)

        try:
            remote_meta = await self._fetch_metadata(client, self.url_for(meta_name(year)))

            if self._is_current(archive_path, meta_path, remote_meta):
                logger.debug(f"{archive_path.name} is up to date ({remote_meta.last_modified_date})")
                return None

            data = await self._download_archive(client, self.url_for(archive_name(year)), remote_meta)

            replace_files([
                (archive_path, data),
                (meta_path, remote_meta.render().encode("utf-8")),
            ])
            logger.info(f"Downloaded {archive_path.name} ({len(data):,} bytes, modified {remote_meta.last_modified_date})")
            return None

        except FeedIntegrityError as e:
            logger.warning(f"Feed {year} not synchronised: {e}")
            return str(e)
        except OSError as e:
            logger.warning(f"Feed {year} not written: {e}")
            return f"writing \"{archive_path}\": {e}"

    def _is_current(self, archive_path: Path, meta_path: Path, remote_meta: FeedMetadata) -> bool:
        """True when the cached archive already matches the published descriptor"""
        if not archive_path.exists():
            return False
        if not remote_meta.same_release(read_cached_metadata(meta_path)):
            return False
        return archive_path.stat().st_size == remote_meta.gz_size

    async def _get(self, client: httpx.AsyncClient, url: str) -> httpx.Response:
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            raise FeedIntegrityError(f"fetching \"{url}\": {e}", url=url) from e

        if not response.is_success:
            status = _describe_status(response)
            raise FeedIntegrityError(f"unexpected status for \"{url}\": {status}", url=url, status=status)
        return response

    async def _fetch_metadata(self, client: httpx.AsyncClient, url: str) -> FeedMetadata:
        response = await self._get(client, url)
        try:
            return FeedMetadata.parse(response.text)
        except ValueError as e:
            raise FeedIntegrityError(f"invalid metadata for \"{url}\": {e}", url=url) from e

    async def _download_archive(self, client: httpx.AsyncClient, url: str, meta: FeedMetadata) -> bytes:
        """Download an archive and verify it against its descriptor"""
        response = await self._get(client, url)
        status = _describe_status(response)
        data = response.content

        if len(data) != meta.gz_size:
            raise FeedIntegrityError(
                f"unexpected size for \"{url}\" ({status}): want {meta.gz_size}, have {len(data)}",
                url=url, status=status,
            )

        try:
            raw = gzip.decompress(data)
        except (OSError, EOFError, zlib.error) as e:
            raise FeedIntegrityError(f"invalid gzip archive \"{url}\": {e}", url=url, status=status) from e

        if len(raw) != meta.uncompressed_size:
            raise FeedIntegrityError(
                f"unexpected uncompressed size for \"{url}\": want {meta.uncompressed_size}, have {len(raw)}",
                url=url, status=status,
            )

        digest = hashlib.sha256(raw).hexdigest().upper()
        if digest != meta.sha256:
            raise FeedIntegrityError(
                f"checksum mismatch for \"{url}\": want {meta.sha256}, have {digest}",
                url=url, status=status,
            )

        return data


async def sync_feeds(destination_dir, base_url: str = "",
                     years: Optional[Iterable[int]] = None,
                     client: Optional[httpx.AsyncClient] = None,
                     max_concurrency: Optional[int] = None) -> None:
    """Coroutine form of download_feed"""
    synchronizer = FeedSynchronizer(destination_dir, base_url, years=years,
                                    client=client, max_concurrency=max_concurrency)
    await synchronizer.sync()


def download_feed(destination_dir, base_url: str = "") -> None:
    """Synchronise all NVD yearly feeds; raises SyncError if any year failed"""
    asyncio.run(sync_feeds(destination_dir, base_url))

"""
NVD Feed Index
softvuln/services/feed_index.py

Reads the verified yearly archives left by the feed synchronizer and groups
every CVE's CPE match rules by (vendor, product). The resulting FeedIndex is
immutable and is handed explicitly to each matcher call.
"""

import gzip
import json
import logging
import zlib
from collections import defaultdict
from pathlib import Path
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Tuple

from softvuln.core.config import get_exclusions
from softvuln.core.exceptions import CPEParseError, NoFeedDataError
from softvuln.models.feed import MatchRule, VulnerabilityRecord
from softvuln.services.feed_sync import ARCHIVE_SUFFIX, FEED_FILE_PREFIX, META_SUFFIX, read_cached_metadata

logger = logging.getLogger(__name__)

ProductKey = Tuple[str, str]


class FeedIndex:
    """Read-only dictionary of vulnerability records keyed by (vendor, product)"""

    def __init__(self, records: Mapping[ProductKey, Tuple[VulnerabilityRecord, ...]],
                 exclusions: Optional[Mapping[str, FrozenSet[str]]] = None,
                 files: Iterable[str] = (),
                 warnings: Iterable[str] = ()):
        self._records = MappingProxyType(dict(records))
        self._exclusions = MappingProxyType({k.lower(): frozenset(v) for k, v in (exclusions or {}).items()})
        self.files = tuple(files)
        self.warnings = tuple(warnings)
        self._cve_count = len({record.cve_id for group in self._records.values() for record in group})

    def candidates(self, vendor: str, product: str) -> Tuple[VulnerabilityRecord, ...]:
        """Records whose rules name this vendor/product (case-insensitive)"""
        return self._records.get((vendor.lower(), product.lower()), ())

    def exclusions_for(self, vendor: str, product: str) -> FrozenSet[str]:
        return self._exclusions.get(f"{vendor.lower()}:{product.lower()}", frozenset())

    def products(self) -> Iterator[ProductKey]:
        return iter(self._records)

    def __len__(self):
        return self._cve_count

    def __repr__(self):
        return f"<FeedIndex cves={self._cve_count} products={len(self._records)} files={len(self.files)}>"


class FeedIndexBuilder:
    """Accumulates records from feed archives into a FeedIndex"""

    def __init__(self, exclusions: Optional[Mapping[str, FrozenSet[str]]] = None):
        self.exclusions = exclusions
        self.files: List[str] = []
        self.warnings: List[str] = []
        # product -> cve -> rules, insertion ordered and deduplicated
        self._rules: Dict[ProductKey, Dict[str, Dict[MatchRule, None]]] = defaultdict(lambda: defaultdict(dict))

    def warn(self, message: str):
        logger.warning(message)
        self.warnings.append(message)

    def add_archive(self, path: Path) -> int:
        """Parse one gzipped JSON 1.1 feed; returns the number of CVEs read"""
        try:
            with gzip.open(path, "rt", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, EOFError, zlib.error, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValueError(f"cannot read {path.name}: {e}") from e

        items = data.get("CVE_Items") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise ValueError(f"{path.name} has no CVE_Items list")

        added = 0
        for item in items:
            if self.add_item(item, path.name):
                added += 1

        self.files.append(path.name)
        return added

    def add_item(self, item, source: str = "") -> bool:
        """Add one CVE item; malformed items are recorded as warnings and skipped"""
        try:
            cve_id = item["cve"]["CVE_data_meta"]["ID"]
            nodes = (item.get("configurations") or {}).get("nodes") or []
        except (KeyError, TypeError, AttributeError):
            self.warn(f"Skipping CVE item without an ID in {source}")
            return False

        if not isinstance(cve_id, str) or not cve_id:
            self.warn(f"Skipping CVE item with invalid ID {cve_id!r} in {source}")
            return False

        for rule in self._walk_nodes(cve_id, nodes, source):
            key = (rule.vendor.lower(), rule.product.lower())
            self._rules[key][cve_id][rule] = None
        return True

    def _walk_nodes(self, cve_id: str, nodes, source: str) -> Iterator[MatchRule]:
        if not isinstance(nodes, list):
            self.warn(f"Skipping malformed configuration of {cve_id} in {source}")
            return

        for node in nodes:
            if not isinstance(node, dict):
                self.warn(f"Skipping malformed node of {cve_id} in {source}")
                continue

            entries = node.get("cpe_match") or []
            if not isinstance(entries, list):
                self.warn(f"Skipping malformed cpe_match of {cve_id} in {source}")
                entries = []

            for entry in entries:
                try:
                    yield MatchRule.from_feed(entry)
                except (CPEParseError, KeyError, TypeError) as e:
                    self.warn(f"Skipping match rule of {cve_id} in {source}: {e}")

            yield from self._walk_nodes(cve_id, node.get("children") or [], source)

    def build(self) -> FeedIndex:
        records = {
            key: tuple(VulnerabilityRecord(cve_id=cve_id, rules=tuple(rules)) for cve_id, rules in by_cve.items())
            for key, by_cve in self._rules.items()
        }
        return FeedIndex(records, exclusions=self.exclusions, files=self.files, warnings=self.warnings)


def find_verified_archives(destination_dir: Path, builder: FeedIndexBuilder) -> List[Path]:
    """Cached archives whose companion descriptor confirms their size"""
    verified = []
    for path in sorted(destination_dir.glob(f"{FEED_FILE_PREFIX}*{ARCHIVE_SUFFIX}")):
        meta_path = path.with_name(path.name[:-len(ARCHIVE_SUFFIX)] + META_SUFFIX)
        meta = read_cached_metadata(meta_path)
        if meta is None:
            builder.warn(f"Skipping {path.name}: no descriptor")
            continue
        if path.stat().st_size != meta.gz_size:
            builder.warn(f"Skipping {path.name}: size {path.stat().st_size} does not match descriptor {meta.gz_size}")
            continue
        verified.append(path)
    return verified


def build_index(destination_dir, exclusions: Optional[Mapping[str, FrozenSet[str]]] = None) -> FeedIndex:
    """Build a FeedIndex from every verified archive in destination_dir"""
    destination_dir = Path(destination_dir)
    builder = FeedIndexBuilder(exclusions if exclusions is not None else get_exclusions())

    if destination_dir.is_dir():
        for path in find_verified_archives(destination_dir, builder):
            try:
                count = builder.add_archive(path)
                logger.info(f"Indexed {count} CVEs from {path.name}")
            except ValueError as e:
                builder.warn(f"Skipping archive: {e}")

    if not builder.files:
        raise NoFeedDataError(f"no usable NVD feed data in {destination_dir}", directory=str(destination_dir))

    index = builder.build()
    logger.info(f"Feed index ready: {len(index)} CVEs from {len(index.files)} files, {len(index.warnings)} warnings")
    return index

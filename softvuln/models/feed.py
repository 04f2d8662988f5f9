"""
NVD feed data structures
softvuln/models/feed.py

FeedMetadata mirrors the per-year ".meta" descriptor, MatchRule and
VulnerabilityRecord hold the CPE match data read from JSON 1.1 feed archives.
"""

import enum
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from softvuln.models.cpe import ANY, NOT_APPLICABLE, CPEIdentifier

# Keys appear verbatim in the upstream descriptor
META_KEYS = ("lastModifiedDate", "size", "zipSize", "gzSize", "sha256")


@dataclass(frozen=True)
class FeedMetadata:
    """Per-year integrity descriptor published next to each feed archive"""

    last_modified_date: str
    uncompressed_size: int
    zip_size: int
    gz_size: int
    sha256: str

    @classmethod
    def parse(cls, text: str) -> "FeedMetadata":
        """Parse newline-separated key:value pairs, raising ValueError on bad input"""
        values: Dict[str, str] = {}
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            key, sep, value = line.partition(":")
            if not sep:
                raise ValueError(f"malformed line {line!r}")
            values[key] = value.strip()

        missing = [key for key in META_KEYS if key not in values]
        if missing:
            raise ValueError(f"missing keys: {', '.join(missing)}")

        try:
            return cls(
                last_modified_date=values["lastModifiedDate"],
                uncompressed_size=int(values["size"]),
                zip_size=int(values["zipSize"]),
                gz_size=int(values["gzSize"]),
                sha256=values["sha256"].upper(),
            )
        except ValueError as e:
            raise ValueError(f"invalid size value: {e}") from e

    def render(self) -> str:
        """Serialize back to the descriptor format"""
        return "\r\n".join([
            f"lastModifiedDate:{self.last_modified_date}",
            f"size:{self.uncompressed_size}",
            f"zipSize:{self.zip_size}",
            f"gzSize:{self.gz_size}",
            f"sha256:{self.sha256}",
        ]) + "\r\n"

    def same_release(self, other: Optional["FeedMetadata"]) -> bool:
        """True when other describes the same published archive"""
        return (
            other is not None
            and self.last_modified_date == other.last_modified_date
            and self.gz_size == other.gz_size
            and self.uncompressed_size == other.uncompressed_size
            and self.sha256 == other.sha256
        )


class RuleKind(enum.Enum):
    """Closed set of match rule shapes"""
    EXACT = "exact"
    RANGE = "range"
    ANY = "any"
    NOT_APPLICABLE = "not_applicable"


@dataclass(frozen=True)
class MatchRule:
    """One cpe_match entry of a CVE configuration"""

    vendor: str
    product: str
    target_sw: str
    version: str
    vulnerable: bool = True
    version_start_including: Optional[str] = None
    version_start_excluding: Optional[str] = None
    version_end_including: Optional[str] = None
    version_end_excluding: Optional[str] = None

    @property
    def kind(self) -> RuleKind:
        if self.has_bounds():
            return RuleKind.RANGE
        if self.version in (ANY, ""):
            return RuleKind.ANY
        if self.version == NOT_APPLICABLE:
            return RuleKind.NOT_APPLICABLE
        return RuleKind.EXACT

    def has_bounds(self) -> bool:
        return any((
            self.version_start_including,
            self.version_start_excluding,
            self.version_end_including,
            self.version_end_excluding,
        ))

    @classmethod
    def from_feed(cls, entry: dict) -> "MatchRule":
        """Build a rule from a JSON 1.1 cpe_match entry; raises CPEParseError, KeyError or TypeError"""
        cpe = CPEIdentifier.parse(entry["cpe23Uri"])
        return cls(
            vendor=cpe.vendor,
            product=cpe.product,
            target_sw=cpe.target_sw,
            version=cpe.version,
            vulnerable=bool(entry.get("vulnerable", True)),
            version_start_including=_bound(entry, "versionStartIncluding"),
            version_start_excluding=_bound(entry, "versionStartExcluding"),
            version_end_including=_bound(entry, "versionEndIncluding"),
            version_end_excluding=_bound(entry, "versionEndExcluding"),
        )


def _bound(entry: dict, key: str) -> Optional[str]:
    value = entry.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string, got {value!r}")
    return value


@dataclass(frozen=True)
class VulnerabilityRecord:
    """A CVE together with the match rules that describe where it applies"""

    cve_id: str
    rules: Tuple[MatchRule, ...]

"""
CPE 2.3 identifier model
softvuln/models/cpe.py

Parses CPE 2.3 formatted strings
(cpe:2.3:part:vendor:product:version:update:edition:language:sw_edition:target_sw:target_hw:other)
into an immutable value used by the matcher and the feed index.
"""

from dataclasses import dataclass, fields
from typing import List

from softvuln.core.exceptions import CPEParseError

CPE23_PREFIX = "cpe:2.3:"

ANY = "*"
NOT_APPLICABLE = "-"


@dataclass(frozen=True)
class CPEIdentifier:
    """Parsed CPE 2.3 attribute-value pairs"""

    part: str
    vendor: str
    product: str
    version: str = ANY
    update: str = ANY
    edition: str = ANY
    language: str = ANY
    sw_edition: str = ANY
    target_sw: str = ANY
    target_hw: str = ANY
    other: str = ANY

    @classmethod
    def parse(cls, cpe_name: str) -> "CPEIdentifier":
        """Parse a CPE 2.3 formatted string, raising CPEParseError if malformed"""
        if not isinstance(cpe_name, str) or not cpe_name.startswith(CPE23_PREFIX):
            raise CPEParseError(f"not a CPE 2.3 formatted string: {cpe_name!r}", cpe=cpe_name)

        values = split_cpe_attributes(cpe_name[len(CPE23_PREFIX):])
        names = [f.name for f in fields(cls)]

        if len(values) < 3:
            raise CPEParseError(f"missing part, vendor or product in {cpe_name!r}", cpe=cpe_name)
        if len(values) > len(names):
            raise CPEParseError(f"too many attributes in {cpe_name!r}", cpe=cpe_name)
        if not values[1] or not values[2] or values[1] in (ANY, NOT_APPLICABLE) or values[2] in (ANY, NOT_APPLICABLE):
            raise CPEParseError(f"vendor and product must be concrete in {cpe_name!r}", cpe=cpe_name)

        return cls(**dict(zip(names, values)))

    @property
    def product_key(self) -> str:
        """Lower-cased "vendor:product" key used for lookups and exclusions"""
        return f"{self.vendor.lower()}:{self.product.lower()}"

    def is_unpinned(self) -> bool:
        """True when the version is "-" or "*" and every rule for the product applies"""
        return self.version in (NOT_APPLICABLE, ANY)

    def to_cpe23(self) -> str:
        """Render back to a CPE 2.3 formatted string"""
        return CPE23_PREFIX + ":".join(getattr(self, f.name) for f in fields(self))

    def __str__(self):
        return self.to_cpe23()


def split_cpe_attributes(body: str) -> List[str]:
    """Split on unescaped colons, keeping escape sequences as they appear"""
    values = []
    current = []
    escaped = False

    for char in body:
        if escaped:
            current.append(char)
            escaped = False
        elif char == "\\":
            current.append(char)
            escaped = True
        elif char == ":":
            values.append("".join(current))
            current = []
        else:
            current.append(char)

    values.append("".join(current))
    return values

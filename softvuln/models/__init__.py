"""
Models Package
softvuln/models/__init__.py

ORM tables for the software inventory and its vulnerabilities, plus the
in-memory CPE and feed structures used during one matching run.
"""

from .cpe import CPEIdentifier
from .feed import FeedMetadata, MatchRule, RuleKind, VulnerabilityRecord
from .software import (
    AffectedSoftware,
    SoftwareCPE,
    SoftwareVulnerability,
    SoftwareVulnerabilityIn,
    VulnerabilitySource,
)

__all__ = [
    "CPEIdentifier",
    "FeedMetadata",
    "MatchRule",
    "RuleKind",
    "VulnerabilityRecord",
    "AffectedSoftware",
    "SoftwareCPE",
    "SoftwareVulnerability",
    "SoftwareVulnerabilityIn",
    "VulnerabilitySource",
]

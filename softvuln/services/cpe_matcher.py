"""
CPE to CVE Matcher
softvuln/services/cpe_matcher.py

Given one software CPE and a FeedIndex, returns the CVEs whose match rules
cover that CPE. Pure function of its inputs, no I/O.
"""

import logging
from typing import FrozenSet

from softvuln.models.cpe import ANY, CPEIdentifier
from softvuln.models.feed import MatchRule, RuleKind
from softvuln.services.feed_index import FeedIndex
from softvuln.utils.versions import in_range, versions_equal

logger = logging.getLogger(__name__)

_WILDCARD_TARGETS = (ANY, "")


def target_sw_matches(rule: MatchRule, cpe: CPEIdentifier) -> bool:
    """Wildcards on either side match anything, otherwise compare case-insensitively"""
    if rule.target_sw in _WILDCARD_TARGETS or cpe.target_sw in _WILDCARD_TARGETS:
        return True
    return rule.target_sw.lower() == cpe.target_sw.lower()


def version_matches(rule: MatchRule, version: str) -> bool:
    """Decide whether a rule applies to a CPE version, by rule kind"""
    if version in ("-", ANY):
        # Unpinned inventory items inherit the whole product history
        return True

    kind = rule.kind

    if not version:
        return kind is RuleKind.ANY

    if kind is RuleKind.EXACT:
        return versions_equal(rule.version, version)
    if kind is RuleKind.RANGE:
        return in_range(
            version,
            start_including=rule.version_start_including,
            start_excluding=rule.version_start_excluding,
            end_including=rule.version_end_including,
            end_excluding=rule.version_end_excluding,
        )
    if kind is RuleKind.ANY:
        return True
    return False


def rule_matches(rule: MatchRule, cpe: CPEIdentifier) -> bool:
    if not rule.vulnerable:
        return False
    if not target_sw_matches(rule, cpe):
        return False
    return version_matches(rule, cpe.version)


def match(index: FeedIndex, cpe: CPEIdentifier) -> FrozenSet[str]:
    """Set of CVE IDs affecting cpe according to index"""
    matched = set()

    for record in index.candidates(cpe.vendor, cpe.product):
        if any(rule_matches(rule, cpe) for rule in record.rules):
            matched.add(record.cve_id)

    excluded = index.exclusions_for(cpe.vendor, cpe.product)
    if excluded and matched & excluded:
        logger.debug(f"Excluding {len(matched & excluded)} configured CVEs for {cpe.product_key}")
        matched -= excluded

    return frozenset(matched)

"""
Version ordering for CPE range rules
softvuln/utils/versions.py

PEP 440 versions are compared with packaging; anything packaging rejects
(1.0.2k, 2019-05, 93.0a1-esr, ...) falls back to a segment-wise comparison.
"""

import re
from typing import List, Optional, Union

from packaging.version import InvalidVersion, Version

_TOKEN_RE = re.compile(r"\d+|[a-z]+")

# OpenSSL-style patch letters (1.0.2k) that packaging would read as prereleases
_PATCH_LETTER_RE = re.compile(r"\d[a-z]$", re.IGNORECASE)

# Alphabetic segments that mark a version as earlier than its release
_PRERELEASE_RANK = {"dev": 0, "alpha": 1, "beta": 2, "pre": 3, "preview": 3, "rc": 4}

Token = Union[int, str]


def _pep440(version: str) -> Optional[Version]:
    if _PATCH_LETTER_RE.search(version):
        return None
    try:
        return Version(version)
    except InvalidVersion:
        return None


def _tokenize(version: str) -> List[Token]:
    tokens: List[Token] = []
    for token in _TOKEN_RE.findall(version.lower()):
        tokens.append(int(token) if token.isdigit() else token)
    if tokens and tokens[0] == "v":
        tokens = tokens[1:]
    return tokens


def _compare_tokens(a: Token, b: Token) -> int:
    if isinstance(a, int) and isinstance(b, int):
        return (a > b) - (a < b)
    if isinstance(a, int):
        return 1
    if isinstance(b, int):
        return -1

    rank_a, rank_b = _PRERELEASE_RANK.get(a), _PRERELEASE_RANK.get(b)
    if rank_a is not None and rank_b is not None:
        return (rank_a > rank_b) - (rank_a < rank_b)
    if rank_a is not None:
        return -1
    if rank_b is not None:
        return 1
    return (a > b) - (a < b)


def _compare_missing(token: Token) -> int:
    """Compare a trailing token against nothing at all"""
    if isinstance(token, int):
        return 1 if token > 0 else 0
    # 1.0rc1 < 1.0 but 1.0.2k > 1.0.2
    return -1 if token in _PRERELEASE_RANK else 1


def _fallback_compare(a: str, b: str) -> int:
    tokens_a, tokens_b = _tokenize(a), _tokenize(b)
    for index in range(max(len(tokens_a), len(tokens_b))):
        if index >= len(tokens_a):
            result = -_compare_missing(tokens_b[index])
        elif index >= len(tokens_b):
            result = _compare_missing(tokens_a[index])
        else:
            result = _compare_tokens(tokens_a[index], tokens_b[index])
        if result:
            return result
    return 0


def compare_versions(a: str, b: str) -> int:
    """Return -1, 0 or 1 as a is older than, equal to or newer than b"""
    a, b = a.replace("\\", ""), b.replace("\\", "")
    parsed_a, parsed_b = _pep440(a), _pep440(b)
    if parsed_a is not None and parsed_b is not None:
        return (parsed_a > parsed_b) - (parsed_a < parsed_b)
    return _fallback_compare(a, b)


def versions_equal(a: str, b: str) -> bool:
    if a.lower() == b.lower():
        return True
    return compare_versions(a, b) == 0


def in_range(version: str,
             start_including: Optional[str] = None,
             start_excluding: Optional[str] = None,
             end_including: Optional[str] = None,
             end_excluding: Optional[str] = None) -> bool:
    """True when version satisfies every bound that is set"""
    if start_including and compare_versions(version, start_including) < 0:
        return False
    if start_excluding and compare_versions(version, start_excluding) <= 0:
        return False
    if end_including and compare_versions(version, end_including) > 0:
        return False
    if end_excluding and compare_versions(version, end_excluding) >= 0:
        return False
    return True

"""
Custom exceptions for NVD feed synchronisation and CPE reconciliation
softvuln/core/exceptions.py

Exception Hierarchy:
- VulnSyncException (base)
  ├── SyncError (aggregated feed synchronisation failures)
  ├── FeedIntegrityError (one feed file failed to fetch or verify)
  ├── CPEParseError (CPE 2.3 string could not be parsed)
  ├── NoFeedDataError (no usable feed archive to match against)
  └── DatastoreError (persistence failure, fatal to the run)
"""

from typing import List


class VulnSyncException(Exception):
    """Base exception for all vulnerability sync operations"""

    def __init__(self, message: str, source_name: str = None, details: dict = None):
        self.source_name = source_name
        self.details = details or {}
        super().__init__(message)

    def __str__(self):
        if self.source_name:
            return f"[{self.source_name}] {super().__str__()}"
        return super().__str__()


class FeedIntegrityError(VulnSyncException):
    """Raised when a single feed file cannot be fetched or verified"""

    def __init__(self, message: str, url: str = None, status: str = None, **kwargs):
        self.url = url
        self.status = status
        details = {'url': url, 'status': status, **kwargs}
        super().__init__(message, details=details)


class SyncError(VulnSyncException):
    """Aggregates every per-file failure of one synchronisation run"""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        noun = "error" if len(self.errors) == 1 else "errors"
        lines = [f"{len(self.errors)} synchronisation {noun}:"]
        lines.extend(f"\t{line}" for line in self.errors)
        super().__init__("\n".join(lines), details={'count': len(self.errors)})


class CPEParseError(VulnSyncException):
    """Raised when a CPE 2.3 formatted string is malformed"""

    def __init__(self, message: str, cpe: str = None):
        self.cpe = cpe
        super().__init__(message, details={'cpe': cpe})


class NoFeedDataError(VulnSyncException):
    """Raised when no usable feed archive exists in the feed directory"""

    def __init__(self, message: str, directory: str = None):
        self.directory = directory
        super().__init__(message, source_name="nvd", details={'directory': directory})


class DatastoreError(VulnSyncException):
    """Raised when the datastore fails during list, upsert or retire"""

    def __init__(self, message: str, operation: str = None):
        self.operation = operation
        super().__init__(message, details={'operation': operation})

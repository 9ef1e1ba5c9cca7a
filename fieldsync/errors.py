# fieldsync/errors.py
"""
Exceptions raised by the ingestion pipeline.
"""
import re
from typing import Optional

STATEMENT_TIMEOUT_CODES = ("57014", "57000")
STATEMENT_TIMEOUT_RE = re.compile(r"statement timeout", re.IGNORECASE)


class FieldSyncError(Exception):
    pass


class InvalidInput(FieldSyncError):
    """Parsed object graph is not a Feature, Feature list, geometry or FeatureCollection."""
    pass


class UnsupportedFileType(FieldSyncError):
    pass


class ParseError(FieldSyncError):
    pass


class EmptyResultError(FieldSyncError):
    pass


class MappingCancelled(FieldSyncError):
    """The attribute mapping was declined; aborts the file and the rest of the batch."""

    def __init__(self, message: str = "Attribute mapping cancelled", observed_keys=None, samples=None):
        super().__init__(message)
        self.observed_keys = list(observed_keys or [])
        self.samples = dict(samples or {})


class RemoteError(FieldSyncError):
    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None,
                 response_data: Optional[dict] = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.response_data = response_data or {}


class RemoteTransientError(RemoteError):
    """Server cancelled the statement on timeout; retried by halving the batch."""
    pass


class RemoteFatalError(RemoteError):
    """Any other remote failure, or a timeout that could not be split further."""

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None,
                 response_data: Optional[dict] = None, inserted: int = 0):
        super().__init__(message, code=code, status_code=status_code, response_data=response_data)
        self.inserted = inserted


class CacheError(FieldSyncError):
    pass


def is_statement_timeout(code: Optional[str], message: Optional[str]) -> bool:
    if str(code or "") in STATEMENT_TIMEOUT_CODES:
        return True
    return bool(STATEMENT_TIMEOUT_RE.search(str(message or "")))


def classify_remote_error(message: str, code: Optional[str] = None, status_code: Optional[int] = None,
                          response_data: Optional[dict] = None) -> RemoteError:
    if is_statement_timeout(code, message):
        return RemoteTransientError(message, code=code, status_code=status_code, response_data=response_data)
    return RemoteFatalError(message, code=code, status_code=status_code, response_data=response_data)

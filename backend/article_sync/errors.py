"""
Exception hierarchy

Contention (a busy lock) is not an exception: LockStore.acquire() returns
None and the orchestrator reports a skipped run.
"""
from typing import Optional


class SyncError(Exception):
    """Base class for all sync errors"""


class ConfigurationError(SyncError):
    """Unknown or inactive source, or missing credentials"""


class OriginApiError(SyncError):
    """The origin content API could not be reached or returned an error"""

    def __init__(self, message: str, errcode: Optional[int] = None):
        super().__init__(message)
        self.errcode = errcode


class OriginAuthError(OriginApiError):
    """Credentials or access token were rejected"""


class MalformedItemError(SyncError):
    """An item from the origin API is missing required fields"""


class DownloadError(SyncError):
    """A media resource could not be downloaded or stored

    Timeouts, 4xx and 5xx responses all surface as this error; the
    underlying exception is kept in ``cause``.
    """

    def __init__(self, url: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"{message} ({url})")
        self.url = url
        self.cause = cause


class TaskError(SyncError):
    """A queued task failed"""


class RetryableTaskError(TaskError):
    """A queued task failed in a way that is worth retrying later"""

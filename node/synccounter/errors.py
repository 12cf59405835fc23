class SyncError(Exception):
    """Base class for every error raised by the sync machinery."""


class NetworkError(SyncError):
    """
    A request could not complete (transport failure or 5xx).
    Always recoverable: the mutation stays queued and is retried later.
    """


class RejectedError(SyncError):
    """The server refused a payload (4xx). Never retried automatically."""

    def __init__(self, status_code: int, detail: str = ""):
        super().__init__(f"rejected with {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class StorageQuotaError(SyncError):
    """Local persistence rejected a write for capacity reasons."""


class UnknownChangeError(SyncError):
    """A pending change carries a type nobody knows how to send."""

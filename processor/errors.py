"""Error types raised by the cache refresh pipeline."""


class RefreshError(Exception):
    """Base class for all refresh pipeline errors."""


class Unauthorized(RefreshError):
    """Trigger request carried a missing or invalid bearer token."""


class ValidationFailed(RefreshError):
    """Request input failed validation; no state was changed."""


class TransientError(RefreshError):
    """Failure expected to succeed on a later attempt."""


class SourceUnavailable(TransientError):
    """The relational event store could not be reached or timed out."""


class CacheError(RefreshError):
    """Base class for key/value cache failures."""


class CacheUnavailable(TransientError, CacheError):
    """The key/value cache could not be reached or is saturated."""

    def __init__(self, message: str, high_load: bool = False):
        super().__init__(message)
        self.high_load = high_load


class CacheRejected(CacheError):
    """The cache refused a request that will fail the same way if retried."""


class GeoWriteFailed(RefreshError):
    """A single point could not be written to the geo index."""

    def __init__(self, identifier: str, reason: str):
        super().__init__(f"{identifier}: {reason}")
        self.identifier = identifier
        self.reason = reason

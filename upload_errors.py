# upload_errors.py
"""Error taxonomy for the chunked upload subsystem.

Everything raised by the uploader derives from UploadError so callers
(the worker pool, the CLI) can classify an outcome by type and status
code instead of by message text.
"""

CONFLICT_STATUSES = frozenset([409, 412])


class UploadError(Exception):
    """Base class for every upload failure."""

    def __init__(self, message, status_code=None, body="", permanent=False):
        super().__init__(message)
        self.status_code = status_code
        self.body = body or ""
        self.permanent = permanent or self.is_conflict

    @property
    def is_conflict(self) -> bool:
        return self.status_code in CONFLICT_STATUSES


class AuthError(UploadError):
    """Credential exchange failed or required configuration is missing."""


class RequestError(UploadError):
    """A single remote request failed; built once at the transport boundary."""

    def __init__(self, message, status_code=None, body="", method="", url="", permanent=False):
        super().__init__(message, status_code=status_code, body=body, permanent=permanent)
        self.method = method
        self.url = url


class PermanentError(RequestError):
    """The remote service rejected the request for a reason retries cannot fix."""

    def __init__(self, message, **kwargs):
        kwargs["permanent"] = True
        super().__init__(message, **kwargs)


class TransientError(RequestError):
    """Network or server trouble that outlived the retry policy."""


class SessionCreateError(UploadError):
    pass


class SessionExpiredError(UploadError):
    """The upload URL is no longer known to the server (404/410)."""


class TransferError(UploadError):
    """One transfer attempt failed; ``permanent`` tells whether retrying the file is pointless."""


class IncompleteTransferError(TransferError):
    """All bytes were sent but the server never confirmed completion."""


class EmptySourceError(UploadError):
    pass


class TransferCancelled(UploadError):
    """A stop was requested between chunks; the session record is kept."""

"""Exceptions raised by the tpi client.

Transport failures are not wrapped: ``httpx`` exceptions reach the caller
as-is.
"""

from typing import Optional


class TpiError(Exception):
    """Base exception for BMC operations."""

    pass


class UsageError(TpiError):
    """Command arguments do not form a valid request."""

    pass


class AuthError(TpiError):
    """Authentication failures."""

    pass


class Forbidden(AuthError):
    """Login rejected the supplied credentials (HTTP 403)."""

    pass


class AuthenticationFailed(AuthError):
    """Request still unauthorized after re-authenticating once (HTTP 401)."""

    def __init__(self, message: str = "authentication failed: server keeps answering 401 Unauthorized") -> None:
        super().__init__(message)


class UnexpectedStatus(TpiError):
    """HTTP status the protocol does not allow at this point."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ProtocolError(TpiError):
    """Response did not have the expected shape (bad JSON, missing keys)."""

    pass


class UploadError(TpiError):
    """Local read or remote chunk write failed during an upload."""

    pass


class FlashError(TpiError):
    """The BMC reported an error while flashing."""

    pass

"""
Error taxonomy for host API calls.

Every failure of a host call surfaces as a ``HostError`` subclass so callers can
decide on retry, rename detection or availability changes by type alone.
"""

from datetime import datetime
from typing import Optional


class HostError(Exception):
    """Raised when a host API request fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(HostError):
    """The requested resource does not exist or is not accessible (404)."""

    def __init__(self, message: str):
        super().__init__(message, status_code=404)


class RepositoryUnavailableError(NotFoundError):
    """The repository itself is gone, private, or was renamed."""

    def __init__(self, full_name: Optional[str] = None, github_id: Optional[int] = None):
        self.full_name = full_name
        self.github_id = github_id
        target = full_name if full_name is not None else f"with GitHub ID {github_id}"
        super().__init__(f"Repository {target} not found or is not accessible")


class UserNotFoundError(NotFoundError):
    pass


class RateLimitedError(HostError):
    """The host refused the call because a rate limit is exhausted."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        status_code: int = 429,
        rate_limit=None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code=status_code)
        self.rate_limit = rate_limit
        self.retry_after = retry_after

    @property
    def reset_at(self) -> Optional[datetime]:
        if self.rate_limit is None:
            return None
        return self.rate_limit.reset_at


class TransientError(HostError):
    """Server-side failure (5xx) or a connection problem; worth retrying."""


class MalformedResponseError(HostError):
    """The host answered with a body that could not be decoded."""

"""
GitHub Gateway

Throttled, retrying access to the GitHub REST API with a closed error taxonomy.
"""

from services.github_gateway.errors import (
    HostError,
    NotFoundError,
    RepositoryUnavailableError,
    UserNotFoundError,
    RateLimitedError,
    TransientError,
    MalformedResponseError,
)
from services.github_gateway.rate_limit import Gateway, RateLimitInfo, RequestQueue, RetryPolicy
from services.github_gateway.client import GitHubClient

__all__ = [
    "HostError",
    "NotFoundError",
    "RepositoryUnavailableError",
    "UserNotFoundError",
    "RateLimitedError",
    "TransientError",
    "MalformedResponseError",
    "Gateway",
    "RateLimitInfo",
    "RequestQueue",
    "RetryPolicy",
    "GitHubClient",
]

"""
Read-only GitHub REST client.

Every request is routed through the shared ``Gateway`` and every failure is
mapped onto the ``HostError`` taxonomy before it reaches the caller.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from config.settings import GitHubSettings
from services.github_gateway.errors import (
    HostError,
    MalformedResponseError,
    NotFoundError,
    RateLimitedError,
    RepositoryUnavailableError,
    TransientError,
    UserNotFoundError,
)
from services.github_gateway.rate_limit import Gateway, RateLimitInfo

logger = logging.getLogger(__name__)


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json() if response.content else {}
    except ValueError:
        body = {}
    message = body.get("message") if isinstance(body, dict) else None
    return f"GitHub API error {response.status_code}: {message or response.reason_phrase}"


class GitHubClient:
    """
    GitHub REST API client using httpx with bearer token auth.

    Example:
        >>> async with GitHubClient(settings.github, gateway) as client:
        ...     repo = await client.get_repository("owner/name")
    """

    API_VERSION = "2022-11-28"

    def __init__(
        self,
        config: GitHubSettings,
        gateway: Gateway,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.gateway = gateway

        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": self.API_VERSION,
            "User-Agent": config.user_agent,
        }
        if config.access_token is not None:
            headers["Authorization"] = f"Bearer {config.access_token.get_secret_value()}"

        self._client = http_client or httpx.AsyncClient(
            base_url=config.api_url,
            headers=headers,
            timeout=httpx.Timeout(config.timeout, connect=5.0),
            follow_redirects=True,
        )

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _send(self, path: str, params: Optional[Dict[str, Any]], not_found: HostError) -> Any:
        """One raw request; raises a ``HostError`` for anything but a decodable 2xx."""
        try:
            response = await self._client.get(path, params=params)
        except httpx.TransportError as e:
            raise TransientError(f"Request to {path} failed: {e}") from e

        status = response.status_code
        if status == 404:
            raise not_found

        if status == 429 or (status == 403 and response.headers.get("x-ratelimit-remaining") == "0"):
            raise RateLimitedError(
                _error_message(response),
                status_code=status,
                rate_limit=RateLimitInfo.from_headers(response.headers),
                retry_after=_retry_after(response),
            )

        if status >= 500:
            raise TransientError(_error_message(response), status_code=status)

        if status >= 400:
            raise HostError(_error_message(response), status_code=status)

        if status >= 300:
            # Redirects are followed, so one left over has no usable target
            raise HostError(f"Unfollowed redirect {status} from {path}", status_code=status)

        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"Undecodable response body from {path}", status_code=status
            ) from e

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None, not_found: Optional[HostError] = None) -> Any:
        not_found = not_found or NotFoundError(f"{path} not found")
        return await self.gateway.call(self._send, path, params, not_found)

    async def get_repository(self, full_name: str) -> Dict[str, Any]:
        """Fetch a repository descriptor by "owner/name"."""
        return await self._get(
            f"/repos/{full_name}", not_found=RepositoryUnavailableError(full_name=full_name)
        )

    async def get_repository_by_id(self, github_id: int) -> Dict[str, Any]:
        """Fetch a repository descriptor by its immutable host id."""
        return await self._get(
            f"/repositories/{github_id}", not_found=RepositoryUnavailableError(github_id=github_id)
        )

    async def list_commits(
        self,
        full_name: str,
        branch: Optional[str] = None,
        since: Optional[datetime] = None,
        page: int = 1,
        per_page: int = 100,
    ) -> List[Dict[str, Any]]:
        """Fetch one page of the commit listing, newest first."""
        params: Dict[str, Any] = {"page": page, "per_page": min(per_page, 100)}
        if branch:
            params["sha"] = branch
        if since is not None:
            params["since"] = since.isoformat()

        data = await self._get(
            f"/repos/{full_name}/commits",
            params=params,
            not_found=RepositoryUnavailableError(full_name=full_name),
        )
        if not isinstance(data, list):
            raise MalformedResponseError(f"Expected a list of commits for {full_name}")
        return data

    async def get_user(self, login: str) -> Dict[str, Any]:
        return await self._get(f"/users/{login}", not_found=UserNotFoundError(f"User {login} not found"))

    async def get_user_by_id(self, github_id: int) -> Dict[str, Any]:
        return await self._get(
            f"/user/{github_id}", not_found=UserNotFoundError(f"User with GitHub ID {github_id} not found")
        )

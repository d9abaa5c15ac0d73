"""GitHub host client using direct REST API calls."""

from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
import structlog

from patchfleet.config.settings import HardeningConfig
from patchfleet.exceptions import ExternalServiceError, NetworkError, RateLimitError
from patchfleet.providers.base import ForkInfo, RemoteIssue, VCSHost
from patchfleet.resilience.layer import VCS_API, ResilienceLayer, ResiliencePolicy, build_layer, default_policies

log = structlog.get_logger(__name__)

_TRANSIENT_STATUS = frozenset({500, 502, 503, 504})


def _parse_retry_after(value: str | None) -> float | None:
    """Seconds to wait from a ``Retry-After`` header (delta-seconds or HTTP-date); None if unusable."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max((when - datetime.now(UTC)).total_seconds(), 0.0)


class GitHubRestHost(VCSHost):
    """GitHub implementation of ``VCSHost``.

    Every request runs under the ``vcs-api`` resilience policy: transport
    failures and 5xx responses become ``NetworkError`` (retried, counted by
    the breaker), 429 and exhausted rate limits become ``RateLimitError``,
    other 4xx responses become ``ExternalServiceError``.
    """

    def __init__(
        self,
        api_url: str = "https://api.github.com",
        token: str | None = None,
        resilience: ResilienceLayer | None = None,
        policy: ResiliencePolicy | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            api_url: REST API base URL
            token: API token; unauthenticated requests are heavily rate limited
            resilience: Shared resilience layer
            policy: Policy for API calls; defaults to the standard ``vcs-api`` policy
            timeout: Per-request timeout in seconds
            transport: Custom httpx transport (used in tests)
        """
        self.api_url = api_url.rstrip("/")
        self.token = token.strip() if token else None
        self.resilience = resilience or build_layer(HardeningConfig())
        self.policy = policy or default_policies(HardeningConfig())[VCS_API]
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._viewer: str | None = None

    async def connect(self) -> None:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        self._client = httpx.AsyncClient(
            base_url=self.api_url,
            headers=headers,
            timeout=self.timeout,
            transport=self._transport,
        )
        log.info("vcs_host_connected", api_url=self.api_url, authenticated=self.token is not None)

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "GitHubRestHost":
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.disconnect()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if self._client is None:
            await self.connect()
        assert self._client is not None
        client = self._client

        async def send() -> httpx.Response:
            try:
                response = await client.request(method, path, **kwargs)
            except httpx.TransportError as e:
                raise NetworkError(f"{method} {path} failed: {e}") from e

            if response.status_code == 429 or (
                response.status_code == 403 and response.headers.get("x-ratelimit-remaining") == "0"
            ):
                raise RateLimitError(
                    f"{method} {path} rate limited",
                    retry_after=_parse_retry_after(response.headers.get("retry-after")),
                )
            if response.status_code in _TRANSIENT_STATUS:
                raise NetworkError(f"{method} {path} returned {response.status_code}")
            return response

        return await self.resilience.execute(send, self.policy)

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.is_success:
            return
        raise ExternalServiceError(
            f"Failed to {action}: HTTP {response.status_code}",
            status_code=response.status_code,
            response_text=response.text,
        )

    async def get_issue(self, owner: str, repo: str, number: int) -> RemoteIssue:
        response = await self._request("GET", f"/repos/{owner}/{repo}/issues/{number}")
        self._raise_for_status(response, f"fetch issue {owner}/{repo}#{number}")
        data = response.json()
        return RemoteIssue(
            number=data["number"],
            title=data.get("title") or "",
            body=data.get("body") or "",
            labels=[label["name"] for label in data.get("labels", []) if isinstance(label, dict)],
            state=data.get("state", "open"),
        )

    async def has_open_pr(self, owner: str, repo: str, branch: str, head_owner: str | None = None) -> bool:
        params = {"state": "open", "head": f"{head_owner or owner}:{branch}", "per_page": 1}
        response = await self._request("GET", f"/repos/{owner}/{repo}/pulls", params=params)
        self._raise_for_status(response, f"list pull requests for {owner}/{repo}")
        has_pr = len(response.json()) > 0
        log.debug("open_pr_checked", repo=f"{owner}/{repo}", branch=branch, head_owner=head_owner, has_pr=has_pr)
        return has_pr

    async def has_push_access(self, owner: str, repo: str) -> bool:
        response = await self._request("GET", f"/repos/{owner}/{repo}")
        self._raise_for_status(response, f"fetch repository {owner}/{repo}")
        permissions = response.json().get("permissions") or {}
        return bool(permissions.get("push") or permissions.get("admin"))

    async def _viewer_login(self) -> str:
        if self._viewer is None:
            response = await self._request("GET", "/user")
            self._raise_for_status(response, "fetch authenticated user")
            self._viewer = response.json()["login"]
        return self._viewer

    async def create_fork(self, owner: str, repo: str) -> ForkInfo:
        viewer = await self._viewer_login()
        existing = await self._request("GET", f"/repos/{viewer}/{repo}")
        if existing.status_code == 200:
            data = existing.json()
            if data.get("fork") and (data.get("parent") or {}).get("full_name") == f"{owner}/{repo}":
                log.info("fork_exists", upstream=f"{owner}/{repo}", fork=data["full_name"])
                return ForkInfo(owner=viewer, name=data["name"], clone_url=data["clone_url"])

        response = await self._request("POST", f"/repos/{owner}/{repo}/forks", json={})
        self._raise_for_status(response, f"fork {owner}/{repo}")
        data = response.json()
        log.info("fork_created", upstream=f"{owner}/{repo}", fork=data["full_name"])
        return ForkInfo(owner=data["owner"]["login"], name=data["name"], clone_url=data["clone_url"])

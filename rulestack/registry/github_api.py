"""GitHub-compatible host API: access checks, rate limits, pull requests."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from rulestack.errors import (
    ConnectionFailed,
    InsufficientAccess,
    NotFound,
    PullRequestFailed,
    RateLimited,
    RegistryError,
    ServerError,
    Timeout,
    Unauthorized,
)
from rulestack.utils.deadline import Deadline

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
RATE_LIMIT_LOW_WATER = 10
WRITE_PERMISSIONS = frozenset({"admin", "maintain", "write"})

_SCP_URL = re.compile(r"^(?:[\w.-]+@)?(?P<host>[\w.-]+):(?P<path>[^/].*)$")
_HTTP_URL = re.compile(r"^(?:https?|ssh|git)://(?:[^@/]+@)?(?P<host>[^/:]+)(?::\d+)?/(?P<path>.+)$")


@dataclass
class RepoRef:
    """Where a git registry lives on its host."""

    host: str
    owner: str
    name: str

    @property
    def web_url(self) -> str:
        return f"https://{self.host}/{self.owner}/{self.name}"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


def parse_repo_url(url: str) -> RepoRef | None:
    """Split a remote URL into host/owner/name; None for local paths."""
    url = url.strip().rstrip("/")
    match = _HTTP_URL.match(url) or (None if "://" in url else _SCP_URL.match(url))
    if not match:
        return None
    parts = [p for p in match.group("path").split("/") if p]
    if len(parts) < 2:
        return None
    name = parts[-1][:-4] if parts[-1].endswith(".git") else parts[-1]
    return RepoRef(host=match.group("host").lower(), owner="/".join(parts[:-1]), name=name)


def default_api_url(repo: RepoRef) -> str:
    """API base for well-known hosts; empty when it cannot be derived."""
    if repo.host in ("github.com", "www.github.com"):
        return GITHUB_API_URL
    return ""


class HostAPI:
    """Minimal GitHub REST client scoped to one repository and one token."""

    def __init__(
        self,
        repo: RepoRef,
        token: str,
        api_url: str = GITHUB_API_URL,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        registry: str = "",
    ):
        self.repo = repo
        self.api_url = api_url.rstrip("/")
        self._token = token
        self._client = http_client or httpx.Client()
        self._owns_client = http_client is None
        self._sleep = sleep
        self._clock = clock
        self.registry = registry

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "rulestack",
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _request(self, method: str, path: str, deadline: Deadline, **kwargs) -> httpx.Response:
        deadline.check(f"{method} {path}", registry=self.registry)
        try:
            response = self._client.request(
                method,
                f"{self.api_url}{path}",
                headers=self._headers(),
                timeout=deadline.timeout_for(30.0),
                **kwargs,
            )
        except httpx.TimeoutException as exc:
            raise Timeout(f"host API {method} {path} timed out", registry=self.registry) from exc
        except httpx.TransportError as exc:
            raise ConnectionFailed(f"host API unreachable: {exc}", registry=self.registry) from exc

        if response.is_success:
            return response

        status = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = {}
        message = body.get("message", response.text) if isinstance(body, dict) else response.text
        errors = body.get("errors", []) if isinstance(body, dict) else []
        detail = "; ".join(str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors)
        if detail:
            message = f"{message}: {detail}"

        if status == 401:
            raise Unauthorized(f"host API rejected the token: {message}", status_code=status, registry=self.registry)
        if status in (403, 429) and response.headers.get("x-ratelimit-remaining") == "0":
            reset = response.headers.get("x-ratelimit-reset")
            raise RateLimited(
                f"host API rate limit exceeded: {message}",
                reset_at=float(reset) if reset else None,
                status_code=status,
                registry=self.registry,
            )
        if status == 403:
            raise InsufficientAccess(f"host API denied access: {message}", status_code=status, registry=self.registry)
        if status == 404:
            raise NotFound(f"host API: {message}", status_code=status, registry=self.registry)
        if status == 422:
            raise PullRequestFailed(message, status_code=status, registry=self.registry)
        if status >= 500:
            raise ServerError(f"host API error {status}: {message}", status_code=status, registry=self.registry)
        raise RegistryError(f"host API error {status}: {message}", status_code=status, registry=self.registry)

    # -- Calls -------------------------------------------------------------

    def wait_for_rate_limit(self, deadline: Deadline) -> None:
        """Block until the core quota resets if it is below the low-water mark.

        Raises ``RateLimited`` when the reset lies beyond the deadline.
        """
        core = self._request("GET", "/rate_limit", deadline).json().get("resources", {}).get("core", {})
        remaining = int(core.get("remaining", RATE_LIMIT_LOW_WATER))
        if remaining >= RATE_LIMIT_LOW_WATER:
            return
        reset_at = float(core.get("reset", 0))
        wait = max(0.0, reset_at - self._clock())
        budget = deadline.remaining()
        if budget is not None and wait > budget:
            raise RateLimited(
                f"host API quota low ({remaining} left); resets in {wait:.0f}s",
                reset_at=reset_at,
                registry=self.registry,
            )
        logger.warning("host API quota low (%d left); waiting %.0fs for reset", remaining, wait)
        self._sleep(wait)

    def current_user(self, deadline: Deadline) -> str:
        return self._request("GET", "/user", deadline).json().get("login", "")

    def check_push_access(self, deadline: Deadline) -> str:
        """Return the caller's permission level; raise if it cannot push.

        Raises:
            InsufficientAccess: read-only, or not a collaborator.
            Unauthorized: the token itself was rejected.
        """
        user = self.current_user(deadline)
        path = f"/repos/{self.repo.full_name}/collaborators/{user}/permission"
        try:
            permission = self._request("GET", path, deadline).json().get("permission", "none")
        except NotFound:
            permission = "none"
        if permission not in WRITE_PERMISSIONS:
            raise InsufficientAccess(
                f"user '{user}' has '{permission}' access to {self.repo.full_name}; write access is required",
                registry=self.registry,
            )
        return permission

    def create_pull_request(self, head: str, base: str, title: str, body: str, deadline: Deadline) -> str:
        """Open a pull request and return its web URL."""
        payload = {"title": title, "head": head, "base": base, "body": body}
        response = self._request("POST", f"/repos/{self.repo.full_name}/pulls", deadline, json=payload)
        return response.json().get("html_url", "")

"""GitHub REST access for the relay.

- GitHubAppTokenProvider mints installation access tokens from an
  RS256-signed app JWT and caches them until shortly before expiry
- GitHubPullRequestClient is scoped to one repository and exposes the two
  calls a turn needs: repository metadata and pull-request creation

Transient failures (transport errors, 5xx) are retried with tenacity.
"""

import base64
from datetime import UTC, datetime, timedelta

import httpx
import jwt
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from agentrelay.core.exceptions import CredentialsMissingError, PullRequestError

logger = structlog.get_logger(__name__)

GITHUB_API_URL = "https://api.github.com"
_API_HEADERS = {
    "Accept": "application/vnd.github+json",
    "X-GitHub-Api-Version": "2022-11-28",
}

# Installation tokens live 60 minutes; refresh a little early.
_TOKEN_TTL = timedelta(minutes=55)


class GitHubServerError(Exception):
    """5xx from GitHub; retried."""


_github_retry = retry(
    retry=retry_if_exception_type((httpx.TransportError, GitHubServerError)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    reraise=True,
    before_sleep=lambda rs: logger.warning(
        "github_request_retrying",
        attempt=rs.attempt_number,
        sleep_seconds=rs.next_action.sleep,
    ),
)


@_github_retry
async def _send(
    method: str,
    url: str,
    headers: dict,
    json: dict | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.Response:
    async with httpx.AsyncClient(transport=transport, timeout=30.0) as client:
        response = await client.request(method, url, headers=headers, json=json)
    if response.status_code >= 500:
        raise GitHubServerError(f"GitHub API error ({response.status_code})")
    return response


class GitHubAppTokenProvider:
    """Mints installation tokens for a GitHub App installation."""

    def __init__(
        self,
        app_id: str,
        private_key: str,
        installation_id: str,
        base_url: str = GITHUB_API_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not app_id or not private_key or not installation_id:
            raise CredentialsMissingError("GitHub App is not fully configured")
        self.app_id = app_id
        self.installation_id = installation_id
        self.base_url = base_url
        self._transport = transport
        self._private_key = private_key
        self._token: str | None = None
        self._expires: datetime | None = None

    def app_jwt(self, now: datetime | None = None) -> str:
        """RS256 app JWT, valid for ten minutes (backdated a minute for clock skew)."""
        now = now or datetime.now(UTC)
        payload = {
            "iat": int(now.timestamp()) - 60,
            "exp": int((now + timedelta(minutes=10)).timestamp()),
            "iss": self.app_id,
        }
        # Private key may be PEM or base64-encoded PEM
        private_key = self._private_key
        if not private_key.startswith("-----BEGIN"):
            private_key = base64.b64decode(private_key).decode()
        return jwt.encode(payload, private_key, algorithm="RS256")

    async def get_token(self, now: datetime | None = None) -> str:
        now = now or datetime.now(UTC)
        if self._token and self._expires and now < self._expires:
            return self._token

        response = await _send(
            "POST",
            f"{self.base_url}/app/installations/{self.installation_id}/access_tokens",
            headers={**_API_HEADERS, "Authorization": f"Bearer {self.app_jwt(now)}"},
            transport=self._transport,
        )
        if response.status_code != 201:
            logger.error("github_installation_token_failed", status_code=response.status_code)
            raise CredentialsMissingError("Failed to obtain a repository access token")

        self._token = response.json()["token"]
        self._expires = now + _TOKEN_TTL
        logger.info("github_installation_token_minted", installation_id=self.installation_id)
        return self._token


class GitHubPullRequestClient:
    """Pull-request API scoped to ``owner/repo``."""

    def __init__(
        self,
        token: str,
        owner: str,
        repo: str,
        base_url: str = GITHUB_API_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.owner = owner
        self.repo = repo
        self.base_url = base_url
        self._headers = {**_API_HEADERS, "Authorization": f"Bearer {token}"}
        self._transport = transport

    @classmethod
    def for_repository(cls, token: str, full_name: str, **kwargs) -> "GitHubPullRequestClient":
        """Build a client from an ``owner/repo`` name."""
        owner, _, repo = full_name.partition("/")
        if not owner or not repo:
            raise PullRequestError(f"Repository name must be owner/repo, got {full_name!r}")
        return cls(token, owner, repo, **kwargs)

    async def _request(self, method: str, endpoint: str, data: dict | None = None) -> dict:
        url = f"{self.base_url}/repos/{self.owner}/{self.repo}{endpoint}"
        try:
            response = await _send(method, url, headers=self._headers, json=data, transport=self._transport)
        except (httpx.TransportError, GitHubServerError) as exc:
            raise PullRequestError(f"GitHub request failed: {exc}") from exc

        if response.status_code >= 400:
            raise PullRequestError(f"GitHub API error ({response.status_code}): {response.text[:500]}")
        return response.json()

    async def get_repository(self) -> dict:
        return await self._request("GET", "")

    async def create_pull_request(self, title: str, body: str, branch: str, base_branch: str) -> dict:
        """Open a pull request from ``branch`` into ``base_branch``.

        Returns:
            The created pull request (``html_url``, ``number``, ...)
        """
        pr = await self._request(
            "POST",
            "/pulls",
            {"title": title, "body": body, "head": branch, "base": base_branch},
        )
        logger.info("github_pull_request_created", repo=f"{self.owner}/{self.repo}", number=pr.get("number"))
        return pr

"""Resolution of the agent key and the repository access token for a request."""

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import structlog

from agentrelay.core.config import Settings
from agentrelay.core.exceptions import CredentialsMissingError
from agentrelay.integrations.github import GitHubAppTokenProvider

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Credentials:
    agent_key: str
    agent_base_url: str = ""
    repo_token: str | None = None

    def __repr__(self) -> str:
        return f"Credentials(agent_key=***, agent_base_url={self.agent_base_url!r}, repo_token={'***' if self.repo_token else None})"


@runtime_checkable
class CredentialStore(Protocol):
    async def resolve(self, needs_repository: bool) -> Credentials:
        """Return credentials, or raise CredentialsMissingError before anything is allocated."""
        ...


class SettingsCredentialStore:
    """Credentials from application settings.

    The repository token is the static ``GITHUB_TOKEN`` when set, otherwise a
    GitHub App installation token.
    """

    def __init__(self, settings: Settings, token_provider: GitHubAppTokenProvider | None = None):
        self.settings = settings
        self._token_provider = token_provider
        if self._token_provider is None and not settings.github_token and settings.github_app_id:
            self._token_provider = GitHubAppTokenProvider(
                app_id=settings.github_app_id,
                private_key=settings.github_private_key,
                installation_id=settings.github_installation_id,
            )

    async def resolve(self, needs_repository: bool) -> Credentials:
        if not self.settings.anthropic_api_key:
            logger.warning("credentials_missing", kind="agent_key")
            raise CredentialsMissingError("Agent API key is not configured")

        repo_token = None
        if needs_repository:
            if self.settings.github_token:
                repo_token = self.settings.github_token
            elif self._token_provider is not None:
                repo_token = await self._token_provider.get_token()
            else:
                logger.warning("credentials_missing", kind="repo_token")
                raise CredentialsMissingError("Repository access token is not configured")

        return Credentials(
            agent_key=self.settings.anthropic_api_key,
            agent_base_url=self.settings.anthropic_base_url,
            repo_token=repo_token,
        )

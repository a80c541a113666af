"""Routing between a personal-token client and a GitHub App client."""

from enum import Enum
from typing import Optional

from loguru import logger

from ..config.config import GitHubInstanceConfig
from .client import GitHubClient
from .exceptions import GitHubConfigurationError


class OperationClass(str, Enum):
    """Kinds of work a caller may need a client for."""

    # Starting, polling and unlocking migrations
    MIGRATION = 'migration'
    # High-volume repository and organization enumeration
    DISCOVERY = 'discovery'
    # Any other REST or GraphQL call
    API = 'api'


class DualClient:
    """Holds a PAT client and an optional App client and picks between them.

    GitHub only permits migration-control operations with a personal access
    token, so those always use the PAT client. Everything else prefers the
    App client, whose installation quota is higher, and falls back to the
    PAT client when no App is configured.
    """

    def __init__(self, pat_client: GitHubClient, app_client: Optional[GitHubClient] = None):
        """Initialize dual client.

        Args:
            pat_client: Client authenticated with a personal access token
            app_client: Client authenticated as a GitHub App installation
        """
        self.pat_client = pat_client
        self.app_client = app_client
        self.logger = logger.bind(component='DualClient')

        if app_client is not None:
            self.logger.info('Dual client configured: PAT for migrations, App for API calls')
        else:
            self.logger.info('Dual client configured with PAT only')

    @classmethod
    def from_configs(
        cls,
        pat_config: GitHubInstanceConfig,
        app_config: Optional[GitHubInstanceConfig] = None,
    ) -> 'DualClient':
        """Build both clients from configuration.

        Raises:
            GitHubConfigurationError: If ``pat_config`` carries no personal token
        """
        if not pat_config.token:
            raise GitHubConfigurationError(
                'A personal access token is required for migration operations'
            )

        # Only the token: app fields on the PAT config must not switch its strategy
        pat_only = pat_config.model_copy(
            update={'app_id': None, 'app_private_key': None, 'app_installation_id': None}
        )
        pat_client = GitHubClient(pat_only)

        app_client = None
        if app_config is not None and app_config.uses_app_auth:
            app_client = GitHubClient(app_config)

        return cls(pat_client, app_client)

    def migration_client(self) -> GitHubClient:
        """Client for migration-control operations; always the PAT client."""
        return self.pat_client

    def api_client(self) -> GitHubClient:
        """Client for general API calls; the App client when configured."""
        if self.app_client is not None:
            return self.app_client
        return self.pat_client

    def client_for(self, operation_class: OperationClass) -> GitHubClient:
        """Select the client for a class of operation."""
        if operation_class == OperationClass.MIGRATION:
            return self.migration_client()
        return self.api_client()

    def has_app_client(self) -> bool:
        """Whether a GitHub App client is configured."""
        return self.app_client is not None

    async def close(self) -> None:
        """Close both clients."""
        await self.pat_client.close()
        if self.app_client is not None:
            await self.app_client.close()

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

"""GitHub API client implementation."""

import asyncio
import re
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

import aiohttp
from loguru import logger
from pydantic import BaseModel

from ..config.config import GitHubInstanceConfig
from .auth import (
    AppJWTOnly,
    TokenSource,
    auth_method,
    build_token_source,
    resolve_credential,
)
from .cancellation import CancellationToken, run_cancellable
from .classifier import (
    classify,
    classify_graphql_errors,
    classify_response,
    header_value,
    parse_body,
)
from .exceptions import GitHubConfigurationError, OperationCancelledError
from .instance import (
    InstanceTopology,
    build_graphql_url,
    build_rest_url,
    detect_instance_topology,
    repository_web_url,
)
from .rate_limiter import CircuitBreaker, RateLimiter, RateLimitSnapshot
from .retry import Retryer, RetryPolicy

T = TypeVar('T')

GITHUB_API_VERSION = '2022-11-28'
# Organization migrations still require the wyandotte preview media type
MIGRATIONS_PREVIEW_ACCEPT = 'application/vnd.github.wyandotte-preview+json'
CORE_RESOURCE = 'core'

_NEXT_LINK = re.compile(r'<([^>]+)>\s*;\s*rel="next"')

ENTERPRISE_ORGANIZATIONS_QUERY = """
query($slug: String!, $first: Int!, $after: String) {
  enterprise(slug: $slug) {
    organizations(first: $first, after: $after) {
      nodes {
        login
        name
      }
      pageInfo {
        hasNextPage
        endCursor
      }
    }
  }
}
"""


class APIResponse(BaseModel):
    """Standard API response wrapper."""

    status_code: int
    data: Any
    headers: Dict[str, str]
    success: bool
    next_url: Optional[str] = None


class GitHubClient:
    """GitHub REST and GraphQL client with authentication and retries.

    Every REST and GraphQL primitive runs through the client's Retryer, which
    consults the (possibly shared) rate limiter before each attempt. The
    circuit breaker is only applied by ``call_with_circuit_breaker``.
    """

    def __init__(
        self,
        config: GitHubInstanceConfig,
        session: Optional[aiohttp.ClientSession] = None,
        rate_limiter: Optional[RateLimiter] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        token_source: Optional[TokenSource] = None,
    ):
        """Initialize GitHub client.

        Args:
            config: GitHub instance configuration
            session: HTTP session to use instead of creating one lazily
            rate_limiter: Rate limiter shared with other clients on the same quota
            circuit_breaker: Circuit breaker shared with other clients
            token_source: Token source to use instead of one built from config

        Raises:
            GitHubConfigurationError: If no usable credential is configured
        """
        self.config = config
        self.credential = resolve_credential(config)
        self.rest_url = build_rest_url(config.base_url)
        self.graphql_url = build_graphql_url(config.base_url)
        self.token_source = token_source or build_token_source(
            self.credential, self.rest_url
        )

        self.rate_limiter = rate_limiter or RateLimiter(
            **config.rate_limit.model_dump()
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            **config.circuit_breaker.model_dump()
        )
        self.retryer = Retryer(
            RetryPolicy(**config.retry.model_dump()), self.rate_limiter
        )

        self._session = session
        self._owns_session = session is None
        self._limits_initialized = False
        self.logger = logger.bind(component='GitHubClient', base_url=self.rest_url)

        self.logger.info(
            f'Initialized GitHub client for {self.rest_url} '
            f'({self.topology.value}, auth: {auth_method(self.credential)})'
        )

    @property
    def topology(self) -> InstanceTopology:
        """Hosting mode of the configured base URL."""
        return detect_instance_topology(self.config.base_url)

    @property
    def is_jwt_only(self) -> bool:
        """Whether the client authenticates as the App without an installation."""
        return isinstance(self.credential, AppJWTOnly)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            # The default per-host pool is far too small for concurrent workers
            connector = aiohttp.TCPConnector(
                limit=self.config.max_connections,
                limit_per_host=self.config.max_connections_per_host,
            )
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
                headers={
                    'Accept': 'application/vnd.github+json',
                    'User-Agent': self.config.user_agent,
                    'X-GitHub-Api-Version': GITHUB_API_VERSION,
                },
            )
            self._owns_session = True
        return self._session

    def _build_url(self, endpoint: str) -> str:
        """Build full API URL from endpoint.

        Absolute URLs, such as pagination links, are returned unchanged.
        """
        if endpoint.startswith(('http://', 'https://')):
            return endpoint
        return f'{self.rest_url}/{endpoint.lstrip("/")}'

    async def _send(
        self,
        method: str,
        url: str,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> APIResponse:
        """Perform exactly one HTTP attempt.

        Quota headers are recorded for every received response, successful
        or not. A call abandoned through ``cancel_token`` records nothing.

        Raises:
            GitHubAPIError: Classified failure of this attempt
        """
        session = self._get_session()
        token = await run_cancellable(self.token_source.token(session), cancel_token)

        request_headers = {'Authorization': f'Bearer {token}'}
        if headers:
            request_headers.update(headers)

        kwargs: Dict[str, Any] = {'headers': request_headers}
        if params:
            kwargs['params'] = params
        if data is not None:
            kwargs['json'] = data

        start = time.monotonic()
        try:
            status, response_headers, text = await run_cancellable(
                _perform(session, method, url, kwargs), cancel_token
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            error = classify(e)
            self.logger.bind(
                operation=operation,
                method=method,
                duration_ms=_elapsed_ms(start),
                error_kind=error.kind.value,
            ).error(f'API request failed: {error}')
            raise error from e

        duration_ms = _elapsed_ms(start)
        self._record_rate_limit(response_headers)
        response_data = parse_body(text)

        bound = self.logger.bind(
            operation=operation,
            method=method,
            duration_ms=duration_ms,
            status_code=status,
            **self._rate_limit_fields(),
        )

        if status >= 400:
            error = classify_response(status, response_data, response_headers)
            bound.bind(error_kind=error.kind.value).error(f'API request failed: {error}')
            raise error

        bound.debug(f'{method} {url} completed')
        return APIResponse(
            status_code=status,
            data=response_data,
            headers=response_headers,
            success=200 <= status < 300,
            next_url=_next_link(response_headers),
        )

    def _record_rate_limit(self, headers: Dict[str, str]) -> None:
        # Only the core quota is tracked; GraphQL and search report their own
        resource = header_value(headers, 'X-RateLimit-Resource')
        if resource and resource != CORE_RESOURCE:
            return
        remaining = header_value(headers, 'X-RateLimit-Remaining')
        limit = header_value(headers, 'X-RateLimit-Limit')
        if remaining is None or limit is None:
            return
        reset = header_value(headers, 'X-RateLimit-Reset')
        try:
            reset_at = (
                datetime.fromtimestamp(int(reset), tz=timezone.utc) if reset else None
            )
            self.rate_limiter.update_limits(int(remaining), int(limit), reset_at)
        except (ValueError, OverflowError, OSError):
            self.logger.warning(
                f'Ignoring malformed rate limit headers: {remaining}/{limit} reset {reset}'
            )

    def _rate_limit_fields(self) -> Dict[str, Any]:
        remaining, limit, reset_at = self.rate_limiter.get_status()
        return {
            'rate_limit_remaining': remaining,
            'rate_limit_limit': limit,
            'rate_limit_reset': reset_at.isoformat() if reset_at else None,
        }

    async def _ensure_rate_limits(
        self, cancel_token: Optional[CancellationToken]
    ) -> None:
        """Fetch the real quota once before the first request."""
        if self._limits_initialized or self.is_jwt_only:
            return
        self._limits_initialized = True
        try:
            await self.refresh_rate_limits(cancel_token)
        except (OperationCancelledError, asyncio.CancelledError):
            raise
        except Exception as e:
            self.logger.warning(f'Could not fetch initial rate limits: {e}')

    async def do(
        self,
        operation: str,
        fn: Callable[[], Awaitable[Any]],
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        """Run an arbitrary attempt function under this client's retry policy."""
        await self.retryer.do(operation, fn, cancel_token)

    async def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        operation: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> APIResponse:
        """Make a retry-wrapped REST request.

        Args:
            method: HTTP method
            endpoint: API endpoint path or absolute URL
            params: Query parameters
            data: JSON request body
            headers: Extra request headers
            operation: Name used in logs and retry errors
            cancel_token: Optional cancellation token

        Returns:
            API response

        Raises:
            GitHubAPIError: On a non-retryable failure
            RetryExhaustedError: When every attempt failed
        """
        await self._ensure_rate_limits(cancel_token)
        url = self._build_url(endpoint)
        operation = operation or f'{method} {endpoint}'

        return await self.retryer.do_with_result(
            operation,
            lambda: self._send(
                method,
                url,
                operation,
                params=params,
                data=data,
                headers=headers,
                cancel_token=cancel_token,
            ),
            cancel_token,
        )

    async def get(
        self, endpoint: str, params: Optional[Dict[str, Any]] = None, **kwargs
    ) -> APIResponse:
        """Make GET request."""
        return await self.request('GET', endpoint, params=params, **kwargs)

    async def post(self, endpoint: str, data: Optional[Any] = None, **kwargs) -> APIResponse:
        """Make POST request."""
        return await self.request('POST', endpoint, data=data, **kwargs)

    async def put(self, endpoint: str, data: Optional[Any] = None, **kwargs) -> APIResponse:
        """Make PUT request."""
        return await self.request('PUT', endpoint, data=data, **kwargs)

    async def patch(
        self, endpoint: str, data: Optional[Any] = None, **kwargs
    ) -> APIResponse:
        """Make PATCH request."""
        return await self.request('PATCH', endpoint, data=data, **kwargs)

    async def delete(self, endpoint: str, **kwargs) -> APIResponse:
        """Make DELETE request."""
        return await self.request('DELETE', endpoint, **kwargs)

    async def get_paginated(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        per_page: int = 100,
        items_key: Optional[str] = None,
        max_pages: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[Any]:
        """Get all pages of a paginated endpoint by following ``Link: rel="next"``.

        Args:
            endpoint: API endpoint
            params: Query parameters for the first page
            per_page: Items per page
            items_key: Key holding the item list when pages are wrapped objects
            max_pages: Stop after this many pages
            cancel_token: Optional cancellation token

        Returns:
            List of all items from all pages
        """
        page_params = dict(params or {})
        page_params['per_page'] = per_page

        all_items: List[Any] = []
        next_endpoint: Optional[str] = endpoint
        pages = 0

        while next_endpoint:
            response = await self.get(
                next_endpoint,
                params=page_params if pages == 0 else None,
                operation=f'GET {endpoint}',
                cancel_token=cancel_token,
            )
            items = response.data
            if items_key and isinstance(items, dict):
                items = items.get(items_key)
            if items:
                all_items.extend(items)

            pages += 1
            if max_pages and pages >= max_pages:
                break
            next_endpoint = response.next_url

        self.logger.info(f'Retrieved {len(all_items)} items from {endpoint}')
        return all_items

    async def query(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
        operation: str = 'graphql_query',
        cancel_token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        """Run a retry-wrapped GraphQL query and return its ``data`` object."""
        return await self._graphql(query, variables, operation, cancel_token)

    async def mutate(
        self,
        mutation: str,
        variables: Optional[Dict[str, Any]] = None,
        operation: str = 'graphql_mutation',
        cancel_token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        """Run a retry-wrapped GraphQL mutation and return its ``data`` object."""
        return await self._graphql(mutation, variables, operation, cancel_token)

    async def _graphql(
        self,
        document: str,
        variables: Optional[Dict[str, Any]],
        operation: str,
        cancel_token: Optional[CancellationToken],
    ) -> Dict[str, Any]:
        await self._ensure_rate_limits(cancel_token)
        payload = {'query': document, 'variables': variables or {}}

        async def attempt() -> Dict[str, Any]:
            response = await self._send(
                'POST',
                self.graphql_url,
                operation,
                data=payload,
                cancel_token=cancel_token,
            )
            body = response.data if isinstance(response.data, dict) else {}
            # GraphQL reports most failures with HTTP 200
            if body.get('errors'):
                raise classify_graphql_errors(body['errors'], response.headers)
            return body.get('data') or {}

        return await self.retryer.do_with_result(operation, attempt, cancel_token)

    async def paginate_graphql(
        self,
        query: str,
        connection_path: Sequence[str],
        variables: Optional[Dict[str, Any]] = None,
        page_size: int = 100,
        operation: str = 'graphql_paginate',
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[Any]:
        """Collect every node of a cursor-paginated GraphQL connection.

        The query must accept ``$first`` and ``$after`` variables and select
        ``nodes`` plus ``pageInfo { hasNextPage endCursor }`` on the connection
        found at ``connection_path`` inside ``data``.
        """
        nodes: List[Any] = []
        cursor: Optional[str] = None

        while True:
            page_variables = dict(variables or {})
            page_variables.update({'first': page_size, 'after': cursor})
            data = await self.query(query, page_variables, operation, cancel_token)

            connection: Any = data
            for key in connection_path:
                connection = connection.get(key) if isinstance(connection, dict) else None
            if not connection:
                break

            nodes.extend(connection.get('nodes') or [])
            page_info = connection.get('pageInfo') or {}
            if not page_info.get('hasNextPage') or not page_info.get('endCursor'):
                break
            cursor = page_info['endCursor']

        return nodes

    async def call_with_circuit_breaker(
        self,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        cancel_token: Optional[CancellationToken] = None,
    ) -> T:
        """Run ``fn`` under the retry policy, guarded by the circuit breaker.

        The breaker wraps the whole retry loop, so one exhausted operation
        counts as a single failure.

        Raises:
            CircuitBreakerOpenError: If the circuit is open
        """
        return await self.circuit_breaker.call(
            lambda: self.retryer.do_with_result(operation, fn, cancel_token)
        )

    def rate_limit_status(self) -> RateLimitSnapshot:
        """Locally tracked primary quota."""
        return self.rate_limiter.snapshot()

    async def refresh_rate_limits(
        self, cancel_token: Optional[CancellationToken] = None
    ) -> Optional[RateLimitSnapshot]:
        """Fetch the primary quota from ``/rate_limit``.

        Skipped for JWT-only credentials, which cannot call the endpoint.
        The call itself does not count against the quota and bypasses the
        rate limiter.
        """
        if self.is_jwt_only:
            self.logger.debug('Skipping rate limit fetch for JWT-only client')
            return None

        response = await self._send(
            'GET', self._build_url('rate_limit'), 'rate_limit', cancel_token=cancel_token
        )
        data = response.data if isinstance(response.data, dict) else {}
        core = (data.get('resources') or {}).get(CORE_RESOURCE) or {}
        if 'remaining' in core and 'limit' in core:
            reset = core.get('reset')
            try:
                reset_at = (
                    datetime.fromtimestamp(int(reset), tz=timezone.utc) if reset else None
                )
                self.rate_limiter.update_limits(
                    int(core['remaining']), int(core['limit']), reset_at
                )
            except (TypeError, ValueError, OverflowError, OSError):
                self.logger.warning(f'Ignoring malformed rate limit body: {core}')
        return self.rate_limiter.snapshot()

    async def test_authentication(
        self, cancel_token: Optional[CancellationToken] = None
    ) -> Dict[str, Any]:
        """Verify the credential and return the authenticated user or App.

        Raises:
            GitHubAPIError: If the credential is rejected
        """
        endpoint = '/app' if self.is_jwt_only else '/user'
        response = await self.get(
            endpoint, operation='test_authentication', cancel_token=cancel_token
        )
        identity = response.data or {}
        self.logger.info(
            f'Authenticated as {identity.get("login") or identity.get("slug") or "unknown"}'
        )
        return identity

    async def list_app_installations(
        self, cancel_token: Optional[CancellationToken] = None
    ) -> Dict[str, int]:
        """Map each installation's account login to its installation ID.

        Requires a JWT-only client; installation tokens cannot list installations.
        """
        self._require_jwt_only('list_app_installations')
        installations = await self.get_paginated(
            '/app/installations', cancel_token=cancel_token
        )
        return {
            item['account']['login']: item['id']
            for item in installations
            if item.get('account')
        }

    async def get_organization_installation_id(
        self, org: str, cancel_token: Optional[CancellationToken] = None
    ) -> int:
        """Installation ID of this App on ``org``. Requires a JWT-only client."""
        self._require_jwt_only('get_organization_installation_id')
        response = await self.get(
            f'/orgs/{org}/installation',
            operation='get_organization_installation_id',
            cancel_token=cancel_token,
        )
        return response.data['id']

    def _require_jwt_only(self, operation: str) -> None:
        if not self.is_jwt_only:
            raise GitHubConfigurationError(
                f'{operation} requires a GitHub App client without an installation ID'
            )

    def repository_url(self, full_name: str) -> str:
        """Browser URL of an ``owner/repo`` repository on this instance."""
        return repository_web_url(self.config.base_url, full_name)

    async def start_migration(
        self,
        org: str,
        repositories: List[str],
        lock_repositories: bool = False,
        exclude_attachments: bool = False,
        exclude_releases: bool = False,
        exclude_git_data: bool = False,
        exclude_metadata: bool = False,
        exclude_owner_projects: bool = False,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        """Start an organization migration archive for ``repositories``.

        Migration-control calls must be made with a personal access token.

        Returns:
            Migration object including its ``id`` and ``state``
        """
        payload = {
            'repositories': repositories,
            'lock_repositories': lock_repositories,
            'exclude_attachments': exclude_attachments,
            'exclude_releases': exclude_releases,
            'exclude_git_data': exclude_git_data,
            'exclude_metadata': exclude_metadata,
            'exclude_owner_projects': exclude_owner_projects,
        }
        response = await self.post(
            f'/orgs/{org}/migrations',
            data=payload,
            headers={'Accept': MIGRATIONS_PREVIEW_ACCEPT},
            operation='start_migration',
            cancel_token=cancel_token,
        )
        self.logger.bind(org=org, repositories=len(repositories)).info(
            f'Started migration {response.data.get("id")}'
        )
        return response.data

    async def get_migration_status(
        self,
        org: str,
        migration_id: int,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        """Current state of an organization migration."""
        response = await self.get(
            f'/orgs/{org}/migrations/{migration_id}',
            headers={'Accept': MIGRATIONS_PREVIEW_ACCEPT},
            operation='get_migration_status',
            cancel_token=cancel_token,
        )
        return response.data

    async def unlock_repository(
        self,
        org: str,
        repo: str,
        migration_id: int,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        """Unlock a source repository locked by a migration."""
        await self.delete(
            f'/orgs/{org}/migrations/{migration_id}/repos/{repo}/lock',
            headers={'Accept': MIGRATIONS_PREVIEW_ACCEPT},
            operation='unlock_repository',
            cancel_token=cancel_token,
        )
        self.logger.bind(org=org, repo=repo, migration_id=migration_id).info(
            'Unlocked source repository'
        )

    async def list_repositories(
        self, org: str, cancel_token: Optional[CancellationToken] = None
    ) -> List[Dict[str, Any]]:
        """All repositories of an organization."""
        return await self.get_paginated(
            f'/orgs/{org}/repos', params={'type': 'all'}, cancel_token=cancel_token
        )

    async def get_repository(
        self, owner: str, repo: str, cancel_token: Optional[CancellationToken] = None
    ) -> Dict[str, Any]:
        """Single repository."""
        response = await self.get(
            f'/repos/{owner}/{repo}', operation='get_repository', cancel_token=cancel_token
        )
        return response.data

    async def list_enterprise_organizations(
        self, enterprise: str, cancel_token: Optional[CancellationToken] = None
    ) -> List[Dict[str, Any]]:
        """Organizations of an enterprise account, via GraphQL."""
        return await self.paginate_graphql(
            ENTERPRISE_ORGANIZATIONS_QUERY,
            ('enterprise', 'organizations'),
            variables={'slug': enterprise},
            operation='list_enterprise_organizations',
            cancel_token=cancel_token,
        )

    async def close(self) -> None:
        """Close the client session."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
            self.logger.info('GitHub client session closed')

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()


class GitHubClientFactory:
    """Factory for creating GitHub API clients."""

    @staticmethod
    def create_client(
        config: GitHubInstanceConfig, **kwargs
    ) -> GitHubClient:
        """Create GitHub client from configuration.

        Args:
            config: GitHub instance configuration
            **kwargs: Passed through to GitHubClient

        Returns:
            Configured GitHub client

        Raises:
            GitHubConfigurationError: If authentication configuration is invalid
        """
        return GitHubClient(config, **kwargs)

    @staticmethod
    async def create_org_specific_client(
        jwt_client: GitHubClient,
        org: str,
        base_config: GitHubInstanceConfig,
        cancel_token: Optional[CancellationToken] = None,
    ) -> GitHubClient:
        """Create an installation client for ``org`` using a JWT-only client.

        The new client gets its own rate limiter, since every installation has
        its own quota.
        """
        installation_id = await jwt_client.get_organization_installation_id(
            org, cancel_token
        )
        config = base_config.model_copy(update={'app_installation_id': installation_id})
        jwt_client.logger.bind(org=org, installation_id=installation_id).info(
            'Creating organization-specific App client'
        )
        return GitHubClient(config)


async def _perform(
    session: aiohttp.ClientSession, method: str, url: str, kwargs: Dict[str, Any]
) -> Tuple[int, Dict[str, str], str]:
    async with session.request(method, url, **kwargs) as response:
        return response.status, dict(response.headers), await response.text()



def _next_link(headers: Dict[str, str]) -> Optional[str]:
    link = header_value(headers, 'Link')
    if not link:
        return None
    match = _NEXT_LINK.search(link)
    return match.group(1) if match else None


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 1)

"""Credential resolution and shared, self-refreshing token sources."""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Tuple, Union

import aiohttp
import jwt
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from ..config.config import GitHubInstanceConfig
from .classifier import classify, classify_response, parse_body
from .exceptions import GitHubAPIError, GitHubConfigurationError

# GitHub rejects App JWTs that live longer than ten minutes
JWT_LIFETIME = 600
# Backdate issued-at to tolerate clock drift between us and the platform
JWT_CLOCK_SKEW = 60
# Refresh cached tokens this many seconds before they expire
TOKEN_REFRESH_MARGIN = 60


class PersonalAccessToken(BaseModel):
    """Personal access token credential."""

    model_config = ConfigDict(frozen=True)

    token: str = Field(..., repr=False, description='Personal access token')


class AppInstallation(BaseModel):
    """GitHub App credential scoped to one installation."""

    model_config = ConfigDict(frozen=True)

    app_id: int = Field(..., description='GitHub App ID')
    private_key: str = Field(..., repr=False, description='PEM encoded private key')
    installation_id: int = Field(..., description='Installation ID')


class AppJWTOnly(BaseModel):
    """GitHub App credential without an installation.

    Only valid for app-level calls such as enumerating installations.
    """

    model_config = ConfigDict(frozen=True)

    app_id: int = Field(..., description='GitHub App ID')
    private_key: str = Field(..., repr=False, description='PEM encoded private key')


Credential = Union[PersonalAccessToken, AppInstallation, AppJWTOnly]


def load_private_key(value: str) -> str:
    """Return PEM text from an inline key or a key file path.

    Raises:
        GitHubConfigurationError: If the file cannot be read
    """
    if value.lstrip().startswith('-----BEGIN'):
        return value
    try:
        return Path(value).expanduser().read_text(encoding='utf-8')
    except OSError as e:
        raise GitHubConfigurationError(f'Failed to read private key file: {e}') from e


def resolve_credential(config: GitHubInstanceConfig) -> Credential:
    """Pick the credential strategy for a client.

    App credentials take precedence over a personal token. Without an
    installation ID the app credential is JWT-only.

    Raises:
        GitHubConfigurationError: If neither a token nor app credentials are present
    """
    if config.app_id and config.app_private_key:
        private_key = load_private_key(config.app_private_key)
        if config.app_installation_id:
            return AppInstallation(
                app_id=config.app_id,
                private_key=private_key,
                installation_id=config.app_installation_id,
            )
        return AppJWTOnly(app_id=config.app_id, private_key=private_key)

    if not config.token:
        raise GitHubConfigurationError(
            'Either token or GitHub App credentials (app_id, app_private_key) '
            'must be provided'
        )
    return PersonalAccessToken(token=config.token)


def auth_method(credential: Credential) -> str:
    """Short label of a credential strategy for logs."""
    if isinstance(credential, AppInstallation):
        return 'GitHub App (Installation)'
    if isinstance(credential, AppJWTOnly):
        return 'GitHub App (JWT)'
    return 'PAT'


class TokenSource(ABC):
    """Supplies the bearer token for outgoing requests."""

    @abstractmethod
    async def token(self, session: Optional[aiohttp.ClientSession] = None) -> str:
        """Return a currently valid token."""


class StaticTokenSource(TokenSource):
    """Token source for a personal access token."""

    def __init__(self, token: str):
        self._token = token

    async def token(self, session: Optional[aiohttp.ClientSession] = None) -> str:
        return self._token


class AppJWTTokenSource(TokenSource):
    """Signs short-lived RS256 JWTs that authenticate as the App itself."""

    def __init__(
        self, app_id: int, private_key: str, clock: Callable[[], float] = time.time
    ):
        """Initialize JWT token source.

        Raises:
            GitHubConfigurationError: If the private key cannot sign a JWT
        """
        self.app_id = app_id
        self._private_key = private_key
        self._clock = clock
        self._cached: Optional[Tuple[str, float]] = None
        # Fail at construction rather than on the first request
        self.generate()

    def generate(self) -> str:
        """Return a cached JWT, signing a new one when it is close to expiry."""
        now = self._clock()
        cached = self._cached
        if cached is not None and now < cached[1] - TOKEN_REFRESH_MARGIN:
            return cached[0]

        issued_at = int(now) - JWT_CLOCK_SKEW
        expires_at = issued_at + JWT_LIFETIME
        payload = {'iat': issued_at, 'exp': expires_at, 'iss': str(self.app_id)}
        try:
            encoded = jwt.encode(payload, self._private_key, algorithm='RS256')
        except (ValueError, TypeError, jwt.PyJWTError) as e:
            raise GitHubConfigurationError(f'Failed to sign GitHub App JWT: {e}') from e

        self._cached = (encoded, float(expires_at))
        return encoded

    async def token(self, session: Optional[aiohttp.ClientSession] = None) -> str:
        return self.generate()


class InstallationTokenSource(TokenSource):
    """Exchanges the App JWT for an installation access token and caches it.

    Reads of the cached token take no lock; only a refresh does, and
    concurrent callers that arrive during a refresh share its result.
    """

    def __init__(
        self,
        installation_id: int,
        app_source: AppJWTTokenSource,
        api_url: str,
        clock: Callable[[], float] = time.time,
    ):
        self.installation_id = installation_id
        self.app_source = app_source
        self.api_url = api_url.rstrip('/')
        self._clock = clock
        self._cached: Optional[Tuple[str, float]] = None
        self._refresh_lock = asyncio.Lock()
        self.logger = logger.bind(
            component='InstallationTokenSource', installation_id=installation_id
        )

    async def token(self, session: Optional[aiohttp.ClientSession] = None) -> str:
        cached = self._cached
        if self._is_fresh(cached):
            return cached[0]

        async with self._refresh_lock:
            cached = self._cached
            if self._is_fresh(cached):
                return cached[0]
            if session is None:
                raise GitHubConfigurationError(
                    'An HTTP session is required to obtain an installation token'
                )
            self._cached = await self._exchange(session)
            return self._cached[0]

    def _is_fresh(self, cached: Optional[Tuple[str, float]]) -> bool:
        return cached is not None and self._clock() < cached[1] - TOKEN_REFRESH_MARGIN

    async def _exchange(self, session: aiohttp.ClientSession) -> Tuple[str, float]:
        url = f'{self.api_url}/app/installations/{self.installation_id}/access_tokens'
        headers = {
            'Authorization': f'Bearer {self.app_source.generate()}',
            'Accept': 'application/vnd.github+json',
        }

        try:
            async with session.request('POST', url, headers=headers) as response:
                status = response.status
                response_headers = dict(response.headers)
                body = parse_body(await response.text())
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            raise classify(e) from e

        if status >= 400:
            raise classify_response(status, body, response_headers)

        token = body.get('token') if isinstance(body, dict) else None
        if not isinstance(token, str) or not token:
            raise GitHubAPIError(
                'Installation token response did not contain a token',
                status_code=status,
                response_data=body if isinstance(body, dict) else None,
            )

        expires_at = _parse_timestamp(body.get('expires_at'))
        if expires_at is None:
            expires_at = self._clock() + 3600
        self.logger.debug('Installation token refreshed')
        return token, expires_at


def build_token_source(credential: Credential, api_url: str) -> TokenSource:
    """Create the token source backing every request of one client."""
    if isinstance(credential, PersonalAccessToken):
        return StaticTokenSource(credential.token)

    app_source = AppJWTTokenSource(credential.app_id, credential.private_key)
    if isinstance(credential, AppInstallation):
        return InstallationTokenSource(credential.installation_id, app_source, api_url)
    return app_source


def _parse_timestamp(value: Optional[str]) -> Optional[float]:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00')).timestamp()
    except ValueError:
        return None

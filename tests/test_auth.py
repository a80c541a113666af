"""Tests for credential resolution and token sources."""

import asyncio

import jwt
import pytest

from github_migrate.api.auth import (
    AppInstallation,
    AppJWTOnly,
    AppJWTTokenSource,
    InstallationTokenSource,
    PersonalAccessToken,
    StaticTokenSource,
    auth_method,
    build_token_source,
    resolve_credential,
)
from github_migrate.api.client import GitHubClient
from github_migrate.api.exceptions import (
    ErrorKind,
    GitHubAPIError,
    GitHubAuthenticationError,
    GitHubConfigurationError,
    GitHubServerError,
    RetryExhaustedError,
)
from github_migrate.config.config import (
    GitHubInstanceConfig,
    RateLimitConfig,
    RetryConfig,
)

from conftest import FakeResponse, FakeSession

TOKEN_PATH = '/app/installations/42/access_tokens'
BAD_GATEWAY_PAGE = '<html><head><title>502 Bad Gateway</title></head></html>'


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestResolveCredential:
    """Test credential strategy selection."""

    def test_personal_access_token(self):
        """Test a token-only config."""
        credential = resolve_credential(GitHubInstanceConfig(token='ghp_test'))

        assert isinstance(credential, PersonalAccessToken)
        assert credential.token == 'ghp_test'
        assert 'ghp_test' not in repr(credential)
        assert auth_method(credential) == 'PAT'

    def test_app_installation(self, private_key_pem):
        """Test app credentials with an installation ID."""
        config = GitHubInstanceConfig(
            token='ghp_test',
            app_id=1,
            app_private_key=private_key_pem,
            app_installation_id=42,
        )

        credential = resolve_credential(config)

        assert isinstance(credential, AppInstallation)
        assert credential.installation_id == 42
        assert 'PRIVATE KEY' not in repr(credential)

    def test_app_jwt_only(self, private_key_pem):
        """Test app credentials without an installation ID."""
        config = GitHubInstanceConfig(app_id=1, app_private_key=private_key_pem)

        credential = resolve_credential(config)

        assert isinstance(credential, AppJWTOnly)
        assert auth_method(credential) == 'GitHub App (JWT)'

    def test_private_key_from_file(self, tmp_path, private_key_pem):
        """Test a private key given as a file path."""
        key_file = tmp_path / 'app.pem'
        key_file.write_text(private_key_pem)
        config = GitHubInstanceConfig(app_id=1, app_private_key=str(key_file))

        credential = resolve_credential(config)

        assert credential.private_key == private_key_pem

    def test_unreadable_private_key_file(self, tmp_path):
        """Test a missing key file fails construction."""
        config = GitHubInstanceConfig(
            app_id=1, app_private_key=str(tmp_path / 'missing.pem')
        )

        with pytest.raises(GitHubConfigurationError):
            resolve_credential(config)

    def test_missing_credentials(self):
        """Test a config without any credential fails construction."""
        config = GitHubInstanceConfig.model_construct(
            base_url='', token=None, app_id=None, app_private_key=None
        )

        with pytest.raises(GitHubConfigurationError):
            resolve_credential(config)


class TestStaticTokenSource:
    """Test the PAT token source."""

    @pytest.mark.asyncio
    async def test_returns_token(self):
        """Test the token is returned unchanged."""
        assert await StaticTokenSource('ghp_test').token() == 'ghp_test'


class TestAppJWTTokenSource:
    """Test App JWT signing."""

    def test_claims(self, private_key_pem, public_key_pem):
        """Test issuer, backdated issue time and ten minute lifetime."""
        clock = FakeClock()
        source = AppJWTTokenSource(12345, private_key_pem, clock=clock)

        claims = jwt.decode(
            source.generate(),
            public_key_pem,
            algorithms=['RS256'],
            options={'verify_exp': False, 'verify_iat': False},
        )

        assert claims['iss'] == '12345'
        assert claims['iat'] == int(clock.now) - 60
        assert claims['exp'] - claims['iat'] == 600

    def test_cached_until_near_expiry(self, private_key_pem):
        """Test the JWT is reused and re-signed close to expiry."""
        clock = FakeClock()
        source = AppJWTTokenSource(1, private_key_pem, clock=clock)
        first = source.generate()

        clock.now += 400
        assert source.generate() == first

        clock.now += 100
        assert source.generate() != first

    def test_invalid_key(self):
        """Test an unusable key fails at construction."""
        with pytest.raises(GitHubConfigurationError):
            AppJWTTokenSource(1, 'not a key')


class TestInstallationTokenSource:
    """Test installation token exchange and caching."""

    def setup_method(self):
        """Set up test fixtures."""
        self.clock = FakeClock()
        self.session = FakeSession(rate_limit_path=None)

    def make_source(self, private_key_pem):
        app_source = AppJWTTokenSource(1, private_key_pem, clock=self.clock)
        return InstallationTokenSource(
            42, app_source, 'https://api.github.com', clock=self.clock
        )

    @pytest.mark.asyncio
    async def test_exchange(self, private_key_pem):
        """Test the JWT is exchanged for an installation token."""
        self.session.add(
            'POST',
            TOKEN_PATH,
            FakeResponse(201, {'token': 'ghs_one', 'expires_at': '2023-11-14T23:13:20Z'}),
        )
        source = self.make_source(private_key_pem)

        assert await source.token(self.session) == 'ghs_one'

        request = self.session.calls('POST', TOKEN_PATH)[0]
        assert request.headers['Authorization'].startswith('Bearer ')

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, private_key_pem):
        """Test concurrent workers trigger a single exchange."""
        self.session.add(
            'POST',
            TOKEN_PATH,
            FakeResponse(
                201,
                {'token': 'ghs_shared', 'expires_at': '2099-01-01T00:00:00Z'},
                delay=0.02,
            ),
        )
        source = self.make_source(private_key_pem)

        tokens = await asyncio.gather(*(source.token(self.session) for _ in range(10)))

        assert set(tokens) == {'ghs_shared'}
        assert len(self.session.calls('POST', TOKEN_PATH)) == 1

    @pytest.mark.asyncio
    async def test_refresh_before_expiry(self, private_key_pem):
        """Test a token within a minute of expiry is refreshed."""
        # FakeClock starts at 2023-11-14T22:13:20Z
        self.session.add(
            'POST',
            TOKEN_PATH,
            FakeResponse(201, {'token': 'ghs_one', 'expires_at': '2023-11-14T23:13:20Z'}),
            FakeResponse(201, {'token': 'ghs_two', 'expires_at': '2023-11-15T00:13:20Z'}),
        )
        source = self.make_source(private_key_pem)

        assert await source.token(self.session) == 'ghs_one'
        self.clock.now += 3500
        assert await source.token(self.session) == 'ghs_one'
        self.clock.now += 50
        assert await source.token(self.session) == 'ghs_two'

    @pytest.mark.asyncio
    async def test_exchange_failure_is_classified(self, private_key_pem):
        """Test a rejected exchange raises a classified error."""
        self.session.add(
            'POST', TOKEN_PATH, FakeResponse(401, {'message': 'A JSON web token could not be decoded'})
        )
        source = self.make_source(private_key_pem)

        with pytest.raises(GitHubAuthenticationError):
            await source.token(self.session)

    @pytest.mark.asyncio
    async def test_proxy_error_page_is_classified(self, private_key_pem):
        """Test an HTML 502 from a proxy is a retryable server error."""
        self.session.add('POST', TOKEN_PATH, FakeResponse(502, text=BAD_GATEWAY_PAGE))
        source = self.make_source(private_key_pem)

        with pytest.raises(GitHubServerError) as exc_info:
            await source.token(self.session)

        assert exc_info.value.status_code == 502
        assert '502 Bad Gateway' in exc_info.value.message

    @pytest.mark.asyncio
    async def test_reply_without_token(self, private_key_pem):
        """Test a success reply lacking a token raises a typed error."""
        self.session.add(
            'POST', TOKEN_PATH, FakeResponse(201, {'expires_at': '2099-01-01T00:00:00Z'})
        )
        source = self.make_source(private_key_pem)

        with pytest.raises(GitHubAPIError) as exc_info:
            await source.token(self.session)

        assert exc_info.value.kind == ErrorKind.UNCLASSIFIED


class TestInstallationClient:
    """Test token exchange failures seen through the client."""

    @pytest.mark.asyncio
    async def test_proxy_error_page_exhausts_retries(self, private_key_pem):
        """Test exchange failures go through classification and retries."""
        session = FakeSession()
        session.add('POST', TOKEN_PATH, FakeResponse(502, text=BAD_GATEWAY_PAGE))
        config = GitHubInstanceConfig(
            app_id=1,
            app_private_key=private_key_pem,
            app_installation_id=42,
            retry=RetryConfig(max_attempts=3, initial_backoff=0, max_backoff=0),
            rate_limit=RateLimitConfig(min_interval=0),
        )
        client = GitHubClient(config, session=session)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await client.get('/repos/o/r')

        assert exc_info.value.kind == ErrorKind.SERVER_ERROR
        assert exc_info.value.attempts == 3
        # One exchange for the initial quota fetch, then one per attempt
        assert len(session.calls('POST', TOKEN_PATH)) == 4
        assert session.calls('GET', '/repos/o/r') == []


class TestBuildTokenSource:
    """Test token source construction per credential."""

    def test_per_credential(self, private_key_pem):
        """Test each credential gets its source."""
        assert isinstance(
            build_token_source(PersonalAccessToken(token='t'), 'https://api.github.com'),
            StaticTokenSource,
        )
        assert isinstance(
            build_token_source(
                AppJWTOnly(app_id=1, private_key=private_key_pem), 'https://api.github.com'
            ),
            AppJWTTokenSource,
        )
        assert isinstance(
            build_token_source(
                AppInstallation(app_id=1, private_key=private_key_pem, installation_id=2),
                'https://api.github.com',
            ),
            InstallationTokenSource,
        )

"""Shared fixtures: an in-process aiohttp session double and in-memory stores."""

import asyncio
import json
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from github_migrate.config.config import (
    GitHubInstanceConfig,
    RateLimitConfig,
    RetryConfig,
)


class FakeResponse:
    """Stands in for ``aiohttp.ClientResponse`` inside ``async with``."""

    def __init__(
        self,
        status: int = 200,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        text: Optional[str] = None,
        delay: float = 0.0,
        error: Optional[BaseException] = None,
    ):
        self.status = status
        self.headers = dict(headers or {})
        if text is None:
            text = json.dumps(body) if body is not None else ''
        self._text = text
        self.delay = delay
        self.error = error

    async def __aenter__(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False

    async def text(self) -> str:
        return self._text

    async def json(self, content_type=None) -> Any:
        return json.loads(self._text) if self._text else None


class FakeRequest:
    def __init__(self, method: str, url: str, kwargs: Dict[str, Any]):
        self.method = method
        self.url = url
        self.kwargs = kwargs

    @property
    def path(self) -> str:
        return urlsplit(self.url).path

    @property
    def headers(self) -> Dict[str, str]:
        return self.kwargs.get('headers') or {}


class FakeSession:
    """Routes requests by method and URL path to queued FakeResponses.

    The last queued response of a route repeats for every later request.
    """

    def __init__(self, rate_limit_path: Optional[str] = '/rate_limit'):
        self.routes: Dict[tuple, List[FakeResponse]] = {}
        self.requests: List[FakeRequest] = []
        self.closed = False
        if rate_limit_path:
            self.add('GET', rate_limit_path, rate_limit_response())

    def add(self, method: str, path: str, *responses: FakeResponse) -> None:
        self.routes.setdefault((method, path), []).extend(responses)

    def request(self, method: str, url: str, **kwargs) -> FakeResponse:
        request = FakeRequest(method, url, kwargs)
        self.requests.append(request)
        queue = self.routes.get((method, request.path))
        if not queue:
            raise AssertionError(f'Unexpected request: {method} {url}')
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def calls(self, method: str, path: str) -> List[FakeRequest]:
        return [r for r in self.requests if r.method == method and r.path == path]

    async def close(self) -> None:
        self.closed = True


def rate_limit_response(remaining: int = 5000, limit: int = 5000, reset: int = 0):
    return FakeResponse(
        200,
        {'resources': {'core': {'remaining': remaining, 'limit': limit, 'reset': reset}}},
    )


class InMemoryStore:
    """Batch and repository store kept in dictionaries."""

    def __init__(self, batches=(), repositories=()):
        self.batches = {batch.id: batch for batch in batches}
        self.repositories = {repo.id: repo for repo in repositories}
        self.batch_updates = []
        self.repository_updates = []

    async def list_batches(self):
        return list(self.batches.values())

    async def get_batch(self, batch_id):
        return self.batches.get(batch_id)

    async def list_batch_repositories(self, batch_id):
        return [r for r in self.repositories.values() if r.batch_id == batch_id]

    async def update_batch(self, batch):
        self.batch_updates.append(batch)
        self.batches[batch.id] = batch

    async def update_repository(self, repository):
        self.repository_updates.append(repository)
        self.repositories[repository.id] = repository


@pytest.fixture
def fake_session():
    """Fake aiohttp session for github.com."""
    return FakeSession()


@pytest.fixture
def fast_config():
    """PAT config with instant retries and no request spacing."""
    return GitHubInstanceConfig(
        token='test-token',
        retry=RetryConfig(max_attempts=3, initial_backoff=0, max_backoff=0),
        rate_limit=RateLimitConfig(min_interval=0),
    )


@pytest.fixture(scope='session')
def private_key_pem():
    """Throwaway RSA key for GitHub App JWTs."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


@pytest.fixture(scope='session')
def public_key_pem(private_key_pem):
    """Public half of ``private_key_pem`` for verifying signatures."""
    key = serialization.load_pem_private_key(private_key_pem.encode(), password=None)
    return (
        key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode()
    )

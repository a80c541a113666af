"""GitHub API client, error classification and resilience primitives."""

from .cancellation import CancellationToken
from .classifier import classify, is_retryable
from .client import APIResponse, GitHubClient, GitHubClientFactory
from .dual_client import DualClient, OperationClass
from .exceptions import (
    CircuitBreakerOpenError,
    ErrorKind,
    GitHubAPIError,
    GitHubConfigurationError,
    OperationCancelledError,
    RetryExhaustedError,
)
from .instance import InstanceTopology, detect_instance_topology
from .rate_limiter import CircuitBreaker, CircuitState, RateLimiter
from .retry import Retryer, RetryPolicy

__all__ = [
    'APIResponse',
    'CancellationToken',
    'CircuitBreaker',
    'CircuitBreakerOpenError',
    'CircuitState',
    'DualClient',
    'ErrorKind',
    'GitHubAPIError',
    'GitHubClient',
    'GitHubClientFactory',
    'GitHubConfigurationError',
    'InstanceTopology',
    'OperationCancelledError',
    'OperationClass',
    'RateLimiter',
    'RetryExhaustedError',
    'Retryer',
    'RetryPolicy',
    'classify',
    'detect_instance_topology',
    'is_retryable',
]

"""Configuration models."""

from .config import (
    BatchStatusConfig,
    CircuitBreakerConfig,
    Config,
    GitHubInstanceConfig,
    LoggingConfig,
    RateLimitConfig,
    RetryConfig,
)

__all__ = [
    'BatchStatusConfig',
    'CircuitBreakerConfig',
    'Config',
    'GitHubInstanceConfig',
    'LoggingConfig',
    'RateLimitConfig',
    'RetryConfig',
]

"""Configuration management for GitHub Migration Tool."""

from typing import Optional, Dict, Any
from pathlib import Path
import os

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
import yaml
from dotenv import load_dotenv


class RetryConfig(BaseModel):
    """Retry tunables applied to every API operation of a client."""

    max_attempts: int = Field(default=3, description='Attempts per operation')
    initial_backoff: float = Field(
        default=1.0, description='First backoff between attempts in seconds'
    )
    max_backoff: float = Field(default=30.0, description='Backoff ceiling in seconds')
    backoff_multiplier: float = Field(default=2.0, description='Backoff growth factor')

    @field_validator('max_attempts')
    @classmethod
    def validate_max_attempts(cls, v):
        """Validate at least one attempt is made."""
        if v < 1:
            raise ValueError('max_attempts must be at least 1')
        return v

    @field_validator('backoff_multiplier')
    @classmethod
    def validate_multiplier(cls, v):
        """Validate backoff never shrinks."""
        if v < 1:
            raise ValueError('backoff_multiplier must be at least 1')
        return v


class RateLimitConfig(BaseModel):
    """Primary rate limit handling."""

    min_interval: float = Field(
        default=0.1, description='Minimum seconds between two requests'
    )
    backoff_floor: float = Field(
        default=1.0, description='Starting delay when no reset time is known'
    )
    backoff_cap: float = Field(default=300.0, description='Upper bound of that delay')
    low_quota_warning: int = Field(
        default=100, description='Warn when remaining quota drops below this'
    )

    @field_validator('min_interval', 'backoff_floor', 'backoff_cap')
    @classmethod
    def validate_non_negative(cls, v):
        """Validate durations are not negative."""
        if v < 0:
            raise ValueError('Rate limit durations must not be negative')
        return v


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker thresholds."""

    max_failures: int = Field(
        default=5, description='Consecutive failures before the circuit opens'
    )
    reset_timeout: float = Field(
        default=60.0, description='Seconds an open circuit waits before a probe'
    )


class GitHubInstanceConfig(BaseModel):
    """Configuration for a GitHub instance."""

    base_url: str = Field(
        default='',
        description='API base URL; empty for github.com, https://<tenant>.ghe.com '
        'for data residency, https://host for GitHub Enterprise Server',
    )
    token: Optional[str] = Field(default=None, description='Personal access token')
    app_id: Optional[int] = Field(default=None, description='GitHub App ID')
    app_private_key: Optional[str] = Field(
        default=None, description='GitHub App private key (PEM text or file path)'
    )
    app_installation_id: Optional[int] = Field(
        default=None, description='GitHub App installation ID'
    )
    timeout: int = Field(default=30, description='Request timeout in seconds')
    max_connections: int = Field(
        default=100, description='Maximum open connections of the HTTP pool'
    )
    max_connections_per_host: int = Field(
        default=100, description='Maximum open connections per host'
    )
    user_agent: str = Field(
        default='github-migrate/1.0.0', description='User-Agent header value'
    )
    retry: RetryConfig = Field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)

    @field_validator('base_url')
    @classmethod
    def validate_url(cls, v):
        """Validate GitHub URL format."""
        if not v:
            return ''
        if not v.startswith(('http://', 'https://')):
            raise ValueError('URL must start with http:// or https://')
        return v.rstrip('/')

    @field_validator('timeout', 'max_connections', 'max_connections_per_host')
    @classmethod
    def validate_positive(cls, v):
        """Validate value is positive."""
        if v <= 0:
            raise ValueError('Value must be positive')
        return v

    @model_validator(mode='after')
    def validate_auth_complete(self):
        """Ensure at least one authentication method is provided."""
        has_app = bool(self.app_id and self.app_private_key)
        if not self.token and not has_app:
            raise ValueError(
                'Either token or app_id and app_private_key must be provided'
            )
        return self

    @property
    def uses_app_auth(self) -> bool:
        """Whether GitHub App credentials are configured."""
        return bool(self.app_id and self.app_private_key)


class BatchStatusConfig(BaseModel):
    """Batch status aggregation schedule."""

    interval: float = Field(
        default=30.0, description='Seconds between batch status recomputations'
    )
    storage_max_attempts: int = Field(
        default=3, description='Attempts per storage call'
    )
    storage_backoff: float = Field(
        default=0.5, description='First backoff between storage attempts in seconds'
    )

    @field_validator('interval')
    @classmethod
    def validate_interval(cls, v):
        """Validate interval is positive."""
        if v <= 0:
            raise ValueError('Interval must be positive')
        return v

    @field_validator('storage_max_attempts')
    @classmethod
    def validate_storage_attempts(cls, v):
        """Validate at least one attempt is made."""
        if v < 1:
            raise ValueError('storage_max_attempts must be at least 1')
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default='INFO', description='Log level')
    file: Optional[str] = Field(default=None, description='Log file path')
    format: Optional[str] = Field(default=None, description='Console log format')
    serialize: bool = Field(default=False, description='Emit JSON log records')

    @field_validator('level')
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'Log level must be one of: {valid_levels}')
        return v.upper()


class Config(BaseModel):
    """Main configuration class for GitHub Migration Tool."""

    model_config = ConfigDict(extra='forbid')

    source: GitHubInstanceConfig = Field(..., description='Source GitHub instance')
    destination: GitHubInstanceConfig = Field(
        ..., description='Destination GitHub instance'
    )
    batch_status: BatchStatusConfig = Field(
        default_factory=BatchStatusConfig, description='Batch status settings'
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description='Logging settings'
    )

    @classmethod
    def from_file(cls, config_path: str) -> 'Config':
        """Load configuration from YAML file."""
        config_file = Path(config_path)

        if not config_file.exists():
            raise FileNotFoundError(f'Configuration file not found: {config_path}')

        with open(config_file, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f)

        return cls(**config_data)

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        # Load .env file if it exists
        load_dotenv()

        config_data = {
            'source': cls._instance_from_env('SOURCE_GITHUB'),
            'destination': cls._instance_from_env('DEST_GITHUB'),
            'batch_status': {
                'interval': _env_float('BATCH_STATUS_INTERVAL'),
            },
            'logging': {
                'level': os.getenv('LOG_LEVEL', 'INFO'),
                'file': os.getenv('LOG_FILE'),
            },
        }

        # Remove None values
        config_data = cls._remove_none_values(config_data)

        return cls(**config_data)

    @staticmethod
    def _instance_from_env(prefix: str) -> Dict[str, Any]:
        return {
            'base_url': os.getenv(f'{prefix}_URL'),
            'token': os.getenv(f'{prefix}_TOKEN'),
            'app_id': _env_int(f'{prefix}_APP_ID'),
            'app_private_key': os.getenv(f'{prefix}_APP_PRIVATE_KEY'),
            'app_installation_id': _env_int(f'{prefix}_APP_INSTALLATION_ID'),
        }

    @staticmethod
    def _remove_none_values(data: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively remove None values from dictionary."""
        if isinstance(data, dict):
            return {
                k: Config._remove_none_values(v)
                for k, v in data.items()
                if v is not None
            }
        return data

    def to_file(self, config_path: str) -> None:
        """Save configuration to YAML file."""
        config_file = Path(config_path)
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.dump(
                self.model_dump(), f, default_flow_style=False, indent=2, sort_keys=False
            )

    @staticmethod
    def create_template(output_path: str) -> None:
        """Create a configuration template file."""
        template_config = {
            'source': {
                'base_url': 'https://github-source.example.com',
                'token': 'your-source-personal-access-token',
                'timeout': 30,
            },
            'destination': {
                'base_url': '',
                'token': 'your-destination-personal-access-token',
                'app_id': 123456,
                'app_private_key': '/path/to/github-app.private-key.pem',
                'app_installation_id': 7890123,
                'timeout': 30,
                'retry': {
                    'max_attempts': 3,
                    'initial_backoff': 1.0,
                    'max_backoff': 30.0,
                    'backoff_multiplier': 2.0,
                },
            },
            'batch_status': {
                'interval': 30,
            },
            'logging': {
                'level': 'INFO',
                'file': 'migration.log',
                'serialize': False,
            },
        }

        config_file = Path(output_path)
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.dump(
                template_config, f, default_flow_style=False, indent=2, sort_keys=False
            )


def _env_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    return int(value) if value else None


def _env_float(name: str) -> Optional[float]:
    value = os.getenv(name)
    return float(value) if value else None

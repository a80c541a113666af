"""GitHub API exceptions."""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Closed set of classifications for a failed API call."""

    UNAUTHORIZED = 'unauthorized'
    FORBIDDEN = 'forbidden'
    NOT_FOUND = 'not_found'
    BAD_REQUEST = 'bad_request'
    SERVER_ERROR = 'server_error'
    RATE_LIMIT_EXCEEDED = 'rate_limit_exceeded'
    SECONDARY_RATE_LIMIT_EXCEEDED = 'secondary_rate_limit_exceeded'
    RATE_LIMIT_BLOCKED = 'rate_limit_blocked'
    STREAM_ERROR = 'stream_error'
    UNCLASSIFIED = 'unclassified'


class GitHubAPIError(Exception):
    """Base exception for classified GitHub API errors.

    Instances of this exact class carry ``ErrorKind.UNCLASSIFIED``; every other
    kind has its own subclass so callers can ``except`` on the kind they handle.
    """

    kind: ErrorKind = ErrorKind.UNCLASSIFIED

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
        response_data: Optional[dict] = None,
        reset_in: Optional[float] = None,
    ):
        """Initialize GitHub API error.

        Args:
            message: Error message
            status_code: HTTP status code, if one was available
            cause: Underlying transport or HTTP error
            response_data: Response data from API
            reset_in: Seconds until a pre-emptive rate limit block lifts
        """
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.cause = cause
        self.response_data = response_data
        self.reset_in = reset_in
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        if self.status_code:
            return f'{self.kind.value} (status {self.status_code}): {self.message}'
        return f'{self.kind.value}: {self.message}'


class GitHubAuthenticationError(GitHubAPIError):
    """Authentication failed (401)."""

    kind = ErrorKind.UNAUTHORIZED


class GitHubPermissionError(GitHubAPIError):
    """Access forbidden for reasons other than quota (403)."""

    kind = ErrorKind.FORBIDDEN


class GitHubNotFoundError(GitHubAPIError):
    """Resource not found error."""

    kind = ErrorKind.NOT_FOUND


class GitHubValidationError(GitHubAPIError):
    """Malformed request (400)."""

    kind = ErrorKind.BAD_REQUEST


class GitHubServerError(GitHubAPIError):
    """The platform or an intermediary proxy failed (5xx)."""

    kind = ErrorKind.SERVER_ERROR


class GitHubRateLimitError(GitHubAPIError):
    """Primary rate limit exceeded."""

    kind = ErrorKind.RATE_LIMIT_EXCEEDED


class GitHubSecondaryRateLimitError(GitHubAPIError):
    """Secondary (abuse detection) rate limit exceeded."""

    kind = ErrorKind.SECONDARY_RATE_LIMIT_EXCEEDED


class GitHubRateLimitBlockedError(GitHubAPIError):
    """A request was refused locally because the quota is known to be spent."""

    kind = ErrorKind.RATE_LIMIT_BLOCKED


class GitHubStreamError(GitHubAPIError):
    """Connection or HTTP/2 stream torn down mid-request."""

    kind = ErrorKind.STREAM_ERROR


ERROR_CLASSES = {
    ErrorKind.UNAUTHORIZED: GitHubAuthenticationError,
    ErrorKind.FORBIDDEN: GitHubPermissionError,
    ErrorKind.NOT_FOUND: GitHubNotFoundError,
    ErrorKind.BAD_REQUEST: GitHubValidationError,
    ErrorKind.SERVER_ERROR: GitHubServerError,
    ErrorKind.RATE_LIMIT_EXCEEDED: GitHubRateLimitError,
    ErrorKind.SECONDARY_RATE_LIMIT_EXCEEDED: GitHubSecondaryRateLimitError,
    ErrorKind.RATE_LIMIT_BLOCKED: GitHubRateLimitBlockedError,
    ErrorKind.STREAM_ERROR: GitHubStreamError,
    ErrorKind.UNCLASSIFIED: GitHubAPIError,
}


class HTTPResponseError(Exception):
    """Raw HTTP failure carrying a structured status code.

    This is what the transport layer raises before classification.
    """

    def __init__(
        self,
        status_code: int,
        message: str,
        headers: Optional[dict] = None,
        response_data: Optional[dict] = None,
    ):
        super().__init__(f'{status_code} {message}')
        self.status_code = status_code
        self.message = message
        self.headers = headers or {}
        self.response_data = response_data


class RetryExhaustedError(Exception):
    """Raised when every attempt of a retryable operation failed."""

    def __init__(self, operation: str, attempts: int, last_error: GitHubAPIError):
        super().__init__(
            f'operation {operation} failed after {attempts} attempts: {last_error}'
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        self.__cause__ = last_error

    @property
    def kind(self) -> ErrorKind:
        """Classification of the final failure."""
        return self.last_error.kind


class CircuitBreakerOpenError(Exception):
    """Exception raised when circuit breaker is open."""

    def __init__(self, message: str, retry_in: float = 0.0):
        super().__init__(message)
        self.retry_in = retry_in


class OperationCancelledError(Exception):
    """A wait or call was abandoned because its cancellation token fired."""


class GitHubConfigurationError(Exception):
    """Client could not be constructed from the supplied configuration."""


class InvalidPhaseTransitionError(ValueError):
    """A repository was asked to move to a phase not reachable from its current one."""

    def __init__(self, current, target):
        super().__init__(
            'illegal migration phase transition: '
            f'{getattr(current, "value", current)} -> {getattr(target, "value", target)}'
        )
        self.current = current
        self.target = target

"""Classification of raw transport and HTTP failures into typed API errors.

Classification runs in a fixed priority order:

1. a structured status code on the raw error (HTTP response or aiohttp error)
2. a status line embedded in the error text, for proxies that answer with an
   HTML page instead of JSON (``502 Bad Gateway``)
3. secondary rate limit phrasing
4. a client-side pre-emptive block carrying a ``[rate reset in 1m56s]`` countdown
5. connection and HTTP/2 stream teardown
6. anything else is unclassified
"""

import json
import re
from typing import Any, Dict, Iterable, Mapping, Optional

import aiohttp

from .exceptions import (
    ERROR_CLASSES,
    ErrorKind,
    GitHubAPIError,
    HTTPResponseError,
)

RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.SERVER_ERROR,
        ErrorKind.RATE_LIMIT_EXCEEDED,
        ErrorKind.SECONDARY_RATE_LIMIT_EXCEEDED,
        ErrorKind.RATE_LIMIT_BLOCKED,
        ErrorKind.STREAM_ERROR,
    }
)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

STATUS_KINDS = {
    400: ErrorKind.BAD_REQUEST,
    401: ErrorKind.UNAUTHORIZED,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    429: ErrorKind.RATE_LIMIT_EXCEEDED,
}

# Ordered most specific first
STATUS_TEXT_PATTERNS = (
    ('500 Internal Server Error', 500),
    ('502 Bad Gateway', 502),
    ('503 Service Unavailable', 503),
    ('504 Gateway Timeout', 504),
    ('429 Too Many Requests', 429),
    ('403 Forbidden', 403),
    ('401 Unauthorized', 401),
    ('404 Not Found', 404),
    ('400 Bad Request', 400),
)

SECONDARY_RATE_LIMIT_PATTERNS = (
    'secondary rate limit',
    'exceeded a secondary rate limit',
    'rate-limits-for-the-rest-api#about-secondary-rate-limits',
    'abuse detection mechanism',
)

# HTTP/2 frame and error-code names are matched case-sensitively
STREAM_FRAME_PATTERNS = (
    'CANCEL',
    'INTERNAL_ERROR',
    'REFUSED_STREAM',
    'RST_STREAM',
    'GOAWAY',
)

STREAM_TEXT_PATTERNS = (
    'stream error',
    'stream id',
    'received from peer',
    'http2: server sent',
    'client disconnected',
    'server disconnected',
    'connection reset',
    'connection was forcibly',
    'connection aborted',
    'broken pipe',
    'use of closed network',
    'connection closed',
)

STREAM_EXCEPTION_TYPES = (
    ConnectionResetError,
    ConnectionAbortedError,
    BrokenPipeError,
    aiohttp.ServerDisconnectedError,
)

RATE_RESET_PATTERN = re.compile(
    r'rate reset in\s+((?:\d+(?:\.\d+)?(?:h|ms|m|s))+)', re.IGNORECASE
)
_DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(h|ms|m|s)')
_DURATION_UNITS = {'h': 3600.0, 'm': 60.0, 's': 1.0, 'ms': 0.001}


def classify(error: BaseException) -> GitHubAPIError:
    """Turn a raw failure into a classified GitHubAPIError.

    Already-classified errors are returned unchanged.

    Args:
        error: Raw exception raised by the transport or HTTP layer

    Returns:
        Classified error whose concrete type reflects its ErrorKind
    """
    if isinstance(error, GitHubAPIError):
        return error

    message = _message_of(error)
    response_data = getattr(error, 'response_data', None)

    status_code = _status_of(error)
    if status_code:
        kind = _kind_for_status(status_code, message, getattr(error, 'headers', None))
        return _build(kind, message, status_code, error, response_data)

    status_code = extract_status_code(message)
    if status_code:
        kind = _kind_for_status(status_code, message, None)
        return _build(kind, message, status_code, error, response_data)

    if is_secondary_rate_limit_message(message):
        return _build(
            ErrorKind.SECONDARY_RATE_LIMIT_EXCEEDED, message, None, error, response_data
        )

    if RATE_RESET_PATTERN.search(message):
        return _build(
            ErrorKind.RATE_LIMIT_BLOCKED,
            message,
            None,
            error,
            response_data,
            reset_in=parse_reset_countdown(message),
        )

    if isinstance(error, STREAM_EXCEPTION_TYPES) or is_stream_error_message(message):
        return _build(ErrorKind.STREAM_ERROR, message, None, error, response_data)

    return _build(ErrorKind.UNCLASSIFIED, message, None, error, response_data)


def classify_graphql_errors(
    errors: Iterable[Mapping[str, Any]], headers: Optional[Mapping[str, str]] = None
) -> GitHubAPIError:
    """Classify the ``errors`` array of a GraphQL response delivered with HTTP 200.

    Args:
        errors: GraphQL error objects
        headers: Response headers

    Returns:
        Classified error
    """
    errors = list(errors)
    message = '; '.join(str(e.get('message', e)) for e in errors) or 'GraphQL error'
    types = {str(e.get('type', '')).upper() for e in errors if isinstance(e, Mapping)}
    data: Dict[str, Any] = {'errors': errors}

    if 'RATE_LIMITED' in types:
        if is_secondary_rate_limit_message(message):
            kind = ErrorKind.SECONDARY_RATE_LIMIT_EXCEEDED
        else:
            kind = ErrorKind.RATE_LIMIT_EXCEEDED
        return _build(kind, message, None, None, data)
    if 'NOT_FOUND' in types:
        return _build(ErrorKind.NOT_FOUND, message, None, None, data)
    if 'FORBIDDEN' in types:
        return _build(ErrorKind.FORBIDDEN, message, None, None, data)

    classified = classify(Exception(message))
    classified.response_data = data
    return classified


def is_retryable(error: BaseException) -> bool:
    """Whether a failed call is worth another attempt.

    Unclassified inputs are classified first.
    """
    classified = classify(error)
    if classified.kind in RETRYABLE_KINDS:
        return True
    return classified.status_code in RETRYABLE_STATUS_CODES


def is_rate_limit_error(error: BaseException) -> bool:
    """Whether the error is any of the three rate limit variants."""
    return classify(error).kind in (
        ErrorKind.RATE_LIMIT_EXCEEDED,
        ErrorKind.SECONDARY_RATE_LIMIT_EXCEEDED,
        ErrorKind.RATE_LIMIT_BLOCKED,
    )


def is_auth_error(error: BaseException) -> bool:
    """Whether the error means the credential is wrong or lacks permission."""
    return classify(error).kind in (ErrorKind.UNAUTHORIZED, ErrorKind.FORBIDDEN)


def is_secondary_rate_limit_message(message: str) -> bool:
    """Check if an error message indicates a secondary rate limit."""
    lowered = message.lower()
    return any(pattern in lowered for pattern in SECONDARY_RATE_LIMIT_PATTERNS)


def is_stream_error_message(message: str) -> bool:
    """Check if an error message describes a torn-down connection or stream."""
    if any(pattern in message for pattern in STREAM_FRAME_PATTERNS):
        return True
    lowered = message.lower()
    return any(pattern in lowered for pattern in STREAM_TEXT_PATTERNS)


def extract_status_code(message: str) -> Optional[int]:
    """Find an HTTP status line inside free-form error text."""
    for pattern, code in STATUS_TEXT_PATTERNS:
        if pattern in message:
            return code
    return None


def parse_reset_countdown(message: str) -> Optional[float]:
    """Extract the ``rate reset in <duration>`` countdown in seconds.

    Accepts Go-style durations such as ``30s``, ``2m``, ``1m56s`` or ``1h2m``.

    Returns:
        Seconds until reset, or None when the message carries no countdown
    """
    match = RATE_RESET_PATTERN.search(message or '')
    if not match:
        return None
    return sum(
        float(amount) * _DURATION_UNITS[unit]
        for amount, unit in _DURATION_PART.findall(match.group(1))
    )


def _kind_for_status(
    status_code: int, message: str, headers: Optional[Mapping[str, str]]
) -> ErrorKind:
    if status_code in (403, 429) and is_secondary_rate_limit_message(message):
        return ErrorKind.SECONDARY_RATE_LIMIT_EXCEEDED
    if status_code == 403 and header_value(headers, 'X-RateLimit-Remaining') == '0':
        return ErrorKind.RATE_LIMIT_EXCEEDED
    if status_code >= 500:
        return ErrorKind.SERVER_ERROR
    return STATUS_KINDS.get(status_code, ErrorKind.UNCLASSIFIED)


def _status_of(error: BaseException) -> Optional[int]:
    status = getattr(error, 'status_code', None)
    if status is None and isinstance(error, aiohttp.ClientResponseError):
        status = error.status
    return status if isinstance(status, int) and status > 0 else None


def _message_of(error: BaseException) -> str:
    message = getattr(error, 'message', None)
    if isinstance(message, str) and message:
        return message
    text = str(error)
    return text or error.__class__.__name__


def parse_body(text: str) -> Any:
    """Decode a JSON body, keeping non-JSON text such as proxy HTML pages."""
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


def error_message(status: int, data: Any) -> str:
    """Failure message of a response from its decoded body."""
    if isinstance(data, dict):
        message = data.get('message') or f'HTTP {status}'
        documentation_url = data.get('documentation_url')
        if documentation_url:
            message = f'{message} ({documentation_url})'
        return message
    if isinstance(data, str) and data.strip():
        return data.strip()[:500]
    return f'HTTP {status}'


def classify_response(
    status: int, data: Any, headers: Optional[Dict[str, str]] = None
) -> GitHubAPIError:
    """Classify a failed HTTP response from its status and decoded body."""
    return classify(
        HTTPResponseError(
            status,
            error_message(status, data),
            headers,
            data if isinstance(data, dict) else None,
        )
    )


def header_value(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    """Case-insensitive header lookup on a plain mapping."""
    if not headers:
        return None
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
    return value


def _build(
    kind: ErrorKind,
    message: str,
    status_code: Optional[int],
    cause: Optional[BaseException],
    response_data: Optional[dict],
    reset_in: Optional[float] = None,
) -> GitHubAPIError:
    return ERROR_CLASSES[kind](
        message,
        status_code=status_code,
        cause=cause,
        response_data=response_data,
        reset_in=reset_in,
    )

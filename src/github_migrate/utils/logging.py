"""Logging utilities for GitHub Migration Tool."""

import sys
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger

DEFAULT_COMPONENT = 'github-migrate'

CONSOLE_FORMAT = (
    '<green>{time:YYYY-MM-DD HH:mm:ss}</green> | '
    '<level>{level: <8}</level> | '
    '<cyan>{extra[component]}</cyan> | '
    '<level>{message}</level>'
)

FILE_FORMAT = (
    '{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[component]} | '
    '{name}:{function}:{line} | {message}'
)

# Bound by the API client on every attempt, rendered compactly after the message
API_FIELDS = ('operation', 'status_code', 'error_kind', 'duration_ms')


def setup_logging(
    level: str = 'INFO',
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    serialize: bool = False,
) -> None:
    """Configure loguru sinks for the CLI and library.

    API attempts bind ``operation``, ``status_code``, ``duration_ms``,
    ``error_kind`` and ``rate_limit_*`` fields. The default formats append
    them to the message; with ``serialize`` every bound field is written out
    as JSON instead.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path, rotated at 10 MB
        log_format: Console format overriding the default
        serialize: Emit JSON records instead of formatted text
    """
    logger.remove()
    logger.configure(extra={'component': DEFAULT_COMPONENT})

    logger.add(
        sys.stderr,
        format=log_format or _formatter(CONSOLE_FORMAT),
        level=level,
        colorize=not serialize,
        serialize=serialize,
        backtrace=True,
        diagnose=False,
    )

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            format=_formatter(FILE_FORMAT),
            level=level,
            rotation='10 MB',
            retention='30 days',
            compression='gz',
            serialize=serialize,
            backtrace=True,
            diagnose=False,
        )

    logger.bind(level=level, log_file=log_file).debug('Logging initialized')


def get_logger(component: str):
    """Logger bound to ``component``, shown in the component column."""
    return logger.bind(component=component)


def format_api_fields(extra: Dict[str, Any]) -> str:
    """Render the API call fields of a record as ``key=value`` pairs."""
    parts = [f'{key}={extra[key]}' for key in API_FIELDS if extra.get(key) is not None]
    remaining = extra.get('rate_limit_remaining')
    if remaining is not None:
        parts.append(f'quota={remaining}/{extra.get("rate_limit_limit")}')
    return ' '.join(parts)


def _formatter(base: str):
    def format_record(record) -> str:
        fields = format_api_fields(record['extra'])
        if fields:
            # Stash the rendered text so braces in values are not re-parsed
            record['extra']['_api_fields'] = fields
            return base + ' | {extra[_api_fields]}\n{exception}'
        return base + '\n{exception}'

    return format_record

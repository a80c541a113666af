"""Tests for logging setup."""

from loguru import logger

from github_migrate.utils.logging import format_api_fields, get_logger, setup_logging


class TestLogging:
    """Test sinks and API field rendering."""

    def test_format_api_fields(self):
        """Test bound API fields are rendered in a fixed order."""
        extra = {
            'component': 'GitHubClient',
            'duration_ms': 12.5,
            'operation': 'get_repository',
            'status_code': 200,
            'rate_limit_remaining': 4999,
            'rate_limit_limit': 5000,
        }

        assert format_api_fields(extra) == (
            'operation=get_repository status_code=200 duration_ms=12.5 quota=4999/5000'
        )

    def test_format_without_api_fields(self):
        """Test plain records render nothing extra."""
        assert format_api_fields({'component': 'cli'}) == ''

    def test_file_sink(self, tmp_path):
        """Test records reach the log file with their component and fields."""
        log_file = tmp_path / 'logs' / 'migration.log'

        setup_logging('DEBUG', log_file=str(log_file))
        try:
            get_logger('GitHubClient').bind(
                operation='list_repositories', status_code=200
            ).info('GET /orgs/acme/repos completed')
            # Read before the sink closes; closing compresses the file
            content = log_file.read_text()
        finally:
            logger.remove()

        assert 'GitHubClient' in content
        assert 'GET /orgs/acme/repos completed' in content
        assert 'operation=list_repositories status_code=200' in content

    def test_serialized_sink(self, tmp_path):
        """Test JSON output keeps bound fields."""
        log_file = tmp_path / 'migration.json'

        setup_logging('INFO', log_file=str(log_file), serialize=True)
        try:
            get_logger('RateLimiter').bind(remaining=42).warning(
                'GitHub API rate limit running low'
            )
            content = log_file.read_text()
        finally:
            logger.remove()

        assert '"remaining": 42' in content
        assert '"component": "RateLimiter"' in content

"""Main CLI entry point for GitHub Migration Tool."""

import sys
import asyncio
from typing import Any, Dict, Optional
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .. import __version__
from ..api.auth import auth_method
from ..api.client import GitHubClient
from ..api.exceptions import GitHubConfigurationError
from ..api.instance import (
    build_graphql_url,
    build_rest_url,
    build_web_url,
    detect_instance_topology,
    repository_web_url,
)
from ..config.config import Config, GitHubInstanceConfig
from ..utils.logging import get_logger, setup_logging

console = Console()


@click.group()
@click.version_option(version=__version__, prog_name='github-migrate')
@click.option(
    '--config',
    '-c',
    type=click.Path(exists=True),
    help='Path to configuration file',
)
@click.option(
    '--verbose',
    '-v',
    is_flag=True,
    help='Enable verbose logging',
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], verbose: bool) -> None:
    """GitHub Migration Tool - Migrate repositories between GitHub instances."""
    ctx.ensure_object(dict)

    # Store config path and verbose flag
    if config:
        ctx.obj['config_path'] = config
    ctx.obj['verbose'] = verbose

    # Setup basic logging first (will be enhanced later with config)
    log_level = 'DEBUG' if verbose else 'WARNING'
    setup_logging(log_level)


@cli.command()
@click.option(
    '--output',
    '-o',
    default='config.yaml',
    help='Output configuration file path',
)
@click.pass_context
def init(ctx: click.Context, output: str) -> None:
    """Initialize a new configuration file."""
    console.print(
        Panel.fit(
            '[bold green]GitHub Migration Tool[/bold green]\n'
            'Initializing configuration...',
            border_style='green',
        )
    )

    try:
        Config.create_template(output)

        console.print(f'[green]✓[/green] Configuration template created at: {output}')
        console.print(
            f'[yellow]Please edit {output} with your GitHub instance details[/yellow]'
        )

    except OSError as e:
        console.print(f'[red]✗[/red] Failed to create configuration: {e}')
        sys.exit(1)


@cli.command()
@click.pass_context
def check(ctx: click.Context) -> None:
    """Authenticate against both instances and show their rate limits."""
    console.print(
        Panel.fit(
            '[bold cyan]GitHub Migration Tool[/bold cyan]\nChecking connectivity...',
            border_style='cyan',
        )
    )

    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)
    except Exception as e:
        console.print(f'[red]✗[/red] Failed to load configuration: {e}')
        sys.exit(1)

    results = asyncio.run(_check_instances(config))

    table = Table(title='GitHub Instances')
    table.add_column('Instance', style='cyan')
    table.add_column('API URL', style='blue')
    table.add_column('Topology')
    table.add_column('Auth')
    table.add_column('Identity', style='green')
    table.add_column('Rate Limit', style='yellow')
    table.add_column('Resets At')

    failed = False
    for name, result in results.items():
        if result.get('error'):
            failed = True
            table.add_row(
                name,
                result['url'],
                result['topology'],
                result.get('auth', '-'),
                f'[red]✗ {result["error"]}[/red]',
                '-',
                '-',
            )
            continue
        table.add_row(
            name,
            result['url'],
            result['topology'],
            result['auth'],
            result['identity'],
            result['rate_limit'],
            result['reset_at'],
        )

    console.print(table)
    if failed:
        console.print('[red]✗[/red] Connectivity check failed')
        sys.exit(1)
    console.print('[green]✓[/green] Connectivity check passed')


@cli.command()
@click.argument('url', default='')
@click.option(
    '--repository',
    '-r',
    default='octo-org/octo-repo',
    help='owner/repo used for the sample web URL',
)
def topology(url: str, repository: str) -> None:
    """Show the detected topology and derived endpoints for URL."""
    table = Table(title=f'Topology of {url or "github.com"}')
    table.add_column('Property', style='cyan')
    table.add_column('Value', style='green')

    table.add_row('Topology', detect_instance_topology(url).value)
    table.add_row('REST API', build_rest_url(url))
    table.add_row('GraphQL API', build_graphql_url(url))
    table.add_row('Web', build_web_url(url))
    table.add_row('Repository', repository_web_url(url, repository))

    console.print(table)


async def _check_instances(config: Config) -> Dict[str, Dict[str, Any]]:
    """Authenticate against source and destination concurrently."""
    names = ('Source', 'Destination')
    results = await asyncio.gather(
        _check_instance(config.source), _check_instance(config.destination)
    )
    return dict(zip(names, results))


async def _check_instance(instance: GitHubInstanceConfig) -> Dict[str, Any]:
    result: Dict[str, Any] = {
        'url': build_rest_url(instance.base_url),
        'topology': detect_instance_topology(instance.base_url).value,
    }
    log = get_logger('cli')

    try:
        client = GitHubClient(instance)
    except GitHubConfigurationError as e:
        result['error'] = str(e)
        return result

    result['auth'] = auth_method(client.credential)
    try:
        identity = await client.test_authentication()
        result['identity'] = identity.get('login') or identity.get('slug') or '-'

        snapshot = await client.refresh_rate_limits()
        if snapshot is None:
            result['rate_limit'] = 'n/a (JWT)'
            result['reset_at'] = '-'
        else:
            result['rate_limit'] = f'{snapshot.remaining}/{snapshot.limit}'
            result['reset_at'] = (
                snapshot.reset_at.isoformat() if snapshot.reset_at else '-'
            )
    except Exception as e:
        log.bind(base_url=result['url']).error(f'Connectivity check failed: {e}')
        result['error'] = str(e)
    finally:
        await client.close()

    return result


def _load_config(ctx: click.Context) -> Config:
    """Load configuration from file or environment."""
    config_path = ctx.obj.get('config_path')

    if config_path:
        return Config.from_file(config_path)

    # Try to load from default locations
    default_paths = ['config.yaml', 'config.yml', '.github-migrate.yaml']
    for path in default_paths:
        if Path(path).exists():
            return Config.from_file(path)

    # Fall back to environment variables
    try:
        return Config.from_env()
    except ValueError as e:
        raise FileNotFoundError(
            'No configuration found. Use --config to specify a file or run '
            '"github-migrate init" to create one.'
        ) from e


def _setup_logging_with_config(ctx: click.Context, config: Config) -> None:
    """Setup logging with configuration from config file."""
    verbose = ctx.obj.get('verbose', False)

    # Use config logging settings, but allow verbose flag to override level
    log_level = 'DEBUG' if verbose else config.logging.level

    setup_logging(
        level=log_level,
        log_file=config.logging.file,
        log_format=config.logging.format,
        serialize=config.logging.serialize,
    )


def main() -> None:
    """Main entry point for the CLI application."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print('\n[red]Interrupted by user[/red]')
        sys.exit(1)


if __name__ == '__main__':
    main()

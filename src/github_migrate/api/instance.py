"""GitHub instance topology detection and endpoint derivation.

All functions here are pure: the topology is recomputed from the base URL on
every call and never stored.
"""

from enum import Enum

GITHUB_API_URL = 'https://api.github.com'
GITHUB_WEB_URL = 'https://github.com'
GITHUB_GRAPHQL_URL = GITHUB_API_URL + '/graphql'

# GitHub Enterprise Cloud with data residency lives under <tenant>.ghe.com
DATA_RESIDENCY_DOMAIN = '.ghe.com'


class InstanceTopology(str, Enum):
    """Which hosting mode a base URL refers to."""

    STANDARD = 'standard'
    CLOUD_DATA_RESIDENCY = 'cloud_data_residency'
    SELF_HOSTED = 'self_hosted'


def detect_instance_topology(base_url: str) -> InstanceTopology:
    """Classify a base URL.

    Args:
        base_url: Configured API or web base URL; empty means github.com

    Returns:
        Instance topology
    """
    if not base_url or base_url == GITHUB_API_URL:
        return InstanceTopology.STANDARD
    if DATA_RESIDENCY_DOMAIN in base_url:
        return InstanceTopology.CLOUD_DATA_RESIDENCY
    return InstanceTopology.SELF_HOSTED


def build_graphql_url(base_url: str) -> str:
    """GraphQL endpoint for the instance behind ``base_url``."""
    topology = detect_instance_topology(base_url)

    if topology == InstanceTopology.STANDARD:
        return GITHUB_GRAPHQL_URL

    if topology == InstanceTopology.CLOUD_DATA_RESIDENCY:
        # octocorp.ghe.com -> https://api.octocorp.ghe.com/graphql
        return f'https://api.{_residency_domain(base_url)}/graphql'

    return _strip_api_suffix(base_url) + '/api/graphql'


def build_rest_url(base_url: str) -> str:
    """REST API root for the instance behind ``base_url``, without trailing slash."""
    topology = detect_instance_topology(base_url)

    if topology == InstanceTopology.STANDARD:
        return GITHUB_API_URL

    if topology == InstanceTopology.CLOUD_DATA_RESIDENCY:
        return f'https://api.{_residency_domain(base_url)}'

    return _strip_api_suffix(base_url) + '/api/v3'


def build_web_url(base_url: str) -> str:
    """Browser-facing root URL for the instance behind ``base_url``."""
    topology = detect_instance_topology(base_url)

    if topology == InstanceTopology.STANDARD:
        return GITHUB_WEB_URL

    if topology == InstanceTopology.CLOUD_DATA_RESIDENCY:
        return f'https://{_residency_domain(base_url)}'

    return _strip_api_suffix(base_url)


def repository_web_url(base_url: str, full_name: str) -> str:
    """Canonical web URL of an ``owner/repo`` repository."""
    return f'{build_web_url(base_url)}/{full_name.strip("/")}'


def _residency_domain(base_url: str) -> str:
    domain = base_url
    for prefix in ('https://', 'http://'):
        if domain.startswith(prefix):
            domain = domain[len(prefix):]
    if domain.startswith('api.'):
        domain = domain[len('api.'):]
    domain = domain.rstrip('/')
    return _strip_suffixes(domain)


def _strip_api_suffix(base_url: str) -> str:
    return _strip_suffixes(base_url.rstrip('/'))


def _strip_suffixes(value: str) -> str:
    for suffix in ('/api/v3', '/api'):
        if value.endswith(suffix):
            value = value[: -len(suffix)]
    return value

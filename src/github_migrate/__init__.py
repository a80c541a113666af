"""GitHub Migration Tool

Resilient GitHub API client and migration state engine for moving
repositories between GitHub instances.
"""

__version__ = '0.1.0'
__author__ = 'GitHub Migration Team'
__email__ = 'team@example.com'

"""ContextSync - unified developer activity ingestion and search.

Pulls pull requests, issues, reviews, commits, tickets and chat messages
from GitHub, Jira and Slack into one normalized, searchable store.
"""

from contextsync.constants import VERSION

__version__ = VERSION

__all__ = ["__version__"]

"""Adapters for the supported providers.

This package contains one adapter per provider:
    - GitHubAdapter: pull requests, issues, reviews requested and commits
    - JiraAdapter: tickets assigned to or reported by the owner
    - SlackAdapter: chat messages across every visible conversation

All adapters implement the ProviderAdapter interface from the base module.
"""

from contextsync.adapters.base import ProviderAdapter
from contextsync.adapters.github import GitHubAdapter
from contextsync.adapters.jira import JiraAdapter
from contextsync.adapters.slack import SlackAdapter

__all__ = [
    "GitHubAdapter",
    "JiraAdapter",
    "ProviderAdapter",
    "SlackAdapter",
]

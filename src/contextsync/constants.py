"""Constants and configuration defaults for ContextSync.

This module contains all magic values, default configurations, and constants
used throughout the application. Import from here instead of hardcoding values.
"""

from typing import Final

# =============================================================================
# VERSION
# =============================================================================
VERSION: Final[str] = "0.1.0"

# =============================================================================
# CACHE DEFAULTS
# =============================================================================
DEFAULT_CACHE_TTL_SECONDS: Final[int] = 900  # 15 minutes
DEFAULT_CACHE_MAX_SIZE: Final[int] = 1000
OAUTH_STATE_TTL_SECONDS: Final[int] = 600  # 10 minutes
USER_NAME_CACHE_TTL_SECONDS: Final[int] = 3600

# =============================================================================
# HTTP CLIENT DEFAULTS
# =============================================================================
DEFAULT_HTTP_TIMEOUT_SECONDS: Final[float] = 30.0

# =============================================================================
# EXECUTOR (RETRY / BACKOFF)
# =============================================================================
DEFAULT_MAX_CONCURRENCY: Final[int] = 5
DEFAULT_MAX_RETRIES: Final[int] = 3
DEFAULT_BASE_DELAY_SECONDS: Final[float] = 1.0
DEFAULT_MAX_DELAY_SECONDS: Final[float] = 30.0
DEFAULT_MAX_THROTTLE_WAITS: Final[int] = 5
DEFAULT_RETRY_AFTER_SECONDS: Final[float] = 30.0

# =============================================================================
# SYNC POLICY
# =============================================================================
DEFAULT_SYNC_DAYS_BACK: Final[int] = 30
SMART_SYNC_DAYS_BACK: Final[int] = 7
SMART_SYNC_COOLDOWN_SECONDS: Final[int] = 300  # 5 minutes
DEFAULT_UPSERT_BATCH_SIZE: Final[int] = 50
TOKEN_REFRESH_MARGIN_SECONDS: Final[int] = 300  # 5 minutes

# =============================================================================
# GITHUB API
# =============================================================================
GITHUB_API_BASE_URL: Final[str] = "https://api.github.com"
GITHUB_API_VERSION: Final[str] = "2022-11-28"
GITHUB_PER_PAGE: Final[int] = 100
GITHUB_MAX_REPOS: Final[int] = 10
GITHUB_COMMITS_PER_REPO: Final[int] = 100
GITHUB_REPO_AFFILIATION: Final[str] = "owner,collaborator,organization_member"
GITHUB_SKIPPABLE_STATUS_CODES: Final[frozenset[int]] = frozenset({403, 404, 409})

# =============================================================================
# JIRA API
# =============================================================================
JIRA_API_BASE_URL: Final[str] = "https://api.atlassian.com"
JIRA_API_VERSION: Final[str] = "3"
JIRA_API_BASE_PATH: Final[str] = f"/rest/api/{JIRA_API_VERSION}"
JIRA_PAGE_SIZE: Final[int] = 50
JIRA_MAX_ISSUES: Final[int] = 200
JIRA_FALLBACK_WINDOW_DAYS: Final[int] = 7
JIRA_MAX_CHANGELOG_ENTRIES: Final[int] = 10
JIRA_SPRINT_FIELD: Final[str] = "customfield_10020"
JIRA_SEARCH_FIELDS: Final[tuple[str, ...]] = (
    "summary",
    "description",
    "status",
    "priority",
    "assignee",
    "reporter",
    "created",
    "updated",
    "issuetype",
    "project",
    "labels",
    "components",
    "fixVersions",
    "resolutiondate",
    "resolution",
)

# =============================================================================
# SLACK API
# =============================================================================
SLACK_API_BASE_URL: Final[str] = "https://slack.com/api"
SLACK_RATE_LIMIT_REQUESTS_PER_MINUTE: Final[int] = 50
SLACK_CONVERSATION_TYPES: Final[str] = "public_channel,private_channel,mpim,im"
SLACK_CONVERSATION_PAGE_SIZE: Final[int] = 200
SLACK_HISTORY_PAGE_SIZE: Final[int] = 100
SLACK_KEPT_SUBTYPES: Final[frozenset[str]] = frozenset({"bot_message", "thread_broadcast"})
SLACK_AUTH_ERRORS: Final[frozenset[str]] = frozenset(
    {"invalid_auth", "not_authed", "token_revoked", "token_expired", "account_inactive"}
)
SLACK_SKIPPABLE_ERRORS: Final[frozenset[str]] = frozenset(
    {"channel_not_found", "not_in_channel", "is_archived", "access_denied", "missing_scope"}
)
SLACK_SIGNATURE_VERSION: Final[str] = "v0"
SLACK_SIGNATURE_MAX_AGE_SECONDS: Final[int] = 300  # 5 minutes

# =============================================================================
# NORMALIZER
# =============================================================================
TITLE_MAX_LENGTH: Final[int] = 255
COMMIT_HEADLINE_MAX_LENGTH: Final[int] = 100
CHAT_PREVIEW_MAX_LENGTH: Final[int] = 80
UNKNOWN: Final[str] = "unknown"
UNKNOWN_REPO: Final[str] = "unknown/unknown"

# =============================================================================
# SEARCH
# =============================================================================
MIN_QUERY_LENGTH: Final[int] = 2
DEFAULT_SEARCH_LIMIT: Final[int] = 20
MAX_SEARCH_LIMIT: Final[int] = 100
DEFAULT_LIST_LIMIT: Final[int] = 50
MAX_LIST_LIMIT: Final[int] = 200
HIGHLIGHT_OPEN: Final[str] = "<mark>"
HIGHLIGHT_CLOSE: Final[str] = "</mark>"

RANK_EXACT_TITLE: Final[int] = 100
RANK_TITLE_CONTAINS: Final[int] = 50
RANK_TITLE_FIRST_WORD: Final[int] = 40
RANK_BODY_CONTAINS: Final[int] = 30
RANK_REPO_CONTAINS: Final[int] = 20
RANK_AUTHOR_CONTAINS: Final[int] = 15
RANK_ATTRIBUTES_CONTAIN: Final[int] = 10
RANK_FILTER_ONLY: Final[int] = 1

# =============================================================================
# EVENTS
# =============================================================================
DEFAULT_EVENT_WORKERS: Final[int] = 2
DEFAULT_EVENT_MAX_ATTEMPTS: Final[int] = 3
EVENT_DEDUPE_TTL_SECONDS: Final[int] = 3600

# =============================================================================
# MCP SERVER
# =============================================================================
MCP_SERVER_NAME: Final[str] = "contextsync"

# =============================================================================
# STORAGE
# =============================================================================
DEFAULT_STORAGE_PATH: Final[str] = ".contextsync/contexts.db"

# =============================================================================
# CONFIG FILE
# =============================================================================
CONFIG_FILE_NAME: Final[str] = ".contextsync.yaml"

# =============================================================================
# LOGGING
# =============================================================================
LOG_FORMAT: Final[str] = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT: Final[str] = "%Y-%m-%d %H:%M:%S"

# =============================================================================
# ADAPTER NAMES (for consistent referencing)
# =============================================================================
ADAPTER_GITHUB: Final[str] = "github"
ADAPTER_JIRA: Final[str] = "jira"
ADAPTER_SLACK: Final[str] = "slack"

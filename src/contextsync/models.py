"""Pydantic models for ContextSync.

This module contains all data models used throughout ContextSync.
All models use Pydantic BaseModel with Field() descriptions for
documentation and validation.

Models are organized by domain:
- Config models (GitHubConfig, JiraConfig, SlackConfig, ContextSyncConfig, etc.)
- Store models (Context, Integration, Credential)
- Raw provider items, one tagged variant per source (RawPullRequest, ...)
- Sync result models (FetchReport, SourceSyncResult, SyncResult, SmartSyncResult)
- Query models (ParsedQuery, SearchHit, SearchResponse, Stats)
- On-demand detail models (PullRequestDetail, TicketDetail, ThreadDetail)

All datetime fields use timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated, Any, Final, Literal

from pydantic import BaseModel, Field

from contextsync.constants import (
    DEFAULT_BASE_DELAY_SECONDS,
    DEFAULT_EVENT_MAX_ATTEMPTS,
    DEFAULT_EVENT_WORKERS,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_MAX_DELAY_SECONDS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_THROTTLE_WAITS,
    DEFAULT_SEARCH_LIMIT,
    DEFAULT_STORAGE_PATH,
    DEFAULT_SYNC_DAYS_BACK,
    DEFAULT_UPSERT_BATCH_SIZE,
    GITHUB_API_BASE_URL,
    GITHUB_COMMITS_PER_REPO,
    GITHUB_MAX_REPOS,
    GITHUB_PER_PAGE,
    JIRA_API_BASE_URL,
    JIRA_FALLBACK_WINDOW_DAYS,
    JIRA_MAX_ISSUES,
    JIRA_PAGE_SIZE,
    SLACK_API_BASE_URL,
    SLACK_HISTORY_PAGE_SIZE,
    SLACK_RATE_LIMIT_REQUESTS_PER_MINUTE,
    SMART_SYNC_COOLDOWN_SECONDS,
    SMART_SYNC_DAYS_BACK,
)

SourceKind = Literal[
    "code_pr",
    "code_issue",
    "code_review",
    "code_commit",
    "ticket",
    "chat_message",
]
ProviderType = Literal["github", "jira", "slack"]
ConversationKind = Literal["channel", "private", "dm", "group_dm"]
QueryType = Literal["empty", "text", "date", "author", "status", "repo", "combined"]
UpsertOutcome = Literal["inserted", "updated", "unchanged"]

SOURCES_BY_PROVIDER: Final[dict[str, tuple[str, ...]]] = {
    "github": ("code_pr", "code_issue", "code_review", "code_commit"),
    "jira": ("ticket",),
    "slack": ("chat_message",),
}
ALL_SOURCES: Final[tuple[str, ...]] = tuple(
    source for sources in SOURCES_BY_PROVIDER.values() for source in sources
)
PROVIDER_BY_SOURCE: Final[dict[str, str]] = {
    source: provider for provider, sources in SOURCES_BY_PROVIDER.items() for source in sources
}

# Append-only records: once stored, re-ingestion never rewrites them.
IMMUTABLE_SOURCES: Final[frozenset[str]] = frozenset({"code_commit"})

# =============================================================================
# CONFIG MODELS
# =============================================================================


class GitHubConfig(BaseModel):
    """GitHub adapter configuration."""

    enabled: bool = Field(default=True, description="Whether adapter is enabled")
    api_base_url: str = Field(default=GITHUB_API_BASE_URL, description="GitHub REST API base URL")
    per_page: int = Field(default=GITHUB_PER_PAGE, ge=1, le=100, description="Page size")
    max_repos: int = Field(
        default=GITHUB_MAX_REPOS,
        ge=0,
        description="Most recently pushed repositories to scan for commits",
    )
    commits_per_repo: int = Field(
        default=GITHUB_COMMITS_PER_REPO,
        ge=1,
        description="Maximum commits collected per repository",
    )


class JiraConfig(BaseModel):
    """Jira adapter configuration."""

    enabled: bool = Field(default=True, description="Whether adapter is enabled")
    api_base_url: str = Field(
        default=JIRA_API_BASE_URL,
        description="Atlassian cloud gateway URL",
    )
    page_size: int = Field(default=JIRA_PAGE_SIZE, ge=1, le=100, description="Issues per page")
    max_issues: int = Field(default=JIRA_MAX_ISSUES, ge=1, description="Maximum issues per sync")
    fallback_window_days: int = Field(
        default=JIRA_FALLBACK_WINDOW_DAYS,
        ge=1,
        description="Recency window of the fallback query",
    )


class SlackConfig(BaseModel):
    """Slack adapter configuration."""

    enabled: bool = Field(default=True, description="Whether adapter is enabled")
    api_base_url: str = Field(default=SLACK_API_BASE_URL, description="Slack Web API base URL")
    page_size: int = Field(
        default=SLACK_HISTORY_PAGE_SIZE,
        ge=1,
        le=1000,
        description="Messages per history page",
    )
    include_threads: bool = Field(default=True, description="Fetch thread replies")
    requests_per_minute: int = Field(
        default=SLACK_RATE_LIMIT_REQUESTS_PER_MINUTE,
        ge=1,
        description="Client-side pacing of Web API calls",
    )


class ProvidersConfig(BaseModel):
    """Configuration for all providers."""

    github: GitHubConfig = Field(default_factory=GitHubConfig)
    jira: JiraConfig = Field(default_factory=JiraConfig)
    slack: SlackConfig = Field(default_factory=SlackConfig)


class ExecutorConfig(BaseModel):
    """Rate-limited executor configuration."""

    max_concurrency: int = Field(
        default=DEFAULT_MAX_CONCURRENCY,
        ge=1,
        le=50,
        description="Concurrent outbound calls",
    )
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0, description="Transient retries")
    base_delay_seconds: float = Field(
        default=DEFAULT_BASE_DELAY_SECONDS,
        ge=0,
        description="First backoff delay",
    )
    max_delay_seconds: float = Field(
        default=DEFAULT_MAX_DELAY_SECONDS,
        ge=0,
        description="Backoff delay cap",
    )
    max_throttle_waits: int = Field(
        default=DEFAULT_MAX_THROTTLE_WAITS,
        ge=0,
        description="Provider-declared waits honoured per call",
    )


class SyncConfig(BaseModel):
    """Sync policy configuration."""

    default_days_back: int = Field(
        default=DEFAULT_SYNC_DAYS_BACK,
        ge=1,
        description="Lookback window of a full sync",
    )
    smart_days_back: int = Field(
        default=SMART_SYNC_DAYS_BACK,
        ge=1,
        description="Lookback window of a smart sync",
    )
    cooldown_seconds: int = Field(
        default=SMART_SYNC_COOLDOWN_SECONDS,
        ge=0,
        description="Minimum interval between smart syncs",
    )
    batch_size: int = Field(
        default=DEFAULT_UPSERT_BATCH_SIZE,
        ge=1,
        description="Items normalized and upserted together",
    )


class SearchConfig(BaseModel):
    """Search configuration."""

    default_limit: int = Field(default=DEFAULT_SEARCH_LIMIT, ge=1, description="Default limit")
    timezone: str = Field(default="UTC", description="Zone used for day and week boundaries")


class StorageConfig(BaseModel):
    """Context store configuration."""

    path: str = Field(default=DEFAULT_STORAGE_PATH, description="SQLite database path")


class EventsConfig(BaseModel):
    """Chat webhook event queue configuration."""

    workers: int = Field(default=DEFAULT_EVENT_WORKERS, ge=1, description="Worker tasks")
    max_attempts: int = Field(
        default=DEFAULT_EVENT_MAX_ATTEMPTS,
        ge=1,
        description="Deliveries before an event is dead-lettered",
    )
    signing_secret: str = Field(default="", description="Slack signing secret (from env)")


class ContextSyncConfig(BaseModel):
    """Root configuration for ContextSync."""

    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)


# =============================================================================
# STORE MODELS
# =============================================================================


class Context(BaseModel):
    """The canonical normalized record for one unit of external activity."""

    id: int | None = Field(default=None, description="Store row id, None until inserted")
    owner: str = Field(..., description="Account the record belongs to")
    source: SourceKind = Field(..., description="Source tag")
    source_id: str = Field(..., description="Provider-native id, unique per (owner, source)")
    title: str = Field(default="", description="Human-readable title")
    body: str = Field(default="", description="Human-readable body text")
    external_url: str = Field(default="", description="Deep link back to the provider")
    attributes: dict[str, Any] = Field(
        default_factory=dict,
        description="JSON-serializable per-source attributes",
    )
    created_at: datetime = Field(..., description="Provider creation time (UTC)")
    updated_at: datetime = Field(..., description="Provider update time (UTC)")
    relevance: int | None = Field(
        default=None,
        exclude=True,
        description="Query-time score, never persisted",
    )

    @property
    def key(self) -> tuple[str, str, str]:
        """Return the natural key (owner, source, source_id)."""
        return (self.owner, self.source, self.source_id)


class Integration(BaseModel):
    """A stored provider authorization for one owner."""

    owner: str = Field(..., description="Owner of the integration")
    provider: ProviderType = Field(..., description="Provider type")
    access_token: str = Field(..., description="Access credential")
    refresh_token: str | None = Field(default=None, description="Refresh credential")
    expires_at: datetime | None = Field(default=None, description="Access token expiry (UTC)")
    workspace_id: str | None = Field(default=None, description="Workspace or team id")
    site_metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Provider site identifiers (cloud_id, site_url, ...)",
    )
    active: bool = Field(default=True, description="False once disconnected")
    created_at: datetime | None = Field(default=None, description="When first authorized")
    updated_at: datetime | None = Field(default=None, description="When last refreshed")


class Credential(BaseModel):
    """The credential view handed to provider adapters."""

    access_token: str = Field(..., description="Bearer token")
    refresh_token: str | None = Field(default=None, description="Refresh token")
    expires_at: datetime | None = Field(default=None, description="Expiry (UTC)")
    workspace_id: str | None = Field(default=None, description="Workspace or team id")
    site_metadata: dict[str, Any] = Field(default_factory=dict, description="Site identifiers")

    @classmethod
    def from_integration(cls, integration: Integration) -> Credential:
        """Build a credential from a stored integration."""
        return cls(
            access_token=integration.access_token,
            refresh_token=integration.refresh_token,
            expires_at=integration.expires_at,
            workspace_id=integration.workspace_id,
            site_metadata=integration.site_metadata,
        )


# =============================================================================
# RAW PROVIDER ITEMS
# =============================================================================


class RawPullRequest(BaseModel):
    """A pull request from the code-hosting search API."""

    kind: Literal["code_pr"] = "code_pr"
    data: dict[str, Any] = Field(..., description="Search API issue payload")


class RawIssue(BaseModel):
    """An issue from the code-hosting search API."""

    kind: Literal["code_issue"] = "code_issue"
    data: dict[str, Any] = Field(..., description="Search API issue payload")


class RawReview(BaseModel):
    """A pull request the user reviewed."""

    kind: Literal["code_review"] = "code_review"
    data: dict[str, Any] = Field(..., description="Search API issue payload")


class RawCommit(BaseModel):
    """A commit from a per-repository listing."""

    kind: Literal["code_commit"] = "code_commit"
    data: dict[str, Any] = Field(..., description="Commit payload")
    repo: str = Field(..., description="Repository full name")
    branch: str | None = Field(default=None, description="Default branch of the repository")


class RawTicket(BaseModel):
    """An issue-tracker ticket."""

    kind: Literal["ticket"] = "ticket"
    data: dict[str, Any] = Field(..., description="Issue payload with fields")
    site_url: str = Field(default="", description="Browse base URL of the site")


class Conversation(BaseModel):
    """A chat conversation the credential can see."""

    id: str = Field(..., description="Conversation id")
    name: str = Field(default="", description="Channel name or counterpart name")
    kind: ConversationKind = Field(default="channel", description="Conversation kind")


class RawChatMessage(BaseModel):
    """A top-level chat message with its resolved context."""

    kind: Literal["chat_message"] = "chat_message"
    message: dict[str, Any] = Field(..., description="Message payload")
    conversation: Conversation = Field(..., description="Conversation of the message")
    author_name: str | None = Field(default=None, description="Resolved author display name")
    replies: list[dict[str, Any]] = Field(default_factory=list, description="Thread replies")
    permalink: str | None = Field(default=None, description="Provider permalink")
    team_id: str | None = Field(default=None, description="Workspace id")


RawItem = Annotated[
    RawPullRequest | RawIssue | RawReview | RawCommit | RawTicket | RawChatMessage,
    Field(discriminator="kind"),
]

# =============================================================================
# SYNC RESULT MODELS
# =============================================================================


class FetchReport(BaseModel):
    """Mutable accumulator an adapter fills while fetching one source."""

    errors: list[str] = Field(default_factory=list, description="Recorded error strings")
    skipped: int = Field(default=0, description="Items or scopes skipped as expected noise")
    details: dict[str, int] = Field(default_factory=dict, description="Adapter counters")

    def increment(self, key: str, amount: int = 1) -> None:
        """Bump an adapter-specific counter."""
        self.details[key] = self.details.get(key, 0) + amount


class UpsertStats(BaseModel):
    """Outcome counts of a batch of upserts."""

    inserted: int = Field(default=0, description="New rows")
    updated: int = Field(default=0, description="Rewritten rows")
    unchanged: int = Field(default=0, description="Immutable rows left alone")
    failed: int = Field(default=0, description="Upserts that raised")

    @property
    def total(self) -> int:
        """Return the number of contexts that reached the store."""
        return self.inserted + self.updated + self.unchanged


class SourceSyncResult(BaseModel):
    """Result of syncing one source."""

    source: SourceKind = Field(..., description="Source tag")
    count: int = Field(default=0, description="Contexts synced")
    skipped: int = Field(default=0, description="Expected-noise skips")
    errors: list[str] = Field(default_factory=list, description="Isolated errors")
    details: dict[str, int] = Field(default_factory=dict, description="Adapter counters")
    aborted: bool = Field(default=False, description="True when a credential failure stopped it")


class SyncResult(BaseModel):
    """Aggregated result of a full sync."""

    owner: str = Field(..., description="Synced owner")
    days_back: int = Field(..., description="Lookback window in days")
    counts: dict[str, int] = Field(default_factory=dict, description="Contexts per source")
    total: int = Field(default=0, description="Contexts across all sources")
    errors: list[str] = Field(default_factory=list, description="All isolated errors")
    sources: list[SourceSyncResult] = Field(default_factory=list, description="Per-source detail")
    started_at: datetime = Field(..., description="When the sync started (UTC)")
    duration_ms: int = Field(default=0, description="Wall time of the sync")

    @property
    def completed_any(self) -> bool:
        """Return True when at least one source ran to completion."""
        return any(not source.aborted for source in self.sources)


class SmartSyncResult(BaseModel):
    """Result of a throttled smart sync."""

    skipped: bool = Field(..., description="True when the cool-down was active")
    last_sync: datetime | None = Field(default=None, description="SyncState after the call")
    result: SyncResult | None = Field(default=None, description="Sync result when not skipped")


# =============================================================================
# QUERY MODELS
# =============================================================================


class ParsedQuery(BaseModel):
    """Structured filters and residual text extracted from a search query."""

    raw: str = Field(..., description="Original query text")
    text: str | None = Field(default=None, description="Residual free-text term")
    date_from: datetime | None = Field(default=None, description="Inclusive range start")
    date_to: datetime | None = Field(default=None, description="Exclusive range end")
    date_label: str | None = Field(default=None, description="Matched temporal keyword")
    author: str | None = Field(default=None, description="Author filter")
    status: str | None = Field(default=None, description="Status token as typed")
    status_values: list[str] = Field(default_factory=list, description="Accepted states")
    repo: str | None = Field(default=None, description="Repo substring filter")
    query_type: QueryType = Field(default="text", description="Classification for UI labels")

    @property
    def filters_detected(self) -> list[str]:
        """Return the filter kinds present, in a stable order."""
        present = {
            "date": self.date_label is not None,
            "author": self.author is not None,
            "status": self.status is not None,
            "repo": self.repo is not None,
        }
        return [kind for kind, found in present.items() if found]


class SearchHit(BaseModel):
    """One ranked search result."""

    context: Context = Field(..., description="Matched context")
    relevance: int = Field(..., description="Rule-based score")
    title_highlighted: str = Field(..., description="Title with matches marked")
    body_highlighted: str = Field(..., description="Body with matches marked")


class SearchResponse(BaseModel):
    """Response of a search call."""

    results: list[SearchHit] = Field(default_factory=list, description="Ranked hits")
    query_type: QueryType = Field(..., description="Query classification")
    filters_detected: list[str] = Field(default_factory=list, description="Filter kinds found")
    text: str | None = Field(default=None, description="Residual free-text term")


class Stats(BaseModel):
    """Store statistics for one owner."""

    owner: str = Field(..., description="Owner")
    total: int = Field(default=0, description="Total contexts")
    counts_by_source: dict[str, int] = Field(default_factory=dict, description="Per source")
    last_sync: datetime | None = Field(default=None, description="SyncState timestamp")


class ContextPage(BaseModel):
    """One page of an owner's contexts, newest update first."""

    contexts: list[Context] = Field(default_factory=list, description="Page rows")
    total: int = Field(default=0, description="Rows matching the filter")
    limit: int = Field(..., description="Page size")
    offset: int = Field(default=0, description="Rows skipped")

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total


# =============================================================================
# ON-DEMAND DETAIL MODELS
# =============================================================================


class PullRequestFile(BaseModel):
    """A file changed by a pull request."""

    filename: str = Field(..., description="Path")
    status: str = Field(default="modified", description="added/modified/removed/renamed")
    additions: int = Field(default=0, description="Added lines")
    deletions: int = Field(default=0, description="Deleted lines")


class PullRequestReview(BaseModel):
    """A submitted review."""

    author: str = Field(..., description="Reviewer login")
    state: str = Field(..., description="APPROVED, CHANGES_REQUESTED, COMMENTED, ...")
    body: str = Field(default="", description="Review summary")
    submitted_at: datetime | None = Field(default=None, description="Submission time")


class ReviewComment(BaseModel):
    """An inline review comment."""

    author: str = Field(..., description="Comment author login")
    body: str = Field(default="", description="Comment text")
    path: str | None = Field(default=None, description="File path")
    line: int | None = Field(default=None, description="Line number")
    created_at: datetime | None = Field(default=None, description="Creation time")


class CheckRun(BaseModel):
    """A CI check run or commit status."""

    name: str = Field(..., description="Check name or status context")
    status: str = Field(default="", description="queued/in_progress/completed or state")
    conclusion: str | None = Field(default=None, description="success/failure/...")
    url: str | None = Field(default=None, description="Details URL")


class PullRequestDetail(BaseModel):
    """Rich pull request detail fetched on demand."""

    repo: str = Field(..., description="Repository full name")
    number: int = Field(..., description="Pull request number")
    title: str = Field(default="", description="Title")
    state: str = Field(default="open", description="open/closed/merged")
    head_sha: str | None = Field(default=None, description="Head commit sha")
    additions: int = Field(default=0, description="Added lines")
    deletions: int = Field(default=0, description="Deleted lines")
    changed_files: int = Field(default=0, description="Files changed")
    files: list[PullRequestFile] = Field(default_factory=list, description="Changed files")
    reviews: list[PullRequestReview] = Field(default_factory=list, description="Reviews")
    review_comments: list[ReviewComment] = Field(default_factory=list, description="Comments")
    check_runs: list[CheckRun] = Field(default_factory=list, description="Check runs")
    statuses: list[CheckRun] = Field(default_factory=list, description="Commit statuses")
    requested_reviewers: list[str] = Field(default_factory=list, description="Pending reviewers")


class TicketComment(BaseModel):
    """A comment on a ticket."""

    author: str = Field(..., description="Author display name")
    body: str = Field(default="", description="Comment text")
    created: datetime | None = Field(default=None, description="Creation time")


class LinkedTicket(BaseModel):
    """A linked ticket reference."""

    key: str = Field(..., description="Issue key")
    summary: str = Field(default="", description="Summary")
    status: str = Field(default="", description="Status name")
    link_type: str = Field(default="", description="Link description as displayed")


class ChangelogEntry(BaseModel):
    """One changelog history entry."""

    author: str = Field(..., description="Who made the change")
    created: datetime | None = Field(default=None, description="When")
    changes: list[str] = Field(default_factory=list, description="'field: from -> to' lines")


class TicketDetail(BaseModel):
    """Rich ticket detail fetched on demand."""

    key: str = Field(..., description="Issue key")
    summary: str = Field(default="", description="Summary")
    status: str = Field(default="", description="Status name")
    description: str = Field(default="", description="Description as plain text")
    comments: list[TicketComment] = Field(default_factory=list, description="Comments")
    attachments: list[str] = Field(default_factory=list, description="Attachment file names")
    changelog: list[ChangelogEntry] = Field(default_factory=list, description="Recent history")
    subtasks: list[LinkedTicket] = Field(default_factory=list, description="Subtasks")
    blocks: list[LinkedTicket] = Field(default_factory=list, description="Issues this blocks")
    blocked_by: list[LinkedTicket] = Field(default_factory=list, description="Blocking issues")
    relates: list[LinkedTicket] = Field(default_factory=list, description="Other links")
    watchers: int = Field(default=0, description="Watcher count")
    sprint: str | None = Field(default=None, description="Current sprint name")


class ThreadMessage(BaseModel):
    """A message inside a chat thread."""

    ts: str = Field(..., description="Message timestamp id")
    author: str = Field(..., description="Author display name or id")
    text: str = Field(default="", description="Message text")


class ThreadDetail(BaseModel):
    """A full chat thread fetched on demand."""

    channel_id: str = Field(..., description="Conversation id")
    ts: str = Field(..., description="Parent message timestamp id")
    messages: list[ThreadMessage] = Field(default_factory=list, description="Parent and replies")


# =============================================================================
# EVENT MODELS
# =============================================================================


class ChatEvent(BaseModel):
    """A chat webhook event queued for processing."""

    event_id: str = Field(..., description="Provider event id, used for deduplication")
    team_id: str = Field(default="", description="Workspace id")
    type: str = Field(..., description="Inner event type")
    payload: dict[str, Any] = Field(default_factory=dict, description="Inner event payload")
    attempts: int = Field(default=0, description="Deliveries so far")

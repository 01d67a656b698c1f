"""Jira adapter for tickets assigned to or reported by the user.

This adapter connects to the Jira Cloud REST API (v3) through the
Atlassian gateway (`/ex/jira/{cloud_id}`) with an OAuth bearer token.

Bulk sync runs one structured query on the enhanced search endpoint
(`POST /search/jql`, token pagination via nextPageToken/isLast):

    (assignee = currentUser() OR reporter = currentUser())
        AND updated >= "{since}" ORDER BY updated DESC

Jira has been migrating its query endpoints. When the primary query is
rejected as unauthorized or gone (401/410), the adapter falls back to a
broad recency-bounded query instead of failing the sync.

Rich ticket detail (comments, changelog, links, sprint) is a separate
on-demand call.

Example:
    credential = Credential(access_token="...", site_metadata={
        "cloud_id": "abc-123",
        "site_url": "https://company.atlassian.net",
    })
    adapter = JiraAdapter(JiraConfig(), executor)
    async for raw in adapter.fetch_source(credential, "ticket", since, report):
        ...
"""

from __future__ import annotations

import math
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, ClassVar

import httpx

from contextsync.adapters.base import ProviderAdapter
from contextsync.constants import (
    ADAPTER_JIRA,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    JIRA_API_BASE_PATH,
    JIRA_MAX_CHANGELOG_ENTRIES,
    JIRA_SEARCH_FIELDS,
    JIRA_SPRINT_FIELD,
)
from contextsync.exceptions import (
    AuthError,
    DeprecatedEndpointError,
    ProviderError,
    SkippableError,
)
from contextsync.logging import get_logger
from contextsync.models import (
    ChangelogEntry,
    JiraConfig,
    LinkedTicket,
    RawTicket,
    TicketComment,
    TicketDetail,
)
from contextsync.normalizer import adf_to_text, source_id_of
from contextsync.utils import parse_datetime

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from contextsync.executor import RateLimitedExecutor
    from contextsync.models import Credential, FetchReport, RawItem

logger = get_logger(__name__)

PRIMARY_JQL = (
    "(assignee = currentUser() OR reporter = currentUser()) "
    'AND updated >= "{since}" ORDER BY updated DESC'
)
FALLBACK_JQL = "updated >= -{days}d ORDER BY updated DESC"


class JiraAdapter(ProviderAdapter):
    """Issue-tracker adapter backed by the Jira Cloud REST API.

    Class Attributes:
        name: Adapter identifier ("jira").
        provider: Provider type ("jira").
        sources: ticket.
    """

    name: ClassVar[str] = ADAPTER_JIRA
    provider: ClassVar[str] = "jira"
    sources: ClassVar[tuple[str, ...]] = ("ticket",)

    def __init__(self, config: JiraConfig, executor: RateLimitedExecutor) -> None:
        """Initialize the Jira adapter.

        Args:
            config: Jira configuration.
            executor: Shared rate-limited executor.
        """
        super().__init__(executor)
        self._config = config

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client.

        Site URLs differ per credential, so the client has no base URL
        and every request is made with an absolute URL.
        """
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={
                    "Accept": "application/json",
                    "Content-Type": "application/json",
                },
                timeout=DEFAULT_HTTP_TIMEOUT_SECONDS,
            )
        return self._client

    def _api_base(self, credential: Credential) -> str:
        """Return the REST base URL for the credential's site.

        Raises:
            AuthError: If the credential carries no cloud id or base URL.
        """
        metadata = credential.site_metadata
        if metadata.get("base_url"):
            return f"{str(metadata['base_url']).rstrip('/')}{JIRA_API_BASE_PATH}"

        cloud_id = metadata.get("cloud_id")
        if not cloud_id:
            raise AuthError("Jira credential has no cloud_id", self.name)
        gateway = self._config.api_base_url.rstrip("/")
        return f"{gateway}/ex/jira/{cloud_id}{JIRA_API_BASE_PATH}"

    def _site_url(self, credential: Credential) -> str:
        metadata = credential.site_metadata
        return str(metadata.get("site_url") or metadata.get("base_url") or "")

    # =========================================================================
    # BULK SYNC
    # =========================================================================

    async def _search_page(
        self,
        credential: Credential,
        jql: str,
        next_page_token: str | None,
    ) -> dict[str, Any]:
        """Fetch one page of the enhanced JQL search."""
        body: dict[str, Any] = {
            "jql": jql,
            "maxResults": min(self._config.page_size, self._config.max_issues),
            "fields": list(JIRA_SEARCH_FIELDS),
        }
        if next_page_token:
            body["nextPageToken"] = next_page_token

        response = await self._request(
            credential,
            "POST",
            f"{self._api_base(credential)}/search/jql",
            json=body,
        )
        data: dict[str, Any] = response.json()
        return data

    def fetch_source(
        self,
        credential: Credential,
        source: str,
        since: datetime,
        report: FetchReport,
    ) -> AsyncIterator[RawItem]:
        """Stream tickets updated since `since`."""
        if source != "ticket":
            raise ValueError(f"Unknown source for {self.name}: {source}")
        return self._tickets(credential, since, report)

    def _fallback_days(self, since: datetime) -> int:
        elapsed = (datetime.now(UTC) - since).total_seconds() / 86400
        return max(1, min(self._config.fallback_window_days, math.ceil(elapsed)))

    async def _tickets(
        self,
        credential: Credential,
        since: datetime,
        report: FetchReport,
    ) -> AsyncIterator[RawItem]:
        start_time = time.monotonic()
        jql = PRIMARY_JQL.format(since=f"{since.astimezone(UTC):%Y-%m-%d %H:%M}")

        try:
            page = await self._search_page(credential, jql, None)
        except (AuthError, DeprecatedEndpointError) as e:
            jql = FALLBACK_JQL.format(days=self._fallback_days(since))
            logger.warning(
                "Primary Jira query rejected, using fallback query",
                extra={"status_code": e.status_code, "jql": jql},
            )
            report.increment("fallback_queries")
            page = await self._search_page(credential, jql, None)

        site_url = self._site_url(credential)
        seen: set[str] = set()
        while True:
            for issue in page.get("issues") or []:
                if not isinstance(issue, dict):
                    continue
                raw = RawTicket(data=issue, site_url=site_url)
                source_id = source_id_of(raw)
                if not source_id or source_id in seen:
                    continue
                seen.add(source_id)
                yield raw
                if len(seen) >= self._config.max_issues:
                    return

            token = page.get("nextPageToken")
            if page.get("isLast") or not token:
                break
            page = await self._search_page(credential, jql, token)

        logger.info(
            "Jira search complete",
            extra={
                "count": len(seen),
                "jql": jql,
                "duration_ms": int((time.monotonic() - start_time) * 1000),
            },
        )

    # =========================================================================
    # ON-DEMAND DETAIL
    # =========================================================================

    async def get_issue_detail(self, credential: Credential, key: str) -> TicketDetail:
        """Fetch rich detail for one ticket.

        Fetches the issue (with changelog) and its comments in parallel.
        The issue is required; comments degrade to an empty list.

        Args:
            credential: Credential of the owner.
            key: Jira issue key (e.g., 'PROJ-123').

        Returns:
            TicketDetail for the issue.
        """
        start_time = time.monotonic()
        base = self._api_base(credential)

        issue_result, comments_result = await self._executor.gather(
            self._request(
                credential,
                "GET",
                f"{base}/issue/{key}",
                params={
                    "fields": (
                        "summary,status,description,attachment,subtasks,"
                        f"issuelinks,watches,{JIRA_SPRINT_FIELD}"
                    ),
                    "expand": "changelog",
                },
            ),
            self._request(
                credential,
                "GET",
                f"{base}/issue/{key}/comment",
                params={"maxResults": 50, "orderBy": "-created"},
            ),
        )

        if isinstance(issue_result, BaseException):
            raise issue_result
        if isinstance(comments_result, AuthError):
            raise comments_result

        comments: list[TicketComment] = []
        if isinstance(comments_result, httpx.Response):
            comments = [
                self._parse_comment(c) for c in comments_result.json().get("comments", [])
            ]
        elif not isinstance(comments_result, SkippableError):
            logger.warning(
                "Failed to fetch Jira comments",
                extra={"key": key, "error": str(comments_result)},
            )

        data = issue_result.json()
        fields = data.get("fields") or {}
        blocks, blocked_by, relates = self._parse_links(fields.get("issuelinks") or [])

        detail = TicketDetail(
            key=data.get("key", key),
            summary=fields.get("summary") or "",
            status=(fields.get("status") or {}).get("name", ""),
            description=adf_to_text(fields.get("description")),
            comments=comments,
            attachments=[a.get("filename", "") for a in fields.get("attachment") or []],
            changelog=self._parse_changelog(data.get("changelog") or {}),
            subtasks=[self._linked(s, "subtask") for s in fields.get("subtasks") or []],
            blocks=blocks,
            blocked_by=blocked_by,
            relates=relates,
            watchers=(fields.get("watches") or {}).get("watchCount", 0),
            sprint=self._sprint_name(fields.get(JIRA_SPRINT_FIELD)),
        )

        logger.info(
            "Fetched Jira issue detail",
            extra={
                "key": key,
                "comment_count": len(comments),
                "duration_ms": int((time.monotonic() - start_time) * 1000),
            },
        )
        return detail

    def _parse_comment(self, comment_data: dict[str, Any]) -> TicketComment:
        author = comment_data.get("author") or {}
        return TicketComment(
            author=author.get("displayName", "Unknown"),
            body=adf_to_text(comment_data.get("body")),
            created=parse_datetime(comment_data.get("created")),
        )

    def _linked(self, issue: dict[str, Any], link_type: str) -> LinkedTicket:
        fields = issue.get("fields") or {}
        return LinkedTicket(
            key=issue.get("key", ""),
            summary=fields.get("summary", ""),
            status=(fields.get("status") or {}).get("name", ""),
            link_type=link_type,
        )

    def _parse_links(
        self,
        links: list[dict[str, Any]],
    ) -> tuple[list[LinkedTicket], list[LinkedTicket], list[LinkedTicket]]:
        """Split issue links into (blocks, blocked_by, relates)."""
        blocks: list[LinkedTicket] = []
        blocked_by: list[LinkedTicket] = []
        relates: list[LinkedTicket] = []

        for link in links:
            link_type = link.get("type") or {}
            is_blocking = link_type.get("name", "").lower() == "blocks"
            if "outwardIssue" in link:
                linked = self._linked(link["outwardIssue"], link_type.get("outward", "relates to"))
                (blocks if is_blocking else relates).append(linked)
            elif "inwardIssue" in link:
                linked = self._linked(link["inwardIssue"], link_type.get("inward", "relates to"))
                (blocked_by if is_blocking else relates).append(linked)

        return blocks, blocked_by, relates

    def _parse_changelog(self, changelog: dict[str, Any]) -> list[ChangelogEntry]:
        histories = changelog.get("histories") or []
        return [
            ChangelogEntry(
                author=(history.get("author") or {}).get("displayName", "Unknown"),
                created=parse_datetime(history.get("created")),
                changes=[
                    f"{item.get('field', '')}: {item.get('fromString') or ''} -> "
                    f"{item.get('toString') or ''}"
                    for item in history.get("items") or []
                ],
            )
            for history in histories[-JIRA_MAX_CHANGELOG_ENTRIES:]
        ]

    def _sprint_name(self, sprints: Any) -> str | None:
        """Pick the active sprint, else the most recent one."""
        if not isinstance(sprints, list) or not sprints:
            return None
        named = [s for s in sprints if isinstance(s, dict) and s.get("name")]
        active = [s for s in named if s.get("state") == "active"]
        chosen = (active or named or [None])[-1]
        return chosen.get("name") if chosen else None

    async def health_check(self, credential: Credential) -> bool:
        """Check whether the credential can read the current user.

        Returns:
            True if the token is accepted, False otherwise.
        """
        try:
            await self._request(credential, "GET", f"{self._api_base(credential)}/myself")
        except ProviderError as e:
            logger.warning("Jira health check failed", extra={"error": e.message})
            return False
        return True

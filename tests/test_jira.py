"""Tests for the Jira adapter."""

import json
import re
from datetime import UTC, datetime, timedelta

import pytest
from pytest_httpx import HTTPXMock

from contextsync.adapters.jira import JiraAdapter
from contextsync.exceptions import AuthError
from contextsync.executor import RateLimitedExecutor
from contextsync.models import Credential, FetchReport, JiraConfig, RawTicket

GATEWAY = "https://api.atlassian.com/ex/jira/cloud-1/rest/api/3"
BLOCKS = {"name": "Blocks", "inward": "is blocked by", "outward": "blocks"}
SEARCH_URL = f"{GATEWAY}/search/jql"


@pytest.fixture
def jira_adapter(executor: RateLimitedExecutor) -> JiraAdapter:
    """Create a test Jira adapter."""
    return JiraAdapter(JiraConfig(page_size=2, max_issues=10), executor)


@pytest.fixture
def credential() -> Credential:
    """Create a credential with gateway site metadata."""
    return Credential(
        access_token="jira-token",
        site_metadata={"cloud_id": "cloud-1", "site_url": "https://acme.atlassian.net"},
    )


def _issue(issue_id: str, key: str, status: str = "In Progress") -> dict:
    return {
        "id": issue_id,
        "key": key,
        "fields": {
            "summary": f"Summary of {key}",
            "status": {"name": status},
            "issuetype": {"name": "Story"},
            "reporter": {"displayName": "Jane Reporter"},
            "assignee": {"displayName": "Alex Chen"},
            "project": {"key": "PROJ", "name": "Project"},
            "description": {
                "type": "doc",
                "content": [
                    {"type": "paragraph", "content": [{"type": "text", "text": "Do the thing."}]}
                ],
            },
            "created": "2024-03-14T09:00:00.000+0000",
            "updated": "2024-03-18T14:30:00.000+0000",
        },
    }


class TestJiraTickets:
    """Tests for the ticket stream."""

    async def test_paginates_with_next_page_token(
        self,
        jira_adapter: JiraAdapter,
        credential: Credential,
        httpx_mock: HTTPXMock,
    ) -> None:
        """Test that pages are followed until isLast and duplicates are dropped."""
        httpx_mock.add_response(
            url=SEARCH_URL,
            method="POST",
            json={
                "issues": [_issue("1", "PROJ-1"), _issue("2", "PROJ-2")],
                "nextPageToken": "page-2",
                "isLast": False,
            },
        )
        httpx_mock.add_response(
            url=SEARCH_URL,
            method="POST",
            json={"issues": [_issue("2", "PROJ-2"), _issue("3", "PROJ-3")], "isLast": True},
        )

        since = datetime(2024, 3, 1, tzinfo=UTC)
        items = [
            item
            async for item in jira_adapter.fetch_source(credential, "ticket", since, FetchReport())
        ]

        assert [item.data["key"] for item in items] == ["PROJ-1", "PROJ-2", "PROJ-3"]
        assert all(isinstance(item, RawTicket) for item in items)

        first, second = httpx_mock.get_requests(url=SEARCH_URL)
        first_body = json.loads(first.content)
        assert "currentUser()" in first_body["jql"]
        assert 'updated >= "2024-03-01 00:00"' in first_body["jql"]
        assert "nextPageToken" not in first_body
        assert json.loads(second.content)["nextPageToken"] == "page-2"
        await jira_adapter.close()

    async def test_falls_back_when_search_endpoint_is_gone(
        self,
        jira_adapter: JiraAdapter,
        credential: Credential,
        httpx_mock: HTTPXMock,
    ) -> None:
        """Test that a 410 on the primary query switches to the relative-date query."""
        httpx_mock.add_response(
            url=SEARCH_URL,
            method="POST",
            status_code=410,
            json={"errorMessages": ["The requested API has been removed."]},
        )
        httpx_mock.add_response(
            url=SEARCH_URL,
            method="POST",
            json={"issues": [_issue("1", "PROJ-1")], "isLast": True},
        )

        report = FetchReport()
        since = datetime.now(UTC) - timedelta(days=30)
        items = [
            item async for item in jira_adapter.fetch_source(credential, "ticket", since, report)
        ]

        assert len(items) == 1
        assert report.details["fallback_queries"] == 1
        fallback_body = json.loads(httpx_mock.get_requests(url=SEARCH_URL)[1].content)
        assert fallback_body["jql"].startswith("updated >= -7d")
        await jira_adapter.close()

    async def test_fallback_window_shrinks_to_lookback(
        self,
        jira_adapter: JiraAdapter,
        credential: Credential,
        httpx_mock: HTTPXMock,
    ) -> None:
        """Test that the fallback never looks further back than requested."""
        httpx_mock.add_response(url=SEARCH_URL, method="POST", status_code=401, json={})
        httpx_mock.add_response(url=SEARCH_URL, method="POST", json={"issues": [], "isLast": True})

        since = datetime.now(UTC) - timedelta(days=2) + timedelta(hours=1)
        items = [
            item
            async for item in jira_adapter.fetch_source(credential, "ticket", since, FetchReport())
        ]

        assert items == []
        fallback_body = json.loads(httpx_mock.get_requests(url=SEARCH_URL)[1].content)
        assert fallback_body["jql"].startswith("updated >= -2d")
        await jira_adapter.close()

    async def test_fallback_auth_failure_propagates(
        self,
        jira_adapter: JiraAdapter,
        credential: Credential,
        httpx_mock: HTTPXMock,
    ) -> None:
        """Test that a rejected fallback query raises AuthError."""
        httpx_mock.add_response(url=SEARCH_URL, method="POST", status_code=401, json={})
        httpx_mock.add_response(url=SEARCH_URL, method="POST", status_code=401, json={})

        with pytest.raises(AuthError):
            async for _ in jira_adapter.fetch_source(
                credential, "ticket", datetime.now(UTC), FetchReport()
            ):
                pass
        await jira_adapter.close()

    async def test_credential_without_site_is_auth_error(
        self, jira_adapter: JiraAdapter
    ) -> None:
        """Test that a credential without cloud id or base URL cannot sync."""
        with pytest.raises(AuthError):
            async for _ in jira_adapter.fetch_source(
                Credential(access_token="t"), "ticket", datetime.now(UTC), FetchReport()
            ):
                pass

    def test_ticket_normalization(self, jira_adapter: JiraAdapter) -> None:
        """Test that a ticket maps to key title, browse URL and lowercased state."""
        context = jira_adapter.normalize(
            "alice",
            RawTicket(data=_issue("10001", "PROJ-123"), site_url="https://acme.atlassian.net"),
        )

        assert context.source_id == "10001"
        assert context.title == "PROJ-123: Summary of PROJ-123"
        assert context.external_url == "https://acme.atlassian.net/browse/PROJ-123"
        assert context.body == "Do the thing."
        assert context.attributes["state"] == "in progress"
        assert context.attributes["author"] == "Jane Reporter"
        assert context.created_at == datetime(2024, 3, 14, 9, 0, tzinfo=UTC)


class TestJiraDetail:
    """Tests for on-demand ticket detail."""

    async def test_issue_detail_parses_links_changelog_and_sprint(
        self,
        jira_adapter: JiraAdapter,
        credential: Credential,
        httpx_mock: HTTPXMock,
    ) -> None:
        """Test that links split by direction and the active sprint is chosen."""
        httpx_mock.add_response(
            url=re.compile(re.escape(f"{GATEWAY}/issue/PROJ-1?") + ".*"),
            json={
                "key": "PROJ-1",
                "fields": {
                    "summary": "Add retries",
                    "status": {"name": "In Progress"},
                    "issuelinks": [
                        {
                            "type": BLOCKS,
                            "outwardIssue": {"key": "PROJ-2", "fields": {"summary": "Downstream"}},
                        },
                        {
                            "type": BLOCKS,
                            "inwardIssue": {"key": "PROJ-0", "fields": {"summary": "Upstream"}},
                        },
                    ],
                    "watches": {"watchCount": 3},
                    "customfield_10020": [
                        {"name": "Sprint 1", "state": "closed"},
                        {"name": "Sprint 2", "state": "active"},
                    ],
                },
                "changelog": {
                    "histories": [
                        {
                            "author": {"displayName": "Alex Chen"},
                            "created": "2024-03-15T10:00:00.000+0000",
                            "items": [
                                {
                                    "field": "status",
                                    "fromString": "To Do",
                                    "toString": "In Progress",
                                }
                            ],
                        }
                    ]
                },
            },
        )
        httpx_mock.add_response(
            url=re.compile(re.escape(f"{GATEWAY}/issue/PROJ-1/comment?") + ".*"),
            status_code=404,
            json={"errorMessages": ["Not found"]},
        )

        detail = await jira_adapter.get_issue_detail(credential, "PROJ-1")

        assert detail.summary == "Add retries"
        assert [t.key for t in detail.blocks] == ["PROJ-2"]
        assert [t.key for t in detail.blocked_by] == ["PROJ-0"]
        assert detail.changelog[0].changes == ["status: To Do -> In Progress"]
        assert detail.sprint == "Sprint 2"
        assert detail.watchers == 3
        assert detail.comments == []
        await jira_adapter.close()

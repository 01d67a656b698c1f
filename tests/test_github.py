"""Tests for the GitHub adapter."""

import re
from datetime import UTC, datetime
from urllib.parse import unquote

import pytest
from pytest_httpx import HTTPXMock

from contextsync.adapters.github import GitHubAdapter
from contextsync.exceptions import AuthError
from contextsync.executor import RateLimitedExecutor
from contextsync.models import Credential, FetchReport, GitHubConfig, RawCommit, RawPullRequest

USER_URL = re.compile(r"https://api\.github\.com/user$")
SEARCH_URL = re.compile(r"https://api\.github\.com/search/issues\?.*")
REPOS_URL = re.compile(r"https://api\.github\.com/user/repos\?.*")

SINCE = datetime(2024, 3, 1, tzinfo=UTC)


@pytest.fixture
def github_adapter(executor: RateLimitedExecutor) -> GitHubAdapter:
    """Create a test GitHub adapter."""
    return GitHubAdapter(GitHubConfig(max_repos=3, commits_per_repo=10), executor)


@pytest.fixture
def credential() -> Credential:
    """Create a test credential."""
    return Credential(access_token="gh-token")


# Sample GitHub API responses
SAMPLE_PR = {
    "id": 1001,
    "number": 234,
    "title": "Refactor webhook handler to use Result pattern",
    "user": {"login": "octocat"},
    "state": "closed",
    "html_url": "https://github.com/org/payments/pull/234",
    "repository_url": "https://api.github.com/repos/org/payments",
    "created_at": "2024-03-15T10:00:00Z",
    "updated_at": "2024-03-16T14:00:00Z",
    "pull_request": {"merged_at": "2024-03-16T14:00:00Z"},
    "labels": [{"name": "backend"}],
    "body": "Implements the Result pattern for webhook handlers.",
}

SAMPLE_ISSUE = {
    "id": 2002,
    "number": 77,
    "title": "Webhook retries are not idempotent",
    "user": {"login": "someone"},
    "state": "open",
    "html_url": "https://github.com/org/payments/issues/77",
    "repository_url": "https://api.github.com/repos/org/payments",
    "created_at": "2024-03-10T10:00:00Z",
    "updated_at": "2024-03-12T10:00:00Z",
}

SAMPLE_COMMIT = {
    "sha": "abc123def456",
    "html_url": "https://github.com/org/payments/commit/abc123def456",
    "author": {"login": "octocat"},
    "commit": {
        "message": "Fix retry loop\n\nThe loop never backed off.",
        "author": {"name": "Octo Cat", "date": "2024-03-14T09:00:00Z"},
        "committer": {"date": "2024-03-14T09:05:00Z"},
    },
}


class TestGitHubSearchStreams:
    """Tests for the pull request, issue and review streams."""

    async def test_fetches_pull_requests_with_login_qualifier(
        self,
        github_adapter: GitHubAdapter,
        credential: Credential,
        httpx_mock: HTTPXMock,
    ) -> None:
        """Test the PR stream resolves the login and queries by author."""
        httpx_mock.add_response(url=USER_URL, json={"login": "octocat"})
        httpx_mock.add_response(url=SEARCH_URL, json={"total_count": 1, "items": [SAMPLE_PR]})

        items = [
            item
            async for item in github_adapter.fetch_source(
                credential, "code_pr", SINCE, FetchReport()
            )
        ]

        assert len(items) == 1
        assert isinstance(items[0], RawPullRequest)

        search_request = httpx_mock.get_requests(url=SEARCH_URL)[0]
        query = unquote(str(search_request.url)).replace("+", " ")
        assert "is:pr author:octocat updated:>=2024-03-01" in query
        assert search_request.headers["Authorization"] == "Bearer gh-token"

        await github_adapter.close()

    async def test_follows_link_pagination_and_deduplicates(
        self,
        github_adapter: GitHubAdapter,
        credential: Credential,
        httpx_mock: HTTPXMock,
    ) -> None:
        """Test that rel=next pages are followed and repeated ids are dropped."""
        second = {**SAMPLE_PR, "id": 1002, "number": 235}
        httpx_mock.add_response(url=USER_URL, json={"login": "octocat"})
        httpx_mock.add_response(
            url=SEARCH_URL,
            json={"items": [SAMPLE_PR]},
            headers={
                "Link": '<https://api.github.com/search/issues?q=x&page=2>; rel="next"'
            },
        )
        httpx_mock.add_response(url=SEARCH_URL, json={"items": [SAMPLE_PR, second]})

        items = [
            item
            async for item in github_adapter.fetch_source(
                credential, "code_pr", SINCE, FetchReport()
            )
        ]

        assert [item.data["id"] for item in items] == [1001, 1002]
        await github_adapter.close()

    async def test_issue_stream_excludes_pull_requests(
        self,
        github_adapter: GitHubAdapter,
        credential: Credential,
        httpx_mock: HTTPXMock,
    ) -> None:
        """Test that the issue stream drops items carrying pull_request."""
        httpx_mock.add_response(url=USER_URL, json={"login": "octocat"})
        httpx_mock.add_response(url=SEARCH_URL, json={"items": [SAMPLE_PR, SAMPLE_ISSUE]})

        items = [
            item
            async for item in github_adapter.fetch_source(
                credential, "code_issue", SINCE, FetchReport()
            )
        ]

        assert [item.data["id"] for item in items] == [2002]
        await github_adapter.close()

    async def test_review_ids_are_prefixed(
        self,
        github_adapter: GitHubAdapter,
        credential: Credential,
        httpx_mock: HTTPXMock,
    ) -> None:
        """Test that review-requested PRs normalize with a review_ id."""
        httpx_mock.add_response(url=USER_URL, json={"login": "octocat"})
        httpx_mock.add_response(url=SEARCH_URL, json={"items": [SAMPLE_PR]})

        items = [
            item
            async for item in github_adapter.fetch_source(
                credential, "code_review", SINCE, FetchReport()
            )
        ]
        context = github_adapter.normalize("alice", items[0])

        assert context.source == "code_review"
        assert context.source_id == "review_1001"
        assert context.title.startswith("Review: ")
        assert context.attributes["state"] == "merged"
        await github_adapter.close()

    async def test_unauthorized_raises_auth_error(
        self,
        github_adapter: GitHubAdapter,
        credential: Credential,
        httpx_mock: HTTPXMock,
    ) -> None:
        """Test that a rejected token surfaces as AuthError without retries."""
        httpx_mock.add_response(url=USER_URL, status_code=401, json={"message": "Bad credentials"})

        with pytest.raises(AuthError, match="Bad credentials"):
            async for _ in github_adapter.fetch_source(
                credential, "code_pr", SINCE, FetchReport()
            ):
                pass

        assert len(httpx_mock.get_requests()) == 1
        await github_adapter.close()

    async def test_rate_limit_waits_until_reset(
        self,
        github_adapter: GitHubAdapter,
        credential: Credential,
        httpx_mock: HTTPXMock,
        sleeper,
    ) -> None:
        """Test that an exhausted primary rate limit is waited out, then retried."""
        httpx_mock.add_response(url=USER_URL, json={"login": "octocat"})
        httpx_mock.add_response(
            url=SEARCH_URL,
            status_code=403,
            headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "0"},
            json={"message": "API rate limit exceeded"},
        )
        httpx_mock.add_response(url=SEARCH_URL, json={"items": [SAMPLE_PR]})

        items = [
            item
            async for item in github_adapter.fetch_source(
                credential, "code_pr", SINCE, FetchReport()
            )
        ]

        assert len(items) == 1
        assert sleeper.delays == [1.0]
        await github_adapter.close()


class TestGitHubCommits:
    """Tests for the commit stream."""

    async def test_commits_isolate_repository_failures(
        self,
        github_adapter: GitHubAdapter,
        credential: Credential,
        httpx_mock: HTTPXMock,
    ) -> None:
        """Test that a missing repository is skipped and a bad one is recorded."""
        httpx_mock.add_response(url=USER_URL, json={"login": "octocat"})
        httpx_mock.add_response(
            url=REPOS_URL,
            json=[
                {"full_name": "org/payments", "default_branch": "main",
                 "pushed_at": "2024-03-20T00:00:00Z"},
                {"full_name": "org/gone", "pushed_at": "2024-03-19T00:00:00Z"},
                {"full_name": "org/broken", "pushed_at": "2024-03-18T00:00:00Z"},
            ],
        )
        httpx_mock.add_response(
            url=re.compile(r".*/repos/org/payments/commits\?.*"), json=[SAMPLE_COMMIT]
        )
        httpx_mock.add_response(
            url=re.compile(r".*/repos/org/gone/commits\?.*"),
            status_code=404,
            json={"message": "Not Found"},
        )
        httpx_mock.add_response(
            url=re.compile(r".*/repos/org/broken/commits\?.*"),
            status_code=422,
            json={"message": "Validation Failed"},
        )

        report = FetchReport()
        items = [
            item
            async for item in github_adapter.fetch_source(credential, "code_commit", SINCE, report)
        ]

        assert len(items) == 1
        assert isinstance(items[0], RawCommit)
        assert items[0].repo == "org/payments"
        assert report.skipped == 1
        assert report.errors == ["Repository org/broken: Validation Failed"]
        assert report.details == {"repositories": 1}

        commit_request = httpx_mock.get_requests(
            url=re.compile(r".*/repos/org/payments/commits\?.*")
        )[0]
        assert commit_request.url.params["author"] == "octocat"
        assert commit_request.url.params["since"] == "2024-03-01T00:00:00Z"
        await github_adapter.close()

    async def test_stops_at_repositories_pushed_before_window(
        self,
        github_adapter: GitHubAdapter,
        credential: Credential,
        httpx_mock: HTTPXMock,
    ) -> None:
        """Test that repositories pushed before the window are not scanned."""
        httpx_mock.add_response(url=USER_URL, json={"login": "octocat"})
        httpx_mock.add_response(
            url=REPOS_URL,
            json=[{"full_name": "org/old", "pushed_at": "2023-01-01T00:00:00Z"}],
        )

        items = [
            item
            async for item in github_adapter.fetch_source(
                credential, "code_commit", SINCE, FetchReport()
            )
        ]

        assert items == []
        await github_adapter.close()

    def test_commit_normalization(self, github_adapter: GitHubAdapter) -> None:
        """Test that a commit maps to a headline title and sha id."""
        context = github_adapter.normalize(
            "alice", RawCommit(data=SAMPLE_COMMIT, repo="org/payments", branch="main")
        )

        assert context.source_id == "abc123def456"
        assert context.title == "Commit: Fix retry loop"
        assert context.attributes["repo"] == "org/payments"
        assert context.attributes["author"] == "octocat"


class TestGitHubDetail:
    """Tests for on-demand pull request detail."""

    @pytest.mark.httpx_mock(assert_all_responses_were_requested=False)
    async def test_detail_degrades_failed_sub_calls(
        self,
        github_adapter: GitHubAdapter,
        credential: Credential,
        httpx_mock: HTTPXMock,
    ) -> None:
        """Test that unavailable parts of a PR degrade to empty lists."""
        base = r"https://api\.github\.com/repos/org/payments"
        httpx_mock.add_response(
            url=re.compile(base + r"/pulls/234$"),
            json={
                "title": "Refactor webhook handler",
                "state": "closed",
                "merged": True,
                "head": {"sha": "abc123"},
                "additions": 10,
                "deletions": 2,
                "changed_files": 1,
            },
        )
        httpx_mock.add_response(
            url=re.compile(base + r"/pulls/234/files\?.*"),
            json=[{"filename": "src/handler.py", "status": "modified", "additions": 10}],
        )
        httpx_mock.add_response(
            url=re.compile(base + r"/pulls/234/reviews\?.*"),
            json=[{"user": {"login": "reviewer"}, "state": "APPROVED", "body": "LGTM"}],
        )
        httpx_mock.add_response(url=re.compile(base + r"/pulls/234/comments\?.*"), json=[])
        httpx_mock.add_response(
            url=re.compile(base + r"/commits/abc123/check-runs\?.*"),
            status_code=403,
            json={"message": "Resource not accessible"},
        )
        httpx_mock.add_response(
            url=re.compile(base + r"/commits/abc123/statuses\?.*"),
            json=[{"context": "ci", "state": "success"}],
        )

        detail = await github_adapter.get_pull_request_detail(credential, "org/payments", 234)

        assert detail.state == "merged"
        assert [f.filename for f in detail.files] == ["src/handler.py"]
        assert detail.reviews[0].state == "APPROVED"
        assert detail.check_runs == []
        assert detail.statuses[0].conclusion == "success"
        await github_adapter.close()

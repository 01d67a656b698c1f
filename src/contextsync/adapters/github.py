"""GitHub adapter for pull requests, issues, reviews and commits.

Uses the GitHub REST API v3 via httpx. Bulk sync runs four independent
streams for the authenticated user:

    code_pr      is:pr author:{login} updated:>={since}
    code_issue   is:issue involves:{login} updated:>={since}
    code_review  is:pr reviewed-by:{login} updated:>={since}
    code_commit  recently pushed repositories, then commits by {login}

Every stream follows `Link: rel="next"` pagination and deduplicates by
source id. Rich pull request detail (diff stats, check runs, review
threads) is a separate on-demand call.

Example:
    adapter = GitHubAdapter(GitHubConfig(), executor)
    async for raw in adapter.fetch_source(credential, "code_pr", since, report):
        context = adapter.normalize("alice", raw)
"""

from __future__ import annotations

import time
from datetime import UTC
from typing import TYPE_CHECKING, Any, ClassVar

import httpx

from contextsync.adapters.base import ProviderAdapter, parse_retry_after
from contextsync.cache import TTLCache
from contextsync.constants import (
    ADAPTER_GITHUB,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    GITHUB_API_VERSION,
    GITHUB_REPO_AFFILIATION,
)
from contextsync.exceptions import AuthError, ProviderError, SkippableError, ThrottledError
from contextsync.logging import get_logger
from contextsync.models import (
    CheckRun,
    GitHubConfig,
    PullRequestDetail,
    PullRequestFile,
    PullRequestReview,
    RawCommit,
    RawIssue,
    RawPullRequest,
    RawReview,
    ReviewComment,
)
from contextsync.normalizer import source_id_of
from contextsync.utils import parse_datetime

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from datetime import datetime

    from contextsync.executor import RateLimitedExecutor
    from contextsync.models import Credential, FetchReport, RawItem

logger = get_logger(__name__)

SearchVariant = type[RawPullRequest] | type[RawIssue] | type[RawReview]


class GitHubAdapter(ProviderAdapter):
    """Code-hosting adapter backed by the GitHub REST API.

    Class Attributes:
        name: Adapter identifier ("github").
        provider: Provider type ("github").
        sources: code_pr, code_issue, code_review, code_commit.
    """

    name: ClassVar[str] = ADAPTER_GITHUB
    provider: ClassVar[str] = "github"
    sources: ClassVar[tuple[str, ...]] = ("code_pr", "code_issue", "code_review", "code_commit")

    def __init__(self, config: GitHubConfig, executor: RateLimitedExecutor) -> None:
        """Initialize the GitHub adapter.

        Args:
            config: GitHub configuration.
            executor: Shared rate-limited executor.
        """
        super().__init__(executor)
        self._config = config
        self._logins = TTLCache(ttl=3600, max_size=100)

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client with GitHub headers."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._config.api_base_url.rstrip("/"),
                headers={
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": GITHUB_API_VERSION,
                },
                timeout=DEFAULT_HTTP_TIMEOUT_SECONDS,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client and forget resolved logins."""
        await super().close()
        self._logins.clear()

    def _raise_for_status(self, response: httpx.Response) -> None:
        """Recognize primary and secondary rate limits before generic mapping.

        GitHub signals an exhausted primary limit with 403/429 and
        `X-RateLimit-Remaining: 0`; the wait is derived from
        `X-RateLimit-Reset`. Secondary limits come with `Retry-After`.
        """
        status = response.status_code
        if status in (403, 429):
            if response.headers.get("X-RateLimit-Remaining") == "0":
                try:
                    reset = float(response.headers.get("X-RateLimit-Reset", "0"))
                except ValueError:
                    reset = 0.0
                raise ThrottledError(
                    "GitHub rate limit exhausted",
                    self.name,
                    retry_after=max(1.0, reset - time.time()),
                    status_code=status,
                )
            if "Retry-After" in response.headers:
                raise ThrottledError(
                    "GitHub secondary rate limit",
                    self.name,
                    retry_after=parse_retry_after(response),
                    status_code=status,
                )
        super()._raise_for_status(response)

    # =========================================================================
    # PAGINATION
    # =========================================================================

    async def _paginate(
        self,
        credential: Credential,
        url: str,
        params: dict[str, Any],
        items_key: str | None = None,
        limit: int | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield items page by page, following `Link: rel="next"`.

        Args:
            credential: Credential of the owner.
            url: First page path.
            params: Query parameters of the first page; next links carry their own.
            items_key: Key holding the item list, None when the body is the list.
            limit: Stop after this many items.
        """
        next_url: str | None = url
        next_params: dict[str, Any] | None = params
        yielded = 0

        while next_url:
            response = await self._request(credential, "GET", next_url, params=next_params)
            data = response.json()
            items = data.get(items_key, []) if items_key and isinstance(data, dict) else data

            for item in items if isinstance(items, list) else []:
                if isinstance(item, dict):
                    yield item
                    yielded += 1
                    if limit is not None and yielded >= limit:
                        return

            next_url = response.links.get("next", {}).get("url")
            next_params = None

    async def _login(self, credential: Credential) -> str:
        """Resolve (and cache) the login of the credential's user."""
        cached = self._logins.get(credential.access_token)
        if cached is not None:
            return str(cached)

        response = await self._request(credential, "GET", "/user")
        login = str(response.json().get("login", ""))
        if not login:
            raise AuthError("GitHub returned no login for credential", self.name)
        self._logins.set(credential.access_token, login)
        return login

    # =========================================================================
    # BULK SYNC STREAMS
    # =========================================================================

    def fetch_source(
        self,
        credential: Credential,
        source: str,
        since: datetime,
        report: FetchReport,
    ) -> AsyncIterator[RawItem]:
        """Stream one of the four GitHub sources."""
        if source == "code_pr":
            return self._search(credential, "is:pr author:{login}", since, RawPullRequest)
        if source == "code_issue":
            return self._search(
                credential,
                "is:issue involves:{login}",
                since,
                RawIssue,
                exclude_pull_requests=True,
            )
        if source == "code_review":
            return self._search(credential, "is:pr reviewed-by:{login}", since, RawReview)
        if source == "code_commit":
            return self._commits(credential, since, report)
        raise ValueError(f"Unknown source for {self.name}: {source}")

    async def _search(
        self,
        credential: Credential,
        qualifiers: str,
        since: datetime,
        variant: SearchVariant,
        exclude_pull_requests: bool = False,
    ) -> AsyncIterator[RawItem]:
        """Run one issue-search query and yield deduplicated raw items."""
        login = await self._login(credential)
        query = f"{qualifiers.format(login=login)} updated:>={since.astimezone(UTC):%Y-%m-%d}"
        params = {
            "q": query,
            "per_page": self._config.per_page,
            "sort": "updated",
            "order": "desc",
        }

        start_time = time.monotonic()
        seen: set[str] = set()
        async for item in self._paginate(credential, "/search/issues", params, items_key="items"):
            if exclude_pull_requests and "pull_request" in item:
                continue
            raw = variant(data=item)
            source_id = source_id_of(raw)
            if not source_id or source_id in seen:
                continue
            seen.add(source_id)
            yield raw

        logger.info(
            "GitHub search complete",
            extra={
                "query": query,
                "count": len(seen),
                "duration_ms": int((time.monotonic() - start_time) * 1000),
            },
        )

    async def _commits(
        self,
        credential: Credential,
        since: datetime,
        report: FetchReport,
    ) -> AsyncIterator[RawItem]:
        """Enumerate recently pushed repositories and yield the user's commits.

        Repository-level failures are isolated: 403/404/409 (no access,
        gone, empty repository) are counted as skips, anything else but
        an auth failure is recorded in the report and the scan moves on.
        """
        if self._config.max_repos == 0:
            return

        login = await self._login(credential)
        since_utc = since.astimezone(UTC)
        repo_params = {
            "sort": "pushed",
            "per_page": min(self._config.per_page, self._config.max_repos),
            "affiliation": GITHUB_REPO_AFFILIATION,
        }
        repos = [
            repo
            async for repo in self._paginate(
                credential,
                "/user/repos",
                repo_params,
                limit=self._config.max_repos,
            )
        ]

        seen: set[str] = set()
        for repo in repos:
            full_name = str(repo.get("full_name") or "")
            if not full_name:
                continue

            # Sorted by push time: nothing older can hold new commits
            pushed_at = parse_datetime(repo.get("pushed_at"))
            if pushed_at is not None and pushed_at < since_utc:
                break

            commit_params = {
                "author": login,
                "since": f"{since_utc:%Y-%m-%dT%H:%M:%SZ}",
                "per_page": min(self._config.per_page, self._config.commits_per_repo),
            }
            try:
                async for commit in self._paginate(
                    credential,
                    f"/repos/{full_name}/commits",
                    commit_params,
                    limit=self._config.commits_per_repo,
                ):
                    raw = RawCommit(
                        data=commit,
                        repo=full_name,
                        branch=repo.get("default_branch"),
                    )
                    source_id = source_id_of(raw)
                    if not source_id or source_id in seen:
                        continue
                    seen.add(source_id)
                    yield raw
                report.increment("repositories")
            except AuthError:
                raise
            except SkippableError as e:
                report.skipped += 1
                logger.debug(
                    "Skipping repository",
                    extra={"repo": full_name, "status_code": e.status_code},
                )
            except ProviderError as e:
                report.errors.append(f"Repository {full_name}: {e.message}")
                logger.warning(
                    "Failed to list commits",
                    extra={"repo": full_name, "error": e.message},
                )

    # =========================================================================
    # ON-DEMAND DETAIL
    # =========================================================================

    async def _get_json(self, credential: Credential, url: str, **params: Any) -> Any:
        response = await self._request(credential, "GET", url, params=params or None)
        return response.json()

    def _degrade(self, result: Any, label: str, default: Any) -> Any:
        """Unpack one gathered sub-call; expected failures degrade to default."""
        if isinstance(result, AuthError):
            raise result
        if isinstance(result, SkippableError):
            return default
        if isinstance(result, BaseException):
            logger.warning(
                "Pull request detail sub-call failed",
                extra={"part": label, "error": str(result)},
            )
            return default
        return result

    async def get_pull_request_detail(
        self,
        credential: Credential,
        repo: str,
        number: int,
    ) -> PullRequestDetail:
        """Fetch rich detail for one pull request.

        The pull request itself is required; files, reviews, review comments,
        check runs and commit statuses are fetched in parallel and degrade to
        empty lists when unavailable.

        Args:
            credential: Credential of the owner.
            repo: Repository full name ("owner/name").
            number: Pull request number.

        Returns:
            PullRequestDetail assembled from all sub-calls.
        """
        start_time = time.monotonic()
        pr = await self._get_json(credential, f"/repos/{repo}/pulls/{number}")
        head_sha = (pr.get("head") or {}).get("sha")
        base = f"/repos/{repo}"

        results = await self._executor.gather(
            self._get_json(credential, f"{base}/pulls/{number}/files", per_page=100),
            self._get_json(credential, f"{base}/pulls/{number}/reviews", per_page=100),
            self._get_json(credential, f"{base}/pulls/{number}/comments", per_page=100),
            self._get_json(credential, f"{base}/commits/{head_sha}/check-runs", per_page=100)
            if head_sha
            else _empty({}),
            self._get_json(credential, f"{base}/commits/{head_sha}/statuses", per_page=100)
            if head_sha
            else _empty([]),
        )
        files = self._degrade(results[0], "files", [])
        reviews = self._degrade(results[1], "reviews", [])
        comments = self._degrade(results[2], "comments", [])
        checks = self._degrade(results[3], "check_runs", {})
        statuses = self._degrade(results[4], "statuses", [])

        state = "merged" if pr.get("merged") or pr.get("merged_at") else pr.get("state", "open")

        detail = PullRequestDetail(
            repo=repo,
            number=number,
            title=pr.get("title") or "",
            state=state,
            head_sha=head_sha,
            additions=pr.get("additions") or 0,
            deletions=pr.get("deletions") or 0,
            changed_files=pr.get("changed_files") or 0,
            files=[
                PullRequestFile(
                    filename=f.get("filename", ""),
                    status=f.get("status", "modified"),
                    additions=f.get("additions", 0),
                    deletions=f.get("deletions", 0),
                )
                for f in files
            ],
            reviews=[
                PullRequestReview(
                    author=(r.get("user") or {}).get("login", "unknown"),
                    state=r.get("state", ""),
                    body=r.get("body") or "",
                    submitted_at=parse_datetime(r.get("submitted_at")),
                )
                for r in reviews
            ],
            review_comments=[
                ReviewComment(
                    author=(c.get("user") or {}).get("login", "unknown"),
                    body=c.get("body") or "",
                    path=c.get("path"),
                    line=c.get("line"),
                    created_at=parse_datetime(c.get("created_at")),
                )
                for c in comments
            ],
            check_runs=[
                CheckRun(
                    name=run.get("name", ""),
                    status=run.get("status", ""),
                    conclusion=run.get("conclusion"),
                    url=run.get("html_url"),
                )
                for run in checks.get("check_runs", [])
            ],
            statuses=[
                CheckRun(
                    name=s.get("context", ""),
                    status=s.get("state", ""),
                    conclusion=s.get("state"),
                    url=s.get("target_url"),
                )
                for s in statuses
            ],
            requested_reviewers=[
                r.get("login", "") for r in pr.get("requested_reviewers") or []
            ],
        )

        logger.info(
            "Fetched pull request detail",
            extra={
                "repo": repo,
                "number": number,
                "duration_ms": int((time.monotonic() - start_time) * 1000),
            },
        )
        return detail

    async def health_check(self, credential: Credential) -> bool:
        """Check if the GitHub token is valid.

        Returns:
            True if token is valid, False otherwise.
        """
        try:
            await self._request(credential, "GET", "/user")
        except ProviderError as e:
            logger.warning("GitHub health check failed", extra={"error": e.message})
            return False
        return True


async def _empty(value: Any) -> Any:
    return value

"""Tests for the sync orchestrator."""

import asyncio
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from contextsync.adapters.base import ProviderAdapter
from contextsync.exceptions import (
    AuthError,
    IntegrationNotConnectedError,
    InvalidRequestError,
    TransientError,
)
from contextsync.executor import RateLimitedExecutor
from contextsync.models import (
    Credential,
    FetchReport,
    RawIssue,
    RawItem,
    RawPullRequest,
    RawTicket,
    SyncConfig,
)
from contextsync.storage import ContextStore
from contextsync.sync import SyncOrchestrator
from contextsync.upsert import UpsertLayer


def _pr(item_id: int) -> RawPullRequest:
    return RawPullRequest(
        data={
            "id": item_id,
            "number": item_id,
            "title": f"PR {item_id}",
            "repository_url": "https://api.github.com/repos/acme/api",
            "user": {"login": "alice"},
            "created_at": "2024-03-18T09:00:00Z",
            "updated_at": "2024-03-19T09:00:00Z",
        }
    )


def _issue(item_id: int) -> RawIssue:
    return RawIssue(data={**_pr(item_id).data, "title": f"Issue {item_id}"})


def _ticket(item_id: int) -> RawTicket:
    return RawTicket(
        data={
            "id": str(item_id),
            "key": f"PROJ-{item_id}",
            "fields": {"summary": "Ticket", "status": {"name": "Open"}},
        }
    )


class FakeAdapter(ProviderAdapter):
    """Adapter serving canned items per source, optionally failing after them."""

    name = "fake"
    provider = "github"
    sources = ("code_pr", "code_issue")

    def __init__(
        self,
        executor: RateLimitedExecutor,
        provider: str = "github",
        sources: tuple[str, ...] = ("code_pr", "code_issue"),
        items: dict[str, list[RawItem]] | None = None,
        failures: dict[str, Exception] | None = None,
        report_errors: dict[str, list[str]] | None = None,
    ) -> None:
        super().__init__(executor)
        self.provider = provider
        self.name = provider
        self.sources = sources
        self.items = items or {}
        self.failures = failures or {}
        self.report_errors = report_errors or {}
        self.calls: list[tuple[str, datetime]] = []

    def _get_client(self) -> httpx.AsyncClient:
        raise NotImplementedError

    def fetch_source(
        self,
        credential: Credential,
        source: str,
        since: datetime,
        report: FetchReport,
    ) -> AsyncIterator[RawItem]:
        self.calls.append((source, since))
        return self._stream(source, report)

    async def _stream(self, source: str, report: FetchReport) -> AsyncIterator[RawItem]:
        for item in self.items.get(source, []):
            await asyncio.sleep(0)
            yield item
        for error in self.report_errors.get(source, []):
            report.errors.append(error)
            report.skipped += 1
        if source in self.failures:
            raise self.failures[source]

    async def health_check(self, credential: Credential) -> bool:
        return True


class FakeCredentials:
    """CredentialProvider over a fixed set of connected providers."""

    def __init__(self, *providers: str) -> None:
        self.providers = set(providers)

    async def get_active_credential(self, owner: str, provider: str) -> Credential | None:
        if provider not in self.providers:
            return None
        return Credential(access_token=f"{provider}-token")


class Clock:
    """Mutable clock for cool-down tests."""

    def __init__(self) -> None:
        self.now = datetime(2024, 3, 20, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock()


def _orchestrator(store, executor, clock, adapters, connected=("github", "jira"), **config):
    return SyncOrchestrator(
        store,
        {adapter.provider: adapter for adapter in adapters},
        FakeCredentials(*connected),
        UpsertLayer(store, executor),
        SyncConfig(**config),
        clock=clock,
    )


class TestFullSync:
    """Tests for sync_all."""

    async def test_counts_per_source_and_sync_state(
        self, store: ContextStore, executor: RateLimitedExecutor, clock: Clock
    ) -> None:
        """Test that every source of every connected adapter is synced."""
        github = FakeAdapter(executor, items={"code_pr": [_pr(1), _pr(2), _pr(3)]})
        jira = FakeAdapter(
            executor, provider="jira", sources=("ticket",), items={"ticket": [_ticket(7)]}
        )
        orchestrator = _orchestrator(store, executor, clock, [github, jira], batch_size=2)

        result = await orchestrator.sync_all("alice")

        assert result.counts == {"code_pr": 3, "code_issue": 0, "ticket": 1}
        assert result.total == 4
        assert result.errors == []
        assert result.days_back == 30
        assert github.calls[0][1] == clock.now - timedelta(days=30)
        assert await store.count("alice") == 4
        assert await store.get_last_sync("alice") == clock.now

    async def test_resync_is_idempotent(
        self, store: ContextStore, executor: RateLimitedExecutor, clock: Clock
    ) -> None:
        github = FakeAdapter(executor, items={"code_pr": [_pr(1), _pr(2)]})
        orchestrator = _orchestrator(store, executor, clock, [github])

        await orchestrator.sync_all("alice", days_back=7)
        second = await orchestrator.sync_all("alice", days_back=7)

        assert second.counts["code_pr"] == 2
        assert await store.count("alice") == 2

    async def test_partial_failure_keeps_other_sources(
        self, store: ContextStore, executor: RateLimitedExecutor, clock: Clock
    ) -> None:
        """Test that a failing source keeps its fetched items and records the error."""
        github = FakeAdapter(
            executor,
            items={"code_pr": [_pr(1)], "code_issue": [_issue(10), _issue(11)]},
            failures={"code_issue": TransientError("search unavailable", "github")},
            report_errors={"code_pr": ["Repository acme/broken: Validation Failed"]},
        )
        orchestrator = _orchestrator(store, executor, clock, [github])

        result = await orchestrator.sync_all("alice")

        assert result.counts == {"code_pr": 1, "code_issue": 2}
        assert "code_issue: search unavailable" in result.errors
        assert "Repository acme/broken: Validation Failed" in result.errors
        by_source = {source.source: source for source in result.sources}
        assert by_source["code_issue"].aborted is True
        assert by_source["code_pr"].skipped == 1
        assert await store.get_last_sync("alice") == clock.now

    async def test_auth_failure_aborts_source(
        self, store: ContextStore, executor: RateLimitedExecutor, clock: Clock
    ) -> None:
        """Test that a rejected credential aborts the source and leaves SyncState alone."""
        jira = FakeAdapter(
            executor,
            provider="jira",
            sources=("ticket",),
            failures={"ticket": AuthError("token revoked", "jira", status_code=401)},
        )
        orchestrator = _orchestrator(store, executor, clock, [jira])

        result = await orchestrator.sync_all("alice")

        assert result.total == 0
        assert result.errors == ["ticket: integration not connected (token revoked)"]
        assert result.completed_any is False
        assert await store.get_last_sync("alice") is None

    async def test_unexpected_error_is_contained(
        self, store: ContextStore, executor: RateLimitedExecutor, clock: Clock
    ) -> None:
        github = FakeAdapter(
            executor, items={"code_pr": [_pr(1)]}, failures={"code_issue": KeyError("oops")}
        )
        orchestrator = _orchestrator(store, executor, clock, [github])

        result = await orchestrator.sync_all("alice")

        assert result.counts["code_pr"] == 1
        assert any(error.startswith("code_issue:") for error in result.errors)

    async def test_malformed_timestamp_degrades(
        self, store: ContextStore, executor: RateLimitedExecutor, clock: Clock
    ) -> None:
        """Test that an out-of-range epoch falls back instead of failing the sync."""
        broken = RawPullRequest(data={"id": 99, "created_at": "1e400", "updated_at": 1e20})
        github = FakeAdapter(
            executor, items={"code_pr": [broken], "code_issue": [_issue(10)]}
        )
        orchestrator = _orchestrator(store, executor, clock, [github])

        result = await orchestrator.sync_all("alice")

        assert result.counts == {"code_pr": 1, "code_issue": 1}
        assert result.errors == []
        assert await store.find("alice", "code_pr", "99") is not None
        assert await store.get_last_sync("alice") == clock.now

    async def test_normalize_failure_is_per_item(
        self, store: ContextStore, executor: RateLimitedExecutor, clock: Clock
    ) -> None:
        class BrokenNormalizer(FakeAdapter):
            def normalize(self, owner, raw):
                if raw.data.get("id") == 2:
                    raise RuntimeError("unexpected payload")
                return super().normalize(owner, raw)

        github = BrokenNormalizer(executor, items={"code_pr": [_pr(1), _pr(2), _pr(3)]})
        orchestrator = _orchestrator(store, executor, clock, [github], batch_size=2)

        result = await orchestrator.sync_all("alice")

        assert result.counts["code_pr"] == 2
        assert result.errors == ["code_pr 2: unexpected payload"]
        assert not any(source.aborted for source in result.sources)

    async def test_not_connected(
        self, store: ContextStore, executor: RateLimitedExecutor, clock: Clock
    ) -> None:
        orchestrator = _orchestrator(
            store, executor, clock, [FakeAdapter(executor)], connected=()
        )

        with pytest.raises(IntegrationNotConnectedError):
            await orchestrator.sync_all("alice")

    async def test_only_connected_providers_are_synced(
        self, store: ContextStore, executor: RateLimitedExecutor, clock: Clock
    ) -> None:
        github = FakeAdapter(executor, items={"code_pr": [_pr(1)]})
        slack = FakeAdapter(executor, provider="slack", sources=("chat_message",))
        orchestrator = _orchestrator(store, executor, clock, [github, slack], connected=("github",))

        result = await orchestrator.sync_all("alice")

        assert "chat_message" not in result.counts
        assert slack.calls == []

    @pytest.mark.parametrize(("owner", "days_back"), [("", None), ("alice", 0), ("alice", -3)])
    async def test_invalid_requests(
        self, store: ContextStore, executor: RateLimitedExecutor, clock: Clock, owner, days_back
    ) -> None:
        orchestrator = _orchestrator(store, executor, clock, [FakeAdapter(executor)])

        with pytest.raises(InvalidRequestError):
            await orchestrator.sync_all(owner, days_back)


class TestSmartSync:
    """Tests for the cool-down guarded smart sync."""

    async def test_cooldown(
        self, store: ContextStore, executor: RateLimitedExecutor, clock: Clock
    ) -> None:
        """Test skip inside the cool-down and a 7-day run after it."""
        github = FakeAdapter(executor, items={"code_pr": [_pr(1)]})
        orchestrator = _orchestrator(store, executor, clock, [github])

        first = await orchestrator.smart_sync("alice")
        assert first.skipped is False
        assert first.result is not None
        assert first.result.days_back == 7
        assert first.last_sync == clock.now
        first_sync = clock.now

        clock.now += timedelta(minutes=4)
        second = await orchestrator.smart_sync("alice")
        assert second.skipped is True
        assert second.result is None
        assert second.last_sync == first_sync
        assert await store.get_last_sync("alice") == first_sync

        clock.now += timedelta(minutes=2)
        third = await orchestrator.smart_sync("alice")
        assert third.skipped is False
        assert third.last_sync == clock.now

    async def test_concurrent_calls_run_once(
        self, store: ContextStore, executor: RateLimitedExecutor, clock: Clock
    ) -> None:
        """Test that a smart sync waiting on the owner lock turns into a skip."""
        github = FakeAdapter(executor, items={"code_pr": [_pr(1), _pr(2)]})
        orchestrator = _orchestrator(store, executor, clock, [github])

        results = await asyncio.gather(
            orchestrator.smart_sync("alice"), orchestrator.smart_sync("alice")
        )

        assert sorted(result.skipped for result in results) == [False, True]
        assert len([call for call in github.calls if call[0] == "code_pr"]) == 1

    async def test_stats(
        self, store: ContextStore, executor: RateLimitedExecutor, clock: Clock
    ) -> None:
        github = FakeAdapter(executor, items={"code_pr": [_pr(1), _pr(2)]})
        jira = FakeAdapter(
            executor, provider="jira", sources=("ticket",), items={"ticket": [_ticket(1)]}
        )
        orchestrator = _orchestrator(store, executor, clock, [github, jira])
        await orchestrator.sync_all("alice")

        stats = await orchestrator.stats("alice")

        assert stats.total == 3
        assert stats.counts_by_source == {"code_pr": 2, "ticket": 1}
        assert stats.last_sync == clock.now

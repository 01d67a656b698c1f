"""Tests for credential resolution and OAuth state tokens."""

from datetime import UTC, datetime, timedelta

from contextsync.cache import TTLCache
from contextsync.credentials import OAuthStateStore, StoreCredentialProvider
from contextsync.exceptions import TransientError
from contextsync.models import Integration
from contextsync.storage import ContextStore

NOW = datetime(2024, 3, 20, 12, 0, tzinfo=UTC)


class FakeRefresher:
    """TokenRefresher returning a new token, or raising the given error."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls = 0

    async def refresh(self, integration: Integration) -> Integration:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return integration.model_copy(
            update={"access_token": "fresh", "expires_at": NOW + timedelta(hours=1)}
        )


async def _save(store: ContextStore, expires_at: datetime | None, refresh_token: str | None = "r"):
    await store.save_integration(
        Integration(
            owner="alice",
            provider="jira",
            access_token="stale",
            refresh_token=refresh_token,
            expires_at=expires_at,
            site_metadata={"cloud_id": "c1"},
        )
    )


class TestStoreCredentialProvider:
    """Tests for StoreCredentialProvider."""

    async def test_not_connected(self, store: ContextStore) -> None:
        provider = StoreCredentialProvider(store)
        assert await provider.get_active_credential("alice", "jira") is None

    async def test_valid_token_is_not_refreshed(self, store: ContextStore) -> None:
        await _save(store, NOW + timedelta(hours=2))
        refresher = FakeRefresher()
        provider = StoreCredentialProvider(store, refresher, clock=lambda: NOW)

        credential = await provider.get_active_credential("alice", "jira")

        assert credential is not None
        assert credential.access_token == "stale"
        assert credential.site_metadata == {"cloud_id": "c1"}
        assert refresher.calls == 0

    async def test_expiring_token_is_refreshed_and_saved(self, store: ContextStore) -> None:
        await _save(store, NOW + timedelta(minutes=2))
        provider = StoreCredentialProvider(store, FakeRefresher(), clock=lambda: NOW)

        credential = await provider.get_active_credential("alice", "jira")

        assert credential is not None
        assert credential.access_token == "fresh"
        stored = await store.get_integration("alice", "jira")
        assert stored is not None
        assert stored.access_token == "fresh"

    async def test_failed_refresh_keeps_current_token(self, store: ContextStore) -> None:
        await _save(store, NOW - timedelta(minutes=1))
        refresher = FakeRefresher(TransientError("token endpoint down", "jira"))
        provider = StoreCredentialProvider(store, refresher, clock=lambda: NOW)

        credential = await provider.get_active_credential("alice", "jira")

        assert credential is not None
        assert credential.access_token == "stale"
        assert refresher.calls == 1

    async def test_no_refresh_token(self, store: ContextStore) -> None:
        await _save(store, NOW - timedelta(minutes=1), refresh_token=None)
        refresher = FakeRefresher()
        provider = StoreCredentialProvider(store, refresher, clock=lambda: NOW)

        await provider.get_active_credential("alice", "jira")
        assert refresher.calls == 0


class TestOAuthStateStore:
    """Tests for one-shot OAuth state tokens."""

    def test_issue_and_consume_once(self) -> None:
        states = OAuthStateStore(TTLCache(ttl=600))
        state = states.issue("alice", "slack")

        assert len(state) >= 32
        assert states.consume(state) == ("alice", "slack")
        assert states.consume(state) is None

    def test_states_are_unique(self) -> None:
        states = OAuthStateStore(TTLCache(ttl=600))
        assert states.issue("alice", "slack") != states.issue("alice", "slack")

    def test_unknown_and_expired_states(self) -> None:
        now = [0.0]
        states = OAuthStateStore(TTLCache(ttl=600, clock=lambda: now[0]))
        state = states.issue("alice", "github")

        assert states.consume("forged") is None
        now[0] = 601.0
        assert states.consume(state) is None

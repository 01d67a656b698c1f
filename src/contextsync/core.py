"""Core wiring for ContextSync.

This module contains the ContextSyncCore class which builds the shared
executor, store, adapters, upsert layer, sync orchestrator and search
engine from configuration, and exposes the operations used by the MCP
server and the CLI.

Example:
    core = ContextSyncCore(load_config())
    await core.initialize()
    result = await core.smart_sync("alice")
    hits = await core.search("alice", "@bob is:open this week")
    await core.close()
"""

from __future__ import annotations

import json
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from contextsync.adapters import GitHubAdapter, JiraAdapter, SlackAdapter
from contextsync.cache import TTLCache
from contextsync.constants import DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT, OAUTH_STATE_TTL_SECONDS
from contextsync.credentials import OAuthStateStore, StoreCredentialProvider
from contextsync.events import ChatEventQueue, verify_slack_signature
from contextsync.exceptions import IntegrationNotConnectedError, InvalidRequestError
from contextsync.executor import RateLimitedExecutor
from contextsync.logging import get_logger
from contextsync.models import (
    ALL_SOURCES,
    PROVIDER_BY_SOURCE,
    SOURCES_BY_PROVIDER,
    ContextPage,
    Integration,
)
from contextsync.search import SearchEngine
from contextsync.storage import ContextStore
from contextsync.sync import SyncOrchestrator
from contextsync.upsert import UpsertLayer

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from contextsync.adapters.base import ProviderAdapter
    from contextsync.credentials import CredentialProvider
    from contextsync.models import (
        ContextSyncConfig,
        PullRequestDetail,
        SearchResponse,
        SmartSyncResult,
        Stats,
        SyncResult,
        ThreadDetail,
        TicketDetail,
    )

logger = get_logger(__name__)


def build_adapters(
    config: ContextSyncConfig,
    executor: RateLimitedExecutor,
) -> dict[str, ProviderAdapter]:
    """Create the enabled adapters keyed by provider type."""
    providers = config.providers
    adapters: dict[str, ProviderAdapter] = {}
    if providers.github.enabled:
        adapters["github"] = GitHubAdapter(providers.github, executor)
    if providers.jira.enabled:
        adapters["jira"] = JiraAdapter(providers.jira, executor)
    if providers.slack.enabled:
        adapters["slack"] = SlackAdapter(providers.slack, executor)
    return adapters


class ContextSyncCore:
    """Entry point tying storage, sync and search together.

    Collaborators can be injected for tests; anything not passed is built
    from configuration.
    """

    def __init__(
        self,
        config: ContextSyncConfig,
        *,
        store: ContextStore | None = None,
        executor: RateLimitedExecutor | None = None,
        adapters: Mapping[str, ProviderAdapter] | None = None,
        credentials: CredentialProvider | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        """Initialize the core with configuration.

        Args:
            config: ContextSyncConfig with provider, executor, sync and search settings.
            store: Context store (default: SQLite at config.storage.path).
            executor: Shared rate-limited executor.
            adapters: Adapters keyed by provider type.
            credentials: Credential source (default: the store).
            clock: Source of the current UTC time.
        """
        self._config = config
        self._store = store or ContextStore(config.storage.path)
        self._executor = executor or RateLimitedExecutor.from_config(config.executor)
        self._adapters = (
            dict(adapters) if adapters is not None else build_adapters(config, self._executor)
        )
        self._credentials = credentials or StoreCredentialProvider(self._store)
        self._upsert = UpsertLayer(self._store, self._executor)
        self._orchestrator = SyncOrchestrator(
            self._store,
            self._adapters,
            self._credentials,
            self._upsert,
            config.sync,
            clock,
        )
        self._search = SearchEngine(self._store, config.search, clock)
        self._oauth_states = OAuthStateStore(TTLCache(ttl=OAUTH_STATE_TTL_SECONDS))
        self._events: ChatEventQueue | None = None
        self._initialized = False

        logger.info(
            "ContextSyncCore initialized",
            extra={"adapters_loaded": list(self._adapters)},
        )

    @property
    def store(self) -> ContextStore:
        return self._store

    async def initialize(self) -> None:
        """Open the store."""
        if not self._initialized:
            await self._store.initialize()
            self._initialized = True

    async def close(self) -> None:
        """Stop event workers, then close adapters and the store."""
        if self._events is not None:
            await self._events.stop()
        for adapter in self._adapters.values():
            await adapter.close()
        await self._store.close()
        self._initialized = False

    def event_queue(self) -> ChatEventQueue:
        """Return the webhook event queue, building it on first use."""
        if self._events is None:
            events = self._config.events
            self._events = ChatEventQueue(
                self._store,
                self._upsert,
                workers=events.workers,
                max_attempts=events.max_attempts,
            )
        return self._events

    async def start_events(self) -> None:
        """Open the store and start the event workers."""
        await self.initialize()
        self.event_queue().start()

    async def receive_slack_event(
        self,
        body: bytes | str,
        timestamp: str,
        signature: str,
        *,
        now: float | None = None,
    ) -> dict[str, Any]:
        """Verify one Events API delivery and hand it to the event queue.

        Args:
            body: Raw request body.
            timestamp: `X-Slack-Request-Timestamp` header.
            signature: `X-Slack-Signature` header.
            now: Current epoch seconds (default: wall clock).

        Returns:
            The response body for Slack.

        Raises:
            InvalidRequestError: On a bad signature or a malformed body.
        """
        secret = self._config.events.signing_secret
        if not verify_slack_signature(secret, timestamp, body, signature, now):
            raise InvalidRequestError("Invalid Slack request signature")

        try:
            payload = json.loads(body)
        except ValueError as e:
            raise InvalidRequestError("Event body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise InvalidRequestError("Event body must be a JSON object")

        if payload.get("type") == "event_callback":
            await self.start_events()
        return self.event_queue().handle_payload(payload)

    # =========================================================================
    # SYNC AND SEARCH
    # =========================================================================

    async def sync(self, owner: str, days_back: int | None = None) -> SyncResult:
        await self.initialize()
        return await self._orchestrator.sync_all(owner, days_back)

    async def smart_sync(self, owner: str) -> SmartSyncResult:
        await self.initialize()
        return await self._orchestrator.smart_sync(owner)

    async def search(self, owner: str, query: str, limit: int | None = None) -> SearchResponse:
        await self.initialize()
        return await self._search.search(owner, query, limit)

    async def stats(self, owner: str) -> Stats:
        await self.initialize()
        return await self._orchestrator.stats(owner)

    async def list_contexts(
        self,
        owner: str,
        source: str | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
        offset: int = 0,
    ) -> ContextPage:
        """Page through an owner's contexts, newest update first.

        Raises:
            InvalidRequestError: On a missing owner, unknown source or bad paging.
        """
        if not owner:
            raise InvalidRequestError("owner is required")
        if source is not None and source not in ALL_SOURCES:
            raise InvalidRequestError(f"Unknown source: {source}", {"source": source})
        if not 1 <= limit <= MAX_LIST_LIMIT:
            raise InvalidRequestError(
                f"limit must be between 1 and {MAX_LIST_LIMIT}", {"limit": limit}
            )
        if offset < 0:
            raise InvalidRequestError("offset must not be negative", {"offset": offset})

        await self.initialize()
        sources = [source] if source is not None else None
        contexts = await self.store.query(owner, sources=sources, limit=limit, offset=offset)
        total = await self.store.count(owner, source)
        return ContextPage(contexts=contexts, total=total, limit=limit, offset=offset)

    # =========================================================================
    # INTEGRATIONS
    # =========================================================================

    async def connect(
        self,
        owner: str,
        provider: str,
        access_token: str,
        *,
        refresh_token: str | None = None,
        expires_at: datetime | None = None,
        workspace_id: str | None = None,
        site_metadata: dict[str, Any] | None = None,
    ) -> Integration:
        """Save (or reactivate) an integration for an owner.

        Raises:
            InvalidRequestError: On an unknown provider or missing token.
        """
        if provider not in SOURCES_BY_PROVIDER:
            raise InvalidRequestError(f"Unknown provider: {provider}")
        if not owner or not access_token:
            raise InvalidRequestError("owner and access token are required")

        await self.initialize()
        integration = Integration(
            owner=owner,
            provider=provider,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            workspace_id=workspace_id,
            site_metadata=site_metadata or {},
        )
        await self._store.save_integration(integration)
        return integration

    def begin_oauth(self, owner: str, provider: str) -> str:
        """Issue the `state` parameter for an authorization redirect."""
        if provider not in SOURCES_BY_PROVIDER:
            raise InvalidRequestError(f"Unknown provider: {provider}")
        if not owner:
            raise InvalidRequestError("owner is required")
        return self._oauth_states.issue(owner, provider)

    async def complete_oauth(
        self,
        state: str,
        access_token: str,
        **kwargs: Any,
    ) -> Integration:
        """Save the integration for a callback carrying a valid `state`.

        Raises:
            InvalidRequestError: If the state is unknown, expired or already used.
        """
        bound = self._oauth_states.consume(state)
        if bound is None:
            raise InvalidRequestError("Invalid or expired OAuth state")
        owner, provider = bound
        return await self.connect(owner, provider, access_token, **kwargs)

    async def disconnect(self, owner: str, provider: str) -> bool:
        """Soft-disable an integration."""
        await self.initialize()
        return await self._store.deactivate_integration(owner, provider)

    async def health_check(self, owner: str) -> dict[str, bool | None]:
        """Check every enabled provider for an owner.

        Returns:
            Provider to True/False, or None when the owner is not connected.
        """
        await self.initialize()
        results: dict[str, bool | None] = {}
        for provider, adapter in self._adapters.items():
            credential = await self._credentials.get_active_credential(owner, provider)
            if credential is None:
                results[provider] = None
                continue
            results[provider] = await adapter.health_check(credential)
        return results

    # =========================================================================
    # ON-DEMAND DETAIL
    # =========================================================================

    async def get_detail(
        self,
        owner: str,
        source: str,
        source_id: str,
    ) -> PullRequestDetail | TicketDetail | ThreadDetail:
        """Fetch live provider detail for a stored context.

        Args:
            owner: Owner of the context.
            source: Source tag (code_pr, code_review, ticket, chat_message).
            source_id: Provider-native id of the stored context.

        Returns:
            Pull request, ticket or thread detail.

        Raises:
            InvalidRequestError: If the context is unknown or has no detail view.
            IntegrationNotConnectedError: If the provider is not connected.
        """
        start_time = time.monotonic()
        await self.initialize()

        context = await self._store.find(owner, source, source_id)
        if context is None:
            raise InvalidRequestError(
                "Context not found", {"owner": owner, "source": source, "source_id": source_id}
            )

        provider = PROVIDER_BY_SOURCE[source]
        adapter = self._adapters.get(provider)
        credential = await self._credentials.get_active_credential(owner, provider)
        if adapter is None or credential is None:
            raise IntegrationNotConnectedError(owner, provider)

        attributes = context.attributes
        detail: PullRequestDetail | TicketDetail | ThreadDetail
        if isinstance(adapter, GitHubAdapter) and source in ("code_pr", "code_review"):
            detail = await adapter.get_pull_request_detail(
                credential, str(attributes.get("repo", "")), int(attributes.get("number", 0))
            )
        elif isinstance(adapter, JiraAdapter) and source == "ticket":
            detail = await adapter.get_issue_detail(
                credential, str(attributes.get("key") or source_id)
            )
        elif isinstance(adapter, SlackAdapter) and source == "chat_message":
            detail = await adapter.get_thread_detail(
                credential,
                str(attributes.get("channel_id", "")),
                str(attributes.get("thread_ts") or attributes.get("ts", "")),
            )
        else:
            raise InvalidRequestError(f"No detail view for source {source}")

        logger.info(
            "Fetched detail",
            extra={
                "owner": owner,
                "source": source,
                "source_id": source_id,
                "duration_ms": int((time.monotonic() - start_time) * 1000),
            },
        )
        return detail

"""Slack adapter for chat messages.

This adapter connects to the Slack Web API. Bulk sync:

    1. conversations.list over every kind the token can see
       (public and private channels, DMs, group DMs), cursor-paginated
    2. conversations.history per conversation since the lookback start,
       cursor-paginated
    3. conversations.replies for top-level messages that have replies

Slack reports most failures in a 200 body (`{"ok": false, "error": ...}`);
those codes are classified into the shared provider error taxonomy. A
failing conversation (not a member, archived, unexpected error) is skipped
or recorded in the fetch report and the remaining conversations still sync.

Example:
    adapter = SlackAdapter(SlackConfig(), executor)
    async for raw in adapter.fetch_source(credential, "chat_message", since, report):
        ...
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any, ClassVar

import httpx

from contextsync.adapters.base import ProviderAdapter, parse_retry_after
from contextsync.cache import TTLCache
from contextsync.constants import (
    ADAPTER_SLACK,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    SLACK_AUTH_ERRORS,
    SLACK_CONVERSATION_PAGE_SIZE,
    SLACK_CONVERSATION_TYPES,
    SLACK_KEPT_SUBTYPES,
    SLACK_SKIPPABLE_ERRORS,
    USER_NAME_CACHE_TTL_SECONDS,
)
from contextsync.exceptions import (
    AuthError,
    ProviderError,
    SkippableError,
    ThrottledError,
    TransientError,
)
from contextsync.executor import RequestPacer
from contextsync.logging import get_logger
from contextsync.models import (
    Conversation,
    RawChatMessage,
    SlackConfig,
    ThreadDetail,
    ThreadMessage,
)
from contextsync.normalizer import source_id_of
from contextsync.utils import parse_int

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from datetime import datetime

    from contextsync.executor import RateLimitedExecutor
    from contextsync.models import ConversationKind, Credential, FetchReport, RawItem

logger = get_logger(__name__)

# Report counters per conversation kind
_KIND_COUNTERS: dict[str, str] = {
    "channel": "channels",
    "private": "channels",
    "dm": "dms",
    "group_dm": "group_dms",
}


def conversation_kind(channel: dict[str, Any]) -> ConversationKind:
    """Classify a conversations.list entry."""
    if channel.get("is_im"):
        return "dm"
    if channel.get("is_mpim"):
        return "group_dm"
    if channel.get("is_private"):
        return "private"
    return "channel"


def is_syncable(message: dict[str, Any]) -> bool:
    """Return True for top-level human or bot messages.

    Thread replies (thread_ts differs from ts) are fetched with their
    parent, and system subtypes (joins, topic changes) are ignored.
    """
    subtype = message.get("subtype")
    if subtype is not None and subtype not in SLACK_KEPT_SUBTYPES:
        return False
    thread_ts = message.get("thread_ts")
    return not (thread_ts and thread_ts != message.get("ts"))


class SlackAdapter(ProviderAdapter):
    """Chat adapter backed by the Slack Web API.

    Class Attributes:
        name: Adapter identifier ("slack").
        provider: Provider type ("slack").
        sources: chat_message.
    """

    name: ClassVar[str] = ADAPTER_SLACK
    provider: ClassVar[str] = "slack"
    sources: ClassVar[tuple[str, ...]] = ("chat_message",)

    def __init__(
        self,
        config: SlackConfig,
        executor: RateLimitedExecutor,
        pacer: RequestPacer | None = None,
    ) -> None:
        """Initialize the Slack adapter.

        Args:
            config: Slack configuration.
            executor: Shared rate-limited executor.
            pacer: Per-minute pacer; defaults to the configured budget.
        """
        super().__init__(executor)
        self._config = config
        self._pacer = pacer or RequestPacer(config.requests_per_minute)
        self._user_names = TTLCache(ttl=USER_NAME_CACHE_TTL_SECONDS)

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._config.api_base_url.rstrip("/"),
                timeout=DEFAULT_HTTP_TIMEOUT_SECONDS,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client and clear caches."""
        await super().close()
        self._user_names.clear()

    def _raise_for_status(self, response: httpx.Response) -> None:
        """Classify HTTP status first, then the `ok`/`error` body fields."""
        super()._raise_for_status(response)

        try:
            data = response.json()
        except ValueError as e:
            raise TransientError("Slack returned a non-JSON body", self.name) from e

        if not isinstance(data, dict) or data.get("ok"):
            return

        error = str(data.get("error", "unknown_error"))
        if error == "ratelimited":
            raise ThrottledError(
                error,
                self.name,
                retry_after=parse_retry_after(response),
                status_code=response.status_code,
            )
        if error in SLACK_AUTH_ERRORS:
            raise AuthError(error, self.name, status_code=response.status_code)
        if error in SLACK_SKIPPABLE_ERRORS:
            raise SkippableError(error, self.name, status_code=response.status_code)
        raise ProviderError(error, self.name, status_code=response.status_code)

    async def _api(
        self,
        credential: Credential,
        method: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Call a Web API method and return its body."""
        response = await self._request(credential, "GET", f"/{method}", params=params)
        data: dict[str, Any] = response.json()
        return data

    async def _paginate(
        self,
        credential: Credential,
        method: str,
        params: dict[str, Any],
        items_key: str,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield items of a cursor-paginated Web API method."""
        cursor: str | None = None
        while True:
            page_params = {**params, "cursor": cursor} if cursor else params
            data = await self._api(credential, method, page_params)
            for item in data.get(items_key) or []:
                if isinstance(item, dict):
                    yield item
            cursor = (data.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break

    async def _resolve_user_name(self, credential: Credential, user_id: str) -> str:
        """Resolve a user id to a display name, degrading to the id.

        Args:
            credential: Credential of the owner.
            user_id: Slack user id.

        Returns:
            Display name, real name, or the user id if lookup fails.
        """
        cached = self._user_names.get(user_id)
        if cached is not None:
            return str(cached)

        try:
            data = await self._api(credential, "users.info", {"user": user_id})
        except AuthError:
            raise
        except ProviderError as e:
            logger.debug("User lookup failed", extra={"user": user_id, "error": e.message})
            return user_id

        user = data.get("user") or {}
        profile = user.get("profile") or {}
        name = (
            profile.get("display_name")
            or profile.get("real_name")
            or user.get("real_name")
            or user.get("name")
            or user_id
        )
        self._user_names.set(user_id, name)
        return str(name)

    # =========================================================================
    # BULK SYNC
    # =========================================================================

    async def _conversations(self, credential: Credential) -> list[Conversation]:
        """List every conversation the credential can see."""
        conversations: list[Conversation] = []
        params = {
            "types": SLACK_CONVERSATION_TYPES,
            "exclude_archived": "true",
            "limit": SLACK_CONVERSATION_PAGE_SIZE,
        }
        async for channel in self._paginate(credential, "conversations.list", params, "channels"):
            channel_id = channel.get("id")
            if not channel_id:
                continue
            kind = conversation_kind(channel)
            name = str(channel.get("name") or "")
            if kind == "dm" and channel.get("user"):
                name = await self._resolve_user_name(credential, str(channel["user"]))
            conversations.append(Conversation(id=str(channel_id), name=name, kind=kind))
        return conversations

    def fetch_source(
        self,
        credential: Credential,
        source: str,
        since: datetime,
        report: FetchReport,
    ) -> AsyncIterator[RawItem]:
        """Stream top-level chat messages posted since `since`."""
        if source != "chat_message":
            raise ValueError(f"Unknown source for {self.name}: {source}")
        return self._messages(credential, since, report)

    async def _messages(
        self,
        credential: Credential,
        since: datetime,
        report: FetchReport,
    ) -> AsyncIterator[RawItem]:
        start_time = time.monotonic()
        conversations = await self._conversations(credential)
        oldest = f"{since.timestamp():.6f}"
        seen: set[str] = set()

        for conversation in conversations:
            label = conversation.name or conversation.id
            params = {
                "channel": conversation.id,
                "oldest": oldest,
                "limit": self._config.page_size,
            }
            try:
                async for message in self._paginate(
                    credential, "conversations.history", params, "messages"
                ):
                    if not is_syncable(message):
                        continue
                    raw = await self._build_raw(credential, conversation, message, report)
                    source_id = source_id_of(raw)
                    if source_id in seen:
                        continue
                    seen.add(source_id)
                    yield raw
                report.increment(_KIND_COUNTERS[conversation.kind])
            except AuthError:
                raise
            except SkippableError as e:
                report.skipped += 1
                logger.debug(
                    "Skipping conversation",
                    extra={"channel": label, "error": e.message},
                )
            except ProviderError as e:
                report.errors.append(f"Channel {label}: {e.message}")
                logger.warning(
                    "Failed to sync conversation",
                    extra={"channel": label, "error": e.message},
                )

        logger.info(
            "Slack sync complete",
            extra={
                "conversations": len(conversations),
                "messages": len(seen),
                "duration_ms": int((time.monotonic() - start_time) * 1000),
            },
        )

    async def _build_raw(
        self,
        credential: Credential,
        conversation: Conversation,
        message: dict[str, Any],
        report: FetchReport,
    ) -> RawChatMessage:
        """Attach author name, thread replies and permalink to a message."""
        user_id = message.get("user")
        author_name = await self._resolve_user_name(credential, str(user_id)) if user_id else None

        replies: list[dict[str, Any]] = []
        ts = str(message.get("ts", ""))
        if self._config.include_threads and parse_int(message.get("reply_count")) > 0:
            try:
                replies = await self._thread_replies(credential, conversation.id, ts)
            except AuthError:
                raise
            except SkippableError:
                replies = []
            except ProviderError as e:
                label = conversation.name or conversation.id
                report.errors.append(f"Thread {label}/{ts}: {e.message}")

        return RawChatMessage(
            message=message,
            conversation=conversation,
            author_name=author_name,
            replies=replies,
            permalink=message.get("permalink") or self._permalink(credential, conversation.id, ts),
            team_id=credential.workspace_id or message.get("team"),
        )

    def _permalink(self, credential: Credential, channel_id: str, ts: str) -> str | None:
        """Build the web permalink when the workspace URL is known."""
        team_url = credential.site_metadata.get("team_url")
        if not team_url or not ts:
            return None
        return f"{str(team_url).rstrip('/')}/archives/{channel_id}/p{ts.replace('.', '')}"

    async def _thread_replies(
        self,
        credential: Credential,
        channel_id: str,
        thread_ts: str,
    ) -> list[dict[str, Any]]:
        """Fetch all replies of a thread, excluding the parent message."""
        params = {"channel": channel_id, "ts": thread_ts, "limit": self._config.page_size}
        return [
            reply
            async for reply in self._paginate(
                credential, "conversations.replies", params, "messages"
            )
            if reply.get("ts") != thread_ts
        ]

    # =========================================================================
    # ON-DEMAND DETAIL
    # =========================================================================

    async def get_thread_detail(
        self,
        credential: Credential,
        channel_id: str,
        ts: str,
    ) -> ThreadDetail:
        """Fetch a full thread (parent and replies) with resolved authors.

        Args:
            credential: Credential of the owner.
            channel_id: Conversation id.
            ts: Timestamp id of the parent message.

        Returns:
            ThreadDetail with messages in thread order.
        """
        params = {"channel": channel_id, "ts": ts, "limit": self._config.page_size}
        messages: list[ThreadMessage] = []
        replies = self._paginate(credential, "conversations.replies", params, "messages")
        async for message in replies:
            user_id = message.get("user")
            author = (
                await self._resolve_user_name(credential, str(user_id))
                if user_id
                else str(message.get("username") or "unknown")
            )
            messages.append(
                ThreadMessage(
                    ts=str(message.get("ts", "")),
                    author=author,
                    text=str(message.get("text") or ""),
                )
            )
        return ThreadDetail(channel_id=channel_id, ts=ts, messages=messages)

    async def health_check(self, credential: Credential) -> bool:
        """Check if the Slack token is valid via auth.test.

        Returns:
            True if the token is accepted, False otherwise.
        """
        try:
            await self._api(credential, "auth.test")
        except ProviderError as e:
            logger.warning("Slack health check failed", extra={"error": e.message})
            return False
        return True

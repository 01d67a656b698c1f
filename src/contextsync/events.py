"""Slack Events API intake: signature check and a background work queue.

Webhook deliveries are verified, answered immediately, and processed by a
small pool of worker tasks. Processing normalizes and upserts the message
for the owner whose integration matches the delivering workspace.

Delivery is at-least-once: a failing event is re-queued until
`max_attempts`, then dead-lettered (logged and kept for inspection).
Slack retries deliveries, so events are deduplicated by `event_id`.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import time
from typing import TYPE_CHECKING, Any

from contextsync.cache import TTLCache
from contextsync.constants import (
    DEFAULT_EVENT_MAX_ATTEMPTS,
    DEFAULT_EVENT_WORKERS,
    EVENT_DEDUPE_TTL_SECONDS,
    SLACK_KEPT_SUBTYPES,
    SLACK_SIGNATURE_MAX_AGE_SECONDS,
    SLACK_SIGNATURE_VERSION,
)
from contextsync.exceptions import InvalidRequestError
from contextsync.logging import get_logger
from contextsync.models import ChatEvent, Conversation, ConversationKind, RawChatMessage
from contextsync.normalizer import normalize

if TYPE_CHECKING:
    from contextsync.storage import ContextStore
    from contextsync.upsert import UpsertLayer

logger = get_logger(__name__)

_CHANNEL_TYPES: dict[str, ConversationKind] = {
    "channel": "channel",
    "group": "private",
    "im": "dm",
    "mpim": "group_dm",
}


def verify_slack_signature(
    secret: str,
    timestamp: str,
    body: bytes | str,
    signature: str,
    now: float | None = None,
) -> bool:
    """Verify an `X-Slack-Signature` header.

    Args:
        secret: App signing secret.
        timestamp: `X-Slack-Request-Timestamp` header.
        body: Raw request body.
        signature: `X-Slack-Signature` header (`v0=<hex>`).
        now: Current epoch seconds.

    Returns:
        True if the signature matches and the timestamp is fresh.
    """
    if not secret or not signature:
        return False
    try:
        sent_at = int(timestamp)
    except (TypeError, ValueError):
        return False

    current = time.time() if now is None else now
    if abs(current - sent_at) > SLACK_SIGNATURE_MAX_AGE_SECONDS:
        return False

    raw = body.encode() if isinstance(body, str) else body
    basestring = f"{SLACK_SIGNATURE_VERSION}:{timestamp}:".encode() + raw
    digest = hmac.new(secret.encode(), basestring, hashlib.sha256).hexdigest()
    return hmac.compare_digest(f"{SLACK_SIGNATURE_VERSION}={digest}", signature)


class ChatEventQueue:
    """FIFO queue of chat events drained by worker tasks.

    Attributes:
        processed: Events stored successfully.
        duplicates: Deliveries dropped by event id.
        dead_letters: Events that exhausted their attempts.
    """

    def __init__(
        self,
        store: ContextStore,
        upsert: UpsertLayer,
        workers: int = DEFAULT_EVENT_WORKERS,
        max_attempts: int = DEFAULT_EVENT_MAX_ATTEMPTS,
        dedupe: TTLCache | None = None,
    ) -> None:
        self._store = store
        self._upsert = upsert
        self._worker_count = workers
        self.max_attempts = max_attempts
        self._seen = dedupe or TTLCache(ttl=EVENT_DEDUPE_TTL_SECONDS)
        self._queue: asyncio.Queue[ChatEvent] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self.processed = 0
        self.duplicates = 0
        self.dead_letters: list[ChatEvent] = []

    def start(self) -> None:
        """Start the worker tasks."""
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"chat-event-worker-{index}")
            for index in range(self._worker_count)
        ]
        logger.info("Event workers started", extra={"workers": self._worker_count})

    async def drain(self) -> None:
        """Wait until every queued event is processed or dead-lettered."""
        await self._queue.join()

    async def stop(self) -> None:
        """Cancel the worker tasks."""
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    def handle_payload(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Answer a webhook delivery and enqueue its event.

        Args:
            payload: Parsed JSON body of the delivery.

        Returns:
            The HTTP response body: the challenge for url_verification,
            otherwise an acknowledgement.

        Raises:
            InvalidRequestError: If the payload is malformed.
        """
        payload_type = payload.get("type")
        if payload_type == "url_verification":
            return {"challenge": payload.get("challenge", "")}
        if payload_type != "event_callback":
            return {"ok": True, "ignored": True}

        event_id = payload.get("event_id")
        event = payload.get("event")
        if not event_id or not isinstance(event, dict):
            raise InvalidRequestError("event_callback without event_id or event")

        if event_id in self._seen:
            self.duplicates += 1
            logger.debug("Duplicate event dropped", extra={"event_id": event_id})
            return {"ok": True, "duplicate": True}
        self._seen.set(event_id, True)

        self._queue.put_nowait(
            ChatEvent(
                event_id=str(event_id),
                team_id=str(payload.get("team_id") or ""),
                type=str(event.get("type", "")),
                payload=event,
            )
        )
        return {"ok": True}

    async def _worker(self, index: int) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.process(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                event.attempts += 1
                if event.attempts < self.max_attempts:
                    logger.warning(
                        "Event failed, re-queueing",
                        extra={
                            "event_id": event.event_id,
                            "attempts": event.attempts,
                            "error": str(e),
                        },
                    )
                    self._queue.put_nowait(event)
                else:
                    self.dead_letters.append(event)
                    logger.error(
                        "Event dead-lettered",
                        extra={
                            "event_id": event.event_id,
                            "attempts": event.attempts,
                            "error": str(e),
                        },
                    )
            finally:
                self._queue.task_done()

    async def process(self, event: ChatEvent) -> bool:
        """Store the message carried by one event.

        Returns:
            True if a context was upserted, False if the event was ignored.
        """
        if event.type != "message":
            return False

        payload = event.payload
        subtype = payload.get("subtype")
        if subtype == "message_changed":
            message = payload.get("message") or {}
        elif subtype is None or subtype in SLACK_KEPT_SUBTYPES:
            message = payload
        else:
            return False

        thread_ts = message.get("thread_ts")
        if thread_ts and thread_ts != message.get("ts"):
            return False

        owner = await self._store.find_owner_by_workspace("slack", event.team_id)
        if owner is None:
            logger.debug("No owner for workspace", extra={"team_id": event.team_id})
            return False

        channel_id = str(payload.get("channel", ""))
        raw = RawChatMessage(
            message=message,
            conversation=Conversation(
                id=channel_id,
                name=str(payload.get("channel_name") or channel_id),
                kind=_CHANNEL_TYPES.get(str(payload.get("channel_type")), "channel"),
            ),
            team_id=event.team_id,
        )
        outcome = await self._upsert.upsert(normalize(owner, raw))
        self.processed += 1
        logger.info(
            "Event stored",
            extra={"event_id": event.event_id, "owner": owner, "outcome": outcome},
        )
        return True

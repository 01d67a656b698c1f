"""Tests for Slack event intake."""

import hashlib
import hmac

import pytest

from contextsync.events import ChatEventQueue, verify_slack_signature
from contextsync.exceptions import InvalidRequestError
from contextsync.executor import RateLimitedExecutor
from contextsync.models import ChatEvent, Integration
from contextsync.storage import ContextStore
from contextsync.upsert import UpsertLayer

SECRET = "8f742231b10e8888abcd99yyyzzz85a5"
BODY = b'{"type":"event_callback","event_id":"Ev1"}'


def _sign(timestamp: str, body: bytes = BODY, secret: str = SECRET) -> str:
    basestring = f"v0:{timestamp}:".encode() + body
    return "v0=" + hmac.new(secret.encode(), basestring, hashlib.sha256).hexdigest()


def _delivery(event_id: str, event: dict, team_id: str = "T1") -> dict:
    return {"type": "event_callback", "event_id": event_id, "team_id": team_id, "event": event}


MESSAGE = {
    "type": "message",
    "channel": "C1",
    "channel_type": "channel",
    "user": "U1",
    "text": "Deploy is green",
    "ts": "1710000000.000100",
}


class TestSignature:
    """Tests for request signature verification."""

    def test_valid_signature(self):
        signature = _sign("1710000000")
        assert verify_slack_signature(SECRET, "1710000000", BODY, signature, now=1710000010)

    def test_tampered_body(self):
        signature = _sign("1710000000")
        assert not verify_slack_signature(
            SECRET, "1710000000", BODY + b" ", signature, now=1710000010
        )

    def test_stale_timestamp(self):
        signature = _sign("1710000000")
        assert not verify_slack_signature(
            SECRET, "1710000000", BODY, signature, now=1710000000 + 301
        )

    def test_wrong_secret_and_missing_values(self):
        signature = _sign("1710000000", secret="other")
        assert not verify_slack_signature(SECRET, "1710000000", BODY, signature, now=1710000000)
        assert not verify_slack_signature("", "1710000000", BODY, signature, now=1710000000)
        assert not verify_slack_signature(SECRET, "soon", BODY, signature, now=1710000000)

    def test_str_body(self):
        signature = _sign("1710000000")
        assert verify_slack_signature(
            SECRET, "1710000000", BODY.decode(), signature, now=1710000000
        )


@pytest.fixture
async def queue(store: ContextStore, executor: RateLimitedExecutor) -> ChatEventQueue:
    """Create a started event queue with a connected workspace."""
    await store.save_integration(
        Integration(owner="alice", provider="slack", access_token="xoxp", workspace_id="T1")
    )
    queue = ChatEventQueue(store, UpsertLayer(store, executor), workers=2, max_attempts=2)
    queue.start()
    yield queue
    await queue.stop()


class TestHandlePayload:
    """Tests for webhook acknowledgement."""

    async def test_url_verification(self, queue: ChatEventQueue):
        response = queue.handle_payload({"type": "url_verification", "challenge": "abc"})
        assert response == {"challenge": "abc"}

    async def test_other_payload_types_are_ignored(self, queue: ChatEventQueue):
        assert queue.handle_payload({"type": "app_rate_limited"}) == {"ok": True, "ignored": True}

    async def test_malformed_callback(self, queue: ChatEventQueue):
        with pytest.raises(InvalidRequestError):
            queue.handle_payload({"type": "event_callback", "event": MESSAGE})

    async def test_duplicates_are_dropped(self, queue: ChatEventQueue, store: ContextStore):
        assert queue.handle_payload(_delivery("Ev1", MESSAGE)) == {"ok": True}
        assert queue.handle_payload(_delivery("Ev1", MESSAGE)) == {"ok": True, "duplicate": True}
        await queue.drain()

        assert queue.duplicates == 1
        assert queue.processed == 1
        assert await store.count("alice") == 1


class TestProcessing:
    """Tests for event processing by the workers."""

    async def test_message_is_stored_for_workspace_owner(
        self, queue: ChatEventQueue, store: ContextStore
    ):
        queue.handle_payload(_delivery("Ev1", MESSAGE))
        await queue.drain()

        context = await store.find("alice", "chat_message", "C1_1710000000.000100")
        assert context is not None
        assert context.body == "Deploy is green"
        assert context.external_url == "slack://channel?team=T1&id=C1&message=1710000000.000100"

    async def test_edit_updates_existing_row(self, queue: ChatEventQueue, store: ContextStore):
        queue.handle_payload(_delivery("Ev1", MESSAGE))
        await queue.drain()
        edited = {
            "type": "message",
            "subtype": "message_changed",
            "channel": "C1",
            "channel_type": "channel",
            "message": {**MESSAGE, "text": "Deploy is red", "edited": {"ts": "1710000100.0"}},
        }
        queue.handle_payload(_delivery("Ev2", edited))
        await queue.drain()

        context = await store.find("alice", "chat_message", "C1_1710000000.000100")
        assert context is not None
        assert context.body == "Deploy is red"
        assert await store.count("alice") == 1

    @pytest.mark.parametrize(
        "event",
        [
            {**MESSAGE, "type": "reaction_added"},
            {**MESSAGE, "subtype": "channel_join"},
            {**MESSAGE, "ts": "1710000005.000100", "thread_ts": "1710000000.000100"},
        ],
    )
    async def test_ignored_events(self, queue: ChatEventQueue, event: dict):
        processed = await queue.process(
            ChatEvent(event_id="Ev9", team_id="T1", type=event["type"], payload=event)
        )
        assert processed is False

    async def test_unknown_workspace(self, queue: ChatEventQueue):
        processed = await queue.process(
            ChatEvent(event_id="Ev9", team_id="T404", type="message", payload=MESSAGE)
        )
        assert processed is False

    async def test_dm_channel_kind(self, queue: ChatEventQueue, store: ContextStore):
        dm = {**MESSAGE, "channel": "D1", "channel_type": "im"}
        await queue.process(ChatEvent(event_id="Ev3", team_id="T1", type="message", payload=dm))

        context = await store.find("alice", "chat_message", "D1_1710000000.000100")
        assert context is not None
        assert context.attributes["channel_kind"] == "dm"
        assert context.title.startswith("Slack DM: D1")


class FailingUpsert:
    """Upsert layer that always fails."""

    def __init__(self) -> None:
        self.calls = 0

    async def upsert(self, context):
        self.calls += 1
        raise RuntimeError("database is locked")


class TestRetries:
    """Tests for re-queueing and dead-lettering."""

    async def test_failing_event_is_dead_lettered(self, store: ContextStore):
        await store.save_integration(
            Integration(owner="alice", provider="slack", access_token="xoxp", workspace_id="T1")
        )
        upsert = FailingUpsert()
        queue = ChatEventQueue(store, upsert, workers=1, max_attempts=3)
        queue.start()

        queue.handle_payload(_delivery("Ev1", MESSAGE))
        await queue.drain()
        await queue.stop()

        assert upsert.calls == 3
        assert queue.processed == 0
        assert [event.event_id for event in queue.dead_letters] == ["Ev1"]
        assert queue.dead_letters[0].attempts == 3

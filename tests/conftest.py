"""Shared fixtures for ContextSync tests."""

from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from contextsync.executor import RateLimitedExecutor
from contextsync.models import Context
from contextsync.storage import ContextStore


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleeper() -> RecordingSleep:
    """Create a sleep recorder."""
    return RecordingSleep()


@pytest.fixture
def executor(sleeper: RecordingSleep) -> RateLimitedExecutor:
    """Create an executor that never really sleeps."""
    return RateLimitedExecutor(max_concurrency=5, max_retries=3, base_delay=1.0, sleep=sleeper)


@pytest.fixture
async def store(tmp_path: Path) -> ContextStore:
    """Create and initialize a store in a temporary directory."""
    store = ContextStore(str(tmp_path / "contexts.db"))
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def make_context() -> Callable[..., Context]:
    """Create a factory for contexts with sensible defaults."""

    def factory(
        source_id: str = "1",
        source: str = "code_pr",
        owner: str = "alice",
        title: str = "Fix flaky payment webhook test",
        body: str = "",
        attributes: dict[str, Any] | None = None,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
    ) -> Context:
        created = created_at or datetime(2024, 3, 18, 9, 0, tzinfo=UTC)
        return Context(
            owner=owner,
            source=source,
            source_id=source_id,
            title=title,
            body=body,
            external_url=f"https://example.com/{source}/{source_id}",
            attributes=attributes if attributes is not None else {"author": "alice"},
            created_at=created,
            updated_at=updated_at or created,
        )

    return factory

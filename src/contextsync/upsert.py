"""Idempotent upsert of contexts keyed on (owner, source, source_id).

Re-ingesting a record rewrites its mutable fields and never creates a
duplicate row. Commits are append-only: once stored they are left alone.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import aiosqlite

from contextsync.exceptions import StorageError
from contextsync.logging import get_logger
from contextsync.models import IMMUTABLE_SOURCES, UpsertOutcome, UpsertStats

if TYPE_CHECKING:
    from collections.abc import Sequence

    from contextsync.executor import RateLimitedExecutor
    from contextsync.models import Context
    from contextsync.storage import ContextStore

logger = get_logger(__name__)


class UpsertLayer:
    """Writes normalized contexts into the store."""

    def __init__(self, store: ContextStore, executor: RateLimitedExecutor) -> None:
        self._store = store
        self._executor = executor

    async def upsert(self, context: Context) -> UpsertOutcome:
        """Insert or update one context.

        Args:
            context: Normalized context.

        Returns:
            "inserted", "updated", or "unchanged" for an immutable row
            that already exists.
        """
        existing = await self._store.find(context.owner, context.source, context.source_id)
        if existing is not None:
            if context.source in IMMUTABLE_SOURCES:
                return "unchanged"
            await self._store.update(context)
            return "updated"

        try:
            await self._store.insert(context)
        except aiosqlite.IntegrityError:
            # Lost an insert race on the unique key
            if context.source in IMMUTABLE_SOURCES:
                return "unchanged"
            await self._store.update(context)
            return "updated"
        return "inserted"

    async def upsert_many(self, contexts: Sequence[Context]) -> UpsertStats:
        """Upsert a batch concurrently under the executor's bound.

        A failing row is counted and logged; the rest of the batch still
        lands.

        Returns:
            Per-outcome counts.
        """
        stats = UpsertStats()
        if not contexts:
            return stats

        outcomes = await self._executor.gather(
            *(self._executor.bounded(self.upsert, context) for context in contexts)
        )
        for context, outcome in zip(contexts, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, (aiosqlite.Error, StorageError)):
                    raise outcome
                stats.failed += 1
                logger.warning(
                    "Upsert failed",
                    extra={"key": "/".join(context.key), "error": str(outcome)},
                )
            elif outcome == "inserted":
                stats.inserted += 1
            elif outcome == "updated":
                stats.updated += 1
            else:
                stats.unchanged += 1
        return stats

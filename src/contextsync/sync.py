"""Sync orchestration: fetch, normalize and upsert per owner.

A full sync runs every connected adapter and every source of an adapter
concurrently. Within one source, pages are consumed sequentially and
items are upserted in concurrent batches. Failures stay inside the source
they happened in, so the result is always success-shaped with per-source
counts and collected error strings.

Smart sync is the throttled entry point for "refresh on open": it skips
when the owner synced within the cool-down and otherwise runs a short
lookback.

Example:
    orchestrator = SyncOrchestrator(store, adapters, credentials, upsert, config.sync)
    result = await orchestrator.sync_all("alice")
    print(result.counts, result.errors)
"""

from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from contextsync.exceptions import (
    AuthError,
    ContextSyncError,
    IntegrationNotConnectedError,
    InvalidRequestError,
)
from contextsync.logging import LogContext, get_logger
from contextsync.models import (
    FetchReport,
    SmartSyncResult,
    SourceSyncResult,
    Stats,
    SyncConfig,
    SyncResult,
)
from contextsync.normalizer import source_id_of

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from contextsync.adapters.base import ProviderAdapter
    from contextsync.credentials import CredentialProvider
    from contextsync.models import Context, Credential, RawItem
    from contextsync.storage import ContextStore
    from contextsync.upsert import UpsertLayer

logger = get_logger(__name__)


class SyncOrchestrator:
    """Runs full and smart syncs for an owner.

    Syncs of the same owner are serialized by a per-owner lock. A smart
    sync that waited on the lock re-reads SyncState, so a concurrent
    duplicate turns into a skipped result instead of a second run.
    """

    def __init__(
        self,
        store: ContextStore,
        adapters: Mapping[str, ProviderAdapter],
        credentials: CredentialProvider,
        upsert: UpsertLayer,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Context store.
            adapters: Enabled adapters keyed by provider type.
            credentials: Credential source.
            upsert: Upsert layer writing into the store.
            config: Sync configuration.
            clock: Source of the current UTC time.
        """
        self._store = store
        self._adapters = dict(adapters)
        self._credentials = credentials
        self._upsert = upsert
        self._config = config or SyncConfig()
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, owner: str) -> asyncio.Lock:
        return self._locks.setdefault(owner, asyncio.Lock())

    def _cooling_down(self, last_sync: datetime | None) -> bool:
        if last_sync is None:
            return False
        return self._clock() - last_sync < timedelta(seconds=self._config.cooldown_seconds)

    async def sync_all(self, owner: str, days_back: int | None = None) -> SyncResult:
        """Run a full sync of every connected provider.

        Args:
            owner: Owner to sync.
            days_back: Lookback window in days (default from config, 30).

        Returns:
            SyncResult with per-source counts and collected errors.

        Raises:
            InvalidRequestError: If owner is empty or days_back is not positive.
            IntegrationNotConnectedError: If the owner has no active integration.
        """
        if not owner:
            raise InvalidRequestError("owner is required")
        days = self._config.default_days_back if days_back is None else days_back
        if days < 1:
            raise InvalidRequestError("days_back must be a positive integer", {"days_back": days})

        async with self._lock_for(owner):
            return await self._run_sync(owner, days)

    async def smart_sync(self, owner: str) -> SmartSyncResult:
        """Sync the recent window unless the owner synced within the cool-down.

        Args:
            owner: Owner to sync.

        Returns:
            SmartSyncResult; `skipped` is True when the cool-down was active,
            in which case SyncState is left unchanged.
        """
        if not owner:
            raise InvalidRequestError("owner is required")

        last_sync = await self._store.get_last_sync(owner)
        if self._cooling_down(last_sync):
            logger.info("Smart sync skipped, cooling down", extra={"owner": owner})
            return SmartSyncResult(skipped=True, last_sync=last_sync)

        async with self._lock_for(owner):
            last_sync = await self._store.get_last_sync(owner)
            if self._cooling_down(last_sync):
                logger.info("Smart sync skipped after wait", extra={"owner": owner})
                return SmartSyncResult(skipped=True, last_sync=last_sync)

            result = await self._run_sync(owner, self._config.smart_days_back)
            return SmartSyncResult(
                skipped=False,
                last_sync=await self._store.get_last_sync(owner),
                result=result,
            )

    async def stats(self, owner: str) -> Stats:
        """Return stored totals and the last sync time for an owner."""
        if not owner:
            raise InvalidRequestError("owner is required")
        counts = await self._store.count_by_source(owner)
        return Stats(
            owner=owner,
            total=sum(counts.values()),
            counts_by_source=counts,
            last_sync=await self._store.get_last_sync(owner),
        )

    async def _connected(self, owner: str) -> list[tuple[ProviderAdapter, Credential]]:
        connected: list[tuple[ProviderAdapter, Credential]] = []
        for provider, adapter in self._adapters.items():
            credential = await self._credentials.get_active_credential(owner, provider)
            if credential is None:
                logger.debug("Provider not connected", extra={"owner": owner, "provider": provider})
                continue
            connected.append((adapter, credential))
        return connected

    async def _run_sync(self, owner: str, days_back: int) -> SyncResult:
        start_time = time.monotonic()
        started_at = self._clock()
        since = started_at - timedelta(days=days_back)

        with LogContext(owner=owner):
            connected = await self._connected(owner)
            if not connected:
                raise IntegrationNotConnectedError(owner)

            logger.info(
                "Starting sync",
                extra={
                    "days_back": days_back,
                    "providers": [adapter.provider for adapter, _ in connected],
                },
            )

            sources = await asyncio.gather(
                *(
                    self._sync_source(owner, adapter, credential, source, since)
                    for adapter, credential in connected
                    for source in adapter.sources
                )
            )

            result = SyncResult(owner=owner, days_back=days_back, started_at=started_at)
            for source_result in sources:
                result.sources.append(source_result)
                result.counts[source_result.source] = source_result.count
                result.errors.extend(source_result.errors)
            result.total = sum(result.counts.values())
            result.duration_ms = int((time.monotonic() - start_time) * 1000)

            if result.completed_any:
                await self._store.set_last_sync(owner, self._clock())

            logger.info(
                "Sync complete",
                extra={
                    "total": result.total,
                    "errors": len(result.errors),
                    "duration_ms": result.duration_ms,
                },
            )
            return result

    async def _sync_source(
        self,
        owner: str,
        adapter: ProviderAdapter,
        credential: Credential,
        source: str,
        since: datetime,
    ) -> SourceSyncResult:
        """Fetch, normalize and upsert one source; never raises."""
        report = FetchReport()
        result = SourceSyncResult(source=source)
        batch: list[RawItem] = []

        try:
            async for raw in adapter.fetch_source(credential, source, since, report):
                batch.append(raw)
                if len(batch) >= self._config.batch_size:
                    pending, batch = batch, []
                    await self._flush(owner, adapter, pending, result)
        except AuthError as e:
            result.aborted = True
            result.errors.append(f"{source}: integration not connected ({e.message})")
        except ContextSyncError as e:
            result.aborted = True
            result.errors.append(f"{source}: {e.message}")
            logger.warning("Source sync failed", extra={"source": source, "error": e.message})
        except Exception as e:
            result.aborted = True
            result.errors.append(f"{source}: {e}")
            logger.exception("Unexpected error syncing source", extra={"source": source})

        # Items fetched before a failure still land
        if batch:
            try:
                await self._flush(owner, adapter, batch, result)
            except Exception as e:
                result.errors.append(f"{source}: {e}")
                logger.exception("Final flush failed", extra={"source": source})

        result.skipped = report.skipped
        result.errors.extend(report.errors)
        result.details = dict(report.details)
        return result

    async def _flush(
        self,
        owner: str,
        adapter: ProviderAdapter,
        batch: list[RawItem],
        result: SourceSyncResult,
    ) -> None:
        contexts: list[Context] = []
        for raw in batch:
            try:
                contexts.append(adapter.normalize(owner, raw))
            except Exception as e:
                result.errors.append(f"{result.source} {source_id_of(raw)}: {e}")
                logger.warning(
                    "Failed to normalize item",
                    extra={"source": result.source, "error": str(e)},
                )

        stats = await self._upsert.upsert_many(contexts)
        result.count += stats.total
        if stats.failed:
            result.errors.append(f"{result.source}: {stats.failed} contexts failed to store")

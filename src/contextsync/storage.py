"""SQLite storage for contexts, integrations and sync state.

This module provides persistent storage for normalized contexts, the
per-owner provider integrations, and the per-owner SyncState. The sync
engine writes through it and the query engine reads from it.

Uses aiosqlite for async SQLite access.

Example:
    store = ContextStore(".contextsync/contexts.db")
    await store.initialize()

    existing = await store.find("alice", "code_pr", "42")
    if existing is None:
        await store.insert(context)

    await store.close()
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiosqlite

from contextsync.constants import DEFAULT_STORAGE_PATH
from contextsync.logging import get_logger
from contextsync.models import Context, Integration

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS contexts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner TEXT NOT NULL,
    source TEXT NOT NULL,
    source_id TEXT NOT NULL,
    title TEXT NOT NULL,
    body TEXT NOT NULL,
    external_url TEXT NOT NULL,
    attributes TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_contexts_key
    ON contexts (owner, source, source_id);
CREATE INDEX IF NOT EXISTS idx_contexts_owner_created
    ON contexts (owner, created_at);

CREATE TABLE IF NOT EXISTS integrations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner TEXT NOT NULL,
    provider TEXT NOT NULL,
    access_token TEXT NOT NULL,
    refresh_token TEXT,
    expires_at TEXT,
    workspace_id TEXT,
    site_metadata TEXT NOT NULL,
    active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_integrations_key
    ON integrations (owner, provider);

CREATE TABLE IF NOT EXISTS sync_state (
    owner TEXT PRIMARY KEY,
    last_sync TEXT NOT NULL
);
"""

_CONTEXT_COLUMNS = (
    "id, owner, source, source_id, title, body, external_url, attributes, created_at, updated_at"
)
_INTEGRATION_COLUMNS = (
    "owner, provider, access_token, refresh_token, expires_at, workspace_id, "
    "site_metadata, active, created_at, updated_at"
)


def _iso(value: datetime) -> str:
    """Serialize a datetime as fixed-width UTC ISO text so it sorts lexically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_context(row: aiosqlite.Row | tuple[Any, ...]) -> Context:
    return Context(
        id=row[0],
        owner=row[1],
        source=row[2],
        source_id=row[3],
        title=row[4],
        body=row[5],
        external_url=row[6],
        attributes=json.loads(row[7]),
        created_at=datetime.fromisoformat(row[8]),
        updated_at=datetime.fromisoformat(row[9]),
    )


def _row_to_integration(row: aiosqlite.Row | tuple[Any, ...]) -> Integration:
    return Integration(
        owner=row[0],
        provider=row[1],
        access_token=row[2],
        refresh_token=row[3],
        expires_at=_parse(row[4]),
        workspace_id=row[5],
        site_metadata=json.loads(row[6]),
        active=bool(row[7]),
        created_at=_parse(row[8]),
        updated_at=_parse(row[9]),
    )


class ContextStore:
    """SQLite store behind the sync and query engines.

    The store holds three tables:
        - contexts: normalized records, UNIQUE (owner, source, source_id)
        - integrations: provider credentials, UNIQUE (owner, provider)
        - sync_state: last successful sync per owner

    Timestamps are stored as UTC ISO-8601 text with microsecond precision,
    so range filters and ordering work on the text columns directly.
    """

    def __init__(self, db_path: str = DEFAULT_STORAGE_PATH) -> None:
        """Initialize storage with database path.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Create database and tables if needed.

        Creates the parent directory if it doesn't exist.
        """
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        await self._conn.executescript(_SCHEMA)
        await self._conn.commit()

        logger.info("Storage initialized", extra={"db_path": self._db_path})

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    def _connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Storage not initialized. Call initialize() first.")
        return self._conn

    # =========================================================================
    # CONTEXTS
    # =========================================================================

    async def find(self, owner: str, source: str, source_id: str) -> Context | None:
        """Look up a context by its natural key.

        Returns:
            The stored Context, or None if absent.
        """
        conn = self._connection()
        cursor = await conn.execute(
            f"SELECT {_CONTEXT_COLUMNS} FROM contexts "
            "WHERE owner = ? AND source = ? AND source_id = ?",
            (owner, source, source_id),
        )
        row = await cursor.fetchone()
        return _row_to_context(row) if row is not None else None

    async def insert(self, context: Context) -> int:
        """Insert a new context.

        Args:
            context: Context to insert.

        Returns:
            The new row id.

        Raises:
            aiosqlite.IntegrityError: If the key already exists.
        """
        conn = self._connection()
        cursor = await conn.execute(
            """
            INSERT INTO contexts
            (owner, source, source_id, title, body, external_url,
             attributes, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                context.owner,
                context.source,
                context.source_id,
                context.title,
                context.body,
                context.external_url,
                json.dumps(context.attributes, default=str),
                _iso(context.created_at),
                _iso(context.updated_at),
            ),
        )
        await conn.commit()
        return int(cursor.lastrowid or 0)

    async def update(self, context: Context) -> bool:
        """Rewrite the mutable fields of an existing context.

        `created_at` is kept from the original row.

        Returns:
            True if a row was updated.
        """
        conn = self._connection()
        cursor = await conn.execute(
            """
            UPDATE contexts
            SET title = ?, body = ?, external_url = ?, attributes = ?, updated_at = ?
            WHERE owner = ? AND source = ? AND source_id = ?
            """,
            (
                context.title,
                context.body,
                context.external_url,
                json.dumps(context.attributes, default=str),
                _iso(context.updated_at),
                context.owner,
                context.source,
                context.source_id,
            ),
        )
        await conn.commit()
        return cursor.rowcount > 0

    async def query(
        self,
        owner: str,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        sources: Iterable[str] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Context]:
        """Return an owner's contexts, newest update first.

        Args:
            owner: Owner to read.
            created_from: Inclusive lower bound on created_at.
            created_to: Exclusive upper bound on created_at.
            sources: Restrict to these source tags.
            limit: Maximum rows.
            offset: Rows to skip, for pagination.

        Returns:
            Contexts ordered by updated_at descending.
        """
        conn = self._connection()
        clauses = ["owner = ?"]
        params: list[Any] = [owner]

        if created_from is not None:
            clauses.append("created_at >= ?")
            params.append(_iso(created_from))
        if created_to is not None:
            clauses.append("created_at < ?")
            params.append(_iso(created_to))
        if sources is not None:
            source_list = list(sources)
            if not source_list:
                return []
            clauses.append(f"source IN ({', '.join('?' for _ in source_list)})")
            params.extend(source_list)

        sql = (
            f"SELECT {_CONTEXT_COLUMNS} FROM contexts WHERE {' AND '.join(clauses)} "
            "ORDER BY updated_at DESC, id DESC"
        )
        if limit is not None or offset:
            # SQLite reads LIMIT -1 as unbounded
            sql += " LIMIT ? OFFSET ?"
            params.extend([-1 if limit is None else limit, offset])

        cursor = await conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [_row_to_context(row) for row in rows]

    async def count_by_source(self, owner: str) -> dict[str, int]:
        """Count an owner's contexts per source tag."""
        conn = self._connection()
        cursor = await conn.execute(
            "SELECT source, COUNT(*) FROM contexts WHERE owner = ? GROUP BY source",
            (owner,),
        )
        rows = await cursor.fetchall()
        return {row[0]: row[1] for row in rows}

    async def count(self, owner: str | None = None, source: str | None = None) -> int:
        """Count contexts, for one owner or overall, optionally of one source."""
        conn = self._connection()
        clauses: list[str] = []
        params: list[Any] = []
        if owner is not None:
            clauses.append("owner = ?")
            params.append(owner)
        if source is not None:
            clauses.append("source = ?")
            params.append(source)
        sql = "SELECT COUNT(*) FROM contexts"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        cursor = await conn.execute(sql, params)
        row = await cursor.fetchone()
        return int(row[0]) if row else 0

    # =========================================================================
    # SYNC STATE
    # =========================================================================

    async def get_last_sync(self, owner: str) -> datetime | None:
        """Return the owner's last successful sync time, if any."""
        conn = self._connection()
        cursor = await conn.execute("SELECT last_sync FROM sync_state WHERE owner = ?", (owner,))
        row = await cursor.fetchone()
        return _parse(row[0]) if row else None

    async def set_last_sync(self, owner: str, when: datetime) -> None:
        """Record the owner's last successful sync time."""
        conn = self._connection()
        await conn.execute(
            """
            INSERT INTO sync_state (owner, last_sync) VALUES (?, ?)
            ON CONFLICT(owner) DO UPDATE SET last_sync = excluded.last_sync
            """,
            (owner, _iso(when)),
        )
        await conn.commit()

    # =========================================================================
    # INTEGRATIONS
    # =========================================================================

    async def save_integration(self, integration: Integration) -> None:
        """Create or refresh the integration for (owner, provider).

        Saving reactivates a disconnected integration and keeps the
        original created_at.
        """
        conn = self._connection()
        now = datetime.now(UTC)
        await conn.execute(
            f"""
            INSERT INTO integrations ({_INTEGRATION_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(owner, provider) DO UPDATE SET
                access_token = excluded.access_token,
                refresh_token = excluded.refresh_token,
                expires_at = excluded.expires_at,
                workspace_id = excluded.workspace_id,
                site_metadata = excluded.site_metadata,
                active = excluded.active,
                updated_at = excluded.updated_at
            """,
            (
                integration.owner,
                integration.provider,
                integration.access_token,
                integration.refresh_token,
                _iso(integration.expires_at) if integration.expires_at else None,
                integration.workspace_id,
                json.dumps(integration.site_metadata),
                int(integration.active),
                _iso(integration.created_at or now),
                _iso(integration.updated_at or now),
            ),
        )
        await conn.commit()

        logger.info(
            "Saved integration",
            extra={"owner": integration.owner, "provider": integration.provider},
        )

    async def get_integration(
        self,
        owner: str,
        provider: str,
        active_only: bool = True,
    ) -> Integration | None:
        """Return the integration for (owner, provider).

        Args:
            owner: Owner.
            provider: Provider type.
            active_only: Ignore disconnected integrations.
        """
        conn = self._connection()
        sql = f"SELECT {_INTEGRATION_COLUMNS} FROM integrations WHERE owner = ? AND provider = ?"
        if active_only:
            sql += " AND active = 1"
        cursor = await conn.execute(sql, (owner, provider))
        row = await cursor.fetchone()
        return _row_to_integration(row) if row else None

    async def list_integrations(
        self,
        owner: str | None = None,
        active_only: bool = True,
    ) -> list[Integration]:
        """List integrations, optionally for one owner."""
        conn = self._connection()
        clauses: list[str] = []
        params: list[Any] = []
        if owner is not None:
            clauses.append("owner = ?")
            params.append(owner)
        if active_only:
            clauses.append("active = 1")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await conn.execute(
            f"SELECT {_INTEGRATION_COLUMNS} FROM integrations{where} ORDER BY owner, provider",
            params,
        )
        rows = await cursor.fetchall()
        return [_row_to_integration(row) for row in rows]

    async def find_owner_by_workspace(self, provider: str, workspace_id: str) -> str | None:
        """Resolve the owner of an active integration by workspace id."""
        conn = self._connection()
        cursor = await conn.execute(
            "SELECT owner FROM integrations "
            "WHERE provider = ? AND workspace_id = ? AND active = 1 "
            "ORDER BY updated_at DESC LIMIT 1",
            (provider, workspace_id),
        )
        row = await cursor.fetchone()
        return str(row[0]) if row else None

    async def deactivate_integration(self, owner: str, provider: str) -> bool:
        """Soft-disable an integration. Rows are never deleted.

        Returns:
            True if an active integration was deactivated.
        """
        conn = self._connection()
        cursor = await conn.execute(
            "UPDATE integrations SET active = 0, updated_at = ? "
            "WHERE owner = ? AND provider = ? AND active = 1",
            (_iso(datetime.now(UTC)), owner, provider),
        )
        await conn.commit()
        deactivated = cursor.rowcount > 0
        if deactivated:
            logger.info("Deactivated integration", extra={"owner": owner, "provider": provider})
        return deactivated

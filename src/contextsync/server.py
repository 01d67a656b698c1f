"""MCP server for ContextSync.

This module provides the Model Context Protocol (MCP) server implementation
that exposes ContextSync functionality as MCP tools.

The server runs over stdio transport and provides the following tools:
    - sync: Full sync of every connected provider for an owner
    - smart_sync: Throttled sync of the recent window
    - search: Natural-language search over stored contexts
    - stats: Stored totals per source and last sync time
    - list_contexts: Page through stored contexts, newest update first
    - get_detail: Live provider detail for a stored context

Every tool returns a single JSON document with a `status` field: 400 for
bad input, 404 when the owner has no connected integration, 200 otherwise
(including partial failures, which are listed under `errors`).

Example:
    Run as MCP server:
        contextsync serve
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import TYPE_CHECKING, Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from contextsync.config import load_config
from contextsync.constants import DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT, MCP_SERVER_NAME
from contextsync.core import ContextSyncCore
from contextsync.exceptions import IntegrationNotConnectedError, InvalidRequestError
from contextsync.logging import get_logger
from contextsync.models import ALL_SOURCES

if TYPE_CHECKING:
    from contextsync.models import ContextPage, SearchResponse, SyncResult

logger = get_logger(__name__)

# Initialize the MCP server
server = Server(MCP_SERVER_NAME)

# Global core instance (initialized on first tool call)
_core: ContextSyncCore | None = None

_OWNER_PROPERTY = {"type": "string", "description": "Account whose data to use"}


def get_core() -> ContextSyncCore:
    """Get or create the global ContextSyncCore instance.

    Returns:
        The singleton ContextSyncCore instance.
    """
    global _core
    if _core is None:
        _core = ContextSyncCore(load_config())
    return _core


@server.list_tools()  # type: ignore[no-untyped-call, untyped-decorator]
async def list_tools() -> list[Tool]:
    """List available MCP tools."""
    return [
        Tool(
            name="sync",
            description=(
                "Pull recent pull requests, issues, review requests, commits, Jira tickets "
                "and Slack messages for an owner into the local store. Use when the user "
                "asks to refresh everything or look further back than a week."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "owner": _OWNER_PROPERTY,
                    "days_back": {
                        "type": "integer",
                        "description": "Lookback window in days",
                        "default": 30,
                        "minimum": 1,
                    },
                },
                "required": ["owner"],
            },
        ),
        Tool(
            name="smart_sync",
            description=(
                "Refresh the last 7 days of activity unless a sync ran in the last "
                "5 minutes. Call this before searching at the start of a session."
            ),
            inputSchema={
                "type": "object",
                "properties": {"owner": _OWNER_PROPERTY},
                "required": ["owner"],
            },
        ),
        Tool(
            name="search",
            description=(
                "Search synced activity. Understands 'today', 'yesterday', 'this week', "
                "'last week', '@name' or \"name's\" for authors, 'is:open' style status "
                "filters and 'repo:name'. Remaining words are matched against titles, "
                "bodies and attributes."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "owner": _OWNER_PROPERTY,
                    "query": {"type": "string", "description": "Natural-language query"},
                    "limit": {
                        "type": "integer",
                        "description": "Maximum results",
                        "default": 20,
                        "minimum": 1,
                        "maximum": 100,
                    },
                },
                "required": ["owner", "query"],
            },
        ),
        Tool(
            name="stats",
            description="Show how many contexts are stored per source and when the last sync ran.",
            inputSchema={
                "type": "object",
                "properties": {"owner": _OWNER_PROPERTY},
                "required": ["owner"],
            },
        ),
        Tool(
            name="list_contexts",
            description=(
                "List stored contexts newest first, optionally for one source. Use to "
                "browse recent activity without a search term."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "owner": _OWNER_PROPERTY,
                    "source": {"type": "string", "enum": list(ALL_SOURCES)},
                    "limit": {
                        "type": "integer",
                        "description": "Page size",
                        "default": DEFAULT_LIST_LIMIT,
                        "minimum": 1,
                        "maximum": MAX_LIST_LIMIT,
                    },
                    "offset": {
                        "type": "integer",
                        "description": "Rows to skip",
                        "default": 0,
                        "minimum": 0,
                    },
                },
                "required": ["owner"],
            },
        ),
        Tool(
            name="get_detail",
            description=(
                "Fetch live detail for a stored result: files, reviews and checks for a "
                "pull request; comments, links and history for a ticket; or a full "
                "Slack thread."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "owner": _OWNER_PROPERTY,
                    "source": {"type": "string", "enum": list(ALL_SOURCES)},
                    "source_id": {"type": "string", "description": "source_id of the result"},
                },
                "required": ["owner", "source", "source_id"],
            },
        ),
    ]


def _require_str(arguments: dict[str, Any], key: str) -> str:
    value = arguments.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequestError(f"{key} is required")
    return value.strip()


def _query_arg(arguments: dict[str, Any]) -> str:
    # Blank queries fall through to an empty result
    value = arguments.get("query")
    if not isinstance(value, str):
        raise InvalidRequestError("query is required")
    return value.strip()


def _optional_int(arguments: dict[str, Any], key: str) -> int | None:
    value = arguments.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidRequestError(f"{key} must be an integer", {key: value})
    return value


def _sync_payload(result: SyncResult) -> dict[str, Any]:
    return {
        "counts": result.counts,
        "total": result.total,
        "errors": result.errors,
        "sources": [source.model_dump(mode="json") for source in result.sources],
        "duration_ms": result.duration_ms,
    }


def _page_payload(page: ContextPage) -> dict[str, Any]:
    return {
        "contexts": [context.model_dump(mode="json") for context in page.contexts],
        "pagination": {
            "total": page.total,
            "limit": page.limit,
            "offset": page.offset,
            "has_more": page.has_more,
        },
    }


def _search_payload(response: SearchResponse) -> dict[str, Any]:
    return {
        "results": [
            {
                "source": hit.context.source,
                "source_id": hit.context.source_id,
                "title": hit.context.title,
                "title_highlighted": hit.title_highlighted,
                "body_highlighted": hit.body_highlighted,
                "external_url": hit.context.external_url,
                "attributes": hit.context.attributes,
                "relevance": hit.relevance,
                "created_at": hit.context.created_at.isoformat(),
                "updated_at": hit.context.updated_at.isoformat(),
            }
            for hit in response.results
        ],
        "query_type": response.query_type,
        "filters_detected": response.filters_detected,
        "text": response.text,
    }


async def dispatch_tool(
    core: ContextSyncCore, name: str, arguments: dict[str, Any]
) -> dict[str, Any]:
    """Run one tool against the core and build its JSON payload.

    Args:
        core: The ContextSyncCore instance.
        name: Tool name.
        arguments: Tool arguments.

    Returns:
        Response payload including a `status` code.
    """
    try:
        if name == "sync":
            result = await core.sync(
                _require_str(arguments, "owner"), _optional_int(arguments, "days_back")
            )
            payload = _sync_payload(result)

        elif name == "smart_sync":
            smart = await core.smart_sync(_require_str(arguments, "owner"))
            payload = {
                "skipped": smart.skipped,
                "last_sync": smart.last_sync.isoformat() if smart.last_sync else None,
            }
            if smart.result is not None:
                payload.update(_sync_payload(smart.result))

        elif name == "search":
            response = await core.search(
                _require_str(arguments, "owner"),
                _query_arg(arguments),
                _optional_int(arguments, "limit"),
            )
            payload = _search_payload(response)

        elif name == "stats":
            stats = await core.stats(_require_str(arguments, "owner"))
            payload = {
                "total": stats.total,
                "counts_by_source": stats.counts_by_source,
                "last_sync": stats.last_sync.isoformat() if stats.last_sync else None,
            }

        elif name == "list_contexts":
            source = arguments.get("source")
            if source is not None and not isinstance(source, str):
                raise InvalidRequestError("source must be a string", {"source": source})
            limit = _optional_int(arguments, "limit")
            page = await core.list_contexts(
                _require_str(arguments, "owner"),
                source,
                DEFAULT_LIST_LIMIT if limit is None else limit,
                _optional_int(arguments, "offset") or 0,
            )
            payload = _page_payload(page)

        elif name == "get_detail":
            source = _require_str(arguments, "source")
            if source not in ALL_SOURCES:
                raise InvalidRequestError(f"Unknown source: {source}")
            detail = await core.get_detail(
                _require_str(arguments, "owner"), source, _require_str(arguments, "source_id")
            )
            payload = detail.model_dump(mode="json")

        else:
            raise InvalidRequestError(f"Unknown tool '{name}'")

    except InvalidRequestError as e:
        return {"error": e.message, "details": e.details, "status": 400}
    except IntegrationNotConnectedError as e:
        return {"error": "integration not connected", "provider": e.provider, "status": 404}

    payload["status"] = 200
    return payload


@server.call_tool()  # type: ignore[untyped-decorator]
async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    """Handle MCP tool calls.

    Args:
        name: The name of the tool to call.
        arguments: The tool arguments as a dictionary.

    Returns:
        List containing a single TextContent with the JSON result.
    """
    start_time = time.monotonic()
    logger.info("Tool call received", extra={"tool": name, "arguments": arguments})

    try:
        payload = await dispatch_tool(get_core(), name, arguments or {})
    except Exception as e:
        logger.exception("Tool call failed", extra={"tool": name, "error": str(e)})
        payload = {"error": str(e), "status": 500}

    logger.info(
        "Tool call completed",
        extra={
            "tool": name,
            "status": payload["status"],
            "duration_ms": int((time.monotonic() - start_time) * 1000),
        },
    )
    return [TextContent(type="text", text=json.dumps(payload, default=str))]


async def run_server() -> None:
    """Run the MCP server over stdio transport.

    Sets up the stdio transport and runs the server until interrupted.
    """
    logger.info("Starting MCP server")
    try:
        await get_core().start_events()
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
    finally:
        if _core is not None:
            await _core.close()


def main() -> None:
    """Entry point for the MCP server."""
    asyncio.run(run_server())


if __name__ == "__main__":
    main()

"""Search over stored contexts: filter, rank and highlight.

The store narrows by owner and created_at range; author, status, repo and
the free-text candidate test are applied here, case-insensitively. Ranking
is rule-based and the first matching rule wins:

    exact title match                     100
    title contains the term                50
    title contains the term's first word   40
    body contains the term                 30
    repo contains the term                 20
    author contains the term               15
    other attributes contain the term      10
    otherwise / filter-only query           1

Hits are ordered by rank, then most recently updated.
"""

from __future__ import annotations

import json
import re
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from contextsync.constants import (
    HIGHLIGHT_CLOSE,
    HIGHLIGHT_OPEN,
    MAX_SEARCH_LIMIT,
    RANK_ATTRIBUTES_CONTAIN,
    RANK_AUTHOR_CONTAINS,
    RANK_BODY_CONTAINS,
    RANK_EXACT_TITLE,
    RANK_FILTER_ONLY,
    RANK_REPO_CONTAINS,
    RANK_TITLE_CONTAINS,
    RANK_TITLE_FIRST_WORD,
)
from contextsync.exceptions import InvalidRequestError
from contextsync.logging import get_logger
from contextsync.models import SearchConfig, SearchHit, SearchResponse
from contextsync.query import parse_query, resolve_timezone

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from contextsync.models import Context, ParsedQuery
    from contextsync.storage import ContextStore

logger = get_logger(__name__)

_RANKED_ATTRIBUTES = ("repo", "author")


def _attr(context: Context, key: str) -> str:
    value = context.attributes.get(key)
    return str(value).lower() if value is not None else ""


def _other_attributes(context: Context) -> str:
    others: dict[str, Any] = {
        key: value for key, value in context.attributes.items() if key not in _RANKED_ATTRIBUTES
    }
    return json.dumps(others, default=str).lower()


def _first_word(term: str) -> str:
    words = term.split()
    return words[0] if words else term


def is_candidate(context: Context, term: str) -> bool:
    """Return True if the context is a free-text match for term."""
    needle = term.lower()
    title = context.title.lower()
    return (
        needle in title
        or needle in context.body.lower()
        or needle in json.dumps(context.attributes, default=str).lower()
        # A title holding only the first word still qualifies, ranked at 40
        or _first_word(needle) in title
    )


def matches_filters(context: Context, parsed: ParsedQuery) -> bool:
    """Apply the author, status and repo filters of a parsed query."""
    if parsed.author and parsed.author.lower() not in _attr(context, "author"):
        return False
    if parsed.status_values and _attr(context, "state") not in parsed.status_values:
        return False
    return not (parsed.repo and parsed.repo.lower() not in _attr(context, "repo"))


def rank(context: Context, term: str | None) -> int:
    """Score a context against the free-text term.

    Args:
        context: Candidate context.
        term: Free-text term, or None for filter-only queries.

    Returns:
        Relevance score; higher is better.
    """
    if not term:
        return RANK_FILTER_ONLY

    needle = term.lower()
    title = context.title.lower()
    if title.strip() == needle:
        return RANK_EXACT_TITLE
    if needle in title:
        return RANK_TITLE_CONTAINS
    if _first_word(needle) in title:
        return RANK_TITLE_FIRST_WORD
    if needle in context.body.lower():
        return RANK_BODY_CONTAINS
    if needle in _attr(context, "repo"):
        return RANK_REPO_CONTAINS
    if needle in _attr(context, "author"):
        return RANK_AUTHOR_CONTAINS
    if needle in _other_attributes(context):
        return RANK_ATTRIBUTES_CONTAIN
    return RANK_FILTER_ONLY


def highlight(text: str, terms: Iterable[str | None]) -> str:
    """Wrap every case-insensitive occurrence of the terms in <mark> tags.

    Single pass over the text with the longest term tried first, so
    overlapping terms never nest marks.
    """
    unique = sorted({term for term in terms if term}, key=len, reverse=True)
    if not unique or not text:
        return text
    pattern = re.compile("|".join(re.escape(term) for term in unique), re.IGNORECASE)
    return pattern.sub(lambda m: f"{HIGHLIGHT_OPEN}{m.group(0)}{HIGHLIGHT_CLOSE}", text)


class SearchEngine:
    """Query engine over the context store."""

    def __init__(
        self,
        store: ContextStore,
        config: SearchConfig | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._store = store
        self._config = config or SearchConfig()
        self._tz = resolve_timezone(self._config.timezone)
        self._clock = clock

    async def search(self, owner: str, query: str, limit: int | None = None) -> SearchResponse:
        """Search an owner's contexts.

        Args:
            owner: Owner to search.
            query: Natural-language query.
            limit: Maximum hits (default from config).

        Returns:
            SearchResponse with ranked, highlighted hits.

        Raises:
            InvalidRequestError: On a missing owner or query, or a bad limit.
        """
        if not owner:
            raise InvalidRequestError("owner is required")
        if query is None:
            raise InvalidRequestError("query is required")
        limit = self._config.default_limit if limit is None else limit
        if not 1 <= limit <= MAX_SEARCH_LIMIT:
            raise InvalidRequestError(
                f"limit must be between 1 and {MAX_SEARCH_LIMIT}", {"limit": limit}
            )

        parsed = parse_query(query, self._clock(), self._tz)
        if parsed.query_type == "empty":
            return SearchResponse(query_type="empty")

        start_time = time.monotonic()
        contexts = await self._store.query(
            owner, created_from=parsed.date_from, created_to=parsed.date_to
        )

        scored: list[tuple[int, Context]] = []
        for context in contexts:
            if not matches_filters(context, parsed):
                continue
            if parsed.text and not is_candidate(context, parsed.text):
                continue
            scored.append((rank(context, parsed.text), context))

        scored.sort(key=lambda item: (item[0], item[1].updated_at), reverse=True)

        marks = (parsed.text, parsed.author, parsed.repo)
        results = [
            SearchHit(
                context=context.model_copy(update={"relevance": score}),
                relevance=score,
                title_highlighted=highlight(context.title, marks),
                body_highlighted=highlight(context.body, marks),
            )
            for score, context in scored[:limit]
        ]

        logger.info(
            "Search complete",
            extra={
                "owner": owner,
                "query_type": parsed.query_type,
                "candidates": len(contexts),
                "results": len(results),
                "duration_ms": int((time.monotonic() - start_time) * 1000),
            },
        )
        return SearchResponse(
            results=results,
            query_type=parsed.query_type,
            filters_detected=parsed.filters_detected,
            text=parsed.text,
        )

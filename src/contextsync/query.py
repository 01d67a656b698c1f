"""Natural-language query parsing.

Extracts structured filters from a free-form query string:

    today | yesterday | this week | last week   created_at range
    @name, name's                                author filter
    is:<status>                                  status filter (with synonyms)
    repo:<name>                                  repository substring filter

Whatever remains after removing the markers is the free-text term.

Example:
    parsed = parse_query("@john is:open this week", now)
    parsed.author        # "john"
    parsed.status_values # ["open", "opened"]
    parsed.query_type    # "combined"
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Final
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from contextsync.constants import MIN_QUERY_LENGTH
from contextsync.exceptions import InvalidRequestError
from contextsync.models import ParsedQuery, QueryType
from contextsync.utils import collapse_whitespace

STATUS_SYNONYMS: Final[dict[str, tuple[str, ...]]] = {
    "open": ("open", "opened"),
    "closed": ("closed",),
    "merged": ("merged",),
    "draft": ("draft",),
    "done": ("done", "resolved", "closed"),
    "todo": ("to do", "todo", "open"),
    "in_progress": ("in progress",),
    "progress": ("in progress",),
}

_TEMPORAL = re.compile(r"\b(today|yesterday|this\s+week|last\s+week)\b", re.IGNORECASE)
_AT_AUTHOR = re.compile(r"(?<!\S)@([\w.\-]+)")
_POSSESSIVE_AUTHOR = re.compile(r"\b([\w.\-]+)'s\b", re.IGNORECASE)
_STATUS = re.compile(r"(?<!\S)is:([\w\-]+)", re.IGNORECASE)
_REPO = re.compile(r"(?<!\S)repo:([\w.\-/]+)", re.IGNORECASE)


def resolve_timezone(name: str) -> ZoneInfo:
    """Load a time zone by IANA name.

    Raises:
        InvalidRequestError: If the zone is unknown.
    """
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidRequestError(f"Unknown time zone: {name}") from e


def date_range(label: str, now: datetime, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Compute the half-open [from, to) range for a temporal keyword.

    Day and week boundaries are taken in `tz`; weeks start on Monday.

    Args:
        label: One of today, yesterday, this week, last week.
        now: Current instant (timezone-aware).
        tz: Zone used for the boundaries.

    Returns:
        (start, end) as timezone-aware datetimes in `tz`.
    """
    local_now = now.astimezone(tz)
    start_of_today = datetime(local_now.year, local_now.month, local_now.day, tzinfo=tz)
    start_of_week = start_of_today - timedelta(days=start_of_today.weekday())
    key = " ".join(label.lower().split())

    if key == "today":
        return start_of_today, start_of_today + timedelta(days=1)
    if key == "yesterday":
        return start_of_today - timedelta(days=1), start_of_today
    if key == "this week":
        return start_of_week, start_of_week + timedelta(weeks=1)
    if key == "last week":
        return start_of_week - timedelta(weeks=1), start_of_week
    raise ValueError(f"Unknown temporal keyword: {label}")


def _classify(filters: list[str]) -> QueryType:
    if not filters:
        return "text"
    if len(filters) > 1:
        return "combined"
    kind = filters[0]
    if kind == "date":
        return "date"
    if kind == "author":
        return "author"
    if kind == "status":
        return "status"
    return "repo"


def parse_query(text: str, now: datetime, tz: ZoneInfo | str = "UTC") -> ParsedQuery:
    """Parse a query string into filters and a residual free-text term.

    Args:
        text: Raw query.
        now: Current instant, used for temporal keywords.
        tz: Zone (or IANA name) for day and week boundaries.

    Returns:
        ParsedQuery. Queries shorter than two characters are typed "empty"
        and carry no filters.
    """
    zone = resolve_timezone(tz) if isinstance(tz, str) else tz
    stripped = text.strip()
    if len(stripped) < MIN_QUERY_LENGTH:
        return ParsedQuery(raw=text, query_type="empty")

    remaining = stripped
    fields: dict[str, object] = {}

    match = _TEMPORAL.search(remaining)
    if match:
        label = " ".join(match.group(1).lower().split())
        fields["date_from"], fields["date_to"] = date_range(label, now, zone)
        fields["date_label"] = label
        remaining = remaining[: match.start()] + " " + remaining[match.end() :]

    match = _STATUS.search(remaining)
    if match:
        token = match.group(1).lower()
        fields["status"] = token
        fields["status_values"] = list(STATUS_SYNONYMS.get(token, (token,)))
        remaining = remaining[: match.start()] + " " + remaining[match.end() :]

    match = _REPO.search(remaining)
    if match:
        fields["repo"] = match.group(1)
        remaining = remaining[: match.start()] + " " + remaining[match.end() :]

    match = _AT_AUTHOR.search(remaining) or _POSSESSIVE_AUTHOR.search(remaining)
    if match:
        fields["author"] = match.group(1)
        remaining = remaining[: match.start()] + " " + remaining[match.end() :]

    parsed = ParsedQuery(raw=text, text=collapse_whitespace(remaining) or None, **fields)
    parsed.query_type = _classify(parsed.filters_detected)
    return parsed

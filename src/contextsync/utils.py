"""Utility functions for text processing, timestamps and formatting."""

import re
from datetime import UTC, datetime

# Jira returns offsets without a colon, e.g. "2024-03-01T10:00:00.000+0000"
_COMPACT_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")

# Slack link/mention markup: <https://x|label>, <@U123>, <#C123|general>
_CHAT_MARKUP = re.compile(r"<[^>]*>")

_WHITESPACE = re.compile(r"\s+")


def truncate_text(text: str, max_chars: int, suffix: str = "...") -> str:
    """
    Truncate text to max_chars, breaking at a word boundary when possible.

    The result, suffix included, never exceeds max_chars.

    Args:
        text: Input text to truncate.
        max_chars: Maximum character limit.
        suffix: Marker appended when text was cut.

    Returns:
        Truncated text with suffix if cut, or original if within limit.

    Examples:
        >>> truncate_text("Fix flaky payment webhook test", 20)
        'Fix flaky payment...'
    """
    if not text or len(text) <= max_chars:
        return text

    if max_chars <= len(suffix):
        return text[:max_chars]

    available = max_chars - len(suffix)
    truncated = text[:available]

    # Cut mid-word: back up to the previous word boundary if it keeps half the text
    last_space = truncated.rfind(" ")
    if text[available] != " " and last_space > available * 0.5:
        truncated = truncated[:last_space]

    return truncated.rstrip() + suffix


def collapse_whitespace(text: str) -> str:
    """Collapse runs of whitespace to single spaces and strip the ends."""
    return _WHITESPACE.sub(" ", text).strip()


def first_line(text: str) -> str:
    """Return the first line of text, stripped."""
    return text.strip().split("\n", 1)[0].strip() if text else ""


def strip_chat_markup(text: str) -> str:
    """Remove Slack angle-bracket markup (links, mentions, channel refs)."""
    return collapse_whitespace(_CHAT_MARKUP.sub("", text or ""))


def _from_epoch(seconds: float) -> datetime | None:
    # Out-of-range, infinite or NaN epochs
    try:
        return datetime.fromtimestamp(float(seconds), tz=UTC)
    except (ValueError, OverflowError, OSError):
        return None


def parse_int(value: object, default: int = 0) -> int:
    """Convert a provider count to int, falling back to default."""
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError, OverflowError):
        return default


def parse_datetime(value: object) -> datetime | None:
    """
    Parse a provider timestamp into an aware UTC datetime.

    Accepts ISO 8601 strings (with "Z" or "+0000" style offsets), epoch
    seconds as numbers or numeric strings, and datetimes. Anything else,
    including malformed strings, yields None.

    Args:
        value: The raw timestamp value.

    Returns:
        An aware UTC datetime, or None if the value cannot be parsed.

    Examples:
        >>> parse_datetime("2024-01-15T10:30:00Z")
        datetime.datetime(2024, 1, 15, 10, 30, tzinfo=datetime.timezone.utc)
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)

    if isinstance(value, int | float) and not isinstance(value, bool):
        return _from_epoch(value)

    if not isinstance(value, str):
        return None

    text = value.strip()
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        return _from_epoch(seconds)

    text = _COMPACT_OFFSET.sub(r"\1:\2", text.replace("Z", "+00:00"))
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def format_duration(ms: int) -> str:
    """
    Format milliseconds to human-readable duration.

    Args:
        ms: Duration in milliseconds.

    Returns:
        Formatted string: "150ms", "2.5s", "1m 5s", etc.

    Examples:
        >>> format_duration(150)
        '150ms'
        >>> format_duration(2500)
        '2.5s'
        >>> format_duration(65000)
        '1m 5s'
    """
    if ms < 0:
        return "0ms"

    if ms < 1000:
        return f"{ms}ms"

    seconds = ms / 1000

    if seconds < 60:
        if seconds == int(seconds):
            return f"{int(seconds)}s"
        formatted = f"{seconds:.1f}".rstrip("0").rstrip(".")
        return f"{formatted}s"

    minutes = int(seconds // 60)
    remaining_seconds = int(seconds % 60)

    if remaining_seconds == 0:
        return f"{minutes}m"

    return f"{minutes}m {remaining_seconds}s"

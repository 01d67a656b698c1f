"""Normalizer mapping raw provider items to the canonical Context.

Pure functions only: no I/O, no clock reads except the injectable `now`.
`normalize` matches exhaustively on the raw item variant, so adding a
source means adding a variant and a branch here.

Minimal attribute set per source, relied on by search filters:

    every source   author, labels
    code_pr        state (open/closed/merged/draft), number, repo, draft,
                   merged, comments, reviewers, created_at, updated_at
    code_issue     as code_pr, plus assignees
    code_review    state, number, repo, review_type
    code_commit    sha, repo, branch, created_at
    ticket         key, state (lowercased status), status, type, priority,
                   assignee, reporter, project, project_name, components,
                   fix_versions, resolved, resolution
    chat_message   channel, channel_id, channel_kind, ts, thread_ts,
                   reply_count, reactions, mentions, files, replies, author_id

Malformed or missing fields degrade to "", "unknown", empty lists, or the
ingestion time; normalization never raises on bad provider data.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any, assert_never

from contextsync.constants import (
    CHAT_PREVIEW_MAX_LENGTH,
    COMMIT_HEADLINE_MAX_LENGTH,
    TITLE_MAX_LENGTH,
    UNKNOWN,
    UNKNOWN_REPO,
)
from contextsync.models import (
    Context,
    RawChatMessage,
    RawCommit,
    RawIssue,
    RawItem,
    RawPullRequest,
    RawReview,
    RawTicket,
)
from contextsync.utils import first_line, parse_datetime, strip_chat_markup, truncate_text

_REPO_FROM_URL = re.compile(r"repos/([^/]+)/([^/]+)/?$")
_MENTION = re.compile(r"<@([A-Z0-9]+)(?:\|[^>]*)?>")

_CHAT_TITLE_PREFIX = {
    "channel": "Slack",
    "private": "Slack Private",
    "dm": "Slack DM",
    "group_dm": "Slack Group DM",
}


# =============================================================================
# SAFE FIELD ACCESS
# =============================================================================


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _str(value: Any, default: str = "") -> str:
    if value is None:
        return default
    return value if isinstance(value, str) else str(value)


def _int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _names(items: Any, key: str = "name") -> list[str]:
    """Pull `key` out of a list of dicts, accepting bare strings too."""
    names = []
    for item in _list(items):
        if isinstance(item, str):
            names.append(item)
        elif isinstance(item, dict) and item.get(key):
            names.append(_str(item[key]))
    return names


def _title(text: str) -> str:
    return truncate_text(text, TITLE_MAX_LENGTH)


def _timestamps(created: Any, updated: Any, now: datetime) -> tuple[datetime, datetime]:
    created_at = parse_datetime(created) or now
    updated_at = parse_datetime(updated) or created_at
    return created_at, updated_at


def repo_from_url(repository_url: Any) -> str:
    """Return "owner/name" from a repository API URL, or unknown/unknown."""
    match = _REPO_FROM_URL.search(_str(repository_url))
    if match is None:
        return UNKNOWN_REPO
    return f"{match.group(1)}/{match.group(2)}"


def adf_to_text(adf: Any) -> str:
    """Extract plain text from Atlassian Document Format.

    Jira v3 returns descriptions and comments in ADF, a nested rich text
    tree. Block nodes end with a newline; unknown nodes contribute their
    children's text. Plain strings pass through unchanged.

    Args:
        adf: The ADF document, a plain string, or None.

    Returns:
        Extracted text, "" when there is none.
    """
    if adf is None:
        return ""
    if isinstance(adf, str):
        return adf
    if not isinstance(adf, dict):
        return ""

    def extract_from_node(node: Any) -> str:
        if not isinstance(node, dict):
            return ""
        node_type = node.get("type")
        if node_type == "text":
            return _str(node.get("text"))
        if node_type == "hardBreak":
            return "\n"
        if node_type == "mention":
            return _str(_dict(node.get("attrs")).get("text"))

        texts = "".join(extract_from_node(child) for child in _list(node.get("content")))

        if node_type in ("paragraph", "heading", "listItem", "codeBlock", "blockquote"):
            return texts + "\n"
        return texts

    return extract_from_node(adf).strip()


# =============================================================================
# SOURCE IDS
# =============================================================================


def source_id_of(raw: RawItem) -> str:
    """Return the provider-native id that keys a raw item within its source."""
    match raw:
        case RawPullRequest(data=data) | RawIssue(data=data):
            return _str(data.get("id"))
        case RawReview(data=data):
            return f"review_{_str(data.get('id'))}"
        case RawCommit(data=data):
            return _str(data.get("sha"))
        case RawTicket(data=data):
            return _str(data.get("id") or data.get("key"))
        case RawChatMessage(conversation=conversation, message=message):
            return f"{conversation.id}_{_str(message.get('ts'))}"
        case _:
            assert_never(raw)


# =============================================================================
# PER-SOURCE MAPPINGS
# =============================================================================


def _code_state(data: dict[str, Any]) -> tuple[str, bool, bool]:
    """Return (state, merged, draft) of a search API issue/PR item."""
    merged = bool(_dict(data.get("pull_request")).get("merged_at"))
    draft = bool(data.get("draft"))
    state = _str(data.get("state"), "open").lower()
    if merged:
        state = "merged"
    elif draft and state == "open":
        state = "draft"
    return state, merged, draft


def _code_attributes(data: dict[str, Any]) -> dict[str, Any]:
    state, merged, draft = _code_state(data)
    return {
        "state": state,
        "number": _int(data.get("number")),
        "author": _str(_dict(data.get("user")).get("login"), UNKNOWN),
        "repo": repo_from_url(data.get("repository_url")),
        "labels": _names(data.get("labels")),
        "comments": _int(data.get("comments")),
        "merged": merged,
        "draft": draft,
        "reviewers": _names(data.get("requested_reviewers"), key="login"),
        "created_at": _str(data.get("created_at")),
        "updated_at": _str(data.get("updated_at")),
    }


def _normalize_pull_request(owner: str, raw: RawPullRequest, now: datetime) -> Context:
    data = raw.data
    created_at, updated_at = _timestamps(data.get("created_at"), data.get("updated_at"), now)
    return Context(
        owner=owner,
        source="code_pr",
        source_id=source_id_of(raw),
        title=_title(_str(data.get("title"), "(untitled pull request)")),
        body=_str(data.get("body")),
        external_url=_str(data.get("html_url")),
        attributes=_code_attributes(data),
        created_at=created_at,
        updated_at=updated_at,
    )


def _normalize_issue(owner: str, raw: RawIssue, now: datetime) -> Context:
    data = raw.data
    created_at, updated_at = _timestamps(data.get("created_at"), data.get("updated_at"), now)
    attributes = _code_attributes(data)
    attributes["assignees"] = _names(data.get("assignees"), key="login")
    return Context(
        owner=owner,
        source="code_issue",
        source_id=source_id_of(raw),
        title=_title(_str(data.get("title"), "(untitled issue)")),
        body=_str(data.get("body")),
        external_url=_str(data.get("html_url")),
        attributes=attributes,
        created_at=created_at,
        updated_at=updated_at,
    )


def _normalize_review(owner: str, raw: RawReview, now: datetime) -> Context:
    data = raw.data
    created_at, updated_at = _timestamps(data.get("created_at"), data.get("updated_at"), now)
    attributes = _code_attributes(data)
    attributes["review_type"] = "requested"
    return Context(
        owner=owner,
        source="code_review",
        source_id=source_id_of(raw),
        title=_title(f"Review: {_str(data.get('title'), '(untitled pull request)')}"),
        body=_str(data.get("body")),
        external_url=_str(data.get("html_url")),
        attributes=attributes,
        created_at=created_at,
        updated_at=updated_at,
    )


def _normalize_commit(owner: str, raw: RawCommit, now: datetime) -> Context:
    data = raw.data
    commit = _dict(data.get("commit"))
    commit_author = _dict(commit.get("author"))
    message = _str(commit.get("message"))
    headline = truncate_text(first_line(message), COMMIT_HEADLINE_MAX_LENGTH) or "(no message)"
    authored = commit_author.get("date")
    created_at, updated_at = _timestamps(
        authored,
        _dict(commit.get("committer")).get("date") or authored,
        now,
    )
    author = _dict(data.get("author")).get("login") or commit_author.get("name") or UNKNOWN
    return Context(
        owner=owner,
        source="code_commit",
        source_id=source_id_of(raw),
        title=_title(f"Commit: {headline}"),
        body=message,
        external_url=_str(data.get("html_url")),
        attributes={
            "sha": _str(data.get("sha")),
            "author": _str(author),
            "repo": raw.repo or UNKNOWN_REPO,
            "branch": raw.branch or "",
            "labels": [],
            "created_at": _str(authored),
        },
        created_at=created_at,
        updated_at=updated_at,
    )


def _normalize_ticket(owner: str, raw: RawTicket, now: datetime) -> Context:
    data = raw.data
    fields = _dict(data.get("fields"))
    key = _str(data.get("key"), UNKNOWN)
    status = _str(_dict(fields.get("status")).get("name"), UNKNOWN)
    project = _dict(fields.get("project"))
    created_at, updated_at = _timestamps(fields.get("created"), fields.get("updated"), now)
    url = f"{raw.site_url.rstrip('/')}/browse/{key}" if raw.site_url else _str(data.get("self"))
    return Context(
        owner=owner,
        source="ticket",
        source_id=source_id_of(raw),
        title=_title(f"{key}: {_str(fields.get('summary'), '(no summary)')}"),
        body=adf_to_text(fields.get("description")),
        external_url=url,
        attributes={
            "key": key,
            "state": status.lower(),
            "status": status,
            "type": _str(_dict(fields.get("issuetype")).get("name"), UNKNOWN),
            "priority": _str(_dict(fields.get("priority")).get("name"), "None"),
            "author": _str(_dict(fields.get("reporter")).get("displayName"), UNKNOWN),
            "assignee": _str(_dict(fields.get("assignee")).get("displayName"), "Unassigned"),
            "reporter": _str(_dict(fields.get("reporter")).get("displayName"), UNKNOWN),
            "project": _str(project.get("key"), UNKNOWN),
            "project_name": _str(project.get("name"), UNKNOWN),
            "labels": _names(fields.get("labels")),
            "components": _names(fields.get("components")),
            "fix_versions": _names(fields.get("fixVersions")),
            "resolved": _str(fields.get("resolutiondate")) or None,
            "resolution": _dict(fields.get("resolution")).get("name"),
        },
        created_at=created_at,
        updated_at=updated_at,
    )


def _normalize_chat_message(owner: str, raw: RawChatMessage, now: datetime) -> Context:
    message = raw.message
    conversation = raw.conversation
    text = _str(message.get("text"))
    ts = _str(message.get("ts"))

    preview = truncate_text(strip_chat_markup(text), CHAT_PREVIEW_MAX_LENGTH) or "(No text)"
    prefix = _CHAT_TITLE_PREFIX[conversation.kind]
    name = conversation.name or conversation.id

    created_at, updated_at = _timestamps(
        ts,
        _dict(message.get("edited")).get("ts") or message.get("latest_reply") or ts,
        now,
    )

    if raw.permalink:
        url = raw.permalink
    else:
        url = f"slack://channel?team={raw.team_id or ''}&id={conversation.id}&message={ts}"

    author_id = _str(message.get("user") or message.get("bot_id"), UNKNOWN)
    return Context(
        owner=owner,
        source="chat_message",
        source_id=source_id_of(raw),
        title=_title(f"{prefix}: {name} - {preview}"),
        body=text,
        external_url=url,
        attributes={
            "channel": name,
            "channel_id": conversation.id,
            "channel_kind": conversation.kind,
            "ts": ts,
            "thread_ts": message.get("thread_ts"),
            "reply_count": _int(message.get("reply_count")),
            "reply_users_count": _int(message.get("reply_users_count")),
            "author": raw.author_name or _str(message.get("username")) or author_id,
            "author_id": author_id,
            "labels": [],
            "reactions": [
                {"name": _str(r.get("name")), "count": _int(r.get("count"))}
                for r in _list(message.get("reactions"))
                if isinstance(r, dict)
            ],
            "mentions": _MENTION.findall(text),
            "files": [
                {"name": _str(f.get("name")), "url": _str(f.get("url_private"))}
                for f in _list(message.get("files"))
                if isinstance(f, dict)
            ],
            "replies": [
                {
                    "user": _str(reply.get("user"), UNKNOWN),
                    "text": _str(reply.get("text")),
                    "ts": _str(reply.get("ts")),
                }
                for reply in raw.replies
            ],
        },
        created_at=created_at,
        updated_at=updated_at,
    )


def normalize(owner: str, raw: RawItem, now: datetime | None = None) -> Context:
    """Map one raw provider item to the canonical Context.

    Args:
        owner: Owner the record belongs to.
        raw: A raw item variant.
        now: Ingestion time used when the provider reports no timestamp.

    Returns:
        The normalized Context.
    """
    now = now or datetime.now(UTC)
    match raw:
        case RawPullRequest():
            return _normalize_pull_request(owner, raw, now)
        case RawIssue():
            return _normalize_issue(owner, raw, now)
        case RawReview():
            return _normalize_review(owner, raw, now)
        case RawCommit():
            return _normalize_commit(owner, raw, now)
        case RawTicket():
            return _normalize_ticket(owner, raw, now)
        case RawChatMessage():
            return _normalize_chat_message(owner, raw, now)
        case _:
            assert_never(raw)

"""Normalization of on-disk store documents into the current record shape.

Older writers stored a single ``status`` per comment and sometimes omitted
threads, ids, or timestamps. ``normalize_store_data`` runs once on every load
and returns a document that validates against ``FeedbackStore``, so legacy
field names never reach the rest of the system.
"""

from typing import Any

from inline_feedback.config import STORE_VERSION

EPOCH_ISO = "1970-01-01T00:00:00.000Z"

WORKFLOW_STATES = {"open", "resolved"}
ANCHOR_STATES = {"anchored", "stale", "orphaned"}

# Legacy single status -> (workflowState, anchorState)
LEGACY_STATUS_MAP: dict[str, tuple[str, str]] = {
    "open": ("open", "anchored"),
    "resolved": ("resolved", "anchored"),
    "stale": ("open", "stale"),
    "orphaned": ("open", "orphaned"),
}


def _non_empty_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _string_list(value: Any) -> list[str] | None:
    if not isinstance(value, list):
        return None
    return [line for line in value if isinstance(line, str)]


def _author(value: Any) -> str:
    return "agent" if value == "agent" else "human"


def normalize_reply(reply: Any, index: int) -> dict[str, Any]:
    """Normalize a single thread entry."""
    value = reply if isinstance(reply, dict) else {}
    return {
        "id": _non_empty_str(value.get("id")) or f"r_legacy_{index}",
        "author": _author(value.get("author")),
        "body": value.get("body") if isinstance(value.get("body"), str) else "",
        "createdAt": _non_empty_str(value.get("createdAt")) or EPOCH_ISO,
    }


def normalize_anchor(anchor: Any) -> dict[str, Any]:
    """Normalize an anchor, clamping invalid line numbers.

    Optional snapshot fields are only emitted when present with the right
    type, so absent context stays distinguishable from empty context.
    """
    value = anchor if isinstance(anchor, dict) else {}

    raw_start = value.get("startLine")
    start_line = int(raw_start) if _is_number(raw_start) and raw_start >= 1 else 1
    raw_end = value.get("endLine")
    end_line = int(raw_end) if _is_number(raw_end) and raw_end >= start_line else start_line

    normalized: dict[str, Any] = {"startLine": start_line, "endLine": end_line}

    for key in ("contextBefore", "contextAfter"):
        lines = _string_list(value.get(key))
        if lines is not None:
            normalized[key] = lines

    for key in ("targetContent", "contentHash", "lastAnchorCheck"):
        if isinstance(value.get(key), str):
            normalized[key] = value[key]

    return normalized


def normalize_comment(comment: Any, index: int) -> dict[str, Any]:
    """Normalize a comment, mapping legacy ``status`` onto the two state fields."""
    value = comment if isinstance(comment, dict) else {}
    status = value.get("status")
    legacy = LEGACY_STATUS_MAP.get(status) if isinstance(status, str) else None

    if value.get("workflowState") in WORKFLOW_STATES:
        workflow_state = value["workflowState"]
    else:
        workflow_state = legacy[0] if legacy else "open"

    if value.get("anchorState") in ANCHOR_STATES:
        anchor_state = value["anchorState"]
    else:
        anchor_state = legacy[1] if legacy else "anchored"

    thread = value.get("thread")
    replies = (
        [normalize_reply(entry, reply_index) for reply_index, entry in enumerate(thread)]
        if isinstance(thread, list)
        else []
    )

    file_path = value.get("file")
    normalized: dict[str, Any] = {
        "id": _non_empty_str(value.get("id")) or f"c_legacy_{index}",
        "file": file_path.replace("\\", "/") if isinstance(file_path, str) else "",
        "anchor": normalize_anchor(value.get("anchor")),
        "workflowState": workflow_state,
        "anchorState": anchor_state,
        "createdAt": _non_empty_str(value.get("createdAt")) or EPOCH_ISO,
        "author": _author(value.get("author")),
        "body": value.get("body") if isinstance(value.get("body"), str) else "",
        "thread": replies,
    }

    seen_at = _non_empty_str(value.get("agentLastSeenAt"))
    if seen_at is not None:
        normalized["agentLastSeenAt"] = seen_at

    return normalized


def normalize_store_data(data: Any) -> dict[str, Any]:
    """Normalize a parsed store document into the current schema.

    The caller is responsible for checking ``version`` before calling this.
    """
    comments = data.get("comments") if isinstance(data, dict) else None
    if not isinstance(comments, list):
        comments = []
    return {
        "version": STORE_VERSION,
        "comments": [normalize_comment(comment, index) for index, comment in enumerate(comments)],
    }

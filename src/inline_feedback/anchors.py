"""Anchor reconciliation: re-anchoring comments after source file edits.

Each comment stores the text it was attached to plus a few surrounding
lines. When the file changes, strategies are tried in order and the first
success wins:

1. Fast path: stored text still sits at the stored line
2. Unique exact match: stored text occurs exactly once elsewhere in the file
3. Fuzzy match: score every position by context, similarity, and proximity
4. Stale: nothing was confident enough, so keep the old position and say so

A missing file short-circuits everything and marks the comment orphaned.

Reconciliation only edits the comments it is given. Persisting the result
is the caller's job (normally via storage.mutate_store).
"""

import hashlib
from datetime import datetime, timezone
from pathlib import Path
from typing import NamedTuple

from inline_feedback.config import ReconcileSettings
from inline_feedback.fuzzy import (
    accept_candidate,
    find_unique_exact_match,
    get_slice,
    index_to_line_number,
    normalize_line_endings,
    scan_candidates,
)
from inline_feedback.logging import get_logger
from inline_feedback.models import (
    Anchor,
    AnchorState,
    Comment,
    FeedbackStore,
    ReconcileReport,
    parse_iso,
    utc_now_iso,
)


class FileInfo(NamedTuple):
    """Snapshot of a target file as seen by the reconciler."""

    exists: bool
    mtime: float  # POSIX timestamp, 0.0 when missing
    content: str  # LF-normalized text
    lines: list[str]

    @classmethod
    def from_text(cls, text: str, mtime: float = 0.0) -> "FileInfo":
        """Build file info from in-memory text (e.g. an unsaved editor buffer)."""
        content = normalize_line_endings(text)
        return cls(exists=True, mtime=mtime, content=content, lines=content.split("\n"))

    @classmethod
    def missing(cls) -> "FileInfo":
        return cls(exists=False, mtime=0.0, content="", lines=[])


def normalize_path(file_path: str) -> str:
    """Forward-slash form of a project-relative path."""
    return file_path.replace("\\", "/")


def hash_content(content: str | None) -> str:
    """Short digest of anchored text (first 8 hex chars of SHA-1)."""
    return hashlib.sha1((content or "").encode("utf-8")).hexdigest()[:8]


def read_source_text(path: Path) -> str:
    """Read a commented file as text; undecodable bytes become U+FFFD."""
    # Decode bytes ourselves: text mode would also rewrite lone "\r"
    return path.read_bytes().decode("utf-8", errors="replace")


def load_file_info(project_root: Path, file_path: str, cache: dict[str, FileInfo]) -> FileInfo:
    """
    Read a project file for reconciliation, memoized per normalized path.

    Paths that do not exist, or exist but are not regular files, are
    reported as missing rather than raised.

    Raises:
        OSError: For read failures other than a missing path
    """
    normalized = normalize_path(file_path)
    if normalized in cache:
        return cache[normalized]

    path = Path(project_root) / normalized
    try:
        stat = path.stat()
        if not path.is_file():
            info = FileInfo.missing()
        else:
            info = FileInfo.from_text(read_source_text(path), mtime=stat.st_mtime)
    except (FileNotFoundError, NotADirectoryError):
        info = FileInfo.missing()

    cache[normalized] = info
    return info


def target_line_count(anchor: Anchor) -> int:
    """Lines spanned by the anchor, preferring the stored text over the line numbers."""
    if anchor.target_content:
        return max(1, len(anchor.target_content.split("\n")))
    return max(1, anchor.end_line - anchor.start_line + 1)


def should_reconcile(comment: Comment, file_info: FileInfo, force: bool) -> bool:
    """Skip comments whose file has not been modified since the last check."""
    if force or not file_info.exists:
        return True
    last_check = parse_iso(comment.anchor.last_anchor_check)
    if last_check is None:
        return True
    modified = datetime.fromtimestamp(file_info.mtime, tz=timezone.utc)
    return modified > last_check


def snapshot_at(
    lines: list[str],
    start_line: int,
    end_line: int,
    before_window: int,
    after_window: int,
    now_iso: str,
) -> Anchor:
    """Capture an anchor for lines start_line..end_line with the given context windows."""
    target = get_slice(lines, start_line, end_line)
    return Anchor(
        start_line=start_line,
        end_line=end_line,
        context_before=lines[max(0, start_line - 1 - before_window) : max(0, start_line - 1)],
        context_after=lines[max(0, end_line) : max(0, end_line + after_window)],
        target_content=target,
        content_hash=hash_content(target),
        last_anchor_check=now_iso,
    )


def build_anchor_snapshot(
    lines: list[str],
    start_line: int,
    end_line: int,
    previous: Anchor,
    now_iso: str,
    settings: ReconcileSettings | None = None,
) -> Anchor:
    """Capture an anchor at a new position, keeping the previous context window sizes."""
    settings = settings or ReconcileSettings()
    before_window = (
        len(previous.context_before)
        if previous.context_before is not None
        else settings.default_context_window
    )
    after_window = (
        len(previous.context_after)
        if previous.context_after is not None
        else settings.default_context_window
    )
    return snapshot_at(lines, start_line, end_line, before_window, after_window, now_iso)


def create_anchor(
    lines: list[str],
    start_line: int,
    end_line: int,
    context_window: int = 2,
    now_iso: str | None = None,
) -> Anchor:
    """
    Create the initial anchor for a new comment.

    Args:
        lines: Current file lines
        start_line: Starting line number (1-indexed, inclusive)
        end_line: Ending line number (1-indexed, inclusive)
        context_window: Lines of context captured on each side; this size
            sticks with the comment for its lifetime
        now_iso: Timestamp recorded as the last anchor check

    Raises:
        ValueError: If the line range is outside the file or inverted
    """
    total_lines = len(lines)
    if start_line < 1 or start_line > total_lines:
        raise ValueError(
            f"Invalid start line: {start_line} (file has {total_lines} lines, "
            f"valid range: 1-{total_lines})"
        )
    if end_line < start_line or end_line > total_lines:
        raise ValueError(
            f"Invalid end line: {end_line} (must be between {start_line} and {total_lines})"
        )
    if context_window < 0:
        raise ValueError(f"context_window must be >= 0, got {context_window}")

    return snapshot_at(
        lines, start_line, end_line, context_window, context_window, now_iso or utc_now_iso()
    )


def locate_anchor(
    anchor: Anchor, file_info: FileInfo, settings: ReconcileSettings | None = None
) -> int | None:
    """
    Find the most likely current start line of an anchor in an existing file.

    Returns:
        1-indexed start line, or None when no position is confident enough
    """
    settings = settings or ReconcileSettings()
    start_line = anchor.start_line
    line_count = target_line_count(anchor)
    stored_target = anchor.target_content or ""

    if stored_target:
        # Strategy 1: unchanged at the stored position
        current = get_slice(file_info.lines, start_line, start_line + line_count - 1)
        if current == stored_target:
            return start_line

        # Strategy 2: moved, but only if the text is unambiguous
        index = find_unique_exact_match(file_info.content, stored_target)
        if index is not None:
            return index_to_line_number(file_info.content, index)

    # Strategy 3: fuzzy scan using context, similarity, and proximity
    context_before = anchor.context_before or []
    context_after = anchor.context_after or []
    has_context = len(context_before) + len(context_after) > 0

    best, second = scan_candidates(
        file_info.lines,
        stored_target,
        start_line,
        line_count,
        context_before,
        context_after,
        settings,
    )
    return accept_candidate(best, second, has_context, settings)


class AnchorUpdate(NamedTuple):
    """What a single-comment reconciliation changed."""

    changed: bool
    state_changed: bool


def _set_anchor_state(comment: Comment, state: AnchorState) -> bool:
    if comment.anchor_state == state:
        return False
    comment.anchor_state = state
    return True


def reconcile_comment_anchor(
    comment: Comment,
    file_info: FileInfo,
    now_iso: str,
    settings: ReconcileSettings | None = None,
) -> AnchorUpdate:
    """
    Reconcile one comment's anchor against its file, in place.

    Never touches workflow_state. Only fields whose values actually differ
    count as changes, so an unchanged file yields AnchorUpdate(False, False)
    apart from the refreshed check timestamp.
    """
    anchor = comment.anchor
    changed = False

    if not file_info.exists:
        state_changed = _set_anchor_state(comment, AnchorState.ORPHANED)
        if anchor.last_anchor_check != now_iso:
            anchor.last_anchor_check = now_iso
            changed = True
        return AnchorUpdate(changed or state_changed, state_changed)

    resolved_start = locate_anchor(anchor, file_info, settings)

    if resolved_start is None:
        state_changed = _set_anchor_state(comment, AnchorState.STALE)
        if anchor.last_anchor_check != now_iso:
            anchor.last_anchor_check = now_iso
            changed = True
        return AnchorUpdate(changed or state_changed, state_changed)

    resolved_end = resolved_start + target_line_count(anchor) - 1
    snapshot = build_anchor_snapshot(
        file_info.lines, resolved_start, resolved_end, anchor, now_iso, settings
    )

    if anchor.start_line != snapshot.start_line or anchor.end_line != snapshot.end_line:
        anchor.start_line = snapshot.start_line
        anchor.end_line = snapshot.end_line
        changed = True
    if (anchor.context_before or []) != snapshot.context_before:
        anchor.context_before = snapshot.context_before
        changed = True
    if (anchor.context_after or []) != snapshot.context_after:
        anchor.context_after = snapshot.context_after
        changed = True
    if (anchor.target_content or "") != snapshot.target_content:
        anchor.target_content = snapshot.target_content
        changed = True
    if (anchor.content_hash or "") != snapshot.content_hash:
        anchor.content_hash = snapshot.content_hash
        changed = True
    if anchor.last_anchor_check != snapshot.last_anchor_check:
        anchor.last_anchor_check = snapshot.last_anchor_check
        changed = True

    state_changed = _set_anchor_state(comment, AnchorState.ANCHORED)
    return AnchorUpdate(changed or state_changed, state_changed)


def reconcile_store(
    project_root: Path,
    store: FeedbackStore,
    *,
    force: bool = False,
    files: list[str] | None = None,
    now_iso: str | None = None,
    settings: ReconcileSettings | None = None,
) -> ReconcileReport:
    """
    Reconcile anchors in place for the comments in a store.

    Args:
        project_root: Root that comment file paths are relative to
        store: Store whose comments are updated in place
        force: Reconcile even comments whose file is unmodified since the last check
        files: Restrict reconciliation to these project-relative paths
        now_iso: Timestamp recorded on every check (defaults to now)
        settings: Fuzzy matching weights and thresholds

    Returns:
        ReconcileReport; ``changed`` tells the caller whether to persist
    """
    settings = settings or ReconcileSettings()
    file_filter = {normalize_path(f) for f in files} if files else None
    now_iso = now_iso or utc_now_iso()

    cache: dict[str, FileInfo] = {}
    checked = 0
    updated = 0
    transitions = 0

    for comment in store.comments:
        normalized = normalize_path(comment.file)
        if file_filter is not None and normalized not in file_filter:
            continue

        file_info = load_file_info(project_root, normalized, cache)
        if not should_reconcile(comment, file_info, force):
            continue

        checked += 1
        result = reconcile_comment_anchor(comment, file_info, now_iso, settings)
        if result.changed:
            updated += 1
        if result.state_changed:
            transitions += 1

    get_logger().debug(
        "Reconciled anchors",
        checked=checked,
        updated=updated,
        transitions=transitions,
        force=force,
    )
    return ReconcileReport(
        changed=updated > 0,
        checked_comments=checked,
        updated_comments=updated,
        anchor_state_transition_count=transitions,
    )

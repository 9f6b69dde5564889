"""Use cases shared by the CLI and the MCP server.

Both front-ends go through these functions so that filtering, reply rules,
and reconcile-on-read behave identically no matter who is asking. Every
read-modify-write goes through storage.mutate_store.
"""

from pathlib import Path
from typing import Any

from inline_feedback.anchors import create_anchor, read_source_text, reconcile_store
from inline_feedback.config import LockSettings, ReconcileSettings
from inline_feedback.fuzzy import split_lines
from inline_feedback.models import (
    AnchorState,
    AuthorType,
    Comment,
    FeedbackStore,
    ReconcileReport,
    Reply,
    WorkflowState,
    utc_now_iso,
)
from inline_feedback.storage import get_comment, mutate_store, read_store

ALL = "all"
WORKFLOW_FILTERS = {state.value for state in WorkflowState} | {ALL}
ANCHOR_FILTERS = {state.value for state in AnchorState} | {ALL}

# Legacy single --status filter -> (workflow filter, anchor filter)
LEGACY_STATUS_FILTERS: dict[str, tuple[str, str]] = {
    "open": ("open", "anchored"),
    "resolved": ("resolved", ALL),
    "stale": (ALL, "stale"),
    "orphaned": (ALL, "orphaned"),
    ALL: (ALL, ALL),
}


class CommentResolved(Exception):  # noqa: N818
    """Raised when replying to a resolved comment."""

    def __init__(self, comment_id: str) -> None:
        super().__init__(f"Comment {comment_id} is resolved. Run unresolve before replying.")
        self.comment_id = comment_id


class FileMissing(Exception):  # noqa: N818
    """Raised when an operation needs the text of a file that no longer exists."""

    pass


def load_store_for_read(
    project_root: Path,
    *,
    settings: ReconcileSettings | None = None,
    lock_settings: LockSettings | None = None,
) -> FeedbackStore:
    """
    Read the store with anchors brought up to date.

    Reconciles a lock-free snapshot first; only if something changed is the
    reconciliation repeated under the lock against the latest state and
    persisted. Read-only callers on an unchanged project never take the lock.
    """
    store, _ = read_store(project_root)
    report = reconcile_store(project_root, store, settings=settings)
    if not report.changed:
        return store

    def reconcile_latest(latest: FeedbackStore) -> bool:
        return reconcile_store(project_root, latest, settings=settings).changed

    return mutate_store(project_root, reconcile_latest, lock_settings=lock_settings).store


def reconcile_project(
    project_root: Path,
    *,
    force: bool = False,
    files: list[str] | None = None,
    settings: ReconcileSettings | None = None,
    lock_settings: LockSettings | None = None,
) -> ReconcileReport:
    """Reconcile anchors under the lock and persist any changes."""
    reports: list[ReconcileReport] = []

    def reconcile_latest(store: FeedbackStore) -> bool:
        report = reconcile_store(project_root, store, force=force, files=files, settings=settings)
        reports.append(report)
        return report.changed

    mutate_store(project_root, reconcile_latest, lock_settings=lock_settings)
    return reports[0]


def parse_list_filters(
    workflow: str | None = None, anchor: str | None = None, status: str | None = None
) -> tuple[str, str]:
    """
    Resolve list filters, honoring the legacy single ``status`` filter.

    ``status`` only applies when neither workflow nor anchor is given.

    Returns:
        (workflow filter, anchor filter); defaults are ("open", "all")

    Raises:
        ValueError: If any value is not recognised
    """
    if status and not workflow and not anchor:
        if status not in LEGACY_STATUS_FILTERS:
            raise ValueError("Invalid status filter. Use open|resolved|stale|orphaned|all.")
        return LEGACY_STATUS_FILTERS[status]

    workflow = workflow or WorkflowState.OPEN.value
    anchor = anchor or ALL
    if workflow not in WORKFLOW_FILTERS:
        raise ValueError("Invalid workflow filter. Use open|resolved|all.")
    if anchor not in ANCHOR_FILTERS:
        raise ValueError("Invalid anchor filter. Use anchored|stale|orphaned|all.")
    return workflow, anchor


def list_comments(
    store: FeedbackStore,
    workflow: str = WorkflowState.OPEN.value,
    anchor: str = ALL,
    unseen: bool = False,
    file_prefix: str | None = None,
) -> list[Comment]:
    """Filter comments, preserving store order."""
    comments = store.comments
    if workflow != ALL:
        comments = [c for c in comments if c.workflow_state.value == workflow]
    if anchor != ALL:
        comments = [c for c in comments if c.anchor_state.value == anchor]
    if unseen:
        comments = [c for c in comments if c.has_unseen_human_activity()]
    if file_prefix:
        prefix = file_prefix.replace("\\", "/")
        comments = [c for c in comments if c.file.startswith(prefix)]
    return comments


def add_reply(
    project_root: Path,
    comment_id: str,
    body: str,
    author: AuthorType = AuthorType.AGENT,
    *,
    now_iso: str | None = None,
    lock_settings: LockSettings | None = None,
) -> Reply:
    """
    Append a reply to a comment thread.

    Agent replies also mark the comment as seen by the agent.

    Raises:
        CommentNotFound: If the comment does not exist
        CommentResolved: If the comment is resolved
        ValueError: If body is empty
    """
    if not body.strip():
        raise ValueError("Reply body must not be empty.")
    now = now_iso or utc_now_iso()

    def append(store: FeedbackStore) -> Reply:
        comment = get_comment(store, comment_id)
        if comment.workflow_state == WorkflowState.RESOLVED:
            raise CommentResolved(comment_id)
        reply = comment.add_reply(author, body, created_at=now)
        if author == AuthorType.AGENT:
            comment.mark_agent_seen(now)
        return reply

    return mutate_store(project_root, append, lock_settings=lock_settings).result


def set_workflow_state(
    project_root: Path,
    comment_id: str,
    state: WorkflowState,
    *,
    now_iso: str | None = None,
    lock_settings: LockSettings | None = None,
) -> bool:
    """
    Resolve or reopen a comment.

    Returns:
        False if the comment was already in that state (nothing is written)

    Raises:
        CommentNotFound: If the comment does not exist
    """
    now = now_iso or utc_now_iso()

    def apply(store: FeedbackStore) -> bool:
        comment = get_comment(store, comment_id)
        changed = comment.resolve() if state == WorkflowState.RESOLVED else comment.reopen()
        if changed:
            comment.mark_agent_seen(now)
        return changed

    return mutate_store(project_root, apply, lock_settings=lock_settings).result


def mark_seen(
    project_root: Path,
    comment_id: str | None = None,
    *,
    now_iso: str | None = None,
    lock_settings: LockSettings | None = None,
) -> int:
    """
    Mark one comment, or every open comment with unseen activity, as seen.

    Returns:
        Number of comments whose agent_last_seen_at changed

    Raises:
        CommentNotFound: If comment_id is given and does not exist
    """
    now = now_iso or utc_now_iso()

    def apply(store: FeedbackStore) -> int | bool:
        if comment_id is not None:
            targets = [get_comment(store, comment_id)]
        else:
            targets = [
                c
                for c in store.comments
                if c.workflow_state == WorkflowState.OPEN and c.has_unseen_human_activity()
            ]
        count = sum(1 for comment in targets if comment.mark_agent_seen(now))
        return count if count else False

    result = mutate_store(project_root, apply, lock_settings=lock_settings).result
    return result or 0


def summarize(store: FeedbackStore) -> dict[str, Any]:
    """Counts by workflow and anchor state plus the files with open comments."""
    by_workflow: dict[str, int] = {}
    by_anchor: dict[str, int] = {}
    open_files: list[str] = []
    unseen_open = 0

    for comment in store.comments:
        workflow = comment.workflow_state.value
        anchor = comment.anchor_state.value
        by_workflow[workflow] = by_workflow.get(workflow, 0) + 1
        by_anchor[anchor] = by_anchor.get(anchor, 0) + 1

        if comment.workflow_state == WorkflowState.OPEN:
            if comment.file not in open_files:
                open_files.append(comment.file)
            if comment.has_unseen_human_activity():
                unseen_open += 1

    return {
        "total": len(store.comments),
        "byWorkflow": by_workflow,
        "byAnchor": by_anchor,
        "openFilesCount": len(open_files),
        "openFiles": open_files,
        "unseenOpenCount": unseen_open,
    }


def comment_context(project_root: Path, comment: Comment, lines: int = 10) -> dict[str, Any]:
    """
    Code surrounding a comment's anchor.

    Args:
        project_root: Project root
        comment: Comment to show
        lines: Context lines on each side of the anchored range

    Returns:
        {"file", "startLine", "endLine", "lines": [{"lineNum", "isTarget", "text"}]}

    Raises:
        FileMissing: If the comment is orphaned or its file is gone
    """
    if comment.anchor_state == AnchorState.ORPHANED:
        raise FileMissing(
            f"Comment {comment.id} is orphaned: the file {comment.file} no longer exists."
        )

    path = Path(project_root) / comment.file
    if not path.is_file():
        raise FileMissing(f"File not found: {comment.file}")

    file_lines = split_lines(read_source_text(path))
    start_line = comment.anchor.start_line
    end_line = comment.anchor.end_line
    window_start = max(0, start_line - 1 - lines)
    window_end = min(len(file_lines), end_line + lines)

    return {
        "file": comment.file,
        "startLine": window_start + 1,
        "endLine": window_end,
        "lines": [
            {
                "lineNum": idx + 1,
                "isTarget": start_line <= idx + 1 <= end_line,
                "text": file_lines[idx],
            }
            for idx in range(window_start, window_end)
        ],
    }


def relative_file_path(project_root: Path, file_path: Path) -> str:
    """
    Project-relative POSIX path of a file.

    Relative paths are taken relative to project_root.

    Raises:
        ValueError: If the path resolves outside project_root
    """
    root = Path(project_root).resolve()
    path = file_path if file_path.is_absolute() else root / file_path
    resolved = path.resolve()
    try:
        return resolved.relative_to(root).as_posix()
    except ValueError:
        raise ValueError(
            f"Path is outside project root:\n  Path: {resolved}\n  Root: {root}"
        ) from None


def add_comment(
    project_root: Path,
    file_path: Path,
    start_line: int,
    end_line: int,
    body: str,
    author: AuthorType = AuthorType.HUMAN,
    *,
    context_window: int | None = None,
    now_iso: str | None = None,
    settings: ReconcileSettings | None = None,
    lock_settings: LockSettings | None = None,
) -> Comment:
    """
    Create a comment anchored to lines of a project file.

    Raises:
        FileMissing: If the file does not exist
        ValueError: If the path is outside the project, the range is invalid,
            or body is empty
    """
    if not body.strip():
        raise ValueError("Comment body must not be empty.")

    relative = relative_file_path(project_root, file_path)
    path = Path(project_root) / relative
    if not path.is_file():
        raise FileMissing(f"File not found: {relative}")

    settings = settings or ReconcileSettings()
    window = settings.default_context_window if context_window is None else context_window
    now = now_iso or utc_now_iso()
    anchor = create_anchor(
        split_lines(read_source_text(path)),
        start_line,
        end_line,
        context_window=window,
        now_iso=now,
    )
    comment = Comment(file=relative, anchor=anchor, author=author, body=body, created_at=now)
    if author == AuthorType.AGENT:
        comment.mark_agent_seen(now)

    def append(store: FeedbackStore) -> None:
        store.comments.append(comment)

    mutate_store(project_root, append, lock_settings=lock_settings)
    return comment

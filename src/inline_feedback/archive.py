"""Archival of resolved comments into .feedback/archive.json."""

import json
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from inline_feedback.atomic_write import atomic_write_json
from inline_feedback.config import ARCHIVE_FILENAME, ARCHIVE_VERSION, FEEDBACK_DIR, LockSettings
from inline_feedback.models import Comment, FeedbackStore, WorkflowState, utc_now_iso
from inline_feedback.storage import StoreCorrupted, VersionMismatch, mutate_store


class ArchivedComment(BaseModel):
    """A resolved comment and when it left the live store."""

    archived_at: str = Field(..., alias="archivedAt")
    comment: Comment

    model_config = ConfigDict(populate_by_name=True)


class ArchiveResult(BaseModel):
    """Summary returned by archive_resolved."""

    archived_count: int
    remaining_count: int
    archive_path: str
    archive_file_created: bool


def archive_path(project_root: Path) -> Path:
    return Path(project_root) / FEEDBACK_DIR / ARCHIVE_FILENAME


def read_archive(project_root: Path) -> list[ArchivedComment]:
    """
    Load archived records. A missing archive is empty.

    Raises:
        VersionMismatch: If the archive version is unsupported
        StoreCorrupted: If the archive is not valid JSON
    """
    path = archive_path(project_root)
    if not path.exists():
        return []

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise StoreCorrupted(f"Invalid JSON in archive file {path}: {e}") from e

    if not isinstance(data, dict) or data.get("version") != ARCHIVE_VERSION:
        version = data.get("version") if isinstance(data, dict) else None
        raise VersionMismatch(
            f"Unsupported archive version: {version} (expected {ARCHIVE_VERSION})"
        )

    records = data.get("comments")
    if not isinstance(records, list):
        return []
    return [ArchivedComment.model_validate(record) for record in records]


def archive_resolved(
    project_root: Path,
    *,
    now_iso: str | None = None,
    lock_settings: LockSettings | None = None,
) -> ArchiveResult:
    """
    Move every resolved comment from the store into the archive file.

    The archive is appended while the store lock is held, so a concurrent
    archive run cannot archive the same comment twice.

    Returns:
        ArchiveResult with counts and the archive location
    """
    path = archive_path(project_root)
    archived_at = now_iso or utc_now_iso()
    created = not path.exists()

    def move_resolved(store: FeedbackStore) -> int | bool:
        resolved = [c for c in store.comments if c.workflow_state == WorkflowState.RESOLVED]
        if not resolved:
            return False

        records = read_archive(project_root)
        records.extend(ArchivedComment(archived_at=archived_at, comment=c) for c in resolved)
        atomic_write_json(
            {
                "version": ARCHIVE_VERSION,
                "comments": [
                    r.model_dump(mode="json", by_alias=True, exclude_none=True) for r in records
                ],
            },
            path,
        )
        store.comments = [c for c in store.comments if c.workflow_state != WorkflowState.RESOLVED]
        return len(resolved)

    outcome = mutate_store(project_root, move_resolved, lock_settings=lock_settings)
    archived = outcome.result or 0
    return ArchiveResult(
        archived_count=archived,
        remaining_count=len(outcome.store.comments),
        archive_path=str(path),
        archive_file_created=created and archived > 0,
    )

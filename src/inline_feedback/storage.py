"""Store file I/O: reading and writing .feedback/store.json.

All comments of a project live in one JSON document. Writers serialize
through a lock file (see locking.py) and replace the document atomically.
Readers never lock: they may see an older document, never a partial one.

Every read returns a *revision*, the SHA-256 of the raw bytes on disk.
Passing it back to ``write_store`` turns the write into an optimistic
concurrency check; ``mutate_store`` instead re-reads under the lock and
needs no check.
"""

import hashlib
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any, NamedTuple

from pydantic import ValidationError

from inline_feedback.atomic_write import atomic_write_text, dump_json
from inline_feedback.config import (
    FEEDBACK_DIR,
    LOCK_SUFFIX,
    STORE_FILENAME,
    STORE_VERSION,
    LockSettings,
)
from inline_feedback.locking import store_lock
from inline_feedback.logging import get_logger
from inline_feedback.migrations import normalize_store_data
from inline_feedback.models import Comment, FeedbackStore

MISSING_REVISION = "missing"


class StoreError(Exception):
    """Base exception for store failures."""

    pass


class VersionMismatch(StoreError):  # noqa: N818
    """On-disk schema version differs from STORE_VERSION. Needs migration, not retry."""

    pass


class StoreConflict(StoreError):
    """Store changed since the caller's snapshot was read. Re-read and reapply."""

    pass


class StoreCorrupted(StoreError):
    """Store document is not valid JSON or violates the schema."""

    pass


class CommentNotFound(StoreError):
    """Referenced comment id does not exist in the store."""

    def __init__(self, comment_id: str) -> None:
        super().__init__(f"Comment {comment_id} not found.")
        self.comment_id = comment_id


class StoreSnapshot(NamedTuple):
    """A parsed store and the revision of the bytes it was parsed from."""

    store: FeedbackStore
    revision: str


class MutateResult(NamedTuple):
    """Outcome of mutate_store."""

    store: FeedbackStore  # State after the mutator ran
    result: Any  # Whatever the mutator returned
    revision: str  # On-disk revision after the call


def find_project_root(start_path: Path | None = None) -> Path:
    """
    Find the project root by looking for a .feedback directory.

    Walks up the directory tree from start_path. Falls back to start_path
    itself when no ancestor has one, so a first write creates the store
    where the command was run.

    Args:
        start_path: Starting directory for search (defaults to current working directory)

    Returns:
        Absolute path to project root
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    for parent in [current] + list(current.parents):
        if (parent / FEEDBACK_DIR).is_dir():
            return parent

    return current


def store_path(project_root: Path) -> Path:
    return Path(project_root) / FEEDBACK_DIR / STORE_FILENAME


def lock_path(project_root: Path) -> Path:
    path = store_path(project_root)
    return path.with_name(path.name + LOCK_SUFFIX)


def compute_revision(raw: bytes) -> str:
    """Revision token for raw store bytes (hex SHA-256)."""
    return hashlib.sha256(raw).hexdigest()


def current_revision(project_root: Path) -> str:
    """
    Revision of the store as it is on disk right now.

    Front-ends watching the store file compare this against the revision
    returned by their own last write to tell self-triggered change events
    from external ones.
    """
    try:
        raw = store_path(project_root).read_bytes()
    except FileNotFoundError:
        return MISSING_REVISION
    return compute_revision(raw)


def parse_store(raw: bytes, source: Path | None = None) -> FeedbackStore:
    """
    Parse raw store bytes into a validated FeedbackStore.

    Args:
        raw: File content
        source: Path used in error messages

    Raises:
        VersionMismatch: If the document's version is not STORE_VERSION
        StoreCorrupted: If the document is not valid JSON or fails validation
    """
    where = source or "store"
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise StoreCorrupted(f"Invalid JSON in {where}: {e}") from e

    if not isinstance(data, dict):
        raise StoreCorrupted(f"Expected a JSON object in {where}")

    version = data.get("version")
    if version != STORE_VERSION:
        raise VersionMismatch(
            f"Unsupported store version: {version} (expected {STORE_VERSION}) in {where}"
        )

    try:
        store = FeedbackStore.model_validate(normalize_store_data(data))
    except ValidationError as e:
        raise StoreCorrupted(f"Store failed schema validation in {where}: {e}") from e

    _check_unique_ids(store)
    return store


def serialize_store(store: FeedbackStore) -> str:
    """
    Serialize a store deterministically.

    Key order follows the model field order, 2-space indent, trailing newline.

    Raises:
        StoreCorrupted: If comment ids are not unique
    """
    _check_unique_ids(store)
    document = store.to_document()
    document["version"] = STORE_VERSION
    return dump_json(document)


def _check_unique_ids(store: FeedbackStore) -> None:
    seen: set[str] = set()
    for comment in store.comments:
        if comment.id in seen:
            raise StoreCorrupted(f"Duplicate comment id in store: {comment.id}")
        seen.add(comment.id)


def read_store(project_root: Path) -> StoreSnapshot:
    """
    Read and parse the project's store.

    Args:
        project_root: Directory containing .feedback/

    Returns:
        StoreSnapshot of the parsed store and its revision. A missing file
        yields an empty store with revision MISSING_REVISION.

    Raises:
        VersionMismatch: If the on-disk version is unsupported
        StoreCorrupted: If the file is not a valid store document
    """
    path = store_path(project_root)
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        return StoreSnapshot(FeedbackStore(), MISSING_REVISION)

    return StoreSnapshot(parse_store(raw, path), compute_revision(raw))


def _write_locked(project_root: Path, store: FeedbackStore) -> str:
    """Write the store; caller must hold the lock and have validated the file on disk."""
    content = serialize_store(store)
    atomic_write_text(content, store_path(project_root))
    revision = compute_revision(content.encode("utf-8"))
    get_logger().debug("Wrote feedback store", comments=len(store.comments), revision=revision[:12])
    return revision


def write_store(
    project_root: Path,
    store: FeedbackStore,
    expected_revision: str | None = None,
    *,
    lock_settings: LockSettings | None = None,
) -> str:
    """
    Write the store atomically under the store lock.

    Args:
        project_root: Directory containing .feedback/
        store: Store to persist
        expected_revision: Revision returned by the read this store came from.
            If given and the file has changed since, nothing is written.
        lock_settings: Lock timing (defaults to LockSettings.from_env())

    Returns:
        Revision of the newly written document

    Raises:
        StoreConflict: If expected_revision no longer matches the file
        VersionMismatch / StoreCorrupted: If the current file cannot be loaded
        LockTimeout: If the lock cannot be acquired
        OSError: If the write fails
    """
    settings = lock_settings or LockSettings.from_env()
    with store_lock(
        lock_path(project_root),
        timeout=settings.timeout,
        retry_interval=settings.retry_interval,
        stale_after=settings.stale_after,
    ):
        # A document this version cannot load is never replaced
        _, on_disk = read_store(project_root)
        if expected_revision is not None and on_disk != expected_revision:
            raise StoreConflict(
                "Feedback store changed since it was read. Retry with fresh state.\n"
                f"  Expected revision: {expected_revision}\n"
                f"  Current revision:  {on_disk}"
            )
        return _write_locked(project_root, store)


def mutate_store(
    project_root: Path,
    mutator: Callable[[FeedbackStore], Any],
    *,
    lock_settings: LockSettings | None = None,
) -> MutateResult:
    """
    Apply mutator to the latest on-disk store under the lock and persist it.

    This is the primitive for every read-modify-write. The store handed to
    the mutator is read after the lock is taken, so concurrent mutations
    from other processes are never lost.

    Args:
        project_root: Directory containing .feedback/
        mutator: Function that edits the store in place. Returning False
            means "nothing changed" and skips the write.
        lock_settings: Lock timing (defaults to LockSettings.from_env())

    Returns:
        MutateResult with the store, the mutator's return value, and the
        resulting revision

    Raises:
        LockTimeout: If the lock cannot be acquired
        VersionMismatch / StoreCorrupted: If the current file cannot be loaded
        Exception: Anything the mutator raises, after the lock is released

    Example:
        >>> def resolve(store: FeedbackStore) -> bool:
        ...     return get_comment(store, "c_1234").resolve()
        >>> mutate_store(project_root, resolve)
    """
    settings = lock_settings or LockSettings.from_env()
    with store_lock(
        lock_path(project_root),
        timeout=settings.timeout,
        retry_interval=settings.retry_interval,
        stale_after=settings.stale_after,
    ):
        store, revision = read_store(project_root)
        result = mutator(store)
        if result is not False:
            revision = _write_locked(project_root, store)
        return MutateResult(store, result, revision)


def find_comment(store: FeedbackStore, comment_id: str) -> Comment | None:
    """Find a comment by id. Returns None if not found."""
    for comment in store.comments:
        if comment.id == comment_id:
            return comment
    return None


def get_comment(store: FeedbackStore, comment_id: str) -> Comment:
    """Find a comment by id.

    Raises:
        CommentNotFound: If no comment has that id
    """
    comment = find_comment(store, comment_id)
    if comment is None:
        raise CommentNotFound(comment_id)
    return comment

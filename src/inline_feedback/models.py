"""Data models for feedback comments, replies, and anchors.

The on-disk document uses camelCase keys; models expose snake_case
attributes and accept either spelling when validating.
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from ulid import new as new_ulid

from inline_feedback.config import STORE_VERSION


def utc_now_iso() -> str:
    """Current UTC time as ISO 8601 with millisecond precision and a Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO 8601 timestamp, returning None when absent or unparseable.

    Naive timestamps are treated as UTC so that comparisons never mix
    aware and naive datetimes.
    """
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def generate_comment_id() -> str:
    """Generate a comment ID (c_ prefix + lowercase ULID)."""
    return f"c_{str(new_ulid()).lower()}"


def generate_reply_id() -> str:
    """Generate a reply ID (r_ prefix + lowercase ULID)."""
    return f"r_{str(new_ulid()).lower()}"


class WorkflowState(str, Enum):
    """Review lifecycle, changed only by humans and agents."""

    OPEN = "open"
    RESOLVED = "resolved"


class AnchorState(str, Enum):
    """Anchor confidence, changed only by reconciliation."""

    ANCHORED = "anchored"  # Anchor located with confidence
    STALE = "stale"  # File exists but no confident relocation
    ORPHANED = "orphaned"  # Target file missing


class AuthorType(str, Enum):
    """Who wrote a comment or reply."""

    HUMAN = "human"
    AGENT = "agent"


class _FeedbackModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Reply(_FeedbackModel):
    """A single reply in a comment thread. Replies never change once written."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(default_factory=generate_reply_id, min_length=1)
    author: AuthorType
    body: str
    created_at: str = Field(default_factory=utc_now_iso)


class Anchor(_FeedbackModel):
    """Positional and content snapshot used to relocate a comment.

    context_before/context_after keep the window size chosen at creation;
    None means the record predates context capture, which is different
    from an empty window.
    """

    start_line: int = Field(..., ge=1)
    end_line: int = Field(..., ge=1)
    context_before: list[str] | None = None
    context_after: list[str] | None = None
    target_content: str | None = None
    content_hash: str | None = None
    last_anchor_check: str | None = None

    @field_validator("end_line")
    @classmethod
    def validate_line_range(cls, v: int, info) -> int:
        """Validate that end_line >= start_line."""
        if "start_line" in info.data and v < info.data["start_line"]:
            raise ValueError(f"end_line ({v}) must be >= start_line ({info.data['start_line']})")
        return v

    @property
    def line_range(self) -> str:
        if self.start_line == self.end_line:
            return str(self.start_line)
        return f"{self.start_line}-{self.end_line}"


class Comment(_FeedbackModel):
    """A review comment bound to a line range of a project file."""

    id: str = Field(default_factory=generate_comment_id, min_length=1)
    file: str
    anchor: Anchor
    workflow_state: WorkflowState = WorkflowState.OPEN
    anchor_state: AnchorState = AnchorState.ANCHORED
    created_at: str = Field(default_factory=utc_now_iso)
    author: AuthorType = AuthorType.HUMAN
    body: str = ""
    thread: list[Reply] = Field(default_factory=list)
    agent_last_seen_at: str | None = None

    @field_validator("file")
    @classmethod
    def normalize_file(cls, v: str) -> str:
        """Store paths with forward slashes regardless of platform."""
        return v.replace("\\", "/")

    @property
    def status(self) -> str:
        """Single display status combining workflow and anchor state."""
        if self.workflow_state == WorkflowState.RESOLVED:
            return "resolved"
        if self.anchor_state == AnchorState.STALE:
            return "stale"
        if self.anchor_state == AnchorState.ORPHANED:
            return "orphaned"
        return "open"

    @property
    def location(self) -> str:
        return f"{self.file}:{self.anchor.line_range}"

    def add_reply(self, author: AuthorType, body: str, created_at: str | None = None) -> Reply:
        """Append a reply to the thread.

        Args:
            author: Whether a human or agent wrote the reply
            body: Reply text
            created_at: Optional override timestamp (uses current UTC time if None)

        Returns:
            The newly created Reply
        """
        reply = Reply(author=author, body=body, created_at=created_at or utc_now_iso())
        self.thread.append(reply)
        return reply

    def resolve(self) -> bool:
        """Mark the comment resolved. Returns False if it already was."""
        if self.workflow_state == WorkflowState.RESOLVED:
            return False
        self.workflow_state = WorkflowState.RESOLVED
        return True

    def reopen(self) -> bool:
        """Reopen a resolved comment. Returns False if it was already open."""
        if self.workflow_state == WorkflowState.OPEN:
            return False
        self.workflow_state = WorkflowState.OPEN
        return True

    def mark_agent_seen(self, now_iso: str | None = None) -> bool:
        """Advance agent_last_seen_at. Returns True if the value changed."""
        value = now_iso or utc_now_iso()
        if self.agent_last_seen_at == value:
            return False
        self.agent_last_seen_at = value
        return True

    def latest_human_activity(self) -> datetime | None:
        """Latest timestamp of the human-authored root comment or human replies."""
        latest: datetime | None = None
        if self.author == AuthorType.HUMAN:
            latest = parse_iso(self.created_at)
        for reply in self.thread:
            if reply.author != AuthorType.HUMAN:
                continue
            reply_at = parse_iso(reply.created_at)
            if reply_at is not None and (latest is None or reply_at > latest):
                latest = reply_at
        return latest

    def has_unseen_human_activity(self) -> bool:
        """True when humans wrote something after the agent last looked."""
        latest = self.latest_human_activity()
        if latest is None:
            return False
        seen = parse_iso(self.agent_last_seen_at)
        if seen is None:
            return True
        return latest > seen


class FeedbackStore(_FeedbackModel):
    """Root structure of .feedback/store.json."""

    version: int = STORE_VERSION
    comments: list[Comment] = Field(default_factory=list)

    def to_document(self) -> dict:
        """JSON-ready dict in on-disk key spelling, omitting unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ReconcileReport(_FeedbackModel):
    """Summary of one reconciliation pass over a store."""

    changed: bool = False
    checked_comments: int = Field(default=0, ge=0)
    updated_comments: int = Field(default=0, ge=0)
    anchor_state_transition_count: int = Field(default=0, ge=0)

"""Shared fixtures for inline_feedback tests."""

from pathlib import Path

import pytest

from inline_feedback.anchors import create_anchor
from inline_feedback.fuzzy import split_lines
from inline_feedback.models import AuthorType, Comment, FeedbackStore
from inline_feedback.storage import write_store

OLD_ISO = "2000-01-01T00:00:00.000Z"

SAMPLE_SOURCE = """\
def greet(name):
    message = "Hello, " + name
    print(message)
    return message


def farewell(name):
    print("Goodbye, " + name)
"""


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Project root with an empty .feedback directory and one source file."""
    (tmp_path / ".feedback").mkdir()
    src = tmp_path / "src"
    src.mkdir()
    (src / "app.py").write_text(SAMPLE_SOURCE)
    return tmp_path


def build_comment(
    project_root: Path,
    file: str,
    start_line: int,
    end_line: int,
    body: str = "Please look at this",
    *,
    comment_id: str | None = None,
    author: AuthorType = AuthorType.HUMAN,
    now_iso: str = OLD_ISO,
    context_window: int = 2,
) -> Comment:
    """Build a comment anchored against the file's current text."""
    lines = split_lines((project_root / file).read_text())
    anchor = create_anchor(
        lines, start_line, end_line, context_window=context_window, now_iso=now_iso
    )
    fields = {"file": file, "anchor": anchor, "author": author, "body": body, "created_at": now_iso}
    if comment_id is not None:
        fields["id"] = comment_id
    return Comment(**fields)


def write_comments(project_root: Path, *comments: Comment) -> str:
    """Persist comments as the whole store; returns the new revision."""
    return write_store(project_root, FeedbackStore(comments=list(comments)))


@pytest.fixture
def make_comment():
    """Factory: make_comment(project_root, file, start, end, body, ...) -> Comment."""
    return build_comment


@pytest.fixture
def save_comments():
    """Factory: save_comments(project_root, *comments) -> revision."""
    return write_comments

"""Tests for the feedback CLI."""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from inline_feedback.archive import archive_path
from inline_feedback.cli import cli, parse_line_range, plural, truncate
from inline_feedback.locking import acquire_lock
from inline_feedback.models import AnchorState, AuthorType, WorkflowState
from inline_feedback.storage import get_comment, lock_path, read_store, store_path


@pytest.fixture
def runner():
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def seeded(project: Path, make_comment, save_comments) -> Path:
    """Project with an open human comment and a resolved one."""
    first = make_comment(project, "src/app.py", 2, 3, "Simplify this", comment_id="c_first")
    first.add_reply(AuthorType.AGENT, "Will do", created_at="2000-01-02T00:00:00.000Z")
    done = make_comment(project, "src/app.py", 7, 8, "Rename", comment_id="c_done")
    done.resolve()
    save_comments(project, first, done)
    return project


def invoke(runner: CliRunner, root: Path, *args: str):
    return runner.invoke(cli, ["--root", str(root), *args])


# ============================================================================
# Helpers
# ============================================================================


def test_parse_line_range():
    assert parse_line_range("10:15") == (10, 15)
    assert parse_line_range("7") == (7, 7)
    with pytest.raises(ValueError, match="format"):
        parse_line_range("1:2:3")
    with pytest.raises(ValueError, match="integers"):
        parse_line_range("a:b")


def test_plural_and_truncate():
    assert plural(1, "comment") == "1 comment"
    assert plural(2, "reply", "replies") == "2 replies"
    assert truncate("x" * 100, 10) == "xxxxxxx..."
    assert truncate("short") == "short"


# ============================================================================
# Read commands
# ============================================================================


def test_version(runner):
    result = runner.invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert "0.1.0" in result.output


def test_list_default_shows_open(runner, seeded):
    result = invoke(runner, seeded, "list")

    assert result.exit_code == 0
    assert "1 comment (workflow=open, anchor=all):" in result.output
    assert "[c_first] src/app.py:2-3 (workflow=open, anchor=anchored, unseen)" in result.output
    assert '"Simplify this"' in result.output
    assert "1 reply, last reply from: agent" in result.output
    assert "c_done" not in result.output


def test_list_json_and_filters(runner, seeded):
    result = invoke(runner, seeded, "list", "--workflow", "all", "--json")

    assert result.exit_code == 0
    data = json.loads(result.output)
    assert [c["id"] for c in data] == ["c_first", "c_done"]
    assert data[1]["workflowState"] == "resolved"

    legacy = invoke(runner, seeded, "list", "--status", "resolved", "--json")
    assert [c["id"] for c in json.loads(legacy.output)] == ["c_done"]


def test_list_empty(runner, project):
    result = invoke(runner, project, "list")

    assert result.exit_code == 0
    assert "No comments found for the selected filters." in result.output


def test_list_rejects_unknown_filter(runner, seeded):
    result = invoke(runner, seeded, "list", "--workflow", "closed")

    assert result.exit_code == 2
    assert "Invalid value" in result.output


def test_get_shows_thread(runner, seeded):
    result = invoke(runner, seeded, "get", "c_first")

    assert result.exit_code == 0
    assert "Comment c_first (workflow=open, anchor=anchored)" in result.output
    assert "File: src/app.py:2-3" in result.output
    assert "Agent last seen: never" in result.output
    assert "--- Thread (1 reply) ---" in result.output
    assert "Will do" in result.output


def test_get_unknown_comment(runner, seeded):
    result = invoke(runner, seeded, "get", "c_missing")

    assert result.exit_code == 1
    assert "Error: Comment c_missing not found." in result.output


def test_summary(runner, seeded):
    result = invoke(runner, seeded, "summary")

    assert result.exit_code == 0
    assert "1 open comment across 1 file." in result.output
    assert "Unseen open comments: 1." in result.output
    assert "  src/app.py" in result.output

    data = json.loads(invoke(runner, seeded, "summary", "--json").output)
    assert data["total"] == 2
    assert data["byWorkflow"] == {"open": 1, "resolved": 1}


def test_summary_empty(runner, project):
    result = invoke(runner, project, "summary")

    assert "No feedback comments." in result.output


def test_context(runner, seeded):
    result = invoke(runner, seeded, "context", "c_first", "-n", "1")

    assert result.exit_code == 0
    assert "--- Code Context (src/app.py) ---" in result.output
    assert "       1 | def greet(name):" in result.output
    assert ">>>    2 |" in result.output
    assert ">>>    3 |     print(message)" in result.output
    assert "       4 |     return message" in result.output


def test_context_orphaned(runner, seeded):
    (seeded / "src" / "app.py").unlink()

    result = invoke(runner, seeded, "context", "c_first")

    assert result.exit_code == 1
    assert "orphaned" in result.output


# ============================================================================
# Write commands
# ============================================================================


def test_reply(runner, seeded):
    result = invoke(runner, seeded, "reply", "c_first", "-m", "Done in abc123")

    assert result.exit_code == 0
    assert "added to comment c_first." in result.output
    comment = get_comment(read_store(seeded).store, "c_first")
    assert comment.thread[-1].body == "Done in abc123"
    assert comment.thread[-1].author == AuthorType.AGENT
    assert comment.agent_last_seen_at is not None


def test_reply_to_resolved(runner, seeded):
    result = invoke(runner, seeded, "reply", "c_done", "-m", "More")

    assert result.exit_code == 1
    assert "is resolved" in result.output


def test_resolve_and_unresolve(runner, seeded):
    assert "Comment c_first resolved." in invoke(runner, seeded, "resolve", "c_first").output
    assert "is already resolved." in invoke(runner, seeded, "resolve", "c_first").output
    assert "Comment c_first reopened." in invoke(runner, seeded, "unresolve", "c_first").output
    assert "is already open." in invoke(runner, seeded, "unresolve", "c_first").output

    comment = get_comment(read_store(seeded).store, "c_first")
    assert comment.workflow_state == WorkflowState.OPEN


def test_resolve_unknown(runner, seeded):
    result = invoke(runner, seeded, "resolve", "c_missing")

    assert result.exit_code == 1


def test_seen(runner, seeded):
    result = invoke(runner, seeded, "seen")

    assert result.exit_code == 0
    assert "Marked 1 comment as seen." in result.output
    assert "Marked 0 comments as seen." in invoke(runner, seeded, "seen").output


def test_reconcile_reports_changes(runner, seeded):
    (seeded / "src" / "app.py").unlink()

    result = invoke(runner, seeded, "reconcile", "--json")

    assert result.exit_code == 0
    report = json.loads(result.output)
    assert report["checkedComments"] == 2
    assert report["anchorStateTransitionCount"] == 2
    store, _ = read_store(seeded)
    assert {c.anchor_state for c in store.comments} == {AnchorState.ORPHANED}


def test_reconcile_text_output(runner, seeded):
    result = invoke(runner, seeded, "reconcile", "--force", "--file", "src/app.py")

    assert result.exit_code == 0
    assert "Checked 2 comments, updated 2, anchor state changes: 0." in result.output


def test_add(runner, project):
    result = invoke(
        runner, project, "add", str(project / "src" / "app.py"), "-L", "3:4", "Why print?"
    )

    assert result.exit_code == 0
    assert "Created comment c_" in result.output
    assert "File: src/app.py:3-4" in result.output
    comment = read_store(project).store.comments[0]
    assert comment.body == "Why print?"
    assert comment.anchor.target_content == "    print(message)\n    return message"


def test_add_invalid_range(runner, project):
    result = invoke(runner, project, "add", str(project / "src" / "app.py"), "-L", "5:2", "x")

    assert result.exit_code == 1
    assert "Invalid end line" in result.output
    assert not store_path(project).exists()


def test_archive(runner, seeded):
    result = invoke(runner, seeded, "archive")

    assert result.exit_code == 0
    assert "Archived 1 comment" in result.output
    assert archive_path(seeded).exists()
    assert "No resolved comments to archive." in invoke(runner, seeded, "archive").output


# ============================================================================
# Store errors
# ============================================================================


def test_lock_timeout_exit_code(runner, seeded, monkeypatch):
    monkeypatch.setenv("FEEDBACK_LOCK_TIMEOUT", "0.1")
    release = acquire_lock(lock_path(seeded))
    try:
        result = invoke(runner, seeded, "resolve", "c_first")
    finally:
        release()

    assert result.exit_code == 2
    assert "Timed out waiting for feedback store lock" in result.output


def test_version_mismatch_exit_code(runner, project):
    store_path(project).write_text('{"version": 99, "comments": []}')

    result = invoke(runner, project, "list")

    assert result.exit_code == 2
    assert "Unsupported store version: 99" in result.output


def test_corrupt_store_exit_code(runner, project):
    store_path(project).write_text("not json")

    result = invoke(runner, project, "summary")

    assert result.exit_code == 2
    assert "Invalid JSON" in result.output


def test_unreadable_store_exit_code(runner, project):
    store_path(project).mkdir()

    result = invoke(runner, project, "summary")

    assert result.exit_code == 2
    assert "Error: Could not access feedback files" in result.output


def test_verbose_logs_debug(runner, seeded):
    result = invoke(runner, seeded, "-v", "resolve", "c_first")

    assert result.exit_code == 0
    assert "DEBUG: Using project root" in result.output
    assert "DEBUG: Wrote feedback store" in result.output

    quiet = invoke(runner, seeded, "unresolve", "c_first")
    assert "DEBUG" not in quiet.output

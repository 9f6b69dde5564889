"""Tests for operations shared by the CLI and MCP server."""

import os
from pathlib import Path

import pytest

from inline_feedback.models import AnchorState, AuthorType, FeedbackStore, WorkflowState
from inline_feedback.operations import (
    CommentResolved,
    FileMissing,
    add_comment,
    add_reply,
    comment_context,
    list_comments,
    load_store_for_read,
    mark_seen,
    parse_list_filters,
    reconcile_project,
    relative_file_path,
    set_workflow_state,
    summarize,
)
from inline_feedback.storage import CommentNotFound, get_comment, read_store, store_path

OLD_ISO = "2000-01-01T00:00:00.000Z"
NOW = "2030-06-01T12:00:00.000Z"


@pytest.fixture
def populated(project: Path, make_comment, save_comments) -> Path:
    """Project with one comment in each state combination that matters."""
    (project / "docs").mkdir()
    (project / "docs" / "notes.md").write_text("# Notes\n\nSome text\n")

    open_comment = make_comment(project, "src/app.py", 2, 2, "Use f-string", comment_id="c_open")
    resolved = make_comment(project, "src/app.py", 7, 8, "Done", comment_id="c_resolved")
    resolved.resolve()
    stale = make_comment(project, "docs/notes.md", 3, 3, "Typo", comment_id="c_stale")
    stale.anchor_state = AnchorState.STALE
    agent = make_comment(
        project, "docs/notes.md", 1, 1, "Agent note", comment_id="c_agent",
        author=AuthorType.AGENT,
    )
    save_comments(project, open_comment, resolved, stale, agent)

    # Files last modified in 2001, after the comments' last check in 2000
    for path in (project / "src" / "app.py", project / "docs" / "notes.md"):
        os.utime(path, (978307200, 978307200))
    return project


class TestListFilters:
    """Tests for parse_list_filters() and list_comments()."""

    def test_default_filters(self):
        assert parse_list_filters() == ("open", "all")

    @pytest.mark.parametrize(
        "status,expected",
        [
            ("open", ("open", "anchored")),
            ("resolved", ("resolved", "all")),
            ("stale", ("all", "stale")),
            ("orphaned", ("all", "orphaned")),
            ("all", ("all", "all")),
        ],
    )
    def test_legacy_status(self, status, expected):
        assert parse_list_filters(status=status) == expected

    def test_status_ignored_with_explicit_filters(self):
        assert parse_list_filters(workflow="resolved", status="stale") == ("resolved", "all")

    def test_invalid_values(self):
        with pytest.raises(ValueError, match="workflow"):
            parse_list_filters(workflow="closed")
        with pytest.raises(ValueError, match="anchor"):
            parse_list_filters(anchor="lost")
        with pytest.raises(ValueError, match="status"):
            parse_list_filters(status="done")

    def test_list_comments(self, populated: Path):
        store, _ = read_store(populated)

        def ids(**kwargs):
            return [c.id for c in list_comments(store, **kwargs)]

        assert ids() == ["c_open", "c_stale", "c_agent"]
        assert ids(workflow="resolved") == ["c_resolved"]
        assert ids(workflow="all", anchor="stale") == ["c_stale"]
        assert ids(workflow="all", file_prefix="src/") == ["c_open", "c_resolved"]
        assert ids(unseen=True) == ["c_open", "c_stale"]


class TestReplies:
    """Tests for add_reply()."""

    def test_agent_reply_marks_seen(self, populated: Path):
        reply = add_reply(populated, "c_open", "Fixed in 3f2a", now_iso=NOW)

        comment = get_comment(read_store(populated).store, "c_open")
        assert comment.thread[-1].id == reply.id
        assert reply.author == AuthorType.AGENT
        assert comment.agent_last_seen_at == NOW
        assert comment.has_unseen_human_activity() is False

    def test_human_reply_does_not_mark_seen(self, populated: Path):
        add_reply(populated, "c_open", "Still broken", AuthorType.HUMAN, now_iso=NOW)

        comment = get_comment(read_store(populated).store, "c_open")
        assert comment.agent_last_seen_at is None
        assert comment.has_unseen_human_activity() is True

    def test_reply_to_resolved_rejected(self, populated: Path):
        with pytest.raises(CommentResolved, match="unresolve"):
            add_reply(populated, "c_resolved", "One more thing")

    def test_unknown_comment(self, populated: Path):
        with pytest.raises(CommentNotFound):
            add_reply(populated, "c_nope", "hello")

    def test_empty_body(self, populated: Path):
        with pytest.raises(ValueError):
            add_reply(populated, "c_open", "   ")


class TestWorkflowState:
    """Tests for set_workflow_state() and mark_seen()."""

    def test_resolve_then_reopen(self, populated: Path):
        assert set_workflow_state(populated, "c_open", WorkflowState.RESOLVED) is True
        assert set_workflow_state(populated, "c_open", WorkflowState.RESOLVED) is False
        assert set_workflow_state(populated, "c_open", WorkflowState.OPEN) is True

        comment = get_comment(read_store(populated).store, "c_open")
        assert comment.workflow_state == WorkflowState.OPEN
        assert comment.agent_last_seen_at is not None

    def test_noop_does_not_write(self, populated: Path):
        before = store_path(populated).read_bytes()

        set_workflow_state(populated, "c_resolved", WorkflowState.RESOLVED)

        assert store_path(populated).read_bytes() == before

    def test_mark_seen_all_open_unseen(self, populated: Path):
        assert mark_seen(populated, now_iso=NOW) == 2
        assert mark_seen(populated, now_iso=NOW) == 0

        store, _ = read_store(populated)
        assert get_comment(store, "c_resolved").agent_last_seen_at is None

    def test_mark_seen_single(self, populated: Path):
        assert mark_seen(populated, "c_resolved", now_iso=NOW) == 1

        with pytest.raises(CommentNotFound):
            mark_seen(populated, "c_nope")


def test_summarize(populated: Path):
    result = summarize(read_store(populated).store)

    assert result == {
        "total": 4,
        "byWorkflow": {"open": 3, "resolved": 1},
        "byAnchor": {"anchored": 3, "stale": 1},
        "openFilesCount": 2,
        "openFiles": ["src/app.py", "docs/notes.md"],
        "unseenOpenCount": 2,
    }


def test_summarize_empty():
    assert summarize(FeedbackStore())["total"] == 0


class TestCommentContext:
    """Tests for comment_context()."""

    def test_window_around_target(self, populated: Path):
        comment = get_comment(read_store(populated).store, "c_open")

        result = comment_context(populated, comment, lines=1)

        assert result["startLine"] == 1
        assert result["endLine"] == 3
        assert [line["isTarget"] for line in result["lines"]] == [False, True, False]
        assert result["lines"][1] == {
            "lineNum": 2,
            "isTarget": True,
            "text": '    message = "Hello, " + name',
        }

    def test_orphaned_comment(self, populated: Path):
        comment = get_comment(read_store(populated).store, "c_open")
        comment.anchor_state = AnchorState.ORPHANED

        with pytest.raises(FileMissing, match="orphaned"):
            comment_context(populated, comment)

    def test_file_removed(self, populated: Path):
        comment = get_comment(read_store(populated).store, "c_open")
        (populated / "src" / "app.py").unlink()

        with pytest.raises(FileMissing):
            comment_context(populated, comment)


class TestReconcileOnRead:
    """Tests for load_store_for_read() and reconcile_project()."""

    def test_second_read_does_not_write(self, populated: Path):
        """Once checked, unmodified files are skipped and the store is left alone."""
        load_store_for_read(populated)
        after_first = store_path(populated).read_bytes()

        store = load_store_for_read(populated)

        assert store_path(populated).read_bytes() == after_first
        assert get_comment(store, "c_open").anchor.start_line == 2
        assert get_comment(store, "c_open").anchor.last_anchor_check != OLD_ISO

    def test_missing_store_not_created(self, project: Path):
        store = load_store_for_read(project)

        assert store.comments == []
        assert not store_path(project).exists()

    def test_deleted_file_persisted_as_orphaned(self, populated: Path):
        (populated / "src" / "app.py").unlink()

        store = load_store_for_read(populated)

        assert get_comment(store, "c_open").anchor_state == AnchorState.ORPHANED
        on_disk = read_store(populated).store
        assert get_comment(on_disk, "c_open").anchor_state == AnchorState.ORPHANED
        assert get_comment(on_disk, "c_resolved").workflow_state == WorkflowState.RESOLVED

    def test_edit_shifts_anchor_on_read(self, populated: Path):
        source = populated / "src" / "app.py"
        source.write_text("# header\n" + source.read_text())

        store = load_store_for_read(populated)

        assert get_comment(store, "c_open").anchor.start_line == 3
        assert get_comment(read_store(populated).store, "c_open").anchor.start_line == 3

    def test_undecodable_file_does_not_break_reads(
        self, populated: Path, make_comment, save_comments
    ):
        """A commented file with invalid UTF-8 still reconciles and shows context."""
        latin = populated / "src" / "latin.py"
        latin.write_text("y = 'e'\n")
        comment = make_comment(populated, "src/latin.py", 1, 1, comment_id="c_latin")
        save_comments(populated, *read_store(populated).store.comments, comment)
        latin.write_bytes(b"y = '\xe9'\n")

        store = load_store_for_read(populated)

        assert get_comment(store, "c_open").anchor_state == AnchorState.ANCHORED
        context = comment_context(populated, get_comment(store, "c_latin"), lines=0)
        assert context["lines"][0]["text"] == "y = '\ufffd'"

    def test_reconcile_project_force(self, populated: Path):
        first = reconcile_project(populated, force=True)
        second = reconcile_project(populated, files=["docs/notes.md"])

        assert first.checked_comments == 4
        assert first.changed is True
        assert second.checked_comments == 0


class TestAddComment:
    """Tests for add_comment() and relative_file_path()."""

    def test_creates_anchored_comment(self, project: Path):
        comment = add_comment(
            project, Path("src/app.py"), 3, 4, "Why print here?", now_iso=OLD_ISO
        )

        stored = get_comment(read_store(project).store, comment.id)
        assert stored.file == "src/app.py"
        assert stored.anchor.target_content == "    print(message)\n    return message"
        assert stored.anchor.context_before == [
            "def greet(name):",
            '    message = "Hello, " + name',
        ]
        assert stored.anchor.context_after == ["", ""]
        assert stored.author == AuthorType.HUMAN
        assert stored.agent_last_seen_at is None

    def test_absolute_path_and_agent_author(self, project: Path):
        comment = add_comment(
            project,
            project / "src" / "app.py",
            1,
            1,
            "Note",
            AuthorType.AGENT,
            context_window=0,
            now_iso=OLD_ISO,
        )

        assert comment.anchor.context_before == []
        assert comment.anchor.context_after == []
        assert comment.agent_last_seen_at == OLD_ISO

    def test_rejects_bad_input(self, project: Path, tmp_path_factory):
        outside = tmp_path_factory.mktemp("elsewhere") / "x.py"
        outside.write_text("x = 1\n")

        with pytest.raises(ValueError, match="outside project root"):
            add_comment(project, outside, 1, 1, "Nope")
        with pytest.raises(FileMissing):
            add_comment(project, Path("src/missing.py"), 1, 1, "Nope")
        with pytest.raises(ValueError, match="Invalid end line"):
            add_comment(project, Path("src/app.py"), 2, 99, "Nope")
        with pytest.raises(ValueError, match="empty"):
            add_comment(project, Path("src/app.py"), 2, 2, "")

        assert not store_path(project).exists()

    def test_relative_file_path(self, project: Path):
        assert relative_file_path(project, Path("src/../src/app.py")) == "src/app.py"
        assert relative_file_path(project, project / "src" / "app.py") == "src/app.py"

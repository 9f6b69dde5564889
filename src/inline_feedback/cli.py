"""CLI entry point for inline feedback comments.

Exit codes:
    0: Success
    1: User error (unknown comment, invalid input, resolved comment)
    2: Store error (lock timeout, conflict, unsupported or corrupt store)
"""

import functools
import json
import sys
from pathlib import Path
from typing import Any

import click

from inline_feedback import __version__
from inline_feedback.archive import archive_resolved
from inline_feedback.locking import LockTimeout
from inline_feedback.logging import get_logger, init_logger
from inline_feedback.models import AuthorType, Comment, WorkflowState
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
    set_workflow_state,
    summarize,
)
from inline_feedback.storage import (
    CommentNotFound,
    StoreConflict,
    StoreCorrupted,
    VersionMismatch,
    find_project_root,
    get_comment,
)


def _dump(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False))


def comment_to_dict(comment: Comment) -> dict[str, Any]:
    return comment.model_dump(mode="json", by_alias=True, exclude_none=True)


def plural(count: int, singular: str, plural_form: str | None = None) -> str:
    return f"{count} {singular if count == 1 else (plural_form or singular + 's')}"


def truncate(text: str, max_len: int = 80) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def state_label(comment: Comment) -> str:
    return f"workflow={comment.workflow_state.value}, anchor={comment.anchor_state.value}"


def handle_store_errors(func):
    """Translate store and operation failures into messages and exit codes."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = get_logger()
        try:
            return func(*args, **kwargs)
        except (CommentNotFound, CommentResolved, FileMissing, ValueError) as e:
            logger.error(str(e))
            sys.exit(1)
        except (LockTimeout, StoreConflict) as e:
            logger.error(str(e), suggestion="Another process is updating feedback; retry.")
            sys.exit(2)
        except VersionMismatch as e:
            logger.error(str(e), suggestion="The store was written by a newer version.")
            sys.exit(2)
        except StoreCorrupted as e:
            logger.error(str(e))
            sys.exit(2)
        except OSError as e:
            logger.exception("Could not access feedback files", e)
            sys.exit(2)

    return wrapper


def _root(ctx: click.Context) -> Path:
    return ctx.obj["project_root"]


@click.group()
@click.version_option(version=__version__, prog_name="feedback")
@click.option("-v", "--verbose", is_flag=True, help="Print debug output to stderr")
@click.option(
    "--root",
    "root",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Project root (defaults to nearest ancestor containing .feedback/)",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, root: Path | None):
    """Inline code feedback for humans and agents."""
    init_logger(verbose=verbose)
    ctx.ensure_object(dict)
    ctx.obj["project_root"] = root.resolve() if root else find_project_root()
    get_logger().debug("Using project root", root=str(ctx.obj["project_root"]))


@cli.command(name="list")
@click.option(
    "--workflow",
    type=click.Choice(["open", "resolved", "all"]),
    help="Filter by workflow state (default: open)",
)
@click.option(
    "--anchor",
    type=click.Choice(["anchored", "stale", "orphaned", "all"]),
    help="Filter by anchor state (default: all)",
)
@click.option(
    "--status",
    type=click.Choice(["open", "resolved", "stale", "orphaned", "all"]),
    help="Legacy combined filter; ignored when --workflow or --anchor is given",
)
@click.option("--unseen", is_flag=True, help="Only comments with unseen human activity")
@click.option("--file", "file_prefix", help="Only comments on files with this path prefix")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_context
@handle_store_errors
def list_cmd(ctx, workflow, anchor, status, unseen, file_prefix, as_json):
    """List comments. Default filters: workflow=open, anchor=all."""
    workflow, anchor = parse_list_filters(workflow, anchor, status)
    store = load_store_for_read(_root(ctx))
    comments = list_comments(
        store, workflow=workflow, anchor=anchor, unseen=unseen, file_prefix=file_prefix
    )

    if as_json:
        _dump([comment_to_dict(c) for c in comments])
        return

    if not comments:
        click.echo("No comments found for the selected filters.")
        return

    filters = [f"workflow={workflow}", f"anchor={anchor}"]
    if unseen:
        filters.append("unseen=true")
    click.echo(f"{plural(len(comments), 'comment')} ({', '.join(filters)}):\n")

    for c in comments:
        replies = plural(len(c.thread), "reply", "replies")
        if c.thread:
            replies += f", last reply from: {c.thread[-1].author.value}"
        seen = "unseen" if c.has_unseen_human_activity() else "seen"
        click.echo(f"[{c.id}] {c.location} ({state_label(c)}, {seen})")
        click.echo(f'  "{truncate(c.body)}"')
        click.echo(f"  {replies}\n")


@cli.command()
@click.argument("comment_id")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_context
@handle_store_errors
def get(ctx, comment_id, as_json):
    """Show a comment with its full thread."""
    comment = get_comment(load_store_for_read(_root(ctx)), comment_id)

    if as_json:
        _dump(comment_to_dict(comment))
        return

    latest = comment.latest_human_activity()
    click.echo(f"Comment {comment.id} ({state_label(comment)})")
    click.echo(f"File: {comment.location}")
    click.echo(f"Author: {comment.author.value}")
    click.echo(f"Created: {comment.created_at}")
    click.echo(f"Agent last seen: {comment.agent_last_seen_at or 'never'}")
    click.echo(f"Latest human activity: {latest.isoformat() if latest else 'none'}")
    click.echo(f"\n{comment.body}")

    if comment.thread:
        click.echo(f"\n--- Thread ({plural(len(comment.thread), 'reply', 'replies')}) ---")
        for reply in comment.thread:
            click.echo(f"\n[{reply.id}] {reply.author.value} ({reply.created_at}):")
            click.echo(reply.body)


@cli.command()
@click.argument("comment_id")
@click.option("-m", "--message", required=True, help="Reply text")
@click.option(
    "--author",
    type=click.Choice(["human", "agent"]),
    default="agent",
    show_default=True,
    help="Who is replying",
)
@click.pass_context
@handle_store_errors
def reply(ctx, comment_id, message, author):
    """Reply to a comment thread."""
    new_reply = add_reply(_root(ctx), comment_id, message, AuthorType(author))
    click.echo(f"Reply {new_reply.id} added to comment {comment_id}.")


@cli.command()
@click.argument("comment_id")
@click.pass_context
@handle_store_errors
def resolve(ctx, comment_id):
    """Mark a comment as resolved."""
    if set_workflow_state(_root(ctx), comment_id, WorkflowState.RESOLVED):
        click.echo(f"Comment {comment_id} resolved.")
    else:
        click.echo(f"Comment {comment_id} is already resolved.")


@cli.command()
@click.argument("comment_id")
@click.pass_context
@handle_store_errors
def unresolve(ctx, comment_id):
    """Reopen a resolved comment."""
    if set_workflow_state(_root(ctx), comment_id, WorkflowState.OPEN):
        click.echo(f"Comment {comment_id} reopened.")
    else:
        click.echo(f"Comment {comment_id} is already open.")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_context
@handle_store_errors
def summary(ctx, as_json):
    """Summary of open comments across the project."""
    store = load_store_for_read(_root(ctx))
    result = summarize(store)

    if as_json:
        _dump(result)
        return

    if result["total"] == 0:
        click.echo("No feedback comments.")
        return

    open_count = result["byWorkflow"].get("open", 0)
    click.echo(
        f"{plural(open_count, 'open comment')} across {plural(result['openFilesCount'], 'file')}."
    )
    click.echo(f"Unseen open comments: {result['unseenOpenCount']}.")
    workflow_parts = [f"{count} {state}" for state, count in result["byWorkflow"].items()]
    click.echo(f"Workflow: {', '.join(workflow_parts)}.")
    anchor_parts = [f"{count} {state}" for state, count in result["byAnchor"].items()]
    click.echo(f"Anchors: {', '.join(anchor_parts)}.")

    if result["openFiles"]:
        click.echo("\nFiles with open comments:")
        for file_path in result["openFiles"]:
            click.echo(f"  {file_path}")


@cli.command()
@click.argument("comment_id")
@click.option("-n", "--lines", type=click.IntRange(min=0), default=10, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_context
@handle_store_errors
def context(ctx, comment_id, lines, as_json):
    """Show a comment with surrounding code context."""
    project_root = _root(ctx)
    comment = get_comment(load_store_for_read(project_root), comment_id)
    code = comment_context(project_root, comment, lines=lines)

    if as_json:
        _dump({"comment": comment_to_dict(comment), "context": code})
        return

    click.echo(f"Comment {comment.id} ({state_label(comment)})")
    click.echo(f"File: {comment.location}")
    click.echo(f"Author: {comment.author.value}")
    click.echo(f"\n{comment.body}")

    if comment.thread:
        click.echo(f"\n--- Thread ({plural(len(comment.thread), 'reply', 'replies')}) ---")
        for r in comment.thread:
            click.echo(f"[{r.id}] {r.author.value}: {r.body}")

    click.echo(f"\n--- Code Context ({comment.file}) ---")
    for line in code["lines"]:
        marker = ">>>" if line["isTarget"] else "   "
        click.echo(f"{marker} {line['lineNum']:>4} | {line['text']}")


@cli.command()
@click.option("--force", is_flag=True, help="Re-check comments even if files are unmodified")
@click.option("--file", "files", multiple=True, help="Only reconcile this file (repeatable)")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_context
@handle_store_errors
def reconcile(ctx, force, files, as_json):
    """Re-anchor comments to the current file contents."""
    report = reconcile_project(_root(ctx), force=force, files=list(files) or None)

    if as_json:
        _dump(report.model_dump(by_alias=True))
        return

    click.echo(
        f"Checked {plural(report.checked_comments, 'comment')}, "
        f"updated {report.updated_comments}, "
        f"anchor state changes: {report.anchor_state_transition_count}."
    )


@cli.command()
@click.argument("comment_id", required=False)
@click.pass_context
@handle_store_errors
def seen(ctx, comment_id):
    """Mark a comment (or all open comments) as seen by the agent."""
    count = mark_seen(_root(ctx), comment_id)
    click.echo(f"Marked {plural(count, 'comment')} as seen.")


@cli.command()
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "-L",
    "--lines",
    "line_range",
    metavar="START:END",
    required=True,
    help="Line range to anchor the comment (e.g., -L 10:15)",
)
@click.option(
    "--author",
    type=click.Choice(["human", "agent"]),
    default="agent",
    show_default=True,
)
@click.argument("body")
@click.pass_context
@handle_store_errors
def add(ctx, file_path, line_range, author, body):
    """
    Create a comment anchored to a line range.

    Examples:

        feedback add src/main.py -L 42:45 "Fix this function"
    """
    start_line, end_line = parse_line_range(line_range)
    comment = add_comment(
        _root(ctx), file_path.resolve(), start_line, end_line, body, AuthorType(author)
    )
    click.echo(f"Created comment {comment.id}")
    click.echo(f"  File: {comment.location}")


def parse_line_range(line_range: str) -> tuple[int, int]:
    """
    Parse "START:END" (or a single line number).

    Raises:
        ValueError: If the value is not one or two integers
    """
    parts = line_range.split(":")
    if len(parts) > 2:
        raise ValueError(
            f"Invalid line range format: {line_range}\nExpected format: START:END (e.g., 10:15)"
        )
    try:
        start = int(parts[0])
        end = int(parts[-1])
    except ValueError:
        raise ValueError(
            f"Invalid line range: {line_range}\nLine numbers must be integers (e.g., -L 10:15)"
        ) from None
    return start, end


@cli.command()
@click.pass_context
@handle_store_errors
def archive(ctx):
    """Move resolved comments into .feedback/archive.json."""
    result = archive_resolved(_root(ctx))
    if result.archived_count == 0:
        click.echo("No resolved comments to archive.")
        return
    click.echo(
        f"Archived {plural(result.archived_count, 'comment')} to {result.archive_path} "
        f"({result.remaining_count} remaining)."
    )


if __name__ == "__main__":
    cli()

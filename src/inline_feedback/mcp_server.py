"""MCP server exposing feedback operations as agent tools.

All tools take JSON arguments validated by pydantic request models and
return a single JSON text block. Failures are returned, not raised, as
{"error": {"code": ..., "message": ...}}.
"""

import json
from pathlib import Path
from typing import Any, Literal

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool
from pydantic import BaseModel, Field, ValidationError

from inline_feedback.locking import LockTimeout
from inline_feedback.models import AuthorType, Comment, WorkflowState
from inline_feedback.operations import (
    CommentResolved,
    FileMissing,
    add_reply,
    comment_context,
    list_comments,
    load_store_for_read,
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

# ============================================================================
# Error Models
# ============================================================================


class ErrorResponse(BaseModel):
    """Structured error response for MCP tools."""

    code: str = Field(..., description="Error code (NOT_FOUND, STORE_BUSY, etc.)")
    message: str = Field(..., description="Human-readable error message")


# Exception type -> error code, checked in order
ERROR_CODES: list[tuple[type[Exception], str]] = [
    (CommentNotFound, "NOT_FOUND"),
    (CommentResolved, "RESOLVED"),
    (FileMissing, "FILE_MISSING"),
    (LockTimeout, "STORE_BUSY"),
    (StoreConflict, "CONFLICT"),
    (VersionMismatch, "VERSION_MISMATCH"),
    (StoreCorrupted, "STORE_CORRUPTED"),
    (ValidationError, "VALIDATION_ERROR"),
    (ValueError, "INVALID_INPUT"),
]


def _text(payload: Any) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(payload, indent=2, ensure_ascii=False))]


def error_result(code: str, message: str) -> list[TextContent]:
    return _text({"error": ErrorResponse(code=code, message=message).model_dump()})


def comment_to_dict(comment: Comment) -> dict[str, Any]:
    return comment.model_dump(mode="json", by_alias=True, exclude_none=True)


# ============================================================================
# Request Models
# ============================================================================


class FeedbackListRequest(BaseModel):
    """Request model for feedback_list tool."""

    workflow: Literal["open", "resolved", "all"] | None = Field(
        default=None, description="Workflow filter (default: open)"
    )
    anchor: Literal["anchored", "stale", "orphaned", "all"] | None = Field(
        default=None, description="Anchor filter (default: all)"
    )
    status: Literal["open", "resolved", "stale", "orphaned", "all"] | None = Field(
        default=None, description="Legacy combined filter"
    )
    unseen: bool = Field(default=False, description="Only comments with unseen human activity")
    file: str | None = Field(default=None, description="File path prefix filter")


class CommentIdRequest(BaseModel):
    """Request model for tools addressing a single comment."""

    comment_id: str = Field(..., min_length=1, description="Comment ID")


class FeedbackReplyRequest(CommentIdRequest):
    """Request model for feedback_reply tool."""

    body: str = Field(..., min_length=1, max_length=10000, description="Reply body")


class FeedbackContextRequest(CommentIdRequest):
    """Request model for feedback_context tool."""

    lines: int = Field(default=10, ge=0, le=500, description="Context lines on each side")


class FeedbackReconcileRequest(BaseModel):
    """Request model for feedback_reconcile tool."""

    force: bool = Field(default=False, description="Re-check unmodified files too")
    files: list[str] | None = Field(default=None, description="Restrict to these files")


# ============================================================================
# MCP Server
# ============================================================================


mcp = Server("inline-feedback")

_COMMENT_ID_SCHEMA = {"type": "string", "description": "Comment ID (e.g. c_01j...)"}


@mcp.list_tools()
async def list_tools() -> list[Tool]:
    """List all available MCP tools."""
    return [
        Tool(
            name="feedback_list",
            description="List feedback comments with optional workflow/anchor/file filters",
            inputSchema={
                "type": "object",
                "properties": {
                    "workflow": {"type": "string", "enum": ["open", "resolved", "all"]},
                    "anchor": {
                        "type": "string",
                        "enum": ["anchored", "stale", "orphaned", "all"],
                    },
                    "status": {
                        "type": "string",
                        "description": "Legacy combined filter",
                        "enum": ["open", "resolved", "stale", "orphaned", "all"],
                    },
                    "unseen": {"type": "boolean", "default": False},
                    "file": {"type": "string", "description": "File path prefix"},
                },
                "required": [],
            },
        ),
        Tool(
            name="feedback_get",
            description="Get a comment with its full reply thread",
            inputSchema={
                "type": "object",
                "properties": {"comment_id": _COMMENT_ID_SCHEMA},
                "required": ["comment_id"],
            },
        ),
        Tool(
            name="feedback_reply",
            description="Reply to a comment thread as the agent",
            inputSchema={
                "type": "object",
                "properties": {
                    "comment_id": _COMMENT_ID_SCHEMA,
                    "body": {
                        "type": "string",
                        "description": "Reply body",
                        "minLength": 1,
                        "maxLength": 10000,
                    },
                },
                "required": ["comment_id", "body"],
            },
        ),
        Tool(
            name="feedback_resolve",
            description="Mark a comment as resolved",
            inputSchema={
                "type": "object",
                "properties": {"comment_id": _COMMENT_ID_SCHEMA},
                "required": ["comment_id"],
            },
        ),
        Tool(
            name="feedback_unresolve",
            description="Reopen a resolved comment",
            inputSchema={
                "type": "object",
                "properties": {"comment_id": _COMMENT_ID_SCHEMA},
                "required": ["comment_id"],
            },
        ),
        Tool(
            name="feedback_summary",
            description="Counts of comments by state and the files with open comments",
            inputSchema={"type": "object", "properties": {}, "required": []},
        ),
        Tool(
            name="feedback_context",
            description="Show a comment with the code surrounding its anchor",
            inputSchema={
                "type": "object",
                "properties": {
                    "comment_id": _COMMENT_ID_SCHEMA,
                    "lines": {"type": "integer", "minimum": 0, "maximum": 500, "default": 10},
                },
                "required": ["comment_id"],
            },
        ),
        Tool(
            name="feedback_reconcile",
            description="Re-anchor comments to current file contents",
            inputSchema={
                "type": "object",
                "properties": {
                    "force": {"type": "boolean", "default": False},
                    "files": {"type": "array", "items": {"type": "string"}},
                },
                "required": [],
            },
        ),
    ]


@mcp.call_tool()
async def call_tool(name: str, arguments: Any) -> list[TextContent]:
    """Dispatch an MCP tool call, converting failures into error responses."""
    handler = HANDLERS.get(name)
    if handler is None:
        return error_result("UNKNOWN_TOOL", f"Unknown tool: {name}")

    try:
        return await handler(arguments or {}, find_project_root(Path.cwd()))
    except Exception as e:
        for exc_type, code in ERROR_CODES:
            if isinstance(e, exc_type):
                return error_result(code, str(e))
        # Catch-all for unexpected errors
        return error_result("INTERNAL_ERROR", str(e))


async def handle_feedback_list(arguments: dict[str, Any], project_root: Path) -> list[TextContent]:
    req = FeedbackListRequest(**arguments)
    workflow, anchor = parse_list_filters(req.workflow, req.anchor, req.status)
    comments = list_comments(
        load_store_for_read(project_root),
        workflow=workflow,
        anchor=anchor,
        unseen=req.unseen,
        file_prefix=req.file,
    )
    return _text({"comments": [comment_to_dict(c) for c in comments]})


async def handle_feedback_get(arguments: dict[str, Any], project_root: Path) -> list[TextContent]:
    req = CommentIdRequest(**arguments)
    comment = get_comment(load_store_for_read(project_root), req.comment_id)
    return _text({"comment": comment_to_dict(comment)})


async def handle_feedback_reply(arguments: dict[str, Any], project_root: Path) -> list[TextContent]:
    req = FeedbackReplyRequest(**arguments)
    reply = add_reply(project_root, req.comment_id, req.body, AuthorType.AGENT)
    return _text({"comment_id": req.comment_id, "reply_id": reply.id})


async def handle_feedback_resolve(
    arguments: dict[str, Any], project_root: Path
) -> list[TextContent]:
    req = CommentIdRequest(**arguments)
    changed = set_workflow_state(project_root, req.comment_id, WorkflowState.RESOLVED)
    return _text({"comment_id": req.comment_id, "workflowState": "resolved", "changed": changed})


async def handle_feedback_unresolve(
    arguments: dict[str, Any], project_root: Path
) -> list[TextContent]:
    req = CommentIdRequest(**arguments)
    changed = set_workflow_state(project_root, req.comment_id, WorkflowState.OPEN)
    return _text({"comment_id": req.comment_id, "workflowState": "open", "changed": changed})


async def handle_feedback_summary(
    arguments: dict[str, Any], project_root: Path
) -> list[TextContent]:
    return _text(summarize(load_store_for_read(project_root)))


async def handle_feedback_context(
    arguments: dict[str, Any], project_root: Path
) -> list[TextContent]:
    req = FeedbackContextRequest(**arguments)
    comment = get_comment(load_store_for_read(project_root), req.comment_id)
    code = comment_context(project_root, comment, lines=req.lines)
    return _text({"comment": comment_to_dict(comment), "context": code})


async def handle_feedback_reconcile(
    arguments: dict[str, Any], project_root: Path
) -> list[TextContent]:
    req = FeedbackReconcileRequest(**arguments)
    report = reconcile_project(project_root, force=req.force, files=req.files or None)
    return _text(report.model_dump(by_alias=True))


HANDLERS = {
    "feedback_list": handle_feedback_list,
    "feedback_get": handle_feedback_get,
    "feedback_reply": handle_feedback_reply,
    "feedback_resolve": handle_feedback_resolve,
    "feedback_unresolve": handle_feedback_unresolve,
    "feedback_summary": handle_feedback_summary,
    "feedback_context": handle_feedback_context,
    "feedback_reconcile": handle_feedback_reconcile,
}


# ============================================================================
# Main Entry Point
# ============================================================================


async def main() -> None:
    """Run the MCP server."""
    async with stdio_server() as (read_stream, write_stream):
        await mcp.run(read_stream, write_stream, mcp.create_initialization_options())


def run_server() -> None:
    """Synchronous entry point for running the server."""
    import asyncio

    asyncio.run(main())


if __name__ == "__main__":
    run_server()

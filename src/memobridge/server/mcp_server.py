"""MCP server exposing the Memos adapter and importer as tools."""

import json
import logging
import uuid
from typing import Optional

from mcp.server.fastmcp import FastMCP

from memobridge.config import config
from memobridge.exceptions import (
    ErrorCode,
    MemoBridgeError,
    NoteNotFoundError,
    ValidationError,
)
from memobridge.models.schema import Note, NoteUpdate, Visibility
from memobridge.observability import metrics, timed_operation
from memobridge.services.import_service import ImportService
from memobridge.storage.memo_repository import MemoRepository

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 1_000_000  # 1 MB
PREVIEW_LENGTH = 80


def _validate_content(content: Optional[str]) -> None:
    """Validate input string lengths at the MCP boundary."""
    if content and len(content) > MAX_CONTENT_LENGTH:
        raise ValidationError(
            f"Content exceeds maximum length of {MAX_CONTENT_LENGTH} characters",
            field="content",
            code=ErrorCode.NOTE_CONTENT_TOO_LARGE,
        )


def _parse_visibility(value: str) -> Visibility:
    try:
        return Visibility.parse(value)
    except ValueError:
        raise ValidationError(
            f"Invalid visibility: {value}. Valid values are: "
            f"{', '.join(v.value.lower() for v in Visibility)}",
            field="visibility",
            value=value,
            code=ErrorCode.INVALID_VISIBILITY,
        )


def _preview(content: str) -> str:
    first_line = content.strip().splitlines()[0] if content.strip() else ""
    if len(first_line) > PREVIEW_LENGTH:
        return first_line[:PREVIEW_LENGTH] + "..."
    return first_line


def _format_note(note: Note) -> str:
    result = f"# Memo {note.id}\n"
    result += f"UID: {note.uid}\n"
    result += f"Visibility: {note.visibility.value}\n"
    result += f"Status: {note.status.value}\n"
    result += f"Pinned: {'yes' if note.pinned else 'no'}\n"
    result += f"Created: {note.created_at.isoformat()}\n"
    result += f"Updated: {note.updated_at.isoformat()}\n"
    if note.tags:
        result += f"Tags: {', '.join(note.tags)}\n"
    if note.resources:
        result += f"Resources: {len(note.resources)}\n"
    result += f"\n{note.content}\n"
    return result


class MemoBridgeMcpServer:
    """MCP server for a Memos database."""

    def __init__(self, engine=None):
        """Initialize the MCP server.

        Args:
            engine: Pre-configured SQLAlchemy engine shared by the repository
                    and the importer. When None, one is built from config.
        """
        self.mcp = FastMCP(config.server_name)
        self.repository = MemoRepository(engine=engine)
        self.import_service = ImportService(self.repository)
        self._register_tools()
        logger.info("memobridge MCP server initialized")

    def format_error_response(self, error: Exception) -> str:
        """Format an error response in a consistent way.

        Domain errors carry a message that is safe to show. Everything else is
        logged in full and answered with a reference id only.
        """
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, MemoBridgeError):
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            return f"Error: {error.message}"
        elif isinstance(error, ValueError):
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            return f"Error: Invalid input (ref: {error_id})"
        elif isinstance(error, (IOError, OSError)):
            logger.error(f"File system error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: A file system error occurred (ref: {error_id})"
        else:
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: An unexpected error occurred (ref: {error_id})"

    def _register_tools(self) -> None:
        """Register MCP tools."""

        @self.mcp.tool(name="memos_import_database")
        async def memos_import_database(
            database_path: str,
            wal_path: Optional[str] = None,
            shm_path: Optional[str] = None,
            skip_existing: bool = False,
        ) -> str:
            """Import a copy of a Memos SQLite database into the canonical store.
            Args:
                database_path: Path to the uploaded .db/.sqlite/.sqlite3 file
                wal_path: Optional path to its -wal companion file
                shm_path: Optional path to its -shm companion file
                skip_existing: Skip memos whose uid is already in the store
                    instead of importing them again
            Returns:
                JSON with the import summary, or {"error": ...} on failure.
            """
            with timed_operation("memos_import_database") as op:
                try:
                    report = await self.import_service.run(
                        database_path,
                        wal=wal_path,
                        shm=shm_path,
                        skip_existing=skip_existing,
                    )
                    op["success"] = report.success
                    return json.dumps(report.to_response(), indent=2, default=str)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="memos_list_notes")
        def memos_list_notes(
            include_archived: bool = False,
            limit: int = 20,
            offset: int = 0,
        ) -> str:
            """List memos, pinned first and then newest first.
            Args:
                include_archived: Also list archived memos
                limit: Maximum number of memos to return (default: 20)
                offset: Number of memos to skip, for paging
            """
            with timed_operation("memos_list_notes", limit=limit, offset=offset) as op:
                try:
                    page = self.repository.list_notes(
                        include_archived=include_archived, limit=limit, offset=offset
                    )
                    op["count"] = len(page.notes)
                    if not page.notes:
                        return "No memos found."

                    end = offset + len(page.notes)
                    output = f"Memos {offset + 1}-{end} of {page.total}:\n\n"
                    for note in page.notes:
                        flags = []
                        if note.pinned:
                            flags.append("pinned")
                        if note.archived:
                            flags.append("archived")
                        if note.resources:
                            flags.append(f"{len(note.resources)} resources")
                        flag_str = f" [{', '.join(flags)}]" if flags else ""
                        output += (
                            f"- {note.id} ({note.created_at.date().isoformat()})"
                            f"{flag_str}: {_preview(note.content)}\n"
                        )
                    if page.has_more:
                        output += f"\nMore memos available (next offset: {end})"
                    return output
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="memos_get_note")
        def memos_get_note(note_id: int) -> str:
            """Retrieve a memo with its resources.
            Args:
                note_id: Numeric memo id
            """
            with timed_operation("memos_get_note", note_id=note_id) as op:
                try:
                    note = self.repository.get_note(note_id)
                    op["found"] = note is not None
                    if note is None:
                        raise NoteNotFoundError(note_id)
                    return _format_note(note)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="memos_create_note")
        def memos_create_note(
            content: str,
            visibility: str = "private",
            pinned: bool = False,
            archived: bool = False,
        ) -> str:
            """Create a new memo.
            Args:
                content: Markdown body; #tags are registered automatically
                visibility: private, protected or public
                pinned: Pin the memo
                archived: Create the memo already archived
            """
            with timed_operation("memos_create_note") as op:
                try:
                    _validate_content(content)
                    note = self.repository.create_note(
                        content=content,
                        visibility=_parse_visibility(visibility),
                        pinned=pinned,
                        archived=archived,
                    )
                    op["note_id"] = note.id
                    return f"Memo created successfully with ID: {note.id} (uid: {note.uid})"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="memos_update_note")
        def memos_update_note(
            note_id: int,
            content: Optional[str] = None,
            visibility: Optional[str] = None,
            pinned: Optional[bool] = None,
            archived: Optional[bool] = None,
        ) -> str:
            """Update fields of an existing memo. Omitted fields are left unchanged.
            Args:
                note_id: Numeric memo id
                content: New markdown body
                visibility: private, protected or public
                pinned: Pin or unpin the memo
                archived: Archive or restore the memo
            """
            with timed_operation("memos_update_note", note_id=note_id) as op:
                try:
                    _validate_content(content)
                    fields = {}
                    if content is not None:
                        fields["content"] = content
                    if visibility is not None:
                        fields["visibility"] = _parse_visibility(visibility)
                    if pinned is not None:
                        fields["pinned"] = pinned
                    if archived is not None:
                        fields["archived"] = archived
                    if not fields:
                        return "Nothing to update."

                    note = self.repository.update_note(note_id, NoteUpdate(**fields))
                    if note is None:
                        raise NoteNotFoundError(note_id)
                    op["fields"] = ",".join(sorted(fields))
                    return f"Memo {note.id} updated successfully"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="memos_delete_note")
        def memos_delete_note(note_id: int, purge: bool = False) -> str:
            """Delete a memo.
            Args:
                note_id: Numeric memo id
                purge: Remove the row for good instead of marking it deleted
            """
            with timed_operation("memos_delete_note", note_id=note_id, purge=purge) as op:
                try:
                    if purge:
                        removed = self.repository.purge_note(note_id)
                    else:
                        removed = self.repository.delete_note(note_id)
                    op["removed"] = removed
                    if not removed:
                        raise NoteNotFoundError(note_id)
                    action = "purged" if purge else "deleted"
                    return f"Memo {note_id} {action} successfully"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="memos_list_resources")
        def memos_list_resources(note_id: int) -> str:
            """List the resources attached to a memo.
            Args:
                note_id: Numeric memo id
            """
            with timed_operation("memos_list_resources", note_id=note_id) as op:
                try:
                    meta = self.repository.list_resource_meta_for_notes([note_id])
                    resources = meta.get(note_id, [])
                    op["count"] = len(resources)
                    if not resources:
                        return f"No resources attached to memo {note_id}."

                    output = "| ID | UID | Filename | Type | Size |\n"
                    output += "|----|-----|----------|------|------|\n"
                    for r in resources:
                        output += f"| {r.id} | {r.uid} | {r.filename} | {r.type} | {r.size} |\n"
                    return output
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="memos_status")
        def memos_status() -> str:
            """Get memo counts by status and server metrics."""
            with timed_operation("memos_status"):
                try:
                    counts = self.repository.count_notes_by_status()
                    output = "# memobridge Status\n\n"
                    output += f"**Database:** {config.get_absolute_path(config.database_path)}\n"
                    output += f"**Total Memos:** {sum(counts.values())}\n"
                    for status, count in sorted(counts.items()):
                        output += f"  - {status}: {count}\n"

                    summary = metrics.get_summary()
                    output += "\n## Server Metrics\n"
                    output += f"**Uptime:** {summary['uptime_seconds']:.0f} seconds\n"
                    output += f"**Operations:** {summary['total_operations']}\n"
                    output += f"**Errors:** {summary['total_errors']}\n"
                    return output
                except Exception as e:
                    return self.format_error_response(e)

    def run(self) -> None:
        """Run the MCP server."""
        self.mcp.run()

"""Reader for the memo and resource rows of an uploaded Memos database.

Memos has changed its schema over the years (pinned used to be a column on
``memo``, ``payload`` is newer, very old exports have no ``resource`` table),
so the reader looks at the columns actually present before building queries.
"""
import logging
import sqlite3
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Set

from memobridge.exceptions import ErrorCode, ImportFileError
from memobridge.models.schema import MemoRow, ResourceRow, RowStatus

logger = logging.getLogger(__name__)

_RESOURCE_COLUMNS = ("id", "uid", "filename", "blob", "type", "size", "memo_id")


@dataclass
class SourceSnapshot:
    """Everything the import reads from one uploaded file."""

    memos: List[MemoRow] = field(default_factory=list)
    resources_by_memo: Dict[int, List[ResourceRow]] = field(default_factory=dict)
    status_counts: Dict[str, int] = field(default_factory=dict)
    resource_count: int = 0
    diagnostics: List[str] = field(default_factory=list)

    @property
    def total_rows(self) -> int:
        """Number of memo rows in the file, deleted ones included."""
        return sum(self.status_counts.values())


class SourceReader:
    """Reads a reconciled Memos database through a raw ``sqlite3`` connection."""

    def __init__(self, connection: sqlite3.Connection):
        self.connection = connection
        self.connection.row_factory = sqlite3.Row

    def _tables(self) -> Set[str]:
        rows = self.connection.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table'"
        ).fetchall()
        return {row[0] for row in rows}

    def _columns(self, table: str) -> Set[str]:
        rows = self.connection.execute(f'PRAGMA table_info("{table}")').fetchall()
        return {row[1] for row in rows}

    def count_by_status(self) -> Dict[str, int]:
        """Count every memo row by ``row_status`` (NULL reported as "NULL")."""
        rows = self.connection.execute(
            "SELECT row_status, COUNT(*) FROM memo GROUP BY row_status"
        ).fetchall()
        return {(status if status is not None else "NULL"): count for status, count in rows}

    def read_memos(self, memo_columns: Set[str], tables: Set[str]) -> List[MemoRow]:
        """Read all non-deleted memos, newest first."""
        selected = [
            f"m.{name}"
            for name in (
                "id",
                "uid",
                "creator_id",
                "created_ts",
                "updated_ts",
                "row_status",
                "content",
                "visibility",
                "payload",
            )
            if name in memo_columns
        ]
        joins = ""
        if "pinned" in memo_columns:
            selected.append("m.pinned AS pinned")
        elif "memo_organizer" in tables and "creator_id" in memo_columns:
            selected.append("COALESCE(o.pinned, 0) AS pinned")
            joins = (
                " LEFT JOIN memo_organizer o"
                " ON o.memo_id = m.id AND o.user_id = m.creator_id"
            )

        where = ""
        if "row_status" in memo_columns:
            where = (
                " WHERE (m.row_status IS NULL"
                f" OR UPPER(m.row_status) != '{RowStatus.DELETED.value}')"
            )
        order = " ORDER BY m.created_ts DESC" if "created_ts" in memo_columns else ""

        sql = f"SELECT {', '.join(selected)} FROM memo m{joins}{where}{order}"
        logger.debug(f"Reading memos: {sql}")
        return [MemoRow.from_mapping(row) for row in self.connection.execute(sql)]

    def read_resources(self, resource_columns: Set[str]) -> Dict[int, List[ResourceRow]]:
        """Read every resource row and group it by owning memo id."""
        selected = [name for name in _RESOURCE_COLUMNS if name in resource_columns]
        grouped: Dict[int, List[ResourceRow]] = defaultdict(list)
        if "id" not in resource_columns or "memo_id" not in resource_columns:
            return grouped
        rows = self.connection.execute(
            f"SELECT {', '.join(selected)} FROM resource ORDER BY id ASC"
        )
        for row in rows:
            resource = ResourceRow.from_mapping(row)
            if resource.memo_id is not None:
                grouped[resource.memo_id].append(resource)
        return grouped

    def read(self) -> SourceSnapshot:
        """Read the whole source file.

        Raises:
            ImportFileError: If the file has no ``memo`` table.
        """
        snapshot = SourceSnapshot()
        try:
            tables = self._tables()
            if "memo" not in tables:
                raise ImportFileError(
                    "Uploaded database has no memo table",
                    code=ErrorCode.IMPORT_SCHEMA_MISMATCH,
                    status_code=500,
                )

            memo_columns = self._columns("memo")
            if "content" not in memo_columns:
                raise ImportFileError(
                    "Uploaded memo table has no content column",
                    code=ErrorCode.IMPORT_SCHEMA_MISMATCH,
                    status_code=500,
                )
            missing = {"id", "created_ts", "row_status", "visibility"} - memo_columns
            if missing:
                snapshot.diagnostics.append(
                    f"memo table is missing columns: {', '.join(sorted(missing))}"
                )

            if "row_status" in memo_columns:
                snapshot.status_counts = self.count_by_status()
            else:
                total = self.connection.execute("SELECT COUNT(*) FROM memo").fetchone()[0]
                snapshot.status_counts = {"NULL": total}
            snapshot.diagnostics.append(
                "Status distribution: "
                + ", ".join(f"{k}={v}" for k, v in sorted(snapshot.status_counts.items()))
            )

            snapshot.memos = self.read_memos(memo_columns, tables)
            snapshot.diagnostics.append(
                f"Source holds {snapshot.total_rows} memo rows, "
                f"{len(snapshot.memos)} of them not deleted"
            )

            if "resource" in tables:
                grouped = self.read_resources(self._columns("resource"))
                snapshot.resources_by_memo = dict(grouped)
                snapshot.resource_count = sum(len(v) for v in grouped.values())
            else:
                snapshot.diagnostics.append(
                    "Uploaded database has no resource table; importing memos only"
                )
        except sqlite3.Error as e:
            raise ImportFileError(
                f"Failed to read uploaded database: {e}",
                code=ErrorCode.IMPORT_FILE_UNREADABLE,
                original_error=e,
            ) from e

        logger.info(
            f"Read {len(snapshot.memos)} memos and {snapshot.resource_count} "
            f"attached resources from source"
        )
        return snapshot

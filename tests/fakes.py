"""Builders for Memos-schema source databases used by import tests.

The builder writes with plain ``sqlite3``, the way the Memos application
itself lays files out, so tests exercise the importer against real files
rather than against the adapter's own ORM tables.
"""
import shutil
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

MEMO_TABLE = """
CREATE TABLE memo (
    id INTEGER {id_constraint},
    uid TEXT,
    creator_id INTEGER NOT NULL DEFAULT 1,
    created_ts BIGINT,
    updated_ts BIGINT,
    row_status TEXT DEFAULT 'NORMAL',
    content TEXT NOT NULL DEFAULT '',
    visibility TEXT NOT NULL DEFAULT 'PRIVATE',
    payload TEXT NOT NULL DEFAULT '{{}}'
    {pinned_column}
)
"""

ORGANIZER_TABLE = """
CREATE TABLE memo_organizer (
    memo_id INTEGER NOT NULL,
    user_id INTEGER NOT NULL,
    pinned INTEGER NOT NULL DEFAULT 0,
    UNIQUE(memo_id, user_id)
)
"""

RESOURCE_TABLE = """
CREATE TABLE resource (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    uid TEXT,
    creator_id INTEGER NOT NULL DEFAULT 1,
    created_ts BIGINT NOT NULL DEFAULT 0,
    updated_ts BIGINT NOT NULL DEFAULT 0,
    filename TEXT NOT NULL DEFAULT '',
    blob BLOB,
    type TEXT NOT NULL DEFAULT '',
    size INTEGER NOT NULL DEFAULT 0,
    memo_id INTEGER
)
"""

# Smallest valid PNG (1x1 transparent)
PNG_BYTES = bytes.fromhex(
    "89504e470d0a1a0a0000000d4948445200000001000000010806000000"
    "1f15c4890000000d49444154789c6360000002000100e221bc330000000049454e44ae426082"
)


class SourceDatabaseBuilder:
    """Writes a Memos database file for the importer to read.

    Args:
        path: Where to write the database.
        loose_ids: Declare ``memo.id`` without a primary key so rows without
                   an id can be inserted.
        legacy_pinned: Store pin state in a ``memo.pinned`` column (older
                       Memos layout) instead of ``memo_organizer``.
        with_resources: Create the ``resource`` table.
    """

    def __init__(
        self,
        path: Path,
        loose_ids: bool = False,
        legacy_pinned: bool = False,
        with_resources: bool = True,
    ):
        self.path = Path(path)
        self.legacy_pinned = legacy_pinned
        self.conn = sqlite3.connect(str(self.path))
        self.conn.execute(
            MEMO_TABLE.format(
                id_constraint="" if loose_ids else "PRIMARY KEY AUTOINCREMENT",
                pinned_column=(
                    ",\n    pinned INTEGER NOT NULL DEFAULT 0" if legacy_pinned else ""
                ),
            )
        )
        if not legacy_pinned:
            self.conn.execute(ORGANIZER_TABLE)
        if with_resources:
            self.conn.execute(RESOURCE_TABLE)
        self.conn.commit()
        self._next_id = 1

    def add_memo(
        self,
        content: str = "",
        id: Optional[int] = -1,
        row_status: Optional[str] = "NORMAL",
        created_ts: Optional[int] = 1700000000,
        updated_ts: Optional[int] = None,
        visibility: str = "PRIVATE",
        pinned: bool = False,
        uid: Optional[str] = None,
    ) -> Optional[int]:
        """Insert a memo row. ``id=-1`` assigns the next id; ``None`` leaves it empty."""
        if id == -1:
            id = self._next_id
        if id is not None:
            self._next_id = max(self._next_id, id + 1)
        values: Dict[str, Any] = {
            "id": id,
            "uid": uid or (f"src-{id}" if id is not None else None),
            "created_ts": created_ts,
            "updated_ts": updated_ts if updated_ts is not None else created_ts,
            "row_status": row_status,
            "content": content,
            "visibility": visibility,
        }
        if self.legacy_pinned:
            values["pinned"] = int(pinned)
        columns = ", ".join(values)
        marks = ", ".join("?" for _ in values)
        self.conn.execute(
            f"INSERT INTO memo ({columns}) VALUES ({marks})", list(values.values())
        )
        if pinned and not self.legacy_pinned and id is not None:
            self.conn.execute(
                "INSERT INTO memo_organizer (memo_id, user_id, pinned) VALUES (?, 1, 1)",
                (id,),
            )
        self.conn.commit()
        return id

    def add_resource(
        self,
        memo_id: Optional[int],
        filename: str = "a.png",
        mime_type: str = "image/png",
        blob: Optional[bytes] = PNG_BYTES,
        uid: Optional[str] = None,
    ) -> int:
        cursor = self.conn.execute(
            "INSERT INTO resource (uid, filename, blob, type, size, memo_id) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (uid, filename, blob, mime_type, len(blob or b""), memo_id),
        )
        resource_id = cursor.lastrowid
        if uid is None:
            self.conn.execute(
                "UPDATE resource SET uid = ? WHERE id = ?",
                (f"res-{resource_id}", resource_id),
            )
        self.conn.commit()
        return resource_id

    def close(self) -> Path:
        self.conn.close()
        return self.path


def build_wal_copy(source: Path, dest_dir: Path, pending: List[str]) -> Dict[str, Path]:
    """Copy a database whose newest rows exist only in its ``-wal`` file.

    The memos in ``pending`` are written after auto-checkpointing has been
    disabled, and the files are copied while the writer is still open, the
    way a backup of a running Memos instance looks.

    Returns:
        Paths of the copied ``db`` and ``wal`` files.
    """
    conn = sqlite3.connect(str(source))
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        conn.execute("PRAGMA wal_autocheckpoint=0")
        next_id = conn.execute("SELECT COALESCE(MAX(id), 0) + 1 FROM memo").fetchone()[0]
        for offset, content in enumerate(pending):
            memo_id = next_id + offset
            conn.execute(
                "INSERT INTO memo (id, uid, created_ts, updated_ts, row_status, content) "
                "VALUES (?, ?, ?, ?, 'NORMAL', ?)",
                (memo_id, f"wal-{memo_id}", 1700000500 + offset, 1700000500 + offset, content),
            )
        conn.commit()

        dest_dir.mkdir(parents=True, exist_ok=True)
        db_copy = dest_dir / "upload.db"
        wal_copy = dest_dir / "upload.db-wal"
        shutil.copyfile(source, db_copy)
        shutil.copyfile(f"{source}-wal", wal_copy)
    finally:
        conn.close()
    return {"db": db_copy, "wal": wal_copy}

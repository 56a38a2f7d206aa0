"""Write-ahead log reconciliation for uploaded Memos databases.

A Memos database copied while the application was running may hold its most
recent writes only in the ``-wal`` companion file. Readers that ignore the log
silently miss those rows, so before anything reads an uploaded copy the log is
folded back into the main file with ``PRAGMA wal_checkpoint``.

Checkpointing can fail (a busy log, a missing ``-shm`` index, an old SQLite
build), so several modes are tried in order. A failed mode is reported as a
diagnostic and never aborts the import; only a file that cannot be opened at
all is fatal.
"""
import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

from memobridge.exceptions import ErrorCode, ImportFileError

logger = logging.getLogger(__name__)

# Applied once reconciliation is done, whatever its outcome
POST_RECONCILE_PRAGMAS = (
    "PRAGMA synchronous=FULL",
    "PRAGMA cache_size=-64000",
)


@dataclass(frozen=True)
class CheckpointStrategy:
    """One ``wal_checkpoint`` mode to try."""

    mode: str

    def apply(self, connection: sqlite3.Connection) -> Tuple[bool, str]:
        """Run the checkpoint on ``connection``.

        Returns:
            (succeeded, diagnostic line). A checkpoint that reports the log as
            busy counts as a failure.
        """
        try:
            row = connection.execute(f"PRAGMA wal_checkpoint({self.mode})").fetchone()
        except sqlite3.Error as e:
            return False, f"WAL checkpoint {self.mode} failed: {e}"

        busy, log_frames, checkpointed = row if row else (0, -1, -1)
        if busy:
            return False, (
                f"WAL checkpoint {self.mode} reported busy "
                f"(log={log_frames}, checkpointed={checkpointed})"
            )
        return True, (
            f"WAL checkpoint {self.mode} succeeded "
            f"(log={log_frames}, checkpointed={checkpointed})"
        )


# Tried in this order until one succeeds
DEFAULT_STRATEGIES: Tuple[CheckpointStrategy, ...] = (
    CheckpointStrategy("RESTART"),
    CheckpointStrategy("TRUNCATE"),
    CheckpointStrategy("FULL"),
)


@dataclass
class ReconcileResult:
    """Outcome of reconciling one database file.

    Holds the open read-write connection that the parser reads from. Use it
    as a context manager, or call ``close()``, to release the file.
    """

    connection: sqlite3.Connection
    mode: Optional[str] = None
    diagnostics: List[str] = field(default_factory=list)

    @property
    def reconciled(self) -> bool:
        return self.mode is not None

    def close(self) -> None:
        self.connection.close()

    def __enter__(self) -> "ReconcileResult":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False


def _file_uri(path: Path, mode: str) -> str:
    return f"{path.resolve().as_uri()}?mode={mode}"


def _probe_read_only(path: Path) -> Optional[str]:
    """Open the file read-only and close it again.

    Returns:
        A diagnostic line if the read-only open failed, else None. A log
        without its ``-shm`` index cannot always be opened read-only, so this
        is informational.
    """
    try:
        connection = sqlite3.connect(_file_uri(path, "ro"), uri=True)
        try:
            connection.execute("SELECT count(*) FROM sqlite_master").fetchone()
        finally:
            connection.close()
    except sqlite3.Error as e:
        return f"Read-only open failed, continuing read-write: {e}"
    return None


def open_database(path: Union[str, Path]) -> sqlite3.Connection:
    """Open an uploaded database read-write without creating it.

    Raises:
        ImportFileError: If the file is missing or is not a SQLite database.
    """
    path = Path(path)
    if not path.is_file():
        raise ImportFileError(
            "Database file not found",
            path=str(path),
            code=ErrorCode.IMPORT_FILE_UNREADABLE,
        )
    try:
        connection = sqlite3.connect(_file_uri(path, "rw"), uri=True)
    except sqlite3.Error as e:
        raise ImportFileError(
            f"Cannot open database: {e}",
            path=str(path),
            code=ErrorCode.IMPORT_FILE_UNREADABLE,
            original_error=e,
        ) from e
    try:
        connection.execute("SELECT count(*) FROM sqlite_master").fetchone()
    except sqlite3.Error as e:
        connection.close()
        raise ImportFileError(
            f"Cannot read database: {e}",
            path=str(path),
            code=ErrorCode.IMPORT_FILE_UNREADABLE,
            original_error=e,
        ) from e
    connection.row_factory = sqlite3.Row
    return connection


def reconcile(
    path: Union[str, Path],
    strategies: Sequence[CheckpointStrategy] = DEFAULT_STRATEGIES,
) -> ReconcileResult:
    """Fold any pending ``-wal`` content into the database file.

    Steps:
    1. Probe the file read-only, then reopen it read-write. The file is a
       private staged copy, so writing to it is safe.
    2. Try each checkpoint strategy in order until one succeeds.
    3. Apply ``synchronous=FULL`` and a 64MB page cache before any read.

    Running this on an already reconciled file is harmless: the checkpoint
    finds an empty log and succeeds.

    Args:
        path: Primary database file. Sidecars must sit next to it with the
              ``-wal`` / ``-shm`` suffixes.
        strategies: Checkpoint strategies in the order to try them.

    Returns:
        ReconcileResult holding the open connection, the mode that succeeded
        (None if all failed) and the diagnostic lines.

    Raises:
        ImportFileError: If the file cannot be opened at all.
    """
    path = Path(path)
    diagnostics: List[str] = []

    probe_error = _probe_read_only(path)
    if probe_error:
        diagnostics.append(probe_error)
        logger.info(probe_error)

    connection = open_database(path)

    mode: Optional[str] = None
    for strategy in strategies:
        succeeded, line = strategy.apply(connection)
        diagnostics.append(line)
        if succeeded:
            logger.debug(line)
            mode = strategy.mode
            break
        logger.warning(line)

    if mode is None:
        line = "All WAL checkpoint strategies failed; reading without reconciliation"
        diagnostics.append(line)
        logger.warning(line)

    for pragma in POST_RECONCILE_PRAGMAS:
        try:
            connection.execute(pragma)
        except sqlite3.Error as e:
            line = f"{pragma} failed: {e}"
            diagnostics.append(line)
            logger.warning(line)

    logger.info(f"Reconciled {path.name} (mode={mode})")
    return ReconcileResult(connection=connection, mode=mode, diagnostics=diagnostics)

"""Staging of uploaded database files for import.

The primary file and its optional ``-wal`` / ``-shm`` sidecars are copied into
the temp directory under one generated base name, so SQLite finds the
sidecars next to the primary when the copy is opened.
"""
import logging
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, List, Optional, Union

from memobridge.config import config
from memobridge.exceptions import ErrorCode, ImportFileError

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = (".db", ".sqlite", ".sqlite3")

UploadSource = Union[str, Path, BinaryIO]


@dataclass
class StagedUpload:
    """A database copy staged in the temp directory."""

    database: Path
    wal: Optional[Path] = None
    shm: Optional[Path] = None
    original_filename: Optional[str] = None

    @property
    def paths(self) -> List[Path]:
        return [p for p in (self.database, self.wal, self.shm) if p is not None]

    def cleanup(self) -> None:
        """Remove the primary file and any sidecars; errors are only logged.

        SQLite may have created or removed sidecars while the copy was open,
        so the conventional sidecar names are checked as well.
        """
        candidates = set(self.paths)
        candidates.add(Path(f"{self.database}-wal"))
        candidates.add(Path(f"{self.database}-shm"))
        for path in candidates:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to remove temp file {path}: {e}")
        logger.debug(f"Cleaned up staged upload {self.database.name}")


def _source_name(source: UploadSource) -> Optional[str]:
    if isinstance(source, (str, Path)):
        return Path(source).name
    name = getattr(source, "name", None)
    return Path(name).name if isinstance(name, str) else None


def validate_filename(filename: Optional[str]) -> None:
    """Check the primary upload has a SQLite database extension.

    Raises:
        ImportFileError: With status 400 for a missing or wrong extension.
    """
    if not filename or not filename.lower().endswith(ALLOWED_EXTENSIONS):
        raise ImportFileError(
            f"Unsupported database file: {filename!r} "
            f"(expected one of {', '.join(ALLOWED_EXTENSIONS)})",
            code=ErrorCode.IMPORT_FILE_INVALID,
            status_code=400,
        )


def _copy(source: UploadSource, dest: Path) -> None:
    if isinstance(source, (str, Path)):
        path = Path(source)
        if not path.is_file():
            raise ImportFileError(
                "Uploaded file not found",
                path=str(path),
                code=ErrorCode.IMPORT_FILE_INVALID,
                status_code=400,
            )
        shutil.copyfile(path, dest)
    else:
        with open(dest, "wb") as f_out:
            shutil.copyfileobj(source, f_out)


def stage_upload(
    database: UploadSource,
    wal: Optional[UploadSource] = None,
    shm: Optional[UploadSource] = None,
    filename: Optional[str] = None,
    temp_dir: Optional[Path] = None,
) -> StagedUpload:
    """Copy an uploaded database and its sidecars into the temp directory.

    Args:
        database: Primary file, as a path or a binary file object.
        wal: Optional write-ahead log sidecar.
        shm: Optional shared-memory index sidecar.
        filename: Original filename, used for extension checks when
                  ``database`` is a file object without a name.
        temp_dir: Staging directory. Defaults to ``config.get_temp_dir()``.

    Returns:
        StagedUpload describing the staged copies.

    Raises:
        ImportFileError: If the primary file is missing or not a database file.
    """
    original_filename = filename or _source_name(database)
    validate_filename(original_filename)

    staging = config.get_temp_dir(temp_dir)
    base = staging / f"import-{uuid.uuid4().hex}.db"
    staged = StagedUpload(database=base, original_filename=original_filename)

    try:
        _copy(database, base)
        if wal is not None:
            staged.wal = Path(f"{base}-wal")
            _copy(wal, staged.wal)
        if shm is not None:
            staged.shm = Path(f"{base}-shm")
            _copy(shm, staged.shm)
    except ImportFileError:
        staged.cleanup()
        raise
    except OSError as e:
        staged.cleanup()
        raise ImportFileError(
            f"Failed to stage upload: {e}",
            path=str(base),
            code=ErrorCode.IMPORT_FILE_UNREADABLE,
            original_error=e,
            status_code=500,
        ) from e

    logger.info(
        f"Staged upload {original_filename} as {base.name} "
        f"(wal={staged.wal is not None}, shm={staged.shm is not None})"
    )
    return staged

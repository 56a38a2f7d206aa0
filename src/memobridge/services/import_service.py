"""Bulk import of an uploaded Memos database into the canonical store.

One import runs through these states::

    UPLOADED -> RECONCILED -> PARSED -> TRANSFORMED -> INSERTING -> COMPLETED

Whole-file problems (bad file name, unreadable file, no ``memo`` table) move
the run to FAILED and can only happen in the first three states. Problems with
single records never fail the run; they are listed in the report instead.
"""
import asyncio
import datetime
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from memobridge.config import config
from memobridge.exceptions import ImportFileError
from memobridge.models.schema import (
    MemoRow,
    ResourceRow,
    Visibility,
    epoch_to_datetime,
    extract_tags,
    utc_now,
)
from memobridge.observability import timed_operation
from memobridge.services.diagnostics import ImportDiagnostics, SkippedRecord, SkipReason
from memobridge.services.resource_materializer import materialize
from memobridge.services.upload import StagedUpload, UploadSource, stage_upload
from memobridge.storage.memo_repository import MemoRepository
from memobridge.storage.source_reader import SourceReader, SourceSnapshot
from memobridge.storage.wal_reconciler import ReconcileResult, reconcile

logger = logging.getLogger(__name__)


class ImportState(str, Enum):
    """Stages of one import run."""

    UPLOADED = "uploaded"
    RECONCILED = "reconciled"
    PARSED = "parsed"
    TRANSFORMED = "transformed"
    INSERTING = "inserting"
    COMPLETED = "completed"
    FAILED = "failed"


_STATE_ORDER = (
    ImportState.UPLOADED,
    ImportState.RECONCILED,
    ImportState.PARSED,
    ImportState.TRANSFORMED,
    ImportState.INSERTING,
    ImportState.COMPLETED,
)
_FAILABLE_STATES = frozenset(
    {ImportState.UPLOADED, ImportState.RECONCILED, ImportState.PARSED}
)


class OutcomeStatus(str, Enum):
    IMPORTED = "imported"
    SKIPPED = "skipped"
    ERRORED = "errored"


@dataclass
class RecordOutcome:
    """What happened to one source record."""

    source_id: Optional[int]
    status: OutcomeStatus
    reason: Optional[str] = None
    note_id: Optional[int] = None


@dataclass
class TransformedRecord:
    """A source memo ready for insertion."""

    source: MemoRow
    content: str
    created_at: datetime.datetime
    updated_at: datetime.datetime
    visibility: Visibility
    tags: List[str]
    size: int
    resource_count: int = 0

    @property
    def pinned(self) -> bool:
        return self.source.pinned

    @property
    def archived(self) -> bool:
        return self.source.is_archived


class ImportRun:
    """Working set of a single import. Discarded once the report is built."""

    def __init__(self, filename: Optional[str] = None):
        self.filename = filename
        self.state = ImportState.UPLOADED
        self.transitions: List[ImportState] = [ImportState.UPLOADED]
        self.diagnostics = ImportDiagnostics()
        self.records: List[TransformedRecord] = []
        self.outcomes: List[RecordOutcome] = []
        self.status_counts: Dict[str, int] = {}
        self.resource_count = 0
        self.inserted_count = 0
        self.pinned_count = 0
        self.error: Optional[ImportFileError] = None

    def advance(self, state: ImportState) -> None:
        """Move to the next stage. Stages cannot be skipped or repeated."""
        if self.state == ImportState.FAILED:
            raise ValueError("Cannot advance a failed import run")
        expected = _STATE_ORDER[_STATE_ORDER.index(self.state) + 1]
        if state != expected:
            raise ValueError(
                f"Illegal import transition {self.state.value} -> {state.value}"
            )
        self.state = state
        self.transitions.append(state)
        logger.debug(f"Import run -> {state.value}")

    def fail(self, error: ImportFileError) -> None:
        """Abort the run because of a whole-file error."""
        if self.state not in _FAILABLE_STATES:
            raise ValueError(f"Import run cannot fail from {self.state.value}")
        self.error = error
        self.state = ImportState.FAILED
        self.transitions.append(ImportState.FAILED)

    def skip(self, record: SkippedRecord, errored: bool = False) -> None:
        self.diagnostics.skip(record)
        self.outcomes.append(
            RecordOutcome(
                source_id=record.id,
                status=OutcomeStatus.ERRORED if errored else OutcomeStatus.SKIPPED,
                reason=record.reason,
            )
        )


@dataclass
class ImportReport:
    """Result of one import, shaped for a JSON response."""

    success: bool
    status_code: int = 200
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    transitions: List[ImportState] = field(default_factory=list)

    @classmethod
    def from_run(cls, run: ImportRun) -> "ImportReport":
        diagnostics = run.diagnostics
        data = {
            "insertedCount": run.inserted_count,
            "pinnedCount": run.pinned_count,
            "skippedCount": len(diagnostics.skipped),
            "totalProcessed": diagnostics.parsed_total,
            "summary": {
                "statusCounts": dict(run.status_counts),
                "normalMemos": run.status_counts.get("NORMAL", 0),
                "archivedMemos": run.status_counts.get("ARCHIVED", 0),
                "resourceCount": run.resource_count,
            },
            "diagnostics": list(diagnostics.lines),
            "skippedRecords": diagnostics.skipped_records(),
            "dbDiscrepancy": diagnostics.discrepancy(),
        }
        return cls(success=True, data=data, transitions=list(run.transitions))

    @classmethod
    def from_error(cls, run: ImportRun, error: ImportFileError) -> "ImportReport":
        return cls(
            success=False,
            status_code=error.status_code,
            error=error.message,
            transitions=list(run.transitions),
        )

    def to_response(self) -> Dict[str, Any]:
        if not self.success:
            return {"error": self.error}
        return {"success": True, "data": self.data}


class ImportService:
    """Imports uploaded Memos databases through a ``MemoRepository``."""

    def __init__(
        self,
        repository: MemoRepository,
        batch_size: Optional[int] = None,
        batch_pause: Optional[float] = None,
        max_content_bytes: Optional[int] = None,
        temp_dir: Optional[Path] = None,
    ):
        self.repository = repository
        self.batch_size = batch_size or config.import_batch_size
        self.batch_pause = (
            batch_pause if batch_pause is not None else config.import_batch_pause
        )
        self.max_content_bytes = max_content_bytes or config.max_content_bytes
        self.temp_dir = temp_dir

    async def run(
        self,
        database: UploadSource,
        wal: Optional[UploadSource] = None,
        shm: Optional[UploadSource] = None,
        filename: Optional[str] = None,
        skip_existing: bool = False,
    ) -> ImportReport:
        """Import one uploaded database.

        Args:
            database: Primary database file (path or binary file object).
            wal: Optional ``-wal`` sidecar.
            shm: Optional ``-shm`` sidecar.
            filename: Original upload name, for file objects without one.
            skip_existing: Skip records whose uid already exists in the
                target instead of importing them again under a new uid.

        Returns:
            ImportReport. Whole-file errors are reported, not raised.
        """
        run = ImportRun(filename=filename)
        staged: Optional[StagedUpload] = None
        source: Optional[ReconcileResult] = None

        with timed_operation("import_database", filename=filename) as op:
            try:
                try:
                    staged = stage_upload(
                        database, wal=wal, shm=shm, filename=filename,
                        temp_dir=self.temp_dir,
                    )
                    source = reconcile(staged.database)
                    run.diagnostics.extend(source.diagnostics)
                    run.advance(ImportState.RECONCILED)

                    snapshot = SourceReader(source.connection).read()
                    run.advance(ImportState.PARSED)
                except ImportFileError as e:
                    logger.error(f"Import failed: {e}")
                    run.fail(e)
                    op["failed"] = e.code.name
                    return ImportReport.from_error(run, e)
                finally:
                    if source is not None:
                        source.close()

                self.transform(run, snapshot)
                run.advance(ImportState.TRANSFORMED)

                run.advance(ImportState.INSERTING)
                await self.insert(run, skip_existing=skip_existing)
                run.advance(ImportState.COMPLETED)
            finally:
                if staged is not None:
                    staged.cleanup()

            op["inserted"] = run.inserted_count
            op["skipped"] = len(run.diagnostics.skipped)

        return ImportReport.from_run(run)

    def run_sync(self, *args, **kwargs) -> ImportReport:
        """Run ``run()`` to completion from synchronous code."""
        return asyncio.run(self.run(*args, **kwargs))

    def transform_record(
        self, row: MemoRow, resources: Sequence[ResourceRow]
    ) -> TransformedRecord:
        """Turn one source row into an insertable record.

        Raises:
            ValueError: For values that cannot be converted.
        """
        created_ts = row.created_ts or row.updated_ts
        created_at = epoch_to_datetime(created_ts) if created_ts else utc_now()
        updated_at = epoch_to_datetime(row.updated_ts) if row.updated_ts else created_at

        body = materialize(row.content or "", resources)
        return TransformedRecord(
            source=row,
            content=body.content,
            created_at=created_at,
            updated_at=updated_at,
            visibility=Visibility.parse(row.visibility, default=Visibility.PRIVATE),
            tags=extract_tags(body.content),
            size=len(body.content.encode("utf-8")),
            resource_count=len(resources),
        )

    def transform(self, run: ImportRun, snapshot: SourceSnapshot) -> None:
        """Validate and transform every parsed row, recording skips."""
        diagnostics = run.diagnostics
        for line in snapshot.diagnostics:
            diagnostics.add(line)
        diagnostics.db_total = len(snapshot.memos)
        diagnostics.add(f"Source query returned {diagnostics.db_total} records")

        for row in snapshot.memos:
            if not row.has_id:
                run.skip(
                    SkippedRecord(
                        reason=SkipReason.NO_ID,
                        row_status=row.row_status,
                        content_preview=row.content_preview,
                    )
                )
                continue

            resources = snapshot.resources_by_memo.get(row.id, [])
            try:
                record = self.transform_record(row, resources)
            except Exception as e:
                logger.error(f"Failed to transform memo {row.id}: {e}", exc_info=True)
                run.skip(
                    SkippedRecord(
                        reason=SkipReason.TRANSFORM_ERROR, id=row.id, error=str(e)
                    ),
                    errored=True,
                )
                continue

            if record.size > self.max_content_bytes:
                diagnostics.warn(
                    f"Memo {row.id} is {record.size // 1024}KB after embedding "
                    f"resources; skipping"
                )
                run.skip(
                    SkippedRecord(
                        reason=SkipReason.CONTENT_TOO_LARGE,
                        id=row.id,
                        row_status=row.row_status,
                        content_preview=row.content_preview,
                        size=record.size,
                    )
                )
                continue

            run.records.append(record)
            run.resource_count += record.resource_count
            status = row.row_status or "NULL"
            run.status_counts[status] = run.status_counts.get(status, 0) + 1

        diagnostics.parsed_total = len(run.records)
        diagnostics.add(
            f"Parsed {diagnostics.parsed_total} of {diagnostics.db_total} records, "
            f"skipped {diagnostics.db_total - diagnostics.parsed_total}"
        )

    async def insert(self, run: ImportRun, skip_existing: bool = False) -> None:
        """Insert transformed records in batches, pausing between batches."""
        records = run.records
        total_batches = (len(records) + self.batch_size - 1) // self.batch_size

        for batch_index in range(total_batches):
            start = batch_index * self.batch_size
            batch = records[start:start + self.batch_size]
            logger.debug(
                f"Inserting batch {batch_index + 1}/{total_batches} "
                f"({start + 1}-{start + len(batch)})"
            )
            for record in batch:
                self._insert_record(run, record, skip_existing)

            if batch_index < total_batches - 1:
                await asyncio.sleep(self.batch_pause)

        run.diagnostics.imported_total = run.inserted_count
        run.diagnostics.add(
            f"Inserted {run.inserted_count} of {len(records)} records "
            f"in {total_batches} batches ({run.pinned_count} pinned)"
        )

    def _insert_record(
        self, run: ImportRun, record: TransformedRecord, skip_existing: bool
    ) -> None:
        source = record.source
        try:
            uid = source.uid
            if uid and self.repository.uid_exists(uid):
                if skip_existing:
                    run.skip(
                        SkippedRecord(
                            reason=SkipReason.ALREADY_EXISTS,
                            id=source.id,
                            row_status=source.row_status,
                            content_preview=source.content_preview,
                        )
                    )
                    return
                uid = None

            note = self.repository.create_note(
                content=record.content,
                visibility=record.visibility,
                pinned=record.pinned,
                archived=record.archived,
                created_at=record.created_at,
                updated_at=record.updated_at,
                uid=uid,
            )
        except Exception as e:
            logger.error(f"Failed to insert memo {source.id}: {e}", exc_info=True)
            run.skip(
                SkippedRecord(
                    reason=SkipReason.INSERT_FAILED, id=source.id, error=str(e)
                ),
                errored=True,
            )
            return

        run.inserted_count += 1
        if record.pinned:
            run.pinned_count += 1
        run.outcomes.append(
            RecordOutcome(
                source_id=source.id, status=OutcomeStatus.IMPORTED, note_id=note.id
            )
        )

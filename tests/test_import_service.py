"""Tests for the end-to-end import pipeline."""
import asyncio
import datetime
import io
import sqlite3

import pytest

from memobridge.exceptions import ImportFileError
from memobridge.models.schema import RowStatus, Visibility
from memobridge.services.import_service import (
    ImportRun,
    ImportService,
    ImportState,
)
from tests.fakes import PNG_BYTES, SourceDatabaseBuilder, build_wal_copy


def _all_notes(repository):
    return repository.list_notes(include_archived=True, limit=1000).notes


class TestHappyPath:
    """Imports that complete."""

    @pytest.mark.anyio
    async def test_single_memo_with_tag(self, import_service, memo_repository, source_builder):
        builder = source_builder()
        builder.add_memo("hello #demo", id=7, created_ts=1700000000)
        path = builder.close()

        report = await import_service.run(path)

        assert report.success
        assert report.data["insertedCount"] == 1
        assert report.data["dbDiscrepancy"] is None
        note = _all_notes(memo_repository)[0]
        assert note.content == "hello #demo"
        assert note.tags == ["demo"]
        assert note.archived is False
        assert note.pinned is False
        assert note.created_at == datetime.datetime.fromtimestamp(
            1700000000, tz=datetime.timezone.utc
        )

    @pytest.mark.anyio
    async def test_deleted_rows_never_parsed(self, import_service, memo_repository, source_builder):
        builder = source_builder()
        builder.add_memo("keep", id=7)
        builder.add_memo("gone", id=8, row_status="DELETED")
        path = builder.close()

        report = await import_service.run(path)

        assert report.data["insertedCount"] == 1
        assert report.data["skippedRecords"] == []
        assert report.data["dbDiscrepancy"] is None
        assert "DELETED" not in report.data["summary"]["statusCounts"]
        assert [n.content for n in _all_notes(memo_repository)] == ["keep"]

    @pytest.mark.anyio
    async def test_lowercase_deleted_rows_never_parsed(self, import_service, memo_repository, source_builder):
        builder = source_builder()
        builder.add_memo("keep", id=7)
        builder.add_memo("gone", id=8, row_status="deleted")
        path = builder.close()

        report = await import_service.run(path)

        assert report.data["insertedCount"] == 1
        assert "Source holds 2 memo rows, 1 of them not deleted" in report.data["diagnostics"]
        assert [n.content for n in _all_notes(memo_repository)] == ["keep"]

    @pytest.mark.anyio
    async def test_null_and_unknown_status_imported(self, import_service, memo_repository, source_builder):
        builder = source_builder()
        builder.add_memo("null status", row_status=None)
        builder.add_memo("future status", row_status="SNOOZED")
        path = builder.close()

        report = await import_service.run(path)

        assert report.data["insertedCount"] == 2
        assert report.data["summary"]["statusCounts"] == {"NULL": 1, "SNOOZED": 1}

    @pytest.mark.anyio
    async def test_image_resource_embedded(self, import_service, memo_repository, source_builder):
        builder = source_builder()
        builder.add_memo("hello #demo", id=7)
        builder.add_resource(7, filename="a.png", mime_type="image/png", blob=PNG_BYTES)
        path = builder.close()

        report = await import_service.run(path)

        assert report.data["summary"]["resourceCount"] == 1
        content = _all_notes(memo_repository)[0].content
        assert content.startswith("hello #demo\n\n![a.png_1](data:image/png;base64,")

    @pytest.mark.anyio
    async def test_status_pin_visibility_preserved(self, import_service, memo_repository, source_builder):
        builder = source_builder()
        builder.add_memo("archived", row_status="ARCHIVED", created_ts=1700000000)
        builder.add_memo("pinned", pinned=True, visibility="PUBLIC", created_ts=1700000100)
        path = builder.close()

        report = await import_service.run(path)

        assert report.data["pinnedCount"] == 1
        assert report.data["summary"]["normalMemos"] == 1
        assert report.data["summary"]["archivedMemos"] == 1
        notes = {n.content: n for n in _all_notes(memo_repository)}
        assert notes["archived"].status == RowStatus.ARCHIVED
        assert notes["pinned"].pinned is True
        assert notes["pinned"].visibility == Visibility.PUBLIC

    @pytest.mark.anyio
    async def test_legacy_pinned_column(self, import_service, memo_repository, source_builder):
        builder = source_builder(legacy_pinned=True, with_resources=False)
        builder.add_memo("old pinned", pinned=True)
        path = builder.close()

        report = await import_service.run(path)

        assert report.success
        assert report.data["pinnedCount"] == 1
        assert any("no resource table" in line for line in report.data["diagnostics"])

    @pytest.mark.anyio
    async def test_wal_only_rows_imported(self, import_service, memo_repository, tmp_path):
        builder = SourceDatabaseBuilder(tmp_path / "live.db")
        builder.add_memo("committed")
        source = builder.close()
        files = build_wal_copy(source, tmp_path / "upload", ["only in wal 1", "only in wal 2"])

        report = await import_service.run(files["db"], wal=files["wal"])

        assert report.data["insertedCount"] == 3
        contents = {n.content for n in _all_notes(memo_repository)}
        assert {"only in wal 1", "only in wal 2"} <= contents

    @pytest.mark.anyio
    async def test_original_ordering_preserved(self, import_service, memo_repository, source_builder):
        builder = source_builder()
        for i in range(5):
            builder.add_memo(f"memo {i}", created_ts=1700000000 + i)
        path = builder.close()

        await import_service.run(path)

        contents = [n.content for n in memo_repository.list_notes().notes]
        assert contents == [f"memo {i}" for i in reversed(range(5))]


class TestSkips:
    """Per-record problems are reported, never fatal."""

    @pytest.mark.anyio
    async def test_row_without_id(self, import_service, source_builder):
        builder = source_builder(loose_ids=True)
        builder.add_memo("has id", id=1)
        builder.add_memo("no id here", id=None)
        path = builder.close()

        report = await import_service.run(path)

        assert report.success
        assert report.data["insertedCount"] == 1
        assert report.data["skippedCount"] == 1
        assert report.data["skippedRecords"] == [
            {"reason": "no id", "row_status": "NORMAL", "content_preview": "no id here"}
        ]
        assert report.data["dbDiscrepancy"] == {
            "dbTotal": 2,
            "parsedTotal": 1,
            "importedTotal": 1,
            "lostInParsing": 1,
            "lostInImport": 0,
        }

    @pytest.mark.anyio
    async def test_oversized_body(self, import_service, memo_repository, source_builder):
        builder = source_builder()
        builder.add_memo("small", id=1)
        builder.add_memo("x" * (600 * 1024), id=2)
        path = builder.close()

        report = await import_service.run(path)

        assert report.data["insertedCount"] == 1
        assert report.data["skippedCount"] == 1
        skipped = report.data["skippedRecords"][0]
        assert skipped["reason"] == "content too large"
        assert skipped["id"] == 2
        assert skipped["size"] == 600 * 1024
        assert len(_all_notes(memo_repository)) == 1

    @pytest.mark.anyio
    async def test_insert_failure_does_not_stop_batch(
        self, import_service, memo_repository, source_builder, monkeypatch
    ):
        builder = source_builder()
        for i in range(1, 4):
            builder.add_memo(f"memo {i}", id=i, created_ts=1700000000 + i)
        path = builder.close()

        original = memo_repository.create_note

        def flaky_create(**kwargs):
            if kwargs["content"] == "memo 2":
                raise RuntimeError("disk full")
            return original(**kwargs)

        monkeypatch.setattr(memo_repository, "create_note", flaky_create)
        report = await import_service.run(path)

        assert report.data["insertedCount"] == 2
        assert report.data["skippedRecords"] == [
            {"reason": "insert failed", "id": 2, "error": "disk full"}
        ]
        assert report.data["dbDiscrepancy"]["lostInImport"] == 1

    @pytest.mark.anyio
    async def test_reimport_appends_by_default(self, import_service, memo_repository, source_builder):
        builder = source_builder()
        builder.add_memo("twice", id=1)
        path = builder.close()

        first = await import_service.run(path)
        second = await import_service.run(path)

        assert first.data["insertedCount"] == second.data["insertedCount"] == 1
        notes = _all_notes(memo_repository)
        assert len(notes) == 2
        assert len({n.uid for n in notes}) == 2

    @pytest.mark.anyio
    async def test_skip_existing(self, import_service, memo_repository, source_builder):
        builder = source_builder()
        builder.add_memo("once", id=1)
        path = builder.close()

        await import_service.run(path)
        report = await import_service.run(path, skip_existing=True)

        assert report.data["insertedCount"] == 0
        assert report.data["skippedRecords"][0]["reason"] == "already exists"
        assert len(_all_notes(memo_repository)) == 1


class TestBatching:
    """Tests for batch sizes and the pause between batches."""

    @pytest.mark.anyio
    async def test_pause_between_batches_only(self, memo_repository, source_builder, monkeypatch):
        builder = source_builder()
        for i in range(7):
            builder.add_memo(f"memo {i}")
        path = builder.close()

        sleeps = []
        real_sleep = asyncio.sleep

        async def fake_sleep(delay, *args, **kwargs):
            if delay:
                sleeps.append(delay)
            await real_sleep(0)

        monkeypatch.setattr("memobridge.services.import_service.asyncio.sleep", fake_sleep)
        service = ImportService(memo_repository, batch_size=3, batch_pause=0.25)
        report = await service.run(path)

        assert report.data["insertedCount"] == 7
        assert sleeps == [0.25, 0.25]

    def test_run_sync(self, import_service, source_builder):
        builder = source_builder()
        builder.add_memo("sync")
        path = builder.close()

        report = import_service.run_sync(path)
        assert report.success
        assert report.to_response()["data"]["insertedCount"] == 1


class TestWholeFileFailures:
    """Whole-file errors fail the run with a single message."""

    @pytest.mark.anyio
    async def test_wrong_extension(self, import_service, tmp_path):
        path = tmp_path / "memos.txt"
        path.write_bytes(b"whatever")

        report = await import_service.run(path)

        assert not report.success
        assert report.status_code == 400
        assert set(report.to_response()) == {"error"}
        assert report.transitions == [ImportState.UPLOADED, ImportState.FAILED]

    @pytest.mark.anyio
    async def test_not_a_database(self, import_service, tmp_path):
        path = tmp_path / "memos.db"
        path.write_bytes(b"not sqlite at all" * 64)

        report = await import_service.run(path)

        assert not report.success
        assert report.status_code == 500
        assert report.to_response()["error"]

    @pytest.mark.anyio
    async def test_missing_memo_table(self, import_service, tmp_path):
        path = tmp_path / "other.db"
        conn = sqlite3.connect(str(path))
        conn.execute("CREATE TABLE something (id INTEGER)")
        conn.commit()
        conn.close()

        report = await import_service.run(path)

        assert not report.success
        assert report.status_code == 500
        assert report.transitions == [
            ImportState.UPLOADED,
            ImportState.RECONCILED,
            ImportState.FAILED,
        ]

    @pytest.mark.anyio
    async def test_temp_files_removed(self, import_service, test_config, source_builder):
        builder = source_builder()
        builder.add_memo("x")
        path = builder.close()

        await import_service.run(path)
        failed = await import_service.run(io.BytesIO(b"junk"), filename="bad.db")

        assert not failed.success
        assert list(test_config.get_temp_dir().iterdir()) == []


class TestImportRunStates:
    """Tests for the import state machine."""

    def test_full_sequence(self):
        run = ImportRun()
        for state in (
            ImportState.RECONCILED,
            ImportState.PARSED,
            ImportState.TRANSFORMED,
            ImportState.INSERTING,
            ImportState.COMPLETED,
        ):
            run.advance(state)
        assert run.state == ImportState.COMPLETED

    def test_cannot_skip_states(self):
        run = ImportRun()
        with pytest.raises(ValueError):
            run.advance(ImportState.PARSED)

    def test_cannot_fail_after_parsing(self):
        run = ImportRun()
        run.advance(ImportState.RECONCILED)
        run.advance(ImportState.PARSED)
        run.advance(ImportState.TRANSFORMED)
        with pytest.raises(ValueError):
            run.fail(ImportFileError("late"))

    def test_failed_run_cannot_advance(self):
        run = ImportRun()
        run.fail(ImportFileError("bad"))
        with pytest.raises(ValueError):
            run.advance(ImportState.RECONCILED)

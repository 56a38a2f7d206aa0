"""Common test fixtures for memobridge."""

import tempfile
from pathlib import Path

import pytest

from memobridge.config import config
from memobridge.models.db_models import init_db
from memobridge.services.import_service import ImportService
from memobridge.storage.memo_repository import MemoRepository
from tests.fakes import SourceDatabaseBuilder


@pytest.fixture(params=["asyncio"])
def anyio_backend(request):
    """Restrict anyio tests to asyncio only (trio is not installed)."""
    return request.param


@pytest.fixture
def temp_dirs():
    """Create temporary directories for the canonical database and uploads."""
    with tempfile.TemporaryDirectory() as db_dir:
        with tempfile.TemporaryDirectory() as upload_dir:
            yield Path(db_dir), Path(upload_dir)


@pytest.fixture
def test_config(temp_dirs, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    db_dir, upload_dir = temp_dirs
    monkeypatch.setattr(config, "database_path", db_dir / "memos_test.db")
    monkeypatch.setattr(config, "temp_dir", db_dir / "temp")
    monkeypatch.setattr(config, "import_batch_pause", 0.0)
    yield config


@pytest.fixture
def engine(test_config):
    """Canonical store engine, disposed after the test."""
    engine = init_db()
    yield engine
    engine.dispose()


@pytest.fixture
def memo_repository(engine):
    """Create a test memo repository."""
    yield MemoRepository(engine=engine)


@pytest.fixture
def import_service(memo_repository):
    """Create an import service without pauses between batches."""
    yield ImportService(memo_repository, batch_pause=0.0)


@pytest.fixture
def upload_dir(temp_dirs):
    return temp_dirs[1]


@pytest.fixture
def source_builder(upload_dir):
    """Factory for Memos source databases in the upload directory."""
    builders = []

    def _build(name="memos.db", **kwargs):
        builder = SourceDatabaseBuilder(upload_dir / name, **kwargs)
        builders.append(builder)
        return builder

    yield _build
    for builder in builders:
        builder.conn.close()

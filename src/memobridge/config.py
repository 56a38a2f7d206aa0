"""Configuration module for memobridge."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from memobridge import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config, lives alongside logs and metrics
_USER_ENV = Path.home() / ".memobridge" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

# Notes whose body grows past this after resource embedding are not imported
DEFAULT_MAX_CONTENT_BYTES = 500 * 1024


class MemoBridgeConfig(BaseModel):
    """Configuration for the Memos adapter and import pipeline."""

    # Base directory for the project
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("MEMOBRIDGE_BASE_DIR", "."))
    )
    # Canonical Memos database file
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("MEMOBRIDGE_DATABASE_PATH", "data/memos_db/memos_prod.db")
        )
    )
    # Where uploaded database copies and their sidecars are staged
    temp_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("MEMOBRIDGE_TEMP_DIR", "data/temp"))
    )
    # Memos is used single-user: every row is written for this creator
    default_user_id: int = Field(
        default_factory=lambda: int(os.getenv("MEMOBRIDGE_DEFAULT_USER_ID", "1"))
    )
    default_username: str = Field(
        default=os.getenv("MEMOBRIDGE_DEFAULT_USERNAME", "memobridge")
    )
    # Import pipeline tuning
    import_batch_size: int = Field(
        default_factory=lambda: int(os.getenv("MEMOBRIDGE_IMPORT_BATCH_SIZE", "50"))
    )
    import_batch_pause: float = Field(
        default_factory=lambda: float(
            os.getenv("MEMOBRIDGE_IMPORT_BATCH_PAUSE", "0.1")
        )
    )
    max_content_bytes: int = Field(
        default_factory=lambda: int(
            os.getenv("MEMOBRIDGE_MAX_CONTENT_BYTES", str(DEFAULT_MAX_CONTENT_BYTES))
        )
    )
    # Default page window for list views
    page_size: int = Field(
        default_factory=lambda: int(os.getenv("MEMOBRIDGE_PAGE_SIZE", "50"))
    )
    # Server configuration
    server_name: str = Field(
        default=os.getenv("MEMOBRIDGE_SERVER_NAME", "memobridge")
    )
    server_version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_import_config(self) -> "MemoBridgeConfig":
        """Validate pipeline tuning values."""
        if self.import_batch_size < 1:
            raise ValueError("import_batch_size must be >= 1")
        if self.import_batch_pause < 0:
            raise ValueError("import_batch_pause must be >= 0")
        if self.max_content_bytes < 1:
            raise ValueError("max_content_bytes must be >= 1")
        if self.page_size < 1:
            raise ValueError("page_size must be >= 1")
        if self.max_content_bytes < 64 * 1024:
            logger.warning(
                "max_content_bytes=%d is small; notes with embedded images "
                "will mostly be skipped during import.",
                self.max_content_bytes,
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the database URL for the canonical SQLite store."""
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"

    def get_temp_dir(self, temp_dir: Optional[Path] = None) -> Path:
        """Get the absolute upload staging directory, creating it if needed."""
        path = self.get_absolute_path(temp_dir or self.temp_dir)
        path.mkdir(parents=True, exist_ok=True)
        return path


# Create a global config instance
config = MemoBridgeConfig()

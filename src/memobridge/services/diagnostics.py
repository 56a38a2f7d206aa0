"""Diagnostics collected during one import run."""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 50


class SkipReason:
    """Reasons recorded for records that were not imported."""

    NO_ID = "no id"
    CONTENT_TOO_LARGE = "content too large"
    TRANSFORM_ERROR = "transform error"
    INSERT_FAILED = "insert failed"
    ALREADY_EXISTS = "already exists"


@dataclass
class SkippedRecord:
    """One record left out of an import, with why."""

    reason: str
    id: Optional[int] = None
    row_status: Optional[str] = None
    content_preview: Optional[str] = None
    error: Optional[str] = None
    size: Optional[int] = None

    def __post_init__(self):
        if self.content_preview is not None:
            self.content_preview = self.content_preview[:PREVIEW_LENGTH]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize, omitting fields that were never set."""
        data: Dict[str, Any] = {"reason": self.reason}
        for key in ("id", "row_status", "content_preview", "error", "size"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


@dataclass
class ImportDiagnostics:
    """Ordered diagnostic lines plus the three per-stage record counts.

    ``db_total`` is what the source file reports, ``parsed_total`` what
    survived parsing and transformation, ``imported_total`` what was actually
    inserted. Any disagreement between them means records were dropped and is
    surfaced by ``discrepancy()``.
    """

    lines: List[str] = field(default_factory=list)
    skipped: List[SkippedRecord] = field(default_factory=list)
    db_total: int = 0
    parsed_total: int = 0
    imported_total: int = 0

    def add(self, line: str, level: int = logging.INFO) -> None:
        """Record a diagnostic line and mirror it to the log."""
        self.lines.append(line)
        logger.log(level, line)

    def extend(self, lines: List[str]) -> None:
        """Record lines that another component already logged."""
        self.lines.extend(lines)

    def warn(self, line: str) -> None:
        self.add(line, logging.WARNING)

    def skip(self, record: SkippedRecord) -> None:
        self.skipped.append(record)
        logger.debug(f"Skipped record id={record.id}: {record.reason}")

    def discrepancy(self) -> Optional[Dict[str, int]]:
        """Compare the three stage counts.

        Returns:
            None when all three agree, otherwise the counts and the records
            lost between consecutive stages.
        """
        if self.db_total == self.parsed_total == self.imported_total:
            return None
        return {
            "dbTotal": self.db_total,
            "parsedTotal": self.parsed_total,
            "importedTotal": self.imported_total,
            "lostInParsing": self.db_total - self.parsed_total,
            "lostInImport": self.parsed_total - self.imported_total,
        }

    def skipped_records(self) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in self.skipped]

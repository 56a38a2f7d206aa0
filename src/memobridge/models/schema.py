"""Data models for memobridge.

Two families live here:

* pydantic models (``Note``, ``Resource``, ``NotePage``, ``NoteUpdate``) that the
  adapter hands to callers, and
* frozen dataclasses (``MemoRow``, ``ResourceRow``) describing rows read from an
  uploaded Memos database, where any column may be missing or NULL.
"""

import datetime
import re
import uuid
from dataclasses import dataclass
from datetime import timezone
from enum import Enum
from typing import Any, List, Mapping, Optional, Union

from pydantic import BaseModel, Field, computed_field

# '#' followed by anything up to the next whitespace or '#'. No boundary is
# required before it, so CJK text like "中文#标签" still yields a tag.
TAG_PATTERN = re.compile(r"#([^\s#]+)")


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: datetime.datetime) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC."""
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def epoch_to_datetime(epoch_seconds: Union[int, float]) -> datetime.datetime:
    """Convert Memos' second-resolution epoch column to an aware UTC datetime."""
    return datetime.datetime.fromtimestamp(int(epoch_seconds), tz=timezone.utc)


def datetime_to_epoch(dt_value: datetime.datetime) -> int:
    """Convert a datetime to whole epoch seconds (naive values are UTC)."""
    return int(ensure_timezone_aware(dt_value).timestamp())


def generate_uid() -> str:
    """Generate a uid for a memo or resource row.

    Memos only requires uids to be unique strings; the millisecond prefix
    keeps them roughly sortable by creation time.
    """
    millis = int(utc_now().timestamp() * 1000)
    return f"mb-{millis}-{uuid.uuid4().hex[:9]}"


def extract_tags(content: Optional[str]) -> List[str]:
    """Extract ``#tag`` tokens from a memo body.

    Tags are returned in first-seen order without duplicates, so calling this
    on the same body always yields the same list.

    Examples:
        >>> extract_tags("hello #demo and #demo again #x")
        ['demo', 'x']
        >>> extract_tags("# heading, not a tag")
        []
    """
    if not content:
        return []
    tags: List[str] = []
    for match in TAG_PATTERN.finditer(content):
        tag = match.group(1)
        if tag not in tags:
            tags.append(tag)
    return tags


class Visibility(str, Enum):
    """Who may see a memo."""

    PRIVATE = "PRIVATE"
    PROTECTED = "PROTECTED"
    PUBLIC = "PUBLIC"

    @classmethod
    def parse(
        cls, value: Any, default: Optional["Visibility"] = None
    ) -> "Visibility":
        """Parse a visibility name case-insensitively.

        Args:
            value: Raw value ("private", "PUBLIC", a Visibility, ...).
            default: Returned for empty or unknown values. When None,
                unknown values raise ValueError.
        """
        if isinstance(value, cls):
            return value
        if value is not None and str(value).strip():
            try:
                return cls(str(value).strip().upper())
            except ValueError:
                if default is None:
                    raise
        if default is None:
            raise ValueError(f"Invalid visibility: {value!r}")
        return default


class RowStatus(str, Enum):
    """Lifecycle status stored in ``memo.row_status``."""

    NORMAL = "NORMAL"
    ARCHIVED = "ARCHIVED"
    DELETED = "DELETED"

    @classmethod
    def from_db(cls, value: Optional[str]) -> "RowStatus":
        """Map a stored status to the enum; unknown or NULL values read as NORMAL."""
        try:
            return cls(str(value).upper())
        except ValueError:
            return cls.NORMAL


class ResourceMeta(BaseModel):
    """Lightweight view of a resource, without its payload."""

    id: int
    uid: str
    filename: str = ""
    type: str = ""
    size: int = 0
    memo_id: Optional[int] = None
    created_at: Optional[datetime.datetime] = None

    @property
    def is_image(self) -> bool:
        return self.type.lower().startswith("image/")


class Resource(ResourceMeta):
    """A resource with its binary payload and, for images, an inline data URI."""

    blob: Optional[bytes] = Field(default=None, exclude=True, repr=False)
    data_uri: Optional[str] = Field(default=None, repr=False)


class Note(BaseModel):
    """A memo as seen by callers of the adapter."""

    id: int = Field(..., description="Storage-assigned row id")
    uid: str = Field(..., description="Globally unique identifier")
    content: str = Field(default="", description="Markdown body")
    visibility: Visibility = Field(default=Visibility.PRIVATE)
    status: RowStatus = Field(default=RowStatus.NORMAL)
    pinned: bool = Field(default=False, description="Pinned for the viewing user")
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: datetime.datetime = Field(default_factory=utc_now)
    resources: List[Union[Resource, ResourceMeta]] = Field(default_factory=list)

    @computed_field  # type: ignore[misc]
    @property
    def archived(self) -> bool:
        return self.status == RowStatus.ARCHIVED

    @computed_field  # type: ignore[misc]
    @property
    def tags(self) -> List[str]:
        return extract_tags(self.content)


class NotePage(BaseModel):
    """One page of a note listing plus the total independent of the window."""

    notes: List[Note]
    total: int
    limit: int
    offset: int

    @computed_field  # type: ignore[misc]
    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total


class NoteUpdate(BaseModel):
    """Partial update for a memo. Only fields that are set get written."""

    content: Optional[str] = None
    visibility: Optional[Visibility] = None
    pinned: Optional[bool] = None
    archived: Optional[bool] = None
    updated_at: Optional[datetime.datetime] = None

    model_config = {"extra": "forbid"}

    def changes(self) -> dict:
        """Return the explicitly provided, non-null fields."""
        return self.model_dump(exclude_unset=True, exclude_none=True)


def _get(row: Mapping[str, Any], key: str, default: Any = None) -> Any:
    """Read a column that older Memos schemas may not have."""
    try:
        value = row[key]
    except (KeyError, IndexError):
        return default
    return default if value is None else value


@dataclass(frozen=True)
class MemoRow:
    """A ``memo`` row read from an uploaded Memos database.

    Every column except ``content`` may be absent in some Memos release, so
    every field is optional. ``pinned`` comes either from a legacy
    ``memo.pinned`` column or from ``memo_organizer``.
    """

    id: Optional[int]
    uid: Optional[str] = None
    creator_id: Optional[int] = None
    created_ts: Optional[int] = None
    updated_ts: Optional[int] = None
    row_status: Optional[str] = None
    content: str = ""
    visibility: Optional[str] = None
    pinned: bool = False
    payload: Optional[str] = None

    @property
    def has_id(self) -> bool:
        return bool(self.id)

    @property
    def is_archived(self) -> bool:
        return (self.row_status or "").upper() == RowStatus.ARCHIVED.value

    @property
    def content_preview(self) -> str:
        return self.content[:50]

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "MemoRow":
        return cls(
            id=_get(row, "id"),
            uid=_get(row, "uid"),
            creator_id=_get(row, "creator_id"),
            created_ts=_get(row, "created_ts"),
            updated_ts=_get(row, "updated_ts"),
            row_status=_get(row, "row_status"),
            content=_get(row, "content", ""),
            visibility=_get(row, "visibility"),
            pinned=bool(_get(row, "pinned", 0)),
            payload=_get(row, "payload"),
        )


@dataclass(frozen=True)
class ResourceRow:
    """A ``resource`` row read from an uploaded Memos database."""

    id: int
    uid: Optional[str] = None
    filename: str = ""
    blob: Optional[bytes] = None
    type: str = ""
    size: int = 0
    memo_id: Optional[int] = None

    @property
    def is_image(self) -> bool:
        return self.type.lower().startswith("image/")

    @property
    def has_payload(self) -> bool:
        return bool(self.blob)

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "ResourceRow":
        blob = _get(row, "blob")
        return cls(
            id=row["id"],
            uid=_get(row, "uid"),
            filename=_get(row, "filename", ""),
            blob=bytes(blob) if blob is not None else None,
            type=_get(row, "type", ""),
            size=_get(row, "size", 0),
            memo_id=_get(row, "memo_id"),
        )

"""Repository for reading and writing the Memos schema in place."""

import datetime
import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import and_, case, delete, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from memobridge.config import config
from memobridge.exceptions import (
    ErrorCode,
    StorageError,
    ValidationError,
)
from memobridge.models.db_models import (
    DBMemo,
    DBMemoOrganizer,
    DBResource,
    DBTag,
    DBUser,
    DBUserSetting,
    get_session_factory,
    init_db,
)
from memobridge.models.schema import (
    Note,
    NotePage,
    NoteUpdate,
    Resource,
    ResourceMeta,
    RowStatus,
    Visibility,
    datetime_to_epoch,
    epoch_to_datetime,
    extract_tags,
    generate_uid,
    utc_now,
)
from memobridge.services.resource_materializer import to_data_uri

logger = logging.getLogger(__name__)

# Columns loaded for list views; the blob column is deliberately absent
_RESOURCE_META_COLUMNS = (
    DBResource.id,
    DBResource.uid,
    DBResource.filename,
    DBResource.type,
    DBResource.size,
    DBResource.memo_id,
    DBResource.created_ts,
)


class MemoRepository:
    """Adapter over a Memos SQLite database.

    This is the only component that issues reads and writes against the
    canonical store. It owns no global state: the engine is created once by
    the caller (see ``init_db``) and handed to every component that needs it.

    All rows are read and written on behalf of a single Memos user, the
    "viewing identity" that pin state is scoped to.
    """

    def __init__(
        self,
        engine: Optional[Engine] = None,
        user_id: Optional[int] = None,
        username: Optional[str] = None,
    ):
        """Initialize the repository.

        Args:
            engine: Pre-configured SQLAlchemy engine. When None, one is
                    created from ``config`` via ``init_db()``.
            user_id: Memos user id that owns new rows and pin state.
                     Defaults to ``config.default_user_id``.
            username: Username used if the user row has to be created.
        """
        self.engine = engine if engine is not None else init_db()
        self.session_factory = get_session_factory(self.engine)
        self.user_id = user_id if user_id is not None else config.default_user_id
        self.username = username or config.default_username

        logger.info(
            f"MemoRepository initialized: db_url={self.engine.url}, "
            f"user_id={self.user_id}"
        )
        self.ensure_default_user()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def ensure_default_user(self) -> None:
        """Create the owning user row if the database does not have it yet."""
        with self._session("ensure_user", ErrorCode.STORAGE_WRITE_FAILED) as session:
            if session.get(DBUser, self.user_id) is not None:
                return
            session.add(
                DBUser(
                    id=self.user_id,
                    username=self.username,
                    role="HOST",
                    nickname=self.username,
                )
            )
            session.commit()
            logger.info(f"Created default user {self.username} (id={self.user_id})")

    def _session(self, operation: str, code: ErrorCode = ErrorCode.STORAGE_READ_FAILED):
        return _GuardedSession(self.session_factory, operation, code)

    def _pin_join_condition(self):
        return and_(
            DBMemoOrganizer.memo_id == DBMemo.id,
            DBMemoOrganizer.user_id == self.user_id,
            DBMemoOrganizer.pinned == 1,
        )

    def _memo_query(self):
        """Select memos together with the viewer's pin flag."""
        pinned = DBMemoOrganizer.memo_id.isnot(None).label("pinned")
        return (
            select(DBMemo, pinned)
            .outerjoin(DBMemoOrganizer, self._pin_join_condition())
            .where(DBMemo.creator_id == self.user_id)
        )

    @staticmethod
    def _to_note(
        db_memo: DBMemo,
        pinned: bool,
        resources: Optional[List[Union[Resource, ResourceMeta]]] = None,
    ) -> Note:
        return Note(
            id=db_memo.id,
            uid=db_memo.uid,
            content=db_memo.content or "",
            visibility=Visibility.parse(db_memo.visibility, default=Visibility.PRIVATE),
            status=RowStatus.from_db(db_memo.row_status),
            pinned=bool(pinned),
            created_at=epoch_to_datetime(db_memo.created_ts or 0),
            updated_at=epoch_to_datetime(db_memo.updated_ts or 0),
            resources=resources or [],
        )

    @staticmethod
    def _row_to_meta(row: Any) -> ResourceMeta:
        return ResourceMeta(
            id=row.id,
            uid=row.uid,
            filename=row.filename or "",
            type=row.type or "",
            size=row.size or 0,
            memo_id=row.memo_id,
            created_at=epoch_to_datetime(row.created_ts) if row.created_ts else None,
        )

    @staticmethod
    def _db_resource_to_model(db_resource: DBResource) -> Resource:
        resource = Resource(
            id=db_resource.id,
            uid=db_resource.uid,
            filename=db_resource.filename or "",
            type=db_resource.type or "",
            size=db_resource.size or 0,
            memo_id=db_resource.memo_id,
            created_at=(
                epoch_to_datetime(db_resource.created_ts)
                if db_resource.created_ts
                else None
            ),
            blob=db_resource.blob,
        )
        resource.data_uri = to_data_uri(resource)
        return resource

    def _fetch_note(
        self, session: Session, note_id: int, materialize: bool
    ) -> Optional[Note]:
        """Load one live memo with its resources (full or metadata only)."""
        row = session.execute(
            self._memo_query().where(
                DBMemo.id == note_id,
                DBMemo.row_status != RowStatus.DELETED.value,
            )
        ).first()
        if row is None:
            return None
        db_memo, pinned = row
        if materialize:
            resources = self._load_resources(session, note_id)
        else:
            resources = self._load_resource_meta(session, [note_id]).get(note_id, [])
        return self._to_note(db_memo, pinned, resources)

    def _load_resources(self, session: Session, note_id: int) -> List[Resource]:
        db_resources = session.scalars(
            select(DBResource)
            .where(DBResource.memo_id == note_id)
            .order_by(DBResource.id.asc())
        ).all()
        return [self._db_resource_to_model(r) for r in db_resources]

    def _load_resource_meta(
        self, session: Session, note_ids: Iterable[int]
    ) -> Dict[int, List[ResourceMeta]]:
        ids = list(note_ids)
        grouped: Dict[int, List[ResourceMeta]] = defaultdict(list)
        if not ids:
            return grouped
        rows = session.execute(
            select(*_RESOURCE_META_COLUMNS)
            .where(DBResource.memo_id.in_(ids))
            .order_by(DBResource.memo_id.asc(), DBResource.id.asc())
        ).all()
        for row in rows:
            grouped[row.memo_id].append(self._row_to_meta(row))
        return grouped

    def _register_tags(self, session: Session, content: str) -> None:
        now = int(utc_now().timestamp())
        for tag in extract_tags(content):
            session.execute(
                sqlite_insert(DBTag)
                .values(name=tag, creator_id=self.user_id, created_ts=now)
                .on_conflict_do_nothing(index_elements=["name", "creator_id"])
            )

    def _set_pinned(self, session: Session, note_id: int, pinned: bool) -> None:
        if pinned:
            session.execute(
                sqlite_insert(DBMemoOrganizer)
                .values(memo_id=note_id, user_id=self.user_id, pinned=1)
                .on_conflict_do_update(
                    index_elements=["memo_id", "user_id"], set_={"pinned": 1}
                )
            )
        else:
            session.execute(
                delete(DBMemoOrganizer).where(
                    DBMemoOrganizer.memo_id == note_id,
                    DBMemoOrganizer.user_id == self.user_id,
                )
            )

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    def list_notes(
        self,
        include_archived: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> NotePage:
        """List memos, pinned first and then newest first.

        Resources are attached as metadata only (no payload). Their metadata
        is fetched for the whole page with one extra query, however many
        memos the page holds.

        Args:
            include_archived: Also return ARCHIVED memos. DELETED memos are
                never listed.
            limit: Page size. Defaults to ``config.page_size``.
            offset: Number of memos to skip.

        Returns:
            NotePage with the memos and the total count over all pages.
        """
        limit = limit if limit is not None else config.page_size
        if limit < 1 or offset < 0:
            raise ValidationError(
                "limit must be >= 1 and offset >= 0",
                field="limit" if limit < 1 else "offset",
                value=limit if limit < 1 else offset,
            )

        if include_archived:
            status_filter = DBMemo.row_status != RowStatus.DELETED.value
        else:
            status_filter = DBMemo.row_status == RowStatus.NORMAL.value

        with self._session("list_notes") as session:
            total = session.scalar(
                select(func.count(DBMemo.id)).where(
                    DBMemo.creator_id == self.user_id, status_filter
                )
            ) or 0

            rows = session.execute(
                self._memo_query()
                .where(status_filter)
                .order_by(
                    case((DBMemoOrganizer.memo_id.isnot(None), 0), else_=1),
                    DBMemo.created_ts.desc(),
                    DBMemo.id.desc(),
                )
                .offset(offset)
                .limit(limit)
            ).all()

            meta = self._load_resource_meta(session, [m.id for m, _ in rows])
            notes = [
                self._to_note(db_memo, pinned, meta.get(db_memo.id, []))
                for db_memo, pinned in rows
            ]

        return NotePage(notes=notes, total=total, limit=limit, offset=offset)

    def list_archived_notes(self) -> List[Note]:
        """Get all archived memos, newest first, with resource metadata."""
        with self._session("list_archived_notes") as session:
            rows = session.execute(
                self._memo_query()
                .where(DBMemo.row_status == RowStatus.ARCHIVED.value)
                .order_by(DBMemo.created_ts.desc(), DBMemo.id.desc())
            ).all()
            meta = self._load_resource_meta(session, [m.id for m, _ in rows])
            return [
                self._to_note(db_memo, pinned, meta.get(db_memo.id, []))
                for db_memo, pinned in rows
            ]

    def get_note(self, note_id: int) -> Optional[Note]:
        """Get a live memo with every resource fully materialized.

        Returns:
            The memo, or None if the id is unknown or the memo is deleted.
        """
        with self._session("get_note") as session:
            return self._fetch_note(session, note_id, materialize=True)

    def uid_exists(self, uid: str) -> bool:
        """Check whether any memo row (deleted ones included) uses this uid."""
        with self._session("uid_exists") as session:
            return session.scalar(select(DBMemo.id).where(DBMemo.uid == uid)) is not None

    def create_note(
        self,
        content: str,
        visibility: Union[Visibility, str] = Visibility.PRIVATE,
        pinned: bool = False,
        archived: bool = False,
        created_at: Optional[datetime.datetime] = None,
        updated_at: Optional[datetime.datetime] = None,
        uid: Optional[str] = None,
    ) -> Note:
        """Insert a memo.

        Explicit timestamps are stored as given, which keeps historical
        ordering intact when memos are re-imported. Without them both
        timestamps are set to now.

        Args:
            content: Markdown body. Tags in it are registered in ``tag``.
            visibility: PRIVATE, PROTECTED or PUBLIC (case-insensitive).
            pinned: Pin the memo for this repository's user.
            archived: Store the memo as ARCHIVED instead of NORMAL.
            created_at: Creation time to store verbatim.
            updated_at: Update time to store verbatim.
            uid: Uid to use instead of a generated one.

        Returns:
            The stored memo, reloaded from the database.
        """
        try:
            visibility_enum = Visibility.parse(visibility)
        except ValueError:
            raise ValidationError(
                f"Invalid visibility: {visibility}",
                field="visibility",
                value=visibility,
                code=ErrorCode.INVALID_VISIBILITY,
            )

        now = utc_now()
        created_ts = datetime_to_epoch(created_at or now)
        updated_ts = datetime_to_epoch(updated_at or created_at or now)

        with self._session("create_note", ErrorCode.STORAGE_WRITE_FAILED) as session:
            db_memo = DBMemo(
                uid=uid or generate_uid(),
                creator_id=self.user_id,
                content=content or "",
                visibility=visibility_enum.value,
                created_ts=created_ts,
                updated_ts=updated_ts,
                row_status=(
                    RowStatus.ARCHIVED.value if archived else RowStatus.NORMAL.value
                ),
            )
            session.add(db_memo)
            session.flush()

            if pinned:
                self._set_pinned(session, db_memo.id, True)
            self._register_tags(session, db_memo.content)
            session.commit()

            note = self._fetch_note(session, db_memo.id, materialize=False)

        logger.debug(f"Created memo {note.id} (uid={note.uid}, pinned={pinned})")
        return note

    def update_note(self, note_id: int, changes: NoteUpdate) -> Optional[Note]:
        """Apply a partial update to a live memo.

        Only fields explicitly set on ``changes`` are written; everything else
        keeps its stored value. Pin state is written to ``memo_organizer``.

        Returns:
            The reloaded memo, or None if ``note_id`` is not a live memo.
        """
        fields = changes.changes()

        with self._session("update_note", ErrorCode.STORAGE_WRITE_FAILED) as session:
            exists = session.scalar(
                select(DBMemo.id).where(
                    DBMemo.id == note_id,
                    DBMemo.creator_id == self.user_id,
                    DBMemo.row_status != RowStatus.DELETED.value,
                )
            )
            if exists is None:
                return None

            values: Dict[str, Any] = {}
            if "content" in fields:
                values["content"] = fields["content"]
            if "visibility" in fields:
                values["visibility"] = Visibility.parse(fields["visibility"]).value
            if "archived" in fields:
                values["row_status"] = (
                    RowStatus.ARCHIVED.value
                    if fields["archived"]
                    else RowStatus.NORMAL.value
                )
            values["updated_ts"] = datetime_to_epoch(
                fields.get("updated_at") or utc_now()
            )

            session.execute(update(DBMemo).where(DBMemo.id == note_id).values(**values))
            if "pinned" in fields:
                self._set_pinned(session, note_id, fields["pinned"])
            if "content" in fields:
                self._register_tags(session, fields["content"])
            session.commit()

            return self._fetch_note(session, note_id, materialize=True)

    def delete_note(self, note_id: int) -> bool:
        """Soft-delete a memo by moving it to DELETED.

        Returns:
            True if a live memo was affected.
        """
        with self._session("delete_note", ErrorCode.STORAGE_DELETE_FAILED) as session:
            result = session.execute(
                update(DBMemo)
                .where(
                    DBMemo.id == note_id,
                    DBMemo.creator_id == self.user_id,
                    DBMemo.row_status != RowStatus.DELETED.value,
                )
                .values(
                    row_status=RowStatus.DELETED.value,
                    updated_ts=datetime_to_epoch(utc_now()),
                )
            )
            session.commit()
            return result.rowcount > 0

    def purge_note(self, note_id: int) -> bool:
        """Physically remove a memo and its pin rows.

        Resources owned by the memo are kept but detached (memo_id = NULL).

        Returns:
            True if a row was removed.
        """
        with self._session("purge_note", ErrorCode.STORAGE_DELETE_FAILED) as session:
            session.execute(
                delete(DBMemoOrganizer).where(DBMemoOrganizer.memo_id == note_id)
            )
            session.execute(
                update(DBResource)
                .where(DBResource.memo_id == note_id)
                .values(memo_id=None)
            )
            result = session.execute(
                delete(DBMemo).where(
                    DBMemo.id == note_id, DBMemo.creator_id == self.user_id
                )
            )
            session.commit()
            removed = result.rowcount > 0
        if removed:
            logger.info(f"Purged memo {note_id}")
        return removed

    def count_notes_by_status(self) -> Dict[str, int]:
        """Get memo counts grouped by row_status."""
        with self._session("count_notes_by_status") as session:
            rows = session.execute(
                select(DBMemo.row_status, func.count(DBMemo.id))
                .where(DBMemo.creator_id == self.user_id)
                .group_by(DBMemo.row_status)
            ).all()
            return {status: count for status, count in rows}

    def clear_all(self) -> None:
        """Remove every memo, pin row and tag owned by this user.

        Resources owned by those memos are kept but detached, as in
        ``purge_note``.
        """
        with self._session("clear_all", ErrorCode.STORAGE_DELETE_FAILED) as session:
            session.execute(
                delete(DBMemoOrganizer).where(DBMemoOrganizer.user_id == self.user_id)
            )
            session.execute(delete(DBTag).where(DBTag.creator_id == self.user_id))
            session.execute(
                update(DBResource)
                .where(
                    DBResource.memo_id.in_(
                        select(DBMemo.id).where(DBMemo.creator_id == self.user_id)
                    )
                )
                .values(memo_id=None)
            )
            session.execute(delete(DBMemo).where(DBMemo.creator_id == self.user_id))
            session.commit()
        logger.info(f"Cleared all memos for user {self.user_id}")

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def create_resource(
        self,
        memo_id: Optional[int],
        filename: str,
        mime_type: str,
        size: Optional[int],
        blob: Optional[bytes],
    ) -> Resource:
        """Store an attachment, with or without an owning memo.

        The owning memo is not checked: pasted attachments are stored before
        the memo that will hold them exists (see ``attach_resource``).
        """
        if size is None:
            size = len(blob) if blob else 0
        if size < 0:
            raise ValidationError("size must be >= 0", field="size", value=size)

        with self._session("create_resource", ErrorCode.STORAGE_WRITE_FAILED) as session:
            db_resource = DBResource(
                uid=generate_uid(),
                creator_id=self.user_id,
                filename=filename or "",
                type=mime_type or "",
                size=size,
                blob=blob,
                memo_id=memo_id,
            )
            session.add(db_resource)
            session.commit()
            return self._db_resource_to_model(db_resource)

    def attach_resource(self, resource_id: int, memo_id: int) -> bool:
        """Point an existing resource at its owning memo.

        Returns:
            True if the resource exists and was updated.
        """
        with self._session("attach_resource", ErrorCode.STORAGE_WRITE_FAILED) as session:
            result = session.execute(
                update(DBResource)
                .where(DBResource.id == resource_id)
                .values(memo_id=memo_id, updated_ts=datetime_to_epoch(utc_now()))
            )
            session.commit()
            return result.rowcount > 0

    def get_resource(self, resource_id: Union[int, str]) -> Optional[Resource]:
        """Get a full resource by numeric id or by uid."""
        with self._session("get_resource") as session:
            if isinstance(resource_id, int) or str(resource_id).isdigit():
                clause = DBResource.id == int(resource_id)
            else:
                clause = DBResource.uid == resource_id
            db_resource = session.scalar(select(DBResource).where(clause))
            return self._db_resource_to_model(db_resource) if db_resource else None

    def list_resources_for_note(self, note_id: int) -> List[Resource]:
        """Get every resource of one memo, payload and data URI included."""
        with self._session("list_resources_for_note") as session:
            return self._load_resources(session, note_id)

    def list_resource_meta_for_notes(
        self, note_ids: Iterable[int]
    ) -> Dict[int, List[ResourceMeta]]:
        """Get resource metadata for many memos with a single query.

        Returns:
            Mapping of memo id to its resources (memos without any are absent).
        """
        with self._session("list_resource_meta_for_notes") as session:
            return dict(self._load_resource_meta(session, note_ids))

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_setting(self, key: str) -> Optional[str]:
        """Get a user setting value, or None when unset."""
        with self._session("get_setting") as session:
            return session.scalar(
                select(DBUserSetting.value).where(
                    DBUserSetting.user_id == self.user_id, DBUserSetting.key == key
                )
            )

    def set_setting(self, key: str, value: str) -> None:
        """Create or overwrite a user setting."""
        if not key or not key.strip():
            raise ValidationError("Setting key cannot be empty", field="key")
        with self._session("set_setting", ErrorCode.STORAGE_WRITE_FAILED) as session:
            session.execute(
                sqlite_insert(DBUserSetting)
                .values(user_id=self.user_id, key=key, value=value)
                .on_conflict_do_update(
                    index_elements=["user_id", "key"], set_={"value": value}
                )
            )
            session.commit()


class _GuardedSession:
    """Session context that turns SQLAlchemy failures into StorageError."""

    def __init__(self, session_factory, operation: str, code: ErrorCode):
        self._session_factory = session_factory
        self._operation = operation
        self._code = code
        self._session: Optional[Session] = None

    def __enter__(self) -> Session:
        self._session = self._session_factory()
        return self._session

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc is not None:
                self._session.rollback()
        finally:
            self._session.close()
        if isinstance(exc, SQLAlchemyError):
            logger.error(f"{self._operation} failed: {exc}")
            raise StorageError(
                f"Database operation '{self._operation}' failed",
                operation=self._operation,
                code=self._code,
                original_error=exc,
            ) from exc
        return False

"""SQLAlchemy models for the Memos on-disk schema.

These tables mirror the layout of the Memos application's SQLite database so
that the adapter can read and write a Memos store in place. Memos declares no
foreign keys; references between tables are plain integer columns.
"""
import time
from typing import Optional

from sqlalchemy import (BigInteger, Column, Index, Integer, LargeBinary,
                        PrimaryKeyConstraint, String, Text,
                        create_engine, event)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool

from memobridge.config import config


def _epoch_now() -> int:
    return int(time.time())


# Create base class for SQLAlchemy models
Base = declarative_base()


class DBUser(Base):
    """Database model for a Memos user."""
    __tablename__ = "user"
    id = Column(Integer, primary_key=True, autoincrement=True)
    created_ts = Column(BigInteger, nullable=False, default=_epoch_now)
    updated_ts = Column(BigInteger, nullable=False, default=_epoch_now)
    row_status = Column(Text, nullable=False, default="NORMAL")
    username = Column(Text, nullable=False, unique=True)
    role = Column(Text, nullable=False, default="USER")
    email = Column(Text, nullable=False, default="")
    nickname = Column(Text, nullable=False, default="")
    password_hash = Column(Text, nullable=False, default="")
    avatar_url = Column(Text, nullable=False, default="")

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username='{self.username}')>"


class DBMemo(Base):
    """Database model for a memo."""
    __tablename__ = "memo"
    id = Column(Integer, primary_key=True, autoincrement=True)
    uid = Column(Text, nullable=False, unique=True)
    creator_id = Column(Integer, nullable=False)
    created_ts = Column(BigInteger, nullable=False, default=_epoch_now)
    updated_ts = Column(BigInteger, nullable=False, default=_epoch_now)
    row_status = Column(Text, nullable=False, default="NORMAL")
    content = Column(Text, nullable=False, default="")
    visibility = Column(Text, nullable=False, default="PRIVATE")
    payload = Column(Text, nullable=False, default="{}")

    __table_args__ = (
        Index("idx_memo_creator_id", "creator_id"),
        Index("idx_memo_created_ts", "created_ts"),
        {"sqlite_autoincrement": True},
    )

    def __repr__(self) -> str:
        return f"<Memo(id={self.id}, uid='{self.uid}', status='{self.row_status}')>"


class DBMemoOrganizer(Base):
    """Per-user pin state. A row with pinned=1 means the memo is pinned."""
    __tablename__ = "memo_organizer"
    memo_id = Column(Integer, nullable=False)
    user_id = Column(Integer, nullable=False)
    pinned = Column(Integer, nullable=False, default=0)

    __table_args__ = (PrimaryKeyConstraint("memo_id", "user_id"),)

    def __repr__(self) -> str:
        return f"<MemoOrganizer(memo_id={self.memo_id}, user_id={self.user_id})>"


class DBResource(Base):
    """Database model for a binary attachment."""
    __tablename__ = "resource"
    id = Column(Integer, primary_key=True, autoincrement=True)
    uid = Column(Text, nullable=False, unique=True)
    creator_id = Column(Integer, nullable=False)
    created_ts = Column(BigInteger, nullable=False, default=_epoch_now)
    updated_ts = Column(BigInteger, nullable=False, default=_epoch_now)
    filename = Column(Text, nullable=False, default="")
    blob = Column(LargeBinary, nullable=True)
    type = Column(Text, nullable=False, default="")
    size = Column(Integer, nullable=False, default=0)
    internal_path = Column(Text, nullable=False, default="")
    external_link = Column(Text, nullable=False, default="")
    memo_id = Column(Integer, nullable=True)

    __table_args__ = (
        Index("idx_resource_memo_id", "memo_id"),
        {"sqlite_autoincrement": True},
    )

    def __repr__(self) -> str:
        return f"<Resource(id={self.id}, filename='{self.filename}', memo_id={self.memo_id})>"


class DBTag(Base):
    """A tag name registered for a user."""
    __tablename__ = "tag"
    name = Column(Text, nullable=False)
    creator_id = Column(Integer, nullable=False)
    created_ts = Column(BigInteger, nullable=False, default=_epoch_now)

    __table_args__ = (PrimaryKeyConstraint("name", "creator_id"),)

    def __repr__(self) -> str:
        return f"<Tag(name='{self.name}', creator_id={self.creator_id})>"


class DBUserSetting(Base):
    """Key/value setting for a user."""
    __tablename__ = "user_setting"
    user_id = Column(Integer, nullable=False)
    key = Column(String(255), nullable=False)
    value = Column(Text, nullable=False)

    __table_args__ = (PrimaryKeyConstraint("user_id", "key"),)

    def __repr__(self) -> str:
        return f"<UserSetting(user_id={self.user_id}, key='{self.key}')>"


def init_db(db_url: Optional[str] = None) -> Engine:
    """Open (and create if needed) the canonical Memos database.

    Applies the same SQLite settings on every pooled connection:
    - WAL journal so readers never block on the single writer
    - NORMAL synchronous mode
    - 64MB page cache

    Args:
        db_url: SQLAlchemy URL. Defaults to ``config.get_db_url()``.

    Returns:
        The engine shared by every component that touches the store.
    """
    engine = create_engine(
        db_url or config.get_db_url(),
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True,
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA cache_size=-64000")
        cursor.close()

    # Existing Memos databases already have these tables; create_all only
    # fills in what is missing.
    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Engine) -> sessionmaker:
    """Get a session factory bound to the given engine."""
    return sessionmaker(bind=engine, expire_on_commit=False)

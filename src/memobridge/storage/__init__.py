"""Storage layer for memobridge."""

from memobridge.storage.memo_repository import MemoRepository

__all__ = [
    "MemoRepository",
]

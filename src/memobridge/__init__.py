"""
memobridge - storage adapter and bulk importer for Memos SQLite databases.

The package reads and writes the Memos on-disk schema directly (memos,
resources, tags, pin state, user settings) and can ingest an uploaded copy of
a Memos database, including writes that only reached its write-ahead log.

This version uses synchronous database access with a cooperative async
import pipeline.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("memobridge")
except PackageNotFoundError:
    __version__ = "0.3.0"

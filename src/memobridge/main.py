#!/usr/bin/env python
"""Main entry point for memobridge."""
import argparse
import atexit
import json
import logging
import os
import sys
from pathlib import Path

from memobridge.config import config
from memobridge.models.db_models import init_db
from memobridge.observability import configure_logging, metrics


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Memos storage adapter and database importer"
    )
    parser.add_argument(
        "--database-path",
        help="Canonical Memos SQLite database file",
        type=str,
        default=os.environ.get("MEMOBRIDGE_DATABASE_PATH")
    )
    parser.add_argument(
        "--import-db",
        help="Import this Memos database copy and exit instead of serving",
        type=str,
    )
    parser.add_argument("--wal", help="-wal companion of --import-db", type=str)
    parser.add_argument("--shm", help="-shm companion of --import-db", type=str)
    parser.add_argument(
        "--skip-existing",
        help="Skip memos whose uid already exists in the canonical store",
        action="store_true",
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("MEMOBRIDGE_LOG_LEVEL", "INFO")
    )
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.database_path:
        config.database_path = Path(args.database_path)


def _save_metrics_on_exit():
    """Save metrics to disk on shutdown."""
    try:
        if metrics.save_metrics():
            logging.getLogger(__name__).info("Metrics saved to disk on shutdown")
    except Exception as e:
        logging.getLogger(__name__).warning(f"Failed to save metrics on shutdown: {e}")


def run_import(args, engine) -> int:
    """Run a single import and print the JSON response.

    Returns:
        Process exit code.
    """
    from memobridge.services.import_service import ImportService
    from memobridge.storage.memo_repository import MemoRepository

    service = ImportService(MemoRepository(engine=engine))
    report = service.run_sync(
        args.import_db,
        wal=args.wal,
        shm=args.shm,
        skip_existing=args.skip_existing,
    )
    print(json.dumps(report.to_response(), indent=2, ensure_ascii=False, default=str))
    return 0 if report.success else 1


def main(argv=None):
    """Run the memobridge MCP server or a one-off import."""
    args = parse_args(argv)
    update_config(args)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        log_dir = configure_logging(level=log_level, console=True)
    except Exception as e:
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")
        log_dir = None

    logger = logging.getLogger(__name__)
    if log_dir:
        logger.info(f"Persistent logging enabled: {log_dir}")

    atexit.register(_save_metrics_on_exit)

    try:
        logger.info(f"Using SQLite database: {config.get_db_url()}")
        engine = init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)

    if args.import_db:
        sys.exit(run_import(args, engine))

    from memobridge.server.mcp_server import MemoBridgeMcpServer

    try:
        logger.info("Starting memobridge MCP server")
        server = MemoBridgeMcpServer(engine=engine)
        server.run()
    except Exception as e:
        logger.error(f"Error running server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

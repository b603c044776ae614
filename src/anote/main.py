#!/usr/bin/env python
"""Entry point for the anote bridge: one JSON request in, one JSON line out."""
import argparse
import logging
import os
import sys
from pathlib import Path

from anote.config import config
from anote.observability import configure_logging, metrics
from anote.server.bridge import BridgeServer


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="anote bridge")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("ANOTE_DATABASE_PATH")
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("ANOTE_LOG_LEVEL", "INFO")
    )
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.database_path:
        config.database_path = Path(args.database_path)


def main(argv=None) -> int:
    """Run a single bridge request from stdin.

    Always exits 0; failures are reported in the response. Logs go to the
    rotating log file and never to stdout.
    """
    args = parse_args(argv)
    update_config(args)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        configure_logging(config.get_log_dir(), level=log_level)
    except OSError as e:
        # Fall back to stderr if the log directory is not writable
        logging.basicConfig(level=log_level, stream=sys.stderr)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")

    logger = logging.getLogger(__name__)

    try:
        db_path = config.get_database_path()
    except OSError as e:
        # Opening the database will fail and be reported in the response
        logger.error(f"Cannot create database directory: {e}")
        db_path = config.get_absolute_path(config.database_path)

    server = BridgeServer(database_path=db_path)
    line = server.run(sys.stdin.read())
    sys.stdout.write(line + "\n")
    sys.stdout.flush()

    logger.debug(f"Bridge metrics: {metrics.get_summary()}")
    return 0


if __name__ == "__main__":
    sys.exit(main())

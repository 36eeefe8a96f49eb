"""
Daemon that periodically backs up the database and enforces retention.

Each pass takes a backup (when enabled), prunes old remote backups, drops audit
shards past the retention window and purges expired token revocations.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from cms_backend.config import get_settings
from cms_backend.dependencies import (
    get_audit_store,
    get_backup_service,
    get_clock,
    get_db_client,
)
from cms_backend.maintenance import run_once

logger = logging.getLogger(__name__)


def main() -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="CMS backup and retention daemon")
    parser.add_argument(
        "--interval-seconds",
        type=int,
        default=settings.backup_interval_seconds,
        help="Seconds between maintenance runs",
    )
    parser.add_argument(
        "--skip-backup",
        action="store_true",
        help="Only run retention cleanup",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single pass and exit",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    while True:
        ok = run_once(
            None if args.skip_backup else get_backup_service(),
            get_audit_store(),
            get_db_client(),
            get_clock(),
        )

        if args.once:
            return 0 if ok else 1

        logger.info("Sleeping for %ds", args.interval_seconds)
        time.sleep(args.interval_seconds)


if __name__ == "__main__":
    raise SystemExit(main())

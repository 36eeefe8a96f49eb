"""
Periodic maintenance: database backups, backup pruning, audit retention and
revocation cleanup. Each step is independent; a failure is logged and the
remaining steps still run.
"""

from __future__ import annotations

import logging
from typing import Optional

from cms_backend.audit import AuditLogStore
from cms_backend.backup import BackupService
from cms_backend.clock import Clock
from cms_backend.db import DbClient
from cms_backend.errors import AuditCleanupError

logger = logging.getLogger(__name__)


def run_once(
    backups: Optional[BackupService],
    audit: AuditLogStore,
    db: DbClient,
    clock: Clock,
) -> bool:
    """Run one maintenance pass. Returns False if any step failed."""
    ok = True
    if backups is not None:
        try:
            backups.backup_database()
        except Exception as exc:
            logger.exception("Backup failed: %s", exc)
            ok = False
        try:
            removed = backups.cleanup_old_remote_backups()
            logger.info("Removed %d old remote backups", len(removed))
        except Exception as exc:
            logger.exception("Remote backup cleanup failed: %s", exc)
            ok = False

    try:
        dropped = audit.cleanup_old_audit_tables()
        logger.info("Audit cleanup complete, dropped %d shards", len(dropped))
    except AuditCleanupError as exc:
        logger.error("Audit cleanup incomplete: %s", exc)
        ok = False
    except Exception as exc:
        logger.exception("Audit cleanup failed: %s", exc)
        ok = False

    try:
        purged = db.purge_expired_revocations(clock.now())
        logger.info("Purged %d expired token revocations", purged)
    except Exception as exc:
        logger.exception("Revocation purge failed: %s", exc)
        ok = False
    return ok

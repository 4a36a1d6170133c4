"""
PayDrop — Expiry reaper
Deletes files whose retention window has elapsed, plus long-abandoned unpaid uploads.
Each file is handled on its own: one failure is recorded and the batch moves on.
"""
import logging
from datetime import timedelta
from typing import Callable

import aiosqlite

from config import PENDING_GRACE_HOURS
from database import create_transaction, delete_file_by_id, get_expired_files, get_stale_pending_files
from helpers import to_iso, utcnow
from models import CleanupError, CleanupResult, EventType, FileRecord
from storage import delete_blob

logger = logging.getLogger(__name__)


async def _reap_one(
    db: aiosqlite.Connection,
    file: FileRecord,
    reason: str,
    remove_blob: Callable[[str], bool],
) -> None:
    if remove_blob(file.filepath):
        logger.info("Deleted blob %s", file.filepath)
    else:
        logger.info("Blob %s already gone", file.filepath)

    await create_transaction(
        db,
        file_id=file.id,
        event_type=EventType.FILE_DELETED,
        event_data={
            "filename": file.original_filename,
            "reason": reason,
            "expiry_date": to_iso(file.expiry_date),
        },
    )
    await delete_file_by_id(db, file.id)
    logger.info("Deleted file record %s (%s)", file.id, reason)


async def run_cleanup(
    db: aiosqlite.Connection,
    reason: str = "expired",
    remove_blob: Callable[[str], bool] = delete_blob,
    pending_grace_hours: int = PENDING_GRACE_HOURS,
) -> CleanupResult:
    """
    One reaper pass. Paid files at/after expiry are deleted with `reason`;
    pending files older than the grace period are deleted with reason "unpaid".
    """
    now = utcnow()
    batch = [(f, reason) for f in await get_expired_files(db, now)]
    batch += [
        (f, "unpaid")
        for f in await get_stale_pending_files(db, now - timedelta(hours=pending_grace_hours))
    ]

    if not batch:
        return CleanupResult(success=True, message="No expired files to clean up", deletedCount=0)

    logger.info("Found %d file(s) to delete", len(batch))
    deleted = 0
    errors: list[CleanupError] = []
    for file, why in batch:
        try:
            await _reap_one(db, file, why, remove_blob)
            deleted += 1
        except Exception as exc:
            logger.exception("Error deleting file %s", file.id)
            errors.append(CleanupError(fileId=file.id, error=str(exc)))

    return CleanupResult(
        success=True,
        message=f"Deleted {deleted} expired file(s)",
        deletedCount=deleted,
        errors=errors or None,
    )

"""
PayDrop — System routes
  GET  /api/health               liveness check
  GET  /                         endpoint index
  POST /api/admin/cleanup        run the expiry reaper now (admin)
  GET  /api/admin/transactions   recent audit events across all files (admin)
"""
import logging

import aiosqlite
from fastapi import APIRouter, Depends, Query, Request

from auth import verify_admin_secret
from database import db_session, get_all_transactions
from errors import PersistenceError
from helpers import now_utc
from limiter import ADMIN_LIMIT, READ_LIMIT, limiter
from models import CleanupResult, StatusResponse, TransactionListResponse
from reaper import run_cleanup

logger = logging.getLogger(__name__)

router = APIRouter(tags=["System"])


@router.get("/api/health", response_model=StatusResponse, summary="Health check")
async def health_check():
    """Returns 200 OK if the server is running. Use for uptime monitoring."""
    return StatusResponse(status="ok", message=f"PayDrop is running ({now_utc()})")


@router.get("/", summary="Endpoint index")
async def index():
    return {
        "success": True,
        "message": "PayDrop temporary file storage API",
        "endpoints": {
            "health": "GET /api/health",
            "upload": "POST /api/files/upload",
            "fileInfo": "GET /api/files/info/{share_link}",
            "allFiles": "GET /api/files/all",
            "initiatePayment": "POST /api/payments/initiate",
            "paymentStatus": "GET /api/payments/status/{file_id}",
            "transactions": "GET /api/payments/transactions/{file_id}",
            "download": "GET /api/download/{share_link}",
            "cleanup": "POST /api/admin/cleanup",
        },
    }


@router.post("/api/admin/cleanup", response_model=CleanupResult, summary="Run cleanup now",
             dependencies=[Depends(verify_admin_secret)])
@limiter.limit(ADMIN_LIMIT)
async def manual_cleanup(request: Request, db: aiosqlite.Connection = Depends(db_session)):
    """
    Delete every paid file past its expiry (and unpaid files past the grace period).
    Per-file failures are listed in `errors`; they do not stop the run.
    """
    try:
        return await run_cleanup(db, reason="manual_cleanup")
    except PersistenceError as exc:
        logger.error("Manual cleanup failed: %s", exc.message)
        return CleanupResult(success=False, message="Error in manual cleanup")


@router.get("/api/admin/transactions", response_model=TransactionListResponse, summary="Recent events",
            dependencies=[Depends(verify_admin_secret)])
@limiter.limit(READ_LIMIT)
async def recent_transactions(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    db: aiosqlite.Connection = Depends(db_session),
):
    events = await get_all_transactions(db, limit)
    return TransactionListResponse(count=len(events), data=events)

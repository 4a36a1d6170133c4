"""
PayDrop — File routes
  POST   /api/files/upload               upload a file, paid via x402 (X-PAYMENT)
  GET    /api/files/info/{share_link}    public metadata, no payment required
  GET    /api/files/all                  list files (admin)
  DELETE /api/files/{file_id}            delete a file now (admin)
"""
import logging

import aiosqlite
from fastapi import APIRouter, Depends, File, Form, Header, Query, Request, Response, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from x402.schemas import PaymentRequirementsV1

from auth import verify_admin_secret
from database import (
    create_file,
    create_payment,
    create_transaction,
    db_session,
    delete_file_by_id,
    get_all_files,
    get_file_by_id,
    get_file_by_share_link,
)
from errors import ExpiredError, NotFoundError, PaymentError, ShareLinkTaken, ValidationError
from helpers import generate_share_link, is_expired, validate_file_upload
from limiter import ADMIN_LIMIT, READ_LIMIT, UPLOAD_LIMIT, limiter
from models import (
    EventType,
    FileInfo,
    FileInfoResponse,
    FileListResponse,
    FileRecord,
    PaymentStatus,
    StatusResponse,
    UploadResponse,
)
from payment_gate import PaymentGate, Settlement, get_payment_gate, payment_required_body, wire
from pricing import DURATION_OPTIONS, is_valid_duration, price_for
from storage import delete_blob, discard_blob, save_stream

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/files", tags=["Files"])

INVALID_DURATION = f"Invalid duration. Must be {', '.join(map(str, DURATION_OPTIONS[:-1]))}, or {DURATION_OPTIONS[-1]} days"
SHARE_LINK_ATTEMPTS = 3


async def _persist_upload(
    db: aiosqlite.Connection,
    *,
    upload: UploadFile,
    stored_name: str,
    stored_path: str,
    size: int,
    duration_days: int,
    settlement: Settlement,
    requirement: PaymentRequirementsV1,
) -> FileRecord:
    """Record a settled upload: file (completed), payment (completed), audit event."""
    for attempt in range(1, SHARE_LINK_ATTEMPTS + 1):
        try:
            record = await create_file(
                db,
                filename=stored_name,
                original_filename=upload.filename,
                filepath=stored_path,
                file_size=size,
                mime_type=upload.content_type,
                duration_days=duration_days,
                price_usd=price_for(duration_days),
                share_link=generate_share_link(),
                payment_status=PaymentStatus.COMPLETED,
            )
            break
        except ShareLinkTaken:
            if attempt == SHARE_LINK_ATTEMPTS:
                raise
            logger.warning("Share link collision for %s, regenerating (attempt %d)", stored_name, attempt)
    try:
        payment = await create_payment(
            db,
            file_id=record.id,
            amount_usd=record.price_usd,
            payment_status=PaymentStatus.COMPLETED,
            transaction_hash=settlement.response.transaction or None,
            payment_data={
                "payer": settlement.response.payer,
                "network": settlement.response.network,
                "transaction": settlement.response.transaction,
                "requirement": wire(requirement),
            },
        )
        await create_transaction(
            db,
            file_id=record.id,
            payment_id=payment.id,
            event_type=EventType.FILE_UPLOADED,
            event_data={
                "filename": record.original_filename,
                "size": record.file_size,
                "duration": record.duration_days,
                "price": record.price_usd,
                "paymentSettled": True,
            },
        )
    except Exception:
        await delete_file_by_id(db, record.id)
        raise
    return record


@router.post("/upload", status_code=201, response_model=UploadResponse, summary="Upload a file")
@limiter.limit(UPLOAD_LIMIT)
async def upload_file(
    request: Request,
    response: Response,
    file: UploadFile | None = File(default=None),
    duration: str | None = Form(default=None),
    x_payment: str | None = Header(default=None),
    gate: PaymentGate = Depends(get_payment_gate),
    db: aiosqlite.Connection = Depends(db_session),
):
    """
    Upload a file and pay for its retention in one request.

    - **file**: multipart file field
    - **duration**: retention in days (1, 7 or 30)
    - **X-PAYMENT** *(header)*: x402 "exact" payment for the duration's price.
      Without it the response is **402** with the payment requirements in `accepts`.

    Nothing is stored unless the payment settles on-chain. The settlement
    receipt comes back in the `X-PAYMENT-RESPONSE` header.
    """
    # ── Validate before touching the payment gate ────────────────────────────
    if file is None or not file.filename:
        raise ValidationError("No file provided")
    validate_file_upload(file.filename, file.size or 0)
    if not is_valid_duration(duration):
        raise ValidationError(INVALID_DURATION)
    duration_days = int(duration)

    stored_name, stored_path, size = await run_in_threadpool(save_stream, file.file, file.filename)
    try:
        requirements = [
            gate.build_requirement(
                price_for(duration_days),
                str(request.url),
                f"Upload file for {duration_days} day(s) - {file.filename}",
            )
        ]

        # ── Verify ───────────────────────────────────────────────────────────
        try:
            verified = await gate.verify(x_payment, requirements)
        except PaymentError as exc:
            discard_blob(stored_path)
            logger.info("Payment verification failed for %s - file cleaned up", file.filename)
            return JSONResponse(status_code=402, content=payment_required_body(exc, requirements))

        # ── Settle (blocking) ────────────────────────────────────────────────
        try:
            settlement = await gate.settle(x_payment, verified.requirement)
        except PaymentError as exc:
            discard_blob(stored_path)
            logger.warning("Payment settlement failed for %s: %s", file.filename, exc.message)
            return JSONResponse(status_code=402, content=payment_required_body(exc, requirements))

        # ── Persist ──────────────────────────────────────────────────────────
        try:
            record = await _persist_upload(
                db,
                upload=file,
                stored_name=stored_name,
                stored_path=stored_path,
                size=size,
                duration_days=duration_days,
                settlement=settlement,
                requirement=verified.requirement,
            )
        except Exception:
            logger.error(
                "Upload %s was paid (tx %s) but could not be recorded",
                file.filename, settlement.response.transaction,
            )
            raise
    except Exception:
        discard_blob(stored_path)
        raise

    logger.info("Upload successful: %s (%s, $%s)", record.share_link, record.original_filename, record.price_usd)
    response.headers["X-PAYMENT-RESPONSE"] = settlement.header
    response.headers["Access-Control-Expose-Headers"] = "X-PAYMENT-RESPONSE"
    return UploadResponse(message="File uploaded successfully", data=FileInfo.from_record(record))


@router.get("/info/{share_link}", response_model=FileInfoResponse, summary="File metadata")
@limiter.limit(READ_LIMIT)
async def file_info(request: Request, share_link: str, db: aiosqlite.Connection = Depends(db_session)):
    """Metadata for a share link (name, size, price, expiry). No payment required."""
    record = await get_file_by_share_link(db, share_link)
    if record is None:
        raise NotFoundError("File not found")
    if is_expired(record.expiry_date):
        raise ExpiredError("File has expired")
    return FileInfoResponse(data=FileInfo.from_record(record))


@router.get("/all", response_model=FileListResponse, summary="List files",
            dependencies=[Depends(verify_admin_secret)])
@limiter.limit(READ_LIMIT)
async def list_files(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    db: aiosqlite.Connection = Depends(db_session),
):
    """Newest files first, all fields. Admin/debug endpoint."""
    files = await get_all_files(db, limit)
    return FileListResponse(count=len(files), data=files)


@router.delete("/{file_id}", response_model=StatusResponse, summary="Delete a file",
               dependencies=[Depends(verify_admin_secret)])
@limiter.limit(ADMIN_LIMIT)
async def delete_file(request: Request, file_id: str, db: aiosqlite.Connection = Depends(db_session)):
    """Remove a file's bytes and records immediately, regardless of expiry."""
    record = await get_file_by_id(db, file_id)
    if record is None:
        raise NotFoundError("File not found")

    delete_blob(record.filepath)
    await create_transaction(
        db,
        file_id=record.id,
        event_type=EventType.FILE_DELETED,
        event_data={"filename": record.original_filename, "reason": "manual"},
    )
    await delete_file_by_id(db, record.id)
    logger.info("Manually deleted file %s", record.id)
    return StatusResponse(status="ok", message=f"Deleted {record.original_filename}.")

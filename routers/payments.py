"""
PayDrop — Payment routes (read-only)
  POST /api/payments/initiate                 price and payment info for an unpaid file
  GET  /api/payments/status/{file_id}         latest payment for a file
  GET  /api/payments/transactions/{file_id}   audit trail for a file
"""
import aiosqlite
from fastapi import APIRouter, Depends, Request

from database import db_session, get_file_by_id, get_payment_by_file_id, get_transactions_by_file_id
from errors import ExpiredError, NotFoundError, ValidationError
from helpers import is_expired
from limiter import READ_LIMIT, limiter
from models import (
    FileRecord,
    InitiatePaymentRequest,
    PaymentInitiation,
    PaymentInitiationResponse,
    PaymentStatus,
    PaymentStatusInfo,
    PaymentStatusResponse,
    TransactionListResponse,
)

router = APIRouter(prefix="/api/payments", tags=["Payments"])


async def _require_file(db: aiosqlite.Connection, file_id: str) -> FileRecord:
    file = await get_file_by_id(db, file_id)
    if file is None:
        raise NotFoundError("File not found")
    return file


@router.post("/initiate", response_model=PaymentInitiationResponse, summary="Initiate payment")
@limiter.limit(READ_LIMIT)
async def initiate_payment(
    request: Request, data: InitiatePaymentRequest, db: aiosqlite.Connection = Depends(db_session)
):
    """What the client must pay for a file that is still pending. 400 once paid."""
    file = await _require_file(db, data.fileId)
    if file.payment_status is PaymentStatus.COMPLETED:
        raise ValidationError("Payment already completed")
    if is_expired(file.expiry_date):
        raise ExpiredError("File has expired")

    payment = await get_payment_by_file_id(db, file.id)
    return PaymentInitiationResponse(
        message="Payment initiated",
        data=PaymentInitiation(
            fileId=file.id,
            filename=file.original_filename,
            price=file.price_usd,
            duration=file.duration_days,
            shareLink=file.share_link,
            paymentId=payment.id if payment else None,
            paymentStatus=payment.payment_status if payment else PaymentStatus.PENDING,
        ),
    )


@router.get("/status/{file_id}", response_model=PaymentStatusResponse, summary="Payment status")
@limiter.limit(READ_LIMIT)
async def payment_status(request: Request, file_id: str, db: aiosqlite.Connection = Depends(db_session)):
    file = await _require_file(db, file_id)
    payment = await get_payment_by_file_id(db, file.id)
    return PaymentStatusResponse(
        data=PaymentStatusInfo(
            fileId=file.id,
            paymentStatus=file.payment_status,
            amount=payment.amount_usd if payment else None,
            transactionHash=payment.transaction_hash if payment else None,
            paidAt=payment.paid_at if payment else None,
        )
    )


@router.get("/transactions/{file_id}", response_model=TransactionListResponse, summary="Audit trail")
@limiter.limit(READ_LIMIT)
async def file_transactions(request: Request, file_id: str, db: aiosqlite.Connection = Depends(db_session)):
    """Events recorded for a file, newest first."""
    file = await _require_file(db, file_id)
    events = await get_transactions_by_file_id(db, file.id)
    return TransactionListResponse(count=len(events), data=events)

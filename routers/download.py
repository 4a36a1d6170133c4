"""
PayDrop — Download route
  GET /api/download/{share_link}   stream a file, gated by an x402 challenge until paid
"""
import logging
import os
from urllib.parse import quote

import aiosqlite
from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse, StreamingResponse

import config
from database import (
    create_payment,
    create_transaction,
    db_session,
    get_file_by_share_link,
    get_payment_by_file_id,
    update_file_payment_status,
    update_payment_status,
)
from errors import ExpiredError, NotFoundError, StorageIOError
from helpers import is_expired
from limiter import DOWNLOAD_LIMIT, limiter
from models import EventType, FileRecord, PaymentProof, PaymentStatus
from storage import blob_exists, iter_blob
from payment_gate import PaymentGate, challenge_headers, get_payment_gate, parse_payment_proof, proof_matches

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/download", tags=["Download"])


def _content_disposition(filename: str) -> str:
    quoted = quote(filename)
    if quoted != filename:
        return f"attachment; filename*=utf-8''{quoted}"
    return f'attachment; filename="{filename}"'


async def _promote_payment(db: aiosqlite.Connection, file: FileRecord, proof: PaymentProof) -> None:
    """Mark the file's latest payment and the file itself completed (pending only)."""
    payment = await get_payment_by_file_id(db, file.id)
    if payment is None:
        payment = await create_payment(db, file_id=file.id, amount_usd=file.price_usd)

    await update_payment_status(
        db, payment.id, PaymentStatus.COMPLETED, proof.transactionHash, proof.model_dump()
    )
    if await update_file_payment_status(db, file.id, PaymentStatus.COMPLETED):
        await create_transaction(
            db,
            file_id=file.id,
            payment_id=payment.id,
            event_type=EventType.PAYMENT_COMPLETED,
            event_data={
                "transactionHash": proof.transactionHash,
                "amount": file.price_usd,
                "source": "payment_proof",
            },
        )
        logger.info("Payment completed for %s via proof %s", file.id, proof.transactionHash)


def _stream_file(file: FileRecord) -> StreamingResponse:
    if not blob_exists(file.filepath):
        raise NotFoundError("File not found on server")
    try:
        handle = open(file.filepath, "rb")
        size = os.fstat(handle.fileno()).st_size
    except OSError as exc:
        raise StorageIOError(f"Cannot open {file.filepath}: {exc}") from exc

    return StreamingResponse(
        iter_blob(handle),
        media_type=file.mime_type or "application/octet-stream",
        headers={
            "Content-Disposition": _content_disposition(file.original_filename),
            "Content-Length": str(size),
        },
    )


@router.get("/{share_link}", summary="Download a file")
@limiter.limit(DOWNLOAD_LIMIT)
async def download_file(
    request: Request,
    share_link: str,
    x_payment_proof: str | None = Header(default=None),
    gate: PaymentGate = Depends(get_payment_gate),
    db: aiosqlite.Connection = Depends(db_session),
):
    """
    Stream the file behind a share link.

    - **404** unknown link, **410** past expiry (even if not yet purged)
    - Paid files stream on every request, no proof needed
    - Unpaid files answer **402** with an x402 challenge in `X-Payment-*` headers;
      retry with `X-Payment-Proof: {"fileId": ..., "transactionHash": ...}`
    """
    file = await get_file_by_share_link(db, share_link)
    if file is None:
        raise NotFoundError("File not found")
    if is_expired(file.expiry_date):
        raise ExpiredError("File has expired and is no longer available")

    if file.payment_status is not PaymentStatus.COMPLETED:
        proof = parse_payment_proof(x_payment_proof) if config.ACCEPT_PAYMENT_ATTESTATIONS else None
        if not proof_matches(proof, file):
            challenge = gate.challenge(file)
            return JSONResponse(
                status_code=402,
                headers=challenge_headers(challenge),
                content={
                    "error": "Payment Required",
                    "message": "This resource requires payment",
                    "challenge": challenge.model_dump(),
                },
            )
        await _promote_payment(db, file, proof)

    return _stream_file(file)

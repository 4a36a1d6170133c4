"""
PayDrop — Pydantic models (stored records, download challenges, response shapes)
"""
from datetime import datetime
from enum import Enum
from typing import Any, List

from pydantic import BaseModel, ConfigDict, field_validator


class PaymentStatus(str, Enum):
    PENDING   = "pending"
    COMPLETED = "completed"


class EventType(str, Enum):
    FILE_UPLOADED     = "file_uploaded"
    PAYMENT_COMPLETED = "payment_completed"
    FILE_DELETED      = "file_deleted"


# ── Stored records ────────────────────────────────────────────────────────────

class FileRecord(BaseModel):
    id: str
    filename: str
    original_filename: str
    filepath: str
    file_size: int
    mime_type: str | None = None
    duration_days: int
    price_usd: str  # fixed-point decimal, 6 fractional digits
    share_link: str
    expiry_date: datetime
    payment_status: PaymentStatus
    created_at: datetime
    updated_at: datetime


class PaymentRecord(BaseModel):
    id: str
    file_id: str
    amount_usd: str
    payment_status: PaymentStatus
    transaction_hash: str | None = None
    payment_data: dict[str, Any] | None = None
    paid_at: datetime | None = None
    created_at: datetime


class TransactionEvent(BaseModel):
    id: str
    file_id: str
    payment_id: str | None = None
    event_type: str
    event_data: dict[str, Any] | None = None
    created_at: datetime


# ── Download challenge ────────────────────────────────────────────────────────

class ChallengeMetadata(BaseModel):
    fileId: str
    shareLink: str
    filename: str
    size: int
    duration: int


class PaymentChallenge(BaseModel):
    amount: str
    currency: str
    receiver: str
    network: str
    chainId: str
    description: str
    metadata: ChallengeMetadata
    nonce: str
    timestamp: int


class PaymentProof(BaseModel):
    """Attestation sent in X-Payment-Proof when re-requesting a paid download."""
    model_config = ConfigDict(extra="allow")

    fileId: str
    transactionHash: str

    @field_validator("transactionHash")
    @classmethod
    def hash_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("transactionHash cannot be empty")
        return v


# ── Requests ──────────────────────────────────────────────────────────────────

class InitiatePaymentRequest(BaseModel):
    fileId: str

    @field_validator("fileId")
    @classmethod
    def file_id_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("File ID is required")
        return v


# ── Responses ─────────────────────────────────────────────────────────────────

class FileInfo(BaseModel):
    fileId: str
    filename: str
    size: int
    mimeType: str | None = None
    duration: int
    price: str
    shareLink: str
    expiryDate: datetime
    paymentStatus: PaymentStatus
    createdAt: datetime

    @classmethod
    def from_record(cls, f: FileRecord) -> "FileInfo":
        return cls(
            fileId=f.id,
            filename=f.original_filename,
            size=f.file_size,
            mimeType=f.mime_type,
            duration=f.duration_days,
            price=f.price_usd,
            shareLink=f.share_link,
            expiryDate=f.expiry_date,
            paymentStatus=f.payment_status,
            createdAt=f.created_at,
        )


class FileInfoResponse(BaseModel):
    success: bool = True
    data: FileInfo


class UploadResponse(BaseModel):
    success: bool = True
    message: str
    data: FileInfo


class FileListResponse(BaseModel):
    success: bool = True
    count: int
    data: List[FileRecord]


class PaymentInitiation(BaseModel):
    fileId: str
    filename: str
    price: str
    duration: int
    shareLink: str
    paymentId: str | None
    paymentStatus: PaymentStatus


class PaymentStatusInfo(BaseModel):
    fileId: str
    paymentStatus: PaymentStatus
    amount: str | None
    transactionHash: str | None
    paidAt: datetime | None


class PaymentInitiationResponse(BaseModel):
    success: bool = True
    message: str
    data: PaymentInitiation


class PaymentStatusResponse(BaseModel):
    success: bool = True
    data: PaymentStatusInfo


class TransactionListResponse(BaseModel):
    success: bool = True
    count: int
    data: List[TransactionEvent]


class CleanupError(BaseModel):
    fileId: str
    error: str


class CleanupResult(BaseModel):
    success: bool
    message: str
    deletedCount: int = 0
    errors: List[CleanupError] | None = None


class StatusResponse(BaseModel):
    status: str
    message: str

"""
PayDrop — Lifecycle store
SQLite persistence for files, their payments and the audit trail.
Every write commits on its own; children cascade when a file row is deleted.
"""
import functools
import json
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

import aiosqlite

from config import DATABASE_PATH
from errors import PersistenceError, ShareLinkTaken
from helpers import calculate_expiry, now_utc, to_iso, utcnow
from models import EventType, FileRecord, PaymentRecord, PaymentStatus, TransactionEvent

MONEY_QUANTUM = Decimal("0.000001")

SCHEMA = """
CREATE TABLE IF NOT EXISTS files (
    id                 TEXT PRIMARY KEY,
    filename           TEXT NOT NULL,
    original_filename  TEXT NOT NULL,
    filepath           TEXT NOT NULL,
    file_size          INTEGER NOT NULL,
    mime_type          TEXT,
    duration_days      INTEGER NOT NULL,
    price_usd          TEXT NOT NULL,
    share_link         TEXT NOT NULL UNIQUE,
    expiry_date        TEXT NOT NULL,
    payment_status     TEXT NOT NULL DEFAULT 'pending',
    created_at         TEXT NOT NULL,
    updated_at         TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS payments (
    id                 TEXT PRIMARY KEY,
    file_id            TEXT NOT NULL REFERENCES files(id) ON DELETE CASCADE,
    amount_usd         TEXT NOT NULL,
    payment_status     TEXT NOT NULL DEFAULT 'pending',
    transaction_hash   TEXT,
    payment_data       TEXT,
    paid_at            TEXT,
    created_at         TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS transactions (
    id                 TEXT PRIMARY KEY,
    file_id            TEXT NOT NULL REFERENCES files(id) ON DELETE CASCADE,
    payment_id         TEXT REFERENCES payments(id) ON DELETE CASCADE,
    event_type         TEXT NOT NULL,
    event_data         TEXT,
    created_at         TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_files_expiry_date    ON files(expiry_date);
CREATE INDEX IF NOT EXISTS idx_files_payment_status ON files(payment_status);
CREATE INDEX IF NOT EXISTS idx_payments_file_id     ON payments(file_id);
CREATE INDEX IF NOT EXISTS idx_transactions_file_id ON transactions(file_id);
"""


def _persistence(func):
    """Re-raise driver errors as PersistenceError so routes can map them to a 500."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except aiosqlite.IntegrityError as exc:
            if "share_link" in str(exc):
                raise ShareLinkTaken(f"{func.__name__} failed: {exc}") from exc
            raise PersistenceError(f"{func.__name__} failed: {exc}") from exc
        except aiosqlite.Error as exc:
            raise PersistenceError(f"{func.__name__} failed: {exc}") from exc
    return wrapper


# ── Connection ────────────────────────────────────────────────────────────────

@_persistence
async def get_db() -> aiosqlite.Connection:
    db = await aiosqlite.connect(DATABASE_PATH)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys = ON")
    await db.executescript(SCHEMA)
    await db.commit()
    return db


async def db_session():
    """FastAPI dependency: one connection per request, always closed."""
    db = await get_db()
    try:
        yield db
    finally:
        await db.close()


# ── Utilities ─────────────────────────────────────────────────────────────────

def to_money(value: Decimal | str | float) -> str:
    """Fixed-point text with 6 fractional digits, e.g. 0.15 -> '0.150000'."""
    try:
        return str(Decimal(str(value)).quantize(MONEY_QUANTUM))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc


def _new_id() -> str:
    return str(uuid.uuid4())


def _dump_json(data: dict[str, Any] | None) -> str | None:
    return json.dumps(data, default=str) if data is not None else None


def _file(row: aiosqlite.Row | None) -> FileRecord | None:
    return FileRecord.model_validate(dict(row)) if row else None


def _payment(row: aiosqlite.Row | None) -> PaymentRecord | None:
    if not row:
        return None
    data = dict(row)
    data["payment_data"] = json.loads(data["payment_data"]) if data["payment_data"] else None
    return PaymentRecord.model_validate(data)


def _event(row: aiosqlite.Row) -> TransactionEvent:
    data = dict(row)
    data["event_data"] = json.loads(data["event_data"]) if data["event_data"] else None
    return TransactionEvent.model_validate(data)


async def _fetchone(db: aiosqlite.Connection, sql: str, params: tuple = ()):
    async with db.execute(sql, params) as cursor:
        return await cursor.fetchone()


async def _fetchall(db: aiosqlite.Connection, sql: str, params: tuple = ()):
    async with db.execute(sql, params) as cursor:
        return await cursor.fetchall()


# ── Files ─────────────────────────────────────────────────────────────────────

@_persistence
async def create_file(
    db: aiosqlite.Connection,
    *,
    filename: str,
    original_filename: str,
    filepath: str,
    file_size: int,
    mime_type: str | None,
    duration_days: int,
    price_usd: Decimal | str,
    share_link: str,
    payment_status: PaymentStatus = PaymentStatus.PENDING,
    created_at: datetime | None = None,
) -> FileRecord:
    """
    Insert a file row. The expiry is always derived from created_at + duration_days.
    Status defaults to pending; callers pass COMPLETED only after settlement.
    """
    created = created_at or utcnow()
    file_id = _new_id()
    await db.execute(
        """
        INSERT INTO files
            (id, filename, original_filename, filepath, file_size, mime_type,
             duration_days, price_usd, share_link, expiry_date, payment_status,
             created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            file_id, filename, original_filename, filepath, file_size, mime_type,
            duration_days, to_money(price_usd), share_link,
            to_iso(calculate_expiry(created, duration_days)),
            PaymentStatus(payment_status).value, to_iso(created), to_iso(created),
        ),
    )
    await db.commit()
    return await get_file_by_id(db, file_id)


@_persistence
async def get_file_by_share_link(db: aiosqlite.Connection, share_link: str) -> FileRecord | None:
    return _file(await _fetchone(db, "SELECT * FROM files WHERE share_link = ?", (share_link,)))


@_persistence
async def get_file_by_id(db: aiosqlite.Connection, file_id: str) -> FileRecord | None:
    return _file(await _fetchone(db, "SELECT * FROM files WHERE id = ?", (file_id,)))


@_persistence
async def get_all_files(db: aiosqlite.Connection, limit: int = 100) -> list[FileRecord]:
    rows = await _fetchall(db, "SELECT * FROM files ORDER BY created_at DESC LIMIT ?", (limit,))
    return [_file(r) for r in rows]


@_persistence
async def update_file_payment_status(
    db: aiosqlite.Connection, file_id: str, status: PaymentStatus
) -> bool:
    """
    Promote a file from pending to completed. Returns False when the row was
    already completed (or does not exist), so racing promotions can tell who won.
    """
    if PaymentStatus(status) is not PaymentStatus.COMPLETED:
        raise ValueError("payment status can only move from pending to completed")
    cursor = await db.execute(
        "UPDATE files SET payment_status = ?, updated_at = ? WHERE id = ? AND payment_status = ?",
        (PaymentStatus.COMPLETED.value, now_utc(), file_id, PaymentStatus.PENDING.value),
    )
    await db.commit()
    return cursor.rowcount == 1


@_persistence
async def get_expired_files(db: aiosqlite.Connection, now: datetime | None = None) -> list[FileRecord]:
    """Paid files whose expiry instant has been reached."""
    rows = await _fetchall(
        db,
        "SELECT * FROM files WHERE expiry_date <= ? AND payment_status = ? ORDER BY expiry_date",
        (to_iso(now or utcnow()), PaymentStatus.COMPLETED.value),
    )
    return [_file(r) for r in rows]


@_persistence
async def get_stale_pending_files(db: aiosqlite.Connection, cutoff: datetime) -> list[FileRecord]:
    """Files still unpaid that were created before `cutoff`."""
    rows = await _fetchall(
        db,
        "SELECT * FROM files WHERE payment_status = ? AND created_at < ? ORDER BY created_at",
        (PaymentStatus.PENDING.value, to_iso(cutoff)),
    )
    return [_file(r) for r in rows]


@_persistence
async def delete_file_by_id(db: aiosqlite.Connection, file_id: str) -> FileRecord | None:
    """Delete a file row; its payments and events go with it."""
    record = await get_file_by_id(db, file_id)
    if record is None:
        return None
    await db.execute("DELETE FROM files WHERE id = ?", (file_id,))
    await db.commit()
    return record


# ── Payments ──────────────────────────────────────────────────────────────────

@_persistence
async def create_payment(
    db: aiosqlite.Connection,
    *,
    file_id: str,
    amount_usd: Decimal | str,
    payment_status: PaymentStatus = PaymentStatus.PENDING,
    transaction_hash: str | None = None,
    payment_data: dict[str, Any] | None = None,
) -> PaymentRecord:
    status = PaymentStatus(payment_status)
    now = now_utc()
    payment_id = _new_id()
    await db.execute(
        """
        INSERT INTO payments
            (id, file_id, amount_usd, payment_status, transaction_hash, payment_data, paid_at, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            payment_id, file_id, to_money(amount_usd), status.value, transaction_hash,
            _dump_json(payment_data), now if status is PaymentStatus.COMPLETED else None, now,
        ),
    )
    await db.commit()
    return await get_payment_by_id(db, payment_id)


@_persistence
async def update_payment_status(
    db: aiosqlite.Connection,
    payment_id: str,
    status: PaymentStatus,
    transaction_hash: str | None = None,
    payment_data: dict[str, Any] | None = None,
) -> bool:
    """Mark a pending payment completed and stamp paid_at. False if it was not pending."""
    if PaymentStatus(status) is not PaymentStatus.COMPLETED:
        raise ValueError("payment status can only move from pending to completed")
    cursor = await db.execute(
        """
        UPDATE payments
        SET payment_status = ?, transaction_hash = ?, payment_data = ?, paid_at = ?
        WHERE id = ? AND payment_status = ?
        """,
        (
            PaymentStatus.COMPLETED.value, transaction_hash, _dump_json(payment_data),
            now_utc(), payment_id, PaymentStatus.PENDING.value,
        ),
    )
    await db.commit()
    return cursor.rowcount == 1


@_persistence
async def get_payment_by_file_id(db: aiosqlite.Connection, file_id: str) -> PaymentRecord | None:
    """The latest payment for a file is the authoritative one."""
    return _payment(await _fetchone(
        db,
        "SELECT * FROM payments WHERE file_id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
        (file_id,),
    ))


@_persistence
async def get_payment_by_id(db: aiosqlite.Connection, payment_id: str) -> PaymentRecord | None:
    return _payment(await _fetchone(db, "SELECT * FROM payments WHERE id = ?", (payment_id,)))


# ── Audit trail ───────────────────────────────────────────────────────────────

@_persistence
async def create_transaction(
    db: aiosqlite.Connection,
    *,
    file_id: str,
    event_type: EventType | str,
    event_data: dict[str, Any] | None = None,
    payment_id: str | None = None,
) -> TransactionEvent:
    event_id = _new_id()
    await db.execute(
        """
        INSERT INTO transactions (id, file_id, payment_id, event_type, event_data, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (event_id, file_id, payment_id, EventType(event_type).value, _dump_json(event_data), now_utc()),
    )
    await db.commit()
    return _event(await _fetchone(db, "SELECT * FROM transactions WHERE id = ?", (event_id,)))


@_persistence
async def get_transactions_by_file_id(db: aiosqlite.Connection, file_id: str) -> list[TransactionEvent]:
    rows = await _fetchall(
        db,
        "SELECT * FROM transactions WHERE file_id = ? ORDER BY created_at DESC, rowid DESC",
        (file_id,),
    )
    return [_event(r) for r in rows]


@_persistence
async def get_all_transactions(db: aiosqlite.Connection, limit: int = 100) -> list[TransactionEvent]:
    rows = await _fetchall(
        db, "SELECT * FROM transactions ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,)
    )
    return [_event(r) for r in rows]

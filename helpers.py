"""
PayDrop — Small helpers
Share links, expiry arithmetic, timestamps, upload validation.
"""
import secrets
from datetime import datetime, timedelta, timezone

from config import MAX_FILE_SIZE_BYTES
from errors import ValidationError

SHARE_LINK_BYTES = 6  # 8 url-safe characters


# ── Timestamps ────────────────────────────────────────────────────────────────

def to_iso(dt: datetime) -> str:
    """UTC ISO-8601 with fixed microsecond precision, so string order == time order."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_utc() -> str:
    return to_iso(utcnow())


# ── Share links ───────────────────────────────────────────────────────────────

def generate_share_link() -> str:
    return secrets.token_urlsafe(SHARE_LINK_BYTES)


# ── Expiry ────────────────────────────────────────────────────────────────────

def calculate_expiry(created_at: datetime, duration_days: int) -> datetime:
    return created_at + timedelta(days=int(duration_days))


def is_expired(expiry: datetime | str, now: datetime | None = None) -> bool:
    """True once `now` has reached the expiry instant (the boundary counts as expired)."""
    if isinstance(expiry, str):
        expiry = datetime.fromisoformat(expiry)
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    return (now or utcnow()) >= expiry


# ── Upload validation ─────────────────────────────────────────────────────────

def format_file_size(num_bytes: int) -> str:
    if num_bytes == 0:
        return "0 Bytes"
    size = float(num_bytes)
    for unit in ("Bytes", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            break
        size /= 1024
    return f"{round(size, 2):g} {unit}"


def validate_file_upload(filename: str | None, size: int, max_size: int | None = None) -> None:
    max_size = max_size or MAX_FILE_SIZE_BYTES
    if not filename:
        raise ValidationError("No file provided")
    if size > max_size:
        raise ValidationError(f"File size exceeds maximum limit of {format_file_size(max_size)}")

"""
PayDrop — Blob storage
Uploaded bytes live on local disk under UPLOAD_DIR; the database only keeps the path.
"""
import logging
import os
import secrets
from pathlib import Path
from typing import BinaryIO, Iterator

from config import MAX_FILE_SIZE_BYTES, UPLOAD_DIR
from errors import StorageIOError, ValidationError
from helpers import format_file_size

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


def _stored_name(original: str) -> str:
    suffix = Path(original).suffix[:16]
    return f"{secrets.token_hex(16)}{suffix}"


def save_stream(
    source: BinaryIO,
    original_filename: str,
    upload_dir: str | None = None,
    max_size: int | None = None,
) -> tuple[str, str, int]:
    """
    Copy an incoming stream to disk. Returns (stored_name, path, size).
    Aborts and removes the partial blob once more than max_size bytes arrive.
    """
    directory = Path(upload_dir or UPLOAD_DIR)
    max_size = max_size or MAX_FILE_SIZE_BYTES
    stored_name = _stored_name(original_filename)
    path = directory / stored_name
    size = 0
    try:
        directory.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as out:
            while chunk := source.read(CHUNK_SIZE):
                size += len(chunk)
                if size > max_size:
                    raise ValidationError(
                        f"File size exceeds maximum limit of {format_file_size(max_size)}"
                    )
                out.write(chunk)
    except ValidationError:
        delete_blob(str(path))
        raise
    except OSError as exc:
        delete_blob(str(path))
        raise StorageIOError(f"Could not store upload {original_filename!r}: {exc}") from exc
    return stored_name, str(path), size


def delete_blob(path: str) -> bool:
    """Remove a blob. Returns False if it was already gone; other OS errors propagate."""
    try:
        os.remove(path)
    except FileNotFoundError:
        return False
    return True


def discard_blob(path: str | None) -> None:
    """Best-effort removal on request failure paths; problems are logged, not raised."""
    if not path:
        return
    try:
        delete_blob(path)
    except OSError as exc:
        logger.error("Could not discard blob %s: %s", path, exc)


def blob_exists(path: str) -> bool:
    return os.path.isfile(path)


def iter_blob(handle: BinaryIO, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Yield an already opened blob in chunks and close it when done."""
    try:
        while chunk := handle.read(chunk_size):
            yield chunk
    except OSError:
        logger.exception("Error streaming blob %s", getattr(handle, "name", "?"))
        raise
    finally:
        handle.close()

"""
Shared pytest fixtures for the PayDrop test suite.

This module provides:
- Hypothesis profiles
- A throwaway SQLite database and upload directory per test
- A fake x402 facilitator and a PaymentGate wired to it
- A TestClient with the payment gate dependency overridden
"""

import asyncio
import uuid

import pytest
from fastapi.testclient import TestClient
from hypothesis import HealthCheck, settings
from x402.http.utils import encode_payment_signature_header
from x402.schemas import PaymentPayloadV1, SettleResponse, VerifyResponse

import database
import helpers
import storage
from database import create_file, create_payment
from helpers import generate_share_link
from limiter import limiter
from main import app
from models import PaymentStatus
from payment_gate import PaymentGate, get_payment_gate
from pricing import price_for

settings.register_profile("default", max_examples=100, deadline=None,
                          suppress_health_check=[HealthCheck.function_scoped_fixture])
settings.load_profile("default")

RECEIVER = "0x" + "ab" * 20
PAYER = "0x" + "cd" * 20
TX_HASH = "0x" + "ef" * 32
NETWORK = "base-sepolia"


# =============================================================================
# x402 fakes
# =============================================================================

class FakeFacilitator:
    """Stands in for HTTPFacilitatorClient; records calls, answers with canned responses."""

    def __init__(self):
        self.verify_response = VerifyResponse(is_valid=True, payer=PAYER)
        self.settle_response = SettleResponse(success=True, transaction=TX_HASH, network=NETWORK, payer=PAYER)
        self.verify_error: Exception | None = None
        self.settle_error: Exception | None = None
        self.verify_calls = []
        self.settle_calls = []

    async def verify(self, payment, requirement):
        self.verify_calls.append((payment, requirement))
        if self.verify_error:
            raise self.verify_error
        return self.verify_response

    async def settle(self, payment, requirement):
        self.settle_calls.append((payment, requirement))
        if self.settle_error:
            raise self.settle_error
        return self.settle_response


def make_payment_header(value: str = "150000", network: str = NETWORK) -> str:
    """An X-PAYMENT header shaped like an "exact" EVM payment."""
    return encode_payment_signature_header(PaymentPayloadV1(
        scheme="exact",
        network=network,
        payload={
            "signature": "0x" + "11" * 65,
            "authorization": {
                "from": PAYER,
                "to": RECEIVER,
                "value": value,
                "validAfter": "0",
                "validBefore": "9999999999",
                "nonce": "0x" + "22" * 32,
            },
        },
    ))


@pytest.fixture
def facilitator() -> FakeFacilitator:
    return FakeFacilitator()


@pytest.fixture
def gate(facilitator) -> PaymentGate:
    return PaymentGate(facilitator, pay_to=RECEIVER, network=NETWORK)


# =============================================================================
# Storage fixtures
# =============================================================================

@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "paydrop-test.db"
    monkeypatch.setattr(database, "DATABASE_PATH", str(path))
    return path


@pytest.fixture
def upload_dir(tmp_path, monkeypatch):
    directory = tmp_path / "uploads"
    directory.mkdir()
    monkeypatch.setattr(storage, "UPLOAD_DIR", str(directory))
    return directory


async def _with_db(fn, *args, **kwargs):
    db = await database.get_db()
    try:
        return await fn(db, *args, **kwargs)
    finally:
        await db.close()


@pytest.fixture
def store(db_path):
    """Run a database function synchronously on a fresh connection: store(get_file_by_id, id)."""
    def call(fn, *args, **kwargs):
        return asyncio.run(_with_db(fn, *args, **kwargs))
    return call


@pytest.fixture
def stored_file(store, upload_dir):
    """Factory for a file record (plus its payment) with bytes on disk."""
    def make(content=b"hello world", status=PaymentStatus.PENDING, created_at=None, duration=7,
             name="hello.txt"):
        path = upload_dir / f"{uuid.uuid4().hex}.txt"
        path.write_bytes(content)
        record = store(
            create_file,
            filename=path.name,
            original_filename=name,
            filepath=str(path),
            file_size=len(content),
            mime_type="text/plain",
            duration_days=duration,
            price_usd=price_for(duration),
            share_link=generate_share_link(),
            payment_status=status,
            created_at=created_at,
        )
        store(create_payment, file_id=record.id, amount_usd=record.price_usd, payment_status=status)
        return record
    return make


# =============================================================================
# API client
# =============================================================================

@pytest.fixture
def client(db_path, upload_dir, gate, monkeypatch):
    monkeypatch.setattr(limiter, "enabled", False)
    app.dependency_overrides[get_payment_gate] = lambda: gate
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture
def small_uploads(monkeypatch):
    """Lower the upload ceiling to 16 bytes."""
    monkeypatch.setattr(storage, "MAX_FILE_SIZE_BYTES", 16)
    monkeypatch.setattr(helpers, "MAX_FILE_SIZE_BYTES", 16)

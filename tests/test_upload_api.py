"""
API tests for POST /api/files/upload: validation before payment,
verification and settlement failures, and the fully paid happy path.
"""

import base64
import json
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from database import get_all_files, get_payment_by_file_id, get_transactions_by_file_id
from errors import PersistenceError
from helpers import generate_share_link
from models import EventType, PaymentStatus
from x402.schemas import SettleResponse, VerifyResponse

from conftest import NETWORK, PAYER, TX_HASH, make_payment_header

UPLOAD_URL = "/api/files/upload"


def _upload(client, content=b"some file bytes", duration="7", headers=None, filename="notes.txt"):
    return client.post(
        UPLOAD_URL,
        files={"file": (filename, content, "text/plain")},
        data={"duration": duration},
        headers=headers or {},
    )


def _blobs(upload_dir):
    return list(upload_dir.iterdir())


class TestValidation:

    def test_missing_file(self, client, facilitator, upload_dir):
        resp = client.post(UPLOAD_URL, data={"duration": "7"})
        assert resp.status_code == 400
        assert resp.json() == {"error": "No file provided"}
        assert facilitator.verify_calls == []

    @pytest.mark.parametrize("duration", ["2", "abc", ""])
    def test_bad_duration(self, client, facilitator, upload_dir, duration):
        resp = _upload(client, duration=duration, headers={"X-PAYMENT": make_payment_header()})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Invalid duration. Must be 1, 7, or 30 days"}
        assert facilitator.verify_calls == []
        assert _blobs(upload_dir) == []

    def test_missing_duration(self, client, upload_dir):
        resp = client.post(UPLOAD_URL, files={"file": ("a.txt", b"x", "text/plain")})
        assert resp.status_code == 400

    def test_oversized_file(self, client, facilitator, upload_dir, small_uploads):
        resp = _upload(client, content=b"x" * 17, headers={"X-PAYMENT": make_payment_header()})
        assert resp.status_code == 400
        assert "exceeds maximum limit" in resp.json()["error"]
        assert facilitator.verify_calls == []
        assert _blobs(upload_dir) == []


class TestPaymentRequired:

    def test_no_proof_never_stores_anything(self, client, store, upload_dir):
        for _ in range(5):
            resp = _upload(client)
            assert resp.status_code == 402
        body = resp.json()
        assert body["x402Version"] == 1
        assert body["error"] == "X-PAYMENT header is required"
        [requirement] = body["accepts"]
        assert requirement["maxAmountRequired"] == "150000"
        assert requirement["resource"].endswith(UPLOAD_URL)
        assert requirement["description"] == "Upload file for 7 day(s) - notes.txt"
        assert store(get_all_files) == []
        assert _blobs(upload_dir) == []

    @pytest.mark.parametrize("duration,atomic", [("1", "50000"), ("30", "250000")])
    def test_price_follows_duration(self, client, duration, atomic):
        resp = _upload(client, duration=duration)
        assert resp.json()["accepts"][0]["maxAmountRequired"] == atomic

    def test_malformed_proof(self, client, store, facilitator, upload_dir):
        resp = _upload(client, headers={"X-PAYMENT": "definitely-not-a-payment"})
        assert resp.status_code == 402
        assert resp.json()["error"] == "Invalid or malformed payment header"
        assert facilitator.verify_calls == []
        assert store(get_all_files) == []
        assert _blobs(upload_dir) == []

    def test_proof_with_non_object_authorization(self, client, store, facilitator, upload_dir):
        header = base64.b64encode(json.dumps({
            "x402Version": 1,
            "scheme": "exact",
            "network": NETWORK,
            "payload": {"authorization": "oops"},
        }).encode()).decode()
        resp = _upload(client, headers={"X-PAYMENT": header})
        assert resp.status_code == 402
        assert resp.json()["error"] == "Invalid or malformed payment header"
        assert facilitator.verify_calls == []
        assert store(get_all_files) == []
        assert _blobs(upload_dir) == []

    def test_rejected_proof(self, client, store, facilitator, upload_dir):
        facilitator.verify_response = VerifyResponse(
            is_valid=False, invalid_reason="invalid_exact_evm_payload_signature", payer=PAYER
        )
        resp = _upload(client, headers={"X-PAYMENT": make_payment_header()})
        assert resp.status_code == 402
        body = resp.json()
        assert body["error"] == "invalid_exact_evm_payload_signature"
        assert body["payer"] == PAYER
        assert len(body["accepts"]) == 1
        assert facilitator.settle_calls == []
        assert store(get_all_files) == []
        assert _blobs(upload_dir) == []

    def test_settlement_failure(self, client, store, facilitator, upload_dir):
        facilitator.settle_response = SettleResponse(
            success=False, error_reason="insufficient_funds", transaction="", network=NETWORK
        )
        resp = _upload(client, headers={"X-PAYMENT": make_payment_header()})
        assert resp.status_code == 402
        body = resp.json()
        assert body == {"x402Version": 1, "error": "insufficient_funds", "accepts": body["accepts"]}
        assert body["accepts"][0]["maxAmountRequired"] == "150000"
        assert "X-PAYMENT-RESPONSE" not in resp.headers
        assert store(get_all_files) == []
        assert _blobs(upload_dir) == []


class TestPaidUpload:

    def test_seven_day_upload(self, client, store, facilitator, upload_dir):
        resp = _upload(client, content=b"paid content", headers={"X-PAYMENT": make_payment_header()})

        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["filename"] == "notes.txt"
        assert data["size"] == len(b"paid content")
        assert data["duration"] == 7
        assert data["price"] == "0.150000"
        assert data["paymentStatus"] == "completed"
        assert len(data["shareLink"]) == 8

        receipt = json.loads(base64.b64decode(resp.headers["X-PAYMENT-RESPONSE"]))
        assert receipt["success"] is True
        assert receipt["transaction"] == TX_HASH

        [record] = store(get_all_files)
        assert record.id == data["fileId"]
        assert record.payment_status is PaymentStatus.COMPLETED
        assert record.expiry_date - record.created_at == timedelta(days=7)

        payment = store(get_payment_by_file_id, record.id)
        assert payment.payment_status is PaymentStatus.COMPLETED
        assert payment.amount_usd == "0.150000"
        assert payment.transaction_hash == TX_HASH
        assert payment.paid_at is not None

        [event] = store(get_transactions_by_file_id, record.id)
        assert event.event_type == EventType.FILE_UPLOADED.value
        assert event.payment_id == payment.id
        assert event.event_data["paymentSettled"] is True

        [blob] = _blobs(upload_dir)
        assert blob.read_bytes() == b"paid content"
        assert str(blob) == record.filepath

        # verify ran before settle, against the same requirement
        assert len(facilitator.verify_calls) == 1
        assert facilitator.settle_calls[0][1] is facilitator.verify_calls[0][1]

    def test_persistence_failure_after_settlement(self, client, store, upload_dir):
        with patch("routers.files.create_file", side_effect=PersistenceError("disk I/O error")):
            resp = _upload(client, headers={"X-PAYMENT": make_payment_header()})
        assert resp.status_code == 500
        assert resp.json() == {"error": "Internal server error"}
        assert store(get_all_files) == []
        assert _blobs(upload_dir) == []

    def test_partial_persistence_is_rolled_back(self, client, store, upload_dir):
        with patch("routers.files.create_transaction", side_effect=PersistenceError("disk full")):
            resp = _upload(client, headers={"X-PAYMENT": make_payment_header()})
        assert resp.status_code == 500
        assert store(get_all_files) == []
        assert _blobs(upload_dir) == []

    def test_share_link_collision_is_regenerated(self, client, store, stored_file, upload_dir):
        taken = stored_file()
        fresh = generate_share_link()
        with patch("routers.files.generate_share_link", side_effect=[taken.share_link, fresh]):
            resp = _upload(client, headers={"X-PAYMENT": make_payment_header()})
        assert resp.status_code == 201
        assert resp.json()["data"]["shareLink"] == fresh
        assert len(store(get_all_files)) == 2

    def test_share_link_collisions_exhausted(self, client, store, stored_file, upload_dir):
        taken = stored_file()
        with patch("routers.files.generate_share_link", return_value=taken.share_link):
            resp = _upload(client, headers={"X-PAYMENT": make_payment_header()})
        assert resp.status_code == 500
        assert resp.json() == {"error": "Internal server error"}
        assert [f.id for f in store(get_all_files)] == [taken.id]
        assert _blobs(upload_dir) == [Path(taken.filepath)]

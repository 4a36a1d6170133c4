"""
x402 Payment Gate
=================
"No proof, no action" for the two guarded operations.

Upload (inline proof):
  1. Server builds a PaymentRequirementsV1 for the computed price
  2. Client sends X-PAYMENT (base64 JSON of a signed "exact" scheme payload)
  3. Proof is decoded, matched against the requirement and sent to the facilitator /verify
  4. Facilitator /settle finalizes the USDC transfer on-chain
  5. Only then does the caller persist anything; X-PAYMENT-RESPONSE echoes the receipt

Download (already stored resources):
  Without a usable proof the server answers 402 with a challenge carried in
  X-Payment-* headers. The client retries with X-Payment-Proof, a JSON
  attestation {fileId, transactionHash} that must name the requested file.

Wire models, the facilitator client, header codecs and the per-chain USDC
table come from the x402 SDK; this module adds the PayDrop policy on top.

Ref: https://github.com/coinbase/x402
"""
import json
import logging
import secrets
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from fastapi import Request
from pydantic import BaseModel
from x402.http import FacilitatorClient
from x402.http.utils import decode_payment_signature_header, encode_payment_response_header
from x402.mechanisms.evm import get_default_asset
from x402.mechanisms.evm.v1.constants import V1_NETWORK_CHAIN_IDS
from x402.schemas import (
    PaymentPayloadV1,
    PaymentRequiredV1,
    PaymentRequirementsV1,
    SettleResponse,
    convert_to_token_amount,
    match_payload_to_requirements,
    parse_money,
)

from config import MAX_TIMEOUT_SECONDS, X402_NETWORK
from errors import (
    MalformedProofError,
    PaymentError,
    PaymentHeaderMissing,
    PriceConversionError,
    SettlementError,
    VerificationRejected,
)
from models import ChallengeMetadata, FileRecord, PaymentChallenge, PaymentProof

logger = logging.getLogger(__name__)

X402_VERSION = 1
SCHEME = "exact"
CURRENCY = "USDC"
MALFORMED_HEADER = "Invalid or malformed payment header"

CHALLENGE_HEADERS = (
    "WWW-Authenticate", "X-Payment-Required", "X-Payment-Amount", "X-Payment-Currency",
    "X-Payment-Receiver", "X-Payment-Network", "X-Payment-Chain-Id", "X-Payment-Description",
    "X-Payment-Metadata", "X-Payment-Nonce",
)


def wire(model: BaseModel) -> dict[str, Any]:
    """camelCase JSON form of an x402 model, None fields dropped."""
    return model.model_dump(by_alias=True, exclude_none=True)


# ── Supported chains ─────────────────────────────────────────────────────────

def usdc_asset(network: str) -> dict[str, Any]:
    """
    The SDK's default USDC entry for a legacy (v1) network name:
    {asset, name, version, decimals, symbol}. `name`/`version` are the token's
    EIP-712 domain, which the client needs to sign a transferWithAuthorization.
    """
    if network not in V1_NETWORK_CHAIN_IDS:
        raise PriceConversionError(f"Unsupported network: {network}")
    try:
        return get_default_asset(network, CURRENCY)
    except ValueError as exc:
        raise PriceConversionError(f"Unsupported network: {network}") from exc


# ── Price conversion ─────────────────────────────────────────────────────────

def process_price_to_atomic_amount(
    price: Decimal | str | int | float, network: str
) -> tuple[str, dict[str, Any]]:
    """
    Convert a USD price ("$0.15", "0.15", Decimal("0.15") ...) into the asset's
    atomic units for `network`. Returns (maxAmountRequired, asset).
    """
    asset = usdc_asset(network)
    if isinstance(price, bool):
        raise PriceConversionError(f"Invalid price: {price!r}")

    try:
        parsed = parse_money(str(price) if isinstance(price, Decimal) else price)
        amount = Decimal(parsed["amount"])
    except (ValueError, TypeError, AttributeError, InvalidOperation):
        raise PriceConversionError(f"Invalid price: {price!r}")
    if parsed.get("symbol", CURRENCY) != CURRENCY:
        raise PriceConversionError(f"Unsupported currency: {parsed['symbol']}")
    if amount <= 0:
        raise PriceConversionError(f"Price must be a positive amount: {price!r}")

    decimals = asset["decimals"]
    if amount.scaleb(decimals) != amount.scaleb(decimals).to_integral_value():
        raise PriceConversionError(
            f"Price {price!r} has more precision than {asset['name']} supports ({decimals} decimals)"
        )
    return convert_to_token_amount(parsed["amount"], decimals), asset


# ── Proof codec ──────────────────────────────────────────────────────────────

def decode_payment(header: str) -> PaymentPayloadV1:
    """Decode an X-PAYMENT header into the signed v1 payment payload."""
    try:
        payment = decode_payment_signature_header(header.strip())
    # AttributeError: valid JSON that is not an object
    except (ValueError, AttributeError) as exc:
        raise MalformedProofError(MALFORMED_HEADER) from exc

    if not isinstance(payment, PaymentPayloadV1):
        raise MalformedProofError(f"Unsupported x402 version: {payment.x402_version}")
    if payment.scheme != SCHEME:
        raise MalformedProofError(f"Unsupported payment scheme: {payment.scheme!r}")
    if not payment.network:
        raise MalformedProofError("Payment header missing network")
    authorization = payment.payload.get("authorization")
    if authorization is not None and not isinstance(authorization, dict):
        raise MalformedProofError(MALFORMED_HEADER)
    return payment


def find_matching_requirement(
    requirements: list[PaymentRequirementsV1], payment: PaymentPayloadV1
) -> PaymentRequirementsV1 | None:
    """Pick the requirement the payment was made for: scheme + network, then amount."""
    candidates = [
        r for r in requirements
        if match_payload_to_requirements(X402_VERSION, wire(payment), wire(r))
    ]
    authorization = payment.payload.get("authorization")
    value = authorization.get("value") if isinstance(authorization, dict) else None
    for requirement in candidates:
        if value is not None and str(value) == requirement.max_amount_required:
            return requirement
    return candidates[0] if candidates else None


def payment_required_body(error: PaymentError, requirements: list[PaymentRequirementsV1]) -> dict[str, Any]:
    """The JSON body of an upload-guard 402."""
    body = wire(PaymentRequiredV1(error=error.message, accepts=requirements))
    if error.payer:
        body["payer"] = error.payer
    return body


# ── Gate ─────────────────────────────────────────────────────────────────────

@dataclass
class Verified:
    payment: PaymentPayloadV1
    requirement: PaymentRequirementsV1
    payer: str | None = None


@dataclass
class Settlement:
    header: str              # X-PAYMENT-RESPONSE value
    response: SettleResponse


class PaymentGate:
    """
    Builds requirements, verifies and settles inline proofs, issues download challenges.
    Never writes to the database; callers persist what it returns.
    """

    def __init__(
        self,
        facilitator: FacilitatorClient,
        pay_to: str,
        network: str = X402_NETWORK,
        max_timeout_seconds: int = MAX_TIMEOUT_SECONDS,
    ):
        try:
            usdc_asset(network)
        except PriceConversionError as exc:
            raise ValueError(exc.args[0]) from exc
        self.facilitator = facilitator
        self.pay_to = pay_to
        self.network = network
        self.max_timeout_seconds = max_timeout_seconds

    @property
    def chain_id(self) -> int:
        return V1_NETWORK_CHAIN_IDS[self.network]

    def build_requirement(self, price: Decimal | str, resource: str, description: str = "") -> PaymentRequirementsV1:
        max_amount, asset = process_price_to_atomic_amount(price, self.network)
        return PaymentRequirementsV1(
            scheme=SCHEME,
            network=self.network,
            max_amount_required=max_amount,
            resource=resource,
            description=description,
            mime_type="",
            pay_to=self.pay_to,
            max_timeout_seconds=self.max_timeout_seconds,
            asset=asset["asset"],
            extra={"name": asset["name"], "version": asset["version"]},
        )

    async def verify(self, header: str | None, requirements: list[PaymentRequirementsV1]) -> Verified:
        if not header:
            raise PaymentHeaderMissing("X-PAYMENT header is required")

        payment = decode_payment(header)
        requirement = find_matching_requirement(requirements, payment) or requirements[0]

        try:
            response = await self.facilitator.verify(payment, requirement)
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Payment verification error: %s", exc)
            raise VerificationRejected(str(exc) or "Payment verification failed") from exc

        if not response.is_valid:
            logger.info("Payment rejected by facilitator: %s (payer %s)", response.invalid_reason, response.payer)
            raise VerificationRejected(response.invalid_reason or "Payment verification failed", payer=response.payer)

        return Verified(payment=payment, requirement=requirement, payer=response.payer)

    async def settle(self, header: str, requirement: PaymentRequirementsV1) -> Settlement:
        """Blocking settlement; the guarded action must wait for this to return."""
        try:
            payment = decode_payment(header)
        except MalformedProofError as exc:
            raise SettlementError(exc.message) from exc

        try:
            response = await self.facilitator.settle(payment, requirement)
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Payment settlement error: %s", exc)
            raise SettlementError(str(exc) or "Payment settlement failed") from exc

        if not response.success:
            raise SettlementError(response.error_reason or "Payment settlement failed", payer=response.payer)

        logger.info("Payment settled: tx %s on %s", response.transaction, response.network)
        return Settlement(header=encode_payment_response_header(response), response=response)

    def challenge(self, file: FileRecord) -> PaymentChallenge:
        return PaymentChallenge(
            amount=str(file.price_usd),
            currency=CURRENCY,
            receiver=self.pay_to,
            network=self.network,
            chainId=str(self.chain_id),
            description=f"Download {file.original_filename}",
            metadata=ChallengeMetadata(
                fileId=file.id,
                shareLink=file.share_link,
                filename=file.original_filename,
                size=file.file_size,
                duration=file.duration_days,
            ),
            nonce=secrets.token_hex(16),
            timestamp=int(time.time() * 1000),
        )


# ── Challenge headers & attestation ──────────────────────────────────────────

def _latin1(value: str) -> str:
    # HTTP header values must be latin-1 encodable
    return value.encode("latin-1", "replace").decode("latin-1")


def challenge_headers(challenge: PaymentChallenge) -> dict[str, str]:
    return {
        "WWW-Authenticate": "X402",
        "X-Payment-Required": "true",
        "X-Payment-Amount": challenge.amount,
        "X-Payment-Currency": challenge.currency,
        "X-Payment-Receiver": challenge.receiver,
        "X-Payment-Network": challenge.network,
        "X-Payment-Chain-Id": challenge.chainId,
        "X-Payment-Description": _latin1(challenge.description),
        "X-Payment-Metadata": json.dumps(challenge.metadata.model_dump()),
        "X-Payment-Nonce": challenge.nonce,
        "Access-Control-Expose-Headers": ", ".join(CHALLENGE_HEADERS),
    }


def parse_payment_proof(header: str | None) -> PaymentProof | None:
    """Parse X-Payment-Proof. Unparseable proofs are treated as absent."""
    if not header:
        return None
    try:
        return PaymentProof.model_validate(json.loads(header))
    except ValueError as exc:
        logger.warning("Ignoring unusable X-Payment-Proof header: %s", exc)
        return None


def proof_matches(proof: PaymentProof | None, file: FileRecord) -> bool:
    return proof is not None and proof.fileId == file.id


# ── Dependency ───────────────────────────────────────────────────────────────

def get_payment_gate(request: Request) -> PaymentGate:
    """The process-wide gate created in main.lifespan."""
    return request.app.state.payment_gate

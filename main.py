"""
PayDrop Server
==============
Temporary file storage paid per upload with x402 (USDC on Base).

Upload a file, pay a small fee tied to the retention period, get a share link.
Whoever holds the link can download until the expiry timestamp; expired files
are purged every CLEANUP_INTERVAL_SEC.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from x402.http import FacilitatorConfig, HTTPFacilitatorClient

from config import (
    CLEANUP_INTERVAL_SEC,
    FACILITATOR_TIMEOUT_SEC,
    FRONTEND_URL,
    RECEIVER_WALLET_ADDRESS,
    X402_FACILITATOR_URL,
    X402_NETWORK,
)
from database import get_db
from errors import PayDropError
from limiter import limiter
from logging_config import setup_logging
from payment_gate import PaymentGate
from reaper import run_cleanup
from routers import download, files, payments, system

logger = logging.getLogger(__name__)


# ── Background cleanup ────────────────────────────────────────────────────────

async def _cleanup_loop() -> None:
    """Reap expired files every CLEANUP_INTERVAL_SEC. Runs as a background task."""
    while True:
        await asyncio.sleep(CLEANUP_INTERVAL_SEC)
        try:
            db = await get_db()
            try:
                result = await run_cleanup(db)
            finally:
                await db.close()
            if result.deletedCount or result.errors:
                logger.info(
                    "[cleanup] %s (%d error(s))", result.message, len(result.errors or [])
                )
        except Exception:
            logger.exception("[cleanup] Error during purge")


# ── Lifespan ──────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: logging, DB schema, facilitator client, background cleanup
    setup_logging()
    if not RECEIVER_WALLET_ADDRESS:
        raise RuntimeError("RECEIVER_WALLET_ADDRESS must be set")

    db = await get_db()
    await db.close()

    http_client = httpx.AsyncClient(timeout=FACILITATOR_TIMEOUT_SEC)
    facilitator = HTTPFacilitatorClient(
        FacilitatorConfig(url=X402_FACILITATOR_URL, timeout=FACILITATOR_TIMEOUT_SEC, http_client=http_client)
    )
    app.state.payment_gate = PaymentGate(
        facilitator,
        pay_to=RECEIVER_WALLET_ADDRESS,
        network=X402_NETWORK,
    )
    task = asyncio.create_task(_cleanup_loop())
    logger.info("PayDrop started: network %s, receiver %s", X402_NETWORK, RECEIVER_WALLET_ADDRESS)
    yield
    # Shutdown: cancel background task, close the facilitator client
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    await http_client.aclose()
    logger.info("PayDrop stopped")


# ── Error rendering ───────────────────────────────────────────────────────────

async def _paydrop_error_handler(request: Request, exc: PayDropError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.public_message or exc.message})


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("%s %s failed", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# ── App ───────────────────────────────────────────────────────────────────────

app = FastAPI(
    lifespan=lifespan,
    title="PayDrop",
    description="""
Temporary file storage with **x402** pay-per-action payments.

## How it works

1. `POST /api/files/upload` with a file and a duration (1, 7 or 30 days)
2. The server answers **402** with a USDC payment requirement
3. Retry with a signed `X-PAYMENT` header; the payment is verified and settled on-chain
4. The file is stored and a share link returned
5. `GET /api/download/{share_link}` streams the file until it expires

## Pricing

| Duration | Price (USDC) |
| --- | --- |
| 1 day | 0.05 |
| 7 days | 0.15 |
| 30 days | 0.25 |

## Data retention

Files are unreachable (**410**) from their expiry instant and purged hourly.
""",
    version="1.0.0",
    license_info={"name": "MIT"},
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_exception_handler(PayDropError, _paydrop_error_handler)
app.add_exception_handler(Exception, _unhandled_error_handler)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)

# ── Routers ───────────────────────────────────────────────────────────────────

app.include_router(files.router)
app.include_router(download.router)
app.include_router(payments.router)
app.include_router(system.router)

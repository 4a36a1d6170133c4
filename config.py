"""
PayDrop — Configuration
All settings are read from environment variables with sensible defaults.
"""
import os

# ── Database ──────────────────────────────────────────────────────────────────
DATABASE_PATH         = os.getenv("DATABASE_PATH", "paydrop.db")

# ── Blob storage ──────────────────────────────────────────────────────────────
UPLOAD_DIR            = os.getenv("UPLOAD_DIR", "uploads")
MAX_FILE_SIZE_BYTES   = int(os.getenv("MAX_FILE_SIZE_BYTES", str(100 * 1024 * 1024)))  # 100 MB per upload

# ── x402 payments ─────────────────────────────────────────────────────────────
RECEIVER_WALLET_ADDRESS = os.getenv("RECEIVER_WALLET_ADDRESS", "")  # Required at startup
X402_NETWORK          = os.getenv("X402_NETWORK", "base-sepolia")
X402_FACILITATOR_URL  = os.getenv("X402_FACILITATOR_URL", "https://x402.org/facilitator")
FACILITATOR_TIMEOUT_SEC = float(os.getenv("FACILITATOR_TIMEOUT_SEC", "30"))
MAX_TIMEOUT_SECONDS   = int(os.getenv("MAX_TIMEOUT_SECONDS", "120"))  # advertised to clients, not enforced
# Trust X-Payment-Proof attestations (file id + tx hash) on the download path
ACCEPT_PAYMENT_ATTESTATIONS = os.getenv("ACCEPT_PAYMENT_ATTESTATIONS", "true").lower() == "true"

# ── Background cleanup ────────────────────────────────────────────────────────
CLEANUP_INTERVAL_SEC  = int(os.getenv("CLEANUP_INTERVAL_SEC", str(60 * 60)))  # 1 hour
PENDING_GRACE_HOURS   = int(os.getenv("PENDING_GRACE_HOURS", "24"))  # unpaid files are reaped after this

# ── Auth ──────────────────────────────────────────────────────────────────────
ADMIN_SECRET          = os.getenv("ADMIN_SECRET", "")  # Empty = dev mode (admin routes open)

# ── HTTP ──────────────────────────────────────────────────────────────────────
FRONTEND_URL          = os.getenv("FRONTEND_URL", "http://localhost:5173")
LOG_LEVEL             = os.getenv("LOG_LEVEL", "INFO")
RATE_LIMIT_ENABLED    = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"

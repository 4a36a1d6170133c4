"""
PayDrop — Rate limiter (shared instance)
Imported by main.py and all routers that apply @limiter.limit().
Upload and download hit the payment facilitator, so they get tighter limits.
"""
from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from config import RATE_LIMIT_ENABLED

UPLOAD_LIMIT   = "10/minute"
DOWNLOAD_LIMIT = "30/minute"
READ_LIMIT     = "60/minute"
ADMIN_LIMIT    = "5/minute"


def get_client_ip(request: Request) -> str:
    """Use CF-Connecting-IP when behind Cloudflare, fall back to remote address."""
    return request.headers.get("CF-Connecting-IP") or get_remote_address(request)


limiter = Limiter(key_func=get_client_ip, enabled=RATE_LIMIT_ENABLED)

"""
PayDrop — Auth dependencies
  - verify_admin_secret: shared admin secret header for listing, manual delete and cleanup
"""
from fastapi import Header, HTTPException

import config


async def verify_admin_secret(x_admin_secret: str = Header(default="")) -> None:
    """
    Validate the admin secret sent with admin requests.
    Set ADMIN_SECRET env var to enable. If unset, validation is skipped (dev mode).
    """
    if config.ADMIN_SECRET and x_admin_secret != config.ADMIN_SECRET:
        raise HTTPException(status_code=401, detail="Invalid or missing admin secret.")

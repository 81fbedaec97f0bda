# security.py
import os
from typing import Optional

from fastapi import Header, HTTPException

INTERNAL_BACKEND_KEY = os.getenv("INTERNAL_BACKEND_KEY")


def verify_internal_key(x_internal_key: str = Header(None)):
    """
    Require X-Internal-Key for every evidence endpoint.
    """
    if INTERNAL_BACKEND_KEY is None:
        raise HTTPException(status_code=500, detail="Internal key not configured")

    if x_internal_key != INTERNAL_BACKEND_KEY:
        raise HTTPException(status_code=401, detail="Unauthorized: invalid or missing X-Internal-Key")


def owner_reference(x_owner_reference: Optional[str] = Header(None)) -> Optional[str]:
    """Who new records get filed under. Optional here; runs that create records require it."""
    value = (x_owner_reference or "").strip()
    return value or None

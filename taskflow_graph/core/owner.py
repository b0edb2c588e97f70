"""
Owner scoping for API requests.

Authentication happens upstream; the gateway forwards the caller's owner id in
the `X-Owner-Id` header and every graph operation is scoped to it.
"""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import Header, HTTPException

OWNER_HEADER = "X-Owner-Id"


async def get_owner_id(x_owner_id: Optional[str] = Header(None, alias=OWNER_HEADER)) -> uuid.UUID:
    if not x_owner_id:
        raise HTTPException(status_code=401, detail=f"Missing {OWNER_HEADER} header")
    try:
        return uuid.UUID(x_owner_id)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {OWNER_HEADER} header")

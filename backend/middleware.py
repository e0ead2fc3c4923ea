from fastapi import Request, HTTPException, status
from typing import Optional
import logging
import re
from auth import decode_access_token

logger = logging.getLogger(__name__)

DEVICE_ID_HEADER = "X-Device-Id"
_DEVICE_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{8,128}$")

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token. None for guests."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ", 1)[1]
    payload = decode_access_token(token)

    if not payload:
        return None

    return payload

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error_code": "AUTH_REQUIRED", "message": "Not authenticated"}
        )
    return user

def get_device_id(request: Request) -> str:
    """Device scope for staged captures."""
    device_id = (request.headers.get(DEVICE_ID_HEADER) or "").strip()
    if not _DEVICE_ID_RE.match(device_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "DEVICE_ID_REQUIRED", "message": f"{DEVICE_ID_HEADER} header missing or invalid"}
        )
    return device_id

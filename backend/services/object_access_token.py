"""
Object Access Token Service
Issues short-lived signed read references for uploaded scan photos.

The analysis service fetches photos through these URLs; the bucket itself is
never exposed. References are derived on demand and never persisted.
"""

import os
import jwt
import asyncio
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any
import logging

from services.object_storage import object_storage, ObjectStorage

logger = logging.getLogger(__name__)

OBJECT_ACCESS_SECRET = os.environ.get("OBJECT_ACCESS_SECRET") or os.environ.get("JWT_SECRET", "default-secret-change-in-production")
PUBLIC_API_URL = os.environ.get("PUBLIC_API_URL", "http://localhost:8001").rstrip("/")

TOKEN_TYPE = "scan_object_access"

# Reference validity (seconds)
OBJECT_ACCESS_VALIDITY_SECONDS = 3600
ACCESS_ISSUANCE_TIMEOUT_SECONDS = float(os.getenv("ACCESS_ISSUANCE_TIMEOUT_SECONDS", "10"))


class ObjectAccessError(Exception):
    """A read reference could not be issued."""
    pass


def generate_object_access_token(
    path: str,
    validity_seconds: int = OBJECT_ACCESS_VALIDITY_SECONDS,
) -> str:
    """
    Sign a read-only token for a single object path.

    Args:
        path: Object path in the scan photo bucket
        validity_seconds: How long the token is valid

    Returns:
        JWT token string
    """
    now = datetime.now(timezone.utc)
    payload = {
        "type": TOKEN_TYPE,
        "path": path,
        "exp": now + timedelta(seconds=validity_seconds),
        "iat": now,
    }
    return jwt.encode(payload, OBJECT_ACCESS_SECRET, algorithm="HS256")


def validate_object_access_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Validate an object access token.

    Returns:
        Decoded payload if valid, None if invalid/expired
    """
    try:
        payload = jwt.decode(token, OBJECT_ACCESS_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        logger.debug("Object access token expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid object access token: {e}")
        return None

    if payload.get("type") != TOKEN_TYPE:
        logger.warning("Invalid token type")
        return None
    if not payload.get("path"):
        logger.warning("Missing required field: path")
        return None
    return payload


def object_access_url(token: str, base_url: str = PUBLIC_API_URL) -> str:
    return f"{base_url}/api/scans/objects/{token}"


class ObjectAccessIssuer:
    """Issues signed URLs for objects that exist in storage."""

    def __init__(
        self,
        storage: Optional[ObjectStorage] = None,
        timeout_seconds: float = ACCESS_ISSUANCE_TIMEOUT_SECONDS,
    ):
        self.storage = storage or object_storage
        self.timeout_seconds = timeout_seconds

    async def issue_read_access(
        self,
        path: str,
        expires_in: int = OBJECT_ACCESS_VALIDITY_SECONDS,
    ) -> Dict[str, Any]:
        """
        Returns:
            {"path", "url", "expires_at"}

        Raises:
            ObjectAccessError: object missing, storage unreachable or timed out
        """
        try:
            meta = await asyncio.wait_for(
                self.storage.get_object_metadata(path),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise ObjectAccessError(f"Timed out locating {path}")
        except Exception as e:
            raise ObjectAccessError(f"Could not locate {path}: {e}")
        if meta is None:
            raise ObjectAccessError(f"Object not found: {path}")

        token = generate_object_access_token(path, validity_seconds=expires_in)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        logger.debug(f"Issued read access for {path} ({expires_in}s)")
        return {
            "path": path,
            "url": object_access_url(token),
            "expires_at": expires_at.isoformat(),
        }


object_access_issuer = ObjectAccessIssuer()

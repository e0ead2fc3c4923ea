"""Scan Routes
Device-scoped staging of guest captures, the flush that turns them into scans,
direct scans for entitled users, history, plans and signed photo reads.
"""
from fastapi import APIRouter, HTTPException, Request, Response, status
from database import database
from middleware import require_auth, get_device_id
from models import GuestCapture, NewScanRequest, ScanRecord, StageCaptureRequest
from services.flush_coordinator import flush_coordinator
from services.ingestion_errors import (
    AuthError,
    PaymentRequired,
    UploadError,
    AccessIssuanceError,
    AnalysisError,
    NormalizationError,
    PersistenceError,
    FlushSkipped,
    StagingLocked,
)
from services.object_access_token import validate_object_access_token
from services.object_storage import object_storage, ObjectNotFoundError
from services.plan_generation import plan_generator
from services.profile_service import profile_service
from services.scan_ingestion import ingestion_pipeline, list_scans
from typing import Dict, Any
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/scans", tags=["scans"])

ERROR_STATUS = (
    (AuthError, status.HTTP_401_UNAUTHORIZED),
    (PaymentRequired, status.HTTP_402_PAYMENT_REQUIRED),
    (UploadError, status.HTTP_502_BAD_GATEWAY),
    (AccessIssuanceError, status.HTTP_502_BAD_GATEWAY),
    (AnalysisError, status.HTTP_502_BAD_GATEWAY),
    (NormalizationError, status.HTTP_502_BAD_GATEWAY),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def _raise_for(error: Exception):
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            raise HTTPException(status_code=status_code, detail=error.to_payload())
    logger.error(f"Unmapped scan error: {error!r}")
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error_code": "SCAN_FAILED", "message": "Scan failed"}
    )


def _scan_response(record: ScanRecord) -> Dict[str, Any]:
    return record.model_dump(mode="json")


def _staging_locked(e: StagingLocked):
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={"error_code": "STAGING_LOCKED", "message": str(e)}
    )


# ============================================================================
# STAGING (guest, device-scoped)
# ============================================================================

@router.post("/pending", status_code=status.HTTP_201_CREATED)
async def stage_capture(request: Request, data: StageCaptureRequest):
    """Stage answers plus a complete photo pair for this device."""
    device_id = get_device_id(request)
    if not data.front_image or not data.side_image:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "INVALID_CAPTURE", "message": "Both front and side photos are required"}
        )

    capture = GuestCapture(
        answers=data.answers,
        front_image=data.front_image,
        side_image=data.side_image,
    )
    try:
        saved = await flush_coordinator.stage(device_id, capture)
    except StagingLocked as e:
        raise _staging_locked(e)

    if not saved:
        raise HTTPException(
            status_code=status.HTTP_507_INSUFFICIENT_STORAGE,
            detail={"error_code": "STAGING_FAILED", "message": "Capture could not be saved on this device"}
        )
    return {"capture_id": capture.capture_id, "staged": True}


@router.get("/pending")
async def get_pending_capture(request: Request):
    device_id = get_device_id(request)
    manifest = await flush_coordinator.pending(device_id)
    if manifest is None:
        return {"pending": False}
    return {
        "pending": True,
        "flushing": flush_coordinator.is_flushing(device_id),
        "manifest": manifest.model_dump(mode="json"),
    }


@router.delete("/pending")
async def reset_pending_capture(request: Request):
    device_id = get_device_id(request)
    try:
        await flush_coordinator.reset(device_id)
    except StagingLocked as e:
        raise _staging_locked(e)
    return {"pending": False}


@router.post("/pending/flush")
async def flush_pending_capture(request: Request):
    """
    Ingest this device's staged capture for the signed-in user.
    Safe to call on every sign-in, payment return or dashboard load.
    """
    user = await require_auth(request)
    device_id = get_device_id(request)

    result = await flush_coordinator.flush_once(device_id, user["sub"])
    if result.ok:
        return {"status": "completed", "scan": _scan_response(result.value)}
    if isinstance(result.error, FlushSkipped):
        return {"status": "skipped", "reason": result.error.reason}
    _raise_for(result.error)


# ============================================================================
# SCANS (authenticated)
# ============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_scan(request: Request, data: NewScanRequest):
    """New scan for an already entitled user; nothing is staged."""
    user = await require_auth(request)
    try:
        answers = await profile_service.get_answers(user["sub"])
    except Exception as e:
        logger.warning(f"Could not load answers for {user['sub']}, using defaults: {e}")
        answers = {}

    capture = GuestCapture(
        answers=answers,
        front_image=data.front_image,
        side_image=data.side_image,
    )
    result = await ingestion_pipeline.ingest(capture, user["sub"])
    if not result.ok:
        _raise_for(result.error)
    return _scan_response(result.value)


@router.get("")
async def get_scan_history(request: Request, limit: int = 50):
    user = await require_auth(request)
    limit = max(1, min(limit, 100))
    try:
        records = await list_scans(user["sub"], limit=limit)
    except Exception as e:
        logger.error(f"Scan history error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load scans"
        )
    return {"scans": [_scan_response(r) for r in records], "total": len(records)}


@router.get("/objects/{token}")
async def read_scan_object(token: str):
    """Redeem a signed read reference. No session: the token is the credential."""
    payload = validate_object_access_token(token)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error_code": "INVALID_OBJECT_TOKEN", "message": "Link is invalid or expired"}
        )

    try:
        content, metadata = await object_storage.download_object(payload["path"])
    except ObjectNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Object not found")
    except Exception as e:
        logger.error(f"Failed to read scan object: {e}")
        raise HTTPException(status_code=500, detail="Failed to read object")

    return Response(
        content=content,
        media_type=metadata.content_type,
        headers={"Cache-Control": "private, max-age=300"}
    )


@router.get("/{scan_id}/plan")
async def get_scan_plan(scan_id: str, request: Request):
    user = await require_auth(request)
    db = database.get_db()
    scan = await db.scans.find_one({"scan_id": scan_id, "owner_id": user["sub"]}, {"_id": 0, "scan_id": 1})
    if not scan:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scan not found")

    plan = await plan_generator.get_plan(scan_id)
    if not plan:
        return {"scan_id": scan_id, "plan": None}
    return plan

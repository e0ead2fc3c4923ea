"""Profile Routes
Questionnaire answers and the onboarding-completed flag.
"""
from fastapi import APIRouter, HTTPException, Request, status
from middleware import require_auth
from models import OnboardingUpdateRequest
from services.profile_service import profile_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/profile", tags=["profile"])

@router.get("/me")
async def get_profile(request: Request):
    """Get current user's profile. A missing profile reads as not onboarded."""
    user = await require_auth(request)
    try:
        profile = await profile_service.get_profile(user["sub"])
    except Exception as e:
        logger.error(f"Get profile error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load profile"
        )
    return profile or {
        "user_id": user["sub"],
        "onboarding_json": {},
        "onboarding_completed": False,
    }

@router.put("/onboarding")
async def update_onboarding(request: Request, data: OnboardingUpdateRequest):
    """Merge answers and optionally mark onboarding complete."""
    user = await require_auth(request)
    try:
        return await profile_service.save_onboarding(
            user["sub"],
            data.answers,
            completed=True if data.completed else None,
        )
    except Exception as e:
        logger.error(f"Update onboarding error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save onboarding"
        )

"""Access Stage Routes
Every screen guard asks here which funnel stage the caller belongs in.
Guests are allowed; they always resolve to ONBOARDING.
"""
from fastapi import APIRouter, Request
from middleware import get_current_user
from services.access_state import load_access_facts, resolve, destination_for
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/access", tags=["access"])

@router.get("/stage")
async def get_access_stage(request: Request):
    user = await get_current_user(request)
    facts = await load_access_facts(user)
    stage = resolve(facts)
    return {
        "stage": stage.value,
        "destination": destination_for(stage),
        "facts": facts.model_dump(),
    }

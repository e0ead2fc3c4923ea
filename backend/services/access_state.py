"""Access State - single place where the three access facts are combined.

State machine (first match wins):
  A) Not authenticated                      -> ONBOARDING
  B) Authenticated, onboarding incomplete   -> ONBOARDING
  C) Onboarding complete, not entitled      -> PAYWALL
  D) Onboarding complete, entitled          -> DASHBOARD

resolve() is pure and synchronous so any route guard can call it with facts it
already holds. load_access_facts() does the I/O, and every fact it cannot
establish reads as False, so failures land on ONBOARDING/PAYWALL and never on
DASHBOARD.
"""
import asyncio
import logging
from typing import Optional, Dict, Any

from models import AccessFacts, Stage

logger = logging.getLogger(__name__)

STAGE_DESTINATIONS = {
    Stage.ONBOARDING: "/onboarding",
    Stage.PAYWALL: "/paywall",
    Stage.DASHBOARD: "/dashboard",
}


def resolve(facts: AccessFacts) -> Stage:
    if not facts.is_authenticated:
        return Stage.ONBOARDING
    if not facts.onboarding_completed:
        return Stage.ONBOARDING
    if not facts.is_entitled:
        return Stage.PAYWALL
    return Stage.DASHBOARD


def destination_for(stage: Stage) -> str:
    return STAGE_DESTINATIONS[stage]


async def _onboarding_completed(user_id: str) -> bool:
    from services.profile_service import profile_service
    try:
        return await profile_service.is_onboarding_completed(user_id)
    except Exception as e:
        logger.warning(f"Onboarding fact unavailable for {user_id}, treating as incomplete: {e}")
        return False


async def _entitled(user_id: str) -> bool:
    from services.entitlement_gate import entitlement_gate
    try:
        return await entitlement_gate.is_entitled(user_id)
    except Exception as e:
        logger.warning(f"Entitlement fact unavailable for {user_id}, treating as unentitled: {e}")
        return False


async def load_access_facts(user: Optional[Dict[str, Any]]) -> AccessFacts:
    """Fetch the three facts for a decoded session payload (None for guests)."""
    user_id = (user or {}).get("sub")
    if not user_id:
        return AccessFacts()

    onboarding_completed, is_entitled = await asyncio.gather(
        _onboarding_completed(user_id),
        _entitled(user_id),
    )
    return AccessFacts(
        is_authenticated=True,
        onboarding_completed=onboarding_completed,
        is_entitled=is_entitled,
    )


async def resolve_for_user(user: Optional[Dict[str, Any]]) -> Stage:
    facts = await load_access_facts(user)
    stage = resolve(facts)
    logger.debug(f"Access stage {stage.value} for facts {facts.model_dump()}")
    return stage

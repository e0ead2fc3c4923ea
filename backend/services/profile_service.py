"""
Profile Service - questionnaire answers and the onboarding-completed fact.

Profiles are keyed by user_id and upserted; a missing profile simply means
onboarding has not been completed.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from database import database
from models import AuditAction
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


class ProfileService:

    async def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db.profiles.find_one({"user_id": user_id}, {"_id": 0})

    async def is_onboarding_completed(self, user_id: str) -> bool:
        db = database.get_db()
        profile = await db.profiles.find_one(
            {"user_id": user_id},
            {"_id": 0, "onboarding_completed": 1},
        )
        return bool(profile) and profile.get("onboarding_completed") is True

    async def get_answers(self, user_id: str) -> Dict[str, Any]:
        profile = await self.get_profile(user_id)
        return (profile or {}).get("onboarding_json") or {}

    async def save_onboarding(
        self,
        user_id: str,
        answers: Dict[str, Any],
        completed: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """
        Merge questionnaire answers into the profile.

        completed=None leaves the flag untouched; answers never un-complete
        onboarding on their own.
        """
        db = database.get_db()
        now = datetime.now(timezone.utc).isoformat()

        update: Dict[str, Any] = {"updated_at": now}
        for key, value in (answers or {}).items():
            update[f"onboarding_json.{key}"] = value
        if completed is not None:
            update["onboarding_completed"] = completed

        await db.profiles.update_one(
            {"user_id": user_id},
            {
                "$set": update,
                "$setOnInsert": {"user_id": user_id, "created_at": now},
            },
            upsert=True,
        )
        logger.info(f"Onboarding saved for {user_id} ({len(answers or {})} answers, completed={completed})")

        await create_audit_log(
            action=AuditAction.ONBOARDING_UPDATED,
            actor_id=user_id,
            resource_type="profile",
            resource_id=user_id,
            metadata={"answer_keys": sorted((answers or {}).keys()), "completed": completed},
        )
        return await self.get_profile(user_id) or {"user_id": user_id}


profile_service = ProfileService()

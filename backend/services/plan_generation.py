"""
Glow-Up Plan Generation - best-effort 4-week plan derived from a committed scan.

The LLM produces the plan from the scan's scores; if it is unavailable or its
reply is unusable the standard plan is stored instead. Only failing to store
a plan is an error, and callers treat that as non-fatal.
"""
import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from database import database
from models import ScanRecord
from services.ingestion_errors import PlanGenerationError
from utils import llm_chat

logger = logging.getLogger(__name__)

PLAN_GENERATION_TIMEOUT_SECONDS = float(os.getenv("PLAN_GENERATION_TIMEOUT_SECONDS", "60"))
PLAN_WEEKS = 4
DAYS_PER_WEEK = 7

PLAN_CATEGORIES = ("skin", "jawline", "symmetry", "eye_area", "lifestyle", "posture")

PLAN_SYSTEM_PROMPT = """You are a glow-up coach creating a personalized 4-week transformation plan.

Generate exactly 4 weeks of 7 days. Each day has: day (1-7), title (2-3 words),
description (one actionable sentence), minutes (5-30), category (one of
skin, jawline, symmetry, eye_area, lifestyle, posture) and tasks (3-5 items,
each with id like "w1d1-1", label, est_minutes, category).

Week 1 builds foundations, week 2 introduces exercises, week 3 adds
consistency, week 4 combines complete routines. Focus extra days on the
lowest-scoring areas.

Return ONLY valid JSON: {"weeks": [{"week": 1, "title": "...", "days": [...]}]}"""

WEEK_THEMES = (
    ("Foundation Week", ("lifestyle", "lifestyle", "skin", "posture", "symmetry", "skin", "lifestyle")),
    ("Building Week", ("jawline", "skin", "eye_area", "jawline", "lifestyle", "symmetry", "skin")),
    ("Consistency Week", ("skin", "jawline", "posture", "eye_area", "symmetry", "lifestyle", "jawline")),
    ("Advanced Week", ("skin", "jawline", "symmetry", "eye_area", "posture", "lifestyle", "skin")),
)

CATEGORY_TASKS = {
    "skin": ("Cleanse morning and night", "Apply moisturizer", "Apply SPF before going out"),
    "jawline": ("Hold correct tongue posture", "Chew on both sides evenly", "Do 3 sets of chin tucks"),
    "symmetry": ("Gentle upward facial massage", "Sleep on your back", "Check posture in the mirror"),
    "eye_area": ("Apply cold compress for 5 minutes", "Limit screen time before bed", "Use eye cream"),
    "lifestyle": ("Drink 8 glasses of water", "Sleep 7-8 hours", "Take a 20 minute walk"),
    "posture": ("Set hourly posture reminders", "Roll shoulders back 5 times", "Keep head neutral"),
}


def standard_plan() -> Dict[str, Any]:
    """Fixed fallback plan with the same shape the LLM is asked for."""
    weeks = []
    for week_index, (title, categories) in enumerate(WEEK_THEMES, start=1):
        days = []
        for day_index, category in enumerate(categories, start=1):
            tasks = [
                {
                    "id": f"w{week_index}d{day_index}-{task_index}",
                    "label": label,
                    "est_minutes": 5,
                    "category": category,
                }
                for task_index, label in enumerate(CATEGORY_TASKS[category], start=1)
            ]
            days.append({
                "day": day_index,
                "title": f"{category.replace('_', ' ').title()} Focus",
                "description": tasks[0]["label"] + ".",
                "minutes": sum(t["est_minutes"] for t in tasks),
                "category": category,
                "tasks": tasks,
            })
        weeks.append({"week": week_index, "title": title, "days": days})
    return {"weeks": weeks}


def is_valid_plan(plan: Any) -> bool:
    if not isinstance(plan, dict):
        return False
    weeks = plan.get("weeks")
    if not isinstance(weeks, list) or len(weeks) != PLAN_WEEKS:
        return False
    for week in weeks:
        days = week.get("days") if isinstance(week, dict) else None
        if not isinstance(days, list) or not days:
            return False
    return True


def _plan_context(record: ScanRecord) -> str:
    scores = record.score_vector.aspects()
    weakest: List[str] = sorted(scores, key=scores.get)[:2]
    return (
        f"Classification: {record.classification.value}. "
        f"Scores: {scores}. Overall: {record.score_vector.overall}. "
        f"Weakest areas: {', '.join(weakest)}."
    )


class PlanGenerator:

    def __init__(self, timeout_seconds: float = PLAN_GENERATION_TIMEOUT_SECONDS):
        self.timeout_seconds = timeout_seconds

    async def _draft_plan(self, record: ScanRecord) -> Dict[str, Any]:
        if not llm_chat.is_configured():
            logger.info("LLM not configured, using standard plan")
            return standard_plan()
        try:
            plan = await asyncio.wait_for(
                llm_chat.chat_json(PLAN_SYSTEM_PROMPT, _plan_context(record)),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Plan generation timed out for scan {record.scan_id}, using standard plan")
            return standard_plan()
        except Exception as e:
            logger.warning(f"Plan generation failed for scan {record.scan_id}, using standard plan: {e}")
            return standard_plan()
        if not is_valid_plan(plan):
            logger.warning(f"LLM plan for scan {record.scan_id} has wrong shape, using standard plan")
            return standard_plan()
        return plan

    async def generate_for_scan(self, record: ScanRecord) -> Dict[str, Any]:
        """
        Build and store the plan for a committed scan.

        Raises:
            PlanGenerationError: the plan could not be stored
        """
        plan = await self._draft_plan(record)
        doc = {
            "scan_id": record.scan_id,
            "owner_id": record.owner_id,
            "plan": plan,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            db = database.get_db()
            await db.glowup_plans.update_one(
                {"scan_id": record.scan_id},
                {"$set": doc},
                upsert=True,
            )
        except Exception as e:
            raise PlanGenerationError(f"Could not store plan for scan {record.scan_id}: {e}")
        logger.info(f"Plan stored for scan {record.scan_id} ({len(plan['weeks'])} weeks)")
        return doc

    async def get_plan(self, scan_id: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db.glowup_plans.find_one({"scan_id": scan_id}, {"_id": 0})


plan_generator = PlanGenerator()

"""
Profile upserts and best-effort plan generation.
"""
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

from models import Classification, ScanRecord
from services.ingestion_errors import PlanGenerationError
from services.plan_generation import PlanGenerator, is_valid_plan, standard_plan
from services.profile_service import ProfileService
from services.score_normalizer import normalize
from utils.llm_chat import parse_json_reply
from conftest import RAW_SCORES


@pytest.fixture(autouse=True)
def no_audit():
    with patch("services.profile_service.create_audit_log", new=AsyncMock()) as audit:
        yield audit


def _record():
    return ScanRecord(
        scan_id="scan-1",
        owner_id="user-1",
        front_image_ref="user-1/scan-1/front.jpg",
        side_image_ref="user-1/scan-1/side.jpg",
        score_vector=normalize(RAW_SCORES),
        classification=Classification.FEMALE,
        created_at=datetime.now(timezone.utc),
    )


class TestProfileService:

    @pytest.mark.asyncio
    async def test_onboarding_completed_requires_true(self, db):
        db.profiles.find_one = AsyncMock(return_value={"onboarding_completed": "yes"})
        with patch("services.profile_service.database.get_db", return_value=db):
            assert await ProfileService().is_onboarding_completed("user-1") is False

        db.profiles.find_one = AsyncMock(return_value={"onboarding_completed": True})
        with patch("services.profile_service.database.get_db", return_value=db):
            assert await ProfileService().is_onboarding_completed("user-1") is True

    @pytest.mark.asyncio
    async def test_missing_profile_is_not_onboarded(self, db):
        with patch("services.profile_service.database.get_db", return_value=db):
            assert await ProfileService().is_onboarding_completed("user-1") is False
            assert await ProfileService().get_answers("user-1") == {}

    @pytest.mark.asyncio
    async def test_save_onboarding_merges_answers_without_touching_flag(self, db, no_audit):
        with patch("services.profile_service.database.get_db", return_value=db):
            await ProfileService().save_onboarding("user-1", {"age": 30, "goal": "skin"})

        query, update = db.profiles.update_one.call_args.args
        assert query == {"user_id": "user-1"}
        assert update["$set"]["onboarding_json.age"] == 30
        assert update["$set"]["onboarding_json.goal"] == "skin"
        assert "onboarding_completed" not in update["$set"]
        assert db.profiles.update_one.call_args.kwargs["upsert"] is True
        no_audit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_save_onboarding_can_complete(self, db):
        with patch("services.profile_service.database.get_db", return_value=db):
            await ProfileService().save_onboarding("user-1", {}, completed=True)
        update = db.profiles.update_one.call_args.args[1]
        assert update["$set"]["onboarding_completed"] is True


class TestPlanGeneration:

    def test_standard_plan_shape(self):
        plan = standard_plan()
        assert is_valid_plan(plan)
        assert len(plan["weeks"]) == 4
        assert all(len(week["days"]) == 7 for week in plan["weeks"])
        assert plan["weeks"][0]["days"][0]["tasks"][0]["id"] == "w1d1-1"

    def test_wrong_shapes_rejected(self):
        assert not is_valid_plan({"weeks": []})
        assert not is_valid_plan({"weeks": [{"days": []}] * 4})
        assert not is_valid_plan(["weeks"])

    @pytest.mark.asyncio
    async def test_unconfigured_llm_stores_standard_plan(self, db):
        with patch("services.plan_generation.database.get_db", return_value=db), \
             patch("services.plan_generation.llm_chat.is_configured", return_value=False):
            doc = await PlanGenerator().generate_for_scan(_record())
        assert doc["plan"] == standard_plan()
        assert db.glowup_plans.update_one.call_args.args[0] == {"scan_id": "scan-1"}

    @pytest.mark.asyncio
    async def test_llm_reply_with_wrong_shape_falls_back(self, db):
        with patch("services.plan_generation.database.get_db", return_value=db), \
             patch("services.plan_generation.llm_chat.is_configured", return_value=True), \
             patch("services.plan_generation.llm_chat.chat_json", new=AsyncMock(return_value={"weeks": [1]})):
            doc = await PlanGenerator().generate_for_scan(_record())
        assert doc["plan"] == standard_plan()

    @pytest.mark.asyncio
    async def test_llm_plan_is_stored(self, db):
        llm_plan = {"weeks": [{"week": n, "days": [{"day": 1, "tasks": []}]} for n in range(1, 5)]}
        with patch("services.plan_generation.database.get_db", return_value=db), \
             patch("services.plan_generation.llm_chat.is_configured", return_value=True), \
             patch("services.plan_generation.llm_chat.chat_json", new=AsyncMock(return_value=llm_plan)):
            doc = await PlanGenerator().generate_for_scan(_record())
        assert doc["plan"] == llm_plan

    @pytest.mark.asyncio
    async def test_storage_failure_raises_plan_generation_error(self, db):
        db.glowup_plans.update_one = AsyncMock(side_effect=RuntimeError("mongo down"))
        with patch("services.plan_generation.database.get_db", return_value=db), \
             patch("services.plan_generation.llm_chat.is_configured", return_value=False):
            with pytest.raises(PlanGenerationError):
                await PlanGenerator().generate_for_scan(_record())


def test_parse_json_reply_strips_code_fence():
    assert parse_json_reply('```json\n{"weeks": []}\n```') == {"weeks": []}
    assert parse_json_reply('{"a": 1}') == {"a": 1}

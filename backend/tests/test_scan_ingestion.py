"""
Ingestion pipeline: step order, gate before I/O, single commit, best-effort plan.
"""
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from pymongo.errors import DuplicateKeyError

from models import Classification, GuestCapture, IngestionStep, ScanRecord
from services.analysis_client import AnalysisResponse
from services.ingestion_errors import (
    AnalysisError,
    AuthError,
    PaymentRequired,
    PersistenceError,
    PlanGenerationError,
    UploadError,
    NormalizationError,
)
from services.object_access_token import ObjectAccessError
from services.scan_ingestion import IngestionPipeline
from services.score_normalizer import normalize
from utils.result import Result
from conftest import FRONT_IMAGE, SIDE_IMAGE, RAW_SCORES


def _capture():
    return GuestCapture(answers={"age": 31, "gender": "male"}, front_image=FRONT_IMAGE, side_image=SIDE_IMAGE)


def _gate(ok=True):
    gate = MagicMock()
    result = Result.success() if ok else Result.failure(PaymentRequired("Active subscription required"))
    gate.require_entitlement = AsyncMock(return_value=result)
    return gate


def _issuer():
    issuer = MagicMock()
    issuer.issue_read_access = AsyncMock(side_effect=lambda path: {
        "path": path,
        "url": f"https://api.test/api/scans/objects/token-for-{path}",
        "expires_at": "2030-01-01T00:00:00+00:00",
    })
    return issuer


def _analysis(scores=None):
    analysis = MagicMock()
    analysis.analyze = AsyncMock(return_value=AnalysisResponse(
        classification="male",
        scores=scores or dict(RAW_SCORES),
        notes={"skin_quality": "Even tone"},
    ))
    return analysis


def _pipeline(**overrides):
    parts = {
        "gate": _gate(),
        "storage": MagicMock(upload_object=AsyncMock()),
        "access_issuer": _issuer(),
        "analysis": _analysis(),
        "plans": MagicMock(generate_for_scan=AsyncMock()),
    }
    parts.update(overrides)
    return IngestionPipeline(**parts), parts


@pytest.fixture(autouse=True)
def no_audit():
    with patch("services.scan_ingestion.create_audit_log", new=AsyncMock()) as audit:
        yield audit


@pytest.fixture
def patched_db(db):
    with patch("services.scan_ingestion.database.get_db", return_value=db):
        yield db


class TestHappyPath:

    @pytest.mark.asyncio
    async def test_ingest_commits_one_record(self, patched_db):
        pipeline, parts = _pipeline()
        capture = _capture()

        result = await pipeline.ingest(capture, "user-1")

        assert result.ok
        record = result.value
        assert record.owner_id == "user-1"
        assert record.capture_id == capture.capture_id
        assert record.classification == Classification.MALE
        assert record.score_vector.potential == 68
        assert record.score_vector.overall == 66
        assert record.front_image_ref == f"user-1/{record.scan_id}/front.jpg"
        assert record.side_image_ref == f"user-1/{record.scan_id}/side.jpg"

        patched_db.scans.insert_one.assert_awaited_once()
        stored = patched_db.scans.insert_one.call_args.args[0]
        assert stored["scan_id"] == record.scan_id
        assert "url" not in str(stored)
        assert parts["storage"].upload_object.await_count == 2
        parts["plans"].generate_for_scan.assert_awaited_once_with(record)

    @pytest.mark.asyncio
    async def test_analysis_receives_signed_urls_and_answers(self, patched_db):
        pipeline, parts = _pipeline()
        await pipeline.ingest(_capture(), "user-1")
        front_url, side_url, answers = parts["analysis"].analyze.call_args.args
        assert front_url.endswith("front.jpg")
        assert side_url.endswith("side.jpg")
        assert answers == {"age": 31, "gender": "male"}


class TestGate:

    @pytest.mark.asyncio
    async def test_missing_owner_is_auth_error_before_gate(self, patched_db):
        pipeline, parts = _pipeline()
        result = await pipeline.ingest(_capture(), None)
        assert isinstance(result.error, AuthError)
        parts["gate"].require_entitlement.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_gate_failure_means_no_io_at_all(self, patched_db):
        pipeline, parts = _pipeline(gate=_gate(ok=False))
        result = await pipeline.ingest(_capture(), "user-1")

        assert isinstance(result.error, PaymentRequired)
        assert result.error.step == IngestionStep.GATE
        patched_db.scans.find_one.assert_not_awaited()
        parts["storage"].upload_object.assert_not_awaited()
        parts["access_issuer"].issue_read_access.assert_not_awaited()
        parts["analysis"].analyze.assert_not_awaited()
        patched_db.scans.insert_one.assert_not_awaited()


class TestStepFailures:

    @pytest.mark.asyncio
    async def test_invalid_image_is_upload_error(self, patched_db):
        pipeline, parts = _pipeline()
        capture = GuestCapture(front_image="%%% not base64 %%%", side_image=SIDE_IMAGE)
        result = await pipeline.ingest(capture, "user-1")
        assert isinstance(result.error, UploadError)
        parts["storage"].upload_object.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_storage_failure_is_upload_error(self, patched_db):
        storage = MagicMock(upload_object=AsyncMock(side_effect=[None, IOError("disk full")]))
        pipeline, parts = _pipeline(storage=storage)
        result = await pipeline.ingest(_capture(), "user-1")
        assert isinstance(result.error, UploadError)
        assert result.error.step == IngestionStep.UPLOAD
        parts["analysis"].analyze.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_access_issuance_failure(self, patched_db):
        issuer = MagicMock(issue_read_access=AsyncMock(side_effect=ObjectAccessError("timed out")))
        pipeline, parts = _pipeline(access_issuer=issuer)
        result = await pipeline.ingest(_capture(), "user-1")
        assert result.error.step == IngestionStep.ACCESS_ISSUANCE
        parts["analysis"].analyze.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_analysis_failure_stops_before_persist(self, patched_db):
        analysis = MagicMock(analyze=AsyncMock(side_effect=AnalysisError("service returned 500")))
        pipeline, _ = _pipeline(analysis=analysis)
        result = await pipeline.ingest(_capture(), "user-1")
        assert isinstance(result.error, AnalysisError)
        patched_db.scans.insert_one.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_aspect_is_normalization_error(self, patched_db):
        scores = dict(RAW_SCORES)
        del scores["eye_area"]
        pipeline, _ = _pipeline(analysis=_analysis(scores))
        result = await pipeline.ingest(_capture(), "user-1")
        assert isinstance(result.error, NormalizationError)
        patched_db.scans.insert_one.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_persistence_failure_leaves_no_record_and_no_plan(self, patched_db):
        patched_db.scans.insert_one = AsyncMock(side_effect=RuntimeError("write concern failed"))
        pipeline, parts = _pipeline()
        capture = _capture()
        result = await pipeline.ingest(capture, "user-1")
        assert isinstance(result.error, PersistenceError)
        assert result.error.step == IngestionStep.PERSIST
        parts["plans"].generate_for_scan.assert_not_awaited()
        first_paths = {call.args[0] for call in parts["storage"].upload_object.await_args_list}

        # The same capture can be submitted again once the store recovers
        patched_db.scans.insert_one = AsyncMock()
        parts["storage"].upload_object.reset_mock()
        retry = await pipeline.ingest(capture, "user-1")

        assert retry.ok
        assert retry.value.capture_id == capture.capture_id
        patched_db.scans.insert_one.assert_awaited_once()
        assert patched_db.scans.insert_one.await_args.args[0]["scan_id"] == retry.value.scan_id
        retry_paths = {call.args[0] for call in parts["storage"].upload_object.await_args_list}
        assert retry_paths == {retry.value.front_image_ref, retry.value.side_image_ref}
        assert retry_paths.isdisjoint(first_paths)
        parts["plans"].generate_for_scan.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_plan_failure_does_not_change_success(self, patched_db, no_audit):
        plans = MagicMock(generate_for_scan=AsyncMock(side_effect=PlanGenerationError("llm down")))
        pipeline, _ = _pipeline(plans=plans)
        result = await pipeline.ingest(_capture(), "user-1")
        assert result.ok
        assert result.value.score_vector.overall == 66

    @pytest.mark.asyncio
    async def test_unexpected_plan_error_is_also_swallowed(self, patched_db):
        plans = MagicMock(generate_for_scan=AsyncMock(side_effect=KeyError("weeks")))
        pipeline, _ = _pipeline(plans=plans)
        result = await pipeline.ingest(_capture(), "user-1")
        assert result.ok


class TestExactlyOnce:

    def _committed(self, capture):
        return ScanRecord(
            scan_id="scan-existing",
            owner_id="user-1",
            capture_id=capture.capture_id,
            front_image_ref="user-1/scan-existing/front.jpg",
            side_image_ref="user-1/scan-existing/side.jpg",
            score_vector=normalize(RAW_SCORES),
            classification=Classification.MALE,
            created_at=datetime(2026, 1, 5, tzinfo=timezone.utc),
        )

    @pytest.mark.asyncio
    async def test_already_committed_capture_returns_existing_record(self, patched_db):
        capture = _capture()
        existing = self._committed(capture)
        patched_db.scans.find_one = AsyncMock(return_value=existing.to_document())
        pipeline, parts = _pipeline()

        result = await pipeline.ingest(capture, "user-1")

        assert result.ok
        assert result.value.scan_id == "scan-existing"
        parts["storage"].upload_object.assert_not_awaited()
        patched_db.scans.insert_one.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_duplicate_key_on_insert_resolves_to_committed_record(self, patched_db):
        capture = _capture()
        existing = self._committed(capture)
        patched_db.scans.find_one = AsyncMock(side_effect=[None, existing.to_document()])
        patched_db.scans.insert_one = AsyncMock(side_effect=DuplicateKeyError("E11000 capture_id"))
        pipeline, parts = _pipeline()

        result = await pipeline.ingest(capture, "user-1")

        assert result.ok
        assert result.value.scan_id == "scan-existing"
        parts["plans"].generate_for_scan.assert_not_awaited()

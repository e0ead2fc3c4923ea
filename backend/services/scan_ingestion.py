"""
Scan Ingestion Pipeline - turns a complete capture into one permanent ScanRecord.

Steps run strictly in order, each awaited before the next starts:

    gate -> upload -> access_issuance -> analysis -> normalize -> persist -> derive_plan

NON-NEGOTIABLE RULES:
1. No I/O of any kind happens before the entitlement gate succeeds.
2. The ScanRecord is written in a single insert after both photos are stored;
   that insert is the commit point.
3. A capture_id is committed at most once. A capture that was already
   committed, by this process or another, resolves to the existing record.
4. Plan generation runs after the commit and can never fail the run.
5. No retries here; callers rerun the whole pipeline.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from pymongo.errors import DuplicateKeyError

from database import database
from models import AuditAction, GuestCapture, IngestionStep, ScanRecord
from services.analysis_client import AnalysisClient, analysis_client
from services.entitlement_gate import EntitlementGate, entitlement_gate
from services.ingestion_errors import (
    AuthError,
    IngestionError,
    UploadError,
    AccessIssuanceError,
    AnalysisError,
    PersistenceError,
    PlanGenerationError,
)
from services.object_access_token import ObjectAccessIssuer, ObjectAccessError, object_access_issuer
from services.object_storage import (
    ObjectStorage,
    InvalidImageData,
    decode_image_text,
    object_storage,
    scan_object_path,
)
from services.plan_generation import PlanGenerator, plan_generator
from services.score_normalizer import normalize, rederive
from utils.audit import create_audit_log
from utils.result import Result

logger = logging.getLogger(__name__)


def _log_step(step: IngestionStep, scan_id: str, message: str) -> None:
    logger.info(f"[INGEST:{step.value}] scan={scan_id} {message}")


def record_from_document(doc: Dict[str, Any]) -> ScanRecord:
    """Rebuild a stored scan; overall is always re-derived on the way out."""
    data = {k: v for k, v in doc.items() if k != "_id"}
    data["score_vector"] = rederive(data.get("score_vector") or {})
    return ScanRecord.model_validate(data)


class IngestionPipeline:
    """Sequential ingestion with injectable collaborators."""

    def __init__(
        self,
        gate: Optional[EntitlementGate] = None,
        storage: Optional[ObjectStorage] = None,
        access_issuer: Optional[ObjectAccessIssuer] = None,
        analysis: Optional[AnalysisClient] = None,
        plans: Optional[PlanGenerator] = None,
    ):
        self.gate = gate or entitlement_gate
        self.storage = storage or object_storage
        self.access_issuer = access_issuer or object_access_issuer
        self.analysis = analysis or analysis_client
        self.plans = plans or plan_generator

    async def ingest(self, capture: GuestCapture, owner_id: Optional[str]) -> Result[ScanRecord, IngestionError]:
        """
        Run the full pipeline for one capture.

        Returns:
            Result.success(ScanRecord) or Result.failure(IngestionError naming the step)
        """
        # Step 1: gate
        if not owner_id:
            logger.warning("[INGEST:gate] rejected: no authenticated owner")
            return Result.failure(AuthError("Sign in required"))

        gate_result = await self.gate.require_entitlement(owner_id)
        if not gate_result.ok:
            logger.warning(f"[INGEST:gate] rejected for {owner_id}: {gate_result.error.message}")
            return Result.failure(gate_result.error)

        try:
            existing = await self._find_committed(capture.capture_id)
            if existing is not None:
                logger.info(f"[INGEST] capture {capture.capture_id} already committed as scan {existing.scan_id}")
                return Result.success(existing)

            scan_id = str(uuid.uuid4())
            _log_step(IngestionStep.GATE, scan_id, f"entitled owner={owner_id} capture={capture.capture_id}")

            front_path, side_path = await self._upload(capture, owner_id, scan_id)
            front_url, side_url = await self._issue_access(front_path, side_path, scan_id)
            analysis = await self._analyze(front_url, side_url, capture.answers, scan_id)

            # Step 5: normalize
            score_vector = normalize(analysis.scores)
            _log_step(IngestionStep.NORMALIZE, scan_id, f"overall={score_vector.overall}")

            record = ScanRecord(
                scan_id=scan_id,
                owner_id=owner_id,
                capture_id=capture.capture_id,
                front_image_ref=front_path,
                side_image_ref=side_path,
                score_vector=score_vector,
                classification=analysis.classification,
                analysis_notes=analysis.notes,
                created_at=datetime.now(timezone.utc),
            )
            committed = await self._persist(record)
        except IngestionError as e:
            logger.error(f"[INGEST:{e.step.value}] failed for capture {capture.capture_id}: {e.message}")
            return Result.failure(e)

        if committed.scan_id != record.scan_id:
            # Lost a race with another process; its record is the committed one
            return Result.success(committed)

        await create_audit_log(
            action=AuditAction.SCAN_INGESTED,
            actor_id=owner_id,
            resource_type="scan",
            resource_id=record.scan_id,
            metadata={"capture_id": capture.capture_id, "overall": record.score_vector.overall},
        )

        await self._derive_plan(record)
        return Result.success(record)

    async def _find_committed(self, capture_id: str) -> Optional[ScanRecord]:
        db = database.get_db()
        try:
            doc = await db.scans.find_one({"capture_id": capture_id}, {"_id": 0})
        except Exception as e:
            raise PersistenceError(f"Could not check for an existing scan: {e}")
        return record_from_document(doc) if doc else None

    async def _upload(self, capture: GuestCapture, owner_id: str, scan_id: str):
        """Step 2: store both photos; nothing is persisted about them yet."""
        try:
            front_bytes, front_type = decode_image_text(capture.front_image)
            side_bytes, side_type = decode_image_text(capture.side_image)
        except InvalidImageData as e:
            raise UploadError(str(e))

        front_path = scan_object_path(owner_id, scan_id, "front")
        side_path = scan_object_path(owner_id, scan_id, "side")
        try:
            await self.storage.upload_object(front_path, front_bytes, front_type, owner_id=owner_id)
            await self.storage.upload_object(side_path, side_bytes, side_type, owner_id=owner_id)
        except Exception as e:
            raise UploadError(f"Photo upload failed: {e}")

        _log_step(IngestionStep.UPLOAD, scan_id, f"{len(front_bytes) + len(side_bytes)} bytes")
        return front_path, side_path

    async def _issue_access(self, front_path: str, side_path: str, scan_id: str):
        """Step 3: short-lived read references, never stored."""
        try:
            front = await self.access_issuer.issue_read_access(front_path)
            side = await self.access_issuer.issue_read_access(side_path)
        except ObjectAccessError as e:
            raise AccessIssuanceError(str(e))
        _log_step(IngestionStep.ACCESS_ISSUANCE, scan_id, f"expires_at={front['expires_at']}")
        return front["url"], side["url"]

    async def _analyze(self, front_url: str, side_url: str, answers: Dict[str, Any], scan_id: str):
        """Step 4"""
        try:
            result = await self.analysis.analyze(front_url, side_url, answers)
        except AnalysisError:
            raise
        except Exception as e:
            raise AnalysisError(f"Analysis failed: {e}")
        _log_step(IngestionStep.ANALYSIS, scan_id, f"classification={result.classification.value}")
        return result

    async def _persist(self, record: ScanRecord) -> ScanRecord:
        """Step 6: the commit point."""
        db = database.get_db()
        try:
            await db.scans.insert_one(record.to_document())
        except DuplicateKeyError:
            existing = await self._find_committed(record.capture_id)
            if existing is None:
                raise PersistenceError(f"Duplicate scan {record.scan_id} with no committed capture")
            logger.warning(
                f"[INGEST:persist] capture {record.capture_id} committed concurrently as scan {existing.scan_id}"
            )
            return existing
        except Exception as e:
            raise PersistenceError(f"Could not save scan: {e}")
        _log_step(IngestionStep.PERSIST, record.scan_id, f"owner={record.owner_id}")
        return record

    async def _derive_plan(self, record: ScanRecord) -> None:
        """Step 7: best effort."""
        try:
            await self.plans.generate_for_scan(record)
            _log_step(IngestionStep.DERIVE_PLAN, record.scan_id, "plan stored")
        except PlanGenerationError as e:
            logger.warning(f"[INGEST:derive_plan] scan={record.scan_id} skipped: {e.message}")
            await create_audit_log(
                action=AuditAction.PLAN_GENERATION_FAILED,
                actor_id=record.owner_id,
                resource_type="scan",
                resource_id=record.scan_id,
                metadata={"error": e.message},
            )
        except Exception as e:
            logger.exception(f"[INGEST:derive_plan] scan={record.scan_id} unexpected error: {e}")


async def list_scans(owner_id: str, limit: int = 50) -> List[ScanRecord]:
    """Owner's scans, newest first."""
    db = database.get_db()
    cursor = db.scans.find({"owner_id": owner_id}, {"_id": 0}).sort("created_at", -1).limit(limit)
    docs = await cursor.to_list(length=limit)
    return [record_from_document(doc) for doc in docs]


ingestion_pipeline = IngestionPipeline()

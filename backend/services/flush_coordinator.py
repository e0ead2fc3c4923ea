"""
Flush Coordinator - consumes a device's staged capture exactly once.

flush_once() is safe to call from every trigger (sign-in, payment return,
dashboard load, window focus) with no scheduler behind it:

- Single flight per device. The token check and set happen with no await in
  between, so a concurrent call returns FlushSkipped("in_progress") instead of
  queueing.
- Staged data is cleared only after the pipeline committed a ScanRecord. Any
  failure releases the token and leaves the capture in place for a retry.
- The entitlement gate runs before the image payload is even loaded.

The coordinator is also the only writer of staging: stage() and reset() take
the same per-device token and refuse with StagingLocked while it is held.
"""
import logging
from typing import Optional, Set, Dict, Any

from models import AuditAction, GuestCapture, ScanRecord
from services.entitlement_gate import EntitlementGate, entitlement_gate
from services.ingestion_errors import AuthError, FlushSkipped, StagingLocked
from services.profile_service import ProfileService, profile_service
from services.scan_ingestion import IngestionPipeline, ingestion_pipeline
from services.staging_store import StagingStore, staging_store
from utils.audit import create_audit_log
from utils.result import Result

logger = logging.getLogger(__name__)


class FlushCoordinator:

    def __init__(
        self,
        staging: Optional[StagingStore] = None,
        pipeline: Optional[IngestionPipeline] = None,
        gate: Optional[EntitlementGate] = None,
        profiles: Optional[ProfileService] = None,
    ):
        self.staging = staging or staging_store
        self.pipeline = pipeline or ingestion_pipeline
        self.gate = gate or entitlement_gate
        self.profiles = profiles or profile_service
        self._in_flight: Set[str] = set()

    def is_flushing(self, device_id: str) -> bool:
        return device_id in self._in_flight

    def _acquire(self, device_id: str) -> bool:
        # Must stay synchronous: no suspension point between check and set
        if device_id in self._in_flight:
            return False
        self._in_flight.add(device_id)
        return True

    def _release(self, device_id: str) -> None:
        self._in_flight.discard(device_id)

    async def flush_once(self, device_id: str, owner_id: Optional[str]) -> Result[ScanRecord, Exception]:
        """
        Returns:
            Result.success(ScanRecord), or Result.failure with FlushSkipped,
            AuthError, PaymentRequired or the failing pipeline step's error
        """
        if not self._acquire(device_id):
            logger.info(f"[FLUSH] device={device_id} already flushing, skipped")
            return Result.failure(FlushSkipped(FlushSkipped.IN_PROGRESS))

        try:
            if not owner_id:
                return Result.failure(AuthError("Sign in required"))

            manifest = await self.staging.peek(device_id)
            if manifest is None:
                logger.debug(f"[FLUSH] device={device_id} nothing staged")
                return Result.failure(FlushSkipped(FlushSkipped.NOTHING_STAGED))

            gate_result = await self.gate.require_entitlement(owner_id)
            if not gate_result.ok:
                logger.info(f"[FLUSH] device={device_id} owner={owner_id} not entitled, capture kept")
                return Result.failure(gate_result.error)

            capture = await self.staging.load(device_id)
            if capture is None:
                return Result.failure(FlushSkipped(FlushSkipped.NOTHING_STAGED))

            logger.info(f"[FLUSH] device={device_id} ingesting capture {capture.capture_id}")
            result = await self.pipeline.ingest(capture, owner_id)

            if not result.ok:
                await create_audit_log(
                    action=AuditAction.FLUSH_FAILED,
                    actor_id=owner_id,
                    device_id=device_id,
                    resource_type="staged_capture",
                    resource_id=capture.capture_id,
                    metadata=result.error.to_payload() if hasattr(result.error, "to_payload") else {"error": str(result.error)},
                )
                return result

            await self.staging.clear(device_id)
            await self._save_answers(owner_id, capture.answers)
            await create_audit_log(
                action=AuditAction.FLUSH_COMPLETED,
                actor_id=owner_id,
                device_id=device_id,
                resource_type="scan",
                resource_id=result.value.scan_id,
                metadata={"capture_id": capture.capture_id},
            )
            logger.info(f"[FLUSH] device={device_id} committed scan {result.value.scan_id}")
            return result
        finally:
            self._release(device_id)

    async def _save_answers(self, owner_id: str, answers: Dict[str, Any]) -> None:
        if not answers:
            return
        try:
            await self.profiles.save_onboarding(owner_id, answers)
        except Exception as e:
            logger.warning(f"[FLUSH] could not copy answers to profile {owner_id}: {e}")

    async def stage(self, device_id: str, capture: GuestCapture) -> bool:
        """
        Replace the device's staged capture.

        Raises:
            StagingLocked: a flush for this device is in flight
        """
        if not self._acquire(device_id):
            raise StagingLocked(device_id)
        try:
            saved = await self.staging.save(device_id, capture)
        finally:
            self._release(device_id)

        if saved:
            await create_audit_log(
                action=AuditAction.CAPTURE_STAGED,
                device_id=device_id,
                resource_type="staged_capture",
                resource_id=capture.capture_id,
                metadata={"answer_keys": sorted(capture.answers.keys())},
            )
        return saved

    async def reset(self, device_id: str) -> None:
        """
        Drop the device's staged capture.

        Raises:
            StagingLocked: a flush for this device is in flight
        """
        if not self._acquire(device_id):
            raise StagingLocked(device_id)
        try:
            await self.staging.clear(device_id)
        finally:
            self._release(device_id)

        await create_audit_log(
            action=AuditAction.CAPTURE_RESET,
            device_id=device_id,
            resource_type="staged_capture",
        )

    async def pending(self, device_id: str):
        """Image-free summary of what is staged, for status polling.

        Never clears staging while a flush for the device is in flight.
        """
        return await self.staging.peek(device_id, repair=not self.is_flushing(device_id))


flush_coordinator = FlushCoordinator()

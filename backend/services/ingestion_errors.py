"""
Closed error taxonomy for scan ingestion.

Every fatal failure names the pipeline step it happened in so a caller can
report it and retry the whole run. PlanGenerationError is the only non-fatal
member: it is logged and never changes the pipeline's outcome.
"""
from typing import Optional, Dict, Any

from models import IngestionStep


class IngestionError(Exception):
    """Base exception for a failed ingestion step."""
    step: IngestionStep = IngestionStep.GATE
    error_code: str = "INGESTION_FAILED"
    fatal: bool = True

    def __init__(self, message: str, step: Optional[IngestionStep] = None):
        self.message = message
        if step is not None:
            self.step = step
        super().__init__(message)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "step": self.step.value,
        }


class AuthError(IngestionError):
    """No authenticated session."""
    step = IngestionStep.GATE
    error_code = "AUTH_REQUIRED"


class PaymentRequired(IngestionError):
    """Entitlement missing, ambiguous or unverifiable."""
    step = IngestionStep.GATE
    error_code = "PAYMENT_REQUIRED"


class UploadError(IngestionError):
    step = IngestionStep.UPLOAD
    error_code = "UPLOAD_FAILED"


class AccessIssuanceError(IngestionError):
    step = IngestionStep.ACCESS_ISSUANCE
    error_code = "ACCESS_ISSUANCE_FAILED"


class AnalysisError(IngestionError):
    """Analysis service error, timeout or schema-invalid response."""
    step = IngestionStep.ANALYSIS
    error_code = "ANALYSIS_FAILED"


class NormalizationError(IngestionError):
    """A base aspect is missing or not numeric."""
    step = IngestionStep.NORMALIZE
    error_code = "NORMALIZATION_FAILED"


class PersistenceError(IngestionError):
    step = IngestionStep.PERSIST
    error_code = "PERSISTENCE_FAILED"


class PlanGenerationError(IngestionError):
    step = IngestionStep.DERIVE_PLAN
    error_code = "PLAN_GENERATION_FAILED"
    fatal = False


class FlushSkipped(Exception):
    """flush_once did nothing: a run is already in flight or nothing is staged."""
    IN_PROGRESS = "in_progress"
    NOTHING_STAGED = "nothing_staged"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Flush skipped: {reason}")

    def to_payload(self) -> Dict[str, Any]:
        return {"error_code": "FLUSH_SKIPPED", "message": str(self), "reason": self.reason}


class StagingLocked(Exception):
    """Staging for a device cannot change while its flush is in flight."""

    def __init__(self, device_id: str):
        self.device_id = device_id
        super().__init__(f"Staged capture for device {device_id} is being flushed")

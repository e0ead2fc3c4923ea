from pydantic import AwareDatetime, BaseModel, Field, ConfigDict, field_validator
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class Stage(str, Enum):
    """Funnel stage a route guard redirects to."""
    ONBOARDING = "ONBOARDING"
    PAYWALL = "PAYWALL"
    DASHBOARD = "DASHBOARD"

class IngestionStep(str, Enum):
    """Ordered steps of the ingestion pipeline."""
    GATE = "gate"
    UPLOAD = "upload"
    ACCESS_ISSUANCE = "access_issuance"
    ANALYSIS = "analysis"
    NORMALIZE = "normalize"
    PERSIST = "persist"
    DERIVE_PLAN = "derive_plan"

class Classification(str, Enum):
    MALE = "male"
    FEMALE = "female"

class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    UNPAID = "unpaid"

class AuditAction(str, Enum):
    CAPTURE_STAGED = "CAPTURE_STAGED"
    CAPTURE_RESET = "CAPTURE_RESET"
    ENTITLEMENT_DENIED = "ENTITLEMENT_DENIED"
    FLUSH_COMPLETED = "FLUSH_COMPLETED"
    FLUSH_FAILED = "FLUSH_FAILED"
    SCAN_INGESTED = "SCAN_INGESTED"
    PLAN_GENERATION_FAILED = "PLAN_GENERATION_FAILED"
    ONBOARDING_UPDATED = "ONBOARDING_UPDATED"

# ============================================================================
# ACCESS FACTS
# ============================================================================

class AccessFacts(BaseModel):
    """Three independently sourced facts. Unknown (None) always reads as False."""
    model_config = ConfigDict(frozen=True)

    is_authenticated: bool = False
    onboarding_completed: bool = False
    is_entitled: bool = False

    @field_validator("is_authenticated", "onboarding_completed", "is_entitled", mode="before")
    @classmethod
    def _unknown_is_false(cls, value: Any) -> bool:
        return value is True

# ============================================================================
# STAGED CAPTURE
# ============================================================================

class GuestCapture(BaseModel):
    """Questionnaire answers plus a front/side photo pair, staged per device."""
    capture_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    answers: Dict[str, Any] = Field(default_factory=dict)
    front_image: str
    side_image: str
    created_at: AwareDatetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def is_complete(self) -> bool:
        return bool(self.front_image) and bool(self.side_image)

class CaptureManifest(BaseModel):
    """Image-free summary of a staged capture."""
    capture_id: str
    has_front: bool
    has_side: bool
    answer_keys: list = Field(default_factory=list)
    size_bytes: int = 0
    created_at: AwareDatetime

    def is_complete(self) -> bool:
        return self.has_front and self.has_side

# ============================================================================
# SCORES AND SCANS
# ============================================================================

class ScoreVector(BaseModel):
    """Canonical score vector. Build through services.score_normalizer only."""
    model_config = ConfigDict(frozen=True)

    skin: int = Field(ge=0, le=100)
    jaw: int = Field(ge=0, le=100)
    cheekbones: int = Field(ge=0, le=100)
    symmetry: int = Field(ge=0, le=100)
    eye_area: int = Field(ge=0, le=100)
    potential: int = Field(ge=0, le=100)
    raw_potential: int = Field(ge=0, le=100)
    overall: int = Field(ge=0, le=100)

    def aspects(self) -> Dict[str, int]:
        return {
            "skin": self.skin,
            "jaw": self.jaw,
            "cheekbones": self.cheekbones,
            "symmetry": self.symmetry,
            "eye_area": self.eye_area,
            "potential": self.potential,
        }

    def to_raw(self) -> Dict[str, int]:
        """Raw-score equivalent: base aspects with the pre-boost potential."""
        raw = self.aspects()
        raw["potential"] = self.raw_potential
        return raw

class ScanRecord(BaseModel):
    """Permanent scan row. Inserted once, never edited."""
    model_config = ConfigDict(frozen=True)

    scan_id: str
    owner_id: str
    capture_id: Optional[str] = None
    front_image_ref: str
    side_image_ref: str
    score_vector: ScoreVector
    classification: Classification
    analysis_notes: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(mode="json")
        # capture_id index is sparse: omit rather than store null
        if doc.get("capture_id") is None:
            doc.pop("capture_id", None)
        return doc

# ============================================================================
# REQUEST MODELS
# ============================================================================

class StageCaptureRequest(BaseModel):
    answers: Dict[str, Any] = Field(default_factory=dict)
    front_image: Optional[str] = None
    side_image: Optional[str] = None

class NewScanRequest(BaseModel):
    front_image: str
    side_image: str

class OnboardingUpdateRequest(BaseModel):
    answers: Dict[str, Any] = Field(default_factory=dict)
    completed: bool = False

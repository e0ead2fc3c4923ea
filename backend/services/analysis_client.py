"""
Analysis Service Client
Sends signed photo references to the external face-analysis service and
validates what comes back.

The service may answer with a flat body or an {ok, data} envelope, and older
deployments name the classification "gender". Anything that does not carry a
classification and a non-empty scores object is rejected here; whether every
aspect is present is the score normalizer's call.
"""
import os
import logging
from typing import Optional, Dict, Any

import httpx
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from models import Classification
from services.ingestion_errors import AnalysisError

logger = logging.getLogger(__name__)

ANALYSIS_SERVICE_URL = os.getenv("ANALYSIS_SERVICE_URL", "")
ANALYSIS_SERVICE_KEY = os.getenv("ANALYSIS_SERVICE_KEY", "")
ANALYSIS_TIMEOUT_SECONDS = float(os.getenv("ANALYSIS_TIMEOUT_SECONDS", "90"))

DEFAULT_AGE = 25
DEFAULT_SEX = "male"


class AnalysisResponse(BaseModel):
    classification: Classification
    scores: Dict[str, Any]
    notes: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _accept_gender_alias(cls, data: Any) -> Any:
        if isinstance(data, dict) and "classification" not in data and "gender" in data:
            data = {**data, "classification": data["gender"]}
        return data

    @field_validator("classification", mode="before")
    @classmethod
    def _lower_classification(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("scores")
    @classmethod
    def _scores_not_empty(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        if not value:
            raise ValueError("scores must not be empty")
        return value

    @field_validator("notes", mode="before")
    @classmethod
    def _notes_as_text(cls, value: Any) -> Dict[str, str]:
        if not isinstance(value, dict):
            return {}
        return {str(k): str(v) for k, v in value.items() if v is not None}


def build_analysis_request(
    front_image_url: str,
    side_image_url: str,
    answers: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Request body; age and sex fall back to defaults when unanswered."""
    answers = answers or {}
    age = answers.get("age")
    try:
        age = int(age)
    except (TypeError, ValueError):
        age = DEFAULT_AGE
    sex = answers.get("sex") or answers.get("gender") or DEFAULT_SEX
    return {
        "front_image_url": front_image_url,
        "side_image_url": side_image_url,
        "age": age,
        "sex": str(sex).lower(),
    }


def parse_analysis_body(body: Any) -> AnalysisResponse:
    """Unwrap an optional {ok, data} envelope and validate the result."""
    if not isinstance(body, dict):
        raise AnalysisError("Analysis response is not a JSON object")

    if "ok" in body:
        if body.get("ok") is not True:
            step = body.get("step") or "unknown"
            raise AnalysisError(f"Analysis service failed at {step}: {body.get('message', 'no message')}")
        body = body.get("data")
        if not isinstance(body, dict):
            raise AnalysisError("Analysis response has no data")

    try:
        return AnalysisResponse.model_validate(body)
    except ValidationError as e:
        raise AnalysisError(f"Analysis response failed validation: {e.error_count()} error(s)")


class AnalysisClient:
    """HTTP client for the analysis service."""

    def __init__(
        self,
        base_url: str = ANALYSIS_SERVICE_URL,
        api_key: str = ANALYSIS_SERVICE_KEY,
        timeout_seconds: float = ANALYSIS_TIMEOUT_SECONDS,
    ):
        self.base_url = base_url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds

    async def analyze(
        self,
        front_image_url: str,
        side_image_url: str,
        answers: Optional[Dict[str, Any]] = None,
    ) -> AnalysisResponse:
        """
        Raises:
            AnalysisError: transport failure, timeout, non-2xx or invalid body
        """
        if not self.base_url:
            raise AnalysisError("ANALYSIS_SERVICE_URL is not configured")

        payload = build_analysis_request(front_image_url, side_image_url, answers)
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self.base_url,
                    json=payload,
                    headers=headers,
                    timeout=self.timeout_seconds,
                )
        except httpx.TimeoutException:
            raise AnalysisError(f"Analysis service timed out after {self.timeout_seconds}s")
        except httpx.HTTPError as e:
            raise AnalysisError(f"Analysis service unreachable: {e}")

        if response.status_code < 200 or response.status_code >= 300:
            logger.error(f"Analysis service error {response.status_code}: {response.text[:200]}")
            raise AnalysisError(f"Analysis service returned {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            raise AnalysisError("Analysis response is not valid JSON")

        result = parse_analysis_body(body)
        logger.info(f"Analysis complete: classification={result.classification.value}, {len(result.scores)} score fields")
        return result


analysis_client = AnalysisClient()

"""Score Normalizer - single gate between raw analysis scores and ScoreVector.

Rules:
1. Every base aspect is resolved through its alias list; a missing aspect is an
   error, never a silent zero.
2. Values are clamped into [0, 100].
3. Potential gets POTENTIAL_BOOST added (capped at 100).
4. Overall is ALWAYS recomputed as the half-up rounded mean of the six aspects.
   An incoming "overall" is ignored.
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Dict, Any, Mapping, Optional, Tuple
import logging

from models import ScoreVector
from services.ingestion_errors import NormalizationError

logger = logging.getLogger(__name__)

# Policy value shared by every consumer that derives scores
POTENTIAL_BOOST = 8

SCORE_MIN = 0
SCORE_MAX = 100

# Canonical field -> accepted spellings, most specific first
ASPECT_ALIASES: Dict[str, Tuple[str, ...]] = {
    "skin": ("skin_quality", "skinQuality", "skin"),
    "jaw": ("jawline_definition", "jawlineDefinition", "jawline", "jaw"),
    "cheekbones": ("cheekbones", "cheek_bones", "cheek"),
    "symmetry": ("facial_symmetry", "facialSymmetry", "symmetry", "sym"),
    "eye_area": ("eye_area", "eyeArea", "eyes", "eye"),
    "potential": ("potential",),
}

BASE_ASPECTS = tuple(ASPECT_ALIASES.keys())


def round_half_up(value: Decimal) -> int:
    """Arithmetic rounding: .5 always goes up (65.5 -> 66, 64.5 -> 65)."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _to_int(value: Any) -> Optional[int]:
    """Coerce a raw score to an int in [SCORE_MIN, SCORE_MAX]; None when it is not a number."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite():
        return None
    # Clamp before quantizing: huge exponents overflow the context precision
    number = max(Decimal(SCORE_MIN), min(Decimal(SCORE_MAX), number))
    return round_half_up(number)


def _clamp(value: int) -> int:
    return max(SCORE_MIN, min(SCORE_MAX, value))


def resolve_aspect(raw: Mapping[str, Any], aspect: str) -> Optional[int]:
    """First alias with a usable numeric value wins."""
    for key in ASPECT_ALIASES[aspect]:
        if key in raw:
            coerced = _to_int(raw[key])
            if coerced is not None:
                return coerced
    return None


def compute_overall(aspects: Mapping[str, int]) -> int:
    total = sum(Decimal(aspects[name]) for name in BASE_ASPECTS)
    return round_half_up(total / Decimal(len(BASE_ASPECTS)))


def boost_potential(raw_potential: int) -> int:
    return min(SCORE_MAX, raw_potential + POTENTIAL_BOOST)


def normalize(raw: Mapping[str, Any]) -> ScoreVector:
    """Map a raw score payload to a canonical ScoreVector.

    Raises:
        NormalizationError: if the payload is not a mapping or any base aspect
            is missing or not numeric.
    """
    if not isinstance(raw, Mapping):
        raise NormalizationError(f"Score payload must be an object, got {type(raw).__name__}")

    resolved: Dict[str, int] = {}
    missing = []
    for aspect in BASE_ASPECTS:
        value = resolve_aspect(raw, aspect)
        if value is None:
            missing.append(aspect)
        else:
            resolved[aspect] = _clamp(value)

    if missing:
        raise NormalizationError(f"Missing base aspects: {', '.join(missing)}")

    raw_potential = resolved["potential"]
    resolved["potential"] = boost_potential(raw_potential)
    overall = compute_overall(resolved)

    if "overall" in raw and _to_int(raw.get("overall")) != overall:
        logger.debug(f"Ignoring external overall {raw.get('overall')!r}; recomputed {overall}")

    return ScoreVector(raw_potential=raw_potential, overall=overall, **resolved)


def rederive(stored: Mapping[str, Any]) -> ScoreVector:
    """Rebuild a persisted ScoreVector, recomputing overall without a second boost.

    Documents written before raw_potential was stored fall back to
    potential - POTENTIAL_BOOST as their raw value.
    """
    if not isinstance(stored, Mapping):
        raise NormalizationError("Stored score vector must be an object")

    aspects: Dict[str, int] = {}
    for aspect in BASE_ASPECTS:
        value = _to_int(stored.get(aspect))
        if value is None:
            raise NormalizationError(f"Stored score vector missing {aspect}")
        aspects[aspect] = _clamp(value)

    raw_potential = _to_int(stored.get("raw_potential"))
    if raw_potential is None:
        raw_potential = max(SCORE_MIN, aspects["potential"] - POTENTIAL_BOOST)

    return ScoreVector(
        raw_potential=_clamp(raw_potential),
        overall=compute_overall(aspects),
        **aspects,
    )

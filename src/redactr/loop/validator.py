"""Coerce untrusted model output into well-formed evaluations and plans.

Model responses are parsed JSON of arbitrary shape. Nothing here trusts a
field: every value is coerced, defaulted or clamped, so downstream code only
ever sees rectangles inside the image and intensities in ``[1, 100]``.
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional

from redactr.collaborators import RedactionStyle
from redactr.errors import RemoteError, RemoteErrorKind
from redactr.logging import get_logger

from .types import Evaluation, LeakRegion, LeakType, Redaction, RedactionPlan, VisibleLeak

logger = get_logger(__name__)

DEFAULT_SIZE = 50
DEFAULT_INTENSITY = 70
DEFAULT_REASON = "Redacting PII"
DEFAULT_EXPLANATION = "Redaction plan generated"
DEFAULT_REASONING = "No reasoning provided"
DEFAULT_LEAK_DESCRIPTION = "Unknown PII"

_VALID_STYLES = {s.value for s in RedactionStyle}
_VALID_LEAK_TYPES = {t.value for t in LeakType}


def _number(value: Any, default: float) -> float:
    """Numeric value of ``value``; zero, missing and non-finite give ``default``."""
    if isinstance(value, bool):
        num = float(value)
    elif isinstance(value, (int, float)):
        num = float(value)
    elif isinstance(value, str):
        try:
            num = float(value.strip())
        except ValueError:
            return default
    else:
        return default
    if not math.isfinite(num) or num == 0:
        return default
    return num


def _round(value: float) -> int:
    # half-up, not banker's rounding
    return int(math.floor(value + 0.5))


def _clamp(value: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, value))


def _validate_redaction(item: Dict[str, Any], width: int, height: int) -> Optional[Redaction]:
    style = item.get("style")
    if style not in _VALID_STYLES:
        style = RedactionStyle.SOLID.value

    x = _clamp(_round(_number(item.get("x"), 0)), 0, width - 1)
    y = _clamp(_round(_number(item.get("y"), 0)), 0, height - 1)
    w = _clamp(_round(_number(item.get("width"), DEFAULT_SIZE)), 1, width - x)
    h = _clamp(_round(_number(item.get("height"), DEFAULT_SIZE)), 1, height - y)
    if w <= 0 or h <= 0:
        return None

    intensity = _clamp(_round(_number(item.get("intensity"), DEFAULT_INTENSITY)), 1, 100)
    reason = item.get("reason")
    if not isinstance(reason, str):
        reason = DEFAULT_REASON

    return Redaction(
        style=RedactionStyle(style),
        x=x,
        y=y,
        width=w,
        height=h,
        intensity=intensity,
        reason=reason,
    )


def validate_plan(raw_plan: Any, image_width: int, image_height: int) -> RedactionPlan:
    """Return a plan whose every rectangle lies inside ``image_width x image_height``."""
    raw = raw_plan if isinstance(raw_plan, dict) else {}
    items = raw.get("redactions")
    if not isinstance(items, list):
        items = []

    redactions: List[Redaction] = []
    for item in items:
        if not isinstance(item, dict):
            logger.warning("Skipping malformed redaction", extra={"item": repr(item)[:200]})
            continue
        redaction = _validate_redaction(item, image_width, image_height)
        if redaction is not None:
            redactions.append(redaction)

    explanation = raw.get("explanation")
    if not isinstance(explanation, str):
        explanation = DEFAULT_EXPLANATION
    return RedactionPlan(redactions=redactions, explanation=explanation)


def _validate_leak(item: Dict[str, Any]) -> VisibleLeak:
    leak_type = item.get("type")
    if leak_type not in _VALID_LEAK_TYPES:
        leak_type = LeakType.OTHER.value
    description = str(item.get("description") or DEFAULT_LEAK_DESCRIPTION)
    region = None
    raw_region = item.get("region")
    if isinstance(raw_region, dict):
        region = LeakRegion(
            x=_number(raw_region.get("x"), 0),
            y=_number(raw_region.get("y"), 0),
            width=_number(raw_region.get("width"), 0),
            height=_number(raw_region.get("height"), 0),
        )
    return VisibleLeak(type=LeakType(leak_type), description=description, region=region)


def validate_evaluation(raw: Any) -> Evaluation:
    """Normalize an evaluator response.

    Raises
    ------
    RemoteError
        ``parse`` when the vagueness score is missing or not a number.
    """
    data = raw if isinstance(raw, dict) else {}
    score = data.get("vaguenessScore")
    if isinstance(score, bool) or not isinstance(score, (int, float)) or math.isnan(score):
        raise RemoteError(RemoteErrorKind.PARSE, "Evaluation response missing vaguenessScore")
    score = max(0.0, min(1.0, float(score)))

    raw_leaks = data.get("visibleLeaks")
    if not isinstance(raw_leaks, list):
        raw_leaks = []
    leaks = [_validate_leak(item) for item in raw_leaks if isinstance(item, dict)]

    reasoning = data.get("reasoning")
    if not isinstance(reasoning, str):
        reasoning = DEFAULT_REASONING
    return Evaluation(vagueness_score=score, visible_leaks=leaks, reasoning=reasoning)


__all__ = ["validate_plan", "validate_evaluation"]

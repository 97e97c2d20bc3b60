"""Redaction planning by a remote vision model.

The planner receives the evaluator's findings as text next to the image. It
skips the remote call entirely when there is nothing specific to fix.
"""

from __future__ import annotations

from typing import Callable, Optional

from redactr.image import ImageBuffer
from redactr.logging import get_logger
from redactr.settings import Settings, get_settings

from .client import CancelToken, ModelOptions, call_model, image_part, parse_json_response, text_part
from .prompts import PLANNER_USER_TEXT, planner_prompt
from .types import Evaluation, RedactionPlan
from .validator import validate_plan

logger = get_logger(__name__)

PLANNER_OPTIONS = ModelOptions(temperature=0.2, max_tokens=4096, json_mode=True)
EXCELLENT_SCORE = 0.9
CONSERVATIVE_SCORE = 0.7
MODERATE_SCORE = 0.5

NO_LEAKS_EXPLANATION = "No specific PII leaks identified - no additional redactions needed."
EXCELLENT_EXPLANATION = "Privacy score is already excellent (90%+) - no changes needed."


def format_feedback(evaluation: Evaluation) -> str:
    """Render an evaluation as the planner's instructions."""
    pct = f"{evaluation.vagueness_score * 100:.0f}"
    lines = [f"Privacy Score: {pct}%", f"Reasoning: {evaluation.reasoning}"]

    if evaluation.vagueness_score >= CONSERVATIVE_SCORE:
        lines.append(
            f"\nSCORE IS ALREADY {pct}% - BE VERY CONSERVATIVE. "
            "Only address clear, specific issues."
        )
    elif evaluation.vagueness_score >= MODERATE_SCORE:
        lines.append("\nScore is moderate. Focus on the most important leaks first.")

    if evaluation.visible_leaks:
        lines.append("\nSpecific PII leaks to address:")
        for leak in evaluation.visible_leaks:
            line = f"- {leak.type.value}: {leak.description}"
            if leak.region is not None:
                r = leak.region
                line += f" (approx. at x:{r.x:g}, y:{r.y:g}, {r.width:g}x{r.height:g})"
            lines.append(line)
    else:
        lines.append(
            "\nNo specific leaks identified. Return empty redactions array - "
            "the image is sufficiently private."
        )
    return "\n".join(lines) + "\n"


def plan(
    api_key: str,
    image: ImageBuffer,
    evaluation: Evaluation,
    cancel_token: Optional[CancelToken] = None,
    *,
    settings: Optional[Settings] = None,
    client: Callable[..., str] = call_model,
) -> RedactionPlan:
    """Plan redactions for the leaks in ``evaluation``; result is bounds-checked."""
    if not evaluation.visible_leaks:
        return RedactionPlan(redactions=[], explanation=NO_LEAKS_EXPLANATION)
    if evaluation.vagueness_score >= EXCELLENT_SCORE:
        return RedactionPlan(redactions=[], explanation=EXCELLENT_EXPLANATION)

    cfg = settings or get_settings()
    messages = [
        {
            "role": "system",
            "content": planner_prompt(image.width, image.height, cfg.planner_prompt_path),
        },
        {
            "role": "user",
            "content": [
                text_part(PLANNER_USER_TEXT.format(feedback=format_feedback(evaluation))),
                image_part(image.to_data_url()),
            ],
        },
    ]
    content = client(
        api_key, cfg.planner_model, messages, PLANNER_OPTIONS, cancel_token, settings=cfg
    )
    result = validate_plan(parse_json_response(content), image.width, image.height)
    logger.info("Redactions planned", extra={"count": len(result.redactions)})
    return result


__all__ = [
    "PLANNER_OPTIONS",
    "NO_LEAKS_EXPLANATION",
    "EXCELLENT_EXPLANATION",
    "format_feedback",
    "plan",
]

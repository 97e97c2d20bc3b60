"""Privacy evaluation of the current image by a remote vision model."""

from __future__ import annotations

from typing import Callable, Optional

from redactr.image import ImageBuffer
from redactr.logging import get_logger
from redactr.settings import Settings, get_settings

from .client import CancelToken, ModelOptions, call_model, image_part, parse_json_response, text_part
from .prompts import EVALUATOR_USER_TEXT, evaluator_prompt
from .types import Evaluation
from .validator import validate_evaluation

logger = get_logger(__name__)

EVALUATOR_OPTIONS = ModelOptions(temperature=0.1, max_tokens=2048, json_mode=True)


def evaluate(
    api_key: str,
    image: ImageBuffer,
    cancel_token: Optional[CancelToken] = None,
    *,
    settings: Optional[Settings] = None,
    client: Callable[..., str] = call_model,
) -> Evaluation:
    """Score how private ``image`` is and list what still leaks."""
    cfg = settings or get_settings()
    messages = [
        {"role": "system", "content": evaluator_prompt(cfg.evaluator_prompt_path)},
        {
            "role": "user",
            "content": [text_part(EVALUATOR_USER_TEXT), image_part(image.to_data_url())],
        },
    ]
    content = client(
        api_key, cfg.evaluator_model, messages, EVALUATOR_OPTIONS, cancel_token, settings=cfg
    )
    evaluation = validate_evaluation(parse_json_response(content))
    logger.info(
        "Image evaluated",
        extra={
            "score": evaluation.vagueness_score,
            "leaks": len(evaluation.visible_leaks),
        },
    )
    return evaluation


__all__ = ["EVALUATOR_OPTIONS", "evaluate"]

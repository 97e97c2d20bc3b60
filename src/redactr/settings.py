"""Runtime configuration for the detection pipeline and the convergence loop.

All knobs are read from ``REDACTR_*`` environment variables once and cached.
The module has no side effects on import so UI code and tests can both use it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional
import os


def _parse_bool(value: str | None, *, default: bool) -> bool:
    if value is None:
        return default
    v = value.strip().lower()
    if v in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "f", "no", "n", "off"}:
        return False
    return default


def _split_csv(value: str | None) -> List[str]:
    if not value:
        return []
    parts = [p.strip() for p in value.split(",") if p.strip()]
    return parts


def _parse_float(value: str | None, *, default: float) -> float:
    try:
        return float(value) if value is not None else default
    except ValueError:
        return default


def _parse_int(value: str | None, *, default: int) -> int:
    try:
        return int(value) if value is not None else default
    except ValueError:
        return default


@dataclass
class Settings:
    """Settings shared by the detection orchestrator and the loop orchestrator."""

    # Remote evaluator / planner
    api_base_url: str = "https://openrouter.ai/api/v1"
    evaluator_model: str = "google/gemini-3-flash-preview"
    planner_model: str = "opengvlab/internvl3-78b"
    request_timeout: float = 120.0
    app_title: str = "Redactr"
    app_referer: Optional[str] = None
    target_score: float = 0.7
    max_steps: int = 5
    evaluator_prompt_path: Optional[str] = None
    planner_prompt_path: Optional[str] = None

    # Local detection
    model_cache_dir: Optional[str] = None
    plate_model: str = "nickmuchi/yolos-small-finetuned-license-plate-detection"
    document_model: str = "facebook/detr-resnet-50"
    document_labels: List[str] = field(
        default_factory=lambda: ["book", "laptop", "cell phone", "tv", "monitor"]
    )
    face_model_url: str = (
        "https://github.com/opencv/opencv_zoo/raw/main/models/"
        "face_detection_yunet/face_detection_yunet_2023mar.onnx"
    )
    face_min_confidence: float = 0.3
    ocr_lang: str = "eng"
    ocr_min_confidence: float = 60.0
    ocr_psm: int = 3
    ocr_preprocess: bool = False
    allow_downloads: bool = True

    @staticmethod
    def from_env() -> "Settings":
        defaults = Settings()
        return Settings(
            api_base_url=os.environ.get("REDACTR_API_BASE_URL", defaults.api_base_url),
            evaluator_model=os.environ.get(
                "REDACTR_EVALUATOR_MODEL", defaults.evaluator_model
            ),
            planner_model=os.environ.get("REDACTR_PLANNER_MODEL", defaults.planner_model),
            request_timeout=_parse_float(
                os.environ.get("REDACTR_REQUEST_TIMEOUT"), default=defaults.request_timeout
            ),
            app_title=os.environ.get("REDACTR_APP_TITLE", defaults.app_title),
            app_referer=os.environ.get("REDACTR_APP_REFERER"),
            target_score=_parse_float(
                os.environ.get("REDACTR_TARGET_SCORE"), default=defaults.target_score
            ),
            max_steps=_parse_int(
                os.environ.get("REDACTR_MAX_STEPS"), default=defaults.max_steps
            ),
            evaluator_prompt_path=os.environ.get("REDACTR_EVALUATOR_PROMPT"),
            planner_prompt_path=os.environ.get("REDACTR_PLANNER_PROMPT"),
            model_cache_dir=os.environ.get("REDACTR_MODEL_CACHE_DIR"),
            plate_model=os.environ.get("REDACTR_PLATE_MODEL", defaults.plate_model),
            document_model=os.environ.get(
                "REDACTR_DOCUMENT_MODEL", defaults.document_model
            ),
            document_labels=_split_csv(os.environ.get("REDACTR_DOCUMENT_LABELS"))
            or defaults.document_labels,
            face_model_url=os.environ.get(
                "REDACTR_FACE_MODEL_URL", defaults.face_model_url
            ),
            face_min_confidence=_parse_float(
                os.environ.get("REDACTR_FACE_MIN_CONFIDENCE"),
                default=defaults.face_min_confidence,
            ),
            ocr_lang=os.environ.get("REDACTR_OCR_LANG", defaults.ocr_lang),
            ocr_min_confidence=_parse_float(
                os.environ.get("REDACTR_OCR_MIN_CONFIDENCE"),
                default=defaults.ocr_min_confidence,
            ),
            ocr_psm=_parse_int(os.environ.get("REDACTR_OCR_PSM"), default=defaults.ocr_psm),
            ocr_preprocess=_parse_bool(
                os.environ.get("REDACTR_OCR_PREPROCESS"), default=defaults.ocr_preprocess
            ),
            allow_downloads=_parse_bool(
                os.environ.get("REDACTR_ALLOW_DOWNLOADS"), default=True
            ),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings."""
    return Settings.from_env()


def reset_settings_cache() -> None:
    """Reset cached settings (useful in tests)."""
    get_settings.cache_clear()  # type: ignore[attr-defined]


__all__ = ["Settings", "get_settings", "reset_settings_cache"]

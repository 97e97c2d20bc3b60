"""Word-level text detection with Tesseract.

The OCR engine is created lazily, held in the process-wide model cache and
shared between runs. Recognition returns a word-level TSV (one row per word
with its confidence and bounding box); every sufficiently confident non-empty
word becomes one ``text`` detection.

Optional preprocessing (grayscale + adaptive binarization via OpenCV, switched
on with ``REDACTR_OCR_PREPROCESS``) helps on photos of paper. It never moves pixels, so word boxes stay in image
coordinates.
"""

from __future__ import annotations

from typing import Any, Callable, List, Optional

import numpy as np
import pandas as pd
import pytesseract
from PIL import Image

from redactr.image import ImageBuffer
from redactr.logging import get_logger
from redactr.model_cache import ModelCache, get_model_cache
from redactr.settings import Settings, get_settings

from .base import InContextDetector, StageCallback
from .types import BBox, Detection, DetectionType

try:
    import cv2  # type: ignore
except Exception:  # pragma: no cover - cv2 is optional at runtime
    cv2 = None  # type: ignore

logger = get_logger(__name__)


def _preprocess_image(img: Image.Image, *, binarize: bool = True) -> Image.Image:
    """Grayscale and optionally binarize with an adaptive threshold."""
    if cv2 is None:
        return img.convert("L")
    arr = np.array(img)
    if arr.ndim == 3:
        gray = cv2.cvtColor(arr, cv2.COLOR_RGB2GRAY)
    else:
        gray = arr
    work = gray
    if binarize:
        work = cv2.adaptiveThreshold(
            work, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C, cv2.THRESH_BINARY, 35, 15
        )
    return Image.fromarray(work)


class TesseractEngine:
    """A configured Tesseract instance.

    Construction checks that the binary is reachable so a missing install is
    reported once, when the engine is first built.
    """

    def __init__(
        self,
        lang: str = "eng",
        psm: int = 3,
        preprocess: bool = False,
    ) -> None:
        self.version = str(pytesseract.get_tesseract_version())
        self.lang = lang
        self.preprocess = preprocess
        self.config = f"--oem 1 --psm {psm} -c preserve_interword_spaces=1"

    def recognize(
        self, img: Image.Image, on_progress: Optional[Callable[[float], None]] = None
    ) -> pd.DataFrame:
        """Return word rows with ``left, top, width, height, conf, text`` columns."""
        if on_progress is not None:
            on_progress(0.0)
        if self.preprocess:
            img = _preprocess_image(img)
        tsv = pytesseract.image_to_data(
            img,
            lang=self.lang,
            config=self.config,
            output_type=pytesseract.Output.DATAFRAME,
            # numeric-only words must keep their leading zeros
            pandas_config={"dtype": {"text": str}},
        )
        tsv = tsv.dropna(subset=["text"]).reset_index(drop=True)
        if on_progress is not None:
            on_progress(1.0)
        return tsv

    def close(self) -> None:
        # Tesseract runs as a subprocess per call; nothing stays resident.
        return None


def words_to_detections(
    tsv: pd.DataFrame,
    image_width: int,
    image_height: int,
    min_confidence: float = 60.0,
) -> List[Detection]:
    detections: List[Detection] = []
    for row in tsv.itertuples(index=False):
        text = str(getattr(row, "text", "") or "").strip()
        try:
            conf = float(getattr(row, "conf"))
        except (TypeError, ValueError):
            continue
        if conf <= min_confidence or not text:
            continue
        left, top = float(row.left), float(row.top)
        bbox = BBox.from_corners(
            left, top, left + float(row.width), top + float(row.height),
            image_width, image_height,
        )
        if bbox is None:
            continue
        detections.append(
            Detection(type=DetectionType.TEXT, bbox=bbox, confidence=conf / 100.0, label=text)
        )
    return detections


class TextDetector(InContextDetector):
    detection_type = DetectionType.TEXT
    progress_range = (75.0, 95.0)

    def __init__(
        self,
        settings: Optional[Settings] = None,
        cache: Optional[ModelCache] = None,
        factory: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.cache = cache or get_model_cache()
        self._factory = factory or (
            lambda: TesseractEngine(
                lang=self.settings.ocr_lang,
                psm=self.settings.ocr_psm,
                preprocess=self.settings.ocr_preprocess,
            )
        )

    @property
    def model_key(self) -> str:
        s = self.settings
        return f"tesseract:{s.ocr_lang}:psm{s.ocr_psm}:{int(s.ocr_preprocess)}"

    @property
    def is_ready(self) -> bool:
        return self.cache.is_loaded(self.model_key)

    def detect(
        self, image: ImageBuffer, on_progress: Optional[StageCallback] = None
    ) -> List[Detection]:
        if not self.is_ready:
            self._report(on_progress, 0.0, "Loading text recognition model...")
        engine = self.cache.get_or_create(self.model_key, self._factory)
        tsv = engine.recognize(
            image.to_pil("RGB"),
            on_progress=lambda f: self._report(on_progress, f, "Recognizing text..."),
        )
        detections = words_to_detections(
            tsv, image.width, image.height, self.settings.ocr_min_confidence
        )
        logger.info("Text detection finished", extra={"count": len(detections)})
        return detections

    def close(self) -> None:
        self.cache.release(self.model_key)


__all__ = ["TesseractEngine", "words_to_detections", "TextDetector"]

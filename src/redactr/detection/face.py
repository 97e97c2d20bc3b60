"""Face detection with OpenCV's YuNet model.

The detector runs on the orchestrator's thread: the OpenCV DNN backend may be
bound to a GPU / OpenCL context created there. The model is a single shared
instance in the process-wide model cache; concurrent first calls wait for the
same construction instead of loading twice.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, Tuple

import numpy as np

from redactr.image import ImageBuffer
from redactr.logging import get_logger
from redactr.model_cache import ModelCache, get_model_cache
from redactr.settings import Settings, get_settings

from .base import InContextDetector, StageCallback
from .downloads import default_cache_dir, download_file
from .types import BBox, Detection, DetectionType

logger = get_logger(__name__)

# (x, y, width, height, score)
RawFace = Tuple[float, float, float, float, float]


class YuNetModel:
    """Thin wrapper around ``cv2.FaceDetectorYN``."""

    def __init__(self, model_path: str, score_threshold: float = 0.3) -> None:
        import cv2

        self._detector = cv2.FaceDetectorYN.create(
            model_path, "", (320, 320), score_threshold
        )

    def detect(self, bgr: np.ndarray) -> List[RawFace]:
        if self._detector is None:
            raise RuntimeError("Face detector has been closed")
        h, w = bgr.shape[:2]
        self._detector.setInputSize((w, h))
        _, faces = self._detector.detect(bgr)
        if faces is None:
            return []
        return [
            (float(f[0]), float(f[1]), float(f[2]), float(f[3]), float(f[-1]))
            for f in faces
        ]

    def close(self) -> None:
        self._detector = None


def faces_to_detections(
    faces: Sequence[RawFace], image_width: int, image_height: int
) -> List[Detection]:
    detections: List[Detection] = []
    for x, y, w, h, score in faces:
        bbox = BBox.from_corners(x, y, x + w, y + h, image_width, image_height)
        if bbox is None:
            continue
        detections.append(
            Detection(
                type=DetectionType.FACE,
                bbox=bbox,
                confidence=score,
                label=f"Face ({round(max(0.0, min(1.0, score)) * 100)}%)",
            )
        )
    return detections


class FaceDetector(InContextDetector):
    detection_type = DetectionType.FACE
    progress_range = (5.0, 30.0)

    def __init__(
        self,
        settings: Optional[Settings] = None,
        cache: Optional[ModelCache] = None,
        factory: Optional[Callable[[Callable[[float], None]], Any]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.cache = cache or get_model_cache()
        self._factory = factory or self._build_default

    @property
    def model_key(self) -> str:
        return f"face:{self.settings.face_model_url}"

    @property
    def is_ready(self) -> bool:
        return self.cache.is_loaded(self.model_key)

    def _build_default(self, on_download: Callable[[float], None]) -> YuNetModel:
        dest = default_cache_dir(self.settings.model_cache_dir) / Path(
            self.settings.face_model_url
        ).name
        path = download_file(self.settings.face_model_url, dest, on_progress=on_download)
        return YuNetModel(str(path), score_threshold=self.settings.face_min_confidence)

    def detect(
        self, image: ImageBuffer, on_progress: Optional[StageCallback] = None
    ) -> List[Detection]:
        self._report(on_progress, 0.1, "Loading face detector...")

        def on_download(fraction: float) -> None:
            self._report(on_progress, 0.1 + 0.4 * fraction, "Initializing face detector...")

        model = self.cache.get_or_create(self.model_key, lambda: self._factory(on_download))
        self._report(on_progress, 0.6, "Detecting faces...")
        faces = model.detect(image.to_bgr())
        self._report(on_progress, 0.9, "Processing results...")
        detections = faces_to_detections(faces, image.width, image.height)
        logger.info("Face detection finished", extra={"count": len(detections)})
        return detections

    def close(self) -> None:
        self.cache.release(self.model_key)


__all__ = ["RawFace", "YuNetModel", "faces_to_detections", "FaceDetector"]

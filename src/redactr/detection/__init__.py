"""Local multi-model PII detection (faces, text, license plates, documents)."""

from .types import BBox, Detection, DetectionType
from .base import InContextDetector
from .executor import DetectorExecutor
from .face import FaceDetector
from .text import TextDetector
from .orchestrator import DetectionOrchestrator, DetectionRun, RunStatus

__all__ = [
    "BBox",
    "Detection",
    "DetectionType",
    "InContextDetector",
    "DetectorExecutor",
    "FaceDetector",
    "TextDetector",
    "DetectionOrchestrator",
    "DetectionRun",
    "RunStatus",
]

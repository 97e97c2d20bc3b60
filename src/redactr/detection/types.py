"""Detection records and the typed messages exchanged with the executor."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from redactr.image import ImageBuffer


class DetectionType(str, Enum):
    FACE = "face"
    TEXT = "text"
    LICENSE_PLATE = "license_plate"
    DOCUMENT = "document"


ALL_TYPES: Tuple[DetectionType, ...] = (
    DetectionType.FACE,
    DetectionType.TEXT,
    DetectionType.LICENSE_PLATE,
    DetectionType.DOCUMENT,
)

# Types whose detectors need direct device / rendering access and therefore run
# on the orchestrator's thread instead of inside the executor.
IN_CONTEXT_TYPES: Tuple[DetectionType, ...] = (DetectionType.FACE, DetectionType.TEXT)

# Executor types, in processing order.
EXECUTOR_TYPES: Tuple[DetectionType, ...] = (
    DetectionType.LICENSE_PLATE,
    DetectionType.DOCUMENT,
)


def new_id() -> str:
    return uuid.uuid4().hex[:9]


class BBox(BaseModel):
    x: float
    y: float
    width: float
    height: float

    @staticmethod
    def from_corners(
        xmin: float, ymin: float, xmax: float, ymax: float, image_width: int, image_height: int
    ) -> Optional["BBox"]:
        """Clip a corner box to the image; ``None`` if nothing is left."""
        x0 = min(max(float(xmin), 0.0), float(image_width))
        y0 = min(max(float(ymin), 0.0), float(image_height))
        x1 = min(max(float(xmax), 0.0), float(image_width))
        y1 = min(max(float(ymax), 0.0), float(image_height))
        if x1 - x0 <= 0 or y1 - y0 <= 0:
            return None
        return BBox(x=x0, y=y0, width=x1 - x0, height=y1 - y0)


class Detection(BaseModel):
    """Normalized record of one suspected PII region."""

    id: str = Field(default_factory=new_id)
    type: DetectionType
    bbox: BBox
    confidence: float
    selected: bool = True
    label: Optional[str] = None

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, v: float) -> float:
        if v != v:  # NaN
            return 0.0
        return max(0.0, min(1.0, float(v)))


# --- messages sent to the executor -----------------------------------------


@dataclass(frozen=True)
class DetectRequest:
    request_id: str
    image: ImageBuffer
    enabled_types: Tuple[DetectionType, ...]
    is_first_run: bool


@dataclass(frozen=True)
class CancelRequest:
    request_id: str


@dataclass(frozen=True)
class Shutdown:
    pass


# --- messages sent from the executor ---------------------------------------


@dataclass(frozen=True)
class ExecutorMessage:
    request_id: str


@dataclass(frozen=True)
class DownloadProgress(ExecutorMessage):
    progress: float
    stage: str


@dataclass(frozen=True)
class DownloadComplete(ExecutorMessage):
    pass


@dataclass(frozen=True)
class Progress(ExecutorMessage):
    progress: float
    stage: str


@dataclass(frozen=True)
class Results(ExecutorMessage):
    detections: Tuple[Detection, ...]


@dataclass(frozen=True)
class ModelLoaded(ExecutorMessage):
    model_type: DetectionType


@dataclass(frozen=True)
class RunInContext(ExecutorMessage):
    """Ask the orchestrator to run a device-bound detector on its own thread."""

    detection_type: DetectionType


@dataclass(frozen=True)
class Complete(ExecutorMessage):
    pass


@dataclass(frozen=True)
class Error(ExecutorMessage):
    error: str


@dataclass(frozen=True)
class Cancelled(ExecutorMessage):
    pass


__all__ = [
    "DetectionType",
    "ALL_TYPES",
    "IN_CONTEXT_TYPES",
    "EXECUTOR_TYPES",
    "new_id",
    "BBox",
    "Detection",
    "DetectRequest",
    "CancelRequest",
    "Shutdown",
    "ExecutorMessage",
    "DownloadProgress",
    "DownloadComplete",
    "Progress",
    "Results",
    "ModelLoaded",
    "RunInContext",
    "Complete",
    "Error",
    "Cancelled",
]

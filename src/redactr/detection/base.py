"""Interface for detectors that must run on the orchestrator's own thread."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Tuple

from redactr.image import ImageBuffer

from .types import Detection, DetectionType

# (overall progress percentage, stage description)
StageCallback = Callable[[float, str], None]


class InContextDetector(ABC):
    """A device-bound detector injected into the orchestrator.

    Implementations hold their model in the process-wide model cache, build it
    on first use and release it in :meth:`close`. ``progress_range`` is the
    slice of the overall progress bar the detector reports into.
    """

    detection_type: DetectionType
    progress_range: Tuple[float, float] = (0.0, 100.0)

    @property
    @abstractmethod
    def is_ready(self) -> bool:
        """True once the underlying model is loaded."""

    @abstractmethod
    def detect(
        self, image: ImageBuffer, on_progress: Optional[StageCallback] = None
    ) -> List[Detection]:
        """Run detection synchronously and return normalized detections."""

    @abstractmethod
    def close(self) -> None:
        """Release the model and any device resources."""

    def _report(
        self, on_progress: Optional[StageCallback], fraction: float, stage: str
    ) -> None:
        if on_progress is None:
            return
        lo, hi = self.progress_range
        on_progress(lo + (hi - lo) * max(0.0, min(1.0, fraction)), stage)


__all__ = ["StageCallback", "InContextDetector"]

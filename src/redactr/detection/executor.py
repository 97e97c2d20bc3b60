"""Background executor hosting the object-detection models.

The executor owns one daemon thread for the lifetime of its orchestrator, so
loaded models are reused across runs. It talks to the orchestrator only through
two queues: ``inbox`` receives :class:`DetectRequest` / :class:`CancelRequest` /
:class:`Shutdown`, ``outbox`` carries the typed messages from
:mod:`redactr.detection.types`.

Per run, executor types are processed one after the other (license plates,
then documents) so at most one model is being materialised at any time. A
model that is not loaded yet reports download progress on its own slice of a
shared 0-100 bar. Each type's detections are flushed as soon as they exist.

Cancellation is cooperative: the inbox is polled between stages and after each
inference call. A single inference call is never interrupted.
"""

from __future__ import annotations

import queue
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Sequence, Tuple

from PIL import Image

from redactr.errors import ExecutionError
from redactr.logging import get_logger
from redactr.model_cache import ModelCache, get_model_cache
from redactr.settings import Settings, get_settings

from .downloads import download_hub_model
from .types import (
    EXECUTOR_TYPES,
    BBox,
    CancelRequest,
    Cancelled,
    Complete,
    Detection,
    DetectionType,
    DetectRequest,
    DownloadComplete,
    DownloadProgress,
    Error,
    ExecutorMessage,
    ModelLoaded,
    Progress,
    Results,
    RunInContext,
    Shutdown,
)

logger = get_logger(__name__)


class ObjectDetector(Protocol):
    """Callable returning ``[{label, score, box: {xmin, ymin, xmax, ymax}}]``."""

    def __call__(self, image: Image.Image) -> List[Dict[str, Any]]: ...


# (detection_type, model_id, on_progress(fraction)) -> detector
ModelLoader = Callable[[DetectionType, str, Callable[[float], None]], ObjectDetector]


@dataclass(frozen=True)
class TypeSpec:
    detection_type: DetectionType
    size_mb: float
    download_stage: str
    load_stage: str
    detect_stage: str
    load_progress: float
    detect_progress: float


TYPE_SPECS: Dict[DetectionType, TypeSpec] = {
    DetectionType.LICENSE_PLATE: TypeSpec(
        detection_type=DetectionType.LICENSE_PLATE,
        size_mb=25.0,
        download_stage="Downloading license plate detection model (~25MB)...",
        load_stage="Loading license plate detection model...",
        detect_stage="Detecting license plates...",
        load_progress=40.0,
        detect_progress=50.0,
    ),
    DetectionType.DOCUMENT: TypeSpec(
        detection_type=DetectionType.DOCUMENT,
        size_mb=42.0,
        download_stage="Downloading document detection model (~42MB)...",
        load_stage="Loading document detection model...",
        detect_stage="Detecting documents...",
        load_progress=60.0,
        detect_progress=70.0,
    ),
}


def download_ranges(
    pending: Sequence[DetectionType],
) -> Dict[DetectionType, Tuple[float, float]]:
    """Split 0-100 into disjoint slices, one per pending model, weighted by size."""
    total = sum(TYPE_SPECS[t].size_mb for t in pending)
    ranges: Dict[DetectionType, Tuple[float, float]] = {}
    lo = 0.0
    for idx, t in enumerate(pending):
        hi = 100.0 if idx == len(pending) - 1 else lo + 100.0 * TYPE_SPECS[t].size_mb / total
        ranges[t] = (lo, hi)
        lo = hi
    return ranges


class HuggingFaceDetector:
    """Wrap a ``transformers`` object-detection pipeline."""

    def __init__(self, pipe: Any) -> None:
        self._pipe = pipe

    def __call__(self, image: Image.Image) -> List[Dict[str, Any]]:
        return list(self._pipe(image))

    def close(self) -> None:
        self._pipe = None
        try:
            import torch

            if torch.cuda.is_available():
                torch.cuda.empty_cache()
        except Exception:  # pragma: no cover - torch optional at teardown
            pass


def hub_model_loader(settings: Optional[Settings] = None) -> ModelLoader:
    """Default loader: download from the hub, then build a transformers pipeline."""
    cfg = settings or get_settings()

    def load(
        detection_type: DetectionType, model_id: str, on_progress: Callable[[float], None]
    ) -> ObjectDetector:
        local_dir = download_hub_model(
            model_id,
            cache_dir=cfg.model_cache_dir,
            on_progress=on_progress,
            local_files_only=not cfg.allow_downloads,
        )
        import torch
        from transformers import pipeline

        device = 0 if torch.cuda.is_available() else -1
        pipe = pipeline("object-detection", model=local_dir, device=device)
        return HuggingFaceDetector(pipe)

    return load


def _box_to_bbox(result: Dict[str, Any], width: int, height: int) -> Optional[BBox]:
    box = result.get("box") or {}
    try:
        return BBox.from_corners(
            float(box["xmin"]),
            float(box["ymin"]),
            float(box["xmax"]),
            float(box["ymax"]),
            width,
            height,
        )
    except (KeyError, TypeError, ValueError):
        return None


def map_plate_results(
    results: Sequence[Dict[str, Any]], width: int, height: int, min_score: float = 0.3
) -> List[Detection]:
    detections: List[Detection] = []
    for r in results:
        score = float(r.get("score", 0.0))
        if score <= min_score:
            continue
        bbox = _box_to_bbox(r, width, height)
        if bbox is None:
            continue
        detections.append(
            Detection(
                type=DetectionType.LICENSE_PLATE,
                bbox=bbox,
                confidence=score,
                label=f"License Plate ({round(score * 100)}%)",
            )
        )
    return detections


def map_document_results(
    results: Sequence[Dict[str, Any]],
    width: int,
    height: int,
    labels: Sequence[str],
    min_score: float = 0.5,
) -> List[Detection]:
    allowed = {label.lower() for label in labels}
    detections: List[Detection] = []
    for r in results:
        label = str(r.get("label", ""))
        score = float(r.get("score", 0.0))
        if label.lower() not in allowed or score <= min_score:
            continue
        bbox = _box_to_bbox(r, width, height)
        if bbox is None:
            continue
        detections.append(
            Detection(type=DetectionType.DOCUMENT, bbox=bbox, confidence=score, label=label)
        )
    return detections


class DetectorExecutor:
    def __init__(
        self,
        loader: Optional[ModelLoader] = None,
        cache: Optional[ModelCache] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.loader = loader or hub_model_loader(self.settings)
        self.cache = cache or get_model_cache()
        self.inbox: "queue.Queue[Any]" = queue.Queue()
        self.outbox: "queue.Queue[ExecutorMessage]" = queue.Queue()
        self._deferred: Deque[Any] = deque()
        self._thread: Optional[threading.Thread] = None
        self._active: Optional[str] = None
        self._cancelled = False
        self._ack_sent = False

    # --- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(
            target=self._serve, name="redactr-detector-executor", daemon=True
        )
        self._thread.start()

    def post(self, message: Any) -> None:
        self.start()
        self.inbox.put(message)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        if self._thread is None:
            return
        self.inbox.put(Shutdown())
        self._thread.join(timeout)
        self._thread = None

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def model_key(self, detection_type: DetectionType) -> str:
        if detection_type == DetectionType.LICENSE_PLATE:
            return self.settings.plate_model
        if detection_type == DetectionType.DOCUMENT:
            return self.settings.document_model
        raise ValueError(f"{detection_type.value} is not handled by the executor")

    def is_loaded(self, detection_type: DetectionType) -> bool:
        return self.cache.is_loaded(self.model_key(detection_type))

    # --- thread body --------------------------------------------------------

    def _serve(self) -> None:
        while True:
            message = self._deferred.popleft() if self._deferred else self.inbox.get()
            if isinstance(message, Shutdown):
                return
            if isinstance(message, DetectRequest):
                try:
                    self._run(message)
                except Exception as exc:
                    logger.error(
                        "Detection worker crashed",
                        extra={"request_id": message.request_id},
                        exc_info=exc,
                    )
                    self._emit(Error(message.request_id, "Detection worker crashed"))
                finally:
                    self._active = None
            elif isinstance(message, CancelRequest):
                # Nothing running for this id; the run already finished.
                logger.debug("Ignoring cancel for inactive request", extra={"request_id": message.request_id})
            else:
                logger.warning("Unknown executor request", extra={"kind": type(message).__name__})

    def _emit(self, message: ExecutorMessage) -> None:
        self.outbox.put(message)

    def _poll_cancel(self) -> bool:
        # a cancel deferred while an earlier run was active may target this one
        for message in list(self._deferred):
            if isinstance(message, CancelRequest) and message.request_id == self._active:
                self._deferred.remove(message)
                self._cancelled = True
        while True:
            try:
                message = self.inbox.get_nowait()
            except queue.Empty:
                break
            if isinstance(message, CancelRequest) and message.request_id == self._active:
                self._cancelled = True
            elif isinstance(message, Shutdown):
                self._cancelled = True
                self._deferred.append(message)
            else:
                self._deferred.append(message)
        if self._cancelled and not self._ack_sent and self._active is not None:
            self._ack_sent = True
            logger.info("Detection cancelled", extra={"request_id": self._active})
            self._emit(Cancelled(self._active))
        return self._cancelled

    def _announce_downloads_done(self, rid: str) -> None:
        self._emit(DownloadProgress(rid, 100.0, "AI models downloaded successfully!"))
        self._emit(DownloadComplete(rid))

    def _run(self, req: DetectRequest) -> None:
        self._active = req.request_id
        self._cancelled = False
        self._ack_sent = False
        rid = req.request_id
        enabled = set(req.enabled_types)
        logger.info(
            "Detection run started",
            extra={"request_id": rid, "types": [t.value for t in req.enabled_types]},
        )

        if req.is_first_run:
            self._emit(DownloadProgress(rid, 0.0, "Preparing to download AI models..."))
        else:
            self._emit(Progress(rid, 0.0, "Starting detection..."))

        if DetectionType.FACE in enabled and not self._poll_cancel():
            self._emit(RunInContext(rid, DetectionType.FACE))

        todo = [t for t in EXECUTOR_TYPES if t in enabled]
        pending = [t for t in todo if not self.is_loaded(t)]
        ranges = download_ranges(pending)

        image: Optional[Image.Image] = None
        for detection_type in todo:
            if self._poll_cancel():
                return
            if image is None:
                image = req.image.to_pil("RGB")
            try:
                model = self._load_model(
                    rid,
                    detection_type,
                    ranges.get(detection_type),
                    last_download=bool(pending) and detection_type == pending[-1],
                )
                if self._poll_cancel():
                    return
                detections = self._infer(rid, detection_type, model, image)
            except ExecutionError as exc:
                logger.error(
                    "Detector failed",
                    extra={"request_id": rid, "type": exc.detection_type},
                    exc_info=exc,
                )
                detections = []
            if self._poll_cancel():
                return
            if detections:
                self._emit(Results(rid, tuple(detections)))

        if req.is_first_run and not pending and not self._poll_cancel():
            self._announce_downloads_done(rid)

        if DetectionType.TEXT in enabled and not self._poll_cancel():
            self._emit(RunInContext(rid, DetectionType.TEXT))

        if self._poll_cancel():
            return
        self._emit(Progress(rid, 100.0, "Detection complete"))
        self._emit(Complete(rid))
        logger.info("Detection run finished", extra={"request_id": rid})

    def _load_model(
        self,
        rid: str,
        detection_type: DetectionType,
        download_range: Optional[Tuple[float, float]],
        last_download: bool,
    ) -> ObjectDetector:
        spec = TYPE_SPECS[detection_type]
        key = self.model_key(detection_type)
        on_progress: Callable[[float], None]
        if download_range is not None:
            lo, hi = download_range
            self._emit(DownloadProgress(rid, lo, spec.download_stage))

            def on_progress(fraction: float) -> None:
                pct = lo + (hi - lo) * max(0.0, min(1.0, fraction))
                self._emit(DownloadProgress(rid, pct, f"{spec.download_stage} {round(pct)}%"))

        else:
            self._emit(Progress(rid, spec.load_progress, spec.load_stage))

            def on_progress(fraction: float) -> None:
                return None

        was_loaded = self.cache.is_loaded(key)
        try:
            model = self.cache.get_or_create(
                key, lambda: self.loader(detection_type, key, on_progress)
            )
        except Exception as exc:
            raise ExecutionError(detection_type.value, f"Failed to load model: {exc}") from exc
        finally:
            # The bar must leave the download phase even when a model fails.
            if last_download and not self._cancelled:
                self._announce_downloads_done(rid)
        if not was_loaded:
            self._emit(ModelLoaded(rid, detection_type))
        return model

    def _infer(
        self,
        rid: str,
        detection_type: DetectionType,
        model: ObjectDetector,
        image: Image.Image,
    ) -> List[Detection]:
        spec = TYPE_SPECS[detection_type]
        self._emit(Progress(rid, spec.detect_progress, spec.detect_stage))
        try:
            raw = model(image)
            if detection_type == DetectionType.LICENSE_PLATE:
                return map_plate_results(raw, image.width, image.height)
            return map_document_results(
                raw, image.width, image.height, self.settings.document_labels
            )
        except Exception as exc:
            raise ExecutionError(detection_type.value, str(exc)) from exc


__all__ = [
    "ObjectDetector",
    "ModelLoader",
    "TypeSpec",
    "TYPE_SPECS",
    "download_ranges",
    "HuggingFaceDetector",
    "hub_model_loader",
    "map_plate_results",
    "map_document_results",
    "DetectorExecutor",
]

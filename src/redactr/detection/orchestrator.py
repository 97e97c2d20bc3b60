"""Lifecycle of a detection run.

The orchestrator lives on the caller's (UI) thread. It validates requests,
hands work to the :class:`DetectorExecutor`, drains the executor's outbox with
:meth:`DetectionOrchestrator.pump` / :meth:`DetectionOrchestrator.wait` and runs
device-bound detectors (face, text) itself when the executor asks for them.

State machine::

    idle -> downloading (optional) -> detecting -> completed | error | cancelled

A run is ``completed`` only once the executor reported completion *and* every
requested in-context detector has reported back.
"""

from __future__ import annotations

import copy
import math
import queue
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Union

from redactr.backend import Backend, probe
from redactr.collaborators import RedactionCommand, RedactionStyle, Region
from redactr.errors import ExecutionError, ValidationError
from redactr.image import ImageBuffer
from redactr.logging import get_logger
from redactr.settings import Settings, get_settings

from .base import InContextDetector
from .executor import DetectorExecutor
from .face import FaceDetector
from .text import TextDetector
from .types import (
    ALL_TYPES,
    EXECUTOR_TYPES,
    IN_CONTEXT_TYPES,
    Cancelled,
    Complete,
    Detection,
    DetectionType,
    DetectRequest,
    CancelRequest,
    DownloadComplete,
    DownloadProgress,
    Error,
    ExecutorMessage,
    ModelLoaded,
    Progress,
    Results,
    RunInContext,
    new_id,
)

logger = get_logger(__name__)

# Approximate download sizes in MB, for the consent prompt.
MODEL_SIZES_MB: Dict[DetectionType, float] = {
    DetectionType.FACE: 0.3,
    DetectionType.TEXT: 5.0,
    DetectionType.LICENSE_PLATE: 25.0,
    DetectionType.DOCUMENT: 42.0,
}


class RunStatus(str, Enum):
    IDLE = "idle"
    DOWNLOADING = "downloading"
    DETECTING = "detecting"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass
class DetectionRun:
    status: RunStatus = RunStatus.IDLE
    download_progress: float = 0.0
    progress: float = 0.0
    current_stage: str = ""
    results: List[Detection] = field(default_factory=list)
    models_loaded: Dict[DetectionType, bool] = field(
        default_factory=lambda: {t: False for t in ALL_TYPES}
    )
    backend: Optional[Backend] = None
    enabled_types: List[DetectionType] = field(default_factory=lambda: list(ALL_TYPES))
    request_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in (RunStatus.DOWNLOADING, RunStatus.DETECTING)


Listener = Callable[[ExecutorMessage], None]


def _coerce_types(types: Iterable[Union[str, DetectionType]]) -> List[DetectionType]:
    out: List[DetectionType] = []
    for t in types:
        try:
            dt = DetectionType(t)
        except ValueError as exc:
            raise ValidationError(f"Unknown detection type: {t!r}") from exc
        if dt not in out:
            out.append(dt)
    return out


class DetectionOrchestrator:
    def __init__(
        self,
        executor: Optional[DetectorExecutor] = None,
        in_context_detectors: Optional[Sequence[InContextDetector]] = None,
        backend_probe: Callable[[], Backend] = probe,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.executor = executor or DetectorExecutor(settings=self.settings)
        if in_context_detectors is None:
            in_context_detectors = [
                FaceDetector(settings=self.settings),
                TextDetector(settings=self.settings),
            ]
        self._in_context: Dict[DetectionType, InContextDetector] = {
            d.detection_type: d for d in in_context_detectors
        }
        self._backend_probe = backend_probe
        self._state = DetectionRun()
        self._listeners: List[Listener] = []
        self._image: Optional[ImageBuffer] = None
        self._pending_in_context: Set[DetectionType] = set()
        self._executor_done = False
        self._cancel_requested = False
        self._handlers: Dict[type, Callable[[ExecutorMessage], None]] = {
            DownloadProgress: self._on_download_progress,
            DownloadComplete: self._on_download_complete,
            Progress: self._on_progress,
            Results: self._on_results,
            ModelLoaded: self._on_model_loaded,
            RunInContext: self._on_run_in_context,
            Complete: self._on_complete,
            Error: self._on_error,
            Cancelled: self._on_cancelled,
        }

    # --- state & listeners --------------------------------------------------

    @property
    def state(self) -> DetectionRun:
        """A snapshot of the current run; mutating it has no effect."""
        return copy.deepcopy(self._state)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, message: ExecutorMessage) -> None:
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception as exc:
                logger.warning(
                    "Detection listener failed",
                    extra={"kind": type(message).__name__},
                    exc_info=exc,
                )

    def backend(self) -> Backend:
        if self._state.backend is None:
            self._state.backend = self._backend_probe()
        return self._state.backend

    # --- model bookkeeping --------------------------------------------------

    def _current_models_loaded(self) -> Dict[DetectionType, bool]:
        loaded = dict(self._state.models_loaded)
        for t in EXECUTOR_TYPES:
            if self.executor.is_loaded(t):
                loaded[t] = True
        for t in IN_CONTEXT_TYPES:
            detector = self._in_context.get(t)
            if detector is None or detector.is_ready:
                loaded[t] = True
        return loaded

    def needs_model_download(
        self, types: Optional[Iterable[Union[str, DetectionType]]] = None
    ) -> bool:
        wanted = _coerce_types(types) if types is not None else self._state.enabled_types
        return any(not self._state.models_loaded.get(t, False) for t in wanted)

    def estimated_download_size(
        self, types: Optional[Iterable[Union[str, DetectionType]]] = None
    ) -> float:
        wanted = _coerce_types(types) if types is not None else self._state.enabled_types
        return sum(
            MODEL_SIZES_MB[t] for t in wanted if not self._state.models_loaded.get(t, False)
        )

    # --- run control --------------------------------------------------------

    def start_detection(
        self,
        image: Optional[ImageBuffer],
        enabled_types: Iterable[Union[str, DetectionType]],
        consent_given: bool = False,
    ) -> str:
        """Validate and launch a run; return its request id.

        Raises
        ------
        ValidationError
            If there is no image, no enabled type, a run is already active, or
            a model download is needed without consent. State is untouched.
        """
        if image is None:
            raise ValidationError("No image loaded")
        types = _coerce_types(enabled_types)
        if not types:
            raise ValidationError("No detection types enabled")
        if self._state.is_active:
            raise ValidationError("Detection or download already in progress")

        models_loaded = self._current_models_loaded()
        needs_download = any(not models_loaded.get(t, False) for t in types)
        if needs_download and not consent_given:
            raise ValidationError("Please confirm model download first")

        backend = self.backend()
        request_id = new_id()
        self._state = DetectionRun(
            status=RunStatus.DOWNLOADING if needs_download else RunStatus.DETECTING,
            current_stage="Downloading AI models..." if needs_download else "Initializing...",
            models_loaded=models_loaded,
            backend=backend,
            enabled_types=types,
            request_id=request_id,
        )
        self._image = image
        self._pending_in_context = {t for t in types if t in self._in_context}
        self._executor_done = False
        self._cancel_requested = False

        logger.info(
            "Starting detection",
            extra={
                "request_id": request_id,
                "types": [t.value for t in types],
                "download": needs_download,
                "backend": backend.value,
            },
        )
        self.executor.post(
            DetectRequest(
                request_id=request_id,
                image=image,
                enabled_types=tuple(types),
                is_first_run=needs_download,
            )
        )
        return request_id

    def cancel_detection(self) -> bool:
        """Ask the executor to stop the active run. Returns False if none is active."""
        rid = self._state.request_id
        if not self._state.is_active or rid is None or self._cancel_requested:
            return False
        self._cancel_requested = True
        logger.info("Cancelling detection", extra={"request_id": rid})
        self.executor.post(CancelRequest(rid))
        if self._executor_done:
            # The executor already finished; no acknowledgement will come.
            self._finish(RunStatus.CANCELLED)
        return True

    def on_executor_message(self, message: ExecutorMessage) -> bool:
        """Apply one executor message. Returns False when it was discarded."""
        handler = self._handlers.get(type(message))
        if handler is None:
            raise TypeError(f"Unhandled executor message: {type(message).__name__}")
        if not self._state.is_active or message.request_id != self._state.request_id:
            logger.debug(
                "Discarding stale message",
                extra={"kind": type(message).__name__, "request_id": message.request_id},
            )
            return False
        if self._cancel_requested and not isinstance(message, (Cancelled, Complete, Error)):
            return False
        handler(message)
        self._notify(message)
        return True

    def pump(self, timeout: Optional[float] = None) -> int:
        """Dispatch queued executor messages on this thread.

        With ``timeout`` set, waits up to that long for the first message.
        Returns the number of messages taken from the queue.
        """
        handled = 0
        while True:
            try:
                if handled == 0 and timeout:
                    message = self.executor.outbox.get(timeout=timeout)
                else:
                    message = self.executor.outbox.get_nowait()
            except queue.Empty:
                return handled
            handled += 1
            self.on_executor_message(message)

    def wait(self, timeout: Optional[float] = None) -> RunStatus:
        """Pump until the run reaches a terminal state or ``timeout`` elapses."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while self._state.is_active:
            remaining = 0.1 if deadline is None else min(0.1, deadline - time.monotonic())
            if remaining <= 0:
                break
            self.pump(timeout=remaining)
            if self._state.is_active and not self.executor.is_alive and self.executor.outbox.empty():
                self._finish(RunStatus.ERROR, "Detection worker crashed")
        return self._state.status

    # --- message handlers ---------------------------------------------------

    def _on_download_progress(self, message: DownloadProgress) -> None:
        self._state.download_progress = max(0.0, min(100.0, message.progress))
        self._state.current_stage = message.stage

    def _on_download_complete(self, message: DownloadComplete) -> None:
        self._state.download_progress = 100.0
        if self._state.status == RunStatus.DOWNLOADING:
            self._state.status = RunStatus.DETECTING

    def _on_progress(self, message: Progress) -> None:
        self._state.progress = max(0.0, min(100.0, message.progress))
        self._state.current_stage = message.stage

    def _on_results(self, message: Results) -> None:
        self._state.results.extend(d.model_copy() for d in message.detections)

    def _on_model_loaded(self, message: ModelLoaded) -> None:
        self._state.models_loaded[message.model_type] = True

    def _on_run_in_context(self, message: RunInContext) -> None:
        detection_type = message.detection_type
        if detection_type not in self._pending_in_context:
            return
        detector = self._in_context[detection_type]
        rid = message.request_id

        def on_progress(pct: float, stage: str) -> None:
            progress = Progress(rid, pct, stage)
            self._on_progress(progress)
            self._notify(progress)

        detections: List[Detection] = []
        try:
            detections = detector.detect(self._image, on_progress=on_progress)
            self._state.models_loaded[detection_type] = True
        except Exception as exc:
            err = ExecutionError(detection_type.value, str(exc))
            logger.error(
                "In-context detector failed",
                extra={"request_id": rid, "type": err.detection_type},
                exc_info=exc,
            )
        self._pending_in_context.discard(detection_type)
        if detections and self._state.is_active and not self._cancel_requested:
            batch = Results(rid, tuple(detections))
            self._on_results(batch)
            self._notify(batch)
        self._maybe_finish()

    def _on_complete(self, message: Complete) -> None:
        self._executor_done = True
        if self._cancel_requested:
            self._finish(RunStatus.CANCELLED)
            return
        self._maybe_finish()

    def _on_error(self, message: Error) -> None:
        if self._cancel_requested:
            self._finish(RunStatus.CANCELLED)
            return
        self._finish(RunStatus.ERROR, message.error)

    def _on_cancelled(self, message: Cancelled) -> None:
        self._finish(RunStatus.CANCELLED)

    def _maybe_finish(self) -> None:
        if self._state.is_active and self._executor_done and not self._pending_in_context:
            self._finish(RunStatus.COMPLETED)

    def _finish(self, status: RunStatus, error: Optional[str] = None) -> None:
        s = self._state
        s.status = status
        if status == RunStatus.COMPLETED:
            s.progress = 100.0
            s.current_stage = "Complete"
        elif status == RunStatus.ERROR:
            s.error = error or "Detection failed"
            s.current_stage = "Error"
        elif status == RunStatus.CANCELLED:
            s.results = []
            s.progress = 0.0
            s.download_progress = 0.0
            s.current_stage = ""
        self._image = None
        self._pending_in_context = set()
        self._cancel_requested = False
        logger.info(
            "Detection finished",
            extra={
                "request_id": s.request_id,
                "status": status.value,
                "results": len(s.results),
                "error": s.error,
            },
        )

    # --- results & selection ------------------------------------------------

    def clear_results(self) -> None:
        if self._state.is_active:
            self.cancel_detection()
            self._finish(RunStatus.CANCELLED)
        s = self._state
        s.status = RunStatus.IDLE
        s.results = []
        s.progress = 0.0
        s.download_progress = 0.0
        s.current_stage = ""
        s.error = None

    def _set_selected(self, predicate: Callable[[Detection], bool], value: Optional[bool]) -> int:
        changed = 0
        updated: List[Detection] = []
        for d in self._state.results:
            if predicate(d):
                new_value = (not d.selected) if value is None else value
                updated.append(d.model_copy(update={"selected": new_value}))
                changed += 1
            else:
                updated.append(d)
        self._state.results = updated
        return changed

    def toggle_selection(self, detection_id: str) -> bool:
        return self._set_selected(lambda d: d.id == detection_id, None) > 0

    def select_all(self) -> None:
        self._set_selected(lambda d: True, True)

    def deselect_all(self) -> None:
        self._set_selected(lambda d: True, False)

    def select_by_type(self, detection_type: Union[str, DetectionType]) -> None:
        dt = DetectionType(detection_type)
        self._set_selected(lambda d: d.type == dt, True)

    def selected_detections(self) -> List[Detection]:
        return [d.model_copy() for d in self._state.results if d.selected]

    def detections_by_type(self) -> Dict[DetectionType, List[Detection]]:
        by_type: Dict[DetectionType, List[Detection]] = {t: [] for t in ALL_TYPES}
        for d in self._state.results:
            by_type[d.type].append(d.model_copy())
        return by_type

    def detection_counts(self) -> Dict[str, int]:
        counts = {t.value: len(ds) for t, ds in self.detections_by_type().items()}
        counts["total"] = sum(counts.values())
        return counts

    def to_redaction_commands(
        self,
        detections: Optional[Sequence[Detection]] = None,
        style: RedactionStyle = RedactionStyle.SOLID,
        intensity: int = 50,
        color: str = "#000000",
    ) -> List[RedactionCommand]:
        """Turn detections (default: the selected ones) into rect commands."""
        chosen = self.selected_detections() if detections is None else list(detections)
        commands: List[RedactionCommand] = []
        for d in chosen:
            x0 = math.floor(d.bbox.x)
            y0 = math.floor(d.bbox.y)
            x1 = math.ceil(d.bbox.x + d.bbox.width)
            y1 = math.ceil(d.bbox.y + d.bbox.height)
            commands.append(
                RedactionCommand(
                    type="rect",
                    style=RedactionStyle(style),
                    region=Region(x=x0, y=y0, width=max(1, x1 - x0), height=max(1, y1 - y0)),
                    points=None,
                    intensity=max(1, min(100, int(intensity))),
                    color=color,
                )
            )
        return commands

    # --- teardown -----------------------------------------------------------

    def close(self) -> None:
        """Stop the executor and release every model this orchestrator used."""
        if self._state.is_active:
            self.cancel_detection()
            self._finish(RunStatus.CANCELLED)
        self.executor.stop()
        for t in EXECUTOR_TYPES:
            self.executor.cache.release(self.executor.model_key(t))
        for detector in self._in_context.values():
            detector.close()
        self._state.models_loaded = {t: False for t in ALL_TYPES}


__all__ = ["MODEL_SIZES_MB", "RunStatus", "DetectionRun", "DetectionOrchestrator"]

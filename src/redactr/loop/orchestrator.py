"""Evaluate -> plan -> redact convergence loop.

Each step sends the current image to the evaluator model. If the privacy
("vagueness") score reaches the target the loop stops; otherwise the planner
model proposes rectangles, which are burned into the image one by one through
the injected pixel primitive and recorded in the undo history. The loop runs
strictly sequentially, one remote call at a time, and gives up after
``max_steps`` steps.

State machine::

    idle -> evaluating -> completed
                       -> planning -> redacting -> evaluating ...
    any  -> cancelled | error
    last step done -> max_steps
"""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass
from functools import partial
from typing import Callable, List, Optional

from redactr.collaborators import (
    HistoryStore,
    ImageStore,
    RectRedactor,
    RedactionCommand,
    RedactionOptions,
    Region,
)
from redactr.errors import CancellationError, RemoteError, RemoteErrorKind, ValidationError
from redactr.image import ImageBuffer
from redactr.logging import get_logger
from redactr.settings import Settings, get_settings

from .client import CancelToken
from .evaluator import evaluate
from .keystore import SessionKeyStore
from .planner import plan
from .types import (
    Evaluation,
    Iteration,
    LoopState,
    LoopStatus,
    Redaction,
    RedactionPlan,
)

logger = get_logger(__name__)

MIN_STEPS = 1
MAX_STEPS = 10
REDACTION_COLOR = "#000000"

Evaluator = Callable[[str, ImageBuffer, CancelToken], Evaluation]
Planner = Callable[[str, ImageBuffer, Evaluation, CancelToken], RedactionPlan]
Listener = Callable[[LoopState], None]


@dataclass(frozen=True)
class LoopProgress:
    step: int
    max_steps: int
    score: Optional[float]
    target_score: float
    status: LoopStatus


def _clamp_steps(value: int) -> int:
    return max(MIN_STEPS, min(MAX_STEPS, int(value)))


def _clamp_score(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def _checkpoint(token: CancelToken) -> None:
    if token.cancelled:
        raise CancellationError("Loop cancelled")


class LoopOrchestrator:
    """Drives the remote evaluator / planner against the editor's image.

    Parameters
    ----------
    image_store, history, redactor:
        The editing surface: current image, undo stack and the rectangle
        redaction primitive.
    key_store:
        Where the API key lives for the session. Its value is loaded on
        construction.
    evaluator, planner:
        Remote model callables; default to :func:`evaluate` / :func:`plan`.
    """

    def __init__(
        self,
        image_store: ImageStore,
        history: HistoryStore,
        redactor: RectRedactor,
        key_store: Optional[SessionKeyStore] = None,
        evaluator: Optional[Evaluator] = None,
        planner: Optional[Planner] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.image_store = image_store
        self.history = history
        self.redactor = redactor
        self.key_store = key_store or SessionKeyStore()
        self.evaluator: Evaluator = evaluator or partial(evaluate, settings=self.settings)
        self.planner: Planner = planner or partial(plan, settings=self.settings)
        self._lock = threading.RLock()
        self._state = LoopState(
            api_key=self.key_store.get(),
            target_score=_clamp_score(self.settings.target_score),
            max_steps=_clamp_steps(self.settings.max_steps),
        )
        self._token: Optional[CancelToken] = None
        self._thread: Optional[threading.Thread] = None
        self._live_runs = 0
        self._listeners: List[Listener] = []

    # --- state & listeners --------------------------------------------------

    @property
    def state(self) -> LoopState:
        """A snapshot of the loop state; mutating it has no effect."""
        with self._lock:
            return copy.deepcopy(self._state)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _update(self, token: Optional[CancelToken] = None, **changes) -> bool:
        """Apply ``changes`` and notify listeners.

        With ``token``, nothing happens unless that run still owns the state.
        """
        with self._lock:
            if token is not None and self._token is not token:
                return False
            for name, value in changes.items():
                setattr(self._state, name, value)
            snapshot = copy.deepcopy(self._state)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as exc:
                logger.warning("Loop listener failed", exc_info=exc)
        return True

    def progress(self) -> LoopProgress:
        with self._lock:
            s = self._state
            return LoopProgress(
                step=s.current_step,
                max_steps=s.max_steps,
                score=s.current_score,
                target_score=s.target_score,
                status=s.status,
            )

    @property
    def has_api_key(self) -> bool:
        return bool(self._state.api_key)

    @property
    def can_start(self) -> bool:
        """True with a key, no running loop and no abandoned run still unwinding."""
        with self._lock:
            return self.has_api_key and not self._state.is_running and self._live_runs == 0

    # --- configuration ------------------------------------------------------

    def set_api_key(self, api_key: str) -> None:
        api_key = (api_key or "").strip()
        if not api_key:
            raise ValidationError("API key must not be empty")
        self.key_store.set(api_key)
        self._update(api_key=api_key, error=None)

    def clear_api_key(self) -> None:
        """Disconnect: forget the key and stop any running loop."""
        self._abandon()
        self.key_store.clear()
        self._update(api_key=None, is_running=False, status=LoopStatus.IDLE)

    def set_target_score(self, score: float) -> None:
        self._update(target_score=_clamp_score(score))

    def set_max_steps(self, steps: int) -> None:
        self._update(max_steps=_clamp_steps(steps))

    def reset(self) -> None:
        """Return to idle, keeping the key and the configured thresholds."""
        self._abandon()
        self._update(
            is_running=False,
            status=LoopStatus.IDLE,
            current_step=0,
            current_score=None,
            iterations=[],
            error=None,
        )

    # --- run control --------------------------------------------------------

    def _begin(self) -> CancelToken:
        with self._lock:
            if not self.has_api_key:
                raise ValidationError("No API key configured")
            if self.image_store.current is None:
                raise ValidationError("No image loaded")
            if self._state.is_running:
                raise ValidationError("Loop already running")
            if self._live_runs:
                raise ValidationError("Previous loop is still stopping")
            token = CancelToken()
            self._token = token
            self._live_runs += 1
            self._update(
                is_running=True,
                status=LoopStatus.EVALUATING,
                current_step=0,
                current_score=None,
                iterations=[],
                error=None,
            )
        logger.info(
            "Loop started",
            extra={
                "target_score": self._state.target_score,
                "max_steps": self._state.max_steps,
            },
        )
        return token

    def start_loop(self) -> LoopStatus:
        """Run the loop to a terminal status on this thread and return it.

        Raises
        ------
        ValidationError
            Without an API key, without an image, while a loop is running or
            while an abandoned run has not unwound yet.
        """
        token = self._begin()
        return self._run(token)

    def run_in_background(self) -> threading.Thread:
        """Validate like :meth:`start_loop`, then run the loop on a daemon thread."""
        token = self._begin()
        thread = threading.Thread(
            target=self._run, args=(token,), name="redactr-loop", daemon=True
        )
        self._thread = thread
        thread.start()
        return thread

    def wait(self, timeout: Optional[float] = None) -> LoopStatus:
        """Join a background run started with :meth:`run_in_background`."""
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
            if not thread.is_alive():
                self._thread = None
        return self._state.status

    def cancel_loop(self) -> bool:
        """Abort the running loop, including its in-flight remote call."""
        with self._lock:
            token = self._token
        if token is None or token.cancelled:
            return False
        logger.info("Cancelling loop", extra={"step": self._state.current_step})
        token.cancel()
        return True

    def _abandon(self) -> None:
        # cancel and detach so the run cannot overwrite the state set next
        self.cancel_loop()
        with self._lock:
            self._token = None

    def _run(self, token: CancelToken) -> LoopStatus:
        try:
            return self._steps(token)
        finally:
            with self._lock:
                self._live_runs -= 1

    def _steps(self, token: CancelToken) -> LoopStatus:
        with self._lock:
            api_key = self._state.api_key or ""
            max_steps = self._state.max_steps
            target = self._state.target_score
        try:
            for step in range(1, max_steps + 1):
                _checkpoint(token)
                image = self.image_store.current
                if image is None:
                    raise RuntimeError("Image was cleared while the loop was running")
                self._update(token, current_step=step, status=LoopStatus.EVALUATING)

                evaluation = self.evaluator(api_key, image, token)
                _checkpoint(token)
                self._update(token, current_score=evaluation.vagueness_score)

                if evaluation.vagueness_score >= target:
                    self._record(token, Iteration(step=step, evaluation=evaluation))
                    return self._terminate(token, LoopStatus.COMPLETED)

                self._update(token, status=LoopStatus.PLANNING)
                redaction_plan = self.planner(api_key, image, evaluation, token)
                _checkpoint(token)

                self._update(token, status=LoopStatus.REDACTING)
                applied = self._apply(token, redaction_plan.redactions)
                self._record(
                    token,
                    Iteration(
                        step=step,
                        evaluation=evaluation,
                        plan=redaction_plan,
                        applied_redactions=applied,
                    ),
                )
            return self._terminate(token, LoopStatus.MAX_STEPS)
        except CancellationError:
            return self._terminate(token, LoopStatus.CANCELLED)
        except RemoteError as err:
            if token.cancelled:
                return self._terminate(token, LoopStatus.CANCELLED)
            if err.kind == RemoteErrorKind.AUTH and self._update(token, api_key=None):
                self.key_store.clear()
            logger.error(
                "Loop failed on remote call",
                extra={"kind": err.kind.value, "retryable": err.retryable},
            )
            return self._terminate(token, LoopStatus.ERROR, err.message)
        except Exception as exc:
            if token.cancelled:
                return self._terminate(token, LoopStatus.CANCELLED)
            logger.error("Loop failed", exc_info=exc)
            return self._terminate(token, LoopStatus.ERROR, str(exc) or "An unknown error occurred")

    def _apply(self, token: CancelToken, redactions: List[Redaction]) -> List[Redaction]:
        applied: List[Redaction] = []
        for r in redactions:
            _checkpoint(token)
            image = self.image_store.current
            if image is None:
                logger.warning("No image to redact; skipping", extra={"reason": r.reason})
                continue
            options = RedactionOptions(style=r.style, intensity=r.intensity, color=REDACTION_COLOR)
            try:
                redacted = self.redactor(image, r.x, r.y, r.width, r.height, options)
            except Exception as exc:
                logger.warning(
                    "Failed to apply redaction",
                    extra={"x": r.x, "y": r.y, "width": r.width, "height": r.height},
                    exc_info=exc,
                )
                continue
            command = RedactionCommand(
                type="rect",
                style=r.style,
                region=Region(x=r.x, y=r.y, width=r.width, height=r.height),
                points=None,
                intensity=r.intensity,
                color=REDACTION_COLOR,
            )
            # image and history only change while this run owns the loop
            with self._lock:
                if token.cancelled or self._token is not token:
                    raise CancellationError("Loop cancelled while redacting")
                self.image_store.update_current(redacted)
                self.history.push(command)
            applied.append(r)
        return applied

    def _record(self, token: CancelToken, iteration: Iteration) -> None:
        with self._lock:
            iterations = list(self._state.iterations) + [iteration]
        if not self._update(token, iterations=iterations):
            return
        logger.info(
            "Loop step recorded",
            extra={
                "step": iteration.step,
                "score": iteration.evaluation.vagueness_score,
                "applied": len(iteration.applied_redactions),
            },
        )

    def _terminate(
        self, token: CancelToken, status: LoopStatus, error: Optional[str] = None
    ) -> LoopStatus:
        with self._lock:
            if self._token is not token:
                return status
            self._token = None
        self._update(is_running=False, status=status, error=error)
        logger.info(
            "Loop finished",
            extra={"status": status.value, "step": self._state.current_step, "error": error},
        )
        return status


__all__ = ["LoopProgress", "LoopOrchestrator", "MIN_STEPS", "MAX_STEPS"]

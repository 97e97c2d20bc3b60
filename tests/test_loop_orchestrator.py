import threading

import pytest

from redactr.errors import RemoteError, RemoteErrorKind, ValidationError
from redactr.loop.keystore import KEY_NAME, SessionKeyStore
from redactr.loop.orchestrator import LoopOrchestrator
from redactr.loop.types import (
    Evaluation,
    LeakType,
    LoopStatus,
    Redaction,
    RedactionPlan,
    VisibleLeak,
)
from redactr.settings import Settings

from .fakes import FakeImageStore, black_box_redactor


def _evaluation(score, leaks=1):
    return Evaluation(
        vagueness_score=score,
        visible_leaks=[VisibleLeak(type=LeakType.FACE, description="face")] * leaks,
    )


def _plan(*boxes):
    return RedactionPlan(
        redactions=[
            Redaction(style="solid", x=x, y=y, width=w, height=h, intensity=70, reason="face")
            for x, y, w, h in boxes
        ]
    )


class _Scripted:
    """Returns (or raises) the queued items in order and records calls."""

    def __init__(self, *items):
        self.items = list(items)
        self.calls = 0

    def __call__(self, *args):
        self.calls += 1
        item = self.items.pop(0) if len(self.items) > 1 else self.items[0]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item()
        return item


def _loop(image_store, history, evaluator, planner=None, key="sk-test", redactor=black_box_redactor, **cfg):
    storage = {KEY_NAME: key} if key else {}
    return LoopOrchestrator(
        image_store,
        history,
        redactor,
        key_store=SessionKeyStore(storage),
        evaluator=evaluator,
        planner=planner or _Scripted(_plan()),
        settings=Settings(**cfg),
    )


def test_start_requires_key(image_store, history):
    loop = _loop(image_store, history, _Scripted(_evaluation(1.0)), key=None)
    with pytest.raises(ValidationError):
        loop.start_loop()
    assert loop.state.status == LoopStatus.IDLE
    assert not loop.can_start


def test_start_requires_image(history):
    loop = _loop(FakeImageStore(None), history, _Scripted(_evaluation(1.0)))
    with pytest.raises(ValidationError):
        loop.start_loop()
    assert loop.state.status == LoopStatus.IDLE


def test_high_first_score_completes_without_planning(image_store, history):
    evaluator = _Scripted(_evaluation(0.95))
    planner = _Scripted(_plan((0, 0, 10, 10)))
    loop = _loop(image_store, history, evaluator, planner)

    assert loop.start_loop() == LoopStatus.COMPLETED
    state = loop.state
    assert len(state.iterations) == 1
    assert state.iterations[0].plan is None
    assert state.iterations[0].applied_redactions == []
    assert state.current_score == 0.95
    assert not state.is_running
    assert planner.calls == 0
    assert history.commands == []


def test_redacts_until_target_reached(image_store, history):
    evaluator = _Scripted(_evaluation(0.2), _evaluation(0.8))
    planner = _Scripted(_plan((10, 10, 20, 20), (50, 50, 5, 5)))
    loop = _loop(image_store, history, evaluator, planner)

    assert loop.start_loop() == LoopStatus.COMPLETED
    state = loop.state
    assert [it.step for it in state.iterations] == [1, 2]
    assert len(state.iterations[0].applied_redactions) == 2
    assert len(history.commands) == 2
    cmd = history.commands[0]
    assert cmd.type == "rect"
    assert cmd.points is None
    assert cmd.color == "#000000"
    assert (cmd.region.x, cmd.region.y, cmd.region.width, cmd.region.height) == (10, 10, 20, 20)
    assert len(image_store.updates) == 2
    px = image_store.current.to_array()[15, 15].tolist()
    assert px == [0, 0, 0, 255]


def test_stops_at_max_steps(image_store, history):
    evaluator = _Scripted(_evaluation(0.1))
    planner = _Scripted(_plan((0, 0, 5, 5)))
    loop = _loop(image_store, history, evaluator, planner, max_steps=3)

    assert loop.start_loop() == LoopStatus.MAX_STEPS
    state = loop.state
    assert len(state.iterations) == 3
    assert evaluator.calls == 3
    assert state.current_step == 3


def test_failing_redaction_is_skipped(image_store, history):
    def flaky(image, x, y, width, height, options):
        if x == 0:
            raise RuntimeError("bad rect")
        return black_box_redactor(image, x, y, width, height, options)

    evaluator = _Scripted(_evaluation(0.1), _evaluation(0.9))
    planner = _Scripted(_plan((0, 0, 5, 5), (20, 20, 5, 5)))
    loop = _loop(image_store, history, evaluator, planner, redactor=flaky)

    assert loop.start_loop() == LoopStatus.COMPLETED
    applied = loop.state.iterations[0].applied_redactions
    assert [r.x for r in applied] == [20]
    assert len(history.commands) == 1


def test_auth_error_evicts_key(image_store, history):
    storage = {KEY_NAME: "sk-bad"}
    loop = LoopOrchestrator(
        image_store,
        history,
        black_box_redactor,
        key_store=SessionKeyStore(storage),
        evaluator=_Scripted(RemoteError(RemoteErrorKind.AUTH, "Invalid API key")),
        planner=_Scripted(_plan()),
        settings=Settings(),
    )
    assert loop.start_loop() == LoopStatus.ERROR
    state = loop.state
    assert state.error == "Invalid API key"
    assert state.api_key is None
    assert KEY_NAME not in storage
    assert not state.is_running


def test_rate_limit_keeps_key(image_store, history):
    error = RemoteError(RemoteErrorKind.RATE_LIMIT, "slow down", retryable=True)
    loop = _loop(image_store, history, _Scripted(error))
    assert loop.start_loop() == LoopStatus.ERROR
    assert loop.state.api_key == "sk-test"
    assert loop.state.error == "slow down"


def test_unexpected_exception_becomes_error(image_store, history):
    loop = _loop(image_store, history, _Scripted(_evaluation(0.1)), _Scripted(KeyError("boom")))
    assert loop.start_loop() == LoopStatus.ERROR
    assert loop.state.error
    assert not loop.state.is_running


def test_cancel_during_evaluation_skips_apply(image_store, history):
    holder = {}

    def evaluate_then_cancel():
        holder["loop"].cancel_loop()
        return _evaluation(0.1)

    planner = _Scripted(_plan((0, 0, 5, 5)))
    loop = _loop(image_store, history, _Scripted(evaluate_then_cancel), planner)
    holder["loop"] = loop

    assert loop.start_loop() == LoopStatus.CANCELLED
    assert planner.calls == 0
    assert history.commands == []
    assert loop.state.iterations == []


def test_background_run_can_be_cancelled(image_store, history):
    entered = threading.Event()
    release = threading.Event()

    def slow_evaluation():
        entered.set()
        release.wait(5)
        return _evaluation(0.1)

    loop = _loop(image_store, history, _Scripted(slow_evaluation))
    loop.run_in_background()
    assert entered.wait(5)
    assert loop.state.is_running
    assert not loop.can_start
    with pytest.raises(ValidationError):
        loop.start_loop()

    assert loop.cancel_loop() is True
    release.set()
    assert loop.wait(5) == LoopStatus.CANCELLED
    assert history.commands == []


def test_configuration_is_clamped(image_store, history):
    loop = _loop(image_store, history, _Scripted(_evaluation(1.0)))
    loop.set_max_steps(50)
    assert loop.state.max_steps == 10
    loop.set_max_steps(0)
    assert loop.state.max_steps == 1
    loop.set_target_score(1.5)
    assert loop.state.target_score == 1.0
    loop.set_target_score(-1)
    assert loop.state.target_score == 0.0


def test_reset_keeps_key_and_disconnect_clears_it(image_store, history):
    storage = {}
    loop = LoopOrchestrator(
        image_store,
        history,
        black_box_redactor,
        key_store=SessionKeyStore(storage),
        evaluator=_Scripted(_evaluation(0.99)),
        settings=Settings(),
    )
    loop.set_api_key("  sk-new  ")
    assert storage[KEY_NAME] == "sk-new"
    loop.start_loop()

    loop.reset()
    state = loop.state
    assert state.status == LoopStatus.IDLE
    assert state.iterations == []
    assert state.api_key == "sk-new"

    loop.clear_api_key()
    assert loop.state.api_key is None
    assert storage == {}
    with pytest.raises(ValidationError):
        loop.set_api_key("   ")


def test_progress_view(image_store, history):
    loop = _loop(image_store, history, _Scripted(_evaluation(0.8)), max_steps=4, target_score=0.75)
    loop.start_loop()
    progress = loop.progress()
    assert progress.step == 1
    assert progress.max_steps == 4
    assert progress.score == 0.8
    assert progress.target_score == 0.75
    assert progress.status == LoopStatus.COMPLETED


def test_reset_during_apply_leaves_no_trace(image_store, history, image):
    entered = threading.Event()
    release = threading.Event()

    def blocking_redactor(img, x, y, width, height, options):
        entered.set()
        release.wait(5)
        return black_box_redactor(img, x, y, width, height, options)

    loop = _loop(
        image_store,
        history,
        _Scripted(_evaluation(0.1)),
        _Scripted(_plan((0, 0, 5, 5), (10, 10, 5, 5))),
        redactor=blocking_redactor,
    )
    thread = loop.run_in_background()
    assert entered.wait(5)

    loop.reset()
    assert loop.state.status == LoopStatus.IDLE
    assert not loop.state.is_running
    assert loop.has_api_key
    assert not loop.can_start
    with pytest.raises(ValidationError):
        loop.start_loop()

    release.set()
    thread.join(5)
    assert not thread.is_alive()
    state = loop.state
    assert state.status == LoopStatus.IDLE
    assert state.iterations == []
    assert state.current_step == 0
    assert history.commands == []
    assert image_store.current is image
    assert loop.can_start


def test_cancel_between_redactions_stops_applying(image_store, history):
    holder = {}

    def redact_then_cancel(img, x, y, width, height, options):
        holder["loop"].cancel_loop()
        return black_box_redactor(img, x, y, width, height, options)

    loop = _loop(
        image_store,
        history,
        _Scripted(_evaluation(0.1)),
        _Scripted(_plan((0, 0, 5, 5), (10, 10, 5, 5))),
        redactor=redact_then_cancel,
    )
    holder["loop"] = loop
    assert loop.start_loop() == LoopStatus.CANCELLED
    assert history.commands == []
    assert image_store.updates == []
    assert loop.can_start

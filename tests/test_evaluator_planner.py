import orjson

from redactr.image import ImageBuffer
from redactr.loop.evaluator import evaluate
from redactr.loop.planner import (
    EXCELLENT_EXPLANATION,
    NO_LEAKS_EXPLANATION,
    format_feedback,
    plan,
)
from redactr.loop.types import Evaluation, LeakRegion, LeakType, VisibleLeak
from redactr.settings import Settings

CFG = Settings(evaluator_model="eval/model", planner_model="plan/model")


class _Client:
    def __init__(self, content):
        self.content = content
        self.calls = []

    def __call__(self, api_key, model, messages, options, cancel_token, settings=None):
        self.calls.append({"model": model, "messages": messages, "options": options})
        return self.content


def _leaky(score=0.3):
    return Evaluation(
        vagueness_score=score,
        visible_leaks=[
            VisibleLeak(
                type=LeakType.FACE,
                description="face of a woman",
                region=LeakRegion(x=10, y=20, width=30, height=40),
            )
        ],
        reasoning="face visible",
    )


def test_evaluate_sends_image_and_normalizes():
    client = _Client('```json\n{"vaguenessScore": 0.4, "visibleLeaks": [{"type": "face"}]}\n```')
    ev = evaluate("k", ImageBuffer.blank(8, 8), settings=CFG, client=client)
    assert ev.vagueness_score == 0.4
    assert ev.visible_leaks[0].description == "Unknown PII"
    call = client.calls[0]
    assert call["model"] == "eval/model"
    assert call["options"].temperature == 0.1
    assert call["options"].json_mode is True
    user = call["messages"][1]["content"]
    assert user[1]["image_url"]["url"].startswith("data:image/png;base64,")


def test_plan_skips_remote_call_without_leaks():
    client = _Client("{}")
    result = plan(
        "k", ImageBuffer.blank(8, 8), Evaluation(vagueness_score=0.2), settings=CFG, client=client
    )
    assert result.redactions == []
    assert result.explanation == NO_LEAKS_EXPLANATION
    assert client.calls == []


def test_plan_skips_remote_call_when_score_excellent():
    client = _Client("{}")
    result = plan("k", ImageBuffer.blank(8, 8), _leaky(0.92), settings=CFG, client=client)
    assert result.explanation == EXCELLENT_EXPLANATION
    assert client.calls == []


def test_plan_is_validated_against_image_size():
    raw = {"redactions": [{"style": "pixelate", "x": 40, "y": 40, "width": 100, "height": 100}]}
    client = _Client(orjson.dumps(raw).decode())
    result = plan("k", ImageBuffer.blank(50, 60), _leaky(), settings=CFG, client=client)
    r = result.redactions[0]
    assert (r.x, r.y, r.width, r.height) == (40, 40, 10, 20)
    system = client.calls[0]["messages"][0]["content"]
    assert "50x60 pixels" in system
    assert "0-49 for x, 0-59 for y" in system
    assert client.calls[0]["model"] == "plan/model"


def test_feedback_wording_follows_score():
    high = format_feedback(_leaky(0.75))
    assert "Privacy Score: 75%" in high
    assert "BE VERY CONSERVATIVE" in high
    assert "- face: face of a woman (approx. at x:10, y:20, 30x40)" in high

    moderate = format_feedback(_leaky(0.55))
    assert "moderate" in moderate
    assert "CONSERVATIVE" not in moderate

    none = format_feedback(Evaluation(vagueness_score=0.1))
    assert "No specific leaks identified" in none

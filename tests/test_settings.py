import json
import logging

import pytest

import redactr.settings as settings
from redactr.logging import JsonFormatter


def test_defaults_without_env():
    cfg = settings.get_settings()
    assert cfg.api_base_url == "https://openrouter.ai/api/v1"
    assert cfg.target_score == 0.7
    assert cfg.max_steps == 5
    assert cfg.document_labels == ["book", "laptop", "cell phone", "tv", "monitor"]
    assert cfg.allow_downloads is True
    assert cfg.ocr_psm == 3
    assert cfg.ocr_preprocess is False


def test_env_overrides_are_cached_until_reset(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("REDACTR_TARGET_SCORE", "0.85")
    monkeypatch.setenv("REDACTR_MAX_STEPS", "3")
    monkeypatch.setenv("REDACTR_DOCUMENT_LABELS", "book, laptop")
    monkeypatch.setenv("REDACTR_ALLOW_DOWNLOADS", "off")
    monkeypatch.setenv("REDACTR_OCR_PSM", "6")
    monkeypatch.setenv("REDACTR_OCR_PREPROCESS", "yes")
    settings.reset_settings_cache()
    cfg = settings.get_settings()
    assert cfg.target_score == 0.85
    assert cfg.max_steps == 3
    assert cfg.document_labels == ["book", "laptop"]
    assert cfg.allow_downloads is False
    assert cfg.ocr_psm == 6
    assert cfg.ocr_preprocess is True

    monkeypatch.setenv("REDACTR_MAX_STEPS", "7")
    assert settings.get_settings().max_steps == 3
    settings.reset_settings_cache()
    assert settings.get_settings().max_steps == 7


def test_bad_numbers_fall_back_to_defaults(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("REDACTR_REQUEST_TIMEOUT", "soon")
    monkeypatch.setenv("REDACTR_MAX_STEPS", "many")
    settings.reset_settings_cache()
    cfg = settings.get_settings()
    assert cfg.request_timeout == 120.0
    assert cfg.max_steps == 5


def test_json_formatter_merges_extra_fields():
    record = logging.LogRecord("redactr.test", logging.INFO, __file__, 1, "hello %s", ("x",), None)
    record.request_id = "abc"
    record.count = 3
    payload = json.loads(JsonFormatter().format(record))
    assert payload["message"] == "hello x"
    assert payload["level"] == "INFO"
    assert payload["request_id"] == "abc"
    assert payload["count"] == 3
    assert "args" not in payload

import os

import pytest

import redactr.settings as settings
from redactr.image import ImageBuffer

from .fakes import FakeHistory, FakeImageStore


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch: pytest.MonkeyPatch):
    for key in list(os.environ):
        if key.startswith("REDACTR_"):
            monkeypatch.delenv(key, raising=False)
    settings.reset_settings_cache()
    yield
    settings.reset_settings_cache()


@pytest.fixture
def image() -> ImageBuffer:
    return ImageBuffer.blank(100, 100)


@pytest.fixture
def image_store(image) -> FakeImageStore:
    return FakeImageStore(image)


@pytest.fixture
def history() -> FakeHistory:
    return FakeHistory()

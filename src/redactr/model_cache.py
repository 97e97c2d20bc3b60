"""Process-wide cache of loaded model handles.

Loading a detector is expensive (download + weights + device buffers), so each
model is created once per process and shared. Concurrent requests for the same
key block on a per-key lock and receive the instance built by whichever caller
got there first. ``release`` calls the handle's ``close()`` when it has one so
device resources are returned explicitly.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List, Optional

from redactr.logging import get_logger

logger = get_logger(__name__)


class ModelCache:
    def __init__(self) -> None:
        self._models: Dict[str, Any] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def is_loaded(self, key: str) -> bool:
        with self._guard:
            return key in self._models

    def peek(self, key: str) -> Optional[Any]:
        with self._guard:
            return self._models.get(key)

    def get_or_create(self, key: str, factory: Callable[[], Any]) -> Any:
        """Return the cached model for ``key``, building it with ``factory`` once."""
        model = self.peek(key)
        if model is not None:
            return model
        with self._lock_for(key):
            # Another thread may have finished loading while we waited.
            model = self.peek(key)
            if model is not None:
                return model
            logger.info("Loading model", extra={"model": key})
            model = factory()
            with self._guard:
                self._models[key] = model
            return model

    def release(self, key: str) -> bool:
        with self._guard:
            model = self._models.pop(key, None)
        if model is None:
            return False
        close = getattr(model, "close", None)
        if callable(close):
            try:
                close()
            except Exception as exc:  # pragma: no cover - depends on backend
                logger.warning("Failed to close model", extra={"model": key}, exc_info=exc)
        logger.info("Released model", extra={"model": key})
        return True

    def release_all(self) -> None:
        for key in self.keys():
            self.release(key)

    def keys(self) -> List[str]:
        with self._guard:
            return list(self._models.keys())


_default_cache = ModelCache()


def get_model_cache() -> ModelCache:
    return _default_cache


__all__ = ["ModelCache", "get_model_cache"]

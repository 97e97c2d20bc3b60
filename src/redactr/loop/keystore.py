"""Session-scoped storage for the remote API key."""

from __future__ import annotations

from typing import MutableMapping, Optional

KEY_NAME = "redactr_openrouter_api_key"


class SessionKeyStore:
    """Holds the API key in a mapping that lives as long as the session.

    The default backing store is a plain dict, so nothing is persisted past
    process exit. A UI can pass its own session mapping instead.
    """

    def __init__(self, storage: Optional[MutableMapping[str, str]] = None) -> None:
        self._storage: MutableMapping[str, str] = storage if storage is not None else {}

    def get(self) -> Optional[str]:
        return self._storage.get(KEY_NAME) or None

    def set(self, api_key: str) -> None:
        self._storage[KEY_NAME] = api_key

    def clear(self) -> None:
        self._storage.pop(KEY_NAME, None)


__all__ = ["KEY_NAME", "SessionKeyStore"]

"""Client for the remote evaluator / planner models.

Talks to an OpenAI-compatible ``/chat/completions`` endpoint (OpenRouter by
default) with ``requests``. One call, no retries: the loop surfaces classified
errors and leaves retrying to the caller.

Cancellation goes through a :class:`CancelToken`. A call checks the token
before sending. When the token fires, the socket of the request in flight is
shut down, which unblocks the pending read, and any response that still
arrives is discarded.
"""

from __future__ import annotations

import re
import socket
import threading
import weakref
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import orjson
import requests
from requests.adapters import HTTPAdapter
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool

from redactr.errors import RemoteError, RemoteErrorKind
from redactr.logging import get_logger
from redactr.settings import Settings, get_settings

logger = get_logger(__name__)

ContentPart = Dict[str, Any]
ChatMessage = Dict[str, Union[str, List[ContentPart]]]

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


class CancelToken:
    """Thread-safe abort flag with cancellation callbacks."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for cb in callbacks:
            try:
                cb()
            except Exception as exc:  # pragma: no cover - best effort
                logger.debug("Cancel callback failed", extra={"error": str(exc)})

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        with self._lock:
            fire_now = self._event.is_set()
            if not fire_now:
                self._callbacks.append(callback)
        if fire_now:
            callback()

        def unregister() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unregister


class _TrackingPoolMixin:
    """Connection pool that registers every connection it hands out."""

    def __init__(self, *args: Any, live: "weakref.WeakSet[Any]", **kwargs: Any) -> None:
        self._live = live
        super().__init__(*args, **kwargs)

    def _get_conn(self, timeout: Optional[float] = None) -> Any:
        conn = super()._get_conn(timeout)  # type: ignore[misc]
        self._live.add(conn)
        return conn

    def _put_conn(self, conn: Any) -> None:
        if conn is not None:
            self._live.discard(conn)
        super()._put_conn(conn)  # type: ignore[misc]


class _TrackingHTTPPool(_TrackingPoolMixin, HTTPConnectionPool):
    pass


class _TrackingHTTPSPool(_TrackingPoolMixin, HTTPSConnectionPool):
    pass


class AbortableAdapter(HTTPAdapter):
    """Transport adapter whose in-flight requests can be aborted.

    :meth:`abort` shuts down the socket of every connection currently checked
    out of the pool; a thread blocked reading the response then fails with a
    connection error instead of waiting for the server or the timeout.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._live: "weakref.WeakSet[Any]" = weakref.WeakSet()
        super().__init__(*args, **kwargs)

    def init_poolmanager(self, *args: Any, **kwargs: Any) -> None:
        super().init_poolmanager(*args, **kwargs)
        self.poolmanager.pool_classes_by_scheme = {
            "http": partial(_TrackingHTTPPool, live=self._live),
            "https": partial(_TrackingHTTPSPool, live=self._live),
        }

    def abort(self) -> int:
        """Shut down the live sockets; returns how many were shut down."""
        count = 0
        for conn in list(self._live):
            sock = getattr(conn, "sock", None)
            if sock is None:
                continue
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError as exc:
                # already closed by the peer
                logger.debug("Socket shutdown failed", extra={"error": str(exc)})
                continue
            count += 1
        return count


def abortable_session() -> Tuple[requests.Session, AbortableAdapter]:
    sess = requests.Session()
    adapter = AbortableAdapter()
    sess.mount("http://", adapter)
    sess.mount("https://", adapter)
    return sess, adapter


def _cancelled_error() -> RemoteError:
    return RemoteError(RemoteErrorKind.NETWORK, "Request was cancelled", retryable=False)


@dataclass(frozen=True)
class ModelOptions:
    temperature: float = 0.2
    max_tokens: int = 4096
    json_mode: bool = False


def text_part(text: str) -> ContentPart:
    return {"type": "text", "text": text}


def image_part(data_url: str, detail: str = "high") -> ContentPart:
    return {"type": "image_url", "image_url": {"url": data_url, "detail": detail}}


def _error_message(resp: requests.Response) -> str:
    message = f"API error: {resp.status_code}"
    try:
        body = orjson.loads(resp.content)
    except (orjson.JSONDecodeError, TypeError):
        return message
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and isinstance(err.get("message"), str) and err["message"]:
            return err["message"]
    return message


def call_model(
    api_key: str,
    model: str,
    messages: List[ChatMessage],
    options: Optional[ModelOptions] = None,
    cancel_token: Optional[CancelToken] = None,
    *,
    settings: Optional[Settings] = None,
    session: Optional[requests.Session] = None,
) -> str:
    """Send one chat completion request and return the message content.

    Raises
    ------
    RemoteError
        ``network`` on connection failure or cancellation, ``auth`` /
        ``rate_limit`` / ``server`` / ``unknown`` on a non-2xx status, ``parse``
        when the body is not JSON or carries no content.
    """
    cfg = settings or get_settings()
    opts = options or ModelOptions()
    body: Dict[str, Any] = {
        "model": model,
        "messages": messages,
        "temperature": opts.temperature,
        "max_tokens": opts.max_tokens,
    }
    if opts.json_mode:
        body["response_format"] = {"type": "json_object"}
    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {api_key}",
        "X-Title": cfg.app_title,
    }
    if cfg.app_referer:
        headers["HTTP-Referer"] = cfg.app_referer
    url = cfg.api_base_url.rstrip("/") + "/chat/completions"

    if cancel_token is not None and cancel_token.cancelled:
        raise _cancelled_error()

    adapter: Optional[AbortableAdapter] = None
    if session is None:
        sess, adapter = abortable_session()
    else:
        sess = session
        get_adapter = getattr(session, "get_adapter", None)
        if get_adapter is not None:
            mounted = get_adapter(url)
            if isinstance(mounted, AbortableAdapter):
                adapter = mounted

    def abort() -> None:
        if adapter is not None:
            adapter.abort()
        sess.close()

    unregister = cancel_token.on_cancel(abort) if cancel_token is not None else None
    try:
        resp = sess.post(url, data=orjson.dumps(body), headers=headers, timeout=cfg.request_timeout)
    except requests.RequestException as exc:
        if cancel_token is not None and cancel_token.cancelled:
            raise _cancelled_error() from exc
        logger.warning("Remote call failed to connect", extra={"model": model, "error": str(exc)})
        raise RemoteError(
            RemoteErrorKind.NETWORK, "Failed to connect to the model API", retryable=True
        ) from exc
    finally:
        if unregister is not None:
            unregister()
        if session is None:
            sess.close()

    if cancel_token is not None and cancel_token.cancelled:
        raise _cancelled_error()

    if not 200 <= resp.status_code < 300:
        err = RemoteError.from_status(resp.status_code, _error_message(resp))
        logger.warning(
            "Remote call rejected",
            extra={"model": model, "status": resp.status_code, "kind": err.kind.value},
        )
        raise err

    try:
        data = orjson.loads(resp.content)
    except orjson.JSONDecodeError as exc:
        raise RemoteError(RemoteErrorKind.PARSE, "Failed to parse model API response") from exc

    content = None
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        content = None
    if not isinstance(content, str) or not content.strip():
        raise RemoteError(RemoteErrorKind.PARSE, "Empty response from model API")
    return content


def parse_json_response(content: str) -> Any:
    """Parse JSON from model output, tolerating one surrounding code fence."""
    text = (content or "").strip()
    match = _FENCE_RE.search(text)
    if match:
        text = match.group(1).strip()
    try:
        return orjson.loads(text)
    except orjson.JSONDecodeError as exc:
        raise RemoteError(
            RemoteErrorKind.PARSE, f"Failed to parse JSON response: {exc}"
        ) from exc


__all__ = [
    "ContentPart",
    "ChatMessage",
    "CancelToken",
    "AbortableAdapter",
    "abortable_session",
    "ModelOptions",
    "text_part",
    "image_part",
    "call_model",
    "parse_json_response",
]

"""One-time model downloads with progress reporting.

Weights are fetched from the Hugging Face hub into a local cache directory. The
hub reports progress through a ``tqdm`` bar; we hand it a ``tqdm`` subclass
that forwards the completed fraction to a callback so the orchestrator can
drive a single progress bar across several models.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

import requests
from tqdm.auto import tqdm

from redactr.logging import get_logger

logger = get_logger(__name__)

ProgressCallback = Callable[[float], None]


def progress_tqdm(callback: Optional[ProgressCallback]):
    """Build a ``tqdm`` class that reports ``n / total`` to ``callback``."""

    class _ProgressTqdm(tqdm):
        def __init__(self, *args, **kwargs):
            kwargs.pop("name", None)
            kwargs["disable"] = False
            kwargs.setdefault("leave", False)
            super().__init__(*args, **kwargs)

        def update(self, n=1):
            displayed = super().update(n)
            if callback is not None and self.total:
                callback(min(1.0, float(self.n) / float(self.total)))
            return displayed

    return _ProgressTqdm


def download_hub_model(
    repo_id: str,
    cache_dir: Optional[str] = None,
    on_progress: Optional[ProgressCallback] = None,
    local_files_only: bool = False,
) -> str:
    """Fetch a model snapshot and return its local directory."""
    from huggingface_hub import snapshot_download

    path = snapshot_download(
        repo_id=repo_id,
        cache_dir=cache_dir,
        local_files_only=local_files_only,
        tqdm_class=progress_tqdm(on_progress),
    )
    if on_progress is not None:
        on_progress(1.0)
    return path


def download_file(
    url: str,
    dest: Path,
    on_progress: Optional[ProgressCallback] = None,
    timeout: int = 120,
    chunk_size: int = 1 << 16,
) -> Path:
    """Stream ``url`` to ``dest`` unless it is already there."""
    dest = Path(dest)
    if dest.exists() and dest.stat().st_size > 0:
        if on_progress is not None:
            on_progress(1.0)
        return dest
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = dest.with_suffix(dest.suffix + ".part")
    logger.info("Downloading model file", extra={"url": url, "dest": str(dest)})
    with requests.get(url, stream=True, timeout=timeout) as r:
        r.raise_for_status()
        total = int(r.headers.get("content-length") or 0)
        bar_cls = progress_tqdm(on_progress)
        with open(tmp, "wb") as f, bar_cls(total=total or None, unit="B", unit_scale=True) as bar:
            for chunk in r.iter_content(chunk_size=chunk_size):
                if chunk:
                    f.write(chunk)
                    bar.update(len(chunk))
    tmp.replace(dest)
    if on_progress is not None:
        on_progress(1.0)
    return dest


def default_cache_dir(explicit: Optional[str] = None) -> Path:
    if explicit:
        return Path(explicit).expanduser()
    return Path.home() / ".cache" / "redactr"


__all__ = ["progress_tqdm", "download_hub_model", "download_file", "default_cache_dir"]

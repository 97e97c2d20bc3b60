"""Compute backend probing.

The probe reports which acceleration tier local inference can use. The result
is informational: it is surfaced to the caller but never changes which
detectors run.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable, Optional, Sequence

from redactr.logging import get_logger

logger = get_logger(__name__)


class Backend(str, Enum):
    GPU = "gpu-accelerated"
    SHADER = "shader-accelerated"
    CPU = "cpu-only"


def _has_cuda() -> bool:
    import torch

    return bool(torch.cuda.is_available()) and torch.cuda.device_count() > 0


def _has_mps() -> bool:
    import torch

    mps = getattr(torch.backends, "mps", None)
    return bool(mps is not None and mps.is_available())


def _has_opencl() -> bool:
    import cv2

    return bool(cv2.ocl.haveOpenCL())


def _safe(check: Callable[[], bool]) -> bool:
    try:
        return check()
    except Exception as exc:
        logger.debug("Backend feature test failed", extra={"check": check.__name__, "error": str(exc)})
        return False


def probe(
    gpu_checks: Optional[Sequence[Callable[[], bool]]] = None,
    shader_checks: Optional[Sequence[Callable[[], bool]]] = None,
) -> Backend:
    """Return the best available backend, testing GPU, then shader, then CPU.

    Parameters
    ----------
    gpu_checks:
        Feature tests for dedicated GPU compute. Defaults to a CUDA check.
    shader_checks:
        Feature tests for shader-style acceleration. Defaults to Apple MPS and
        OpenCL checks.
    """
    gpu_checks = (_has_cuda,) if gpu_checks is None else gpu_checks
    shader_checks = (_has_mps, _has_opencl) if shader_checks is None else shader_checks

    if any(_safe(check) for check in gpu_checks):
        backend = Backend.GPU
    elif any(_safe(check) for check in shader_checks):
        backend = Backend.SHADER
    else:
        backend = Backend.CPU
    logger.info("Detected compute backend", extra={"backend": backend.value})
    return backend


__all__ = ["Backend", "probe"]

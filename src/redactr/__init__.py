"""Redactr

Local multi-model PII detection (faces, text, license plates, documents) and
a remote evaluator/planner loop that redacts an image until it is private
enough. See ``redactr.detection`` for the detection orchestrator and
``redactr.loop`` for the convergence loop.
"""

__all__ = [
    "backend",
    "collaborators",
    "detection",
    "errors",
    "image",
    "logging",
    "loop",
    "model_cache",
    "settings",
]

__version__ = "0.1.0"

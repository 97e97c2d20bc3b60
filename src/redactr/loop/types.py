"""Records produced by the evaluator / planner convergence loop."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from redactr.collaborators import RedactionStyle


class LeakType(str, Enum):
    FACE = "face"
    TEXT = "text"
    LICENSE_PLATE = "license_plate"
    DOCUMENT = "document"
    OTHER = "other"


class LeakRegion(BaseModel):
    x: float = 0
    y: float = 0
    width: float = 0
    height: float = 0


class VisibleLeak(BaseModel):
    type: LeakType
    description: str
    region: Optional[LeakRegion] = None


class Evaluation(BaseModel):
    """The evaluator's verdict. ``vagueness_score`` 0.0 = all PII visible, 1.0 = private."""

    vagueness_score: float = Field(ge=0.0, le=1.0)
    visible_leaks: List[VisibleLeak] = Field(default_factory=list)
    reasoning: str = "No reasoning provided"


class Redaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    style: RedactionStyle
    x: int
    y: int
    width: int
    height: int
    intensity: int = Field(ge=1, le=100)
    reason: str


class RedactionPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    redactions: List[Redaction] = Field(default_factory=list)
    explanation: str = "Redaction plan generated"


class Iteration(BaseModel):
    """Append-only record of one loop step."""

    model_config = ConfigDict(frozen=True)

    step: int
    evaluation: Evaluation
    plan: Optional[RedactionPlan] = None
    applied_redactions: List[Redaction] = Field(default_factory=list)
    timestamp: float = Field(default_factory=time.time)


class LoopStatus(str, Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    PLANNING = "planning"
    REDACTING = "redacting"
    COMPLETED = "completed"
    MAX_STEPS = "max_steps"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class LoopState:
    api_key: Optional[str] = None
    target_score: float = 0.7
    max_steps: int = 5
    is_running: bool = False
    status: LoopStatus = LoopStatus.IDLE
    current_step: int = 0
    current_score: Optional[float] = None
    iterations: List[Iteration] = field(default_factory=list)
    error: Optional[str] = None


__all__ = [
    "LeakType",
    "LeakRegion",
    "VisibleLeak",
    "Evaluation",
    "Redaction",
    "RedactionPlan",
    "Iteration",
    "LoopStatus",
    "LoopState",
]

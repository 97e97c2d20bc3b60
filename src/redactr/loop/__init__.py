"""Remote evaluate -> plan -> redact convergence loop."""

from .client import CancelToken, call_model, parse_json_response
from .keystore import SessionKeyStore
from .orchestrator import LoopOrchestrator, LoopProgress
from .types import Evaluation, Iteration, LoopState, LoopStatus, Redaction, RedactionPlan, VisibleLeak
from .validator import validate_evaluation, validate_plan

__all__ = [
    "CancelToken",
    "call_model",
    "parse_json_response",
    "SessionKeyStore",
    "LoopOrchestrator",
    "LoopProgress",
    "Evaluation",
    "Iteration",
    "LoopState",
    "LoopStatus",
    "Redaction",
    "RedactionPlan",
    "VisibleLeak",
    "validate_evaluation",
    "validate_plan",
]

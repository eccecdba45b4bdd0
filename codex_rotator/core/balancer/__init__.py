from codex_rotator.core.balancer.debug import ineligibility_reason, log_selection_trace
from codex_rotator.core.balancer.logic import (
    DEFAULT_STRATEGY,
    ROTATION_STRATEGIES,
    RotationCandidate,
    RotationStrategy,
    SelectionOptions,
    SelectionResult,
    SelectionTrace,
    SessionAssignment,
    normalize_strategy,
    select_account,
)

__all__ = [
    "DEFAULT_STRATEGY",
    "ROTATION_STRATEGIES",
    "RotationCandidate",
    "RotationStrategy",
    "SelectionOptions",
    "SelectionResult",
    "SelectionTrace",
    "SessionAssignment",
    "ineligibility_reason",
    "log_selection_trace",
    "normalize_strategy",
    "select_account",
]

from __future__ import annotations

import logging

from codex_rotator.core.balancer.logic import RotationCandidate, SelectionTrace


def ineligibility_reason(account: RotationCandidate, *, now: int) -> str | None:
    if account.enabled is False:
        return "disabled"
    if account.cooldown_until is not None and account.cooldown_until > now:
        return "cooldown"
    if account.refresh_lease_until is not None and account.refresh_lease_until > now:
        return "refresh_lease"
    return None


def log_selection_trace(logger: logging.Logger, trace: SelectionTrace, *, verbose: bool = False) -> None:
    level = logging.INFO if verbose else logging.DEBUG
    if not logger.isEnabledFor(level):
        return
    fields = " ".join(f"{key}={value}" for key, value in trace.as_log_fields().items())
    logger.log(level, "Rotation decision %s", fields)

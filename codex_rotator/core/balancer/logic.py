from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Collection, Literal, Mapping, Protocol, Sequence, TypeVar, get_args

RotationStrategy = Literal["sticky", "hybrid", "round_robin"]

ROTATION_STRATEGIES: tuple[str, ...] = get_args(RotationStrategy)
DEFAULT_STRATEGY: RotationStrategy = "sticky"


class RotationCandidate(Protocol):
    identity_key: str | None
    enabled: bool
    cooldown_until: int | None
    refresh_lease_until: int | None
    last_used: int | None


AccountT = TypeVar("AccountT", bound=RotationCandidate)


@dataclass(frozen=True, slots=True)
class SelectionOptions:
    session_key: str | None = None
    # session key -> identity key, for the map that matches the strategy in use
    session_state: Mapping[str, str] | None = None
    pid_offset_enabled: bool = False
    pid: int | None = None
    # positions in ``accounts`` already attempted by the caller
    excluded: Collection[int] = frozenset()


@dataclass(frozen=True, slots=True)
class SelectionTrace:
    strategy: RotationStrategy
    decision: str
    total_count: int
    disabled_count: int
    cooldown_count: int
    refresh_lease_count: int
    excluded_count: int
    eligible_count: int
    selected_identity_key: str | None = None
    selected_index: int | None = None
    active_identity_key: str | None = None
    session_key: str | None = None

    def as_log_fields(self) -> dict[str, object]:
        return {
            "strategy": self.strategy,
            "decision": self.decision,
            "total": self.total_count,
            "disabled": self.disabled_count,
            "cooldown": self.cooldown_count,
            "lease": self.refresh_lease_count,
            "excluded": self.excluded_count,
            "eligible": self.eligible_count,
            "selected": self.selected_identity_key,
            "index": self.selected_index,
            "active": self.active_identity_key,
            "session": self.session_key,
        }


@dataclass(frozen=True, slots=True)
class SessionAssignment:
    session_key: str
    identity_key: str


@dataclass(slots=True)
class SelectionResult:
    account: RotationCandidate | None
    index: int | None
    trace: SelectionTrace
    # New session -> identity binding the caller should record, if any.
    assignment: SessionAssignment | None = field(default=None)


def normalize_strategy(value: str | None) -> RotationStrategy | None:
    if value is None:
        return None
    candidate = value.strip().lower().replace("-", "_")
    if candidate in ROTATION_STRATEGIES:
        return candidate  # type: ignore[return-value]
    return None


def select_account(
    accounts: Sequence[AccountT],
    strategy: RotationStrategy | None,
    active_identity_key: str | None,
    now: int,
    options: SelectionOptions | None = None,
) -> SelectionResult:
    """Pick one account to serve the next request. Pure: performs no I/O and mutates nothing.

    Accounts that are disabled, cooling down, or under another caller's refresh lease are never
    returned. ``result.account`` is ``None`` when no account is currently usable, which is not
    an error in itself.
    """
    opts = options or SelectionOptions()
    resolved: RotationStrategy = strategy or DEFAULT_STRATEGY

    disabled = cooldown = lease = excluded = 0
    eligible: list[int] = []
    for index, account in enumerate(accounts):
        if index in opts.excluded:
            excluded += 1
            continue
        if account.enabled is False:
            disabled += 1
            continue
        if account.cooldown_until is not None and account.cooldown_until > now:
            cooldown += 1
            continue
        if account.refresh_lease_until is not None and account.refresh_lease_until > now:
            lease += 1
            continue
        eligible.append(index)

    session_state = opts.session_state if opts.session_key else None

    def _result(index: int | None, decision: str, assignment: SessionAssignment | None = None) -> SelectionResult:
        account = accounts[index] if index is not None else None
        trace = SelectionTrace(
            strategy=resolved,
            decision=decision,
            total_count=len(accounts),
            disabled_count=disabled,
            cooldown_count=cooldown,
            refresh_lease_count=lease,
            excluded_count=excluded,
            eligible_count=len(eligible),
            selected_identity_key=account.identity_key if account is not None else None,
            selected_index=index,
            active_identity_key=active_identity_key,
            session_key=opts.session_key,
        )
        return SelectionResult(account=account, index=index, trace=trace, assignment=assignment)

    if not eligible:
        return _result(None, "none_eligible")

    if resolved == "round_robin":
        return _result(*_round_robin(accounts, eligible, active_identity_key))

    if opts.session_key and session_state is not None:
        return _session_affinity(accounts, eligible, opts.session_key, session_state, opts, _result)

    if resolved == "hybrid":
        return _result(_least_recently_used(accounts, eligible), "hybrid_lru")

    active = _find_eligible(accounts, eligible, active_identity_key)
    if active is not None:
        return _result(active, "sticky_active")
    return _result(eligible[0], "sticky_first_eligible")


def _round_robin(
    accounts: Sequence[RotationCandidate],
    eligible: list[int],
    active_identity_key: str | None,
) -> tuple[int, str]:
    active_position = -1
    if active_identity_key:
        for index, account in enumerate(accounts):
            if account.identity_key == active_identity_key:
                active_position = index
                break
    if active_position < 0:
        return eligible[0], "round_robin_first_eligible"
    for index in eligible:
        if index > active_position:
            return index, "round_robin_next"
    return eligible[0], "round_robin_wrapped"


def _least_recently_used(accounts: Sequence[RotationCandidate], eligible: list[int]) -> int:
    # min() keeps the first of equal keys, so ties resolve by list order.
    return min(eligible, key=lambda index: accounts[index].last_used or 0)


def _find_eligible(
    accounts: Sequence[RotationCandidate],
    eligible: list[int],
    identity_key: str | None,
) -> int | None:
    if not identity_key:
        return None
    for index in eligible:
        if accounts[index].identity_key == identity_key:
            return index
    return None


def _session_affinity(accounts, eligible, session_key, state: Mapping[str, str], opts, make_result) -> SelectionResult:
    assigned = _find_eligible(accounts, eligible, state.get(session_key))
    if assigned is not None:
        return make_result(assigned, "session_reuse")

    offset = len(state)
    if opts.pid_offset_enabled:
        offset += opts.pid if opts.pid is not None else os.getpid()
    chosen = eligible[offset % len(eligible)]
    identity_key = accounts[chosen].identity_key
    assignment = SessionAssignment(session_key, identity_key) if identity_key else None
    decision = "session_reassign" if session_key in state else "session_assign"
    return make_result(chosen, decision, assignment)

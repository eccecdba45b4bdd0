from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Protocol

import anyio

from codex_rotator.core import errors
from codex_rotator.core.auth.refresh import RefreshError, TokenRefreshResult
from codex_rotator.core.balancer import (
    DEFAULT_STRATEGY,
    RotationStrategy,
    SelectionOptions,
    SelectionTrace,
    SessionAssignment,
    log_selection_trace,
    select_account,
)
from codex_rotator.core.config.settings import Settings
from codex_rotator.core.errors import ClassifiedAuthError
from codex_rotator.core.identity import build_identity_key
from codex_rotator.core.utils.time import now_ms
from codex_rotator.modules.accounts.domain import attempt_key_for, format_account_label, get_domain
from codex_rotator.modules.accounts.repository import (
    AccountsRepository,
    CandidateRef,
    ClaimOutcome,
    CommitOutcome,
    LeaseClaim,
)
from codex_rotator.modules.accounts.schemas import AccountRecord, AuthMode

logger = logging.getLogger(__name__)

RefreshFn = Callable[[str], Awaitable[TokenRefreshResult]]


class SessionAffinityPort(Protocol):
    def assignments_for(self, strategy: RotationStrategy) -> dict[str, str] | None: ...

    def touch(self, session_key: str, now: int | None = None) -> None: ...

    def record(self, strategy: RotationStrategy, assignment: SessionAssignment) -> None: ...

    async def persist(self) -> None: ...


@dataclass(frozen=True, slots=True)
class SessionContext:
    session_key: str | None = None


@dataclass(frozen=True, slots=True)
class AcquiredCredential:
    access: str
    account_id: str | None
    identity_key: str
    account_label: str
    email: str | None
    plan: str | None
    mode: AuthMode
    selection_trace: SelectionTrace | None = None


@dataclass(slots=True)
class _AttemptLog:
    attempted: set[str] = field(default_factory=set)
    saw_invalid_grant: bool = False
    saw_missing_refresh: bool = False
    saw_missing_identity: bool = False
    saw_refresh_failure: bool = False
    trace: SelectionTrace | None = None


class AuthManager:
    """Acquires a usable access token for one request, refreshing and failing over as needed.

    At most one refresh per account is in flight across every process sharing the accounts
    file: a refresh only starts after a lease was written under the file lock, and its result is
    only committed if the lease and refresh token are still the ones that were claimed.
    """

    def __init__(
        self,
        repo: AccountsRepository,
        settings: Settings,
        refresh: RefreshFn,
        *,
        affinity: dict[str, SessionAffinityPort] | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._repo = repo
        self._settings = settings
        self._refresh = refresh
        self._affinity = affinity or {}
        self._clock = clock
        self.last_selection_trace: SelectionTrace | None = None

    async def acquire(self, mode: AuthMode, context: SessionContext | None = None) -> AcquiredCredential:
        try:
            return await self._acquire(mode, context or SessionContext())
        except ClassifiedAuthError:
            raise
        except Exception as exc:
            logger.exception("Auth acquisition failed mode=%s", mode)
            raise errors.auth_storage_error() from exc

    async def _acquire(self, mode: AuthMode, context: SessionContext) -> AcquiredCredential:
        log = _AttemptLog()
        affinity = self._affinity.get(mode)

        while True:
            document = await self._repo.load()
            if document.openai is None:
                raise errors.oauth_not_configured()
            domain = get_domain(document, mode)
            if domain is None or not domain.accounts:
                raise errors.no_accounts_configured(mode)
            if not any(account.enabled for account in domain.accounts):
                if log.saw_invalid_grant:
                    raise errors.refresh_invalid_grant(all_rejected=True)
                raise errors.no_enabled_accounts(mode)

            attempt_keys = [attempt_key_for(account, index) for index, account in enumerate(domain.accounts)]
            excluded = frozenset(index for index, key in enumerate(attempt_keys) if key in log.attempted)
            if len(excluded) >= len(domain.accounts):
                break

            strategy = self._strategy_for(domain.strategy)
            now = self._clock()
            session_key = context.session_key
            session_state = affinity.assignments_for(strategy) if affinity and session_key else None
            selection = select_account(
                domain.accounts,
                strategy,
                domain.active_identity_key,
                now,
                SelectionOptions(
                    session_key=session_key,
                    session_state=session_state,
                    pid_offset_enabled=self._settings.sticky_pid_offset_enabled,
                    excluded=excluded,
                ),
            )
            log.trace = selection.trace
            self.last_selection_trace = selection.trace
            log_selection_trace(logger, selection.trace, verbose=self._settings.rotation_debug)
            if selection.account is None or selection.index is None:
                break

            account: AccountRecord = selection.account  # type: ignore[assignment]
            index = selection.index
            ref = CandidateRef(mode, attempt_keys[index], index)
            log.attempted.add(ref.attempt_key)
            if affinity is not None and session_key:
                affinity.touch(session_key, now)
                if selection.assignment is not None:
                    affinity.record(strategy, selection.assignment)

            credential = await self._try_candidate(ref, account, now, log)
            if credential is not None:
                if affinity is not None and session_key:
                    await affinity.persist()
                return credential

        raise await self._exhausted(mode, log)

    async def _try_candidate(
        self,
        ref: CandidateRef,
        account: AccountRecord,
        now: int,
        log: _AttemptLog,
    ) -> AcquiredCredential | None:
        if account.access and account.expires is not None and account.expires > now and account.identity_key:
            await self._repo.mark_used(ref, now=now, write_interval_ms=self._settings.last_used_write_interval_ms)
            return self._credential(account, ref, log)

        if not account.refresh:
            log.saw_missing_refresh = True
            logger.info("Account missing refresh token account=%s", format_account_label(account, ref.index))
            await self._repo.cool_down_missing_refresh(ref, until_ms=now + self._settings.missing_refresh_cooldown_ms)
            return None

        if not (account.identity_key or build_identity_key(account.account_id, account.email, account.plan)):
            log.saw_missing_identity = True
            logger.info("Account missing identity metadata account=%s", format_account_label(account, ref.index))
            return None

        outcome: ClaimOutcome = await self._repo.claim_refresh_lease(
            ref,
            refresh_token=account.refresh,
            now=now,
            lease_ms=self._settings.refresh_lease_ms,
        )
        if outcome.fresh is not None and outcome.fresh.identity_key:
            await self._repo.mark_used(ref, now=now, write_interval_ms=self._settings.last_used_write_interval_ms)
            return self._credential(outcome.fresh, ref, log)
        if outcome.claim is None:
            logger.debug("Refresh lease not acquired attempt_key=%s", ref.attempt_key)
            return None
        return await self._refresh_claimed(outcome.claim, log)

    async def _refresh_claimed(self, claim: LeaseClaim, log: _AttemptLog) -> AcquiredCredential | None:
        try:
            # A refresh that outlives its lease must not be committed anyway; stop waiting for it.
            with anyio.fail_after(self._settings.refresh_lease_seconds):
                result = await self._refresh(claim.refresh_token)
        except Exception as exc:
            terminal = isinstance(exc, RefreshError) and exc.is_permanent
            if terminal:
                log.saw_invalid_grant = True
                logger.warning(
                    "Refresh token rejected, disabling account identity_key=%s code=%s",
                    claim.identity_key,
                    exc.code if isinstance(exc, RefreshError) else None,
                )
            else:
                log.saw_refresh_failure = True
                logger.warning(
                    "Token refresh failed identity_key=%s error=%s",
                    claim.identity_key,
                    exc,
                    exc_info=not isinstance(exc, (RefreshError, TimeoutError)),
                )
            await self._repo.release_failed_refresh(
                claim,
                terminal=terminal,
                cooldown_until=self._clock() + self._settings.refresh_failure_cooldown_ms,
            )
            return None

        committed: CommitOutcome = await self._repo.commit_refresh(
            claim,
            result,
            now=self._clock(),
            write_interval_ms=self._settings.last_used_write_interval_ms,
        )
        if committed.account is None or committed.index is None or not committed.account.access:
            logger.warning("Refresh result discarded, lease superseded identity_key=%s", claim.identity_key)
            return None
        logger.info("Refreshed access token identity_key=%s", committed.account.identity_key)
        ref = CandidateRef(claim.ref.mode, claim.ref.attempt_key, committed.index)
        return self._credential(committed.account, ref, log)

    def _credential(self, account: AccountRecord, ref: CandidateRef, log: _AttemptLog) -> AcquiredCredential | None:
        if not account.access or not account.identity_key:
            return None
        return AcquiredCredential(
            access=account.access,
            account_id=account.account_id,
            identity_key=account.identity_key,
            account_label=format_account_label(account, ref.index),
            email=account.email,
            plan=account.plan,
            mode=ref.mode,
            selection_trace=log.trace,
        )

    def _strategy_for(self, domain_strategy: RotationStrategy | None) -> RotationStrategy:
        return self._settings.rotation_strategy or domain_strategy or DEFAULT_STRATEGY

    async def _exhausted(self, mode: AuthMode, log: _AttemptLog) -> ClassifiedAuthError:
        document = await self._repo.load(lock=False)
        domain = get_domain(document, mode)
        accounts = domain.accounts if domain is not None else []
        now = self._clock()
        enabled = [account for account in accounts if account.enabled]

        if not enabled and log.saw_invalid_grant:
            return errors.refresh_invalid_grant(all_rejected=True)

        next_available = None
        for account in enabled:
            blocked_until = max(account.refresh_lease_until or 0, account.cooldown_until or 0)
            if blocked_until > now and (next_available is None or blocked_until < next_available):
                next_available = blocked_until
        if next_available is not None:
            return errors.all_accounts_cooling_down(next_available - now)

        if log.saw_invalid_grant:
            return errors.refresh_invalid_grant()
        if log.saw_missing_refresh:
            return errors.missing_refresh_token()
        if log.saw_missing_identity:
            return errors.missing_account_identity()
        if log.saw_refresh_failure:
            return errors.refresh_failed()
        if enabled:
            logger.warning("Acquisition exhausted without a classified reason mode=%s", mode)
            return errors.no_valid_access_token()
        return errors.no_enabled_accounts(mode)

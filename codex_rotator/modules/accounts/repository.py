from __future__ import annotations

from dataclasses import dataclass

from codex_rotator.core.auth.refresh import TokenRefreshResult
from codex_rotator.core.balancer import RotationStrategy
from codex_rotator.core.identity import ensure_identity_key, normalize_email, normalize_plan
from codex_rotator.core.storage import JsonFileStore
from codex_rotator.modules.accounts.domain import (
    ensure_domain,
    find_account,
    find_by_attempt_key,
    get_domain,
    reconcile_active_identity_key,
    remove_account,
    set_account_enabled,
    set_strategy,
    upsert_account,
)
from codex_rotator.modules.accounts.schemas import AccountRecord, AuthDocument, AuthMode


@dataclass(frozen=True, slots=True)
class CandidateRef:
    """Where a candidate was seen: its attempt key plus its position at selection time."""

    mode: AuthMode
    attempt_key: str
    index: int


@dataclass(frozen=True, slots=True)
class LeaseClaim:
    ref: CandidateRef
    identity_key: str
    refresh_token: str
    lease_until: int


@dataclass(frozen=True, slots=True)
class ClaimOutcome:
    claim: LeaseClaim | None = None
    # Set when the account already holds a valid token written by another caller.
    fresh: AccountRecord | None = None
    fresh_index: int | None = None


@dataclass(frozen=True, slots=True)
class CommitOutcome:
    account: AccountRecord | None
    index: int | None


class AccountsRepository:
    """Every write site re-reads the account inside the store lock before deciding anything."""

    def __init__(self, store: JsonFileStore[AuthDocument]) -> None:
        self._store = store

    @property
    def store(self) -> JsonFileStore[AuthDocument]:
        return self._store

    async def load(self, *, lock: bool = True) -> AuthDocument:
        return await self._store.aload(lock=lock)

    async def upsert(self, mode: AuthMode, incoming: AccountRecord) -> bool:
        appended = False

        def _mutate(document: AuthDocument) -> None:
            nonlocal appended
            appended = upsert_account(ensure_domain(document, mode), incoming)

        await self._store.asave(_mutate)
        return appended

    async def remove(self, mode: AuthMode, identity_key: str) -> bool:
        removed = False

        def _mutate(document: AuthDocument) -> None:
            nonlocal removed
            domain = get_domain(document, mode)
            removed = domain is not None and remove_account(domain, identity_key)

        await self._store.asave(_mutate)
        return removed

    async def set_enabled(self, mode: AuthMode, identity_key: str, enabled: bool) -> bool:
        found = False

        def _mutate(document: AuthDocument) -> None:
            nonlocal found
            domain = get_domain(document, mode)
            found = domain is not None and set_account_enabled(domain, identity_key, enabled)

        await self._store.asave(_mutate)
        return found

    async def set_strategy(self, mode: AuthMode, strategy: RotationStrategy | None) -> None:
        await self._store.asave(lambda document: set_strategy(ensure_domain(document, mode), strategy))

    async def set_cooldown(self, mode: AuthMode, identity_key: str, until_ms: int) -> bool:
        applied = False

        def _mutate(document: AuthDocument) -> None:
            nonlocal applied
            domain = get_domain(document, mode)
            if domain is None:
                return
            _, account = find_account(domain, identity_key)
            if account is None or not account.enabled:
                return
            # Never shorten a cooldown that is already further out.
            if account.cooldown_until is None or account.cooldown_until < until_ms:
                account.cooldown_until = until_ms
            applied = True

        await self._store.asave(_mutate)
        return applied

    async def discard_access_token(self, mode: AuthMode, identity_key: str, access: str) -> bool:
        """Forget a cached token the upstream rejected so the next acquisition refreshes or fails over."""
        discarded = False

        def _mutate(document: AuthDocument) -> None:
            nonlocal discarded
            domain = get_domain(document, mode)
            if domain is None:
                return
            _, account = find_account(domain, identity_key)
            # A token stored by another caller since the rejection is left alone.
            if account is None or account.access != access:
                return
            account.access = None
            account.expires = None
            discarded = True

        await self._store.asave(_mutate)
        return discarded

    async def mark_used(
        self,
        ref: CandidateRef,
        *,
        now: int,
        write_interval_ms: int,
    ) -> None:
        def _mutate(document: AuthDocument) -> None:
            domain = get_domain(document, ref.mode)
            if domain is None:
                return
            _, current = find_by_attempt_key(domain, ref.attempt_key, ref.index)
            if current is None or not current.enabled:
                return
            ensure_identity_key(current)
            if current.identity_key and domain.active_identity_key != current.identity_key:
                domain.active_identity_key = current.identity_key
            if current.last_used is None or now - current.last_used >= write_interval_ms:
                current.last_used = now

        await self._store.asave(_mutate)

    async def cool_down_missing_refresh(self, ref: CandidateRef, *, until_ms: int) -> None:
        def _mutate(document: AuthDocument) -> None:
            domain = get_domain(document, ref.mode)
            if domain is None:
                return
            _, current = find_by_attempt_key(domain, ref.attempt_key, ref.index)
            # Another caller may have stored a refresh token since the candidate was read.
            if current is None or not current.enabled or current.refresh:
                return
            current.cooldown_until = until_ms

        await self._store.asave(_mutate)

    async def claim_refresh_lease(
        self,
        ref: CandidateRef,
        *,
        refresh_token: str,
        now: int,
        lease_ms: int,
    ) -> ClaimOutcome:
        outcome = ClaimOutcome()
        lease_until = now + lease_ms

        def _mutate(document: AuthDocument) -> None:
            nonlocal outcome
            domain = get_domain(document, ref.mode)
            if domain is None:
                return
            index, current = find_by_attempt_key(domain, ref.attempt_key, ref.index)
            if current is None or index is None:
                return
            if not current.enabled:
                return
            if current.access and current.expires is not None and current.expires > now:
                outcome = ClaimOutcome(fresh=current.model_copy(), fresh_index=index)
                return
            if current.refresh_lease_until is not None and current.refresh_lease_until > now:
                return
            if not current.refresh or current.refresh != refresh_token:
                return
            ensure_identity_key(current)
            if not current.identity_key:
                return
            current.refresh_lease_until = lease_until
            outcome = ClaimOutcome(
                claim=LeaseClaim(
                    ref=CandidateRef(ref.mode, ref.attempt_key, index),
                    identity_key=current.identity_key,
                    refresh_token=current.refresh,
                    lease_until=lease_until,
                )
            )

        await self._store.asave(_mutate)
        return outcome

    async def claim_due_refresh(
        self,
        mode: AuthMode,
        *,
        now: int,
        buffer_ms: int,
        lease_ms: int,
        skip: frozenset[str] = frozenset(),
    ) -> LeaseClaim | None:
        """Lease the first enabled account whose token expires within ``buffer_ms``."""
        claimed: LeaseClaim | None = None
        lease_until = now + lease_ms

        def _mutate(document: AuthDocument) -> None:
            nonlocal claimed
            domain = get_domain(document, mode)
            if domain is None:
                return
            for index, account in enumerate(domain.accounts):
                if not account.enabled or not account.identity_key or not account.refresh:
                    continue
                if account.identity_key in skip:
                    continue
                if account.expires is None or account.expires > now + buffer_ms:
                    continue
                if account.cooldown_until is not None and account.cooldown_until > now:
                    continue
                if account.refresh_lease_until is not None and account.refresh_lease_until > now:
                    continue
                account.refresh_lease_until = lease_until
                claimed = LeaseClaim(
                    ref=CandidateRef(mode, account.identity_key, index),
                    identity_key=account.identity_key,
                    refresh_token=account.refresh,
                    lease_until=lease_until,
                )
                return

        await self._store.asave(_mutate)
        return claimed

    async def commit_refresh(
        self,
        claim: LeaseClaim,
        result: TokenRefreshResult,
        *,
        now: int,
        write_interval_ms: int,
        activate: bool = True,
    ) -> CommitOutcome:
        outcome = CommitOutcome(account=None, index=None)

        def _mutate(document: AuthDocument) -> None:
            nonlocal outcome
            domain = get_domain(document, claim.ref.mode)
            if domain is None:
                return
            index, current = _locate_claimed(domain.accounts, claim)
            if current is None:
                return
            if (
                current.refresh_lease_until != claim.lease_until
                or current.refresh_lease_until <= now
                or current.refresh != claim.refresh_token
            ):
                # Superseded: drop our lease marker only if it is still the one we wrote.
                if current.refresh_lease_until == claim.lease_until:
                    current.refresh_lease_until = None
                return
            if not current.enabled:
                current.refresh_lease_until = None
                return

            current.access = result.access_token
            current.refresh = result.refresh_token
            current.expires = now + result.expires_in * 1000
            current.account_id = result.account_id or current.account_id
            current.email = normalize_email(result.email) or current.email
            current.plan = normalize_plan(result.plan_type) or current.plan
            ensure_identity_key(current)
            current.refresh_lease_until = None
            current.cooldown_until = None
            if activate:
                if current.last_used is None or now - current.last_used >= write_interval_ms:
                    current.last_used = now
                if current.identity_key:
                    domain.active_identity_key = current.identity_key
            outcome = CommitOutcome(account=current.model_copy(), index=index)

        await self._store.asave(_mutate)
        return outcome

    async def release_failed_refresh(
        self,
        claim: LeaseClaim,
        *,
        terminal: bool,
        cooldown_until: int,
    ) -> None:
        def _mutate(document: AuthDocument) -> None:
            domain = get_domain(document, claim.ref.mode)
            if domain is None:
                return
            _, current = _locate_claimed(domain.accounts, claim)
            if current is None:
                return
            if current.refresh_lease_until != claim.lease_until or current.refresh != claim.refresh_token:
                return
            current.refresh_lease_until = None
            if terminal:
                current.enabled = False
                current.cooldown_until = None
                reconcile_active_identity_key(domain)
                return
            if current.enabled:
                current.cooldown_until = cooldown_until

        await self._store.asave(_mutate)


def _locate_claimed(
    accounts: list[AccountRecord],
    claim: LeaseClaim,
) -> tuple[int, AccountRecord] | tuple[None, None]:
    for index, account in enumerate(accounts):
        if account.identity_key == claim.identity_key:
            return index, account
    return None, None

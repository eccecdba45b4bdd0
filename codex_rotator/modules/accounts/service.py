from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Mapping

from aiohttp_retry import RetryClient

from codex_rotator.core.balancer import DEFAULT_STRATEGY, SelectionOptions, select_account
from codex_rotator.core.clients.usage import cooldown_from_quota, fetch_quota
from codex_rotator.core.config.settings import Settings
from codex_rotator.core.utils.time import now_ms
from codex_rotator.modules.accounts.auth_manager import AcquiredCredential, AuthManager, SessionContext
from codex_rotator.modules.accounts.domain import get_domain
from codex_rotator.modules.accounts.repository import AccountsRepository, CandidateRef
from codex_rotator.modules.accounts.schemas import AUTH_MODES, AuthMode
from codex_rotator.modules.affinity.state import SessionAffinityState
from codex_rotator.modules.proxy.fetch_orchestrator import FetchOrchestrator, NotifyFn, TransportFn

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BackgroundSelection:
    access_token: str | None = None
    account_id: str | None = None


class RotatorService:
    """Entry points used by request handlers and background jobs."""

    def __init__(
        self,
        repo: AccountsRepository,
        auth_manager: AuthManager,
        settings: Settings,
        *,
        affinity: Mapping[AuthMode, SessionAffinityState] | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._repo = repo
        self._auth_manager = auth_manager
        self._settings = settings
        self._affinity = dict(affinity or {})
        self._clock = clock

    async def acquire_credential(
        self,
        mode: AuthMode,
        session_context: SessionContext | None = None,
    ) -> AcquiredCredential:
        return await self._auth_manager.acquire(mode, session_context)

    async def set_cooldown(self, identity_key: str, until_ms: int, *, mode: AuthMode | None = None) -> bool:
        """Exclude ``identity_key`` from selection until ``until_ms``; all modes when ``mode`` is None."""
        applied = False
        for candidate_mode in (mode,) if mode else AUTH_MODES:
            applied = await self._repo.set_cooldown(candidate_mode, identity_key, until_ms) or applied
        if applied:
            logger.info("Account cooling down identity_key=%s until_ms=%s", identity_key, until_ms)
        return applied

    async def select_account_for_background(self, mode: AuthMode) -> BackgroundSelection:
        """Best-effort pick for background sync; never writes and never refreshes."""
        document = await self._repo.load(lock=False)
        domain = get_domain(document, mode)
        if domain is None:
            return BackgroundSelection()
        now = self._clock()
        strategy = self._settings.rotation_strategy or domain.strategy or DEFAULT_STRATEGY
        selection = select_account(domain.accounts, strategy, domain.active_identity_key, now, SelectionOptions())
        account = selection.account
        if account is None:
            return BackgroundSelection()
        access = account.access if account.expires is not None and account.expires > now else None
        return BackgroundSelection(access_token=access, account_id=account.account_id)

    async def invalidate_session(self, session_key: str) -> None:
        for state in self._affinity.values():
            if state.invalidate(session_key):
                logger.debug("Dropped session affinity mode=%s session_key=%s", state.mode, session_key)
                await state.persist()

    def fetch_orchestrator(
        self,
        mode: AuthMode,
        transport: TransportFn,
        *,
        notify: NotifyFn | None = None,
    ) -> FetchOrchestrator:
        async def _acquire(context: SessionContext) -> AcquiredCredential:
            return await self.acquire_credential(mode, context)

        async def _set_cooldown(identity_key: str, until_ms: int) -> bool:
            return await self.set_cooldown(identity_key, until_ms, mode=mode)

        async def _reject(credential: AcquiredCredential) -> None:
            if await self._repo.discard_access_token(mode, credential.identity_key, credential.access):
                logger.info("Discarded rejected access token identity_key=%s", credential.identity_key)

        async def _record_success(credential: AcquiredCredential) -> None:
            await self._repo.mark_used(
                CandidateRef(mode, credential.identity_key, -1),
                now=self._clock(),
                write_interval_ms=self._settings.last_used_write_interval_ms,
            )

        return FetchOrchestrator(
            _acquire,
            transport,
            _set_cooldown,
            reject_credential=_reject,
            record_success=_record_success,
            invalidate_session=self.invalidate_session,
            notify=notify,
            max_attempts=self._settings.fetch_max_attempts,
            default_cooldown_ms=int(self._settings.rate_limit_default_cooldown_seconds * 1000),
            clock=self._clock,
        )

    async def apply_quota_cooldowns(self, mode: AuthMode, client: RetryClient) -> dict[str, int]:
        """Fetch quota for every usable account and cool down the exhausted ones until reset."""
        document = await self._repo.load(lock=False)
        domain = get_domain(document, mode)
        if domain is None:
            return {}
        applied: dict[str, int] = {}
        for account in domain.accounts:
            now = self._clock()
            if not account.enabled or not account.identity_key or not account.access:
                continue
            if account.expires is None or account.expires <= now:
                continue
            snapshot = await fetch_quota(
                access_token=account.access,
                account_id=account.account_id,
                client=client,
                now_ms=now,
                base_url=self._settings.usage_base_url,
                max_retries=self._settings.usage_fetch_max_retries,
                timeout_seconds=self._settings.usage_fetch_timeout_seconds,
            )
            until = cooldown_from_quota(snapshot, now)
            if until is None:
                continue
            if await self._repo.set_cooldown(mode, account.identity_key, until):
                applied[account.identity_key] = until
                logger.info("Quota exhausted identity_key=%s cooldown_until=%s", account.identity_key, until)
        return applied

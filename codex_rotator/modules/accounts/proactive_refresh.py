from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

import anyio

from codex_rotator.core.auth.refresh import RefreshError
from codex_rotator.core.config.settings import Settings
from codex_rotator.core.utils.time import now_ms
from codex_rotator.modules.accounts.auth_manager import RefreshFn
from codex_rotator.modules.accounts.repository import AccountsRepository
from codex_rotator.modules.accounts.schemas import AUTH_MODES, AuthMode

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RefreshTickResult:
    refreshed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    disabled: list[str] = field(default_factory=list)


class ProactiveRefresher:
    """Refreshes tokens that are about to expire, ahead of any request needing them.

    Uses the same lease protocol as request-time acquisition, so it can run alongside live
    traffic and other processes without double-refreshing an account.
    """

    def __init__(
        self,
        repo: AccountsRepository,
        settings: Settings,
        refresh: RefreshFn,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._repo = repo
        self._settings = settings
        self._refresh = refresh
        self._clock = clock

    async def tick(self, modes: tuple[AuthMode, ...] = AUTH_MODES) -> RefreshTickResult:
        result = RefreshTickResult()
        for mode in modes:
            await self._tick_mode(mode, result)
        return result

    async def _tick_mode(self, mode: AuthMode, result: RefreshTickResult) -> None:
        handled: set[str] = set()
        while True:
            claim = await self._repo.claim_due_refresh(
                mode,
                now=self._clock(),
                buffer_ms=int(self._settings.proactive_refresh_buffer_seconds * 1000),
                lease_ms=self._settings.refresh_lease_ms,
                skip=frozenset(handled),
            )
            if claim is None:
                return
            handled.add(claim.identity_key)
            try:
                with anyio.fail_after(self._settings.refresh_lease_seconds):
                    tokens = await self._refresh(claim.refresh_token)
            except Exception as exc:
                terminal = isinstance(exc, RefreshError) and exc.is_permanent
                logger.warning(
                    "Proactive refresh failed mode=%s identity_key=%s terminal=%s error=%s",
                    mode,
                    claim.identity_key,
                    terminal,
                    exc,
                )
                await self._repo.release_failed_refresh(
                    claim,
                    terminal=terminal,
                    cooldown_until=self._clock() + self._settings.refresh_failure_cooldown_ms,
                )
                (result.disabled if terminal else result.failed).append(claim.identity_key)
                continue

            committed = await self._repo.commit_refresh(
                claim,
                tokens,
                now=self._clock(),
                write_interval_ms=self._settings.last_used_write_interval_ms,
                activate=False,
            )
            if committed.account is None:
                logger.warning("Proactive refresh superseded mode=%s identity_key=%s", mode, claim.identity_key)
                result.failed.append(claim.identity_key)
                continue
            logger.info("Proactively refreshed mode=%s identity_key=%s", mode, claim.identity_key)
            result.refreshed.append(claim.identity_key)

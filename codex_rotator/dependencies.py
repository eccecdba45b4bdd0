from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable

import aiohttp

from codex_rotator.core.auth.refresh import TokenRefreshResult, refresh_access_token
from codex_rotator.core.clients.http import HttpClient, create_http_client
from codex_rotator.core.config.settings import Settings, get_settings
from codex_rotator.core.storage import JsonFileStore
from codex_rotator.core.utils.time import now_ms
from codex_rotator.modules.accounts.auth_manager import AuthManager, RefreshFn
from codex_rotator.modules.accounts.proactive_refresh import ProactiveRefresher
from codex_rotator.modules.accounts.repository import AccountsRepository
from codex_rotator.modules.accounts.schemas import (
    AUTH_MODES,
    AuthDocument,
    AuthMode,
    decode_auth_document,
    encode_auth_document,
)
from codex_rotator.modules.accounts.service import RotatorService
from codex_rotator.modules.affinity.schemas import (
    SessionAffinityDocument,
    decode_session_affinity,
    encode_session_affinity,
)
from codex_rotator.modules.affinity.sessions import create_session_exists_fn
from codex_rotator.modules.affinity.state import SessionAffinityState


@dataclass(slots=True)
class RotatorContext:
    settings: Settings
    accounts_store: JsonFileStore[AuthDocument]
    affinity_store: JsonFileStore[SessionAffinityDocument]
    repository: AccountsRepository
    affinity: dict[AuthMode, SessionAffinityState]
    auth_manager: AuthManager
    service: RotatorService
    refresher: ProactiveRefresher
    http: HttpClient | None = None


def make_refresh_fn(settings: Settings, session: aiohttp.ClientSession | None = None) -> RefreshFn:
    async def refresh(refresh_token: str) -> TokenRefreshResult:
        return await refresh_access_token(
            refresh_token,
            base_url=settings.auth_base_url,
            client_id=settings.oauth_client_id,
            timeout_seconds=settings.oauth_timeout_seconds,
            session=session,
        )

    return refresh


def build_context(
    settings: Settings | None = None,
    *,
    refresh: RefreshFn | None = None,
    clock: Callable[[], int] = now_ms,
) -> RotatorContext:
    settings = settings or get_settings()
    refresh = refresh or make_refresh_fn(settings)
    store_options = dict(
        quarantine_dir=settings.quarantine_path,
        quarantine_keep=settings.quarantine_keep,
        lock_timeout_seconds=settings.lock_timeout_seconds,
        lock_retry_interval_seconds=settings.lock_retry_interval_seconds,
        clock=clock,
    )
    accounts_store = JsonFileStore(
        settings.accounts_path,
        decode=decode_auth_document,
        encode=encode_auth_document,
        **store_options,
    )
    affinity_store = JsonFileStore(
        settings.session_affinity_path,
        decode=decode_session_affinity,
        encode=encode_session_affinity,
        **store_options,
    )
    session_exists = create_session_exists_fn(settings.sessions_dir)
    affinity = {
        mode: SessionAffinityState(
            mode,
            affinity_store,
            session_exists,
            max_entries=settings.session_affinity_max_entries,
            missing_grace_ms=settings.session_missing_grace_ms,
            clock=clock,
        )
        for mode in AUTH_MODES
    }
    repository = AccountsRepository(accounts_store)
    auth_manager = AuthManager(repository, settings, refresh, affinity=dict(affinity), clock=clock)
    return RotatorContext(
        settings=settings,
        accounts_store=accounts_store,
        affinity_store=affinity_store,
        repository=repository,
        affinity=affinity,
        auth_manager=auth_manager,
        service=RotatorService(repository, auth_manager, settings, affinity=affinity, clock=clock),
        refresher=ProactiveRefresher(repository, settings, refresh, clock=clock),
    )


@asynccontextmanager
async def rotator_context(settings: Settings | None = None) -> AsyncIterator[RotatorContext]:
    """Context with a shared HTTP client and affinity maps loaded from disk."""
    settings = settings or get_settings()
    http = create_http_client()
    try:
        context = build_context(settings, refresh=make_refresh_fn(settings, http.session))
        context.http = http
        for state in context.affinity.values():
            await state.load()
        yield context
    finally:
        await http.close()

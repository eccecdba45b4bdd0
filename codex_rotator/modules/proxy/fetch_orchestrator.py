from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Mapping

import aiohttp

from codex_rotator.core.utils.retry import parse_retry_after_ms
from codex_rotator.core.utils.time import now_ms
from codex_rotator.modules.accounts.auth_manager import AcquiredCredential, SessionContext

logger = logging.getLogger(__name__)

IGNORE_INBOUND_HEADERS = {"authorization", "chatgpt-account-id", "content-length", "host"}
AUTH_REJECTED_STATUSES = {401}
RATE_LIMITED_STATUSES = {429}


@dataclass(frozen=True, slots=True)
class OutboundRequest:
    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes | None = None
    session_key: str | None = None


@dataclass(frozen=True, slots=True)
class TransportResponse:
    status: int
    headers: Mapping[str, str]
    body: bytes = b""


@dataclass(frozen=True, slots=True)
class AccountSwitch:
    previous_label: str
    next_label: str
    reason: str
    cooldown_ms: int


AcquireFn = Callable[[SessionContext], Awaitable[AcquiredCredential]]
TransportFn = Callable[[OutboundRequest], Awaitable[TransportResponse]]
SetCooldownFn = Callable[[str, int], Awaitable[object]]
RejectCredentialFn = Callable[[AcquiredCredential], Awaitable[object]]
RecordSuccessFn = Callable[[AcquiredCredential], Awaitable[object]]
InvalidateSessionFn = Callable[[str], object]
NotifyFn = Callable[[AccountSwitch], Awaitable[None]]


class FetchOrchestrator:
    def __init__(
        self,
        acquire: AcquireFn,
        transport: TransportFn,
        set_cooldown: SetCooldownFn,
        *,
        reject_credential: RejectCredentialFn | None = None,
        record_success: RecordSuccessFn | None = None,
        invalidate_session: InvalidateSessionFn | None = None,
        notify: NotifyFn | None = None,
        max_attempts: int = 3,
        default_cooldown_ms: int = 60_000,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._acquire = acquire
        self._transport = transport
        self._set_cooldown = set_cooldown
        self._reject_credential = reject_credential
        self._record_success = record_success
        self._invalidate_session = invalidate_session
        self._notify = notify
        self._max_attempts = max(1, max_attempts)
        self._default_cooldown_ms = default_cooldown_ms
        self._clock = clock

    async def execute(self, request: OutboundRequest) -> TransportResponse:
        """Send ``request`` with a rotated credential, retrying rejected or rate-limited attempts.

        A 401 discards the rejected token so the retry refreshes it or moves to another account.
        ``record_success`` runs after a 2xx; acquisition itself already stamps ``lastUsed``
        (throttled), so the callback only moves it forward for long-running calls. Responses
        other than 401 and 429 are returned as-is. When every attempt is spent the last response
        is returned. Acquisition failures propagate as ``ClassifiedAuthError``.
        """
        context = SessionContext(session_key=request.session_key)
        exhausted: tuple[AcquiredCredential, int] | None = None
        attempt = 0

        while True:
            attempt += 1
            credential = await self._acquire(context)
            if exhausted is not None:
                await self._notify_switch(exhausted, credential)
                exhausted = None

            response = await self._transport(_authorize(request, credential))
            if response.status in AUTH_REJECTED_STATUSES:
                logger.warning(
                    "Upstream rejected credential account=%s attempt=%s",
                    credential.account_label,
                    attempt,
                )
                if self._reject_credential is not None:
                    await self._reject_credential(credential)
                if request.session_key:
                    await self._drop_session_affinity(request.session_key)
            elif response.status in RATE_LIMITED_STATUSES:
                now = self._clock()
                retry_after_ms = parse_retry_after_ms(response.headers, now)
                cooldown_ms = retry_after_ms if retry_after_ms is not None else self._default_cooldown_ms
                logger.warning(
                    "Upstream rate limited account=%s cooldown_ms=%s attempt=%s",
                    credential.account_label,
                    cooldown_ms,
                    attempt,
                )
                await self._set_cooldown(credential.identity_key, now + cooldown_ms)
                exhausted = (credential, cooldown_ms)
            else:
                if 200 <= response.status < 300 and self._record_success is not None:
                    await self._record_success(credential)
                return response

            if attempt >= self._max_attempts:
                return response

    async def _drop_session_affinity(self, session_key: str) -> None:
        if self._invalidate_session is None:
            return
        result = self._invalidate_session(session_key)
        if inspect.isawaitable(result):
            await result

    async def _notify_switch(self, exhausted: tuple[AcquiredCredential, int], credential: AcquiredCredential) -> None:
        previous, cooldown_ms = exhausted
        if self._notify is None or previous.identity_key == credential.identity_key:
            return
        await self._notify(
            AccountSwitch(
                previous_label=previous.account_label,
                next_label=credential.account_label,
                reason="rate_limited",
                cooldown_ms=cooldown_ms,
            )
        )


def _authorize(request: OutboundRequest, credential: AcquiredCredential) -> OutboundRequest:
    headers = {key: value for key, value in request.headers.items() if key.lower() not in IGNORE_INBOUND_HEADERS}
    headers["Authorization"] = f"Bearer {credential.access}"
    if credential.account_id:
        headers["chatgpt-account-id"] = credential.account_id
    return replace(request, headers=headers)


def aiohttp_transport(session: aiohttp.ClientSession, *, timeout_seconds: float = 300.0) -> TransportFn:
    timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def send(request: OutboundRequest) -> TransportResponse:
        async with session.request(
            request.method,
            request.url,
            headers=dict(request.headers),
            data=request.body,
            timeout=timeout,
        ) as resp:
            body = await resp.read()
            return TransportResponse(status=resp.status, headers=dict(resp.headers), body=body)

    return send

from __future__ import annotations

import pytest

from codex_rotator.core import errors
from codex_rotator.core.errors import AuthErrorKind, ClassifiedAuthError
from codex_rotator.modules.accounts.auth_manager import AcquiredCredential, SessionContext
from codex_rotator.modules.proxy.fetch_orchestrator import (
    AccountSwitch,
    FetchOrchestrator,
    OutboundRequest,
    TransportResponse,
)

pytestmark = pytest.mark.unit

NOW = 1_000_000


def _credential(name: str) -> AcquiredCredential:
    return AcquiredCredential(
        access=f"token-{name}",
        account_id=f"acc-{name}",
        identity_key=f"{name}|{name}@example.com|plus",
        account_label=f"{name}@example.com (plus)",
        email=f"{name}@example.com",
        plan="plus",
        mode="native",
    )


class _StubAcquire:
    def __init__(self, *credentials: AcquiredCredential | Exception) -> None:
        self._credentials = list(credentials)
        self.contexts: list[SessionContext] = []

    async def __call__(self, context: SessionContext) -> AcquiredCredential:
        self.contexts.append(context)
        outcome = self._credentials.pop(0) if len(self._credentials) > 1 else self._credentials[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class _StubTransport:
    def __init__(self, *responses: TransportResponse) -> None:
        self._responses = list(responses)
        self.requests: list[OutboundRequest] = []

    async def __call__(self, request: OutboundRequest) -> TransportResponse:
        self.requests.append(request)
        return self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]


class _Recorder:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    async def __call__(self, *args) -> None:
        self.calls.append(args)


def _orchestrator(acquire, transport, **kwargs) -> tuple[FetchOrchestrator, _Recorder]:
    cooldowns = _Recorder()
    orchestrator = FetchOrchestrator(acquire, transport, cooldowns, clock=lambda: NOW, **kwargs)
    return orchestrator, cooldowns


@pytest.mark.asyncio
async def test_success_passes_through_with_credential_headers():
    transport = _StubTransport(TransportResponse(200, {}, b"ok"))
    orchestrator, cooldowns = _orchestrator(_StubAcquire(_credential("a")), transport)
    request = OutboundRequest(
        "POST",
        "https://upstream.invalid/responses",
        headers={"Authorization": "Bearer client", "Content-Length": "3", "X-Trace": "1"},
        body=b"{}",
    )

    response = await orchestrator.execute(request)

    assert response.status == 200
    sent = transport.requests[0]
    assert sent.headers == {"X-Trace": "1", "Authorization": "Bearer token-a", "chatgpt-account-id": "acc-a"}
    assert sent.body == b"{}"
    assert cooldowns.calls == []


@pytest.mark.asyncio
async def test_rate_limit_cools_down_and_retries_with_next_account():
    acquire = _StubAcquire(_credential("a"), _credential("b"))
    transport = _StubTransport(
        TransportResponse(429, {"Retry-After": "30"}),
        TransportResponse(200, {}),
    )
    notifications = _Recorder()
    orchestrator, cooldowns = _orchestrator(acquire, transport, notify=notifications)

    response = await orchestrator.execute(OutboundRequest("GET", "https://upstream.invalid"))

    assert response.status == 200
    assert cooldowns.calls == [("a|a@example.com|plus", NOW + 30_000)]
    assert [request.headers["Authorization"] for request in transport.requests] == [
        "Bearer token-a",
        "Bearer token-b",
    ]
    assert notifications.calls == [
        (
            AccountSwitch(
                previous_label="a@example.com (plus)",
                next_label="b@example.com (plus)",
                reason="rate_limited",
                cooldown_ms=30_000,
            ),
        )
    ]


@pytest.mark.asyncio
async def test_rate_limit_without_retry_after_uses_default_cooldown():
    acquire = _StubAcquire(_credential("a"), _credential("b"))
    transport = _StubTransport(TransportResponse(429, {}), TransportResponse(200, {}))
    orchestrator, cooldowns = _orchestrator(acquire, transport, default_cooldown_ms=45_000)

    await orchestrator.execute(OutboundRequest("GET", "https://upstream.invalid"))

    assert cooldowns.calls == [("a|a@example.com|plus", NOW + 45_000)]


@pytest.mark.asyncio
async def test_same_account_after_rate_limit_does_not_notify():
    acquire = _StubAcquire(_credential("a"))
    transport = _StubTransport(TransportResponse(429, {"retry-after": "1"}), TransportResponse(200, {}))
    notifications = _Recorder()
    orchestrator, _ = _orchestrator(acquire, transport, notify=notifications)

    await orchestrator.execute(OutboundRequest("GET", "https://upstream.invalid"))

    assert notifications.calls == []


@pytest.mark.asyncio
async def test_unauthorized_drops_session_affinity_and_retries():
    acquire = _StubAcquire(_credential("a"), _credential("b"))
    transport = _StubTransport(TransportResponse(401, {}), TransportResponse(200, {}))
    dropped: list[str] = []
    orchestrator, cooldowns = _orchestrator(acquire, transport, invalidate_session=dropped.append)

    response = await orchestrator.execute(OutboundRequest("GET", "https://upstream.invalid", session_key="s1"))

    assert response.status == 200
    assert dropped == ["s1"]
    assert cooldowns.calls == []
    assert all(context.session_key == "s1" for context in acquire.contexts)


@pytest.mark.asyncio
async def test_unauthorized_awaits_async_invalidation():
    acquire = _StubAcquire(_credential("a"))
    transport = _StubTransport(TransportResponse(401, {}), TransportResponse(200, {}))
    invalidations = _Recorder()
    orchestrator, _ = _orchestrator(acquire, transport, invalidate_session=invalidations)

    await orchestrator.execute(OutboundRequest("GET", "https://upstream.invalid", session_key="s9"))

    assert invalidations.calls == [("s9",)]


@pytest.mark.asyncio
async def test_unauthorized_discards_rejected_credential_before_retry():
    acquire = _StubAcquire(_credential("a"), _credential("b"))
    transport = _StubTransport(TransportResponse(401, {}), TransportResponse(200, {}))
    rejected = _Recorder()
    orchestrator, _ = _orchestrator(acquire, transport, reject_credential=rejected)

    response = await orchestrator.execute(OutboundRequest("GET", "https://upstream.invalid"))

    assert response.status == 200
    assert rejected.calls == [(_credential("a"),)]
    assert len(acquire.contexts) == 2


@pytest.mark.asyncio
async def test_success_is_recorded_only_for_2xx():
    successes = _Recorder()
    ok, _ = _orchestrator(
        _StubAcquire(_credential("a")),
        _StubTransport(TransportResponse(204, {})),
        record_success=successes,
    )
    failing, _ = _orchestrator(
        _StubAcquire(_credential("b")),
        _StubTransport(TransportResponse(502, {})),
        record_success=successes,
    )

    await ok.execute(OutboundRequest("GET", "https://upstream.invalid"))
    await failing.execute(OutboundRequest("GET", "https://upstream.invalid"))

    assert successes.calls == [(_credential("a"),)]


@pytest.mark.asyncio
async def test_repeated_unauthorized_returns_last_response():
    transport = _StubTransport(TransportResponse(401, {}, b"denied"))
    orchestrator, _ = _orchestrator(_StubAcquire(_credential("a")), transport, max_attempts=3)

    response = await orchestrator.execute(OutboundRequest("GET", "https://upstream.invalid"))

    assert response.status == 401
    assert response.body == b"denied"
    assert len(transport.requests) == 3


@pytest.mark.asyncio
async def test_other_errors_are_returned_without_retry():
    transport = _StubTransport(TransportResponse(500, {}, b"boom"))
    orchestrator, _ = _orchestrator(_StubAcquire(_credential("a")), transport)

    response = await orchestrator.execute(OutboundRequest("GET", "https://upstream.invalid"))

    assert response.status == 500
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_exhausted_attempts_return_last_response():
    transport = _StubTransport(TransportResponse(429, {"Retry-After": "5"}))
    orchestrator, cooldowns = _orchestrator(_StubAcquire(_credential("a")), transport, max_attempts=2)

    response = await orchestrator.execute(OutboundRequest("GET", "https://upstream.invalid"))

    assert response.status == 429
    assert len(transport.requests) == 2
    assert len(cooldowns.calls) == 2


@pytest.mark.asyncio
async def test_acquisition_errors_propagate():
    acquire = _StubAcquire(_credential("a"), errors.all_accounts_cooling_down(10_000))
    transport = _StubTransport(TransportResponse(429, {"Retry-After": "10"}))
    orchestrator, _ = _orchestrator(acquire, transport)

    with pytest.raises(ClassifiedAuthError) as excinfo:
        await orchestrator.execute(OutboundRequest("GET", "https://upstream.invalid"))

    assert excinfo.value.kind is AuthErrorKind.ALL_ACCOUNTS_COOLING_DOWN
    assert excinfo.value.to_envelope()["error"]["code"] == "all_accounts_cooling_down"

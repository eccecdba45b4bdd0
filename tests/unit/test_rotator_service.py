from __future__ import annotations

import json
from typing import Any

import pytest

from codex_rotator.core.auth.refresh import RefreshError, TokenRefreshResult
from codex_rotator.core.storage import write_json_atomic
from codex_rotator.dependencies import build_context
from codex_rotator.modules.accounts.auth_manager import SessionContext
from codex_rotator.modules.proxy.fetch_orchestrator import AccountSwitch, OutboundRequest, TransportResponse

pytestmark = pytest.mark.unit

HOUR_MS = 3_600_000


def _account(name: str, **fields: Any) -> dict[str, Any]:
    return {"accountId": name, "email": f"{name}@example.com", "plan": "plus", **fields}


def _key(name: str) -> str:
    return f"{name}|{name}@example.com|plus"


async def _no_refresh(refresh_token: str):
    raise AssertionError(f"unexpected refresh {refresh_token}")


def _seed(settings, native: list[dict[str, Any]], codex: list[dict[str, Any]] | None = None, **domain: Any) -> None:
    openai: dict[str, Any] = {"type": "oauth", "native": {"accounts": native, **domain}}
    if codex is not None:
        openai["codex"] = {"accounts": codex}
    write_json_atomic(settings.accounts_path, {"version": 1, "openai": openai})


class _QuotaResponse:
    def __init__(self, payload: dict) -> None:
        self.status = 200
        self._payload = payload

    async def json(self, content_type: str | None = None) -> dict:
        return self._payload

    async def text(self) -> str:
        return json.dumps(self._payload)

    async def __aenter__(self) -> _QuotaResponse:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


class _QuotaClient:
    def __init__(self, used_by_account: dict[str, float], reset_at: int) -> None:
        self._used = used_by_account
        self._reset_at = reset_at
        self.accounts: list[str | None] = []

    def request(self, method, url, headers=None, timeout=None, retry_options=None) -> _QuotaResponse:
        account = (headers or {}).get("chatgpt-account-id")
        self.accounts.append(account)
        payload = {"rate_limit": {"primary_window": {"used_percent": self._used[account], "reset_at": self._reset_at}}}
        return _QuotaResponse(payload)


@pytest.mark.asyncio
async def test_set_cooldown_never_shortens_and_spans_modes(settings, clock):
    _seed(settings, [_account("a", refresh="r")], codex=[_account("a", refresh="r")])
    context = build_context(settings, refresh=_no_refresh, clock=clock)
    service = context.service

    assert await service.set_cooldown(_key("a"), clock.now + 50_000) is True
    assert await service.set_cooldown(_key("a"), clock.now + 10_000, mode="native") is True

    document = context.accounts_store.load()
    assert document.openai.native.accounts[0].cooldown_until == clock.now + 50_000
    assert document.openai.codex.accounts[0].cooldown_until == clock.now + 50_000
    assert await service.set_cooldown("missing|x@y.z|pro", clock.now + 1) is False


@pytest.mark.asyncio
async def test_background_selection_reads_without_writing(settings, clock):
    _seed(
        settings,
        [
            _account("a", access="tok-a", refresh="r", expires=clock.now + HOUR_MS, enabled=False),
            _account("b", access="tok-b", refresh="r", expires=clock.now + HOUR_MS),
        ],
    )
    before = settings.accounts_path.read_bytes()
    context = build_context(settings, refresh=_no_refresh, clock=clock)

    selection = await context.service.select_account_for_background("native")

    assert selection.access_token == "tok-b"
    assert selection.account_id == "b"
    assert settings.accounts_path.read_bytes() == before


@pytest.mark.asyncio
async def test_background_selection_skips_expired_token_and_missing_domain(settings, clock):
    _seed(settings, [_account("a", access="tok-a", refresh="r", expires=clock.now - 1)])
    context = build_context(settings, refresh=_no_refresh, clock=clock)

    stale = await context.service.select_account_for_background("native")
    missing = await context.service.select_account_for_background("codex")

    assert stale.access_token is None
    assert stale.account_id == "a"
    assert missing.access_token is None and missing.account_id is None


@pytest.mark.asyncio
async def test_orchestrator_rotates_after_rate_limit(settings, clock):
    valid = clock.now + HOUR_MS
    _seed(
        settings,
        [
            _account("a", access="tok-a", refresh="r-a", expires=valid),
            _account("b", access="tok-b", refresh="r-b", expires=valid),
        ],
        strategy="sticky",
        activeIdentityKey=_key("a"),
    )
    context = build_context(settings, refresh=_no_refresh, clock=clock)
    seen_tokens: list[str] = []
    switches: list[AccountSwitch] = []

    async def transport(request: OutboundRequest) -> TransportResponse:
        seen_tokens.append(request.headers["Authorization"])
        if request.headers["Authorization"] == "Bearer tok-a":
            return TransportResponse(429, {"Retry-After": "120"})
        return TransportResponse(200, {}, b"done")

    async def notify(switch: AccountSwitch) -> None:
        switches.append(switch)

    orchestrator = context.service.fetch_orchestrator("native", transport, notify=notify)
    response = await orchestrator.execute(OutboundRequest("POST", "https://upstream.invalid/responses"))

    assert response.body == b"done"
    assert seen_tokens == ["Bearer tok-a", "Bearer tok-b"]
    assert switches[0].previous_label == "a@example.com (plus)"
    assert switches[0].next_label == "b@example.com (plus)"
    document = context.accounts_store.load()
    assert document.openai.native.accounts[0].cooldown_until == clock.now + 120_000
    assert document.openai.native.active_identity_key == _key("b")


@pytest.mark.asyncio
async def test_invalidate_session_forgets_assignment(settings, clock):
    valid = clock.now + HOUR_MS
    _seed(settings, [_account("a", access="tok-a", refresh="r-a", expires=valid)])
    context = build_context(settings, refresh=_no_refresh, clock=clock)
    await context.service.acquire_credential("native", SessionContext(session_key="s1"))
    assert context.affinity["native"].sticky_by_session_key == {"s1": _key("a")}

    await context.service.invalidate_session("s1")

    assert context.affinity["native"].sticky_by_session_key == {}
    persisted = json.loads(settings.session_affinity_path.read_text(encoding="utf-8"))
    assert persisted["native"]["stickyBySessionKey"] == {}


@pytest.mark.asyncio
async def test_apply_quota_cooldowns_cools_exhausted_accounts(settings, clock):
    valid = clock.now + HOUR_MS
    reset_at = clock.now + 2 * HOUR_MS
    _seed(
        settings,
        [
            _account("a", access="tok-a", refresh="r-a", expires=valid),
            _account("b", access="tok-b", refresh="r-b", expires=valid),
            _account("c", access="tok-c", refresh="r-c", expires=clock.now - 1),
        ],
    )
    context = build_context(settings, refresh=_no_refresh, clock=clock)
    client = _QuotaClient({"a": 100, "b": 20}, reset_at)

    applied = await context.service.apply_quota_cooldowns("native", client)  # type: ignore[arg-type]

    assert applied == {_key("a"): reset_at}
    assert client.accounts == ["a", "b"]
    accounts = context.accounts_store.load().openai.native.accounts
    assert accounts[0].cooldown_until == reset_at
    assert accounts[1].cooldown_until is None


@pytest.mark.asyncio
async def test_unauthorized_active_account_fails_over_when_refresh_is_rejected(settings, clock):
    valid = clock.now + HOUR_MS
    _seed(
        settings,
        [
            _account("a", access="tok-a", refresh="r-a", expires=valid),
            _account("b", access="tok-b", refresh="r-b", expires=valid),
        ],
        strategy="sticky",
        activeIdentityKey=_key("a"),
    )
    refreshed: list[str] = []

    async def refresh(refresh_token: str) -> TokenRefreshResult:
        refreshed.append(refresh_token)
        raise RefreshError("invalid_grant", "refresh token revoked", status_code=400)

    context = build_context(settings, refresh=refresh, clock=clock)
    seen_tokens: list[str] = []

    async def transport(request: OutboundRequest) -> TransportResponse:
        seen_tokens.append(request.headers["Authorization"])
        if request.headers["Authorization"] == "Bearer tok-a":
            return TransportResponse(401, {})
        return TransportResponse(200, {}, b"done")

    orchestrator = context.service.fetch_orchestrator("native", transport)
    response = await orchestrator.execute(OutboundRequest("POST", "https://upstream.invalid/responses"))

    assert response.status == 200
    assert seen_tokens == ["Bearer tok-a", "Bearer tok-b"]
    assert refreshed == ["r-a"]
    domain = context.accounts_store.load().openai.native
    assert domain.accounts[0].enabled is False
    assert domain.accounts[0].access is None
    assert domain.accounts[1].cooldown_until is None
    assert domain.active_identity_key == _key("b")


@pytest.mark.asyncio
async def test_unauthorized_token_is_replaced_by_a_fresh_one(settings, clock):
    valid = clock.now + HOUR_MS
    _seed(settings, [_account("a", access="tok-a", refresh="r-a", expires=valid)])

    async def refresh(refresh_token: str) -> TokenRefreshResult:
        return TokenRefreshResult(
            access_token="tok-a2",
            refresh_token="r-a2",
            id_token=None,
            expires_in=3600,
            account_id=None,
            email=None,
            plan_type=None,
        )

    context = build_context(settings, refresh=refresh, clock=clock)
    seen_tokens: list[str] = []

    async def transport(request: OutboundRequest) -> TransportResponse:
        seen_tokens.append(request.headers["Authorization"])
        status = 401 if request.headers["Authorization"] == "Bearer tok-a" else 200
        return TransportResponse(status, {})

    orchestrator = context.service.fetch_orchestrator("native", transport)
    response = await orchestrator.execute(OutboundRequest("GET", "https://upstream.invalid"))

    assert response.status == 200
    assert seen_tokens == ["Bearer tok-a", "Bearer tok-a2"]
    stored = context.accounts_store.load().openai.native.accounts[0]
    assert stored.access == "tok-a2"
    assert stored.refresh == "r-a2"


@pytest.mark.asyncio
async def test_discard_keeps_token_written_since_rejection(settings, clock):
    valid = clock.now + HOUR_MS
    _seed(settings, [_account("a", access="tok-new", refresh="r-a", expires=valid)])
    context = build_context(settings, refresh=_no_refresh, clock=clock)

    assert await context.repository.discard_access_token("native", _key("a"), "tok-old") is False
    assert await context.repository.discard_access_token("codex", _key("a"), "tok-new") is False

    stored = context.accounts_store.load().openai.native.accounts[0]
    assert stored.access == "tok-new"
    assert stored.expires == valid


@pytest.mark.asyncio
async def test_successful_response_stamps_last_used(settings, clock):
    valid = clock.now + HOUR_MS
    _seed(settings, [_account("a", access="tok-a", refresh="r-a", expires=valid, lastUsed=clock.now - HOUR_MS)])
    context = build_context(settings, refresh=_no_refresh, clock=clock)
    finished_at = clock.now + 5 * 60_000

    async def slow_transport(request: OutboundRequest) -> TransportResponse:
        clock.advance(5 * 60_000)
        return TransportResponse(200, {})

    orchestrator = context.service.fetch_orchestrator("native", slow_transport)
    await orchestrator.execute(OutboundRequest("POST", "https://upstream.invalid/responses"))

    assert context.accounts_store.load().openai.native.accounts[0].last_used == finished_at

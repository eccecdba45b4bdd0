from __future__ import annotations

import asyncio
import json

import aiohttp
import pytest

from codex_rotator.core.auth.refresh import RefreshError, is_terminal_refresh_failure, refresh_access_token

pytestmark = pytest.mark.unit


class StubResponse:
    def __init__(self, status: int, payload: object | None = None, text: str | None = None) -> None:
        self.status = status
        self._payload = payload
        self._text = text if text is not None else (json.dumps(payload) if payload is not None else "")

    async def json(self, content_type: str | None = None) -> object:
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    async def text(self) -> str:
        return self._text


class StubPostContext:
    def __init__(self, outcome: StubResponse | Exception) -> None:
        self._outcome = outcome

    async def __aenter__(self) -> StubResponse:
        if isinstance(self._outcome, Exception):
            raise self._outcome
        return self._outcome

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


class StubSession:
    def __init__(self, outcome: StubResponse | Exception) -> None:
        self._outcome = outcome
        self.calls: list[dict[str, object]] = []

    def post(self, url: str, *, data=None, headers=None, timeout=None) -> StubPostContext:
        self.calls.append({"url": url, "data": data, "headers": headers})
        return StubPostContext(self._outcome)


async def _refresh(session: StubSession, token: str = "refresh-old"):
    return await refresh_access_token(
        token,
        base_url="https://auth.example.invalid/",
        client_id="client-123",
        session=session,  # type: ignore[arg-type]
    )


@pytest.mark.asyncio
async def test_refresh_posts_form_and_parses_tokens(jwt_factory):
    id_token = jwt_factory(
        {
            "email": "user@example.com",
            "https://api.openai.com/auth": {"chatgpt_account_id": "acc_1", "chatgpt_plan_type": "plus"},
        }
    )
    session = StubSession(
        StubResponse(
            200,
            {"access_token": "new-access", "refresh_token": "new-refresh", "id_token": id_token, "expires_in": 900},
        )
    )

    result = await _refresh(session)

    assert session.calls[0]["url"] == "https://auth.example.invalid/oauth/token"
    assert session.calls[0]["data"] == {
        "grant_type": "refresh_token",
        "refresh_token": "refresh-old",
        "client_id": "client-123",
    }
    assert result.access_token == "new-access"
    assert result.refresh_token == "new-refresh"
    assert result.expires_in == 900
    assert result.account_id == "acc_1"
    assert result.email == "user@example.com"
    assert result.plan_type == "plus"


@pytest.mark.asyncio
async def test_refresh_keeps_previous_refresh_token_and_default_expiry():
    session = StubSession(StubResponse(200, {"access_token": "new-access", "expires_in": "soon"}))

    result = await _refresh(session, "refresh-keep")

    assert result.refresh_token == "refresh-keep"
    assert result.expires_in == 3600
    assert result.account_id is None


@pytest.mark.asyncio
async def test_invalid_grant_is_permanent():
    session = StubSession(StubResponse(400, {"error": "invalid_grant", "error_description": "Refresh token expired"}))

    with pytest.raises(RefreshError) as excinfo:
        await _refresh(session)

    assert excinfo.value.code == "invalid_grant"
    assert excinfo.value.status_code == 400
    assert excinfo.value.is_permanent is True
    assert "Refresh token expired" in excinfo.value.message


@pytest.mark.asyncio
async def test_nested_error_object_is_parsed():
    session = StubSession(
        StubResponse(401, {"error": {"code": "refresh_token_reused", "message": "Token was already used"}})
    )

    with pytest.raises(RefreshError) as excinfo:
        await _refresh(session)

    assert excinfo.value.code == "refresh_token_reused"
    assert excinfo.value.is_permanent is True


@pytest.mark.asyncio
async def test_server_error_is_transient():
    session = StubSession(StubResponse(503, None, text="upstream unavailable"))

    with pytest.raises(RefreshError) as excinfo:
        await _refresh(session)

    assert excinfo.value.code is None
    assert excinfo.value.status_code == 503
    assert excinfo.value.is_permanent is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("failure", "code"),
    [
        (asyncio.TimeoutError(), "timeout"),
        (aiohttp.ClientConnectionError("reset"), "transport_error"),
    ],
)
async def test_transport_failures_are_transient(failure: Exception, code: str):
    with pytest.raises(RefreshError) as excinfo:
        await _refresh(StubSession(failure))

    assert excinfo.value.code == code
    assert excinfo.value.is_permanent is False


@pytest.mark.asyncio
async def test_missing_access_token_is_rejected():
    with pytest.raises(RefreshError) as excinfo:
        await _refresh(StubSession(StubResponse(200, {"refresh_token": "r"})))

    assert excinfo.value.code == "invalid_response"
    assert excinfo.value.is_permanent is False


@pytest.mark.parametrize(
    ("code", "message", "expected"),
    [
        ("invalid_grant", None, True),
        ("TOKEN_REVOKED", None, True),
        (None, "Your refresh token has been revoked", True),
        (None, "upstream returned invalid_grant", True),
        ("server_error", "temporarily unavailable", False),
        (None, None, False),
    ],
)
def test_is_terminal_refresh_failure(code, message, expected):
    assert is_terminal_refresh_failure(code, message) is expected

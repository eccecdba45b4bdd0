from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass

import aiohttp

from codex_rotator.core.auth import claims_from_token

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN_SECONDS = 3600

PERMANENT_FAILURE_CODES = {
    "invalid_grant": "Refresh token was rejected - re-login required",
    "invalid_refresh_token": "Refresh token is invalid - re-login required",
    "refresh_token_expired": "Refresh token expired - re-login required",
    "refresh_token_reused": "Refresh token was reused - re-login required",
    "refresh_token_invalidated": "Refresh token was revoked - re-login required",
    "refresh_token_revoked": "Refresh token was revoked - re-login required",
    "token_revoked": "Token was revoked - re-login required",
}


@dataclass(frozen=True, slots=True)
class TokenRefreshResult:
    access_token: str
    refresh_token: str
    id_token: str | None
    expires_in: int
    account_id: str | None
    email: str | None
    plan_type: str | None


class RefreshError(Exception):
    def __init__(
        self,
        code: str | None,
        message: str,
        *,
        status_code: int | None = None,
        is_permanent: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.is_permanent = is_terminal_refresh_failure(code, message) if is_permanent is None else is_permanent


def is_terminal_refresh_failure(code: str | None, message: str | None) -> bool:
    """Explicit invalid/revoked grant signals are terminal; everything else is retryable."""
    normalized_code = code.strip().lower() if code else None
    if normalized_code and normalized_code in PERMANENT_FAILURE_CODES:
        return True
    text = (message or "").strip().lower()
    if "invalid_grant" in text:
        return True
    if "refresh token" in text and any(word in text for word in ("invalid", "expired", "revoked")):
        return True
    return False


async def refresh_access_token(
    refresh_token: str,
    *,
    base_url: str = "https://auth.openai.com",
    client_id: str,
    timeout_seconds: float = 30.0,
    session: aiohttp.ClientSession | None = None,
) -> TokenRefreshResult:
    url = f"{base_url.rstrip('/')}/oauth/token"
    form = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": client_id,
    }
    timeout = aiohttp.ClientTimeout(total=timeout_seconds)
    if session is not None:
        return await _post_refresh(session, url, form, timeout, refresh_token)
    async with aiohttp.ClientSession() as owned_session:
        return await _post_refresh(owned_session, url, form, timeout, refresh_token)


async def _post_refresh(
    session: aiohttp.ClientSession,
    url: str,
    form: dict[str, str],
    timeout: aiohttp.ClientTimeout,
    refresh_token: str,
) -> TokenRefreshResult:
    try:
        async with session.post(
            url,
            data=form,
            headers={"Accept": "application/json"},
            timeout=timeout,
        ) as resp:
            if resp.status >= 400:
                raise await _refresh_error_from_response(resp)
            try:
                payload = await resp.json(content_type=None)
            except (aiohttp.ContentTypeError, json.JSONDecodeError, ValueError) as exc:
                raise RefreshError("invalid_response", "Invalid JSON from token endpoint", status_code=resp.status) from exc
    except RefreshError:
        raise
    except asyncio.TimeoutError as exc:
        raise RefreshError("timeout", "Token refresh timed out", is_permanent=False) from exc
    except aiohttp.ClientError as exc:
        raise RefreshError("transport_error", f"Token refresh failed: {exc}", is_permanent=False) from exc

    return _parse_refresh_payload(payload, refresh_token)


async def _refresh_error_from_response(resp: aiohttp.ClientResponse) -> RefreshError:
    code: str | None = None
    description: str | None = None
    try:
        raw = await resp.text()
        data = json.loads(raw) if raw else None
    except (ValueError, aiohttp.ClientError):
        data = None
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, str):
            code = error
            if isinstance(data.get("error_description"), str):
                description = data["error_description"]
        elif isinstance(error, dict):
            if isinstance(error.get("code"), str):
                code = error["code"]
            if isinstance(error.get("message"), str):
                description = error["message"]
    if code:
        detail = f"{code}: {description}" if description else code
    else:
        detail = f"status {resp.status}"
    return RefreshError(code, f"Token refresh failed ({detail})", status_code=resp.status)


def _parse_refresh_payload(payload: object, previous_refresh_token: str) -> TokenRefreshResult:
    if not isinstance(payload, dict):
        raise RefreshError("invalid_response", "Unexpected token endpoint payload", is_permanent=False)
    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise RefreshError("invalid_response", "Token endpoint returned no access_token", is_permanent=False)
    refresh_token = payload.get("refresh_token")
    if not isinstance(refresh_token, str) or not refresh_token:
        refresh_token = previous_refresh_token
    id_token = payload.get("id_token") if isinstance(payload.get("id_token"), str) else None
    expires_in = payload.get("expires_in")
    if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)) or expires_in <= 0:
        expires_in = DEFAULT_EXPIRES_IN_SECONDS

    claims = claims_from_token(id_token or access_token)
    return TokenRefreshResult(
        access_token=access_token,
        refresh_token=refresh_token,
        id_token=id_token,
        expires_in=int(expires_in),
        account_id=claims.account_id,
        email=claims.email,
        plan_type=claims.plan_type,
    )

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass

import aiohttp
from aiohttp_retry import ExponentialRetry, RetryClient
from pydantic import BaseModel, ConfigDict, ValidationError

logger = logging.getLogger(__name__)

WHAM_USAGE_PATH = "/wham/usage"
CODEX_USAGE_URL = "https://api.openai.com/api/codex/usage"
RETRY_STATUSES = {429, 500, 502, 503, 504}
# Reset timestamps below this are epoch seconds rather than epoch milliseconds.
_EPOCH_SECONDS_CEILING = 2_000_000_000


class UsageFetchError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class UsageWindow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    used_percent: float | None = None
    reset_at: float | None = None
    resets_at: float | None = None
    limit_window_seconds: float | None = None
    reset_after_seconds: float | None = None


class UsageRateLimit(BaseModel):
    model_config = ConfigDict(extra="ignore")

    primary_window: UsageWindow | None = None
    secondary_window: UsageWindow | None = None


class UsageCredits(BaseModel):
    model_config = ConfigDict(extra="ignore")

    has_credits: bool | None = None
    unlimited: bool | None = None
    balance: str | float | None = None


class UsageLimitEntry(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str | None = None
    left_pct: float | None = None
    leftPct: float | None = None
    used_percent: float | None = None
    remaining: float | None = None
    limit: float | None = None
    reset_at: float | None = None
    resets_at: float | None = None


class UsagePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    plan_type: str | None = None
    rate_limit: UsageRateLimit | None = None
    primary: UsageWindow | None = None
    secondary: UsageWindow | None = None
    limits: list[UsageLimitEntry] | None = None
    credits: UsageCredits | None = None


@dataclass(frozen=True, slots=True)
class QuotaLimit:
    name: str
    left_pct: int
    resets_at: int | None = None


@dataclass(frozen=True, slots=True)
class QuotaCredits:
    has_credits: bool | None
    unlimited: bool | None
    balance: str | None


@dataclass(frozen=True, slots=True)
class QuotaSnapshot:
    updated_at: int
    limits: tuple[QuotaLimit, ...]
    plan_type: str | None = None
    credits: QuotaCredits | None = None

    @property
    def exhausted(self) -> bool:
        return any(limit.left_pct <= 0 for limit in self.limits)


async def fetch_usage(
    *,
    access_token: str,
    account_id: str | None,
    client: RetryClient,
    base_url: str = "https://chatgpt.com/backend-api",
    url: str | None = None,
    max_retries: int = 2,
    timeout_seconds: float = 10.0,
) -> UsagePayload:
    usage_url = url or f"{base_url.rstrip('/')}{WHAM_USAGE_PATH}"
    headers = _usage_headers(access_token, account_id)
    retry_options = ExponentialRetry(
        attempts=max_retries + 1,
        start_timeout=0.5,
        max_timeout=4.0,
        statuses=RETRY_STATUSES,
        exceptions={aiohttp.ClientError, asyncio.TimeoutError},
    )
    timeout = aiohttp.ClientTimeout(total=timeout_seconds)
    try:
        async with client.request(
            "GET",
            usage_url,
            headers=headers,
            timeout=timeout,
            retry_options=retry_options,
        ) as resp:
            if resp.status >= 400:
                text = await resp.text()
                raise UsageFetchError(resp.status, _error_message(resp.status, text))
            try:
                data = await resp.json(content_type=None)
            except ValueError as exc:
                raise UsageFetchError(resp.status, "Invalid usage payload") from exc
    except UsageFetchError:
        raise
    except asyncio.TimeoutError as exc:
        raise UsageFetchError(0, "Usage fetch timed out") from exc
    except aiohttp.ClientError as exc:
        raise UsageFetchError(0, f"Usage fetch failed: {exc}") from exc

    if not isinstance(data, dict):
        raise UsageFetchError(502, "Unexpected usage payload")
    try:
        return UsagePayload.model_validate(data)
    except ValidationError as exc:
        raise UsageFetchError(502, "Unexpected usage payload") from exc


async def fetch_quota(
    *,
    access_token: str,
    account_id: str | None,
    client: RetryClient,
    now_ms: int,
    base_url: str = "https://chatgpt.com/backend-api",
    max_retries: int = 2,
    timeout_seconds: float = 10.0,
) -> QuotaSnapshot | None:
    """Best-effort quota snapshot; ``None`` when no endpoint yields usable limits.

    ChatGPT (JWT) tokens try the WHAM endpoint first, API tokens the Codex usage endpoint.
    """
    wham_url = f"{base_url.rstrip('/')}{WHAM_USAGE_PATH}"
    is_chatgpt_token = len(access_token.split(".")) == 3
    endpoints = [wham_url, CODEX_USAGE_URL] if is_chatgpt_token else [CODEX_USAGE_URL, wham_url]

    for endpoint in endpoints:
        try:
            payload = await fetch_usage(
                access_token=access_token,
                account_id=account_id,
                client=client,
                url=endpoint,
                max_retries=max_retries,
                timeout_seconds=timeout_seconds,
            )
        except UsageFetchError as exc:
            logger.debug(
                "Quota fetch failed endpoint=%s status=%s message=%s",
                endpoint,
                exc.status_code,
                exc.message,
            )
            continue
        snapshot = snapshot_from_payload(payload, now_ms=now_ms)
        if snapshot is not None:
            return snapshot
    return None


def snapshot_from_payload(payload: UsagePayload, *, now_ms: int) -> QuotaSnapshot | None:
    rate_limit = payload.rate_limit
    primary = (rate_limit.primary_window if rate_limit else None) or payload.primary
    secondary = (rate_limit.secondary_window if rate_limit else None) or payload.secondary

    limits: list[QuotaLimit] = []
    for name, window in (("requests", primary), ("tokens", secondary)):
        limit = _window_limit(name, window)
        if limit is not None:
            limits.append(limit)

    if not limits and payload.limits:
        for entry in payload.limits:
            limit = _entry_limit(entry)
            if limit is not None:
                limits.append(limit)

    if not limits:
        return None
    return QuotaSnapshot(
        updated_at=now_ms,
        limits=tuple(limits),
        plan_type=payload.plan_type,
        credits=_credits(payload.credits),
    )


def cooldown_from_quota(snapshot: QuotaSnapshot | None, now_ms: int) -> int | None:
    """Epoch-ms until which the account should cool down, or ``None`` if it has quota left.

    When several windows are exhausted the account is usable only once all of them reset.
    """
    if snapshot is None:
        return None
    resets = [
        limit.resets_at
        for limit in snapshot.limits
        if limit.left_pct <= 0 and limit.resets_at is not None and limit.resets_at > now_ms
    ]
    if not resets:
        return None
    return max(resets)


def _usage_headers(access_token: str, account_id: str | None) -> dict[str, str]:
    headers = {
        "Authorization": f"Bearer {access_token}",
        "Accept": "application/json",
        "Origin": "https://chatgpt.com",
    }
    if account_id:
        headers["chatgpt-account-id"] = account_id
    return headers


def _error_message(status: int, text: str) -> str:
    snippet = text.strip()[:200] if text else ""
    if snippet:
        return f"Usage fetch failed ({status}): {snippet}"
    return f"Usage fetch failed ({status})"


def _window_limit(name: str, window: UsageWindow | None) -> QuotaLimit | None:
    if window is None or window.used_percent is None:
        return None
    return QuotaLimit(
        name=name,
        left_pct=_clamp_pct(100 - window.used_percent),
        resets_at=_to_epoch_ms(window.reset_at if window.reset_at is not None else window.resets_at),
    )


def _entry_limit(entry: UsageLimitEntry) -> QuotaLimit | None:
    left = entry.left_pct if entry.left_pct is not None else entry.leftPct
    if left is None and entry.used_percent is not None:
        left = 100 - entry.used_percent
    if left is None and entry.remaining is not None and entry.limit:
        left = entry.remaining / entry.limit * 100
    if left is None:
        return None
    return QuotaLimit(
        name=(entry.name or "requests").lower(),
        left_pct=_clamp_pct(left),
        resets_at=_to_epoch_ms(entry.reset_at if entry.reset_at is not None else entry.resets_at),
    )


def _credits(credits: UsageCredits | None) -> QuotaCredits | None:
    if credits is None:
        return None
    balance = credits.balance
    if isinstance(balance, float):
        balance = f"{balance:g}"
    if isinstance(balance, str):
        balance = balance.strip() or None
    if credits.has_credits is None and credits.unlimited is None and balance is None:
        return None
    return QuotaCredits(has_credits=credits.has_credits, unlimited=credits.unlimited, balance=balance)


def _clamp_pct(value: float) -> int:
    if not math.isfinite(value):
        return 0
    return int(round(min(100.0, max(0.0, value))))


def _to_epoch_ms(value: float | None) -> int | None:
    if value is None or not math.isfinite(value) or value <= 0:
        return None
    if value < _EPOCH_SECONDS_CEILING:
        return int(value * 1000)
    return int(value)

from __future__ import annotations

from enum import Enum
from typing import TypedDict

LOGIN_HINT = "Re-run the OAuth login flow to reauthenticate."


class AuthErrorKind(str, Enum):
    OAUTH_NOT_CONFIGURED = "oauth_not_configured"
    NO_ACCOUNTS_CONFIGURED = "no_accounts_configured"
    NO_ENABLED_ACCOUNTS = "no_enabled_accounts"
    MISSING_REFRESH_TOKEN = "missing_refresh_token"
    MISSING_ACCOUNT_IDENTITY = "missing_account_identity"
    REFRESH_INVALID_GRANT = "refresh_invalid_grant"
    REFRESH_FAILED = "refresh_failed"
    ALL_ACCOUNTS_COOLING_DOWN = "all_accounts_cooling_down"
    AUTH_STORAGE_ERROR = "auth_storage_error"
    NO_VALID_ACCESS_TOKEN = "no_valid_access_token"


class AuthErrorDetail(TypedDict, total=False):
    message: str
    type: str
    code: str
    param: str
    wait_ms: int


class AuthErrorEnvelope(TypedDict):
    error: AuthErrorDetail


class StorageError(Exception):
    """File I/O failure of a persisted store, distinct from any credential failure."""


class LockTimeoutError(StorageError):
    pass


class ClassifiedAuthError(Exception):
    kind: AuthErrorKind
    status: int
    param: str | None
    wait_ms: int | None

    def __init__(
        self,
        kind: AuthErrorKind,
        message: str,
        *,
        status: int = 401,
        param: str | None = None,
        wait_ms: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status = status
        self.param = param
        self.wait_ms = wait_ms

    def to_envelope(self) -> AuthErrorEnvelope:
        detail: AuthErrorDetail = {
            "message": self.message,
            "type": self.kind.value,
            "code": self.kind.value,
        }
        if self.param:
            detail["param"] = self.param
        if self.wait_ms is not None:
            detail["wait_ms"] = self.wait_ms
        return {"error": detail}


def format_wait_time(ms: int | float) -> str:
    total_seconds = max(0, int(ms // 1000))
    minutes, seconds = divmod(total_seconds, 60)
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def oauth_not_configured() -> ClassifiedAuthError:
    return ClassifiedAuthError(
        AuthErrorKind.OAUTH_NOT_CONFIGURED,
        f"Not authenticated with OpenAI. {LOGIN_HINT}",
        status=401,
        param="auth",
    )


def no_accounts_configured(mode: str) -> ClassifiedAuthError:
    return ClassifiedAuthError(
        AuthErrorKind.NO_ACCOUNTS_CONFIGURED,
        f"No OpenAI {mode} accounts configured. {LOGIN_HINT}",
        status=401,
        param="accounts",
    )


def no_enabled_accounts(mode: str) -> ClassifiedAuthError:
    return ClassifiedAuthError(
        AuthErrorKind.NO_ENABLED_ACCOUNTS,
        f"No enabled OpenAI {mode} accounts available. "
        "Enable an account with `codex-rotator enable` or re-run the OAuth login flow.",
        status=403,
        param="accounts",
    )


def missing_refresh_token() -> ClassifiedAuthError:
    return ClassifiedAuthError(
        AuthErrorKind.MISSING_REFRESH_TOKEN,
        f"Selected OpenAI account is missing a refresh token. {LOGIN_HINT}",
        status=401,
        param="accounts",
    )


def missing_account_identity() -> ClassifiedAuthError:
    return ClassifiedAuthError(
        AuthErrorKind.MISSING_ACCOUNT_IDENTITY,
        f"Selected OpenAI account is missing identity metadata. {LOGIN_HINT}",
        status=401,
        param="accounts",
    )


def refresh_invalid_grant(*, all_rejected: bool = False) -> ClassifiedAuthError:
    if all_rejected:
        message = f"All enabled OpenAI refresh tokens were rejected (invalid_grant). {LOGIN_HINT}"
    else:
        message = f"OpenAI refresh token was rejected (invalid_grant). {LOGIN_HINT}"
    return ClassifiedAuthError(
        AuthErrorKind.REFRESH_INVALID_GRANT,
        message,
        status=401,
        param="auth",
    )


def refresh_failed() -> ClassifiedAuthError:
    return ClassifiedAuthError(
        AuthErrorKind.REFRESH_FAILED,
        "Failed to refresh OpenAI access token. Try again shortly or re-run the OAuth login flow.",
        status=401,
        param="auth",
    )


def all_accounts_cooling_down(wait_ms: int) -> ClassifiedAuthError:
    return ClassifiedAuthError(
        AuthErrorKind.ALL_ACCOUNTS_COOLING_DOWN,
        f"All enabled OpenAI accounts are cooling down. Try again in {format_wait_time(wait_ms)} "
        "or re-run the OAuth login flow to add another account.",
        status=429,
        param="accounts",
        wait_ms=wait_ms,
    )


def auth_storage_error() -> ClassifiedAuthError:
    return ClassifiedAuthError(
        AuthErrorKind.AUTH_STORAGE_ERROR,
        "Unable to access OpenAI auth storage. Check file permissions of the accounts file "
        "and re-run the OAuth login flow if needed.",
        status=500,
        param="auth",
    )


def no_valid_access_token() -> ClassifiedAuthError:
    return ClassifiedAuthError(
        AuthErrorKind.NO_VALID_ACCESS_TOKEN,
        f"No valid OpenAI access token available. {LOGIN_HINT}",
        status=401,
        param="auth",
    )

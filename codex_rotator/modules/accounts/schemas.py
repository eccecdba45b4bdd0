from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import Field, model_validator

from codex_rotator.core.auth import claims_from_token
from codex_rotator.core.balancer import RotationStrategy, normalize_strategy
from codex_rotator.core.identity import (
    normalize_account_id,
    normalize_email,
    normalize_plan,
    synchronize_identity_key,
)
from codex_rotator.modules.shared.schemas import StoreModel, clean_epoch_ms, clean_str

logger = logging.getLogger(__name__)

AuthMode = Literal["native", "codex"]
AUTH_MODES: tuple[AuthMode, ...] = ("native", "codex")
DOCUMENT_VERSION = 1

_STRING_FIELDS = ("identityKey", "accountId", "email", "plan", "access", "refresh")
_EPOCH_FIELDS = ("expires", "refreshLeaseUntil", "cooldownUntil", "lastUsed")


class AccountRecord(StoreModel):
    identity_key: str | None = None
    account_id: str | None = None
    email: str | None = None
    plan: str | None = None
    enabled: bool = True
    access: str | None = None
    refresh: str | None = None
    expires: int | None = None
    refresh_lease_until: int | None = None
    cooldown_until: int | None = None
    last_used: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _sanitize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        cleaned: dict[str, Any] = {}
        for key, value in data.items():
            camel = _CAMEL_BY_FIELD.get(key, key)
            if camel in _STRING_FIELDS:
                value = clean_str(value)
            elif camel in _EPOCH_FIELDS:
                value = clean_epoch_ms(value)
            elif camel == "enabled":
                value = value if isinstance(value, bool) else True
            else:
                continue
            cleaned[camel] = value
        return cleaned

    @model_validator(mode="after")
    def _normalize_identity(self) -> AccountRecord:
        if self.access and not (self.account_id and self.email and self.plan):
            claims = claims_from_token(self.access)
            self.account_id = self.account_id or claims.account_id
            self.email = self.email or claims.email
            self.plan = self.plan or claims.plan_type
        self.account_id = normalize_account_id(self.account_id)
        self.email = normalize_email(self.email)
        self.plan = normalize_plan(self.plan)
        synchronize_identity_key(self)
        return self


_CAMEL_BY_FIELD = {name: field.alias or name for name, field in AccountRecord.model_fields.items()}


class AccountDomain(StoreModel):
    strategy: RotationStrategy | None = None
    accounts: list[AccountRecord] = Field(default_factory=list)
    active_identity_key: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _sanitize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        raw_accounts = data.get("accounts")
        active = data.get("activeIdentityKey", data.get("active_identity_key"))
        return {
            "strategy": normalize_strategy(data["strategy"]) if isinstance(data.get("strategy"), str) else None,
            "accounts": [item for item in raw_accounts if isinstance(item, (dict, AccountRecord))]
            if isinstance(raw_accounts, list)
            else [],
            "activeIdentityKey": clean_str(active),
        }

    @model_validator(mode="after")
    def _drop_dangling_active(self) -> AccountDomain:
        if self.active_identity_key and not any(
            account.identity_key == self.active_identity_key for account in self.accounts
        ):
            fallback = next((account.identity_key for account in self.accounts if account.identity_key), None)
            self.active_identity_key = fallback
        return self


class OpenAIOAuth(StoreModel):
    type: Literal["oauth"] = "oauth"
    native: AccountDomain | None = None
    codex: AccountDomain | None = None


class AuthDocument(StoreModel):
    version: int = DOCUMENT_VERSION
    openai: OpenAIOAuth | None = None


def decode_auth_document(raw: dict[str, Any] | None) -> AuthDocument:
    """Sanitize a parsed accounts file into an :class:`AuthDocument`.

    Understands the current layout plus three older ones: a single legacy OAuth record, a flat
    ``accounts`` list tagged with ``authTypes``, and a bare top-level ``accounts`` list.
    """
    if raw is None:
        return AuthDocument()
    openai = raw.get("openai")
    if isinstance(openai, dict):
        migrated = _migrate_openai(openai)
    elif isinstance(raw.get("accounts"), list):
        migrated = _migrate_bare_accounts(raw)
    else:
        migrated = None
    return AuthDocument.model_validate({"version": DOCUMENT_VERSION, "openai": migrated})


def encode_auth_document(document: AuthDocument) -> dict[str, Any]:
    return document.model_dump(mode="json", by_alias=True, exclude_none=True)


def _migrate_openai(openai: dict[str, Any]) -> dict[str, Any] | None:
    if openai.get("type") != "oauth":
        return None
    domains = {mode: openai.get(mode) for mode in AUTH_MODES if _is_domain(openai.get(mode))}
    if domains:
        shared_strategy = openai.get("strategy")
        for domain in domains.values():
            if domain.get("strategy") is None and shared_strategy is not None:
                domain["strategy"] = shared_strategy
        return {"type": "oauth", **domains}
    if isinstance(openai.get("accounts"), list):
        return _split_by_auth_type(
            openai["accounts"],
            strategy=openai.get("strategy"),
            active_identity_key=openai.get("activeIdentityKey"),
        )
    if isinstance(openai.get("refresh"), str) and isinstance(openai.get("access"), str):
        logger.info("Migrating legacy single-account OAuth record")
        account = {key: openai.get(key) for key in ("access", "refresh", "expires", "accountId", "email", "plan")}
        return {"type": "oauth", "native": {"accounts": [account]}}
    return None


def _migrate_bare_accounts(raw: dict[str, Any]) -> dict[str, Any] | None:
    accounts: list[dict[str, Any]] = []
    for item in raw["accounts"]:
        if not isinstance(item, dict):
            continue
        refresh = clean_str(item.get("refreshToken")) or clean_str(item.get("refresh"))
        if not refresh:
            continue
        accounts.append(
            {
                "refresh": refresh.strip(),
                "access": item.get("accessToken", item.get("access")),
                "expires": item.get("expiresAt", item.get("expires")),
                "accountId": item.get("accountId"),
                "email": item.get("email"),
                "plan": item.get("plan"),
                "enabled": item.get("enabled", True),
                "lastUsed": item.get("lastUsed"),
                "cooldownUntil": item.get("cooldownUntil", item.get("coolingDownUntil")),
                "authTypes": item.get("authTypes"),
            }
        )
    if not accounts:
        return None
    logger.info("Migrating legacy accounts list count=%s", len(accounts))
    active_index = raw.get("activeIndex")
    if isinstance(active_index, bool) or not isinstance(active_index, int):
        active_index = 0
    if not 0 <= active_index < len(accounts):
        active_index = 0
    active = AccountRecord.model_validate(accounts[active_index]).identity_key
    return _split_by_auth_type(accounts, strategy=None, active_identity_key=active)


def _split_by_auth_type(
    accounts: list[Any],
    *,
    strategy: object,
    active_identity_key: object,
) -> dict[str, Any]:
    by_mode: dict[str, list[dict[str, Any]]] = {mode: [] for mode in AUTH_MODES}
    for item in accounts:
        if not isinstance(item, dict):
            continue
        for mode in _auth_types(item.get("authTypes")):
            by_mode[mode].append(dict(item))
    migrated: dict[str, Any] = {"type": "oauth"}
    for mode, items in by_mode.items():
        if mode == "native" or items:
            migrated[mode] = {
                "strategy": strategy,
                "accounts": items,
                "activeIdentityKey": active_identity_key,
            }
    return migrated


def _auth_types(value: object) -> list[AuthMode]:
    if not isinstance(value, list):
        return ["native"]
    modes = [mode for mode in AUTH_MODES if mode in value]
    return modes or ["native"]


def _is_domain(value: object) -> bool:
    return isinstance(value, dict) and isinstance(value.get("accounts"), list)

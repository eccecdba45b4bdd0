from __future__ import annotations

import logging

from codex_rotator.core.balancer import RotationStrategy
from codex_rotator.core.identity import build_identity_key
from codex_rotator.modules.accounts.schemas import (
    AccountDomain,
    AccountRecord,
    AuthDocument,
    AuthMode,
    OpenAIOAuth,
)

logger = logging.getLogger(__name__)


def get_domain(document: AuthDocument, mode: AuthMode) -> AccountDomain | None:
    if document.openai is None:
        return None
    return getattr(document.openai, mode)


def ensure_domain(document: AuthDocument, mode: AuthMode) -> AccountDomain:
    if document.openai is None:
        document.openai = OpenAIOAuth()
    domain = getattr(document.openai, mode)
    if domain is None:
        domain = AccountDomain()
        setattr(document.openai, mode, domain)
    return domain


def reconcile_active_identity_key(domain: AccountDomain) -> str | None:
    """Point ``active_identity_key`` at an enabled account, or clear it when none qualifies."""
    current = domain.active_identity_key
    if current and any(
        account.enabled and account.identity_key == current for account in domain.accounts
    ):
        return current
    replacement = next(
        (account.identity_key for account in domain.accounts if account.enabled and account.identity_key),
        None,
    )
    if replacement != current:
        logger.debug("Reconciled active account previous=%s active=%s", current, replacement)
    domain.active_identity_key = replacement
    return replacement


def attempt_key_for(account: AccountRecord, index: int) -> str:
    """Key identifying one candidate within a single acquisition, stable across re-reads."""
    if account.identity_key:
        return account.identity_key
    if account.account_id or account.email or account.plan:
        return f"{account.account_id or ''}|{account.email or ''}|{account.plan or ''}"
    return f"idx:{index}"


def find_account(domain: AccountDomain, identity_key: str) -> tuple[int, AccountRecord] | tuple[None, None]:
    for index, account in enumerate(domain.accounts):
        if account.identity_key == identity_key:
            return index, account
    return None, None


def find_by_attempt_key(
    domain: AccountDomain,
    attempt_key: str,
    fallback_index: int,
) -> tuple[int, AccountRecord] | tuple[None, None]:
    """Re-locate a candidate in a freshly read domain; the position is only a last resort."""
    for index, account in enumerate(domain.accounts):
        if account.identity_key and account.identity_key == attempt_key:
            return index, account
    if 0 <= fallback_index < len(domain.accounts):
        account = domain.accounts[fallback_index]
        if attempt_key_for(account, fallback_index) == attempt_key:
            return fallback_index, account
    for index, account in enumerate(domain.accounts):
        if attempt_key_for(account, index) == attempt_key:
            return index, account
    return None, None


def format_account_label(account: AccountRecord, index: int) -> str:
    if account.email and account.plan:
        return f"{account.email} ({account.plan})"
    if account.email:
        return account.email
    if account.account_id:
        return f"id:{account.account_id[-6:]}"
    return f"Account {index + 1}"


def upsert_account(domain: AccountDomain, incoming: AccountRecord) -> bool:
    """Insert ``incoming`` or merge it into the record for the same physical account.

    A strict identity match always wins. Refresh-token equality is only used when one side has
    no resolvable identity, and only when exactly one existing record matches that way. When
    merging, fields from the record with the later ``expires`` take precedence. Returns ``True``
    when a new record was appended.
    """
    incoming_key = incoming.identity_key or build_identity_key(incoming.account_id, incoming.email, incoming.plan)
    strict_index: int | None = None
    fallback_indexes: list[int] = []

    for index, existing in enumerate(domain.accounts):
        existing_key = existing.identity_key or build_identity_key(
            existing.account_id, existing.email, existing.plan
        )
        if incoming_key and existing_key == incoming_key:
            strict_index = index
            break
        if (
            incoming.refresh
            and existing.refresh == incoming.refresh
            and (not incoming_key or not existing_key)
        ):
            fallback_indexes.append(index)

    if strict_index is not None:
        match_index = strict_index
    elif len(fallback_indexes) == 1:
        match_index = fallback_indexes[0]
    else:
        if len(fallback_indexes) > 1:
            logger.warning("Ambiguous refresh-token match on upsert matches=%s", len(fallback_indexes))
        domain.accounts.append(incoming)
        if domain.active_identity_key is None and incoming.enabled and incoming.identity_key:
            domain.active_identity_key = incoming.identity_key
        return True

    existing = domain.accounts[match_index]
    existing_expires = existing.expires if existing.expires is not None else -1
    incoming_expires = incoming.expires if incoming.expires is not None else -1
    existing_fields = existing.model_dump(exclude_none=True)
    incoming_fields = incoming.model_dump(exclude_none=True)
    if incoming_expires >= existing_expires:
        merged = {**existing_fields, **incoming_fields}
    else:
        merged = {**incoming_fields, **existing_fields}
    domain.accounts[match_index] = AccountRecord.model_validate(merged)
    return False


def remove_account(domain: AccountDomain, identity_key: str) -> bool:
    before = len(domain.accounts)
    domain.accounts = [account for account in domain.accounts if account.identity_key != identity_key]
    removed = len(domain.accounts) != before
    if removed:
        reconcile_active_identity_key(domain)
    return removed


def set_account_enabled(domain: AccountDomain, identity_key: str, enabled: bool) -> bool:
    _, account = find_account(domain, identity_key)
    if account is None:
        return False
    account.enabled = enabled
    if enabled:
        # A re-enabled account is immediately selectable.
        account.cooldown_until = None
        account.refresh_lease_until = None
    reconcile_active_identity_key(domain)
    return True


def set_strategy(domain: AccountDomain, strategy: RotationStrategy | None) -> None:
    domain.strategy = strategy

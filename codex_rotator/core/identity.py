from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol
from urllib.parse import quote

LEGACY_PREFIX = "legacy|"
_SEPARATOR = "|"


class IdentityFields(Protocol):
    identity_key: str | None
    account_id: str | None
    email: str | None
    plan: str | None


def normalize_email(email: str | None) -> str | None:
    if not email:
        return None
    trimmed = email.strip()
    if not trimmed:
        return None
    return trimmed.lower()


def normalize_plan(plan: str | None) -> str | None:
    if not plan:
        return None
    trimmed = plan.strip()
    if not trimmed:
        return None
    return trimmed.lower()


def normalize_account_id(account_id: str | None) -> str | None:
    if not account_id:
        return None
    trimmed = account_id.strip()
    return trimmed or None


@dataclass(frozen=True, slots=True)
class IdentityKey:
    """Canonical ``accountId|email|plan`` identity of a real-world account.

    Instances are only produced through :meth:`build` (which normalizes) or :meth:`parse`
    (which accepts only canonical strings), so two keys compare equal exactly when their
    canonical string forms do.
    """

    account_id: str
    email: str
    plan: str

    @classmethod
    def build(cls, account_id: str | None, email: str | None, plan: str | None) -> IdentityKey | None:
        normalized_id = normalize_account_id(account_id)
        normalized_email = normalize_email(email)
        normalized_plan = normalize_plan(plan)
        if not normalized_id or not normalized_email or not normalized_plan:
            return None
        return cls(normalized_id, normalized_email, normalized_plan)

    @classmethod
    def parse(cls, value: str | None) -> IdentityKey | None:
        if not value or not is_canonical_identity_key(value):
            return None
        account_id, email, plan = value.split(_SEPARATOR)
        return cls.build(account_id, email, plan)

    @property
    def value(self) -> str:
        return f"{self.account_id}{_SEPARATOR}{self.email}{_SEPARATOR}{self.plan}"

    def __str__(self) -> str:
        return self.value


def build_identity_key(account_id: str | None, email: str | None, plan: str | None) -> str | None:
    key = IdentityKey.build(account_id, email, plan)
    return key.value if key is not None else None


def is_canonical_identity_key(value: str) -> bool:
    parts = value.split(_SEPARATOR)
    if len(parts) != 3:
        return False
    return all(part.strip() for part in parts)


def _legacy_segment(value: str | None) -> str:
    trimmed = value.strip() if value else ""
    if not trimmed:
        return "_"
    return quote(trimmed, safe="")


def build_legacy_identity_fingerprint(account_id: str | None, email: str | None, plan: str | None) -> str:
    return LEGACY_PREFIX + _SEPARATOR.join(
        (
            _legacy_segment(account_id),
            _legacy_segment(normalize_email(email)),
            _legacy_segment(normalize_plan(plan)),
        )
    )


def ensure_identity_key(record: IdentityFields) -> IdentityFields:
    if not record.identity_key:
        record.identity_key = build_identity_key(record.account_id, record.email, record.plan)
    return record


def synchronize_identity_key(record: IdentityFields) -> IdentityFields:
    canonical = build_identity_key(record.account_id, record.email, record.plan)
    if canonical is None:
        return record

    current = record.identity_key
    if not current:
        record.identity_key = canonical
        return record
    if current == canonical:
        return record

    # Only canonical tuples and legacy fingerprints self-heal; any other identifier is kept as-is.
    if current.startswith(LEGACY_PREFIX) or is_canonical_identity_key(current):
        record.identity_key = canonical
    return record

from __future__ import annotations

from typing import Any

from pydantic import Field, model_validator

from codex_rotator.modules.shared.schemas import StoreModel, clean_epoch_ms

MAX_SESSION_AFFINITY_ENTRIES = 200
DOCUMENT_VERSION = 1


def clamp_entries(entries: list[tuple[str, Any]], max_entries: int) -> list[tuple[str, Any]]:
    """Keep the newest ``max_entries``; entries are ordered oldest first."""
    if len(entries) <= max_entries:
        return entries
    return entries[len(entries) - max_entries :]


def sanitize_seen_map(value: object, max_entries: int = MAX_SESSION_AFFINITY_ENTRIES) -> dict[str, int]:
    if not isinstance(value, dict):
        return {}
    entries: list[tuple[str, Any]] = []
    for key, seen_at in value.items():
        timestamp = clean_epoch_ms(seen_at)
        if not isinstance(key, str) or not key.strip() or timestamp is None:
            continue
        entries.append((key, timestamp))
    entries.sort(key=lambda item: item[1])
    return dict(clamp_entries(entries, max_entries))


def sanitize_assignment_map(value: object, max_entries: int = MAX_SESSION_AFFINITY_ENTRIES) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    entries: list[tuple[str, Any]] = [
        (key, identity_key)
        for key, identity_key in value.items()
        if isinstance(key, str) and key.strip() and isinstance(identity_key, str) and identity_key
    ]
    return dict(clamp_entries(entries, max_entries))


class SessionAffinityModeRecord(StoreModel):
    seen_session_keys: dict[str, int] = Field(default_factory=dict)
    sticky_by_session_key: dict[str, str] = Field(default_factory=dict)
    hybrid_by_session_key: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _sanitize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return {}
        return {
            "seenSessionKeys": sanitize_seen_map(data.get("seenSessionKeys", data.get("seen_session_keys"))),
            "stickyBySessionKey": sanitize_assignment_map(
                data.get("stickyBySessionKey", data.get("sticky_by_session_key"))
            ),
            "hybridBySessionKey": sanitize_assignment_map(
                data.get("hybridBySessionKey", data.get("hybrid_by_session_key"))
            ),
        }

    def is_empty(self) -> bool:
        return not (self.seen_session_keys or self.sticky_by_session_key or self.hybrid_by_session_key)


class SessionAffinityDocument(StoreModel):
    version: int = DOCUMENT_VERSION
    native: SessionAffinityModeRecord | None = None
    codex: SessionAffinityModeRecord | None = None


def decode_session_affinity(raw: dict[str, Any] | None) -> SessionAffinityDocument:
    if raw is None:
        return SessionAffinityDocument()
    modes: dict[str, Any] = {}
    for mode in ("native", "codex"):
        if not isinstance(raw.get(mode), dict):
            continue
        record = SessionAffinityModeRecord.model_validate(raw[mode])
        if not record.is_empty():
            modes[mode] = record
    return SessionAffinityDocument(version=DOCUMENT_VERSION, **modes)


def encode_session_affinity(document: SessionAffinityDocument) -> dict[str, Any]:
    return document.model_dump(mode="json", by_alias=True, exclude_none=True)

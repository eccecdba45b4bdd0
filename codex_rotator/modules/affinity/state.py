from __future__ import annotations

import logging
from typing import Callable

import anyio

from codex_rotator.core.balancer import RotationStrategy, SessionAssignment
from codex_rotator.core.errors import StorageError
from codex_rotator.core.storage import JsonFileStore
from codex_rotator.core.utils.time import now_ms
from codex_rotator.modules.accounts.schemas import AuthMode
from codex_rotator.modules.affinity.schemas import (
    MAX_SESSION_AFFINITY_ENTRIES,
    SessionAffinityDocument,
    SessionAffinityModeRecord,
    clamp_entries,
)
from codex_rotator.modules.affinity.sessions import SessionExistsFn

logger = logging.getLogger(__name__)


class SessionAffinityState:
    """Process-local session affinity maps for one auth mode, backed by the affinity file.

    The maps are hints: selection always re-checks account health, so a stale or lost entry only
    costs a reassignment.
    """

    def __init__(
        self,
        mode: AuthMode,
        store: JsonFileStore[SessionAffinityDocument],
        session_exists: SessionExistsFn,
        *,
        max_entries: int = MAX_SESSION_AFFINITY_ENTRIES,
        missing_grace_ms: int = 0,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.mode = mode
        self._store = store
        self._session_exists = session_exists
        self._max_entries = max_entries
        self._missing_grace_ms = max(0, missing_grace_ms)
        self._clock = clock
        self._persist_lock = anyio.Lock()
        self.seen_session_keys: dict[str, int] = {}
        self.sticky_by_session_key: dict[str, str] = {}
        self.hybrid_by_session_key: dict[str, str] = {}

    async def load(self) -> int:
        document = await self._store.aload()
        record = getattr(document, self.mode) or SessionAffinityModeRecord()
        self.seen_session_keys = dict(record.seen_session_keys)
        self.sticky_by_session_key = dict(record.sticky_by_session_key)
        self.hybrid_by_session_key = dict(record.hybrid_by_session_key)
        removed = await self.prune()
        logger.debug(
            "Loaded session affinity mode=%s sessions=%s pruned=%s",
            self.mode,
            len(self.seen_session_keys),
            removed,
        )
        return removed

    def assignments_for(self, strategy: RotationStrategy) -> dict[str, str] | None:
        if strategy == "sticky":
            return self.sticky_by_session_key
        if strategy == "hybrid":
            return self.hybrid_by_session_key
        return None

    def touch(self, session_key: str, now: int | None = None) -> None:
        self.seen_session_keys.pop(session_key, None)
        self.seen_session_keys[session_key] = now if now is not None else self._clock()
        self._clamp()

    def record(self, strategy: RotationStrategy, assignment: SessionAssignment) -> None:
        assignments = self.assignments_for(strategy)
        if assignments is None:
            return
        assignments.pop(assignment.session_key, None)
        assignments[assignment.session_key] = assignment.identity_key
        self._clamp()

    def invalidate(self, session_key: str) -> bool:
        dropped_sticky = self.sticky_by_session_key.pop(session_key, None)
        dropped_hybrid = self.hybrid_by_session_key.pop(session_key, None)
        return dropped_sticky is not None or dropped_hybrid is not None

    async def prune(self, now: int | None = None) -> int:
        """Forget sessions that no longer exist, unless seen within the missing-session grace."""
        current = now if now is not None else self._clock()
        keys = set(self.seen_session_keys) | set(self.sticky_by_session_key) | set(self.hybrid_by_session_key)
        removed = 0
        for session_key in sorted(keys):
            if await self._session_exists(session_key):
                continue
            last_seen = self.seen_session_keys.get(session_key)
            if self._missing_grace_ms > 0 and last_seen is not None:
                if current - last_seen <= self._missing_grace_ms:
                    continue
            if self.seen_session_keys.pop(session_key, None) is not None:
                removed += 1
            self.sticky_by_session_key.pop(session_key, None)
            self.hybrid_by_session_key.pop(session_key, None)
        return removed

    async def persist(self) -> None:
        async with self._persist_lock:
            await self.prune()
            record = self.snapshot()

            def _write(document: SessionAffinityDocument) -> None:
                setattr(document, self.mode, None if record.is_empty() else record)

            try:
                await self._store.asave(_write)
            except StorageError:
                logger.warning("Failed to persist session affinity mode=%s", self.mode, exc_info=True)

    def snapshot(self) -> SessionAffinityModeRecord:
        return SessionAffinityModeRecord(
            seen_session_keys=dict(self.seen_session_keys),
            sticky_by_session_key=dict(self.sticky_by_session_key),
            hybrid_by_session_key=dict(self.hybrid_by_session_key),
        )

    def _clamp(self) -> None:
        seen = sorted(self.seen_session_keys.items(), key=lambda item: item[1])
        self.seen_session_keys = dict(clamp_entries(seen, self._max_entries))
        self.sticky_by_session_key = dict(clamp_entries(list(self.sticky_by_session_key.items()), self._max_entries))
        self.hybrid_by_session_key = dict(clamp_entries(list(self.hybrid_by_session_key.items()), self._max_entries))

from __future__ import annotations

from pathlib import Path
from typing import Awaitable, Callable

import anyio

SessionExistsFn = Callable[[str], Awaitable[bool]]


def is_safe_session_key(session_key: str) -> bool:
    if not session_key or not session_key.strip():
        return False
    return "/" not in session_key and "\\" not in session_key and ".." not in session_key


def create_session_exists_fn(sessions_dir: Path | None) -> SessionExistsFn:
    """Session liveness check backed by ``<sessions_dir>/<session_key>.json`` marker files.

    Without a directory every session counts as alive, so pruning only bounds entry counts.
    """

    async def session_exists(session_key: str) -> bool:
        if not is_safe_session_key(session_key):
            return False
        if sessions_dir is None:
            return True
        try:
            return await anyio.Path(sessions_dir / f"{session_key}.json").exists()
        except OSError:
            return False

    return session_exists

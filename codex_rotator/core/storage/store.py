from __future__ import annotations

import json
import logging
from functools import partial
from pathlib import Path
from typing import Any, Callable, Generic, TypeVar

import anyio

from codex_rotator.core.errors import StorageError
from codex_rotator.core.storage.io import dump_json, write_json_atomic
from codex_rotator.core.storage.lock import file_lock
from codex_rotator.core.storage.quarantine import DEFAULT_KEEP, quarantine_file
from codex_rotator.core.utils.time import now_ms

logger = logging.getLogger(__name__)

DocT = TypeVar("DocT")

Mutator = Callable[[DocT], "DocT | None"]


class JsonFileStore(Generic[DocT]):
    """Locked read-mutate-write access to one JSON document on disk.

    ``decode`` receives the parsed JSON root (or ``None`` when the file is missing) and returns
    a sanitized document; it must accept ``None``. A file that is not valid JSON, whose root is
    not an object, or that ``decode`` rejects with ``ValueError`` is quarantined and treated as
    missing, so :meth:`load` never fails on malformed content.
    Only genuine I/O failures surface, as :class:`StorageError`.
    """

    def __init__(
        self,
        path: Path,
        *,
        decode: Callable[[dict[str, Any] | None], DocT],
        encode: Callable[[DocT], dict[str, Any]],
        quarantine_dir: Path | None = None,
        quarantine_keep: int = DEFAULT_KEEP,
        lock_timeout_seconds: float = 10.0,
        lock_retry_interval_seconds: float = 0.05,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._path = path
        self._decode = decode
        self._encode = encode
        self._quarantine_dir = quarantine_dir if quarantine_dir is not None else path.parent / "quarantine"
        self._quarantine_keep = quarantine_keep
        self._lock_timeout_seconds = lock_timeout_seconds
        self._lock_retry_interval_seconds = lock_retry_interval_seconds
        self._clock = clock

    @property
    def path(self) -> Path:
        return self._path

    @property
    def quarantine_dir(self) -> Path:
        return self._quarantine_dir

    def load(self, *, lock: bool = True) -> DocT:
        """Read the current document.

        ``lock=False`` is a best-effort snapshot for display or candidate selection; any caller
        that will write back must go through :meth:`save`.
        """
        if not lock:
            return self._read_unlocked()
        with self._locked():
            return self._read_unlocked()

    def save(self, mutate: Mutator[DocT]) -> DocT:
        """Apply ``mutate`` to the on-disk document under the lock and persist the result.

        ``mutate`` may edit the document in place (returning ``None``) or return a replacement.
        Nothing is written when the encoded document is unchanged.
        """
        with self._locked():
            current = self._read_unlocked()
            before = dump_json(self._encode(current))
            result = mutate(current)
            updated = current if result is None else result
            payload = self._encode(updated)
            if dump_json(payload) == before and self._path.exists():
                return updated
            try:
                write_json_atomic(self._path, payload)
            except OSError as exc:
                raise StorageError(f"failed to write {self._path}: {exc}") from exc
            return updated

    async def aload(self, *, lock: bool = True) -> DocT:
        return await anyio.to_thread.run_sync(partial(self.load, lock=lock))

    async def asave(self, mutate: Mutator[DocT]) -> DocT:
        return await anyio.to_thread.run_sync(partial(self.save, mutate))

    def _locked(self):
        return file_lock(
            self._path,
            timeout_seconds=self._lock_timeout_seconds,
            retry_interval_seconds=self._lock_retry_interval_seconds,
        )

    def _read_unlocked(self) -> DocT:
        try:
            raw = self._path.read_bytes()
        except FileNotFoundError:
            return self._decode(None)
        except OSError as exc:
            raise StorageError(f"failed to read {self._path}: {exc}") from exc

        try:
            parsed = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            parsed = None
        else:
            if isinstance(parsed, dict):
                try:
                    return self._decode(parsed)
                except ValueError:
                    logger.warning("Store document failed validation path=%s", self._path, exc_info=True)

        self._quarantine()
        return self._decode(None)

    def _quarantine(self) -> None:
        try:
            destination = quarantine_file(
                self._path,
                self._quarantine_dir,
                now_ms=self._clock(),
                keep=self._quarantine_keep,
            )
        except FileNotFoundError:
            return
        except OSError:
            logger.warning("Failed to quarantine corrupt store path=%s", self._path, exc_info=True)
            return
        logger.warning("Quarantined corrupt store path=%s quarantined_path=%s", self._path, destination)

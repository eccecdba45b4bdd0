from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

OWNER_ONLY = 0o600


def enforce_owner_only_permissions(path: Path) -> None:
    try:
        os.chmod(path, OWNER_ONLY)
    except PermissionError:
        logger.debug("Unable to restrict permissions path=%s", path)


def dump_json(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False) + "\n"


def _fsync_directory(directory: Path) -> None:
    try:
        dir_fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)


def write_json_atomic(path: Path, value: Any) -> None:
    """Write ``value`` as JSON to ``path`` through a same-directory temp file and ``os.replace``.

    Readers never observe a partially written document. The temp file is created 0600 before
    any content is written.
    """
    text = dump_json(value)
    path.parent.mkdir(parents=True, exist_ok=True)

    handle = None
    tmp_path: str | None = None
    try:
        handle = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = handle.name
        os.chmod(tmp_path, OWNER_ONLY)
        handle.write(text)
        handle.flush()
        os.fsync(handle.fileno())
        handle.close()
        handle = None
        os.replace(tmp_path, path)
        tmp_path = None
    finally:
        if handle is not None:
            handle.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
    _fsync_directory(path.parent)
    enforce_owner_only_permissions(path)

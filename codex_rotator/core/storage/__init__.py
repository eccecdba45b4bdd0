from codex_rotator.core.storage.io import enforce_owner_only_permissions, write_json_atomic
from codex_rotator.core.storage.lock import file_lock, lock_path_for
from codex_rotator.core.storage.quarantine import quarantine_file
from codex_rotator.core.storage.store import JsonFileStore

__all__ = [
    "JsonFileStore",
    "enforce_owner_only_permissions",
    "file_lock",
    "lock_path_for",
    "quarantine_file",
    "write_json_atomic",
]

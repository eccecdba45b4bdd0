from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path

from codex_rotator.core.storage.io import enforce_owner_only_permissions

logger = logging.getLogger(__name__)

QUARANTINE_SUFFIX = ".quarantine.json"
DEFAULT_KEEP = 5


def quarantine_file(source: Path, quarantine_dir: Path, *, now_ms: int, keep: int = DEFAULT_KEEP) -> Path:
    """Move an unreadable file into ``quarantine_dir`` as ``{name}.{now_ms}.quarantine.json``.

    Only the newest ``keep`` quarantined copies of the same source name are retained; older
    ones are pruned by their embedded timestamp.
    """
    keep = max(1, int(keep))
    quarantine_dir.mkdir(parents=True, exist_ok=True)
    destination = quarantine_dir / f"{source.name}.{now_ms}{QUARANTINE_SUFFIX}"

    try:
        source.replace(destination)
    except OSError:
        # Cross-device moves cannot be renamed.
        shutil.copyfile(source, destination)
        source.unlink()

    enforce_owner_only_permissions(destination)
    _prune_quarantine(source.name, quarantine_dir, keep)
    return destination


def _prune_quarantine(base_name: str, quarantine_dir: Path, keep: int) -> None:
    pattern = re.compile(rf"^{re.escape(base_name)}\.(\d+){re.escape(QUARANTINE_SUFFIX)}$")

    def _sort_key(path: Path) -> tuple[float, str]:
        match = pattern.match(path.name)
        timestamp = float(match.group(1)) if match else float("-inf")
        return timestamp, path.name

    try:
        candidates = [path for path in quarantine_dir.iterdir() if path.name.startswith(f"{base_name}.")]
    except OSError:
        logger.warning("Unable to list quarantine directory path=%s", quarantine_dir, exc_info=True)
        return

    candidates.sort(key=_sort_key)
    excess = len(candidates) - keep
    for path in candidates[: max(0, excess)]:
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError:
            logger.warning("Unable to prune quarantined file path=%s", path, exc_info=True)

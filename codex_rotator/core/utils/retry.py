from __future__ import annotations

import random
import re
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Mapping

_INTEGER_SECONDS = re.compile(r"^[0-9]+$")


def parse_retry_after_ms(headers: Mapping[str, str], now_ms: int) -> int | None:
    """Return the ``Retry-After`` delay in milliseconds, or ``None`` when absent or unparseable.

    Accepts both delta-seconds (``"120"``) and HTTP-date values. Dates in the past clamp to zero.
    """
    raw: str | None = None
    for key, value in headers.items():
        if key.lower() == "retry-after":
            raw = value
            break
    if raw is None:
        return None

    trimmed = raw.strip()
    if not trimmed:
        return None
    if _INTEGER_SECONDS.match(trimmed):
        return int(trimmed) * 1000
    try:
        float(trimmed)
    except ValueError:
        pass
    else:
        # Fractional or negative numbers are not valid delta-seconds.
        return None

    try:
        moment = parsedate_to_datetime(trimmed)
    except (TypeError, ValueError):
        return None
    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return max(0, int(moment.timestamp() * 1000) - now_ms)


def backoff_seconds(attempt: int, *, base: float = 0.05, cap: float = 1.0, jitter: float = 0.0) -> float:
    exponent = max(0, int(attempt))
    delay = min(cap, base * (2**exponent))
    if jitter > 0:
        delay += random.uniform(0, jitter)
    return delay

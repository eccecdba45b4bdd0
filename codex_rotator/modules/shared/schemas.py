from __future__ import annotations

import math

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class StoreModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


def clean_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    return value if value.strip() else None


def clean_epoch_ms(value: object) -> int | None:
    # bool is an int subclass; JSON true/false is never a timestamp.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return int(value)

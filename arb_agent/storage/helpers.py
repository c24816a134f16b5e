from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any


def utc_day_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d")


def serialize_for_redis(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, (int, float, str, Decimal)):
        return str(value)
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def firestore_safe(value: Any) -> Any:
    """Convert values Firestore cannot store natively.

    Decimals become strings and integers beyond int64 (token amounts in wei)
    become decimal strings.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, int) and not -(2**63) <= value < 2**63:
        return str(value)
    if isinstance(value, dict):
        return {str(key): firestore_safe(child) for key, child in value.items()}
    if isinstance(value, (list, tuple)):
        return [firestore_safe(item) for item in value]
    return value

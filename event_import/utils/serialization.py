import hashlib
import json
import math
from datetime import date, datetime
from decimal import Decimal
from typing import Any

import numpy as np
import pandas as pd


def make_json_safe(value: Any) -> Any:
    """
    Convert Python, numpy and pandas objects into JSON-serialisable
    structures, preserving as much fidelity as possible.
    """
    if isinstance(value, dict):
        return {str(key): make_json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [make_json_safe(item) for item in value]
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float):
        # NaN / inf have no JSON representation
        return None if math.isnan(value) or math.isinf(value) else value
    if isinstance(value, Decimal):
        # Keep integers as ints, otherwise convert to string to avoid precision loss
        if value == value.to_integral():
            return int(value)
        return str(value)
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode(errors="ignore")
    if isinstance(value, (int, str, bool)):
        return value
    # Fallback to string representation for unsupported types
    return str(value)


def canonical_json(value: Any) -> str:
    """Deterministic JSON text: sorted keys, no insignificant whitespace."""
    return json.dumps(make_json_safe(value), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_hex(payload) -> str:
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hashlib.sha256(payload).hexdigest()

from __future__ import annotations
from datetime import date, datetime
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd


def clean_value(value: Any) -> Any:
    """Convert numpy / pandas / datetime values into JSON-friendly Python types."""
    if isinstance(value, dict):
        return {str(k): clean_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [clean_value(v) for v in value]
    if isinstance(value, np.ndarray):
        return [clean_value(v) for v in value.tolist()]
    if value is pd.NaT:
        return None
    if isinstance(value, (datetime, date, pd.Timestamp)):
        return value.isoformat()
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        value = float(value)
    if isinstance(value, float) and pd.isna(value):
        return None
    return value


def clean_record(data: Dict[str, Any]) -> Dict[str, Any]:
    """Clean every value of a record for JSON serialization."""
    return {str(k): clean_value(v) for k, v in data.items()}


def matches(record: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    """
    Equality-predicate match, the same semantics as the remote ``eq`` filters.
    Filter values are cleaned first so numpy scalars compare like stored JSON.
    """
    if not filters:
        return True
    return all(record.get(column) == clean_value(value) for column, value in filters.items())

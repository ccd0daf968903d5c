"""Anonymization and projection of long-format records.

Only the allow-listed fields survive: timestamp, parameter name and value.
Everything else an export carries (bed, case number, patient name, user who
charted the value, ...) is dropped here, before any table is built.

Ingestion is type-erased: every value becomes its string representation.
Numeric re-parsing happens later, per category, in cisreshape.coercion.
"""

import datetime
import logging
from typing import Any, Optional

import numpy as np
import pandas as pd

from cisreshape.errors import InvalidTimestamp, MissingIdentifierColumn
from cisreshape.types import DEFAULT_SEPARATOR, LONG_COLUMNS, PARAMETER, TIMESTAMP, VALUE

logger = logging.getLogger(__name__)


def normalize_parameter_name(name: Any) -> Optional[str]:
    """Trim a parameter name; case is preserved."""
    if name is None or (not isinstance(name, str) and pd.isna(name)):
        return None
    name = str(name).strip()
    return name or None


def stringify_value(value: Any, separator: str = DEFAULT_SEPARATOR) -> Optional[str]:
    """Convert a raw cell to its string form.

    Missing values (None, NaN, NaT, empty strings) stay absent. Integral
    floats lose their ``.0`` suffix since spreadsheet readers turn integer
    columns with gaps into floats. Lists are joined with ``separator``.
    """
    if value is None:
        return None
    if isinstance(value, (list, tuple, np.ndarray)):
        parts = [stringify_value(v, separator) for v in value]
        parts = [p for p in parts if p is not None]
        return separator.join(parts) if parts else None
    if pd.isna(value):
        return None
    if isinstance(value, (bool, np.bool_)):
        return "True" if value else "False"
    if isinstance(value, (float, np.floating)):
        value = float(value)
        return str(int(value)) if value.is_integer() else str(value)
    if isinstance(value, (int, np.integer)):
        return str(int(value))
    if isinstance(value, (pd.Timestamp, datetime.datetime, datetime.date)):
        return value.isoformat()
    text = str(value).strip()
    return text or None


def parse_timestamps(
    values: pd.Series,
    timestamp_format: Optional[str] = None,
    dayfirst: bool = False,
    source: Optional[str] = None,
) -> pd.Series:
    """Parse a column into instants, raising on unparseable entries."""
    if pd.api.types.is_datetime64_any_dtype(values):
        return values
    parsed = pd.to_datetime(values, format=timestamp_format, dayfirst=dayfirst, errors="coerce")
    bad = parsed.isna() & values.notna()
    if bad.any():
        raise InvalidTimestamp(values[bad].astype(str).unique().tolist(), source=source)
    return parsed


def anonymize_records(
    records: pd.DataFrame,
    timestamp_format: Optional[str] = None,
    dayfirst: bool = False,
    separator: str = DEFAULT_SEPARATOR,
) -> pd.DataFrame:
    """Restrict records to the allow-listed fields.

    Args:
        records: Aggregated long-format records, possibly with extra fields
        timestamp_format: Explicit strftime format for text timestamps
        dayfirst: Interpret ambiguous dates as day first (e.g. 03.04.2024)
        separator: Join used for list-valued cells

    Returns:
        New DataFrame with exactly ``timestamp``, ``parameter_name``, ``value``.
        Records without a timestamp or parameter name cannot be keyed and are
        dropped with a warning.

    Raises:
        MissingIdentifierColumn: ``timestamp`` or ``parameter_name`` is absent
        InvalidTimestamp: A timestamp cell cannot be parsed
    """
    missing = [c for c in (TIMESTAMP, PARAMETER) if c not in records.columns]
    if missing:
        raise MissingIdentifierColumn(missing)

    dropped_fields = [c for c in records.columns if c not in LONG_COLUMNS]
    if dropped_fields:
        logger.debug(f"Dropping non-allow-listed fields: {dropped_fields}")

    out = pd.DataFrame(index=records.index)
    out[TIMESTAMP] = parse_timestamps(records[TIMESTAMP], timestamp_format, dayfirst)
    out[PARAMETER] = records[PARAMETER].map(normalize_parameter_name).astype(object)
    if VALUE in records.columns:
        out[VALUE] = records[VALUE].map(lambda v: stringify_value(v, separator)).astype(object)
    else:
        logger.warning("No value column present, all values will be absent")
        out[VALUE] = pd.Series([None] * len(records), index=records.index, dtype=object)

    unkeyed = out[TIMESTAMP].isna() | out[PARAMETER].isna()
    if unkeyed.any():
        logger.warning(f"Dropping {int(unkeyed.sum())} record(s) without timestamp or parameter name")
        out = out[~unkeyed]

    return out.reset_index(drop=True)

"""Typed re-parsing and unit coercion of output tables.

Values leave the pivot as strings. Categories that hold measurements declare
numeric columns; those are re-parsed here just before output. Cells that do
not parse (e.g. "<0.1", "see comment") are kept as text so nothing is lost.

Unit harmonization is not automatic. Operators supply a mapping per column
(factor, offset, optional rename) and build_unit_coercion turns it into the
function the workbook assembler applies to every table.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from cisreshape.types import TIMESTAMP, UnitCoercion

logger = logging.getLogger(__name__)


def parse_number(value, decimal: str = "."):
    """Return value as float if it parses, otherwise unchanged."""
    if value is None or isinstance(value, (bool, np.bool_)):
        return value
    if isinstance(value, (int, float, np.integer, np.floating)):
        return float(value)
    text = str(value).strip()
    if decimal != ".":
        text = text.replace(decimal, ".")
    try:
        return float(text)
    except ValueError:
        return value


def _reparse_cell(value, decimal: str, separator: Optional[str]):
    if pd.isna(value):
        return value
    if separator and isinstance(value, str) and separator in value:
        return value
    return parse_number(value, decimal)


def reparse_numeric(
    frame: pd.DataFrame,
    columns: Sequence[str],
    decimal: str = ".",
    separator: Optional[str] = None,
) -> pd.DataFrame:
    """Re-parse the given columns as numbers where possible.

    Columns absent from the frame are ignored. Returns a new frame.

    Args:
        frame: Category table
        columns: Columns to re-parse
        decimal: Decimal separator of the source values
        separator: Join used for multi-valued cells; text containing it holds
            several values and is kept as text
    """
    targets = [c for c in columns if c in frame.columns and c != TIMESTAMP]
    if not targets:
        return frame
    out = frame.copy()
    for col in targets:
        parsed = out[col].map(lambda v: _reparse_cell(v, decimal, separator))
        if parsed.map(lambda v: isinstance(v, float) or pd.isna(v)).all():
            parsed = parsed.astype(float)
        out[col] = parsed
    return out


@dataclass(frozen=True)
class UnitMapping:
    """Conversion of one column: value * factor + offset.

    Attributes:
        column: Source column name
        factor: Multiplicative factor
        offset: Additive offset applied after the factor
        rename: Optional output column name, e.g. including the new unit
    """
    column: str
    factor: float = 1.0
    offset: float = 0.0
    rename: Optional[str] = None

    @classmethod
    def from_dict(cls, column: str, spec) -> "UnitMapping":
        """Build a mapping from a bare factor or a mapping of options."""
        if isinstance(spec, (int, float)):
            return cls(column=column, factor=float(spec))
        return cls(
            column=column,
            factor=float(spec.get("factor", 1.0)),
            offset=float(spec.get("offset", 0.0)),
            rename=spec.get("rename"),
        )

    def convert(self, value):
        """Convert one cell; text and absent cells pass through."""
        if value is None or isinstance(value, (bool, np.bool_, str)):
            return value
        if isinstance(value, (int, float, np.integer, np.floating)):
            if pd.isna(value):
                return value
            return float(value) * self.factor + self.offset
        return value


def identity_coercion(name: str, frame: pd.DataFrame) -> pd.DataFrame:
    """Unit coercion that changes nothing."""
    return frame


def build_unit_coercion(
    mappings: Sequence[UnitMapping],
    tables: Optional[Sequence[str]] = None,
) -> UnitCoercion:
    """Create a coercion function applying the given column mappings.

    Args:
        mappings: Column conversions; columns absent from a table are skipped
        tables: Restrict the conversion to these table names (None = all)

    Returns:
        Callable ``(table_name, frame) -> frame`` returning a new frame
    """
    mappings = list(mappings)
    if not mappings:
        return identity_coercion
    allowed = set(tables) if tables is not None else None

    def coerce(name: str, frame: pd.DataFrame) -> pd.DataFrame:
        if allowed is not None and name not in allowed:
            return frame
        present = [m for m in mappings if m.column in frame.columns]
        if not present:
            return frame
        out = frame.copy()
        renames = {}
        for m in present:
            out[m.column] = out[m.column].map(m.convert)
            if m.rename:
                renames[m.column] = m.rename
        logger.debug(f"Table '{name}': converted units of {[m.column for m in present]}")
        return out.rename(columns=renames)

    return coerce

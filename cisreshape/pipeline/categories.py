"""Category views over the wide table.

A category view is a read-only projection: timestamp plus an ordered list
of parameter columns. Category lists are maintained by operators and written
for many deployments at once, so a column missing from the current dataset
is synthesized as an all-absent column instead of raising.
"""

import logging
from typing import Iterable, Optional, Sequence, Union

import pandas as pd

from cisreshape.errors import MissingIdentifierColumn
from cisreshape.types import TIMESTAMP, CategoryView

logger = logging.getLogger(__name__)


def _dedupe(columns: Iterable[str]) -> list[str]:
    """Drop repeats and the timestamp key, preserving order."""
    seen = set()
    out = []
    for col in columns:
        if col == TIMESTAMP or col in seen:
            continue
        seen.add(col)
        out.append(col)
    return out


def missing_columns(wide: pd.DataFrame, columns: Iterable[str]) -> list[str]:
    """Return requested columns the wide table does not provide."""
    return [c for c in _dedupe(columns) if c not in wide.columns]


def filter_category(
    wide: pd.DataFrame,
    view: Union[CategoryView, Sequence[str]],
    positioning: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """Project the wide table onto one category.

    Args:
        wide: Wide table with a ``timestamp`` column
        view: CategoryView, or a bare ordered list of column names
        positioning: Columns placed right after ``timestamp`` in every view
            (e.g. patient position). They do not count towards
            ``drop_empty_rows``.

    Returns:
        New DataFrame with ``timestamp``, the positioning columns and the view
        columns, in that order, sorted by timestamp. Columns absent from
        ``wide`` are all-absent.

    Raises:
        MissingIdentifierColumn: ``wide`` has no ``timestamp`` column
    """
    if TIMESTAMP not in wide.columns:
        raise MissingIdentifierColumn([TIMESTAMP])
    if not isinstance(view, CategoryView):
        view = CategoryView(name="view", columns=tuple(view))

    requested = _dedupe(view.columns)
    leading = [c for c in _dedupe(positioning or []) if c not in requested]
    columns = [TIMESTAMP] + leading + requested

    absent = [c for c in leading + requested if c not in wide.columns]
    if absent:
        logger.debug(f"View '{view.name}': synthesizing absent columns {absent}")

    out = wide.reindex(columns=columns)
    if view.drop_empty_rows and requested:
        out = out.loc[out[requested].notna().any(axis=1)]

    out = out.sort_values(TIMESTAMP, kind="mergesort").reset_index(drop=True)
    return out


def build_category_tables(
    wide: pd.DataFrame,
    views: Sequence[CategoryView],
    positioning: Optional[Sequence[str]] = None,
) -> dict[str, pd.DataFrame]:
    """Apply every view to the same wide table, in view order."""
    tables = {}
    for view in views:
        if view.name in tables:
            raise ValueError(f"Duplicate category view name: {view.name}")
        tables[view.name] = filter_category(wide, view, positioning)
        logger.debug(f"View '{view.name}': {len(tables[view.name])} rows")
    return tables

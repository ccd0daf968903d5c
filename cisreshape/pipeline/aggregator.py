"""Record aggregation across long-format sources.

Each exported file becomes one RecordBatch. Aggregation checks that every
batch carries the three source columns, renames them to the canonical
long-format names and concatenates the batches in input order. Duplicates
are left for the pivot engine to judge.
"""

import logging
from typing import Optional, Sequence, Union

import pandas as pd

from cisreshape.errors import SchemaMismatch
from cisreshape.types import (
    PARAMETER,
    SOURCE_COLUMNS,
    RecordBatch,
)

logger = logging.getLogger(__name__)

BatchLike = Union[RecordBatch, pd.DataFrame]


def _as_batch(batch: BatchLike, index: int) -> RecordBatch:
    """Wrap bare DataFrames so errors can still name their source."""
    if isinstance(batch, RecordBatch):
        return batch
    if isinstance(batch, pd.DataFrame):
        return RecordBatch(source=f"batch[{index}]", frame=batch)
    raise TypeError(f"Expected RecordBatch or DataFrame, got {type(batch).__name__}")


def validate_batch(batch: RecordBatch, column_map: dict[str, str]) -> None:
    """Raise SchemaMismatch if the batch lacks a mapped source column."""
    missing = [c for c in column_map if c not in batch.frame.columns]
    if missing:
        raise SchemaMismatch(batch.source, missing)


def aggregate_batches(
    batches: Sequence[BatchLike],
    column_map: Optional[dict[str, str]] = None,
) -> pd.DataFrame:
    """Concatenate record batches into one long-format collection.

    Args:
        batches: Ordered sources, one per exported file
        column_map: Source column -> canonical column. Defaults to
            ``Time``/``Parameter Name``/``Value``.

    Returns:
        New DataFrame with canonical columns first, followed by any extra
        columns the sources carried. Row order is batch order, then row order
        within each batch.

    Raises:
        SchemaMismatch: A batch lacks one of the mapped source columns.
    """
    column_map = dict(column_map or SOURCE_COLUMNS)
    canonical = list(column_map.values())

    frames = []
    for i, raw in enumerate(batches):
        batch = _as_batch(raw, i)
        validate_batch(batch, column_map)

        # A source column may already carry a canonical name (e.g. "value")
        frame = batch.frame.rename(columns=column_map)
        if frame.columns.duplicated().any():
            dupes = frame.columns[frame.columns.duplicated()].tolist()
            raise SchemaMismatch(batch.source, [f"ambiguous column {c!r}" for c in dupes])

        logger.debug(f"Batch '{batch.source}': {len(frame)} records")
        frames.append(frame)

    if not frames:
        logger.info("No record batches supplied, returning empty collection")
        return pd.DataFrame({c: pd.Series(dtype=object) for c in canonical})

    records = pd.concat(frames, ignore_index=True, sort=False)
    extras = [c for c in records.columns if c not in canonical]
    records = records[canonical + extras]

    logger.info(f"Aggregated {len(records)} records from {len(frames)} batch(es)")
    return records


def parameter_catalog(records: pd.DataFrame) -> list[str]:
    """Return the distinct parameter names in order of first appearance.

    Diagnostic only: used to discover which columns a dataset offers when
    maintaining category lists.
    """
    if PARAMETER not in records.columns:
        return []
    names = records[PARAMETER].dropna().astype(str).str.strip()
    return [n for n in pd.unique(names) if n]

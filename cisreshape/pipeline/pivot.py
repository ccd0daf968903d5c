"""Long-to-wide pivot of anonymized records.

The pivot splits records into two streams:

1. Multi-valued parameters (declared by name, e.g. a rhythm classification
   that may carry several concurrent values). All values of one
   (timestamp, parameter) group are kept in insertion order, duplicates
   included, and flattened with a separator join.
2. Scalar parameters (everything else). One value per (timestamp, parameter)
   is expected. Byte-identical repeats are collapsed; conflicting repeats
   either raise DuplicateScalarObservation (strict) or resolve to the last
   value in input order (lenient).

Both streams are joined on timestamp. Every distinct timestamp of the input
becomes exactly one row and every distinct parameter name exactly one column.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Optional

import pandas as pd

from cisreshape.errors import (
    ColumnNameCollision,
    DuplicateScalarObservation,
    MissingIdentifierColumn,
)
from cisreshape.types import (
    DEFAULT_SEPARATOR,
    PARAMETER,
    TIMESTAMP,
    VALUE,
    DuplicatePolicy,
    MultiValueDict,
)

logger = logging.getLogger(__name__)

KEY = [TIMESTAMP, PARAMETER]


@dataclass
class PivotResult:
    """Result of the long-to-wide transform.

    Attributes:
        table: Wide table, ``timestamp`` first, sorted ascending
        multi_values: Ordered values per (timestamp, parameter) for the
            multi-valued stream, before flattening
        duplicates_collapsed: Identical scalar repeats merged
        duplicates_resolved: Conflicting scalar repeats dropped (lenient only)
    """
    table: pd.DataFrame
    multi_values: MultiValueDict = field(default_factory=dict)
    duplicates_collapsed: int = 0
    duplicates_resolved: int = 0

    @property
    def parameters(self) -> list[str]:
        """Return the parameter columns in table order."""
        return [c for c in self.table.columns if c != TIMESTAMP]


def flatten_values(values: Iterable[str], separator: str = DEFAULT_SEPARATOR) -> str:
    """Join an ordered value sequence into one display string."""
    return separator.join(str(v) for v in values)


def check_column_names(names: Iterable[str]) -> None:
    """Raise ColumnNameCollision if names clash after normalization.

    Names are compared trimmed and case-folded; a parameter that normalizes
    to the ``timestamp`` key column clashes as well.
    """
    groups = defaultdict(list)
    for name in names:
        key = str(name).strip().casefold()
        if name not in groups[key]:
            groups[key].append(name)

    collisions = {k: v for k, v in groups.items() if len(v) > 1}
    if TIMESTAMP.casefold() in groups:
        collisions[TIMESTAMP] = [TIMESTAMP] + groups[TIMESTAMP.casefold()]
    if collisions:
        raise ColumnNameCollision(collisions)


def _resolve_scalar_duplicates(
    scalar: pd.DataFrame,
    policy: DuplicatePolicy,
) -> tuple[pd.DataFrame, int, int]:
    """Collapse identical repeats and apply the policy to conflicting ones."""
    identical = scalar.duplicated(KEY + [VALUE], keep="last")
    collapsed = int(identical.sum())
    if collapsed:
        logger.debug(f"Collapsed {collapsed} identical scalar observation(s)")
        scalar = scalar.loc[~identical]

    superseded = scalar.duplicated(KEY, keep="last")
    if not superseded.any():
        return scalar, collapsed, 0

    conflicts = scalar.loc[scalar.duplicated(KEY, keep=False), KEY].drop_duplicates()
    pairs = list(conflicts.itertuples(index=False, name=None))

    if policy is DuplicatePolicy.STRICT:
        raise DuplicateScalarObservation(pairs)

    resolved = int(superseded.sum())
    logger.warning(
        f"Lenient mode: {len(pairs)} conflicting (timestamp, parameter) pair(s), "
        f"kept last value, dropped {resolved} observation(s)"
    )
    return scalar.loc[~superseded], collapsed, resolved


def pivot_records(
    records: pd.DataFrame,
    multi_valued: Optional[Iterable[str]] = None,
    policy: DuplicatePolicy = DuplicatePolicy.STRICT,
    separator: str = DEFAULT_SEPARATOR,
) -> PivotResult:
    """Pivot anonymized long-format records into a wide table.

    Args:
        records: Records with ``timestamp``, ``parameter_name``, ``value``
        multi_valued: Parameter names that may carry concurrent values
        policy: Handling of conflicting scalar repeats
        separator: Join used to flatten multi-valued groups

    Returns:
        PivotResult with one row per distinct timestamp. Columns follow the
        order in which parameters first appear in the input.

    Raises:
        MissingIdentifierColumn: Input lacks ``timestamp`` or ``parameter_name``
        ColumnNameCollision: Distinct names normalize to one column
        DuplicateScalarObservation: Conflicting scalar repeat in strict mode
    """
    missing = [c for c in KEY if c not in records.columns]
    if missing:
        raise MissingIdentifierColumn(missing)
    if VALUE not in records.columns:
        records = records.assign(**{VALUE: None})

    policy = DuplicatePolicy.parse(policy)
    multi_valued = {str(n).strip() for n in (multi_valued or [])}

    order = list(pd.unique(records[PARAMETER]))
    check_column_names(order)

    timestamps = pd.Index(pd.unique(records[TIMESTAMP]), name=TIMESTAMP).sort_values()

    observed = records.loc[records[VALUE].notna(), KEY + [VALUE]]
    is_multi = observed[PARAMETER].isin(multi_valued)

    parts = []

    # Multi-valued stream: keep every value, in order
    multi_values = {}
    multi = observed.loc[is_multi]
    if len(multi):
        grouped = multi.groupby(KEY, sort=False)[VALUE].agg(list)
        multi_values = {key: list(vals) for key, vals in grouped.items()}
        flat = grouped.map(lambda vals: flatten_values(vals, separator))
        parts.append(flat.unstack(PARAMETER))
        logger.debug(f"Flattened {len(grouped)} multi-valued group(s)")

    # Scalar stream: one value per cell
    collapsed = resolved = 0
    scalar = observed.loc[~is_multi]
    if len(scalar):
        scalar, collapsed, resolved = _resolve_scalar_duplicates(scalar, policy)
        parts.append(scalar.pivot(index=TIMESTAMP, columns=PARAMETER, values=VALUE))

    if parts:
        wide = pd.concat(parts, axis=1)
        wide = wide.reindex(index=timestamps, columns=order)
    else:
        wide = pd.DataFrame(index=timestamps, columns=order)

    wide = wide.astype(object)
    wide.index.name = TIMESTAMP
    wide.columns.name = None
    table = wide.reset_index()

    logger.info(
        f"Pivoted {len(records)} records into {len(table)} rows x {len(order)} parameters"
    )
    return PivotResult(
        table=table,
        multi_values=multi_values,
        duplicates_collapsed=collapsed,
        duplicates_resolved=resolved,
    )


def unpivot_table(wide: pd.DataFrame) -> pd.DataFrame:
    """Turn a wide table back into long-format records.

    Absent cells produce no record. Rows come out grouped by timestamp in
    table order, columns in table order within each timestamp.
    """
    if TIMESTAMP not in wide.columns:
        raise MissingIdentifierColumn([TIMESTAMP])

    columns = [c for c in wide.columns if c != TIMESTAMP]
    long = wide.melt(id_vars=[TIMESTAMP], value_vars=columns,
                     var_name=PARAMETER, value_name=VALUE)
    long["_row"] = long.groupby(PARAMETER, sort=False).cumcount()
    long["_col"] = long[PARAMETER].map({c: i for i, c in enumerate(columns)})
    long = long.sort_values(["_row", "_col"], kind="mergesort")
    long = long.loc[long[VALUE].notna(), [TIMESTAMP, PARAMETER, VALUE]]
    return long.reset_index(drop=True)

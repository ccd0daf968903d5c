"""cisreshape: de-identified wide tables from monitoring system exports.

Turns long-format clinical time-series exports (one row per timestamp,
parameter and value) into per-patient workbooks with one wide table per
clinical category, alongside laboratory blood gas results.
"""

__version__ = "0.1.0"
__author__ = "cisreshape Team"

from cisreshape.types import (
    TIMESTAMP,
    PARAMETER,
    VALUE,
    DuplicatePolicy,
    Category,
    CategoryView,
    RecordBatch,
    NamedTable,
    RunContext,
)
from cisreshape.errors import (
    ReshapeError,
    SchemaMismatch,
    MissingIdentifierColumn,
    ColumnNameCollision,
    DuplicateScalarObservation,
    InvalidTimestamp,
    WorkbookError,
)

__all__ = [
    "TIMESTAMP",
    "PARAMETER",
    "VALUE",
    "DuplicatePolicy",
    "Category",
    "CategoryView",
    "RecordBatch",
    "NamedTable",
    "RunContext",
    "ReshapeError",
    "SchemaMismatch",
    "MissingIdentifierColumn",
    "ColumnNameCollision",
    "DuplicateScalarObservation",
    "InvalidTimestamp",
    "WorkbookError",
]

"""Transform stages of the reshape pipeline.

This package implements the stages applied to one patient's data:
- Aggregation of long-format record batches
- Anonymization to the timestamp / parameter / value allow-list
- Long-to-wide pivot with multi-valued parameter handling
- Category views over the wide table
- Side-by-side ABG tables from monitoring and laboratory sources
"""

from cisreshape.pipeline.aggregator import (
    aggregate_batches,
    parameter_catalog,
)
from cisreshape.pipeline.anonymizer import (
    anonymize_records,
    normalize_parameter_name,
    stringify_value,
)
from cisreshape.pipeline.pivot import (
    PivotResult,
    pivot_records,
    unpivot_table,
    flatten_values,
)
from cisreshape.pipeline.categories import (
    filter_category,
    build_category_tables,
)
from cisreshape.pipeline.reconcile import reconcile_abg

__all__ = [
    # Aggregation
    "aggregate_batches",
    "parameter_catalog",
    # Anonymization
    "anonymize_records",
    "normalize_parameter_name",
    "stringify_value",
    # Pivot
    "PivotResult",
    "pivot_records",
    "unpivot_table",
    "flatten_values",
    # Categories
    "filter_category",
    "build_category_tables",
    # Reconciliation
    "reconcile_abg",
]

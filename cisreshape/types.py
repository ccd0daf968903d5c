"""Core type definitions for the cisreshape pipeline.

This module defines the canonical column names, enums and dataclasses shared
by every pipeline stage. Record collections and tables themselves are pandas
DataFrames; the dataclasses here describe how they are named and grouped.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

import pandas as pd


# Canonical long-format columns
TIMESTAMP = "timestamp"
PARAMETER = "parameter_name"
VALUE = "value"

LONG_COLUMNS = [TIMESTAMP, PARAMETER, VALUE]

# Column names used by the monitoring system export
SOURCE_COLUMNS = {
    "Time": TIMESTAMP,
    "Parameter Name": PARAMETER,
    "Value": VALUE,
}

DEFAULT_SEPARATOR = ","


class DuplicatePolicy(Enum):
    """Resolution of repeated scalar observations at one timestamp.

    Strict is the default because a silent overwrite loses clinical data.
    """
    STRICT = "strict"       # Raise DuplicateScalarObservation
    LENIENT = "lenient"     # Keep the last value in input order

    @classmethod
    def parse(cls, value) -> "DuplicatePolicy":
        """Accept an enum member or its string value."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown duplicate policy: {value!r} "
                f"(expected one of {[p.value for p in cls]})"
            )


class Category(Enum):
    """Clinical categories shipped in the default configuration."""
    CARDIOVASCULAR_BASIC = "cardiovascular-basic"
    CARDIAC_OUTPUT = "cardiac-output"
    INVASIVE_VENTILATION = "invasive-ventilation"
    NON_INVASIVE_VENTILATION = "non-invasive-ventilation"
    ABG = "abg"

    @classmethod
    def all(cls) -> list["Category"]:
        """Return all categories in workbook order."""
        return list(cls)


@dataclass(frozen=True)
class RecordBatch:
    """One long-format source, e.g. a single exported file.

    Attributes:
        source: Identifier reported in errors (usually the file name)
        frame: Records with at least the configured source columns
    """
    source: str
    frame: pd.DataFrame


@dataclass(frozen=True)
class CategoryView:
    """Declarative projection of the wide table.

    Attributes:
        name: Sheet/table name of the view
        columns: Ordered parameter names; may reference absent parameters
        numeric: Columns re-parsed as numbers after projection
        drop_empty_rows: Drop rows where every view column is absent
    """
    name: str
    columns: tuple[str, ...]
    numeric: tuple[str, ...] = ()
    drop_empty_rows: bool = False

    def __post_init__(self):
        if not self.name or not str(self.name).strip():
            raise ValueError("CategoryView name must be non-empty")
        object.__setattr__(self, "columns", tuple(self.columns))
        object.__setattr__(self, "numeric", tuple(self.numeric))

    @classmethod
    def from_dict(cls, name: str, spec) -> "CategoryView":
        """Build a view from a config entry.

        The entry is either a plain list of columns or a mapping with
        ``columns`` and optional ``numeric`` / ``drop_empty_rows`` keys.
        """
        if isinstance(spec, dict):
            columns = spec.get("columns") or []
            numeric = spec.get("numeric") or []
            if numeric is True:
                numeric = columns
            return cls(
                name=name,
                columns=tuple(columns),
                numeric=tuple(numeric),
                drop_empty_rows=bool(spec.get("drop_empty_rows", False)),
            )
        return cls(name=name, columns=tuple(spec or []))


@dataclass
class NamedTable:
    """A table handed to the workbook sink.

    Attributes:
        name: Sheet name
        frame: Table content, ``timestamp`` first
    """
    name: str
    frame: pd.DataFrame

    @property
    def columns(self) -> list[str]:
        return [str(c) for c in self.frame.columns]

    def __len__(self) -> int:
        return len(self.frame)


@dataclass
class RunContext:
    """Per-run state passed through the pipeline stages.

    Created fresh for every patient; nothing in it outlives the run.

    Attributes:
        patient_id: Identifier of the processed dataset (never written out)
        sources: Names of the ingested event sources
        parameter_catalog: Distinct parameter names observed
        duplicates_resolved: Scalar duplicates dropped in lenient mode
        missing_columns: Per view, the requested columns absent from the data
        leaked_columns: Identifying columns removed by the reconciler
    """
    patient_id: Optional[str] = None
    sources: list[str] = field(default_factory=list)
    parameter_catalog: list[str] = field(default_factory=list)
    duplicates_resolved: int = 0
    missing_columns: dict[str, list[str]] = field(default_factory=dict)
    leaked_columns: list[str] = field(default_factory=list)

    def summary(self) -> str:
        """Return a human-readable summary of the run."""
        lines = [
            f"Patient: {self.patient_id or '<unnamed>'}",
            f"Sources: {len(self.sources)}",
            f"Parameters: {len(self.parameter_catalog)}",
            f"Duplicates resolved (lenient): {self.duplicates_resolved}",
        ]
        for view, missing in self.missing_columns.items():
            if missing:
                lines.append(f"  {view:28s}: {len(missing)} absent column(s)")
        if self.leaked_columns:
            lines.append(f"Identifying columns stripped: {self.leaked_columns}")
        return "\n".join(lines)


# Type aliases for convenience
UnitCoercion = Callable[[str, pd.DataFrame], pd.DataFrame]
MultiValueDict = dict[tuple[pd.Timestamp, str], list[str]]

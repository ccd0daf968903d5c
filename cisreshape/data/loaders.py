"""Data loaders for monitoring exports and laboratory results.

This module provides loaders for:
- Manifest: CSV file linking every patient to its source files
- Event exports: long-format monitoring system exports (.csv, .xlsx, .xls)
- Laboratory: blood gas results from the laboratory system
"""

import pandas as pd
from pathlib import Path
from typing import Optional, Union, Sequence
from dataclasses import dataclass, field
import logging

from cisreshape.errors import SchemaMismatch
from cisreshape.pipeline.anonymizer import parse_timestamps
from cisreshape.types import SOURCE_COLUMNS, TIMESTAMP, RecordBatch

logger = logging.getLogger(__name__)

SPREADSHEET_SUFFIXES = [".xlsx", ".xlsm", ".xls"]


@dataclass
class LoadedSource:
    """Container for one loaded source file."""
    frame: pd.DataFrame
    metadata: dict = field(default_factory=dict)
    valid: bool = True
    error_message: str = ""

    @property
    def source(self) -> str:
        return self.metadata.get("source", "unknown")


def read_table(path: Path, sheet_name: Union[int, str] = 0, **kwargs) -> pd.DataFrame:
    """Read a CSV or spreadsheet file into a DataFrame."""
    suffix = path.suffix.lower()
    if suffix == ".csv":
        return pd.read_csv(path, **kwargs)
    if suffix in SPREADSHEET_SUFFIXES:
        return pd.read_excel(path, sheet_name=sheet_name, **kwargs)
    raise ValueError(f"Unsupported file format: {suffix}")


def _failed(path, message: str) -> LoadedSource:
    return LoadedSource(
        frame=pd.DataFrame(),
        metadata={"source": str(path) if path is not None else "missing"},
        valid=False,
        error_message=message,
    )


class ManifestLoader:
    """Load and manage the patient manifest CSV.

    The manifest links the sources of each patient:
    patient_id, event_paths, lab_path

    ``event_paths`` holds one or more paths separated by ``;``. Relative
    paths are resolved against the data root.
    """

    PATH_SEPARATOR = ";"

    def __init__(self, manifest_path: Union[str, Path], data_root: Optional[Path] = None):
        """Initialize manifest loader.

        Args:
            manifest_path: Path to manifest CSV file
            data_root: Root directory for relative paths in manifest
        """
        self.manifest_path = Path(manifest_path)
        self.data_root = Path(data_root) if data_root else self.manifest_path.parent

        if not self.manifest_path.exists():
            raise FileNotFoundError(f"Manifest not found: {self.manifest_path}")

        self.df = pd.read_csv(self.manifest_path, dtype={"patient_id": str})
        self._validate_manifest()

        logger.info(f"Loaded manifest with {len(self.df)} patients")

    def _validate_manifest(self):
        """Validate manifest has required columns and unique patients."""
        required = ["patient_id", "event_paths"]
        missing = [c for c in required if c not in self.df.columns]
        if missing:
            raise ValueError(f"Manifest missing required columns: {missing}")
        dupes = self.df["patient_id"][self.df["patient_id"].duplicated()].tolist()
        if dupes:
            raise ValueError(f"Manifest lists patients more than once: {dupes}")

    def __len__(self) -> int:
        return len(self.df)

    def __getitem__(self, idx: int) -> dict:
        """Get patient entry by index."""
        return self.df.iloc[idx].to_dict()

    def get_by_patient_id(self, patient_id: str) -> dict:
        """Get patient entry by patient ID."""
        matches = self.df[self.df["patient_id"] == str(patient_id)]
        if len(matches) == 0:
            raise KeyError(f"Patient not found: {patient_id}")
        return matches.iloc[0].to_dict()

    def resolve_path(self, relative_path: str) -> Optional[Path]:
        """Resolve a path from the manifest against the data root."""
        if pd.isna(relative_path) or str(relative_path).strip() == "":
            return None
        path = Path(str(relative_path).strip())
        return path if path.is_absolute() else self.data_root / path

    def event_paths(self, entry: dict) -> list[Path]:
        """Return the resolved event export paths of a manifest entry."""
        raw = entry.get("event_paths")
        if pd.isna(raw):
            return []
        parts = [p for p in str(raw).split(self.PATH_SEPARATOR) if p.strip()]
        return [self.resolve_path(p) for p in parts]

    def lab_path(self, entry: dict) -> Optional[Path]:
        """Return the resolved laboratory path of a manifest entry, if any."""
        return self.resolve_path(entry.get("lab_path"))

    @property
    def patient_ids(self) -> list[str]:
        return self.df["patient_id"].tolist()


class EventExportLoader:
    """Load long-format exports of the monitoring system.

    An export holds one observation per row with at least the configured
    time, parameter and value columns. All other columns are kept; the
    anonymizer removes them later.
    """

    def __init__(
        self,
        column_map: Optional[dict[str, str]] = None,
        sheet_name: Union[int, str] = 0,
    ):
        """Initialize event export loader.

        Args:
            column_map: Source column -> canonical column
            sheet_name: Sheet to read from spreadsheet exports
        """
        self.column_map = dict(column_map or SOURCE_COLUMNS)
        self.sheet_name = sheet_name

    def load(self, path: Union[str, Path]) -> LoadedSource:
        """Load one export file.

        Args:
            path: Path to .csv, .xlsx or .xls export

        Returns:
            LoadedSource with the raw records
        """
        if path is None:
            return _failed(None, "No event export path provided")

        path = Path(path)
        if not path.exists():
            return _failed(path, f"File not found: {path}")

        try:
            # Values stay as read; the anonymizer converts them to strings
            frame = read_table(path, sheet_name=self.sheet_name)
        except Exception as e:
            logger.error(f"Error loading event export from {path}: {e}")
            return _failed(path, str(e))

        frame.columns = [str(c).strip() for c in frame.columns]
        missing = [c for c in self.column_map if c not in frame.columns]

        metadata = {
            "source": path.name,
            "path": str(path),
            "num_records": len(frame),
            "missing_columns": missing,
        }
        return LoadedSource(frame=frame, metadata=metadata, valid=True)

    def load_batch(self, path: Union[str, Path]) -> RecordBatch:
        """Load one export as a RecordBatch, raising on failure."""
        loaded = self.load(path)
        if not loaded.valid:
            raise SchemaMismatch(loaded.source, [f"unreadable: {loaded.error_message}"])
        return RecordBatch(source=loaded.source, frame=loaded.frame)

    def load_all(self, paths: Sequence[Union[str, Path]]) -> list[RecordBatch]:
        """Load several exports in the given order."""
        return [self.load_batch(p) for p in paths]


class LaboratoryLoader:
    """Load arterial blood gas results exported by the laboratory system.

    The laboratory export is a wide table with its own schema. Identifying
    columns are dropped on load and the time column becomes ``timestamp``.
    """

    STANDARD_IDENTIFYING = ["Patient Name", "Patient ID"]

    def __init__(
        self,
        time_column: str = "Time",
        identifying_columns: Optional[list[str]] = None,
        sheet_name: Union[int, str] = 0,
        timestamp_format: Optional[str] = None,
        dayfirst: bool = False,
    ):
        """Initialize laboratory loader.

        Args:
            time_column: Column holding the sample or report time
            identifying_columns: Columns removed before the table is used
            sheet_name: Sheet to read from spreadsheet exports
            timestamp_format: Explicit strftime format of the time column
            dayfirst: Interpret ambiguous dates as day first
        """
        self.time_column = time_column
        self.identifying_columns = list(
            self.STANDARD_IDENTIFYING if identifying_columns is None else identifying_columns
        )
        self.sheet_name = sheet_name
        self.timestamp_format = timestamp_format
        self.dayfirst = dayfirst

    def load(self, path: Union[str, Path]) -> LoadedSource:
        """Load laboratory results from file.

        Args:
            path: Path to .csv, .xlsx or .xls file

        Returns:
            LoadedSource with identifying columns removed
        """
        if path is None:
            return _failed(None, "No laboratory path provided")

        path = Path(path)
        if not path.exists():
            return _failed(path, f"File not found: {path}")

        try:
            frame = read_table(path, sheet_name=self.sheet_name)
        except Exception as e:
            logger.error(f"Error loading laboratory results from {path}: {e}")
            return _failed(path, str(e))

        frame.columns = [str(c).strip() for c in frame.columns]
        return LoadedSource(
            frame=frame,
            metadata={"source": path.name, "path": str(path)},
            valid=True,
        )

    def prepare(self, frame: pd.DataFrame, source: str = "laboratory") -> pd.DataFrame:
        """Drop identifying columns and key the table by ``timestamp``.

        Raises:
            SchemaMismatch: The time column is absent
        """
        if self.time_column not in frame.columns:
            raise SchemaMismatch(source, [self.time_column])

        dropped = [c for c in self.identifying_columns if c in frame.columns]
        out = frame.drop(columns=dropped)
        if dropped:
            logger.debug(f"Dropped identifying laboratory columns: {dropped}")

        out = out.rename(columns={self.time_column: TIMESTAMP})
        out[TIMESTAMP] = parse_timestamps(
            out[TIMESTAMP], self.timestamp_format, self.dayfirst, source=source
        )
        others = [c for c in out.columns if c != TIMESTAMP]
        return out[[TIMESTAMP] + others].reset_index(drop=True)

    def load_table(self, path: Union[str, Path]) -> pd.DataFrame:
        """Load and prepare a laboratory table, raising on failure."""
        loaded = self.load(path)
        if not loaded.valid:
            raise SchemaMismatch(loaded.source, [f"unreadable: {loaded.error_message}"])
        return self.prepare(loaded.frame, source=loaded.source)

"""Workbook assembly and output sinks.

The pipeline core only knows the WorkbookSink interface: an ordered stream of
(name, rows, columns) triples. ExcelWorkbookSink persists them as one .xlsx
sheet per table; MemorySink keeps them in memory for tests and previews.

Sinks buffer every table and only write on close(), so a run that fails
half way leaves no partial workbook behind.
"""

import logging
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Sequence, Union

import pandas as pd

from cisreshape.coercion import identity_coercion
from cisreshape.errors import WorkbookError
from cisreshape.types import TIMESTAMP, NamedTable, UnitCoercion

logger = logging.getLogger(__name__)

MAX_SHEET_NAME = 31
_INVALID_SHEET_CHARS = re.compile(r"[\[\]:*?/\\]")


def sanitize_sheet_name(name: str) -> str:
    """Make a table name acceptable as an Excel sheet name."""
    cleaned = _INVALID_SHEET_CHARS.sub("_", str(name)).strip().strip("'")
    return (cleaned or "Sheet")[:MAX_SHEET_NAME]


class WorkbookSink(ABC):
    """Destination of an ordered set of named tables."""

    @abstractmethod
    def add_table(self, name: str, rows: list[list], columns: list[str]) -> None:
        """Append one table. Order of calls is the sheet order."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Persist everything added so far."""
        pass

    def discard(self) -> None:
        """Drop buffered tables without persisting them."""
        pass

    def __enter__(self) -> "WorkbookSink":
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.close()
        else:
            self.discard()
        return False


class MemorySink(WorkbookSink):
    """Sink keeping tables in memory."""

    def __init__(self):
        self.tables: list[tuple[str, list[list], list[str]]] = []
        self.closed = False

    def add_table(self, name: str, rows: list[list], columns: list[str]) -> None:
        if self.closed:
            raise RuntimeError("Sink already closed")
        self.tables.append((name, rows, list(columns)))

    def close(self) -> None:
        self.closed = True

    def discard(self) -> None:
        self.tables = []

    @property
    def names(self) -> list[str]:
        return [name for name, _, _ in self.tables]

    def frame(self, name: str) -> pd.DataFrame:
        """Return a stored table as a DataFrame."""
        for table_name, rows, columns in self.tables:
            if table_name == name:
                return pd.DataFrame(rows, columns=columns)
        raise KeyError(f"Table not found: {name}")


class ExcelWorkbookSink(WorkbookSink):
    """Sink writing one sheet per table to an .xlsx file.

    The file is written to a temporary name next to the target and moved
    into place once complete.
    """

    def __init__(self, path: Union[str, Path], engine: str = "openpyxl"):
        """Initialize Excel sink.

        Args:
            path: Target workbook path; parent directories are created
            engine: pandas ExcelWriter engine
        """
        self.path = Path(path)
        self.engine = engine
        self._sheets: list[tuple[str, pd.DataFrame]] = []
        self._closed = False

    def add_table(self, name: str, rows: list[list], columns: list[str]) -> None:
        if self._closed:
            raise RuntimeError(f"Workbook already written: {self.path}")
        sheet = sanitize_sheet_name(name)
        if sheet in {s for s, _ in self._sheets}:
            raise WorkbookError(
                f"Duplicate sheet name after sanitizing: {sheet!r} (from {name!r})",
                path=str(self.path),
            )
        self._sheets.append((sheet, pd.DataFrame(rows, columns=columns)))

    def close(self) -> None:
        if self._closed:
            return
        if not self._sheets:
            raise WorkbookError(f"No tables to write to {self.path}", path=str(self.path))

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f".{self.path.stem}.tmp{self.path.suffix}")
        try:
            with pd.ExcelWriter(tmp_path, engine=self.engine) as writer:
                for sheet, frame in self._sheets:
                    frame.to_excel(writer, sheet_name=sheet, index=False)
            os.replace(tmp_path, self.path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

        self._closed = True
        logger.info(f"Wrote {len(self._sheets)} sheet(s) to {self.path}")

    def discard(self) -> None:
        self._sheets = []
        self._closed = True


def table_rows(frame: pd.DataFrame) -> list[list]:
    """Convert a frame to row lists with absent cells as None."""
    return frame.astype(object).where(frame.notna(), None).values.tolist()


def assemble_workbook(
    tables: Sequence[NamedTable],
    sink: WorkbookSink,
    unit_coercion: Optional[UnitCoercion] = None,
) -> list[str]:
    """Hand the named tables to a sink in order.

    Args:
        tables: Ordered named tables, each with ``timestamp`` first
        sink: Destination; not closed here
        unit_coercion: ``(name, frame) -> frame`` applied to every table

    Returns:
        Table names in the order they were added
    """
    unit_coercion = unit_coercion or identity_coercion

    prepared = []
    for table in tables:
        frame = unit_coercion(table.name, table.frame)
        columns = [str(c) for c in frame.columns]
        if not columns or columns[0] != TIMESTAMP:
            raise WorkbookError(f"Table '{table.name}' must have '{TIMESTAMP}' as first column")
        prepared.append((table.name, table_rows(frame), columns))

    # Coercion of every table succeeds before the sink sees any of them
    for name, rows, columns in prepared:
        sink.add_table(name, rows, columns)
        logger.debug(f"Added table '{name}' ({len(rows)} rows, {len(columns)} columns)")

    return [name for name, _, _ in prepared]

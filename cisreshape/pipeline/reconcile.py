"""Side-by-side placement of the two ABG sources.

Arterial blood gas results are recorded twice: charted in the monitoring
system and reported by the laboratory system. Their timestamps are not
guaranteed to refer to the same sample draw (the monitoring time may be the
transcription time), so rows are never matched here. Both tables are handed
on unchanged apart from stripping identifying fields; matching is left to
the reviewer reading the workbook.
"""

import logging
from typing import Iterable, Optional

import pandas as pd

from cisreshape.errors import MissingIdentifierColumn
from cisreshape.types import TIMESTAMP, NamedTable

logger = logging.getLogger(__name__)

DEFAULT_LAB_SHEET = "ABG (laboratory)"


def strip_identifying(
    frame: pd.DataFrame,
    identifying_columns: Iterable[str],
    source: str,
) -> tuple[pd.DataFrame, list[str]]:
    """Drop identifying columns, matched trimmed and case-insensitively.

    Returns:
        (stripped frame, names of the dropped columns)
    """
    keys = {str(c).strip().casefold() for c in identifying_columns}
    leaked = [c for c in frame.columns if str(c).strip().casefold() in keys]
    if leaked:
        logger.warning(f"Stripping identifying column(s) from {source}: {leaked}")
        frame = frame.drop(columns=leaked)
    return frame, leaked


def reconcile_abg(
    monitoring_abg: pd.DataFrame,
    lab_abg: Optional[pd.DataFrame],
    identifying_columns: Iterable[str] = (),
    monitoring_name: str = "abg",
    lab_name: str = DEFAULT_LAB_SHEET,
) -> tuple[list[NamedTable], list[str]]:
    """Combine monitoring and laboratory ABG tables as separate outputs.

    Args:
        monitoring_abg: ABG category view from the wide table
        lab_abg: Laboratory ABG table with a ``timestamp`` column, or None
        identifying_columns: Column names that must not reach the output
        monitoring_name: Table name of the monitoring view
        lab_name: Table name of the laboratory table

    Returns:
        (tables, leaked) where tables holds the monitoring table followed by
        the laboratory table when one was supplied, and leaked lists every
        identifying column that had to be removed.

    Raises:
        MissingIdentifierColumn: A supplied table has no ``timestamp`` column
    """
    identifying_columns = list(identifying_columns)
    if TIMESTAMP not in monitoring_abg.columns:
        raise MissingIdentifierColumn([TIMESTAMP], source=monitoring_name)

    monitoring, leaked = strip_identifying(
        monitoring_abg, identifying_columns, "monitoring ABG"
    )
    tables = [NamedTable(name=monitoring_name, frame=monitoring.reset_index(drop=True))]

    if lab_abg is None:
        logger.info("No laboratory ABG table supplied")
        return tables, leaked

    if TIMESTAMP not in lab_abg.columns:
        raise MissingIdentifierColumn([TIMESTAMP], source=lab_name)

    lab, lab_leaked = strip_identifying(lab_abg, identifying_columns, "laboratory ABG")
    others = [c for c in lab.columns if c != TIMESTAMP]
    lab = lab[[TIMESTAMP] + others].sort_values(TIMESTAMP, kind="mergesort")
    tables.append(NamedTable(name=lab_name, frame=lab.reset_index(drop=True)))

    logger.info(
        f"ABG tables: {len(monitoring)} monitoring row(s), {len(lab)} laboratory row(s)"
    )
    return tables, leaked + lab_leaked

"""Main orchestrator of the reshape pipeline.

This module wires the pipeline stages together for one patient:
1. Aggregate the long-format record batches
2. Anonymize to timestamp / parameter / value
3. Pivot to the wide table
4. Project the category views and re-parse their numeric columns
5. Place monitoring and laboratory ABG tables side by side
6. Hand the named tables to a workbook sink

All tables are computed before the sink sees any of them, so a failing run
never leaves a partial workbook.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence, Union

import pandas as pd
import yaml
from tqdm import tqdm

from cisreshape.coercion import UnitMapping, build_unit_coercion, reparse_numeric
from cisreshape.data.loaders import EventExportLoader, LaboratoryLoader, ManifestLoader
from cisreshape.errors import ReshapeError
from cisreshape.pipeline.aggregator import BatchLike, aggregate_batches, parameter_catalog
from cisreshape.pipeline.anonymizer import anonymize_records
from cisreshape.pipeline.categories import build_category_tables, missing_columns
from cisreshape.pipeline.pivot import PivotResult, pivot_records
from cisreshape.pipeline.reconcile import DEFAULT_LAB_SHEET, reconcile_abg
from cisreshape.types import (
    DEFAULT_SEPARATOR,
    SOURCE_COLUMNS,
    Category,
    CategoryView,
    DuplicatePolicy,
    NamedTable,
    RecordBatch,
    RunContext,
)
from cisreshape.workbook import (
    ExcelWorkbookSink,
    WorkbookSink,
    assemble_workbook,
    sanitize_sheet_name,
)

logger = logging.getLogger(__name__)


def default_categories() -> list[CategoryView]:
    """Category views used when no configuration file is given."""
    return [
        CategoryView(
            name=Category.CARDIOVASCULAR_BASIC.value,
            columns=("HR", "Rhythm", "ABP sys", "ABP dia", "ABP mean",
                     "NBP sys", "NBP dia", "NBP mean", "CVP", "SpO2", "Temp"),
            numeric=("HR", "ABP sys", "ABP dia", "ABP mean", "NBP sys",
                     "NBP dia", "NBP mean", "CVP", "SpO2", "Temp"),
            drop_empty_rows=True,
        ),
        CategoryView(
            name=Category.CARDIAC_OUTPUT.value,
            columns=("CO", "CI", "SV", "SVI", "SVR", "SVRI", "GEDI", "ELWI", "PPV", "SVV"),
            numeric=("CO", "CI", "SV", "SVI", "SVR", "SVRI", "GEDI", "ELWI", "PPV", "SVV"),
            drop_empty_rows=True,
        ),
        CategoryView(
            name=Category.INVASIVE_VENTILATION.value,
            columns=("Ventilation Mode", "FiO2", "PEEP", "Pinsp", "Ppeak", "Pplat",
                     "Pmean", "VT", "RR set", "RR total", "MV"),
            numeric=("FiO2", "PEEP", "Pinsp", "Ppeak", "Pplat", "Pmean", "VT",
                     "RR set", "RR total", "MV"),
            drop_empty_rows=True,
        ),
        CategoryView(
            name=Category.NON_INVASIVE_VENTILATION.value,
            columns=("NIV Mode", "FiO2", "PEEP", "IPAP", "EPAP", "Flow", "RR", "VT"),
            numeric=("FiO2", "PEEP", "IPAP", "EPAP", "Flow", "RR", "VT"),
            drop_empty_rows=True,
        ),
        CategoryView(
            name=Category.ABG.value,
            columns=("pH", "pCO2", "pO2", "HCO3", "BE", "SaO2", "Lactate",
                     "K", "Na", "Glucose", "Hb"),
            numeric=("pH", "pCO2", "pO2", "HCO3", "BE", "SaO2", "Lactate",
                     "K", "Na", "Glucose", "Hb"),
            drop_empty_rows=True,
        ),
    ]


@dataclass
class ReshapeConfig:
    """Configuration for the reshape orchestrator.

    Attributes:
        column_map: Export column -> canonical long-format column
        timestamp_format: Explicit strftime format of export timestamps
        dayfirst: Interpret ambiguous dates as day first
        multi_valued: Parameters that may carry concurrent values
        separator: Join used to flatten multi-valued cells
        duplicate_policy: Strict (raise) or lenient (last value wins)
        categories: Ordered category views, one table each
        positioning: Columns added after ``timestamp`` in every view
        abg_category: View holding the monitoring ABG results (None = no ABG)
        lab_time_column: Time column of the laboratory export
        lab_identifying_columns: Columns stripped from the laboratory export
        lab_sheet_name: Table name of the laboratory ABG table
        decimal: Decimal separator for numeric re-parsing
        units: Operator-supplied unit conversions
        unit_tables: Tables the unit conversions apply to (None = all)
    """
    column_map: dict = field(default_factory=lambda: dict(SOURCE_COLUMNS))
    timestamp_format: Optional[str] = None
    dayfirst: bool = False
    multi_valued: tuple = ("Rhythm",)
    separator: str = DEFAULT_SEPARATOR
    duplicate_policy: DuplicatePolicy = DuplicatePolicy.STRICT
    categories: list = field(default_factory=default_categories)
    positioning: tuple = ("Patient Position",)
    abg_category: Optional[str] = Category.ABG.value
    lab_time_column: str = "Time"
    lab_identifying_columns: tuple = ("Patient Name", "Patient ID")
    lab_sheet_name: str = DEFAULT_LAB_SHEET
    decimal: str = "."
    units: list = field(default_factory=list)
    unit_tables: Optional[tuple] = None

    def __post_init__(self):
        """Normalize types and validate cross-field settings."""
        self.duplicate_policy = DuplicatePolicy.parse(self.duplicate_policy)
        self.multi_valued = tuple(self.multi_valued)
        self.positioning = tuple(self.positioning)
        self.lab_identifying_columns = tuple(self.lab_identifying_columns)

        names = [v.name for v in self.categories]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"Duplicate category names: {dupes}")
        if self.abg_category is not None and self.abg_category not in names:
            raise ValueError(
                f"abg_category {self.abg_category!r} is not a configured category: {names}"
            )
        if self.lab_sheet_name in names:
            raise ValueError(f"lab_sheet_name {self.lab_sheet_name!r} clashes with a category")

        sheets = names + ([self.lab_sheet_name] if self.abg_category is not None else [])
        clashes = {}
        for name in sheets:
            clashes.setdefault(sanitize_sheet_name(name), []).append(name)
        clashes = {sheet: group for sheet, group in clashes.items() if len(group) > 1}
        if clashes:
            raise ValueError(f"Table names give the same sheet name: {clashes}")

        if self.separator == self.decimal:
            raise ValueError(
                f"Multi-value separator {self.separator!r} equals the decimal separator"
            )

    @classmethod
    def from_dict(cls, config_dict: dict) -> "ReshapeConfig":
        """Build configuration from the nested YAML layout.

        Args:
            config_dict: Parsed configuration with optional ``source``,
                ``pivot``, ``categories``, ``positioning``, ``laboratory``
                and ``units`` sections

        Returns:
            ReshapeConfig instance
        """
        config_dict = config_dict or {}
        kwargs = {}

        # Source config
        if "source" in config_dict:
            sc = config_dict["source"] or {}
            if "columns" in sc:
                kwargs["column_map"] = dict(sc["columns"])
            if "timestamp_format" in sc:
                kwargs["timestamp_format"] = sc["timestamp_format"]
            if "dayfirst" in sc:
                kwargs["dayfirst"] = bool(sc["dayfirst"])
            if "decimal" in sc:
                kwargs["decimal"] = sc["decimal"]

        # Pivot config
        if "pivot" in config_dict:
            pc = config_dict["pivot"] or {}
            if "multi_valued" in pc:
                kwargs["multi_valued"] = tuple(pc["multi_valued"] or [])
            if "separator" in pc:
                kwargs["separator"] = pc["separator"]
            if "duplicate_policy" in pc:
                kwargs["duplicate_policy"] = DuplicatePolicy.parse(pc["duplicate_policy"])

        # Category config
        if "categories" in config_dict:
            kwargs["categories"] = [
                CategoryView.from_dict(name, spec)
                for name, spec in (config_dict["categories"] or {}).items()
            ]
        if "positioning" in config_dict:
            kwargs["positioning"] = tuple(config_dict["positioning"] or [])
        if "abg_category" in config_dict:
            kwargs["abg_category"] = config_dict["abg_category"]

        # Laboratory config
        if "laboratory" in config_dict:
            lc = config_dict["laboratory"] or {}
            if "time_column" in lc:
                kwargs["lab_time_column"] = lc["time_column"]
            if "identifying_columns" in lc:
                kwargs["lab_identifying_columns"] = tuple(lc["identifying_columns"] or [])
            if "sheet_name" in lc:
                kwargs["lab_sheet_name"] = lc["sheet_name"]

        # Unit config
        if "units" in config_dict:
            uc = config_dict["units"] or {}
            kwargs["units"] = [
                UnitMapping.from_dict(col, spec)
                for col, spec in (uc.get("columns") or {}).items()
            ]
            if uc.get("tables") is not None:
                kwargs["unit_tables"] = tuple(uc["tables"])

        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "ReshapeConfig":
        """Load configuration from YAML file.

        Args:
            path: Path to YAML config file

        Returns:
            ReshapeConfig instance
        """
        with open(path, "r") as f:
            config_dict = yaml.safe_load(f)
        return cls.from_dict(config_dict)


@dataclass
class ReshapeResult:
    """Output of one pipeline run.

    Attributes:
        tables: Ordered named tables for the workbook
        pivot: Pivot result with the authoritative wide table
        context: Run diagnostics
    """
    tables: list[NamedTable]
    pivot: PivotResult
    context: RunContext

    @property
    def wide(self) -> pd.DataFrame:
        return self.pivot.table

    @property
    def names(self) -> list[str]:
        return [t.name for t in self.tables]

    def table(self, name: str) -> pd.DataFrame:
        """Return a named table's frame."""
        for t in self.tables:
            if t.name == name:
                return t.frame
        raise KeyError(f"Table not found: {name}")


class ReshapeOrchestrator:
    """Runs the reshape pipeline for one patient at a time.

    The orchestrator holds configuration only; every call to run() creates
    its own RunContext, so one instance can serve many patients.
    """

    def __init__(self, config: Optional[ReshapeConfig] = None):
        """Initialize the orchestrator.

        Args:
            config: ReshapeConfig; defaults apply when None
        """
        self.config = config or ReshapeConfig()
        self.unit_coercion = build_unit_coercion(self.config.units, self.config.unit_tables)

        self.event_loader = EventExportLoader(column_map=self.config.column_map)
        self.lab_loader = LaboratoryLoader(
            time_column=self.config.lab_time_column,
            identifying_columns=list(self.config.lab_identifying_columns),
            timestamp_format=self.config.timestamp_format,
            dayfirst=self.config.dayfirst,
        )

        logger.debug(f"ReshapeOrchestrator initialized with config: {self.config}")

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "ReshapeOrchestrator":
        """Create orchestrator from YAML config file."""
        return cls(ReshapeConfig.from_yaml(path))

    def run(
        self,
        batches: Sequence[BatchLike],
        lab_abg: Optional[pd.DataFrame] = None,
        patient_id: Optional[str] = None,
    ) -> ReshapeResult:
        """Execute the pipeline on in-memory inputs.

        Args:
            batches: Long-format record batches, one per source
            lab_abg: Prepared laboratory ABG table (``timestamp`` column,
                identifying columns already dropped), or None
            patient_id: Identifier used in logs and diagnostics only

        Returns:
            ReshapeResult with the ordered named tables

        Raises:
            ReshapeError: Any fatal validation failure
        """
        config = self.config
        context = RunContext(patient_id=patient_id)
        context.sources = [
            b.source if isinstance(b, RecordBatch) else f"batch[{i}]"
            for i, b in enumerate(batches)
        ]

        # Step 1: Aggregate
        records = aggregate_batches(batches, config.column_map)

        # Step 2: Anonymize
        records = anonymize_records(
            records,
            timestamp_format=config.timestamp_format,
            dayfirst=config.dayfirst,
            separator=config.separator,
        )
        context.parameter_catalog = parameter_catalog(records)

        # Step 3: Pivot
        pivot = pivot_records(
            records,
            multi_valued=config.multi_valued,
            policy=config.duplicate_policy,
            separator=config.separator,
        )
        context.duplicates_resolved = pivot.duplicates_resolved

        # Step 4: Category views with typed re-parsing
        views = build_category_tables(pivot.table, config.categories, config.positioning)
        tables = []
        for view in config.categories:
            context.missing_columns[view.name] = missing_columns(pivot.table, view.columns)
            numeric = [c for c in view.numeric if c not in config.multi_valued]
            frame = reparse_numeric(
                views[view.name], numeric, config.decimal, separator=config.separator
            )

            if view.name == config.abg_category:
                # Step 5: ABG tables side by side
                abg_tables, leaked = reconcile_abg(
                    frame,
                    lab_abg,
                    identifying_columns=config.lab_identifying_columns,
                    monitoring_name=view.name,
                    lab_name=config.lab_sheet_name,
                )
                context.leaked_columns.extend(leaked)
                tables.extend(abg_tables)
            else:
                tables.append(NamedTable(name=view.name, frame=frame))

        if lab_abg is not None and config.abg_category is None:
            logger.warning("Laboratory ABG table supplied but no ABG category configured; ignored")

        absent = sum(len(v) for v in context.missing_columns.values())
        if absent:
            logger.info(f"{absent} configured column(s) absent from this dataset")
        logger.info(f"Run for {patient_id or '<unnamed>'}: {len(tables)} table(s)")

        return ReshapeResult(tables=tables, pivot=pivot, context=context)

    def write(self, result: ReshapeResult, sink: WorkbookSink) -> list[str]:
        """Assemble the result's tables into the sink and close it."""
        with sink:
            return assemble_workbook(result.tables, sink, self.unit_coercion)

    def load_inputs(
        self,
        event_paths: Sequence[Union[str, Path]],
        lab_path: Optional[Union[str, Path]] = None,
    ) -> tuple[list[RecordBatch], Optional[pd.DataFrame]]:
        """Read the sources of one patient."""
        batches = self.event_loader.load_all(event_paths)
        lab_abg = self.lab_loader.load_table(lab_path) if lab_path is not None else None
        return batches, lab_abg

    def process_patient(
        self,
        event_paths: Sequence[Union[str, Path]],
        output_path: Union[str, Path],
        lab_path: Optional[Union[str, Path]] = None,
        patient_id: Optional[str] = None,
    ) -> ReshapeResult:
        """Load, transform and write the workbook of one patient."""
        batches, lab_abg = self.load_inputs(event_paths, lab_path)
        result = self.run(batches, lab_abg=lab_abg, patient_id=patient_id)
        self.write(result, ExcelWorkbookSink(output_path))
        return result

    def process_manifest(
        self,
        manifest: ManifestLoader,
        output_dir: Union[str, Path],
        show_progress: bool = True,
    ) -> dict[str, str]:
        """Process every patient in a manifest.

        Patients are independent: a failing patient is logged and skipped.

        Returns:
            Dictionary patient_id -> error message for failed patients
        """
        output_dir = Path(output_dir)
        failures = {}

        for i in tqdm(range(len(manifest)), desc="Patients", disable=not show_progress):
            entry = manifest[i]
            patient_id = str(entry["patient_id"])
            name = entry.get("output_name")
            name = patient_id if name is None or pd.isna(name) else str(name)
            try:
                self.process_patient(
                    manifest.event_paths(entry),
                    output_dir / f"{name}.xlsx",
                    lab_path=manifest.lab_path(entry),
                    patient_id=patient_id,
                )
            except (ReshapeError, OSError) as e:
                logger.error(f"Patient {patient_id} failed: {e}")
                failures[patient_id] = str(e)

        logger.info(f"Processed {len(manifest) - len(failures)}/{len(manifest)} patient(s)")
        return failures


def create_orchestrator_from_dict(config_dict: dict) -> ReshapeOrchestrator:
    """Create orchestrator from configuration dictionary.

    Args:
        config_dict: Dictionary in the nested YAML layout

    Returns:
        Configured ReshapeOrchestrator
    """
    return ReshapeOrchestrator(ReshapeConfig.from_dict(config_dict))

"""Unit tests for the reshape orchestrator.

Tests verify:
- End-to-end pipeline execution
- Configuration loading
- Result structure and table order
- No workbook is written when a run fails
"""

import pytest
import pandas as pd
from pathlib import Path

from cisreshape.errors import (
    ColumnNameCollision,
    DuplicateScalarObservation,
    SchemaMismatch,
    WorkbookError,
)
from cisreshape.orchestrator import (
    ReshapeConfig,
    ReshapeOrchestrator,
    ReshapeResult,
    create_orchestrator_from_dict,
)
from cisreshape.data.loaders import ManifestLoader
from cisreshape.types import TIMESTAMP, Category, DuplicatePolicy, RecordBatch
from cisreshape.workbook import ExcelWorkbookSink, MemorySink

CONFIG_PATH = Path(__file__).resolve().parent.parent / "configs" / "default.yaml"

DEFAULT_NAMES = [
    "cardiovascular-basic",
    "cardiac-output",
    "invasive-ventilation",
    "non-invasive-ventilation",
    "abg",
    "ABG (laboratory)",
]


def make_export(rows, **extra):
    """Build a raw export frame from (time, name, value) tuples."""
    df = pd.DataFrame(rows, columns=["Time", "Parameter Name", "Value"])
    for col, val in extra.items():
        df[col] = val
    return df


EVENTS = [
    ("2024-03-01 10:00", "HR", 80),
    ("2024-03-01 10:00", "Rhythm", "sinus"),
    ("2024-03-01 10:00", "Rhythm", "ectopic"),
    ("2024-03-01 10:00", "Patient Position", "prone"),
    ("2024-03-01 10:05", "HR", 82),
    ("2024-03-01 10:05", "FiO2", 0.4),
    ("2024-03-01 10:07", "pH", 7.35),
    ("2024-03-01 10:07", "pCO2", 45),
]

LAB = pd.DataFrame({
    TIMESTAMP: pd.to_datetime(["2024-03-01 10:00"]),
    "pH": [7.36],
    "Lactate": [1.4],
})


class TestReshapeConfig:
    """Tests for ReshapeConfig class."""

    def test_default_config(self):
        """Default config should have valid values."""
        config = ReshapeConfig()

        assert config.duplicate_policy == DuplicatePolicy.STRICT
        assert "Rhythm" in config.multi_valued
        assert [v.name for v in config.categories] == [c.value for c in Category.all()]
        assert config.abg_category == Category.ABG.value

    def test_config_from_yaml(self):
        """The shipped YAML file should load."""
        config = ReshapeConfig.from_yaml(CONFIG_PATH)

        assert not config.dayfirst
        assert config.decimal == ","
        assert config.multi_valued == ("Rhythm",)
        assert [v.name for v in config.categories] == DEFAULT_NAMES[:-1]
        abg = config.categories[-1]
        assert abg.numeric == abg.columns
        assert config.lab_identifying_columns == ("Patient Name", "Patient ID")
        assert config.unit_tables == ("abg",)
        assert config.separator != config.decimal

    def test_config_from_dict(self):
        """Nested sections should override defaults."""
        config = ReshapeConfig.from_dict({
            "pivot": {"duplicate_policy": "lenient", "separator": "; "},
            "categories": {"cv": ["HR"], "bga": {"columns": ["pH"]}},
            "abg_category": "bga",
            "units": {"columns": {"pCO2": 7.5}},
        })

        assert config.duplicate_policy == DuplicatePolicy.LENIENT
        assert config.separator == "; "
        assert [v.name for v in config.categories] == ["cv", "bga"]
        assert config.units[0].factor == 7.5

    def test_unknown_abg_category(self):
        """The ABG category must be one of the configured views."""
        with pytest.raises(ValueError, match="abg_category"):
            ReshapeConfig.from_dict({"categories": {"cv": ["HR"]}})

    def test_separator_must_differ_from_decimal(self):
        """A comma join cannot coexist with decimal commas."""
        with pytest.raises(ValueError, match="decimal separator"):
            ReshapeConfig.from_dict({
                "source": {"decimal": ","},
                "pivot": {"separator": ","},
            })

    def test_sheet_name_clash(self):
        """Category names equal after sheet-name truncation are rejected."""
        prefix = "invasive-ventilation-settings-"
        with pytest.raises(ValueError, match="same sheet name"):
            ReshapeConfig.from_dict({
                "categories": {prefix + "mode": ["Mode"], prefix + "measured": ["PEEP"]},
                "abg_category": None,
            })

    def test_no_abg_category(self):
        """ABG handling can be switched off."""
        config = ReshapeConfig.from_dict({"categories": {"cv": ["HR"]}, "abg_category": None})

        assert config.abg_category is None


class TestReshapeOrchestrator:
    """Tests for ReshapeOrchestrator class."""

    def setup_method(self):
        """Set up test fixtures."""
        self.orchestrator = ReshapeOrchestrator()
        self.batches = [
            RecordBatch("monitor.csv", make_export(EVENTS, **{"Patient Name": "Jane Doe"})),
        ]

    def test_run_returns_result(self):
        """Run should return ReshapeResult with all tables in order."""
        result = self.orchestrator.run(self.batches, lab_abg=LAB, patient_id="P1")

        assert isinstance(result, ReshapeResult)
        assert result.names == DEFAULT_NAMES

    def test_wide_table(self):
        """The wide table has one row per timestamp."""
        result = self.orchestrator.run(self.batches)

        assert len(result.wide) == 3
        assert result.wide[TIMESTAMP].is_unique
        assert "Patient Name" not in result.wide.columns

    def test_category_columns(self):
        """Views hold timestamp, positioning and category columns."""
        result = self.orchestrator.run(self.batches)
        cardio = result.table("cardiovascular-basic")

        assert list(cardio.columns[:4]) == [TIMESTAMP, "Patient Position", "HR", "Rhythm"]
        assert cardio["SpO2"].isna().all()
        assert cardio.loc[0, "Rhythm"] == "sinus,ectopic"
        assert cardio.loc[0, "HR"] == 80.0
        assert cardio.loc[0, "Patient Position"] == "prone"

    def test_list_values_with_shipped_config(self):
        """List values in numeric columns survive decimal-comma parsing as text."""
        orchestrator = ReshapeOrchestrator.from_yaml(CONFIG_PATH)
        batches = [RecordBatch("monitor.csv", make_export([
            ("2024-03-01 10:00", "HR", [80, 85]),
            ("2024-03-01 10:05", "HR", "82,5"),
        ]))]

        cardio = orchestrator.run(batches).table("cardiovascular-basic")

        assert cardio.loc[0, "HR"] == "80; 85"
        assert cardio.loc[1, "HR"] == 82.5

    def test_multi_valued_columns_not_reparsed(self):
        """Multi-valued parameters keep their joined text even when numeric."""
        orchestrator = create_orchestrator_from_dict({
            "pivot": {"multi_valued": ["Paced"], "separator": "|"},
            "categories": {"cv": {"columns": ["Paced", "HR"], "numeric": True}},
            "abg_category": None,
        })
        batches = [make_export([
            ("2024-03-01 10:00", "Paced", "1"),
            ("2024-03-01 10:00", "HR", "80"),
        ])]

        cv = orchestrator.run(batches).table("cv")

        assert cv.loc[0, "Paced"] == "1"
        assert cv.loc[0, "HR"] == 80.0

    def test_empty_rows_dropped(self):
        """Views only keep timestamps with values of their own."""
        result = self.orchestrator.run(self.batches)

        assert len(result.table("cardiovascular-basic")) == 2
        assert len(result.table("cardiac-output")) == 0
        assert len(result.table("abg")) == 1

    def test_abg_tables_side_by_side(self):
        """Monitoring and laboratory ABG come out as separate tables."""
        result = self.orchestrator.run(self.batches, lab_abg=LAB)
        monitoring = result.table("abg")
        lab = result.table("ABG (laboratory)")

        assert monitoring.loc[0, "pH"] == 7.35
        assert list(lab.columns) == [TIMESTAMP, "pH", "Lactate"]

    def test_lab_identifiers_stripped(self):
        """Identifying lab columns that slipped through are removed."""
        lab = LAB.assign(**{"Patient ID": "12345"})

        result = self.orchestrator.run(self.batches, lab_abg=lab)

        assert "Patient ID" not in result.table("ABG (laboratory)").columns
        assert result.context.leaked_columns == ["Patient ID"]

    def test_context_diagnostics(self):
        """The run context records catalog and absent columns."""
        result = self.orchestrator.run(self.batches, patient_id="P1")
        context = result.context

        assert context.patient_id == "P1"
        assert context.sources == ["monitor.csv"]
        assert context.parameter_catalog[:3] == ["HR", "Rhythm", "Patient Position"]
        assert "SpO2" in context.missing_columns["cardiovascular-basic"]
        assert "P1" in context.summary()

    def test_runs_are_independent(self):
        """A second run does not see the first run's data."""
        self.orchestrator.run(self.batches, patient_id="P1")
        other = [make_export([("2024-03-02 08:00", "SpO2", 95)])]

        result = self.orchestrator.run(other, patient_id="P2")

        assert list(result.wide.columns) == [TIMESTAMP, "SpO2"]
        assert result.context.sources == ["batch[0]"]

    def test_strict_duplicate_aborts(self):
        """Conflicting scalar values abort the run in strict mode."""
        batches = self.batches + [make_export([("2024-03-01 10:00", "HR", 85)])]

        with pytest.raises(DuplicateScalarObservation):
            self.orchestrator.run(batches)

    def test_lenient_duplicate(self):
        """Lenient mode keeps the later source's value."""
        orchestrator = ReshapeOrchestrator(ReshapeConfig(duplicate_policy="lenient"))
        batches = self.batches + [make_export([("2024-03-01 10:00", "HR", 85)])]

        result = orchestrator.run(batches)

        assert result.table("cardiovascular-basic").loc[0, "HR"] == 85.0
        assert result.context.duplicates_resolved == 1

    def test_schema_mismatch(self):
        """A source lacking required columns aborts the run."""
        bad = RecordBatch("broken.csv", pd.DataFrame({"Time": ["2024-03-01 10:00"]}))

        with pytest.raises(SchemaMismatch, match="broken.csv"):
            self.orchestrator.run(self.batches + [bad])

    def test_column_collision(self):
        """Parameters differing only by case abort the run."""
        batches = [make_export([("2024-03-01 10:00", "HR", 80), ("2024-03-01 10:05", "hr", 82)])]

        with pytest.raises(ColumnNameCollision):
            self.orchestrator.run(batches)

    def test_write_to_memory_sink(self):
        """write() hands every table to the sink and closes it."""
        result = self.orchestrator.run(self.batches, lab_abg=LAB)
        sink = MemorySink()

        names = self.orchestrator.write(result, sink)

        assert names == DEFAULT_NAMES
        assert sink.closed
        assert all(columns[0] == TIMESTAMP for _, _, columns in sink.tables)

    def test_unit_coercion_on_write(self):
        """Configured unit conversions apply at write time."""
        orchestrator = create_orchestrator_from_dict({
            "units": {"tables": ["abg"], "columns": {"pCO2": {"factor": 0.133322, "rename": "pCO2 (kPa)"}}},
        })
        result = orchestrator.run(self.batches, lab_abg=LAB)
        sink = MemorySink()

        orchestrator.write(result, sink)
        abg = sink.frame("abg")

        assert "pCO2 (kPa)" in abg.columns
        assert abs(abg.loc[0, "pCO2 (kPa)"] - 45 * 0.133322) < 1e-9
        # The wide table keeps the original values
        assert result.table("abg").loc[0, "pCO2"] == 45.0


class TestProcessFiles:
    """Tests for file based processing."""

    def write_patient(self, root, name, rows, lab=True):
        """Write one patient's export (and lab file) to disk."""
        folder = root / name
        folder.mkdir()
        make_export(rows, Bed="ICU-3").to_csv(folder / "events.csv", index=False)
        if lab:
            (folder / "lab.csv").write_text(
                "Patient Name,Patient ID,Time,pH,Lactate\n"
                "Jane Doe,12345,2024-03-01 10:00,7.36,1.4\n"
            )
        return folder

    def test_process_patient(self, tmp_path):
        """A patient's files become one workbook."""
        folder = self.write_patient(tmp_path, "p1", EVENTS)
        output = tmp_path / "out" / "p1.xlsx"

        ReshapeOrchestrator().process_patient(
            [folder / "events.csv"], output, lab_path=folder / "lab.csv", patient_id="p1"
        )

        sheets = pd.read_excel(output, sheet_name=None)
        assert list(sheets) == DEFAULT_NAMES
        lab = sheets["ABG (laboratory)"]
        assert "Patient Name" not in lab.columns
        assert "Patient ID" not in lab.columns
        assert "Bed" not in sheets["cardiovascular-basic"].columns

    def test_process_manifest(self, tmp_path):
        """Failing patients are reported, the others still written."""
        self.write_patient(tmp_path, "p1", EVENTS)
        self.write_patient(tmp_path, "p2", EVENTS + [("2024-03-01 10:00", "HR", 99)], lab=False)
        manifest_path = tmp_path / "manifest.csv"
        manifest_path.write_text(
            "patient_id,event_paths,lab_path\n"
            "p1,p1/events.csv,p1/lab.csv\n"
            "p2,p2/events.csv,\n"
        )

        failures = ReshapeOrchestrator().process_manifest(
            ManifestLoader(manifest_path), tmp_path / "out", show_progress=False
        )

        assert list(failures) == ["p2"]
        assert (tmp_path / "out" / "p1.xlsx").exists()
        assert not (tmp_path / "out" / "p2.xlsx").exists()

    def test_sink_failure_skips_patient(self, tmp_path, monkeypatch):
        """A workbook that cannot be written fails only its own patient."""

        class RejectingSink(ExcelWorkbookSink):
            def close(self):
                if self.path.stem == "p1":
                    raise WorkbookError(f"Cannot write {self.path}", path=str(self.path))
                super().close()

        monkeypatch.setattr("cisreshape.orchestrator.ExcelWorkbookSink", RejectingSink)
        self.write_patient(tmp_path, "p1", EVENTS)
        self.write_patient(tmp_path, "p2", EVENTS, lab=False)
        manifest_path = tmp_path / "manifest.csv"
        manifest_path.write_text(
            "patient_id,event_paths,lab_path\n"
            "p1,p1/events.csv,p1/lab.csv\n"
            "p2,p2/events.csv,\n"
        )

        failures = ReshapeOrchestrator().process_manifest(
            ManifestLoader(manifest_path), tmp_path / "out", show_progress=False
        )

        assert list(failures) == ["p1"]
        assert "Cannot write" in failures["p1"]
        assert not (tmp_path / "out" / "p1.xlsx").exists()
        assert (tmp_path / "out" / "p2.xlsx").exists()

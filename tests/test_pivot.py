"""Unit tests for the long-to-wide pivot.

Tests verify:
- Cardinality: one row per timestamp, one column per parameter
- Multi-valued flattening is ordered and deterministic
- Strict and lenient handling of duplicate scalar observations
- Column name collisions are rejected
- Round trip through unpivot_table
"""

import pytest
import pandas as pd
import numpy as np

from cisreshape.errors import (
    ColumnNameCollision,
    DuplicateScalarObservation,
    MissingIdentifierColumn,
)
from cisreshape.pipeline.pivot import (
    PivotResult,
    check_column_names,
    flatten_values,
    pivot_records,
    unpivot_table,
)
from cisreshape.types import PARAMETER, TIMESTAMP, VALUE, DuplicatePolicy


T0 = pd.Timestamp("2024-03-01 10:00")
T5 = pd.Timestamp("2024-03-01 10:05")
T10 = pd.Timestamp("2024-03-01 10:10")


def make_records(rows):
    """Build anonymized records from (timestamp, name, value) tuples."""
    df = pd.DataFrame(rows, columns=[TIMESTAMP, PARAMETER, VALUE])
    df[TIMESTAMP] = pd.to_datetime(df[TIMESTAMP])
    return df


def row_at(table, ts):
    """Return the single row of a wide table at timestamp ts."""
    rows = table[table[TIMESTAMP] == ts]
    assert len(rows) == 1
    return rows.iloc[0]


class TestPivotScenarios:
    """Worked examples of the pivot behaviour."""

    def test_rhythm_multi_valued(self):
        """Concurrent rhythm values are joined; other timestamps stay absent."""
        records = make_records([
            (T0, "HR", "80"),
            (T0, "Rhythm", "sinus"),
            (T0, "Rhythm", "ectopic"),
            (T5, "HR", "82"),
        ])

        result = pivot_records(records, multi_valued={"Rhythm"})
        table = result.table

        assert isinstance(result, PivotResult)
        assert list(table.columns) == [TIMESTAMP, "HR", "Rhythm"]
        assert len(table) == 2
        assert row_at(table, T0)["HR"] == "80"
        assert row_at(table, T0)["Rhythm"] == "sinus,ectopic"
        assert row_at(table, T5)["HR"] == "82"
        assert pd.isna(row_at(table, T5)["Rhythm"])

    def test_structured_values_preserved(self):
        """Multi-valued groups are also kept as ordered sequences."""
        records = make_records([
            (T0, "Rhythm", "sinus"),
            (T0, "Rhythm", "ectopic"),
            (T0, "Rhythm", "sinus"),
        ])

        result = pivot_records(records, multi_valued=["Rhythm"])

        assert result.multi_values[(T0, "Rhythm")] == ["sinus", "ectopic", "sinus"]
        assert row_at(result.table, T0)["Rhythm"] == "sinus,ectopic,sinus"

    def test_multi_only_timestamp_gets_row(self):
        """Timestamps only seen in the multi-valued stream still get a row."""
        records = make_records([
            (T0, "HR", "80"),
            (T10, "Rhythm", "sinus"),
        ])

        table = pivot_records(records, multi_valued={"Rhythm"}).table

        assert list(table[TIMESTAMP]) == [T0, T10]
        assert pd.isna(row_at(table, T10)["HR"])
        assert row_at(table, T10)["Rhythm"] == "sinus"

    def test_custom_separator(self):
        """The join separator is configurable."""
        records = make_records([(T0, "Rhythm", "sinus"), (T0, "Rhythm", "ectopic")])

        table = pivot_records(records, multi_valued={"Rhythm"}, separator=" | ").table

        assert row_at(table, T0)["Rhythm"] == "sinus | ectopic"

    def test_sorted_by_timestamp(self):
        """Rows come out in ascending timestamp order."""
        records = make_records([
            (T10, "HR", "84"),
            (T0, "HR", "80"),
            (T5, "HR", "82"),
        ])

        table = pivot_records(records).table

        assert list(table[TIMESTAMP]) == [T0, T5, T10]
        assert list(table["HR"]) == ["80", "82", "84"]

    def test_timestamp_with_only_absent_values(self):
        """A timestamp whose values are all absent still gets a row."""
        records = make_records([(T0, "HR", "80"), (T5, "HR", None)])

        table = pivot_records(records).table

        assert len(table) == 2
        assert pd.isna(row_at(table, T5)["HR"])

    def test_empty_input(self):
        """Empty input gives an empty table with only the timestamp column."""
        table = pivot_records(make_records([])).table

        assert list(table.columns) == [TIMESTAMP]
        assert len(table) == 0


class TestDuplicatePolicy:
    """Tests for duplicate scalar observations."""

    def setup_method(self):
        """Set up test fixtures."""
        self.records = make_records([(T0, "HR", "80"), (T0, "HR", "85")])

    def test_strict_raises(self):
        """Strict mode should raise DuplicateScalarObservation."""
        with pytest.raises(DuplicateScalarObservation) as exc:
            pivot_records(self.records, policy=DuplicatePolicy.STRICT)

        assert exc.value.pairs == [(T0, "HR")]

    def test_strict_is_default(self):
        """Without an explicit policy the pivot is strict."""
        with pytest.raises(DuplicateScalarObservation):
            pivot_records(self.records)

    def test_lenient_last_write_wins(self):
        """Lenient mode should keep the last value in input order."""
        result = pivot_records(self.records, policy=DuplicatePolicy.LENIENT)

        assert row_at(result.table, T0)["HR"] == "85"
        assert result.duplicates_resolved == 1

    def test_policy_from_string(self):
        """Policies may be given by name."""
        result = pivot_records(self.records, policy="lenient")

        assert row_at(result.table, T0)["HR"] == "85"

    def test_unknown_policy(self):
        """Unknown policy names should be rejected."""
        with pytest.raises(ValueError, match="Unknown duplicate policy"):
            pivot_records(self.records, policy="first")

    def test_identical_repeats_collapse(self):
        """Identical repeats are not a conflict, even in strict mode."""
        records = make_records([(T0, "HR", "80"), (T0, "HR", "80")])

        result = pivot_records(records, policy=DuplicatePolicy.STRICT)

        assert row_at(result.table, T0)["HR"] == "80"
        assert result.duplicates_collapsed == 1
        assert result.duplicates_resolved == 0

    def test_multi_valued_duplicates_allowed(self):
        """Declared multi-valued parameters never raise."""
        records = make_records([(T0, "Rhythm", "sinus"), (T0, "Rhythm", "sinus")])

        table = pivot_records(records, multi_valued={"Rhythm"}).table

        assert row_at(table, T0)["Rhythm"] == "sinus,sinus"


class TestColumnNames:
    """Tests for column name collisions."""

    def test_case_collision(self):
        """Names differing only by case should collide."""
        records = make_records([(T0, "HR", "80"), (T5, "hr", "82")])

        with pytest.raises(ColumnNameCollision) as exc:
            pivot_records(records)

        assert sorted(exc.value.collisions["hr"]) == ["HR", "hr"]

    def test_whitespace_collision(self):
        """Untrimmed names colliding with trimmed ones should be rejected."""
        with pytest.raises(ColumnNameCollision):
            check_column_names(["HR", " HR"])

    def test_timestamp_key_collision(self):
        """A parameter named like the key column should be rejected."""
        with pytest.raises(ColumnNameCollision, match="timestamp"):
            check_column_names(["HR", "Timestamp"])

    def test_distinct_names_pass(self):
        """Distinct names should pass the check."""
        check_column_names(["HR", "SpO2", "pCO2", "pO2"])

    def test_missing_identifier(self):
        """Pivot input without parameter names should raise."""
        with pytest.raises(MissingIdentifierColumn):
            pivot_records(pd.DataFrame({TIMESTAMP: [T0], VALUE: ["1"]}))


class TestPivotProperties:
    """Property-style tests over generated records."""

    def setup_method(self):
        """Generate random scalar records with unique keys."""
        rng = np.random.default_rng(42)
        times = pd.date_range("2024-03-01", periods=30, freq="5min")
        names = ["HR", "SpO2", "ABP mean", "CVP", "Temp", "RR"]

        rows = []
        for _ in range(200):
            rows.append((
                times[rng.integers(len(times))],
                names[rng.integers(len(names))],
                str(rng.integers(0, 200)),
            ))
        records = make_records(rows)
        self.records = records.drop_duplicates([TIMESTAMP, PARAMETER]).reset_index(drop=True)

    def test_cardinality(self):
        """One row per distinct timestamp, one column per distinct name."""
        table = pivot_records(self.records).table

        assert len(table) == self.records[TIMESTAMP].nunique()
        assert table[TIMESTAMP].is_unique
        assert sorted(table.columns[1:]) == sorted(self.records[PARAMETER].unique())

    def test_every_value_lands_in_its_cell(self):
        """No observation should be lost by the pivot."""
        table = pivot_records(self.records).table.set_index(TIMESTAMP)

        for ts, name, value in self.records.itertuples(index=False):
            assert table.loc[ts, name] == value

    def test_round_trip(self):
        """Pivot, unpivot and pivot again gives the same wide table."""
        wide = pivot_records(self.records).table
        again = pivot_records(unpivot_table(wide)).table

        columns = sorted(wide.columns)
        pd.testing.assert_frame_equal(wide[columns], again[columns])

    def test_deterministic(self):
        """Pivoting the same input twice gives identical tables."""
        first = pivot_records(self.records).table
        second = pivot_records(self.records).table

        pd.testing.assert_frame_equal(first, second)


class TestUnpivotTable:
    """Tests for unpivot_table."""

    def test_long_records_row_major(self):
        """Records come out row by row, absent cells skipped."""
        wide = pd.DataFrame({
            TIMESTAMP: [T0, T5],
            "HR": ["80", None],
            "SpO2": ["97", "96"],
        })

        long = unpivot_table(wide)

        assert list(long.itertuples(index=False, name=None)) == [
            (T0, "HR", "80"),
            (T0, "SpO2", "97"),
            (T5, "SpO2", "96"),
        ]

    def test_requires_timestamp(self):
        """Tables without a timestamp column cannot be unpivoted."""
        with pytest.raises(MissingIdentifierColumn):
            unpivot_table(pd.DataFrame({"HR": ["80"]}))


class TestFlattenValues:
    """Tests for flatten_values."""

    def test_order_and_duplicates_kept(self):
        assert flatten_values(["sinus", "ectopic", "sinus"]) == "sinus,ectopic,sinus"

    def test_deterministic(self):
        values = ["b", "a", "c"]
        assert flatten_values(values) == flatten_values(list(values))

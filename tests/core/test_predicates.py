"""
Tests for query predicates: escaping, rendering and the selection builder.

Test name follows: test_unit_scenario_expectedBehavior
"""

import math
from datetime import date, datetime
from decimal import Decimal

import pytest

from crossfilter_analytics.core.bins import OTHER_KEY, Bin, BinSet
from crossfilter_analytics.core.column_types import Column, ColumnType
from crossfilter_analytics.core.errors import PredicateBuildError
from crossfilter_analytics.core.predicates import (
    AllOf,
    AnyOf,
    InList,
    NotInList,
    QueryPredicateBuilder,
    Range,
    RowIdIn,
    SelectAll,
    SelectNothing,
    all_of,
    any_of,
    describe,
    sql_identifier,
    sql_literal,
    to_sql,
)
from crossfilter_analytics.core.selection import Selection


class TestEscaping:
    """Test suite for identifier and literal escaping."""

    def test_sql_identifier_embedded_quote_doubled(self):
        assert sql_identifier('we"ird') == '"we""ird"'

    def test_sql_identifier_spaces_and_keywords_quoted(self):
        assert sql_identifier("select from") == '"select from"'

    @pytest.mark.parametrize("name", ["", "bad\x00name"])
    def test_sql_identifier_empty_or_nul_raises(self, name):
        with pytest.raises(PredicateBuildError):
            sql_identifier(name)

    def test_sql_literal_single_quote_doubled(self):
        assert sql_literal("O'Brien") == "'O''Brien'"

    def test_sql_literal_injection_attempt_stays_inside_string(self):
        """Test that a classic injection payload renders as one string literal."""
        # Arrange
        payload = "x'); DROP TABLE dataset; --"

        # Act
        rendered = sql_literal(payload)

        # Assert
        assert rendered == "'x''); DROP TABLE dataset; --'"

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (None, "NULL"),
            (True, "TRUE"),
            (False, "FALSE"),
            (42, "42"),
            (2.5, "2.5"),
            (Decimal("1.25"), "1.25"),
            (datetime(2024, 1, 2, 3, 4, 5), "TIMESTAMP '2024-01-02 03:04:05'"),
            (date(2024, 1, 2), "DATE '2024-01-02'"),
        ],
    )
    def test_sql_literal_supported_values_rendered(self, value, expected):
        assert sql_literal(value) == expected

    @pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf, "a\x00b", object()])
    def test_sql_literal_unsafe_values_raise(self, value):
        with pytest.raises(PredicateBuildError):
            sql_literal(value)


class TestToSql:
    """Test suite for SQL rendering."""

    def test_to_sql_in_list_with_null_adds_is_null(self):
        predicate = InList("c", (1, 2), include_null=True)
        assert to_sql(predicate) == '("c" IN (1, 2) OR "c" IS NULL)'

    def test_to_sql_not_in_list_excludes_nulls(self):
        predicate = NotInList("c", ("A", "B"))
        assert to_sql(predicate) == "(\"c\" IS NOT NULL AND \"c\" NOT IN ('A', 'B'))"

    def test_to_sql_half_open_range_uses_strict_upper_bound(self):
        assert to_sql(Range("v", 1.0, 2.0)) == '("v" >= 1.0 AND "v" < 2.0)'

    def test_to_sql_closed_range_includes_upper_bound(self):
        assert to_sql(Range("v", 1.0, 2.0, closed=True)) == '("v" >= 1.0 AND "v" <= 2.0)'

    def test_to_sql_date_range_casts_column_to_timestamp(self):
        predicate = Range("d", date(2024, 1, 1), date(2024, 1, 2))
        assert to_sql(predicate) == (
            "(CAST(\"d\" AS TIMESTAMP) >= TIMESTAMP '2024-01-01 00:00:00' "
            "AND CAST(\"d\" AS TIMESTAMP) < TIMESTAMP '2024-01-02 00:00:00')"
        )

    def test_to_sql_row_ids_rendered_against_row_handle_column(self):
        assert to_sql(RowIdIn((3, 1))) == '"__row_id" IN (3, 1)'

    def test_to_sql_row_ids_non_integer_raises(self):
        with pytest.raises(PredicateBuildError):
            to_sql(RowIdIn(("1; DROP TABLE x",)))

    def test_to_sql_combinators_parenthesized(self):
        predicate = AllOf((InList("a", (1,)), AnyOf((InList("b", (2,)), InList("c", (3,))))))
        assert to_sql(predicate) == '("a" IN (1) AND ("b" IN (2) OR "c" IN (3)))'

    def test_any_of_and_all_of_collapse_trivial_parts(self):
        keep = InList("a", (1,))
        assert any_of(SelectNothing(), keep) == keep
        assert isinstance(any_of(SelectAll(), keep), SelectAll)
        assert all_of(SelectAll(), keep) == keep
        assert isinstance(all_of(SelectNothing(), keep), SelectNothing)
        assert isinstance(all_of(), SelectAll)

    def test_describe_select_all_is_true(self):
        assert describe(SelectAll()) == "TRUE"


def _letter_bins() -> BinSet:
    return BinSet(
        column="letter",
        column_type=ColumnType.STRING,
        bins=(
            Bin(count=50, key="A"),
            Bin(count=30, key="B"),
            Bin(count=20, key=OTHER_KEY, is_other=True, folded_keys=("C", "D", "E"), folded_count=3),
        ),
    )


def _value_bins() -> BinSet:
    return BinSet(
        column="v",
        column_type=ColumnType.CONTINUOUS,
        bins=(Bin(count=3, x0=1.0, x1=5.0), Bin(count=2, x0=5.0, x1=10.0, closed=True)),
        domain=(1.0, 10.0),
    )


class TestQueryPredicateBuilder:
    """Test suite for selection → predicate translation."""

    def setup_method(self):
        self.builder = QueryPredicateBuilder()
        self.letter = Column("letter", ColumnType.STRING, max_bins=3, strategy="frequency")
        self.value = Column("v", ColumnType.CONTINUOUS, max_bins=20, strategy="freedman_diaconis")

    def test_build_discrete_bins_in_list(self):
        predicate = self.builder.build(Selection.of_bins("letter", ["A", "B"]), self.letter, _letter_bins())
        assert predicate == InList("letter", ("A", "B"))

    def test_build_other_bin_not_in_explicit_keys(self):
        """Test that the overflow bin excludes the explicit top-K keys, not the long tail."""
        # Act
        predicate = self.builder.build(Selection.of_bins("letter", [OTHER_KEY]), self.letter, _letter_bins())

        # Assert
        assert predicate == NotInList("letter", ("A", "B"))

    def test_build_explicit_and_other_bins_combined_with_any_of(self):
        predicate = self.builder.build(Selection.of_bins("letter", ["A", OTHER_KEY]), self.letter, _letter_bins())
        assert predicate == AnyOf((InList("letter", ("A",)), NotInList("letter", ("A", "B"))))

    def test_build_null_bin_key_adds_null_match(self):
        bins = BinSet(
            column="flag",
            column_type=ColumnType.BOOLEAN,
            bins=(Bin(count=1, key=False), Bin(count=2, key=True), Bin(count=1, key=None)),
        )
        predicate = self.builder.build(Selection.of_bins("flag", [True, None]), None, bins)
        assert predicate == InList("flag", (True,), include_null=True)

    def test_build_range_below_domain_max_half_open(self):
        predicate = self.builder.build(Selection.of_range("v", 2.0, 4.0), self.value, _value_bins())
        assert predicate == Range("v", 2.0, 4.0, closed=False)

    def test_build_range_reaching_domain_max_closed(self):
        predicate = self.builder.build(Selection.of_range("v", 2.0, 10.0), self.value, _value_bins())
        assert predicate == Range("v", 2.0, 10.0, closed=True)

    def test_build_range_bounds_reversed_normalized(self):
        predicate = self.builder.build(Selection.of_range("v", 4.0, 2.0), self.value, _value_bins())
        assert predicate == Range("v", 2.0, 4.0, closed=False)

    def test_build_range_bin_click_uses_bin_edges(self):
        predicate = self.builder.build(Selection.of_bins("v", [5.0]), self.value, _value_bins())
        assert predicate == Range("v", 5.0, 10.0, closed=True)

    def test_build_rows_row_id_in(self):
        predicate = self.builder.build(Selection.of_rows("__grid__", [4, 2, 4]))
        assert predicate == RowIdIn((4, 2))

    def test_build_rows_empty_select_nothing(self):
        """Test that a row selection with no rows matches nothing (not everything)."""
        predicate = self.builder.build(Selection.of_rows("__grid__", []))
        assert isinstance(predicate, SelectNothing)

    def test_build_missing_selection_select_all(self):
        assert isinstance(self.builder.build(None), SelectAll)

    def test_build_empty_bin_selection_select_all(self):
        predicate = self.builder.build(Selection.of_bins("letter", []), self.letter, _letter_bins())
        assert isinstance(predicate, SelectAll)

    def test_build_unknown_bin_key_select_all(self):
        predicate = self.builder.build(Selection.of_bins("letter", ["Z"]), self.letter, _letter_bins())
        assert isinstance(predicate, SelectAll)

    def test_build_range_on_string_column_select_all(self):
        predicate = self.builder.build(Selection.of_range("letter", 1, 2), self.letter, _letter_bins())
        assert isinstance(predicate, SelectAll)

    def test_build_range_type_mismatch_select_all(self):
        predicate = self.builder.build(Selection.of_range("v", "a", "b"), self.value, _value_bins())
        assert isinstance(predicate, SelectAll)

    def test_build_rows_non_integer_handles_select_all(self):
        predicate = self.builder.build(Selection.of_rows("__grid__", ["1 OR 1=1"]))
        assert isinstance(predicate, SelectAll)

    def test_build_date_range_on_date_column(self):
        column = Column("d", ColumnType.DATE, max_bins=20, strategy="day")
        bins = BinSet(
            column="d",
            column_type=ColumnType.DATE,
            bins=(Bin(count=1, x0=datetime(2024, 1, 1), x1=datetime(2024, 1, 2)),),
            domain=(datetime(2024, 1, 1), datetime(2024, 1, 2)),
        )
        predicate = self.builder.build(
            Selection.of_range("d", datetime(2024, 1, 1), datetime(2024, 1, 1, 12)), column, bins
        )
        assert predicate == Range("d", datetime(2024, 1, 1), datetime(2024, 1, 1, 12), closed=False)

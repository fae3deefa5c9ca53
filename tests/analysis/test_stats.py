"""
Tests for StatisticsComputer.
"""

import polars as pl
import pytest

from crossfilter_analytics.analysis.stats import StatisticsComputer, scott_bandwidth
from crossfilter_analytics.core.bins import BinStats


class TestSummarizeValues:
    """Test suite for in-memory value summaries."""

    def test_summarize_values_numeric_nulls_ignored(self):
        """Test count/mean/median/min/max over numbers with a null."""
        stats = StatisticsComputer().summarize_values([1.0, 2.0, 3.0, None])

        assert stats == BinStats(count=3, mean=2.0, median=2.0, min=1.0, max=3.0)

    def test_summarize_values_strings_count_only(self):
        """Test that non-numeric values only contribute a count."""
        stats = StatisticsComputer().summarize_values(["a", "b", None])

        assert stats.count == 2
        assert stats.mean is None
        assert stats.median is None

    def test_summarize_values_empty_zero_count(self):
        assert StatisticsComputer().summarize_values([]) == BinStats(count=0)

    def test_summarize_values_accepts_polars_series(self):
        stats = StatisticsComputer().summarize_values(pl.Series("v", [4, 8]))

        assert stats.count == 2
        assert stats.mean == 6.0
        assert stats.min == 4
        assert stats.max == 8


class TestAggregateSql:
    """Test suite for SQL aggregate fragments."""

    def test_aggregate_sql_numeric_has_all_stat_aliases(self):
        sql = StatisticsComputer().aggregate_sql('"v"')

        for alias in StatisticsComputer.STAT_COLUMNS:
            assert f"AS {alias}" in sql
        assert 'median("v")' in sql

    def test_aggregate_sql_non_numeric_skips_mean_and_median(self):
        sql = StatisticsComputer().aggregate_sql('"name"', numeric=False)

        assert "avg(" not in sql
        assert "CAST(NULL AS DOUBLE) AS mean" in sql

    def test_stats_from_row_nan_mean_becomes_none(self):
        stats = StatisticsComputer().stats_from_row(
            {"n": 0, "mean": float("nan"), "median": None, "min_value": None, "max_value": None}
        )

        assert stats == BinStats(count=0)


class TestColumnSummary:
    """Test suite for engine-side column summaries."""

    @pytest.mark.asyncio
    async def test_column_summary_quartiles_and_spread(self, make_engine):
        # Arrange
        engine = await make_engine(pl.DataFrame({"v": [1.0, 2.0, 3.0, 4.0, 5.0]}))

        # Act
        summary = await StatisticsComputer().column_summary(engine, "v")

        # Assert
        assert summary.n == 5
        assert (summary.min, summary.max) == (1.0, 5.0)
        assert summary.median == 3.0
        assert (summary.q1, summary.q3) == (2.0, 4.0)
        assert summary.iqr == 2.0
        assert summary.std == pytest.approx(1.5811, rel=1e-3)

    @pytest.mark.asyncio
    async def test_column_summary_single_row_zero_std(self, make_engine):
        engine = await make_engine(pl.DataFrame({"v": [3.0]}))

        summary = await StatisticsComputer().column_summary(engine, "v")

        assert summary.std == 0.0
        assert summary.is_single_value

    @pytest.mark.asyncio
    async def test_column_summary_no_values_returns_none(self, make_engine):
        engine = await make_engine(pl.DataFrame({"v": pl.Series([None], dtype=pl.Float64)}))

        assert await StatisticsComputer().column_summary(engine, "v") is None

    @pytest.mark.asyncio
    async def test_column_summary_non_finite_values_excluded_and_counted(self, make_engine):
        # Arrange
        values = [1.0, 2.0, 3.0, 4.0, 5.0, float("nan"), float("inf"), None]
        engine = await make_engine(pl.DataFrame({"v": values}))

        # Act
        summary = await StatisticsComputer().column_summary(engine, "v")

        # Assert
        assert summary.n == 5
        assert summary.non_finite == 2
        assert (summary.min, summary.max) == (1.0, 5.0)
        assert summary.std == pytest.approx(1.5811, rel=1e-3)


class TestKernelDensity:
    """Test suite for Epanechnikov kernel density estimates."""

    def test_kernel_density_single_value_symmetric_peak(self):
        # Arrange
        points = [-1.0, -0.5, 0.0, 0.5, 1.0]

        # Act
        estimate = StatisticsComputer().kernel_density([0.0], points, bandwidth=1.0)

        # Assert
        assert estimate.points == tuple(points)
        assert estimate.density == pytest.approx((0.0, 0.5625, 0.75, 0.5625, 0.0))
        assert estimate.scaled == pytest.approx((0.0, 0.75, 1.0, 0.75, 0.0))
        assert estimate.n == 1

    def test_kernel_density_zero_outside_kernel_support(self):
        estimate = StatisticsComputer().kernel_density([0.0, 1.0], [-3.0, 4.0], bandwidth=1.0)

        assert estimate.density == (0.0, 0.0)
        assert estimate.scaled == (0.0, 0.0)

    def test_kernel_density_nulls_and_non_finite_ignored(self):
        # Arrange
        values = [0.0, None, float("nan"), float("inf")]

        # Act
        estimate = StatisticsComputer().kernel_density(values, [0.0], bandwidth=2.0)

        # Assert
        assert estimate.n == 1
        assert estimate.density == pytest.approx((0.375,))

    def test_kernel_density_default_bandwidth_scott_rule(self):
        # Arrange
        values = [1, 2, 3, 4, 5]

        # Act
        estimate = StatisticsComputer().kernel_density(values, [3.0])

        # Assert
        assert estimate.bandwidth == pytest.approx(1.5811 * 5 ** (-1 / 5), rel=1e-3)

    @pytest.mark.parametrize("values", [[], [None, None], [float("nan")]])
    def test_kernel_density_no_finite_values_returns_none(self, values):
        assert StatisticsComputer().kernel_density(values, [0.0, 1.0]) is None

    def test_kernel_density_strings_raise(self):
        with pytest.raises(ValueError, match="numeric"):
            StatisticsComputer().kernel_density(["a", "b"], [0.0])

    def test_scott_bandwidth_degenerate_spread_falls_back(self):
        assert scott_bandwidth(1, 0.0) == 1.0
        assert scott_bandwidth(10, 0.0) == 1.0
        assert scott_bandwidth(32, 2.0) == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_column_density_matches_in_memory_estimate(self, make_engine):
        """Test that the in-engine estimate equals the NumPy one on the same values."""
        # Arrange
        values = [1.0, 2.0, 2.0, 3.0, 7.0, 8.0]
        frame = pl.DataFrame({"v": values + [None, float("nan")]})
        engine = await make_engine(frame)
        points = [0.0, 1.5, 2.5, 5.0, 8.0, 12.0]
        computer = StatisticsComputer()

        # Act
        in_engine = await computer.column_density(engine, "v", points)
        in_memory = computer.kernel_density(values, points)

        # Assert
        assert in_engine.n == 6
        assert in_engine.bandwidth == pytest.approx(in_memory.bandwidth)
        assert in_engine.density == pytest.approx(in_memory.density)
        assert in_engine.density[-1] == 0.0

    @pytest.mark.asyncio
    async def test_column_density_fixed_bandwidth(self, make_engine):
        # Arrange
        engine = await make_engine(pl.DataFrame({"v": [0.0, 0.0]}))

        # Act
        estimate = await StatisticsComputer().column_density(engine, "v", [0.0, 1.0], bandwidth=2.0)

        # Assert
        assert estimate.bandwidth == 2.0
        assert estimate.density == pytest.approx((0.375, 0.28125))

    @pytest.mark.asyncio
    async def test_column_density_no_values_returns_none(self, make_engine):
        engine = await make_engine(pl.DataFrame({"v": pl.Series([None], dtype=pl.Float64)}))

        assert await StatisticsComputer().column_density(engine, "v", [0.0]) is None

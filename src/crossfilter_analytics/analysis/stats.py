"""
Statistics Computer - Aggregate stats over value sets and bin membership.

Two paths produce the same BinStats shape:
- In memory: summarize a (small) value set with Polars, e.g. a highlighted subset
- In the engine: SQL aggregate fragments evaluated per bin, so row data never
  leaves the backing engine

Kernel density estimates (Epanechnikov kernel) for distribution plots follow
the same split: NumPy for highlighted values, SQL for a whole column.
"""

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
import polars as pl

from crossfilter_analytics.core.bins import BinStats
from crossfilter_analytics.core.predicates import sql_identifier, sql_literal

if TYPE_CHECKING:
    from crossfilter_analytics.storage.engine import TabularEngine


@dataclass(frozen=True)
class ColumnSummary:
    """Distribution summary used to choose bin widths."""

    n: int
    min: float
    max: float
    mean: float
    median: float
    q1: float
    q3: float
    std: float
    # NaN and +-inf values seen alongside the n finite ones
    non_finite: int = 0

    @property
    def iqr(self) -> float:
        return self.q3 - self.q1

    @property
    def is_single_value(self) -> bool:
        return self.min == self.max


@dataclass(frozen=True)
class DensityEstimate:
    """Kernel density evaluated at a fixed set of points."""

    points: tuple[float, ...]
    density: tuple[float, ...]
    bandwidth: float
    n: int

    @property
    def scaled(self) -> tuple[float, ...]:
        """Density divided by its peak (all zeros stay zeros)."""
        peak = max(self.density, default=0.0)
        if peak <= 0:
            return self.density
        return tuple(d / peak for d in self.density)


def epanechnikov(u: np.ndarray) -> np.ndarray:
    """Epanechnikov kernel 0.75 * (1 - u^2) on [-1, 1], zero outside."""
    return np.where(np.abs(u) <= 1.0, 0.75 * (1.0 - u * u), 0.0)


def scott_bandwidth(n: int, std: float) -> float:
    """
    Scott's rule bandwidth, std * n^(-1/5).

    Degenerate spreads (single value, zero std) fall back to 1.0.
    """
    if n < 2 or not std or not math.isfinite(std):
        return 1.0
    return std * n ** (-1 / 5)


def finite_sql(value_sql: str) -> str:
    """SQL condition keeping non-null, finite (not NaN, not +-inf) doubles."""
    return f"({value_sql} IS NOT NULL AND isfinite({value_sql}))"


def _clean_float(value: Any) -> float | None:
    """Convert an aggregate result to float, mapping NULL/NaN to None."""
    if value is None:
        return None
    value = float(value)
    if math.isnan(value):
        return None
    return value


class StatisticsComputer:
    """Computes count, mean, median, min and max over values or bins."""

    # Output aliases shared by every aggregate query
    STAT_COLUMNS = ("n", "mean", "median", "min_value", "max_value")

    def summarize_values(self, values: list[Any] | pl.Series) -> BinStats:
        """
        Summarize an in-memory value set.

        Nulls are ignored. Non-numeric values only contribute to the count.

        Args:
            values: Values to summarize

        Returns:
            BinStats for the non-null values
        """
        series = values if isinstance(values, pl.Series) else pl.Series("values", values, strict=False)
        series = series.drop_nulls()

        if series.len() == 0:
            return BinStats(count=0)

        if not series.dtype.is_numeric():
            return BinStats(count=series.len())

        return BinStats(
            count=series.len(),
            mean=_clean_float(series.mean()),
            median=_clean_float(series.median()),
            min=series.min(),
            max=series.max(),
        )

    def aggregate_sql(self, value_sql: str, numeric: bool = True) -> str:
        """
        Build the SELECT list fragment computing bin statistics.

        Args:
            value_sql: Already-escaped SQL expression for the value
            numeric: Whether mean/median apply to the value

        Returns:
            Comma-separated aggregate expressions aliased as STAT_COLUMNS
        """
        if numeric:
            return (
                f"count({value_sql}) AS n, "
                f"avg({value_sql}) AS mean, "
                f"median({value_sql}) AS median, "
                f"min({value_sql}) AS min_value, "
                f"max({value_sql}) AS max_value"
            )
        return (
            f"count({value_sql}) AS n, "
            "CAST(NULL AS DOUBLE) AS mean, "
            "CAST(NULL AS DOUBLE) AS median, "
            f"min({value_sql}) AS min_value, "
            f"max({value_sql}) AS max_value"
        )

    def stats_from_row(self, row: dict[str, Any]) -> BinStats:
        """Convert one aggregate row (aliased as STAT_COLUMNS) into BinStats."""
        return BinStats(
            count=int(row["n"] or 0),
            mean=_clean_float(row.get("mean")),
            median=_clean_float(row.get("median")),
            min=row.get("min_value"),
            max=row.get("max_value"),
        )

    async def column_summary(
        self,
        engine: "TabularEngine",
        column: str,
        log_scale: bool = False,
    ) -> ColumnSummary | None:
        """
        Summarize a numeric column inside the engine.

        NaN and +-inf are left out of every statistic, like nulls, and counted
        in ``non_finite``.

        Args:
            engine: Backing engine
            column: Column name
            log_scale: Summarize ln(value) instead of value (all values must be > 0)

        Returns:
            ColumnSummary, or None when the column has no finite values
        """
        raw = f"CAST({sql_identifier(column)} AS DOUBLE)"
        finite = f"CASE WHEN isfinite({raw}) THEN {raw} END"
        value_sql = f"ln({finite})" if log_scale else finite
        sql = (
            "SELECT "
            f"count(*) - count({finite}) AS non_finite, "
            f"count({value_sql}) AS n, "
            f"min({value_sql}) AS min_value, "
            f"max({value_sql}) AS max_value, "
            f"avg({value_sql}) AS mean, "
            f"median({value_sql}) AS median, "
            f"quantile_cont({value_sql}, 0.25) AS q1, "
            f"quantile_cont({value_sql}, 0.75) AS q3, "
            f"stddev_samp({value_sql}) AS std "
            f"FROM {engine.source_sql()} AS src "
            f"WHERE {raw} IS NOT NULL"
        )
        rows = await engine.query(sql)
        row = rows[0] if rows else {}
        n = int(row.get("n") or 0)
        if n == 0:
            return None

        return ColumnSummary(
            n=n,
            min=float(row["min_value"]),
            max=float(row["max_value"]),
            mean=float(row["mean"]),
            median=float(row["median"]),
            q1=float(row["q1"]),
            q3=float(row["q3"]),
            # stddev_samp is NULL for a single row
            std=_clean_float(row.get("std")) or 0.0,
            non_finite=int(row.get("non_finite") or 0),
        )

    def kernel_density(
        self,
        values: list[Any] | pl.Series,
        points: list[float] | tuple[float, ...],
        bandwidth: float | None = None,
    ) -> DensityEstimate | None:
        """
        Epanechnikov kernel density of an in-memory value set.

        Nulls and non-finite values are ignored. Memory grows with
        len(points) * len(values), so this is meant for highlighted subsets;
        use column_density for a whole column.

        Args:
            values: Numeric values
            points: Where to evaluate the density
            bandwidth: Kernel half-width (Scott's rule when omitted or not positive)

        Returns:
            DensityEstimate, or None when no finite value remains

        Raises:
            ValueError: If the values are not numeric
        """
        series = values if isinstance(values, pl.Series) else pl.Series("values", values, strict=False)
        series = series.drop_nulls()
        if series.len() == 0:
            return None
        if not series.dtype.is_numeric():
            raise ValueError(f"Kernel density needs numeric values, got {series.dtype}")

        series = series.cast(pl.Float64)
        sample = series.filter(series.is_finite()).to_numpy()
        if sample.size == 0:
            return None

        if not bandwidth or bandwidth <= 0:
            std = float(np.std(sample, ddof=1)) if sample.size > 1 else 0.0
            bandwidth = scott_bandwidth(int(sample.size), std)

        grid = np.asarray(points, dtype=float)
        u = (grid[:, None] - sample[None, :]) / bandwidth
        density = epanechnikov(u).mean(axis=1) / bandwidth
        return DensityEstimate(
            points=tuple(float(p) for p in grid),
            density=tuple(float(d) for d in density),
            bandwidth=float(bandwidth),
            n=int(sample.size),
        )

    async def column_density(
        self,
        engine: "TabularEngine",
        column: str,
        points: list[float] | tuple[float, ...],
        bandwidth: float | None = None,
    ) -> DensityEstimate | None:
        """
        Epanechnikov kernel density of a whole column, computed in the engine.

        Args:
            engine: Backing engine
            column: Numeric column
            points: Where to evaluate the density
            bandwidth: Kernel half-width (Scott's rule from the column summary
                when omitted or not positive)

        Returns:
            DensityEstimate, or None when the column has no finite values
        """
        summary = await self.column_summary(engine, column)
        if summary is None or not points:
            return None
        if not bandwidth or bandwidth <= 0:
            bandwidth = scott_bandwidth(summary.n, summary.std)

        raw = f"CAST({sql_identifier(column)} AS DOUBLE)"
        h = sql_literal(float(bandwidth))
        rows_sql = ", ".join(f"({i}, CAST({sql_literal(float(p))} AS DOUBLE))" for i, p in enumerate(points))
        sql = (
            "SELECT pts.i AS i, "
            f"sum(CASE WHEN abs(pts.x - vals.v) <= {h} "
            f"THEN 0.75 * (1 - pow((pts.x - vals.v) / {h}, 2)) ELSE 0 END) AS k "
            f"FROM (VALUES {rows_sql}) AS pts(i, x) "
            f"CROSS JOIN (SELECT {raw} AS v FROM {engine.source_sql()} AS src WHERE {finite_sql(raw)}) AS vals "
            "GROUP BY pts.i ORDER BY pts.i"
        )
        rows = await engine.query(sql)
        sums = {int(r["i"]): float(r["k"] or 0.0) for r in rows}

        scale = summary.n * bandwidth
        return DensityEstimate(
            points=tuple(float(p) for p in points),
            density=tuple(sums.get(i, 0.0) / scale for i in range(len(points))),
            bandwidth=float(bandwidth),
            n=summary.n,
        )

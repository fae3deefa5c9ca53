"""
Binning Engine - Discretize a column into bins appropriate to its type.

All aggregation runs inside the backing engine; only bin summaries come back.

Per type:
- continuous: Freedman-Diaconis or Scott bin width (Sturges when the spread is
  zero), optional log scale for right-skewed positive data, undersized bins
  merged per the configured merge policy
- ordinal / string: one bin per value by descending count, overflow folded into
  a single "Other" bin
- date: calendar buckets, empty buckets filled so the domain is partitioned
- boolean: one bin per observed value, null included
- unique: a single pass-through bin with the row count
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import numpy as np
import polars as pl
import structlog

from crossfilter_analytics.analysis.stats import ColumnSummary, StatisticsComputer, finite_sql
from crossfilter_analytics.core.bins import OTHER_KEY, UNIQUE_KEY, Bin, BinSet, BinStats
from crossfilter_analytics.core.column_types import Column, ColumnType, is_numeric_engine_type
from crossfilter_analytics.core.config_loader import (
    VALID_BIN_METHODS,
    VALID_DATE_INTERVALS,
    VALID_MERGE_POLICIES,
    BinningConfig,
)
from crossfilter_analytics.core.errors import CrossfilterError
from crossfilter_analytics.core.predicates import sql_identifier, sql_literal
from crossfilter_analytics.storage.engine import TabularEngine

logger = structlog.get_logger()

# DuckDB date_trunc part → Polars duration string
DATE_INTERVALS: dict[str, str] = {
    "hour": "1h",
    "day": "1d",
    "week": "1w",
    "month": "1mo",
    "year": "1y",
}


@dataclass(frozen=True)
class BinningOptions:
    """Per-call overrides of the configured binning parameters."""

    strategy: str | None = None
    min_bin_size: int | None = None
    merge_policy: str | None = None
    thresholds: tuple[float, ...] | None = None


@dataclass
class _RawBin:
    x0: float
    x1: float
    count: int


def sturges_bin_count(n: int) -> int:
    return math.ceil(math.log2(n) + 1) if n > 0 else 1


def bin_count_for(summary: ColumnSummary, method: str, max_bins: int) -> int:
    """
    Number of equal-width bins for a summarized column.

    Freedman-Diaconis width is 2*IQR/n^(1/3), Scott width is 3.5*sigma/n^(1/3);
    either falls back to Sturges when its spread measure is zero.
    """
    spread = summary.iqr if method == "freedman_diaconis" else summary.std
    factor = 2.0 if method == "freedman_diaconis" else 3.5

    if not spread or spread <= 0:
        count = sturges_bin_count(summary.n)
    else:
        width = factor * spread / math.cbrt(summary.n)
        count = math.ceil((summary.max - summary.min) / width)

    return max(1, min(count, max_bins))


def merge_sequential(bins: list[_RawBin], min_bin_size: int) -> list[_RawBin]:
    """
    Absorb each undersized bin into the running bin before it.

    Runs of sparse bins collapse into one wide bin. A leading undersized bin
    stays unless the bin after it is undersized too.
    """
    if not bins:
        return []

    consolidated: list[_RawBin] = []
    current = _RawBin(bins[0].x0, bins[0].x1, bins[0].count)
    for b in bins[1:]:
        if b.count < min_bin_size:
            current = _RawBin(current.x0, b.x1, current.count + b.count)
        else:
            consolidated.append(current)
            current = _RawBin(b.x0, b.x1, b.count)
    consolidated.append(current)
    return consolidated


def merge_nearest(bins: list[_RawBin], min_bin_size: int) -> list[_RawBin]:
    """
    Repeatedly merge the smallest undersized bin into its smaller neighbour.

    Stops when every bin meets the minimum or one bin remains. Ties pick the
    leftmost bin and the left neighbour.
    """
    merged = [_RawBin(b.x0, b.x1, b.count) for b in bins]
    while len(merged) > 1:
        undersized = [i for i, b in enumerate(merged) if b.count < min_bin_size]
        if not undersized:
            break
        i = min(undersized, key=lambda idx: merged[idx].count)

        if i == 0:
            j = 1
        elif i == len(merged) - 1:
            j = i - 1
        else:
            j = i - 1 if merged[i - 1].count <= merged[i + 1].count else i + 1

        left, right = sorted((i, j))
        merged[left : right + 1] = [
            _RawBin(merged[left].x0, merged[right].x1, merged[left].count + merged[right].count)
        ]
    return merged


_MERGERS = {
    "sequential": merge_sequential,
    "nearest": merge_nearest,
}


def _case_sql(value_sql: str, edges: list[float]) -> str:
    """CASE expression mapping a value to its bin index for ascending edges."""
    inner = edges[1:-1]
    if not inner:
        return "0"
    whens = " ".join(f"WHEN {value_sql} < {sql_literal(edge)} THEN {i}" for i, edge in enumerate(inner))
    return f"CASE {whens} ELSE {len(inner)} END"


class BinningEngine:
    """Computes BinSets for resolved columns against a TabularEngine."""

    def __init__(
        self,
        engine: TabularEngine,
        config: BinningConfig | None = None,
        stats: StatisticsComputer | None = None,
    ):
        self.engine = engine
        self.config = config or BinningConfig()
        self.stats = stats or StatisticsComputer()

    async def compute_bins(
        self,
        column: Column,
        column_type: ColumnType | None = None,
        max_bins: int | None = None,
        options: BinningOptions | None = None,
    ) -> BinSet:
        """
        Compute the bins of one column.

        Never raises for data problems: a column that cannot be binned yields an
        empty BinSet (``no_data=True``) and a logged diagnostic.

        Args:
            column: Resolved column
            column_type: Override of the column's semantic type
            max_bins: Override of the column's bin budget
            options: Override of strategy, merge settings or thresholds

        Returns:
            BinSet for the column
        """
        options = options or BinningOptions()
        column_type = column_type or column.column_type
        max_bins = max_bins or column.max_bins
        strategy = options.strategy or column.strategy

        try:
            if column_type == ColumnType.CONTINUOUS:
                thresholds = options.thresholds if options.thresholds is not None else column.thresholds
                bin_set = await self._continuous_bins(
                    column.name,
                    max_bins,
                    strategy,
                    min_bin_size=options.min_bin_size or self.config.min_bin_size,
                    merge_policy=options.merge_policy or self.config.merge_policy,
                    thresholds=tuple(thresholds or ()),
                )
            elif column_type.is_categorical:
                bin_set = await self._ordinal_bins(column, column_type, max_bins)
            elif column_type == ColumnType.DATE:
                bin_set = await self._date_bins(column.name, strategy, max_bins)
            elif column_type == ColumnType.BOOLEAN:
                bin_set = await self._boolean_bins(column.name)
            else:
                bin_set = await self._unique_bins(column.name)
        except (CrossfilterError, ValueError, ArithmeticError) as e:
            logger.error(
                "binning_failed",
                column=column.name,
                column_type=column_type.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            return BinSet(
                column=column.name,
                column_type=column_type,
                no_data=True,
                strategy=strategy,
                metadata={"error": str(e)},
            )

        logger.info(
            "bins_computed",
            column=column.name,
            column_type=column_type.value,
            bin_count=len(bin_set),
            strategy=bin_set.strategy,
            log_scaled=bin_set.log_scaled,
            no_data=bin_set.no_data,
        )
        return bin_set

    # ------------------------------------------------------------------
    # Continuous
    # ------------------------------------------------------------------

    async def _continuous_bins(
        self,
        name: str,
        max_bins: int,
        method: str,
        min_bin_size: int,
        merge_policy: str,
        thresholds: tuple[float, ...],
    ) -> BinSet:
        if method not in VALID_BIN_METHODS:
            raise ValueError(f"Unknown continuous bin method: {method}")
        if merge_policy not in VALID_MERGE_POLICIES:
            raise ValueError(f"Unknown merge policy: {merge_policy}")

        summary = await self.stats.column_summary(self.engine, name)
        if summary is None:
            return BinSet.empty(name, ColumnType.CONTINUOUS, strategy=method)

        value_sql = f"CAST({sql_identifier(name)} AS DOUBLE)"
        metadata: dict[str, Any] = {}
        if summary.non_finite:
            logger.warning("non_finite_values_skipped", column=name, non_finite=summary.non_finite)
            metadata["non_finite"] = summary.non_finite

        if summary.is_single_value:
            value = summary.min
            only = Bin(
                count=summary.n,
                x0=value,
                x1=value,
                closed=True,
                stats=BinStats(count=summary.n, mean=value, median=value, min=value, max=value),
            )
            return BinSet(
                column=name,
                column_type=ColumnType.CONTINUOUS,
                bins=(only,),
                strategy=method,
                domain=(value, value),
                total_count=summary.n,
                metadata=metadata,
            )

        log_scaled = False
        if thresholds:
            inner = sorted({float(t) for t in thresholds if summary.min < float(t) < summary.max})
            edges = [summary.min, *inner, summary.max]
            strategy = "custom"
        else:
            strategy = method
            binned = summary
            if summary.min > 0 and summary.median > 0 and summary.mean / summary.median > self.config.skew_ratio:
                log_summary = await self.stats.column_summary(self.engine, name, log_scale=True)
                if log_summary is not None and not log_summary.is_single_value:
                    binned = log_summary
                    log_scaled = True

            bin_count = bin_count_for(binned, method, max_bins)
            grid = np.linspace(binned.min, binned.max, bin_count + 1)
            if log_scaled:
                grid = np.exp(grid)
            edges = [float(e) for e in grid]
            # Pin the outer edges to the observed domain exactly
            edges[0] = summary.min
            edges[-1] = summary.max

            counts = await self._bin_counts(value_sql, edges)
            raw = [_RawBin(edges[i], edges[i + 1], counts.get(i, 0)) for i in range(len(edges) - 1)]
            merged = _MERGERS[merge_policy](raw, min_bin_size)
            if len(merged) != len(raw):
                logger.debug(
                    "bins_merged",
                    column=name,
                    merge_policy=merge_policy,
                    before=len(raw),
                    after=len(merged),
                )
            edges = [merged[0].x0] + [b.x1 for b in merged]

        per_bin = await self._bin_stats(value_sql, edges)
        last = len(edges) - 2
        bins = tuple(
            Bin(
                count=per_bin[i].count if i in per_bin else 0,
                x0=edges[i],
                x1=edges[i + 1],
                closed=i == last,
                stats=per_bin.get(i, BinStats(count=0)),
            )
            for i in range(len(edges) - 1)
        )
        return BinSet(
            column=name,
            column_type=ColumnType.CONTINUOUS,
            bins=bins,
            strategy=strategy,
            log_scaled=log_scaled,
            domain=(summary.min, summary.max),
            total_count=summary.n,
            metadata=metadata,
        )

    async def _bin_counts(self, value_sql: str, edges: list[float]) -> dict[int, int]:
        sql = (
            "SELECT bin_idx, count(*) AS n FROM ("
            f"SELECT {_case_sql(value_sql, edges)} AS bin_idx "
            f"FROM {self.engine.source_sql()} AS src WHERE {finite_sql(value_sql)}"
            ") AS binned GROUP BY bin_idx"
        )
        rows = await self.engine.query(sql)
        return {int(r["bin_idx"]): int(r["n"]) for r in rows}

    async def _bin_stats(self, value_sql: str, edges: list[float]) -> dict[int, BinStats]:
        sql = (
            f"SELECT bin_idx, {self.stats.aggregate_sql('v')} FROM ("
            f"SELECT {_case_sql(value_sql, edges)} AS bin_idx, {value_sql} AS v "
            f"FROM {self.engine.source_sql()} AS src WHERE {finite_sql(value_sql)}"
            ") AS binned GROUP BY bin_idx"
        )
        rows = await self.engine.query(sql)
        return {int(r["bin_idx"]): self.stats.stats_from_row(r) for r in rows}

    # ------------------------------------------------------------------
    # Ordinal / string
    # ------------------------------------------------------------------

    async def _ordinal_bins(self, column: Column, column_type: ColumnType, max_bins: int) -> BinSet:
        name = column.name
        col = sql_identifier(name)
        source = self.engine.source_sql()

        rows = await self.engine.query(
            f"SELECT count({col}) AS n, count(DISTINCT {col}) AS d FROM {source} AS src"
        )
        total = int(rows[0]["n"] or 0) if rows else 0
        distinct = int(rows[0]["d"] or 0) if rows else 0
        if total == 0:
            return BinSet.empty(name, column_type, strategy="frequency")

        engine_type = column.engine_type or await self.engine.column_type(name)
        numeric = is_numeric_engine_type(engine_type)
        aggregates = self.stats.aggregate_sql(col, numeric=numeric)

        overflow = distinct > max_bins
        explicit_budget = max_bins - 1 if overflow else distinct
        group_sql = (
            f"SELECT {col} AS key, {aggregates} FROM {source} AS src "
            f"WHERE {col} IS NOT NULL GROUP BY {col} ORDER BY n DESC, key ASC LIMIT {int(explicit_budget)}"
        )
        explicit_rows = await self.engine.query(group_sql)
        bins = [Bin(count=int(r["n"]), key=r["key"], stats=self.stats.stats_from_row(r)) for r in explicit_rows]

        if overflow:
            keys = [b.key for b in bins]
            not_in = f"{col} NOT IN ({', '.join(sql_literal(k) for k in keys)})" if keys else "TRUE"
            folded_rows = await self.engine.query(
                f"SELECT DISTINCT {col} AS key FROM {source} AS src "
                f"WHERE {col} IS NOT NULL AND {not_in} ORDER BY key LIMIT {int(self.config.max_folded_keys)}"
            )
            other_stats_rows = await self.engine.query(
                f"SELECT {aggregates} FROM {source} AS src WHERE {col} IS NOT NULL AND {not_in}"
            )
            other_stats = self.stats.stats_from_row(other_stats_rows[0]) if other_stats_rows else None
            other_count = total - sum(b.count for b in bins)
            bins.append(
                Bin(
                    count=other_count,
                    key=OTHER_KEY,
                    is_other=True,
                    stats=other_stats,
                    folded_keys=tuple(r["key"] for r in folded_rows),
                    folded_count=distinct - len(bins),
                )
            )

        return BinSet(
            column=name,
            column_type=column_type,
            bins=tuple(bins),
            strategy="frequency",
            total_count=total,
        )

    # ------------------------------------------------------------------
    # Date
    # ------------------------------------------------------------------

    async def _date_bins(self, name: str, interval: str, max_bins: int) -> BinSet:
        if interval not in VALID_DATE_INTERVALS:
            raise ValueError(f"Unknown date interval: {interval}")

        ts = f"CAST({sql_identifier(name)} AS TIMESTAMP)"
        sql = (
            f"SELECT date_trunc({sql_literal(interval)}, {ts}) AS bucket, "
            f"count(*) AS n, min({ts}) AS min_value, max({ts}) AS max_value "
            f"FROM {self.engine.source_sql()} AS src WHERE {ts} IS NOT NULL "
            "GROUP BY bucket ORDER BY bucket"
        )
        rows = await self.engine.query(sql)
        if not rows:
            return BinSet.empty(name, ColumnType.DATE, strategy=interval)

        by_bucket: dict[datetime, dict[str, Any]] = {_to_datetime(r["bucket"]): r for r in rows}
        duration = DATE_INTERVALS[interval]
        starts = pl.datetime_range(min(by_bucket), max(by_bucket), interval=duration, eager=True)
        ends = starts.dt.offset_by(duration)

        # Calendar buckets are never merged; an interval too fine for the span is only flagged
        metadata: dict[str, Any] = {}
        if starts.len() > max_bins:
            logger.warning(
                "date_bins_over_budget",
                column=name,
                interval=interval,
                bin_count=starts.len(),
                max_bins=max_bins,
            )
            metadata["over_budget"] = True

        bins = []
        for x0, x1 in zip(starts.to_list(), ends.to_list(), strict=True):
            row = by_bucket.get(x0)
            if row is None:
                bins.append(Bin(count=0, x0=x0, x1=x1, stats=BinStats(count=0)))
                continue
            n = int(row["n"])
            bins.append(
                Bin(
                    count=n,
                    x0=x0,
                    x1=x1,
                    stats=BinStats(count=n, min=row["min_value"], max=row["max_value"]),
                )
            )

        return BinSet(
            column=name,
            column_type=ColumnType.DATE,
            bins=tuple(bins),
            strategy=interval,
            domain=(bins[0].x0, bins[-1].x1),
            total_count=sum(b.count for b in bins),
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Boolean / unique
    # ------------------------------------------------------------------

    async def _boolean_bins(self, name: str) -> BinSet:
        col = sql_identifier(name)
        rows = await self.engine.query(
            f"SELECT {col} AS key, count(*) AS n FROM {self.engine.source_sql()} AS src "
            f"GROUP BY {col} ORDER BY key NULLS LAST"
        )
        non_null = sum(int(r["n"]) for r in rows if r["key"] is not None)
        if non_null == 0:
            return BinSet.empty(name, ColumnType.BOOLEAN, strategy="boolean")

        bins = tuple(Bin(count=int(r["n"]), key=r["key"], stats=BinStats(count=int(r["n"]))) for r in rows)
        return BinSet(
            column=name,
            column_type=ColumnType.BOOLEAN,
            bins=bins,
            strategy="boolean",
            total_count=sum(b.count for b in bins),
        )

    async def _unique_bins(self, name: str) -> BinSet:
        rows = await self.engine.count()
        if rows == 0:
            return BinSet.empty(name, ColumnType.UNIQUE, strategy="unique")
        only = Bin(count=rows, key=UNIQUE_KEY, stats=BinStats(count=rows))
        return BinSet(
            column=name,
            column_type=ColumnType.UNIQUE,
            bins=(only,),
            strategy="unique",
            total_count=rows,
        )


def _to_datetime(value: Any) -> datetime:
    """Engine bucket values come back as datetime (or date for DATE columns)."""
    if isinstance(value, datetime):
        return value
    return datetime(value.year, value.month, value.day)

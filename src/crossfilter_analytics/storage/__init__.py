"""Storage module: the backing tabular engine the cross-filter core queries."""

from crossfilter_analytics.storage.engine import DuckDBEngine, FilterableEngine, TabularEngine

__all__ = ["DuckDBEngine", "FilterableEngine", "TabularEngine"]

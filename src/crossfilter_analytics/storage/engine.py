"""
Tabular Engine - DuckDB-backed dataset handle.

The cross-filter core never copies full row data. It talks to the dataset
through the small TabularEngine protocol below; DuckDBEngine is the concrete
adapter, built on an Ibis DuckDB backend.

Boundary:
- Typed predicates are rendered to Ibis expressions (selection queries, counts)
- Raw SQL (binning aggregates) runs on the underlying DuckDB connection against
  ``source_sql()``, which already includes any pushed filters
- All calls are serialized with an asyncio.Lock and run off the event loop via
  asyncio.to_thread
"""

import asyncio
import logging
import re
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

import ibis
import polars as pl

from crossfilter_analytics.core.config_loader import EngineConfig
from crossfilter_analytics.core.errors import (
    CrossfilterError,
    EngineInitializationError,
    EngineQueryError,
)
from crossfilter_analytics.core.predicates import (
    ROW_ID_COLUMN,
    Predicate,
    SelectAll,
    SelectNothing,
    all_of,
    sql_identifier,
    to_ibis,
    to_sql,
)

logger = logging.getLogger(__name__)

# SQL identifier validation pattern: must start with letter or underscore,
# followed by letters, digits, or underscores
_SQL_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _validate_table_identifier(name: str) -> str:
    """
    Validate table identifier against SQL identifier pattern. Fail closed.

    Args:
        name: Table identifier to validate

    Returns:
        The validated name (unchanged if valid)

    Raises:
        ValueError: If identifier is invalid
    """
    if not name:
        raise ValueError("Table identifier cannot be empty")

    if not _SQL_IDENTIFIER_PATTERN.match(name):
        raise ValueError(f"Invalid table identifier: '{name}'. Must match pattern: ^[A-Za-z_][A-Za-z0-9_]*$")

    if len(name) > 255:
        raise ValueError(f"Table identifier too long: {len(name)} chars (max 255)")

    return name


@runtime_checkable
class TabularEngine(Protocol):
    """Operations the cross-filter core consumes from the backing engine."""

    row_id_column: str

    async def query(
        self,
        predicate_or_sql: Predicate | str,
        columns: list[str] | None = None,
    ) -> list[dict[str, Any]]: ...

    async def column_type(self, name: str) -> str: ...

    async def count(self, predicate: Predicate | None = None) -> int: ...

    async def distinct_count(self, name: str) -> int: ...

    def source_sql(self) -> str: ...


@runtime_checkable
class FilterableEngine(TabularEngine, Protocol):
    """Engine that also supports stacked dataset filters and paging."""

    def push_filter(self, predicate: Predicate) -> None: ...

    def pop_filter(self) -> Predicate | None: ...

    async def fetch_rows(
        self,
        offset: int,
        limit: int,
        order_by: str | None = None,
        descending: bool = False,
        columns: list[str] | None = None,
    ) -> list[dict[str, Any]]: ...


class DuckDBEngine:
    """
    DuckDB dataset handle accessed through Ibis.

    Usage:
        engine = await DuckDBEngine(config).connect()
        await engine.load_frame(df)
        rows = await engine.query(InList("species", ("setosa",)), columns=["petal_length"])
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        connection_factory: Callable[[], Any] | None = None,
    ):
        """
        Initialize an unconnected engine.

        Args:
            config: Engine settings (database, table name, retry policy)
            connection_factory: Optional callable returning an Ibis backend
                (defaults to ``ibis.duckdb.connect(config.database)``)
        """
        self.config = config or EngineConfig()
        self.table_name = _validate_table_identifier(self.config.table_name)
        self.row_id_column = ROW_ID_COLUMN
        self.con: Any = None
        self._connection_factory = connection_factory or (lambda: ibis.duckdb.connect(self.config.database))
        self._lock = asyncio.Lock()
        self._loaded = False
        self._filters: list[Predicate] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> "DuckDBEngine":
        """
        Connect with bounded retry and fixed backoff.

        Returns:
            self, for chaining

        Raises:
            EngineInitializationError: If every attempt fails
        """
        attempts = self.config.connect_retries
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            try:
                self.con = await asyncio.to_thread(self._connection_factory)
                logger.info(f"Connected to DuckDB ({self.config.database}) on attempt {attempt}/{attempts}")
                return self
            except Exception as e:
                last_error = e
                logger.warning(f"DuckDB connection attempt {attempt}/{attempts} failed: {e}")
                if attempt < attempts:
                    await asyncio.sleep(self.config.retry_backoff_s)

        raise EngineInitializationError(
            f"Could not connect to DuckDB ({self.config.database}) after {attempts} attempts: {last_error}",
            attempts=attempts,
        ) from last_error

    async def load_frame(self, frame: pl.DataFrame) -> None:
        """
        Register a Polars DataFrame as the dataset table.

        A hidden integer row handle column is added. Replaces any previously
        loaded data and drops pushed filters.

        Args:
            frame: Dataset rows
        """
        if self.row_id_column in frame.columns:
            raise ValueError(f"Column name '{self.row_id_column}' is reserved for row handles")

        with_ids = frame.with_row_index(self.row_id_column).with_columns(pl.col(self.row_id_column).cast(pl.Int64))

        def _load() -> None:
            self._require_connection().create_table(self.table_name, with_ids, overwrite=True)

        await self._run(_load)
        self._loaded = True
        self._filters = []
        logger.info(f"Loaded {frame.height} rows x {frame.width} columns into '{self.table_name}'")

    async def close(self) -> None:
        if self.con is not None:
            await asyncio.to_thread(self.con.disconnect)
            self.con = None
            self._loaded = False

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------

    @property
    def filters(self) -> tuple[Predicate, ...]:
        return tuple(self._filters)

    def push_filter(self, predicate: Predicate) -> None:
        """Stack a dataset filter; every later query and binning pass sees it."""
        self._filters.append(predicate)
        logger.info(f"Pushed filter ({len(self._filters)} active): {to_sql(predicate, self.row_id_column)}")

    def pop_filter(self) -> Predicate | None:
        """Remove the most recent filter, returning it (None if no filter is active)."""
        if not self._filters:
            return None
        predicate = self._filters.pop()
        logger.info(f"Popped filter ({len(self._filters)} active)")
        return predicate

    def _active_filter(self) -> Predicate:
        return all_of(*self._filters)

    # ------------------------------------------------------------------
    # Table access
    # ------------------------------------------------------------------

    def _require_connection(self) -> Any:
        if self.con is None:
            raise EngineQueryError("Engine is not connected; call connect() first")
        return self.con

    def _base_table(self) -> Any:
        if not self._loaded:
            raise EngineQueryError("No dataset loaded; call load_frame() first")
        return self._require_connection().table(self.table_name)

    def _view(self) -> Any:
        table = self._base_table()
        active = self._active_filter()
        if isinstance(active, SelectAll):
            return table
        return table.filter(to_ibis(active, table, self.row_id_column))

    @property
    def columns(self) -> list[str]:
        """Dataset columns, excluding the row handle."""
        return [c for c in self._base_table().columns if c != self.row_id_column]

    def _check_column(self, name: str) -> None:
        if name != self.row_id_column and name not in self.columns:
            raise KeyError(f"Unknown column: {name!r}")

    def source_sql(self) -> str:
        """SQL relation for the current dataset view (filters applied)."""
        table = sql_identifier(self.table_name)
        active = self._active_filter()
        if isinstance(active, SelectAll):
            return table
        return f"(SELECT * FROM {table} WHERE {to_sql(active, self.row_id_column)})"

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        async with self._lock:
            try:
                return await asyncio.to_thread(fn, *args)
            except (CrossfilterError, KeyError):
                raise
            except Exception as e:
                raise EngineQueryError(f"Engine query failed: {e}") from e

    # ------------------------------------------------------------------
    # TabularEngine operations
    # ------------------------------------------------------------------

    async def query(
        self,
        predicate_or_sql: Predicate | str,
        columns: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Run a typed predicate or raw SQL.

        Args:
            predicate_or_sql: Predicate (rows of the current view matching it)
                or a complete SQL statement
            columns: Columns to return for a predicate query; the row handle is
                always included and rows come back in row handle order

        Returns:
            List of row dicts
        """
        if isinstance(predicate_or_sql, str):
            return await self._run(self._execute_sql, predicate_or_sql)

        predicate = predicate_or_sql
        if isinstance(predicate, SelectNothing):
            return []
        def _select() -> list[dict[str, Any]]:
            for name in columns or []:
                self._check_column(name)
            table = self._view()
            if not isinstance(predicate, SelectAll):
                table = table.filter(to_ibis(predicate, table, self.row_id_column))
            if columns:
                selected = list(dict.fromkeys([self.row_id_column, *columns]))
                table = table.select(*selected)
            return table.order_by(self.row_id_column).to_pyarrow().to_pylist()

        return await self._run(_select)

    def _execute_sql(self, sql: str) -> list[dict[str, Any]]:
        cursor = self._require_connection().con.execute(sql)
        names = [d[0] for d in cursor.description]
        return [dict(zip(names, row, strict=True)) for row in cursor.fetchall()]

    async def column_type(self, name: str) -> str:
        """Engine type string of a column (e.g. "int64", "string", "timestamp")."""

        def _dtype() -> str:
            self._check_column(name)
            return str(self._base_table().schema()[name]).lstrip("!")

        return await self._run(_dtype)

    async def count(self, predicate: Predicate | None = None) -> int:
        """Number of rows in the current view matching ``predicate``."""
        if isinstance(predicate, SelectNothing):
            return 0

        def _count() -> int:
            table = self._view()
            if predicate is not None and not isinstance(predicate, SelectAll):
                table = table.filter(to_ibis(predicate, table, self.row_id_column))
            return int(table.count().to_pyarrow().as_py())

        return await self._run(_count)

    async def distinct_count(self, name: str) -> int:
        """Number of distinct non-null values of a column in the current view."""
        def _nunique() -> int:
            self._check_column(name)
            return int(self._view()[name].nunique().to_pyarrow().as_py() or 0)

        return await self._run(_nunique)

    async def fetch_rows(
        self,
        offset: int,
        limit: int,
        order_by: str | None = None,
        descending: bool = False,
        columns: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Fetch a page of rows from the current view.

        Rows are ordered by ``order_by`` (when given) and then by row handle,
        so pages are stable.
        """
        def _page() -> list[dict[str, Any]]:
            if order_by is not None:
                self._check_column(order_by)
            table = self._view()
            keys = []
            if order_by is not None:
                keys.append(ibis.desc(order_by) if descending else ibis.asc(order_by))
            keys.append(ibis.asc(self.row_id_column))
            table = table.order_by(keys)
            if columns:
                table = table.select(*dict.fromkeys([self.row_id_column, *columns]))
            return table.limit(limit, offset=offset).to_pyarrow().to_pylist()

        return await self._run(_page)

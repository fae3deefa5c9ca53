"""
Query Predicates - Typed filters and the single place where SQL is escaped.

Selections are turned into small immutable predicate trees. Nothing outside this
module builds SQL text from user values: predicates are rendered only at the
engine boundary, either as SQL (``to_sql``) or as an Ibis boolean expression
(``to_ibis``).

Fallbacks:
- missing, empty or type-mismatched selection → SelectAll (logged)
- row-identity selection with zero rows → SelectNothing
"""

import functools
import math
import operator
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Union

import ibis
import numpy as np
import structlog

from crossfilter_analytics.core.bins import BinSet
from crossfilter_analytics.core.column_types import Column, ColumnType
from crossfilter_analytics.core.errors import PredicateBuildError
from crossfilter_analytics.core.selection import Selection, SelectionKind

logger = structlog.get_logger()

ROW_ID_COLUMN = "__row_id"


# ---------------------------------------------------------------------------
# Escaping
# ---------------------------------------------------------------------------


def sql_identifier(name: str) -> str:
    """
    Quote a column identifier.

    Double quotes inside the name are doubled, so any column name (spaces,
    quotes, keywords) is safe to interpolate.

    Raises:
        PredicateBuildError: If the name is empty or contains a NUL byte
    """
    if not isinstance(name, str) or not name:
        raise PredicateBuildError("Column identifier cannot be empty")
    if "\x00" in name:
        raise PredicateBuildError(f"Column identifier contains NUL byte: {name!r}")
    return '"' + name.replace('"', '""') + '"'


def sql_literal(value: Any) -> str:
    """
    Render a Python value as a SQL literal.

    Raises:
        PredicateBuildError: For NaN/inf, NUL bytes or unsupported types
    """
    if isinstance(value, np.generic):
        value = value.item()

    if value is None:
        return "NULL"
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise PredicateBuildError(f"Non-finite number cannot be used in a predicate: {value}")
        return repr(value)
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise PredicateBuildError(f"Non-finite number cannot be used in a predicate: {value}")
        return str(value)
    # datetime before date: datetime is a date subclass
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return f"TIMESTAMPTZ '{value.isoformat(sep=' ')}'"
        return f"TIMESTAMP '{value.isoformat(sep=' ')}'"
    if isinstance(value, date):
        return f"DATE '{value.isoformat()}'"
    if isinstance(value, str):
        if "\x00" in value:
            raise PredicateBuildError("String literal contains NUL byte")
        return "'" + value.replace("'", "''") + "'"

    raise PredicateBuildError(f"Unsupported literal type: {type(value).__name__}")


# ---------------------------------------------------------------------------
# Predicate types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SelectAll:
    """Matches every row."""


@dataclass(frozen=True)
class SelectNothing:
    """Matches no row."""


@dataclass(frozen=True)
class InList:
    """column IN (values), optionally OR column IS NULL."""

    column: str
    values: tuple[Any, ...]
    include_null: bool = False


@dataclass(frozen=True)
class NotInList:
    """column NOT IN (values); nulls never match."""

    column: str
    values: tuple[Any, ...]


@dataclass(frozen=True)
class Range:
    """low <= column < high, or low <= column <= high when closed."""

    column: str
    low: Any
    high: Any
    closed: bool = False

    @property
    def is_temporal(self) -> bool:
        return isinstance(self.low, date) or isinstance(self.high, date)


@dataclass(frozen=True)
class RowIdIn:
    """Row handle IN (row_ids)."""

    row_ids: tuple[int, ...]


@dataclass(frozen=True)
class AnyOf:
    parts: tuple["Predicate", ...]


@dataclass(frozen=True)
class AllOf:
    parts: tuple["Predicate", ...]


Predicate = Union[SelectAll, SelectNothing, InList, NotInList, Range, RowIdIn, AnyOf, AllOf]


def any_of(*parts: Predicate) -> Predicate:
    """OR-combine predicates, collapsing trivial cases."""
    kept = [p for p in parts if not isinstance(p, SelectNothing)]
    if any(isinstance(p, SelectAll) for p in kept):
        return SelectAll()
    if not kept:
        return SelectNothing()
    if len(kept) == 1:
        return kept[0]
    return AnyOf(tuple(kept))


def all_of(*parts: Predicate) -> Predicate:
    """AND-combine predicates, collapsing trivial cases."""
    kept = [p for p in parts if not isinstance(p, SelectAll)]
    if any(isinstance(p, SelectNothing) for p in kept):
        return SelectNothing()
    if not kept:
        return SelectAll()
    if len(kept) == 1:
        return kept[0]
    return AllOf(tuple(kept))


def _as_timestamp(value: Any) -> Any:
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day)
    return value


def _check_row_ids(row_ids: tuple[Any, ...]) -> None:
    for row_id in row_ids:
        if isinstance(row_id, bool) or not isinstance(row_id, (int, np.integer)):
            raise PredicateBuildError(f"Row handles must be integers, got {type(row_id).__name__}")


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def to_sql(predicate: Predicate, row_id_column: str = ROW_ID_COLUMN) -> str:
    """
    Render a predicate as a SQL boolean expression.

    Args:
        predicate: Predicate tree
        row_id_column: Name of the row handle column

    Returns:
        SQL text usable in a WHERE clause
    """
    if isinstance(predicate, SelectAll):
        return "TRUE"
    if isinstance(predicate, SelectNothing):
        return "FALSE"

    if isinstance(predicate, InList):
        col = sql_identifier(predicate.column)
        clauses = []
        if predicate.values:
            clauses.append(f"{col} IN ({', '.join(sql_literal(v) for v in predicate.values)})")
        if predicate.include_null:
            clauses.append(f"{col} IS NULL")
        if not clauses:
            return "FALSE"
        return clauses[0] if len(clauses) == 1 else f"({' OR '.join(clauses)})"

    if isinstance(predicate, NotInList):
        col = sql_identifier(predicate.column)
        if not predicate.values:
            return f"{col} IS NOT NULL"
        values = ", ".join(sql_literal(v) for v in predicate.values)
        return f"({col} IS NOT NULL AND {col} NOT IN ({values}))"

    if isinstance(predicate, Range):
        col = sql_identifier(predicate.column)
        low, high = predicate.low, predicate.high
        if predicate.is_temporal:
            col = f"CAST({col} AS TIMESTAMP)"
            low, high = _as_timestamp(low), _as_timestamp(high)
        upper = "<=" if predicate.closed else "<"
        return f"({col} >= {sql_literal(low)} AND {col} {upper} {sql_literal(high)})"

    if isinstance(predicate, RowIdIn):
        _check_row_ids(predicate.row_ids)
        if not predicate.row_ids:
            return "FALSE"
        ids = ", ".join(str(int(r)) for r in predicate.row_ids)
        return f"{sql_identifier(row_id_column)} IN ({ids})"

    if isinstance(predicate, AnyOf):
        if not predicate.parts:
            return "FALSE"
        return "(" + " OR ".join(to_sql(p, row_id_column) for p in predicate.parts) + ")"

    if isinstance(predicate, AllOf):
        if not predicate.parts:
            return "TRUE"
        return "(" + " AND ".join(to_sql(p, row_id_column) for p in predicate.parts) + ")"

    raise PredicateBuildError(f"Unknown predicate type: {type(predicate).__name__}")


def to_ibis(predicate: Predicate, table: Any, row_id_column: str = ROW_ID_COLUMN) -> Any:
    """
    Render a predicate as an Ibis boolean expression over ``table``.

    Args:
        predicate: Predicate tree
        table: Ibis table expression
        row_id_column: Name of the row handle column

    Returns:
        Ibis boolean value expression
    """
    if isinstance(predicate, SelectAll):
        return ibis.literal(True)
    if isinstance(predicate, SelectNothing):
        return ibis.literal(False)

    if isinstance(predicate, InList):
        col = table[predicate.column]
        exprs = []
        if predicate.values:
            exprs.append(col.isin(list(predicate.values)))
        if predicate.include_null:
            exprs.append(col.isnull())
        if not exprs:
            return ibis.literal(False)
        return functools.reduce(operator.or_, exprs)

    if isinstance(predicate, NotInList):
        col = table[predicate.column]
        if not predicate.values:
            return col.notnull()
        return col.notnull() & ~col.isin(list(predicate.values))

    if isinstance(predicate, Range):
        col = table[predicate.column]
        low, high = predicate.low, predicate.high
        if predicate.is_temporal:
            col = col.cast("timestamp")
            low, high = _as_timestamp(low), _as_timestamp(high)
        upper = col <= high if predicate.closed else col < high
        return (col >= low) & upper

    if isinstance(predicate, RowIdIn):
        _check_row_ids(predicate.row_ids)
        if not predicate.row_ids:
            return ibis.literal(False)
        return table[row_id_column].isin([int(r) for r in predicate.row_ids])

    if isinstance(predicate, AnyOf):
        if not predicate.parts:
            return ibis.literal(False)
        return functools.reduce(operator.or_, [to_ibis(p, table, row_id_column) for p in predicate.parts])

    if isinstance(predicate, AllOf):
        if not predicate.parts:
            return ibis.literal(True)
        return functools.reduce(operator.and_, [to_ibis(p, table, row_id_column) for p in predicate.parts])

    raise PredicateBuildError(f"Unknown predicate type: {type(predicate).__name__}")


def describe(predicate: Predicate) -> str:
    """Human-readable description of a predicate (its SQL form)."""
    try:
        return to_sql(predicate)
    except PredicateBuildError as e:
        return f"<invalid predicate: {e}>"


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal, np.number)) and not isinstance(value, bool)


class QueryPredicateBuilder:
    """
    Converts a Selection into a typed predicate.

    Never raises for bad selections: anything that cannot be expressed becomes
    SelectAll and is logged. Only a row selection with no rows becomes
    SelectNothing.
    """

    def __init__(self, row_id_column: str = ROW_ID_COLUMN):
        self.row_id_column = row_id_column

    def build(
        self,
        selection: Selection | None,
        column: Column | None = None,
        bins: BinSet | None = None,
    ) -> Predicate:
        """
        Build the predicate for a selection.

        Args:
            selection: Selection to translate
            column: Resolved column the selection was made on (type checks)
            bins: Current BinSet of that column (bin lookup and domain)

        Returns:
            Predicate (SelectAll on any failure)
        """
        try:
            predicate = self._build(selection, column, bins)
        except PredicateBuildError as e:
            logger.warning(
                "predicate_fallback_select_all",
                column=selection.column if selection is not None else None,
                reason=str(e),
            )
            return SelectAll()

        logger.debug("predicate_built", column=selection.column, predicate=describe(predicate))
        return predicate

    def _build(self, selection: Selection | None, column: Column | None, bins: BinSet | None) -> Predicate:
        if selection is None:
            raise PredicateBuildError("No selection")

        if selection.kind == SelectionKind.ROWS:
            if not selection.row_ids:
                return SelectNothing()
            _check_row_ids(selection.row_ids)
            return RowIdIn(tuple(dict.fromkeys(int(r) for r in selection.row_ids)))

        if selection.kind == SelectionKind.BINS:
            return self._build_bins(selection, bins)

        if selection.kind == SelectionKind.RANGE:
            return self._build_range(selection, column, bins)

        raise PredicateBuildError(f"Unknown selection kind: {selection.kind}")

    def _build_bins(self, selection: Selection, bins: BinSet | None) -> Predicate:
        if not selection.bin_keys:
            raise PredicateBuildError("Empty bin selection")
        if bins is None:
            raise PredicateBuildError("Bin selection without bins")

        discrete: list[Any] = []
        include_null = False
        parts: list[Predicate] = []

        for key in selection.bin_keys:
            b = bins.find(key)
            if b is None:
                raise PredicateBuildError(f"Bin {key!r} not in current bins of {selection.column}")
            if b.is_other:
                explicit = tuple(k for k in bins.explicit_keys if k is not None)
                parts.append(NotInList(selection.column, explicit))
            elif b.is_range:
                parts.append(Range(selection.column, b.x0, b.x1, closed=b.closed))
            elif bins.column_type == ColumnType.UNIQUE:
                parts.append(SelectAll())
            elif b.key is None:
                include_null = True
            else:
                discrete.append(b.key)

        if discrete or include_null:
            parts.insert(0, InList(selection.column, tuple(discrete), include_null=include_null))

        return any_of(*parts)

    def _build_range(self, selection: Selection, column: Column | None, bins: BinSet | None) -> Predicate:
        low, high = selection.low, selection.high
        if low is None or high is None:
            raise PredicateBuildError("Range selection needs both bounds")

        column_type = column.column_type if column is not None else (bins.column_type if bins else None)
        if column_type is not None and not column_type.is_range:
            raise PredicateBuildError(f"Range selection on {column_type.value} column {selection.column}")

        temporal = isinstance(low, date) and isinstance(high, date)
        numeric = _is_number(low) and _is_number(high)
        if not (temporal or numeric):
            raise PredicateBuildError(
                f"Range bounds must both be numbers or both dates, got {type(low).__name__}/{type(high).__name__}"
            )
        if column_type == ColumnType.CONTINUOUS and not numeric:
            raise PredicateBuildError("Date range on continuous column")
        if column_type == ColumnType.DATE and not temporal:
            raise PredicateBuildError("Numeric range on date column")
        if numeric and any(isinstance(v, float) and not math.isfinite(v) for v in (low, high)):
            raise PredicateBuildError("Range bounds must be finite")

        if high < low:
            low, high = high, low

        closed = False
        if bins is not None and bins.domain is not None and bins.domain[1] is not None:
            domain_max = bins.domain[1]
            try:
                closed = high >= domain_max
            except TypeError:
                closed = _as_timestamp(high) >= _as_timestamp(domain_max)

        return Range(selection.column, low, high, closed=closed)


__all__ = [
    "ROW_ID_COLUMN",
    "AllOf",
    "AnyOf",
    "InList",
    "NotInList",
    "Predicate",
    "QueryPredicateBuilder",
    "Range",
    "RowIdIn",
    "SelectAll",
    "SelectNothing",
    "all_of",
    "any_of",
    "describe",
    "sql_identifier",
    "sql_literal",
    "to_ibis",
    "to_sql",
]

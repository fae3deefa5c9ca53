"""
Column Type Resolution - Semantic types for binning and selection.

Each column shown in the explorer carries one semantic type that decides how it
is binned and which selection gestures it accepts:
- continuous: numeric, binned by width rules, brushed by range
- ordinal / string: grouped by exact value, clicked by bin
- date: bucketed by calendar interval, brushed by range
- boolean: one bin per observed value
- unique: identifier-like, a single pass-through bin

Declared types always win. Otherwise the engine's physical type plus a
cardinality check decide (low-cardinality numerics behave like ordinals).
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING

import structlog

from crossfilter_analytics.core.config_loader import BinningConfig

if TYPE_CHECKING:
    from crossfilter_analytics.storage.engine import TabularEngine

logger = structlog.get_logger()


class ColumnType(str, Enum):
    """Semantic column type."""

    CONTINUOUS = "continuous"
    ORDINAL = "ordinal"
    DATE = "date"
    BOOLEAN = "boolean"
    STRING = "string"
    UNIQUE = "unique"

    @property
    def is_range(self) -> bool:
        """True for types whose bins are value ranges (brushable)."""
        return self in (ColumnType.CONTINUOUS, ColumnType.DATE)

    @property
    def is_categorical(self) -> bool:
        """True for types binned by exact value with an overflow bucket."""
        return self in (ColumnType.ORDINAL, ColumnType.STRING)


_NUMERIC_PREFIXES = ("int", "uint", "float", "decimal", "double", "real", "bigint", "smallint", "tinyint", "hugeint")
_DATE_PREFIXES = ("date", "timestamp", "time")
_STRING_PREFIXES = ("string", "varchar", "text", "uuid")


def normalize_engine_type(engine_type: str) -> str:
    """
    Normalize an engine type string for prefix matching.

    Ibis marks non-nullable types with a leading "!" (e.g. "!int64").
    """
    return engine_type.strip().lstrip("!").lower()


def is_numeric_engine_type(engine_type: str) -> bool:
    return normalize_engine_type(engine_type).startswith(_NUMERIC_PREFIXES)


@dataclass(frozen=True)
class ColumnSpec:
    """
    Column as declared by the host application.

    Attributes:
        name: Column name in the dataset
        declared_type: Optional explicit semantic type (skips inference)
        unique: Treat as identifier column (forces ColumnType.UNIQUE)
        max_bins: Optional per-column bin budget
        strategy: Optional per-column strategy (bin method for continuous, interval for date)
        thresholds: Optional custom bin edges for continuous columns
    """

    name: str
    declared_type: ColumnType | None = None
    unique: bool = False
    max_bins: int | None = None
    strategy: str | None = None
    thresholds: tuple[float, ...] | None = None


@dataclass(frozen=True)
class Column:
    """Resolved column: name, semantic type and binning parameters."""

    name: str
    column_type: ColumnType
    max_bins: int
    strategy: str
    thresholds: tuple[float, ...] = field(default_factory=tuple)
    engine_type: str | None = None

    def retyped(self, new_type: ColumnType, config: BinningConfig) -> "Column":
        """Return a copy with a new semantic type and that type's default budget/strategy."""
        return replace(
            self,
            column_type=new_type,
            max_bins=default_max_bins(new_type, config),
            strategy=default_strategy(new_type, config),
        )


def default_max_bins(column_type: ColumnType, config: BinningConfig) -> int:
    if column_type.is_categorical:
        return config.max_ordinal_bins
    return config.max_bins


def default_strategy(column_type: ColumnType, config: BinningConfig) -> str:
    if column_type == ColumnType.CONTINUOUS:
        return config.continuous_bin_method
    if column_type == ColumnType.DATE:
        return config.date_interval
    if column_type.is_categorical:
        return "frequency"
    return column_type.value


class ColumnTypeResolver:
    """
    Determines or accepts the semantic type of each column.

    Resolution order:
    1. ``unique`` flag → UNIQUE
    2. Declared type → as declared
    3. Engine type: boolean → BOOLEAN, date/timestamp → DATE, string → STRING,
       numeric → CONTINUOUS when distinct count exceeds the ordinal threshold,
       otherwise ORDINAL; anything else → ORDINAL
    """

    def __init__(self, engine: "TabularEngine", config: BinningConfig | None = None):
        self.engine = engine
        self.config = config or BinningConfig()

    async def infer_type(self, column_name: str) -> tuple[ColumnType, str]:
        """
        Infer the semantic type of a column from the engine.

        Args:
            column_name: Column to inspect

        Returns:
            Tuple of (semantic type, raw engine type)
        """
        engine_type = await self.engine.column_type(column_name)
        normalized = normalize_engine_type(engine_type)

        if normalized.startswith("bool"):
            return ColumnType.BOOLEAN, engine_type
        if normalized.startswith(_DATE_PREFIXES):
            return ColumnType.DATE, engine_type
        if normalized.startswith(_STRING_PREFIXES):
            return ColumnType.STRING, engine_type
        if normalized.startswith(_NUMERIC_PREFIXES):
            distinct = await self.engine.distinct_count(column_name)
            if distinct > self.config.ordinal_distinct_threshold:
                return ColumnType.CONTINUOUS, engine_type
            return ColumnType.ORDINAL, engine_type

        logger.debug("column_type_fallback_ordinal", column=column_name, engine_type=engine_type)
        return ColumnType.ORDINAL, engine_type

    async def resolve(self, spec: ColumnSpec | str) -> Column:
        """
        Resolve a column declaration into a Column.

        Args:
            spec: ColumnSpec or bare column name

        Returns:
            Resolved Column
        """
        if isinstance(spec, str):
            spec = ColumnSpec(name=spec)

        engine_type = await self.engine.column_type(spec.name)

        if spec.unique:
            column_type = ColumnType.UNIQUE
        elif spec.declared_type is not None:
            column_type = ColumnType(spec.declared_type)
        else:
            column_type, engine_type = await self.infer_type(spec.name)

        thresholds = spec.thresholds
        if thresholds is None and spec.name in self.config.custom_thresholds:
            thresholds = tuple(self.config.custom_thresholds[spec.name])

        column = Column(
            name=spec.name,
            column_type=column_type,
            max_bins=spec.max_bins or default_max_bins(column_type, self.config),
            strategy=spec.strategy or default_strategy(column_type, self.config),
            thresholds=tuple(thresholds or ()),
            engine_type=engine_type,
        )
        logger.info(
            "column_type_resolved",
            column=column.name,
            column_type=column.column_type.value,
            engine_type=engine_type,
            declared=spec.declared_type is not None or spec.unique,
        )
        return column

    async def resolve_all(self, specs: list[ColumnSpec | str]) -> list[Column]:
        """Resolve every declared column in order."""
        return [await self.resolve(spec) for spec in specs]

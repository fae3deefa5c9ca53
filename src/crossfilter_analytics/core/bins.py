"""
Bin value objects.

Bins are immutable: a recomputation replaces the whole BinSet, so consumers can
compare BinSets by identity to decide whether anything needs re-rendering.
"""

from dataclasses import dataclass, field
from typing import Any

from crossfilter_analytics.core.column_types import ColumnType

OTHER_KEY = "Other"
UNIQUE_KEY = "unique"


@dataclass(frozen=True)
class BinStats:
    """Aggregate statistics for a bin or value set."""

    count: int
    mean: float | None = None
    median: float | None = None
    min: Any = None
    max: Any = None


@dataclass(frozen=True)
class Bin:
    """
    One bucket of a column's value domain.

    Range bins (continuous/date) use ``x0``/``x1`` and are half-open [x0, x1),
    except the terminal continuous bin, which is closed (``closed=True``) so the
    observed maximum is covered. Discrete bins use ``key``.

    Attributes:
        count: Rows falling in the bin
        key: Discrete key (ordinal/string/boolean/unique bins)
        x0: Inclusive lower bound (range bins)
        x1: Upper bound (range bins)
        closed: Whether x1 is inclusive
        stats: Optional aggregate statistics
        is_other: Synthetic overflow bin of an ordinal/string column
        folded_keys: Keys folded into the overflow bin (possibly truncated)
        folded_count: Number of distinct keys folded into the overflow bin
    """

    count: int
    key: Any = None
    x0: Any = None
    x1: Any = None
    closed: bool = False
    stats: BinStats | None = None
    is_other: bool = False
    folded_keys: tuple[Any, ...] = ()
    folded_count: int = 0

    @property
    def is_range(self) -> bool:
        return self.x0 is not None and self.x1 is not None

    @property
    def selection_key(self) -> Any:
        """Key a selection uses to reference this bin."""
        return self.x0 if self.is_range else self.key

    def contains(self, value: Any) -> bool:
        """Whether a raw value falls inside this bin."""
        if value is None:
            return self.key is None and not self.is_range and not self.is_other
        if self.is_range:
            if self.closed:
                return self.x0 <= value <= self.x1
            return self.x0 <= value < self.x1
        if self.is_other:
            return value in self.folded_keys
        return value == self.key


@dataclass(frozen=True)
class BinSet:
    """
    Ordered bins for one column.

    ``no_data`` distinguishes "column has no non-null values" from a column
    whose bins simply have not been requested yet; renderers show a placeholder.
    """

    column: str
    column_type: ColumnType
    bins: tuple[Bin, ...] = ()
    no_data: bool = False
    strategy: str = ""
    log_scaled: bool = False
    domain: tuple[Any, Any] | None = None
    total_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    def __iter__(self):
        return iter(self.bins)

    def __len__(self) -> int:
        return len(self.bins)

    def __getitem__(self, index: int) -> Bin:
        return self.bins[index]

    @property
    def other_bin(self) -> Bin | None:
        for b in self.bins:
            if b.is_other:
                return b
        return None

    @property
    def explicit_keys(self) -> tuple[Any, ...]:
        """Keys of the explicit (non-overflow) discrete bins."""
        return tuple(b.key for b in self.bins if not b.is_range and not b.is_other)

    def find(self, selection_key: Any) -> Bin | None:
        """Find the bin a selection key refers to (x0 for range bins, key otherwise)."""
        for b in self.bins:
            if b.is_other and selection_key == OTHER_KEY:
                return b
            if b.selection_key == selection_key and not b.is_other:
                return b
        return None

    @classmethod
    def empty(cls, column: str, column_type: ColumnType, strategy: str = "") -> "BinSet":
        """BinSet carrying the "no data" signal."""
        return cls(column=column, column_type=column_type, bins=(), no_data=True, strategy=strategy)

"""
Selection value objects.

One Selection per column is owned by the SelectionCoordinator. Views never hold
their own selection fields; they read the coordinator's snapshot instead.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any


class SelectionState(str, Enum):
    """Lifecycle of a column's selection: IDLE → SELECTING → COMMITTED → IDLE."""

    IDLE = "idle"
    SELECTING = "selecting"
    COMMITTED = "committed"


class SelectionKind(str, Enum):
    """What a selection references."""

    BINS = "bins"
    RANGE = "range"
    ROWS = "rows"


@dataclass(frozen=True)
class Selection:
    """
    Immutable selection on one column.

    Exactly one of ``bin_keys`` (BINS), ``low``/``high`` (RANGE) or ``row_ids``
    (ROWS) is meaningful, depending on ``kind``.
    """

    column: str
    kind: SelectionKind
    bin_keys: tuple[Any, ...] = ()
    low: Any = None
    high: Any = None
    row_ids: tuple[int, ...] = ()
    epoch: int = 0

    @classmethod
    def of_bins(cls, column: str, keys: tuple[Any, ...] | list[Any], epoch: int = 0) -> "Selection":
        return cls(column=column, kind=SelectionKind.BINS, bin_keys=tuple(keys), epoch=epoch)

    @classmethod
    def of_range(cls, column: str, low: Any, high: Any, epoch: int = 0) -> "Selection":
        if low is not None and high is not None and high < low:
            low, high = high, low
        return cls(column=column, kind=SelectionKind.RANGE, low=low, high=high, epoch=epoch)

    @classmethod
    def of_rows(cls, column: str, row_ids: tuple[int, ...] | list[int], epoch: int = 0) -> "Selection":
        return cls(column=column, kind=SelectionKind.ROWS, row_ids=tuple(row_ids), epoch=epoch)

    @property
    def is_empty(self) -> bool:
        if self.kind == SelectionKind.BINS:
            return not self.bin_keys
        if self.kind == SelectionKind.RANGE:
            return self.low is None or self.high is None or self.low == self.high
        return not self.row_ids

    def with_epoch(self, epoch: int) -> "Selection":
        return replace(self, epoch=epoch)


@dataclass
class ColumnSelectionState:
    """Mutable per-column bookkeeping held by the coordinator."""

    state: SelectionState = SelectionState.IDLE
    epoch: int = 0
    selection: Selection | None = None
    pending: Selection | None = None
    highlighted: tuple[Any, ...] | None = None
    highlighted_rows: tuple[int, ...] | None = None

"""
View capability protocol.

Visualizations (histograms, distribution plots, the grid) are external. The
coordinator only needs them to accept bins and highlighted values; it never
reads selection state back from a view.
"""

from typing import Any, Protocol, runtime_checkable

from crossfilter_analytics.core.bins import BinSet


@runtime_checkable
class View(Protocol):
    def initialize(self, bins: BinSet) -> None: ...

    def update(self, bins: BinSet) -> None: ...

    def destroy(self) -> None: ...

    def highlight_by_values(self, values: tuple[Any, ...] | None) -> None: ...

    def get_selected_rows(self) -> tuple[int, ...]: ...


class SnapshotView:
    """
    Headless view that records what it was told to show.

    Useful for hosts that render elsewhere and for tests.
    """

    def __init__(self, column: str):
        self.column = column
        self.bins: BinSet | None = None
        self.highlighted: tuple[Any, ...] | None = None
        self.selected_rows: tuple[int, ...] = ()
        self.render_count = 0
        self.destroyed = False

    def initialize(self, bins: BinSet) -> None:
        self.bins = bins
        self.render_count += 1

    def update(self, bins: BinSet) -> None:
        self.bins = bins
        self.highlighted = None
        self.render_count += 1

    def destroy(self) -> None:
        self.bins = None
        self.highlighted = None
        self.destroyed = True

    def highlight_by_values(self, values: tuple[Any, ...] | None) -> None:
        # None clears the highlight layer
        self.highlighted = values

    def get_selected_rows(self) -> tuple[int, ...]:
        return self.selected_rows

"""
Selection Coordinator - Keeps linked visualizations consistent.

The coordinator owns one Selection state machine per column
(IDLE → SELECTING → COMMITTED → IDLE). Committing a selection on one column:

1. builds the predicate for the selection
2. runs exactly one engine query per sibling column, fetching row handles and
   that sibling's values (the source column is never re-queried)
3. sets each sibling's highlighted values to the matched subset; base bins are
   never touched
4. publishes exactly one ``selectionChanged`` after every sibling is updated

Every commit or clear bumps the column's epoch. Query responses are tagged with
the epoch that issued them and dropped if the epoch has moved on, so
overlapping commits resolve last-write-wins without cancellation.

Only one column is the active selection source: committing on a column returns
any other committed column to IDLE.
"""

import asyncio
from typing import Any

import structlog

from crossfilter_analytics.analysis.stats import DensityEstimate, StatisticsComputer
from crossfilter_analytics.core.bin_cache import BinCache, BinCacheKey
from crossfilter_analytics.core.binning import BinningEngine
from crossfilter_analytics.core.bins import BinSet, BinStats
from crossfilter_analytics.core.column_types import Column, ColumnType
from crossfilter_analytics.core.config_loader import BinningConfig
from crossfilter_analytics.core.errors import CrossfilterError, InvalidSelectionError
from crossfilter_analytics.core.events import (
    BINS_INVALIDATED,
    SELECTION_CHANGED,
    SELECTION_CLEARED,
    BinsInvalidated,
    EventBus,
    SelectionChanged,
    SelectionCleared,
)
from crossfilter_analytics.core.predicates import (
    Predicate,
    QueryPredicateBuilder,
    SelectAll,
    describe,
)
from crossfilter_analytics.core.selection import (
    ColumnSelectionState,
    Selection,
    SelectionKind,
    SelectionState,
)
from crossfilter_analytics.core.views import View
from crossfilter_analytics.storage.engine import FilterableEngine

logger = structlog.get_logger()

# Selection source used by the sortable grid (row-identity selections)
GRID_SOURCE = "__grid__"


class SelectionCoordinator:
    """
    Owns per-column selection state and propagates commits to siblings.

    Usage:
        coordinator = SelectionCoordinator(engine, columns, config)
        await coordinator.add_view("species", view)
        await coordinator.click_bin("species", "setosa")
        coordinator.highlighted_values("petal_length")
    """

    def __init__(
        self,
        engine: FilterableEngine,
        columns: list[Column],
        config: BinningConfig | None = None,
        binning: BinningEngine | None = None,
        cache: BinCache | None = None,
        builder: QueryPredicateBuilder | None = None,
        bus: EventBus | None = None,
        stats: StatisticsComputer | None = None,
    ):
        self.engine = engine
        self.config = config or BinningConfig()
        self.stats = stats or StatisticsComputer()
        self.binning = binning or BinningEngine(engine, self.config, self.stats)
        self.cache = cache or BinCache()
        self.builder = builder or QueryPredicateBuilder(row_id_column=engine.row_id_column)
        self.bus = bus or EventBus()

        self._columns: dict[str, Column] = {c.name: c for c in columns}
        self._states: dict[str, ColumnSelectionState] = {name: ColumnSelectionState() for name in self._columns}
        self._states[GRID_SOURCE] = ColumnSelectionState()
        self._views: dict[str, list[View]] = {name: [] for name in self._columns}
        self._active_source: str | None = None
        self._inflight_bins: dict[BinCacheKey, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Columns and views
    # ------------------------------------------------------------------

    @property
    def columns(self) -> list[Column]:
        return list(self._columns.values())

    @property
    def active_source(self) -> str | None:
        return self._active_source

    def column(self, name: str) -> Column:
        """Resolved column by name; KeyError for unknown columns."""
        if name not in self._columns:
            raise KeyError(f"Unknown column: {name!r}")
        return self._columns[name]

    def _state(self, name: str) -> ColumnSelectionState:
        if name not in self._states:
            raise KeyError(f"Unknown column: {name!r}")
        return self._states[name]

    async def add_view(self, column: str, view: View) -> None:
        """Attach a view to a column and initialize it with the column's bins."""
        self.column(column)
        bins = await self.get_bins(column)
        view.initialize(bins)
        state = self._states[column]
        if state.highlighted is not None:
            view.highlight_by_values(state.highlighted)
        self._views[column].append(view)

    def remove_view(self, column: str, view: View) -> None:
        self._views[column].remove(view)
        view.destroy()

    def subscribe(self, event_name: str, handler: Any):
        """Subscribe to coordinator events; returns an unsubscribe callable."""
        return self.bus.subscribe(event_name, handler)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def get_bins(self, column: str) -> BinSet:
        """
        Bins of a column, computed on first request and cached until invalidated.

        Repeated calls return the identical BinSet object.
        """
        col = self.column(column)
        key = BinCacheKey.for_column(col, self.config.min_bin_size, self.config.merge_policy)

        cached = self.cache.get(key)
        if cached is not None:
            return cached

        # Concurrent requests for the same key share one computation
        generation = self.cache.invalidations
        task = self._inflight_bins.get(key)
        if task is None:
            task = asyncio.ensure_future(self.binning.compute_bins(col))
            self._inflight_bins[key] = task
        try:
            bins = await task
        finally:
            if self._inflight_bins.get(key) is task:
                del self._inflight_bins[key]

        # Failed bins are not cached; neither are bins computed before an invalidation
        if "error" not in bins.metadata and generation == self.cache.invalidations:
            self.cache.put(key, bins)
        return bins

    def state(self, column: str) -> SelectionState:
        return self._state(column).state

    def epoch(self, column: str) -> int:
        return self._state(column).epoch

    def current_selection(self, column: str) -> Selection | None:
        """Last committed selection on a column (None when IDLE)."""
        return self._state(column).selection

    def highlighted_values(self, column: str) -> tuple[Any, ...] | None:
        """
        Values of this column on the rows matched by the active selection.

        Returns None when no selection elsewhere highlights this column. Nulls
        are included; values come in row handle order.
        """
        self.column(column)
        return self._states[column].highlighted

    def highlighted_rows(self, column: str) -> tuple[int, ...] | None:
        self.column(column)
        return self._states[column].highlighted_rows

    def highlighted_stats(self, column: str) -> BinStats | None:
        """Count/mean/median/min/max of the highlighted values (numeric stats only for numbers)."""
        values = self.highlighted_values(column)
        if values is None:
            return None
        return self.stats.summarize_values(list(values))

    async def density(self, column: str, points: list[float] | None = None) -> DensityEstimate | None:
        """
        Kernel density of every value in a continuous column.

        Evaluated on the bin midpoints unless points are given. Returns None
        when the column has no finite values.
        """
        col = self.column(column)
        if col.column_type != ColumnType.CONTINUOUS:
            raise ValueError(f"Kernel density needs a continuous column, {column!r} is {col.column_type.value}")
        grid = points or await self._density_grid(column)
        if not grid:
            return None
        return await self.stats.column_density(self.engine, column, grid, self.config.kde_bandwidth)

    async def highlighted_density(self, column: str, points: list[float] | None = None) -> DensityEstimate | None:
        """
        Kernel density of the highlighted values of a continuous column.

        Uses the points and bandwidth of the base density so both curves share
        one scale. Returns None when nothing highlights this column.
        """
        values = self.highlighted_values(column)
        if values is None:
            return None
        base = await self.density(column, points)
        if base is None:
            return None
        return self.stats.kernel_density(list(values), base.points, base.bandwidth)

    async def _density_grid(self, column: str) -> list[float]:
        bins = await self.get_bins(column)
        return [(b.x0 + b.x1) / 2 for b in bins if b.x0 is not None and b.x1 is not None]

    # ------------------------------------------------------------------
    # Gestures
    # ------------------------------------------------------------------

    async def click_bin(self, column: str, key: Any, multi: bool = False) -> Selection | None:
        """
        Select a bin.

        Single-select replaces the column's selection. Multi-select toggles the
        bin in or out of the current selection; toggling the last bin out
        returns the column to IDLE.

        Returns:
            The committed Selection, or None when the selection became empty

        Raises:
            InvalidSelectionError: If ``key`` is not a bin of the current BinSet
        """
        bins = await self.get_bins(column)
        if bins.find(key) is None:
            raise InvalidSelectionError(f"Bin {key!r} is not in the current bins of {column!r}")

        state = self._states[column]
        current = state.selection
        if multi and current is not None and current.kind == SelectionKind.BINS:
            if key in current.bin_keys:
                keys = tuple(k for k in current.bin_keys if k != key)
            else:
                keys = (*current.bin_keys, key)
            if not keys:
                await self.clear_selection(column)
                return None
        else:
            keys = (key,)

        return await self._commit(column, Selection.of_bins(column, keys))

    def begin_brush(self, column: str) -> None:
        """Start a brush gesture; no queries run until it ends."""
        self._require_range_column(column)
        state = self._states[column]
        state.state = SelectionState.SELECTING
        state.pending = None

    def update_brush(self, column: str, low: Any, high: Any) -> None:
        """Track the in-progress brush extent (no side effects)."""
        self._require_range_column(column)
        state = self._states[column]
        if state.state != SelectionState.SELECTING:
            raise InvalidSelectionError(f"No brush in progress on {column!r}")
        state.pending = Selection.of_range(column, low, high)

    async def end_brush(self, column: str, low: Any = None, high: Any = None) -> Selection | None:
        """
        Finish a brush gesture.

        A released brush with no extent (or zero width) clears the column's
        selection and every sibling highlight.

        Args:
            column: Brushed column
            low: Lower bound (defaults to the last update_brush extent)
            high: Upper bound (defaults to the last update_brush extent)

        Returns:
            The committed Selection, or None when the brush was empty
        """
        self._require_range_column(column)
        state = self._states[column]
        if low is None and high is None and state.pending is not None:
            low, high = state.pending.low, state.pending.high
        state.pending = None

        selection = Selection.of_range(column, low, high)
        if selection.is_empty:
            await self.clear_selection(column)
            return None
        return await self._commit(column, selection)

    async def clear_selection(self, column: str) -> None:
        """Return a column to IDLE; siblings lose their highlight if it was the active source."""
        state = self._state(column)
        was_active = self._active_source == column
        had_selection = state.state != SelectionState.IDLE or state.selection is not None

        state.epoch += 1
        state.state = SelectionState.IDLE
        state.selection = None
        state.pending = None

        if not was_active:
            if had_selection:
                logger.debug("selection_cleared", column=column, epoch=state.epoch)
            return

        self._active_source = None
        self._clear_highlights()
        logger.info("selection_cleared", column=column, epoch=state.epoch)
        self.bus.publish(
            SELECTION_CHANGED,
            SelectionChanged(
                changed_column=column,
                matched_row_handles=(),
                predicate_description=describe(SelectAll()),
                epoch=state.epoch,
                cleared=True,
            ),
        )

    async def select_rows(self, row_ids: list[int] | tuple[int, ...], source: str = GRID_SOURCE) -> Selection:
        """
        Commit a row-identity selection (e.g. rows picked in the grid).

        Every registered column other than ``source`` is a sibling.
        """
        if source not in self._states:
            self._states[source] = ColumnSelectionState()
        return await self._commit(source, Selection.of_rows(source, tuple(row_ids)))

    async def reset_all(self) -> None:
        """Return every column to IDLE and clear all highlights."""
        previous = self._active_source
        for state in self._states.values():
            if state.state != SelectionState.IDLE or state.selection is not None:
                state.epoch += 1
            state.state = SelectionState.IDLE
            state.selection = None
            state.pending = None
        self._active_source = None
        self._clear_highlights()

        logger.info("selections_reset", previous_source=previous)
        if previous is not None:
            self.bus.publish(
                SELECTION_CHANGED,
                SelectionChanged(
                    changed_column=previous,
                    matched_row_handles=(),
                    predicate_description=describe(SelectAll()),
                    epoch=self._states[previous].epoch,
                    cleared=True,
                ),
            )

    # ------------------------------------------------------------------
    # Dataset mutations
    # ------------------------------------------------------------------

    async def retype_column(self, column: str, new_type: ColumnType | str) -> Column:
        """
        Change a column's semantic type.

        The Column object is replaced, its selection cleared, every cached
        BinSet dropped, and the column's views re-rendered with new bins.
        """
        old = self.column(column)
        new_type = ColumnType(new_type)
        if old.column_type == new_type:
            return old

        await self.clear_selection(column)
        self._columns[column] = old.retyped(new_type, self.config)
        self.cache.invalidate_all(reason="column_retyped")
        self._inflight_bins.clear()
        logger.info("column_retyped", column=column, old_type=old.column_type.value, new_type=new_type.value)
        self.bus.publish(BINS_INVALIDATED, BinsInvalidated(reason="column_retyped"))

        if self._views[column]:
            bins = await self.get_bins(column)
            for view in self._views[column]:
                view.update(bins)
        return self._columns[column]

    async def dataset_changed(self, reason: str) -> None:
        """
        Handle a dataset mutation (reload, filter applied or undone).

        Drops every cached BinSet, clears all selections, emits
        ``selectionCleared`` then ``binsInvalidated``, and re-renders views.
        """
        cleared = tuple(
            name
            for name, state in self._states.items()
            if state.state != SelectionState.IDLE or state.selection is not None
        )
        self.cache.invalidate_all(reason=reason)

        for state in self._states.values():
            state.epoch += 1
            state.state = SelectionState.IDLE
            state.selection = None
            state.pending = None
        self._active_source = None
        self._inflight_bins.clear()
        self._clear_highlights()

        logger.info("dataset_changed", reason=reason, cleared_columns=list(cleared))
        self.bus.publish(SELECTION_CLEARED, SelectionCleared(reason=reason, columns=cleared))
        self.bus.publish(BINS_INVALIDATED, BinsInvalidated(reason=reason))

        for name, views in self._views.items():
            if not views:
                continue
            bins = await self.get_bins(name)
            for view in views:
                view.update(bins)

    async def apply_selection_filter(self) -> Predicate | None:
        """
        Turn the active selection into a dataset filter.

        Returns:
            The pushed predicate, or None when the selection resolves to all rows

        Raises:
            InvalidSelectionError: If no selection is committed
        """
        source = self._active_source
        if source is None or self._states[source].selection is None:
            raise InvalidSelectionError("No committed selection to apply as a filter")

        predicate = await self._predicate_for(source, self._states[source].selection)
        if isinstance(predicate, SelectAll):
            logger.warning("filter_skipped_select_all", source=source)
            return None

        self.engine.push_filter(predicate)
        await self.dataset_changed("filter_applied")
        return predicate

    async def undo_filter(self) -> Predicate | None:
        """Remove the most recent dataset filter; None when there is nothing to undo."""
        predicate = self.engine.pop_filter()
        if predicate is None:
            return None
        await self.dataset_changed("filter_undone")
        return predicate

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def _require_range_column(self, column: str) -> None:
        col = self.column(column)
        if not col.column_type.is_range:
            raise InvalidSelectionError(f"Cannot brush {col.column_type.value} column {column!r}")

    async def _predicate_for(self, source: str, selection: Selection) -> Predicate:
        if source in self._columns:
            return self.builder.build(selection, self._columns[source], await self.get_bins(source))
        return self.builder.build(selection)

    def _clear_highlights(self) -> None:
        for name, state in self._states.items():
            state.highlighted = None
            state.highlighted_rows = None
            for view in self._views.get(name, []):
                view.highlight_by_values(None)

    def _deactivate_other_sources(self, source: str) -> None:
        for name, state in self._states.items():
            if name == source:
                continue
            if state.state == SelectionState.COMMITTED or state.selection is not None:
                state.epoch += 1
                state.state = SelectionState.IDLE
                state.selection = None
                state.pending = None
                logger.debug("selection_source_replaced", column=name, new_source=source)

    async def _commit(self, source: str, selection: Selection) -> Selection:
        state = self._states[source]
        state.epoch += 1
        epoch = state.epoch
        selection = selection.with_epoch(epoch)
        state.state = SelectionState.COMMITTED
        state.selection = selection
        state.pending = None

        self._deactivate_other_sources(source)
        self._active_source = source
        if source in self._columns:
            state.highlighted = None
            state.highlighted_rows = None
            for view in self._views[source]:
                view.highlight_by_values(None)

        predicate = await self._predicate_for(source, selection)
        siblings = [name for name in self._columns if name != source]

        if siblings:
            results = await asyncio.gather(
                *(self.engine.query(predicate, columns=[name]) for name in siblings),
                return_exceptions=True,
            )
        else:
            results = [await self._row_handles(predicate)]

        if state.epoch != epoch or self._active_source != source:
            logger.info(
                "stale_response_discarded",
                column=source,
                response_epoch=epoch,
                current_epoch=state.epoch,
            )
            return selection

        # Unexpected errors abort the commit before any sibling is touched
        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, CrossfilterError):
                raise result

        row_id = self.engine.row_id_column
        matched: tuple[int, ...] | None = None
        for name, result in zip(siblings, results, strict=False):
            if isinstance(result, CrossfilterError):
                logger.error("sibling_query_failed", column=name, source=source, epoch=epoch, error=str(result))
                continue

            rows_ids = tuple(int(r[row_id]) for r in result)
            values = tuple(r[name] for r in result)
            sibling = self._states[name]
            sibling.highlighted = values
            sibling.highlighted_rows = rows_ids
            if matched is None:
                matched = rows_ids
            for view in self._views[name]:
                view.highlight_by_values(values)

        if not siblings:
            matched = tuple(int(r[row_id]) for r in results[0])

        description = describe(predicate)
        logger.info(
            "selection_committed",
            column=source,
            kind=selection.kind.value,
            epoch=epoch,
            matched=len(matched or ()),
            predicate=description,
        )
        self.bus.publish(
            SELECTION_CHANGED,
            SelectionChanged(
                changed_column=source,
                matched_row_handles=matched or (),
                predicate_description=description,
                epoch=epoch,
            ),
        )
        return selection

    async def _row_handles(self, predicate: Predicate) -> list[dict[str, Any]]:
        try:
            return await self.engine.query(predicate, columns=[self.engine.row_id_column])
        except CrossfilterError as e:
            logger.error("row_handle_query_failed", error=str(e))
            return []

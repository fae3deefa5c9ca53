"""
RowPager - Sorted, incremental row loading for the grid.

Only one load may be in flight: a concurrent ``load_more`` returns no rows
immediately instead of queueing a second page request. A page that arrives
after sort_by() or reset() belongs to the old order and is discarded.
"""

from typing import Any

import structlog

from crossfilter_analytics.storage.engine import FilterableEngine

logger = structlog.get_logger()


class RowPager:
    """Pages rows out of the current dataset view in sort order."""

    def __init__(self, engine: FilterableEngine, page_size: int = 100, columns: list[str] | None = None):
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self.engine = engine
        self.page_size = page_size
        self.columns = columns
        self.sort_column: str | None = None
        self.descending = False
        self.rows: list[dict[str, Any]] = []
        self.exhausted = False
        self._loading = False
        # Bumped by reset(); a page fetched for an older generation is dropped
        self._generation = 0

    @property
    def is_loading(self) -> bool:
        return self._loading

    def sort_by(self, column: str | None, descending: bool = False) -> None:
        """Change the sort order; loaded rows are dropped and paging restarts."""
        self.sort_column = column
        self.descending = descending
        self.reset()

    def reset(self) -> None:
        self.rows = []
        self.exhausted = False
        self._generation += 1

    async def load_more(self, n: int | None = None) -> list[dict[str, Any]]:
        """
        Append the next page of rows.

        Args:
            n: Rows to fetch (defaults to page_size)

        Returns:
            Newly loaded rows (empty when nothing was appended)
        """
        if self._loading:
            logger.debug("load_more_skipped_in_flight", loaded=len(self.rows))
            return []
        if self.exhausted:
            return []

        limit = n or self.page_size
        generation = self._generation
        self._loading = True
        try:
            page = await self.engine.fetch_rows(
                offset=len(self.rows),
                limit=limit,
                order_by=self.sort_column,
                descending=self.descending,
                columns=self.columns,
            )
        finally:
            self._loading = False

        if generation != self._generation:
            logger.debug("stale_page_discarded", rows=len(page), sort_column=self.sort_column)
            return []

        self.rows.extend(page)
        if len(page) < limit:
            self.exhausted = True
        logger.debug("rows_loaded", added=len(page), loaded=len(self.rows), sort_column=self.sort_column)
        return page

"""
Explorer bootstrap - from a Polars frame to a ready SelectionCoordinator.

Usage:
    coordinator = await open_explorer(df, ["age", ColumnSpec("id", unique=True)])
    bins = await coordinator.get_bins("age")
"""

import polars as pl
import structlog

from crossfilter_analytics.core.column_types import ColumnSpec, ColumnTypeResolver
from crossfilter_analytics.core.config_loader import ExplorerConfig, load_explorer_config
from crossfilter_analytics.core.coordinator import SelectionCoordinator
from crossfilter_analytics.storage.engine import DuckDBEngine

logger = structlog.get_logger()


async def open_explorer(
    frame: pl.DataFrame,
    columns: list[ColumnSpec | str] | None = None,
    config: ExplorerConfig | None = None,
    engine: DuckDBEngine | None = None,
) -> SelectionCoordinator:
    """
    Connect the engine, load the frame and resolve column types.

    Args:
        frame: Dataset rows
        columns: Columns to explore (defaults to every column of the frame)
        config: Explorer config (defaults to config/explorer.yaml + env overrides)
        engine: Optional pre-built, unconnected engine

    Returns:
        SelectionCoordinator over the resolved columns

    Raises:
        EngineInitializationError: If the engine cannot be reached
    """
    config = config or load_explorer_config()
    engine = engine or DuckDBEngine(config.engine)

    await engine.connect()
    await engine.load_frame(frame)

    resolver = ColumnTypeResolver(engine, config.binning)
    resolved = await resolver.resolve_all(list(columns) if columns is not None else list(frame.columns))

    logger.info("explorer_opened", rows=frame.height, columns=[c.name for c in resolved])
    return SelectionCoordinator(engine, resolved, config.binning)

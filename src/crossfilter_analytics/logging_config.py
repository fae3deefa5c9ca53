"""
Centralized logging configuration for the cross-filter engine.

Configure once at the host application's entry point.
"""

import logging
import sys

import structlog


def configure_logging(level: int = logging.INFO) -> None:
    """
    Configure stdlib logging and structlog for the entire application.

    Truly idempotent: safe to call multiple times without side effects.
    The stdout handler is only added when the root logger has no handlers;
    structlog is only configured when nothing else configured it first.
    """
    root_logger = logging.getLogger()

    # A host app (or test runner) may already own the root handlers
    if not root_logger.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            handlers=[logging.StreamHandler(sys.stdout)],
        )

    # structlog events (bins_computed, selection_committed, ...) go through stdlib
    if not structlog.is_configured():
        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.format_exc_info,
                structlog.processors.KeyValueRenderer(key_order=["event"]),
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

    # Set specific loggers
    logging.getLogger("crossfilter_analytics.core.coordinator").setLevel(level)
    logging.getLogger("crossfilter_analytics.core.binning").setLevel(level)
    logging.getLogger("crossfilter_analytics.storage.engine").setLevel(level)

    # Reduce noise
    logging.getLogger("duckdb").setLevel(logging.WARNING)

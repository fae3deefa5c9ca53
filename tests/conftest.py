"""
Pytest configuration and fixtures for cross-filter engine tests.
"""

import asyncio
import sys
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path

import polars as pl
import pytest
import pytest_asyncio

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from crossfilter_analytics.core.column_types import Column, ColumnType  # noqa: E402
from crossfilter_analytics.core.config_loader import EngineConfig  # noqa: E402
from crossfilter_analytics.core.errors import EngineQueryError  # noqa: E402
from crossfilter_analytics.storage.engine import DuckDBEngine  # noqa: E402


@pytest.fixture(scope="session")
def project_root():
    """Return project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def skewed_frame():
    """Right-skewed values with a single far outlier."""
    return pl.DataFrame({"x": [1, 2, 2, 3, 3, 3, 100]})


@pytest.fixture
def letters_frame():
    """Categorical column with counts A:50, B:30, C:15, D:4, E:1."""
    letters = ["A"] * 50 + ["B"] * 30 + ["C"] * 15 + ["D"] * 4 + ["E"] * 1
    return pl.DataFrame({"letter": letters, "n": list(range(len(letters)))})


@pytest.fixture
def linked_frame():
    """Small dataset for cross-filter tests (one null in y)."""
    return pl.DataFrame(
        {
            "x": ["A", "B", "A", "C", "A", "B"],
            "y": [1.0, 2.0, 3.0, None, 5.0, 6.0],
            "z": [10, 20, 30, 40, 50, 60],
        }
    )


@pytest.fixture
def linked_columns():
    """Resolved columns matching linked_frame."""
    return [
        Column("x", ColumnType.STRING, max_bins=20, strategy="frequency"),
        Column("y", ColumnType.CONTINUOUS, max_bins=20, strategy="freedman_diaconis"),
        Column("z", ColumnType.CONTINUOUS, max_bins=20, strategy="freedman_diaconis"),
    ]


@pytest.fixture
def typed_frame():
    """One column per physical type for type inference tests."""
    return pl.DataFrame(
        {
            "amount": [float(i) * 1.5 for i in range(20)],
            "grade": [1, 2, 3] * 6 + [1, 2],
            "name": [f"item_{i % 4}" for i in range(20)],
            "active": [True, False] * 10,
            "day": [date(2024, 1, 1 + (i % 5)) for i in range(20)],
            "record_id": list(range(20)),
        }
    )


@pytest_asyncio.fixture
async def make_engine():
    """Factory building a connected DuckDBEngine loaded with a frame."""
    engines = []

    async def _make(frame: pl.DataFrame, **config_overrides) -> DuckDBEngine:
        config = EngineConfig(retry_backoff_s=0.0, **config_overrides)
        engine = await DuckDBEngine(config).connect()
        await engine.load_frame(frame)
        engines.append(engine)
        return engine

    yield _make

    for engine in engines:
        await engine.close()


@dataclass
class QueryHold:
    """Blocks one sibling query until released."""

    entered: asyncio.Event = field(default_factory=asyncio.Event)
    release: asyncio.Event = field(default_factory=asyncio.Event)


class ControlledEngine:
    """
    Wraps a real engine so tests can delay or fail single-column queries.

    Everything except ``query`` is delegated to the wrapped engine.
    """

    def __init__(self, inner: DuckDBEngine):
        self.inner = inner
        self.column_queries: list[str] = []
        self._holds: dict[str, deque[QueryHold]] = defaultdict(deque)
        self._failures: dict[str, deque[Exception]] = defaultdict(deque)

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def hold_next(self, column: str) -> QueryHold:
        hold = QueryHold()
        self._holds[column].append(hold)
        return hold

    def fail_next(self, column: str, error: Exception | None = None) -> None:
        self._failures[column].append(error or EngineQueryError(f"simulated failure for {column}"))

    async def query(self, predicate_or_sql, columns=None):
        if columns and len(columns) == 1:
            column = columns[0]
            self.column_queries.append(column)
            if self._holds[column]:
                hold = self._holds[column].popleft()
                hold.entered.set()
                await hold.release.wait()
            if self._failures[column]:
                raise self._failures[column].popleft()
        return await self.inner.query(predicate_or_sql, columns)


@pytest.fixture
def controlled_engine():
    """Factory wrapping an engine in a ControlledEngine."""
    return ControlledEngine

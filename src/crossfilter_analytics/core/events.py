"""
Typed publish/subscribe for coordinator notifications.

Each event name has exactly one payload dataclass. Handlers are synchronous
callables; a failing handler is logged and never stops delivery to the others.
"""

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

logger = structlog.get_logger()

SELECTION_CHANGED = "selectionChanged"
SELECTION_CLEARED = "selectionCleared"
BINS_INVALIDATED = "binsInvalidated"


@dataclass(frozen=True)
class SelectionChanged:
    """A selection was committed (or cleared) and every sibling has been updated."""

    changed_column: str
    matched_row_handles: tuple[int, ...]
    predicate_description: str
    epoch: int
    cleared: bool = False


@dataclass(frozen=True)
class SelectionCleared:
    """All selections were dropped because the dataset changed."""

    reason: str
    columns: tuple[str, ...]


@dataclass(frozen=True)
class BinsInvalidated:
    """Every cached BinSet was discarded; bins are recomputed on next request."""

    reason: str


EVENT_PAYLOADS: dict[str, type] = {
    SELECTION_CHANGED: SelectionChanged,
    SELECTION_CLEARED: SelectionCleared,
    BINS_INVALIDATED: BinsInvalidated,
}

Handler = Callable[[Any], None]


class EventBus:
    """Routes payloads to handlers subscribed by event name."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: Handler) -> Callable[[], None]:
        """
        Register a handler.

        Args:
            event_name: One of EVENT_PAYLOADS
            handler: Callable receiving the event payload

        Returns:
            Callable that removes the subscription

        Raises:
            KeyError: If the event name is unknown
        """
        if event_name not in EVENT_PAYLOADS:
            raise KeyError(f"Unknown event: {event_name!r}. Known events: {', '.join(EVENT_PAYLOADS)}")
        self._handlers[event_name].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[event_name]:
                self._handlers[event_name].remove(handler)

        return unsubscribe

    def publish(self, event_name: str, payload: Any) -> None:
        expected = EVENT_PAYLOADS[event_name]
        if not isinstance(payload, expected):
            raise TypeError(f"{event_name} expects {expected.__name__}, got {type(payload).__name__}")

        for handler in list(self._handlers[event_name]):
            try:
                handler(payload)
            except Exception:
                logger.exception("event_handler_failed", event_name=event_name)

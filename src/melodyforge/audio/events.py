"""Change notifications published by the audio graph."""

from __future__ import annotations

import logging
from typing import Any, Callable, NamedTuple

logger = logging.getLogger(__name__)


class GraphEvent(NamedTuple):
    """One observable change: ``kind`` names the area, ``value`` the new state."""

    kind: str
    value: Any


Listener = Callable[[GraphEvent], None]


class Subscribers:
    """Callback registry with subscribe -> unsubscribe semantics.

    The listener tuple is rebound on change, so publishing never iterates a
    collection that another thread is mutating.
    """

    def __init__(self) -> None:
        self._listeners: tuple[Listener, ...] = ()

    def __len__(self) -> int:
        return len(self._listeners)

    def subscribe(self, callback: Listener) -> Callable[[], None]:
        self._listeners = self._listeners + (callback,)

        def unsubscribe() -> None:
            self._listeners = tuple(cb for cb in self._listeners if cb is not callback)

        return unsubscribe

    def publish(self, kind: str, value: Any) -> None:
        event = GraphEvent(kind, value)
        for callback in self._listeners:
            try:
                callback(event)
            except Exception:
                logger.exception("Listener %r failed on %s event", callback, kind)

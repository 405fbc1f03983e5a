"""
Event Helpers

Sessions and the registry publish ``peer``, ``update``, ``updating`` and
``close`` events to any number of listeners. Listener errors are logged and
never interrupt delivery to the remaining listeners.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class EventEmitter:
    """Minimal multi-listener event publisher."""

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}

    def on(self, event: str, callback: Listener) -> 'EventEmitter':
        """Register a callback for an event."""
        self._listeners.setdefault(event, []).append(callback)
        return self

    def once(self, event: str, callback: Listener) -> 'EventEmitter':
        """Register a callback that is removed after its first call."""
        def wrapper(*args):
            self.off(event, wrapper)
            return callback(*args)

        wrapper.listener = callback
        return self.on(event, wrapper)

    def off(self, event: str, callback: Listener) -> 'EventEmitter':
        """Remove a callback (registered with ``on`` or ``once``)."""
        listeners = self._listeners.get(event, [])
        for registered in listeners:
            if registered is callback or getattr(registered, 'listener', None) is callback:
                listeners.remove(registered)
                break
        return self

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def emit(self, event: str, *args) -> bool:
        """Call every listener for ``event``. Returns False if none."""
        listeners = list(self._listeners.get(event, []))
        for callback in listeners:
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Callback error on '{event}': {e}")
        return bool(listeners)


class Countdown:
    """
    Fires ``on_done`` once, after ``done()`` has been called as many times as
    the count.

    Starts with one extra pending unit held by the creator, released by
    ``release()``. Listeners that complete immediately can therefore never
    fire the callback before all of them are registered.
    """

    def __init__(self, on_done: Callable[[], None]):
        self._missing = 1
        self._on_done: Optional[Callable[[], None]] = on_done

    @property
    def pending(self) -> int:
        return self._missing

    def add(self, count: int = 1):
        self._missing += count

    def done(self, *_):
        if self._on_done is None:
            return
        self._missing -= 1
        if self._missing:
            return
        on_done, self._on_done = self._on_done, None
        on_done()

    def release(self):
        """Drop the creator's unit."""
        self.done()

"""Listener registration primitives shared by channels."""

import logging
import threading
from collections.abc import Callable

logger: logging.Logger = logging.getLogger(__name__)

MESSAGE_EVENT: str = "message"
ERROR_EVENT: str = "error"
Listener = Callable[..., object]


class Subscription:
    """Scoped handle for one listener registration."""

    _release_callback: Callable[[], None] | None
    _lock: threading.Lock

    def __init__(self, release_callback: Callable[[], None]) -> None:
        """Initialize a subscription handle.

        :param release_callback: Callback that removes the registration.
        """
        self._release_callback = release_callback
        self._lock = threading.Lock()

    @property
    def released(self) -> bool:
        """Report whether this registration has been removed.

        :returns: ``True`` after :meth:`release` has run.
        """
        with self._lock:
            return self._release_callback is None

    def release(self) -> None:
        """Remove the registration. Later calls do nothing."""
        with self._lock:
            release_callback: Callable[[], None] | None = self._release_callback
            self._release_callback = None
        if release_callback is not None:
            release_callback()

    def __enter__(self) -> "Subscription":
        """Enter a scope that owns this registration.

        :returns: This subscription.
        """
        return self

    def __exit__(self, exc_type: object, exc_value: object, exc_traceback: object) -> None:
        """Release the registration when the scope ends.

        :param exc_type: Exception type raised inside the scope, if any.
        :param exc_value: Exception raised inside the scope, if any.
        :param exc_traceback: Traceback of that exception, if any.
        """
        self.release()


class EventEmitter:
    """Thread-safe registry of listeners keyed by event name.

    Listeners are called in registration order, outside the internal lock, so
    a listener may register or release other listeners while it runs.
    """

    _listeners_by_event: dict[str, list[Listener]]
    _lock: threading.RLock

    def __init__(self) -> None:
        """Initialize an emitter without listeners."""
        self._listeners_by_event = {}
        self._lock = threading.RLock()

    def on(self, event: str, listener: Listener) -> Subscription:
        """Register ``listener`` for ``event``.

        :param event: Event name.
        :param listener: Callable invoked with the emitted arguments.
        :returns: Handle that removes exactly this registration.
        """
        with self._lock:
            listeners: list[Listener] = self._listeners_by_event.setdefault(event, [])
            listeners.append(listener)
        return Subscription(lambda: self.remove_listener(event, listener))

    def remove_listener(self, event: str, listener: Listener) -> None:
        """Remove one registration of ``listener`` for ``event``.

        :param event: Event name.
        :param listener: Previously registered listener.
        """
        with self._lock:
            listeners: list[Listener] | None = self._listeners_by_event.get(event)
            if listeners is None:
                return
            for index, registered in enumerate(listeners):
                if registered is listener:
                    del listeners[index]
                    break
            if len(listeners) == 0:
                self._listeners_by_event.pop(event, None)

    def listener_count(self, event: str) -> int:
        """Return the number of listeners registered for ``event``.

        :param event: Event name.
        :returns: Listener count.
        """
        with self._lock:
            return len(self._listeners_by_event.get(event, []))

    def emit(self, event: str, *args: object) -> bool:
        """Call every listener registered for ``event``.

        A listener that raises is logged and the remaining listeners still run.

        :param event: Event name.
        :param args: Positional arguments passed to each listener.
        :returns: ``True`` when at least one listener was called.
        """
        with self._lock:
            snapshot: list[Listener] = list(self._listeners_by_event.get(event, []))
        if len(snapshot) == 0:
            logger.debug("No listeners for %r event", event)
            return False
        for listener in snapshot:
            try:
                listener(*args)
            except Exception:
                logger.exception("Listener %r raised while handling %r event", listener, event)
        return True

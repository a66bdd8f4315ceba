import logging
import threading
from typing import Type, Callable, List, Tuple, Any, Optional
from vproc.domain.events import Event

logger = logging.getLogger(__name__)


class EventBus:
    """A simple synchronous event bus for decoupled communication.

    Listeners are called in registration order on the publishing thread.
    Subscribing to ``Event`` receives every event.
    """

    def __init__(self):
        self._subscribers: List[Tuple[Type[Event], Callable[[Any], None]]] = []
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type[Event], callback: Callable[[Any], None]):
        """Subscribes a callback to a specific event type (and its subclasses)."""
        with self._lock:
            self._subscribers.append((event_type, callback))

    def unsubscribe(self, callback: Callable[[Any], None], event_type: Optional[Type[Event]] = None):
        """Removes a callback, from one event type or from all of them."""
        with self._lock:
            self._subscribers = [
                (t, cb) for t, cb in self._subscribers
                if not (cb == callback and (event_type is None or t is event_type))
            ]

    def publish(self, event: Event):
        """Publishes an event to all interested subscribers."""
        with self._lock:
            subscribers = list(self._subscribers)
        for event_type, callback in subscribers:
            if isinstance(event, event_type):
                try:
                    callback(event)
                except Exception:
                    logger.exception(f"Listener {callback!r} failed on {type(event).__name__}")

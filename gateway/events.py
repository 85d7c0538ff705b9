"""Event bus used by gateway services."""
import asyncio
from typing import Dict, List, Callable, Any, Optional
from collections import defaultdict

from loguru import logger

from .protocol import EventType, EventMessage


class EventEmitter:
    """Async event emitter with listener registry and bounded history."""

    def __init__(self, max_history: int = 1000):
        self._listeners: Dict[EventType, List[Callable]] = defaultdict(list)
        self._seq_counter = 0
        self._event_history: List[EventMessage] = []
        self._max_history = max_history

    def on(self, event: EventType, handler: Callable) -> None:
        """Register a listener for an event."""
        if handler not in self._listeners[event]:
            self._listeners[event].append(handler)
            logger.debug("Registered handler for event: {}", event)

    def off(self, event: EventType, handler: Callable) -> None:
        """Unregister a listener."""
        if handler in self._listeners[event]:
            self._listeners[event].remove(handler)
            logger.debug("Unregistered handler for event: {}", event)

    async def emit(self, event: EventType, payload: Dict[str, Any]) -> None:
        """Emit event to all listeners. Listener failures are logged, never raised."""
        self._seq_counter += 1
        event_msg = EventMessage(
            event=event,
            payload=payload,
            seq=self._seq_counter
        )

        self._event_history.append(event_msg)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[-self._max_history:]

        handlers = list(self._listeners.get(event, []))
        if not handlers:
            return

        tasks = []
        for handler in handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    tasks.append(handler(event_msg))
                else:
                    handler(event_msg)
            except Exception as e:
                logger.error("Error in event handler for {}: {}", event, e)

        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error("Error in event handler for {}: {}", event, result)

    def get_history(self, event: Optional[EventType] = None, limit: int = 100) -> List[EventMessage]:
        """Return event history, optionally filtered by event type."""
        if event:
            filtered = [e for e in self._event_history if e.event == event]
            return filtered[-limit:]
        return self._event_history[-limit:]


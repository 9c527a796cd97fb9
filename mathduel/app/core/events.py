from typing import Any, Awaitable, Callable, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)

Listener = Callable[[str, Optional[int], Dict[str, Any]], Awaitable[None]]


class EngineEvents:
    """Notification sink for participant / game row changes."""

    def __init__(self):
        self._listeners: List[Listener] = []

    def subscribe(self, callback: Listener):
        self._listeners.append(callback)

    def unsubscribe(self, callback: Listener):
        if callback in self._listeners:
            self._listeners.remove(callback)

    async def publish(self, event_type: str, tournament_id: Optional[int], payload: Dict[str, Any]):
        # A failing subscriber must never roll back an engine transition
        for listener in list(self._listeners):
            try:
                await listener(event_type, tournament_id, payload)
            except Exception:
                logger.exception("Event listener failed for %s", event_type)


engine_events = EngineEvents()

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, Field


class MPCAEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    feature_slug: Optional[str] = None
    workflow: str
    payload: Dict[str, Any]


class EventBus:
    """A lightweight, synchronous event bus for executor observability."""

    def __init__(self):
        self._subscribers: List[Callable[[MPCAEvent], None]] = []

    def subscribe(self, callback: Callable[[MPCAEvent], None]) -> None:
        """Register a callback to be executed when an event is emitted."""
        self._subscribers.append(callback)

    def emit(
        self,
        event_type: str,
        workflow: str,
        payload: Dict[str, Any],
        feature_slug: Optional[str] = None,
    ) -> MPCAEvent:
        """Construct and broadcast an MPCAEvent to all subscribers."""
        event = MPCAEvent(
            event_type=event_type,
            feature_slug=feature_slug,
            workflow=workflow,
            payload=payload,
        )

        logger.debug(f"[EVENT] {event_type}: {payload}")
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                # A broken subscriber must not abort a workflow step
                logger.exception(f"[EVENT] Subscriber failed on {event_type}")
        return event


# Global instance for the CLI; the executor takes a bus explicitly
bus = EventBus()

"""
Lightweight Event System for Extensibility

Provides a simple synchronous event emitter. Handlers run in the emitter's
call stack, so anything they write is visible before the emitter returns.
"""
import logging
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)

# Event registry: event_name -> list of handlers
_event_handlers: Dict[str, List[Callable]] = {}


def subscribe(event_name: str, handler: Callable):
    """
    Subscribe a handler function to an event.

    Subscribing the same handler twice is a no-op, so modules can register
    at import time without double-firing after a reload.

    Example:
        subscribe(EVENT_WORKOUT_LOGGED, on_workout_logged)
    """
    handlers = _event_handlers.setdefault(event_name, [])
    if handler in handlers:
        return
    handlers.append(handler)
    logger.debug(f"Subscribed handler to event: {event_name}")


def unsubscribe(event_name: str, handler: Callable):
    handlers = _event_handlers.get(event_name, [])
    if handler in handlers:
        handlers.remove(handler)


def emit(event_name: str, **kwargs):
    """
    Emit an event, calling all subscribed handlers.

    Handler failures are logged and never reach the emitter.

    Example:
        emit(EVENT_WORKOUT_LOGGED, db=db, client_id=client_id, occurred_at=now)
    """
    for handler in list(_event_handlers.get(event_name, [])):
        try:
            handler(**kwargs)
        except Exception as e:
            logger.error(f"Error in event handler for {event_name}: {e}", exc_info=True)


# Common event names
EVENT_WORKOUT_LOGGED = 'workout.logged'
EVENT_CHECKIN_RESPONDED = 'checkin.responded'
EVENT_CLIENT_ONBOARDED = 'client.onboarded'

"""
Fire-and-forget broadcast of attendance events.

Notifications are sent after a state change has been committed and never
decide whether it happens: notify_safely() logs delivery failures instead of
raising them into the heartbeat.
"""

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)

STATUS_CHANGED = 'attendance.status_changed'
SESSION_ENDED = 'session.ended'


class Notifier(ABC):
    """Realtime delivery channel (push, websocket, message bus)."""

    @abstractmethod
    def publish(self, event, payload):
        """
        Deliver one event.

        Args:
            event (str): Event name, e.g. 'attendance.status_changed'
            payload (dict): JSON-serializable body
        """


class LoggingNotifier(Notifier):
    """Writes events to the log; the default when no channel is configured."""

    def publish(self, event, payload):
        logger.info("broadcast %s: %s", event, payload)


class CallbackNotifier(Notifier):
    """Fans events out to registered callbacks."""

    def __init__(self, *callbacks):
        self.callbacks = list(callbacks)

    def subscribe(self, callback):
        self.callbacks.append(callback)
        return callback

    def publish(self, event, payload):
        for callback in list(self.callbacks):
            callback(event, payload)


def notify_safely(notifier, event, payload):
    """
    Publish without letting delivery problems reach the caller.

    Returns:
        bool: True if the notifier accepted the event
    """
    if notifier is None:
        return False
    try:
        notifier.publish(event, payload)
    except Exception as e:
        logger.warning("broadcast of %s failed: %s", event, e)
        return False
    return True

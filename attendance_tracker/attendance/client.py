"""
Device-side heartbeat loop.

Every interval (30 s in the foreground, 60 s in the background) the client
obtains a position, wraps it in a HeartbeatRequest with the next sequence
number and hands it to the transport. Transient failures (no GPS fix,
persistence error) are retried with the identical request, so the server's
duplicate check keeps a retried heartbeat from counting twice.
"""

import logging
import threading
import time

from ..config import HeartbeatScheduleConfig
from ..errors import LocationUnavailableError, RepositoryError
from .models import HeartbeatRequest

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (LocationUnavailableError, RepositoryError)


class HeartbeatClient:
    """
    Periodic heartbeat sender for one attendance.

    Args:
        attendance_id (str): Attendance record being tracked
        session_id (str): Session of the record
        send (callable): Transport, HeartbeatRequest -> HeartbeatResponse
        acquirer (LocationAcquirer, optional): Cascading GPS source
        position_source (callable, optional): Returns the latest FusedPosition
            (or None); preferred over the acquirer while it is no older than
            the maximum age
        config (HeartbeatScheduleConfig): Intervals and retry policy
        clock (callable): Client time in seconds
        sleep (callable): Used between retries
    """

    def __init__(self, attendance_id, session_id, send, acquirer=None, position_source=None,
                 config=None, clock=time.time, sleep=time.sleep):
        if acquirer is None and position_source is None:
            raise ValueError("HeartbeatClient needs an acquirer or a position_source")
        self.attendance_id = attendance_id
        self.session_id = session_id
        self.send = send
        self.acquirer = acquirer
        self.position_source = position_source
        self.config = config or HeartbeatScheduleConfig()
        self.config.validate()
        self.clock = clock
        self.sleep = sleep

        self.sequence = 0
        self.session_ended = False
        self.sent = 0
        self.failures = 0

    def interval(self, background=False):
        return self.config.background_interval if background else self.config.interval

    def build_request(self, background=False):
        """
        Build the next heartbeat.

        Raises:
            LocationUnavailableError: If no position can be obtained
        """
        max_age = self.config.background_maximum_age if background else self.config.maximum_age
        now = self.clock()
        position = self.position_source() if self.position_source else None
        if position is not None and now - position.timestamp > max_age:
            logger.info("Fused position is %.0fs old (max %.0fs), not reusing it",
                        now - position.timestamp, max_age)
            position = None

        if position is not None:
            latitude, longitude, accuracy = position.latitude, position.longitude, position.accuracy
            source, metadata = 'fusion', position.to_metadata()
        elif self.acquirer is not None:
            fix = self.acquirer.acquire(maximum_age=max_age)
            latitude, longitude, accuracy = fix.latitude, fix.longitude, fix.accuracy
            source, metadata = fix.provider, {'trackingMode': 'gps-only'}
        else:
            raise LocationUnavailableError("no recent fused position available")

        self.sequence += 1
        return HeartbeatRequest(
            attendance_id=self.attendance_id,
            session_id=self.session_id,
            latitude=latitude,
            longitude=longitude,
            accuracy=accuracy,
            timestamp=now,
            source=source,
            attempt=self.sequence,
            metadata=metadata,
        )

    def send_heartbeat(self, background=False):
        """
        Send one heartbeat with retries.

        Returns:
            HeartbeatResponse

        Raises:
            LocationUnavailableError, RepositoryError: After max_retries failed retries
        """
        request = None
        retries = self.config.max_retries
        for attempt in range(retries + 1):
            try:
                if request is None:
                    request = self.build_request(background)
                response = self.send(request)
            except TRANSIENT_ERRORS as e:
                self.failures += 1
                if attempt >= retries:
                    logger.warning("Heartbeat for %s failed after %d attempts: %s",
                                   self.attendance_id, attempt + 1, e)
                    raise
                logger.warning("Heartbeat for %s failed (%s), retrying in %.0fs",
                               self.attendance_id, e, self.config.retry_delay)
                self.sleep(self.config.retry_delay)
                continue

            self.sent += 1
            if response.session_ended:
                self.session_ended = True
            return response

    def run(self, stop_event=None, background=None):
        """
        Send heartbeats until the session ends or stop_event is set.

        Args:
            stop_event (threading.Event, optional): Stops the loop
            background (callable, optional): Returns True while the app is backgrounded
        """
        stop_event = stop_event or threading.Event()
        while not stop_event.is_set() and not self.session_ended:
            is_background = bool(background()) if background else False
            try:
                self.send_heartbeat(is_background)
            except TRANSIENT_ERRORS:
                # Reported above; missing data never changes attendance, try next interval
                pass
            stop_event.wait(self.interval(is_background))

    def get_statistics(self):
        return {
            'sequence': self.sequence,
            'sent': self.sent,
            'failures': self.failures,
            'session_ended': self.session_ended,
        }

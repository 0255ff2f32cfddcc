"""
Heartbeat-driven attendance state machine.

Status graph (severity only increases within a session):

    present -> late
    present -> left_early
    late    -> left_early
    left_early, absent: terminal

Each heartbeat is checked against the session geofence. An in-bounds
heartbeat clears the violation counter; out-of-bounds heartbeats increment
it and the record becomes left_early when the counter reaches the violation
threshold (2 by default), so a single bad fix never ejects anyone.

Heartbeats for one attendance record are processed one at a time. A
heartbeat whose (client timestamp, attempt) is not newer than the last
accepted one is a duplicate and has no effect. Once the session is ended all
heartbeats are acknowledged without effect.
"""

import logging
import threading
import time

from ..config import HeartbeatConfig
from ..errors import InvalidInputError, InvalidTransitionError
from ..geofence import effective_distance
from .models import (
    ALLOWED_TRANSITIONS,
    AttendanceStatus,
    HeartbeatRequest,
    HeartbeatResponse,
    LocationLogEntry,
)
from .notifier import STATUS_CHANGED, notify_safely

logger = logging.getLogger(__name__)


def transition(record, new_status, now):
    """
    Apply a status transition to a record in place.

    Raises:
        InvalidTransitionError: If the transition is not in the status graph
    """
    new_status = AttendanceStatus(new_status)
    if new_status not in ALLOWED_TRANSITIONS[record.status]:
        raise InvalidTransitionError(
            f"attendance {record.id}: {record.status.value} -> {new_status.value} not allowed")
    record.status = new_status
    if new_status == AttendanceStatus.LEFT_EARLY and record.check_out_time is None:
        record.check_out_time = now
    return record


def is_duplicate(record, request):
    """True if the request is not newer than the last accepted heartbeat."""
    if record.last_heartbeat_at is None:
        return False
    return (request.timestamp, request.attempt) <= (record.last_heartbeat_at, record.last_attempt)


class HeartbeatProcessor:
    """
    Processes heartbeats for attendance records.

    Args:
        repository (AttendanceRepository): Persistence collaborator
        sessions (SessionLifecycleManager): Session state and auto-end
        config (HeartbeatConfig): Violation threshold, default radius, accuracy limit
        notifier (Notifier, optional): Receives 'attendance.status_changed'
        clock (callable): Current server time in seconds
    """

    def __init__(self, repository, sessions, config=None, notifier=None, clock=time.time):
        self.repository = repository
        self.sessions = sessions
        self.config = config or HeartbeatConfig()
        self.config.validate()
        self.notifier = notifier
        self.clock = clock
        self.locks = sessions.record_locks

        # Statistics, shared by every record's worker
        self._stats_lock = threading.Lock()
        self.processed = 0
        self.duplicates = 0
        self.ignored = 0
        self.transitions = 0

    def _count(self, name):
        with self._stats_lock:
            setattr(self, name, getattr(self, name) + 1)

    @staticmethod
    def _ended_response():
        return HeartbeatResponse(location_valid=False, distance=None, allowed_radius=None,
                                 session_ended=True, message='session ended')

    def process(self, request):
        """
        Process one heartbeat.

        Args:
            request (HeartbeatRequest): Client heartbeat

        Returns:
            HeartbeatResponse

        Raises:
            InvalidInputError: Malformed coordinates/accuracy or mismatched session
            RecordNotFoundError: Unknown attendance or session
            RepositoryError: Persistence failed; nothing was changed
        """
        if not isinstance(request, HeartbeatRequest):
            raise InvalidInputError(f"expected HeartbeatRequest, got {type(request).__name__}")
        request.validate()
        now = self.clock()

        # Auto-end happens before taking the record lock (it locks records itself)
        session = self.sessions.refresh(request.session_id, now)
        if session.is_ended:
            self._count('ignored')
            return self._ended_response()

        expired = False
        previous_status = None
        with self.locks.hold(request.attendance_id):
            record = self.repository.get_attendance(request.attendance_id)
            if record.session_id != request.session_id:
                raise InvalidInputError(
                    f"attendance {record.id} belongs to session {record.session_id}, not {request.session_id}")

            session = self.repository.get_session(request.session_id)
            if session.is_ended or self.sessions.is_expired(session, now):
                expired = not session.is_ended
                self._count('ignored')
                response = self._ended_response()
            elif not record.is_tracked:
                self._count('ignored')
                response = HeartbeatResponse(location_valid=False, distance=None, allowed_radius=None,
                                             message=f'not tracked ({record.status.value})')
            elif is_duplicate(record, request):
                self._count('duplicates')
                logger.debug("Duplicate heartbeat for %s (ts=%.3f attempt=%d)",
                             record.id, request.timestamp, request.attempt)
                response = HeartbeatResponse(location_valid=False, distance=None, allowed_radius=None,
                                             duplicate=True, message='duplicate heartbeat')
            else:
                previous_status = record.status
                response = self._apply(record, session, request, now)
                self._count('processed')

        if expired:
            self.sessions.refresh(request.session_id, now)

        if response.status_changed:
            self._count('transitions')
            notify_safely(self.notifier, STATUS_CHANGED, {
                'attendanceId': record.id,
                'attendeeId': record.attendee_id,
                'sessionId': record.session_id,
                'previousStatus': previous_status.value,
                'status': record.status.value,
                'distanceMeters': response.distance,
                'timestamp': now,
            })
        return response

    def _apply(self, record, session, request, now):
        geofence = session.geofence(self.config.default_radius)
        if geofence is None:
            # Nothing to validate against: log only, status untouched
            distance, radius, within_bounds = None, None, False
        else:
            result = geofence.check(request.latitude, request.longitude)
            distance, radius, within_bounds = result.distance, result.radius, result.within_bounds

        low_accuracy = self.config.max_accuracy is not None and request.accuracy > self.config.max_accuracy

        metadata = dict(request.metadata or {})
        if distance is not None:
            metadata['effectiveDistance'] = effective_distance(distance, request.accuracy)

        entry = LocationLogEntry(
            attendance_id=record.id,
            session_id=record.session_id,
            latitude=request.latitude,
            longitude=request.longitude,
            accuracy=request.accuracy,
            timestamp=request.timestamp,
            distance=distance,
            within_bounds=within_bounds,
            source=request.source,
            low_accuracy=low_accuracy,
            metadata=metadata,
        )

        record.last_heartbeat_at = request.timestamp
        record.last_attempt = request.attempt
        status_changed = False

        if geofence is None or low_accuracy:
            message = 'no classroom location' if geofence is None else 'accuracy too low to validate'
        elif within_bounds:
            record.consecutive_violations = 0
            record.last_valid_at = request.timestamp
            message = 'inside classroom'
        else:
            record.consecutive_violations += 1
            message = f'outside classroom ({record.consecutive_violations}/{self.config.violation_threshold})'
            if record.consecutive_violations >= self.config.violation_threshold:
                transition(record, AttendanceStatus.LEFT_EARLY, now)
                status_changed = True
                message = 'left classroom'
                logger.info("Attendance %s -> left_early after %d violations (%.0fm > %.0fm)",
                            record.id, record.consecutive_violations, distance, radius)

        self.repository.record_heartbeat(record, entry)

        return HeartbeatResponse(
            location_valid=within_bounds and not low_accuracy,
            distance=distance,
            allowed_radius=radius,
            status_changed=status_changed,
            new_status=record.status if status_changed else None,
            low_accuracy=low_accuracy,
            message=message,
        )

    def mark_late(self, attendance_id, now=None):
        """
        Move a present record to late.

        Returns:
            AttendanceRecord: The updated record (unchanged if the session has ended)

        Raises:
            InvalidTransitionError: If the record is not present
        """
        now = self.clock() if now is None else now
        with self.locks.hold(attendance_id):
            record = self.repository.get_attendance(attendance_id)
            session = self.repository.get_session(record.session_id)
            if session.is_ended:
                return record
            previous_status = record.status
            transition(record, AttendanceStatus.LATE, now)
            self.repository.save_attendance(record)

        self._count('transitions')
        notify_safely(self.notifier, STATUS_CHANGED, {
            'attendanceId': record.id,
            'attendeeId': record.attendee_id,
            'sessionId': record.session_id,
            'previousStatus': previous_status.value,
            'status': record.status.value,
            'timestamp': now,
        })
        return record

    def get_statistics(self):
        with self._stats_lock:
            return {
                'processed': self.processed,
                'duplicates': self.duplicates,
                'ignored': self.ignored,
                'transitions': self.transitions,
            }


"""
Attendance entities and heartbeat message shapes.

Rows coming from a persistence layer may use camelCase or snake_case keys,
nest joined tables as a dict or a one-element list, and leave fields null.
from_row() normalizes all of that into the typed entities below before they
reach the state machine.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from ..errors import InvalidInputError
from ..filters.utils import is_finite_number
from ..geofence import Geofence
from ..models import validate_accuracy, validate_coordinate


class AttendanceStatus(str, Enum):
    PRESENT = 'present'
    LATE = 'late'
    LEFT_EARLY = 'left_early'
    ABSENT = 'absent'


class SessionStatus(str, Enum):
    ACTIVE = 'active'
    ENDED = 'ended'


# Status graph: severity only increases within a session
ALLOWED_TRANSITIONS = {
    AttendanceStatus.PRESENT: frozenset({AttendanceStatus.LATE, AttendanceStatus.LEFT_EARLY}),
    AttendanceStatus.LATE: frozenset({AttendanceStatus.LEFT_EARLY}),
    AttendanceStatus.LEFT_EARLY: frozenset(),
    AttendanceStatus.ABSENT: frozenset(),
}

# Statuses that still receive heartbeats
TRACKED_STATUSES = frozenset({AttendanceStatus.PRESENT, AttendanceStatus.LATE})


def _pick(row, *keys, default=None):
    for key in keys:
        if key in row and row[key] is not None:
            return row[key]
    return default


def _required(row, *keys):
    value = _pick(row, *keys)
    if value is None:
        raise InvalidInputError(f"missing required field {keys[0]!r}")
    return value


def _nested(row, *keys):
    """Joined row given as a dict or a (possibly empty) list of dicts."""
    value = _pick(row, *keys)
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    return value if isinstance(value, dict) else None


def to_timestamp(value):
    """Normalize epoch seconds, datetimes and ISO-8601 strings to epoch seconds."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.timestamp()
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace('Z', '+00:00')).timestamp()
        except ValueError as e:
            raise InvalidInputError(f"invalid timestamp: {value!r}") from e
    if is_finite_number(value):
        return float(value)
    raise InvalidInputError(f"invalid timestamp: {value!r}")


@dataclass
class AttendanceRecord:
    id: str
    attendee_id: str
    session_id: str
    status: AttendanceStatus = AttendanceStatus.PRESENT
    last_valid_at: Optional[float] = None
    consecutive_violations: int = 0
    check_in_time: Optional[float] = None
    check_out_time: Optional[float] = None
    # Last accepted heartbeat (client timestamp, attempt) for deduplication
    last_heartbeat_at: Optional[float] = None
    last_attempt: int = 0

    @property
    def is_tracked(self):
        return self.status in TRACKED_STATUSES

    @classmethod
    def from_row(cls, row):
        """
        Build a record from a persistence row.

        Raises:
            InvalidInputError: If id, attendee or session cannot be resolved
        """
        session = _nested(row, 'session', 'sessions')
        session_id = _pick(row, 'session_id', 'sessionId', default=session.get('id') if session else None)
        record_id = _pick(row, 'id')
        attendee_id = _pick(row, 'attendee_id', 'attendeeId', 'student_id', 'studentId')
        if record_id is None or attendee_id is None or session_id is None:
            raise InvalidInputError(f"attendance row missing id/attendee/session: {row!r}")
        try:
            status = AttendanceStatus(_pick(row, 'status', default=AttendanceStatus.PRESENT.value))
        except ValueError as e:
            raise InvalidInputError(f"unknown attendance status in row: {row.get('status')!r}") from e
        return cls(
            id=str(record_id),
            attendee_id=str(attendee_id),
            session_id=str(session_id),
            status=status,
            last_valid_at=to_timestamp(_pick(row, 'last_valid_at', 'lastValidAt')),
            consecutive_violations=int(_pick(row, 'consecutive_violations', 'consecutiveViolations', default=0)),
            check_in_time=to_timestamp(_pick(row, 'check_in_time', 'checkInTime')),
            check_out_time=to_timestamp(_pick(row, 'check_out_time', 'checkOutTime')),
            last_heartbeat_at=to_timestamp(_pick(row, 'last_heartbeat_at', 'lastHeartbeatAt')),
            last_attempt=int(_pick(row, 'last_attempt', 'lastAttempt', default=0)),
        )

    def to_row(self):
        row = asdict(self)
        row['status'] = self.status.value
        return row


@dataclass
class SessionState:
    id: str
    created_at: float
    auto_end_at: float
    status: SessionStatus = SessionStatus.ACTIVE
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    radius: Optional[float] = None
    ended_at: Optional[float] = None
    end_reason: Optional[str] = None

    @property
    def is_ended(self):
        return self.status == SessionStatus.ENDED

    def geofence(self, default_radius):
        """Classroom geofence, or None when the session has no location."""
        if self.latitude is None or self.longitude is None:
            return None
        radius = self.radius if self.radius is not None else default_radius
        return Geofence(self.latitude, self.longitude, radius)

    @classmethod
    def from_row(cls, row, auto_end_after=None):
        """
        Build a session from a persistence row.

        The classroom location comes from the session's own classroom columns,
        falling back to the joined course's classroom_location.

        Args:
            row (dict): Session row
            auto_end_after (float, optional): Seconds used when the row has no auto_end_at
        """
        session_id = _pick(row, 'id')
        created_at = to_timestamp(_pick(row, 'created_at', 'createdAt'))
        if session_id is None or created_at is None:
            raise InvalidInputError(f"session row missing id/created_at: {row!r}")

        auto_end_at = to_timestamp(_pick(row, 'auto_end_at', 'autoEndAt'))
        if auto_end_at is None:
            if auto_end_after is None:
                raise InvalidInputError(f"session row missing auto_end_at: {row!r}")
            auto_end_at = created_at + auto_end_after

        latitude = _pick(row, 'classroom_latitude', 'latitude')
        longitude = _pick(row, 'classroom_longitude', 'longitude')
        radius = _pick(row, 'classroom_radius', 'radius')
        course = _nested(row, 'course', 'courses')
        if (latitude is None or longitude is None) and course:
            location = course.get('classroom_location') or {}
            latitude = location.get('latitude')
            longitude = location.get('longitude')
            radius = location.get('radius', radius)

        try:
            status = SessionStatus(_pick(row, 'status', default=SessionStatus.ACTIVE.value))
        except ValueError as e:
            raise InvalidInputError(f"unknown session status in row: {row.get('status')!r}") from e

        return cls(
            id=str(session_id),
            created_at=created_at,
            auto_end_at=auto_end_at,
            status=status,
            latitude=float(latitude) if latitude is not None else None,
            longitude=float(longitude) if longitude is not None else None,
            radius=float(radius) if radius is not None else None,
            ended_at=to_timestamp(_pick(row, 'ended_at', 'endedAt')),
            end_reason=_pick(row, 'end_reason', 'endReason'),
        )

    def to_row(self):
        row = asdict(self)
        row['status'] = self.status.value
        return row


@dataclass(frozen=True)
class LocationLogEntry:
    attendance_id: str
    session_id: str
    latitude: float
    longitude: float
    accuracy: float
    timestamp: float
    distance: float
    within_bounds: bool
    source: str = 'gps'
    low_accuracy: bool = False
    metadata: dict = field(default_factory=dict)


@dataclass
class HeartbeatRequest:
    attendance_id: str
    session_id: str
    latitude: float
    longitude: float
    accuracy: float
    timestamp: float  # client time, seconds
    source: str = 'gps'
    attempt: int = 0
    metadata: dict = field(default_factory=dict)

    def validate(self):
        validate_coordinate(self.latitude, self.longitude)
        validate_accuracy(self.accuracy)
        if not is_finite_number(self.timestamp):
            raise InvalidInputError(f"heartbeat timestamp must be finite, got {self.timestamp!r}")
        if not isinstance(self.attempt, int) or self.attempt < 0:
            raise InvalidInputError(f"attempt must be a non-negative integer, got {self.attempt!r}")
        return self

    @classmethod
    def from_dict(cls, payload):
        """Build a request from a camelCase (or snake_case) payload."""
        try:
            return cls(
                attendance_id=str(_required(payload, 'attendanceId', 'attendance_id')),
                session_id=str(_required(payload, 'sessionId', 'session_id')),
                latitude=payload['latitude'],
                longitude=payload['longitude'],
                accuracy=_required(payload, 'accuracy'),
                timestamp=to_timestamp(_required(payload, 'timestamp')),
                source=_pick(payload, 'source', default='gps'),
                attempt=int(_pick(payload, 'attempt', default=0)),
                metadata=dict(_pick(payload, 'metadata', default={})),
            )
        except (KeyError, TypeError) as e:
            raise InvalidInputError(f"malformed heartbeat payload: {e}") from e


@dataclass
class HeartbeatResponse:
    location_valid: bool
    distance: Optional[float]
    allowed_radius: Optional[float]
    status_changed: bool = False
    new_status: Optional[AttendanceStatus] = None
    session_ended: bool = False
    duplicate: bool = False
    low_accuracy: bool = False
    message: str = ''

    def to_dict(self):
        return {
            'locationValid': self.location_valid,
            'distanceMeters': self.distance,
            'allowedRadiusMeters': self.allowed_radius,
            'statusChanged': self.status_changed,
            'newStatus': self.new_status.value if self.new_status else None,
            'sessionEnded': self.session_ended,
            'duplicate': self.duplicate,
            'lowAccuracy': self.low_accuracy,
            'message': self.message,
        }


@dataclass(frozen=True)
class SessionStatistics:
    total: int
    present: int
    late: int
    absent: int
    left_early: int
    attendance_rate: int  # percent

    def to_dict(self):
        return {
            'total': self.total,
            'present': self.present,
            'late': self.late,
            'absent': self.absent,
            'left_early': self.left_early,
            'attendanceRate': self.attendance_rate,
        }


@dataclass(frozen=True)
class EndSessionResult:
    session_id: str
    already_ended: bool
    auto_ended: bool
    ended_at: float
    statistics: SessionStatistics

    def to_dict(self):
        return {
            'sessionId': self.session_id,
            'alreadyEnded': self.already_ended,
            'autoEnded': self.auto_ended,
            'endedAt': self.ended_at,
            'statistics': self.statistics.to_dict(),
        }

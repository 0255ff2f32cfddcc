"""Shared fixtures for the attendance tracker tests."""

import math

import pytest

from attendance_tracker.attendance.heartbeat import HeartbeatProcessor
from attendance_tracker.attendance.models import HeartbeatRequest
from attendance_tracker.attendance.repository import InMemoryRepository
from attendance_tracker.attendance.session import SessionLifecycleManager
from attendance_tracker.config import get_preset
from attendance_tracker.geofence import Geofence
from attendance_tracker.models import GPSFix, InertialFrame

CLASSROOM_LAT = 36.6372
CLASSROOM_LON = 127.4896
CLASSROOM_RADIUS = 30.0

# Great-circle meters per degree of latitude for the mean Earth radius
METERS_PER_DEGREE_LAT = 6371000 * math.pi / 180.0

SESSION_START = 1_700_000_000.0


def offset(latitude, longitude, north=0.0, east=0.0):
    """Move a coordinate by a number of meters north/east."""
    lat = latitude + north / METERS_PER_DEGREE_LAT
    lon = longitude + east / (METERS_PER_DEGREE_LAT * math.cos(math.radians(latitude)))
    return lat, lon


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start=SESSION_START):
        self.value = start

    def __call__(self):
        return self.value

    def advance(self, seconds):
        self.value += seconds
        return self.value


def walking_frames(steps, start=0.0, rate=10, yaw_rate=None, magnetometer=None):
    """
    Synthetic accelerometer frames with one clear peak every 0.5 s.

    Each cycle is five samples at `rate` Hz: 0.2, 0.5, 2.6, 0.5, 0.2.
    """
    pattern = (0.2, 0.5, 2.6, 0.5, 0.2)
    frames = []
    for i in range(steps * len(pattern) + 1):
        magnitude = pattern[i % len(pattern)]
        frames.append(InertialFrame(
            acceleration=(0.0, 0.0, magnitude),
            timestamp=start + i / rate,
            rotation_rate=(yaw_rate, 0.0, 0.0) if yaw_rate is not None else None,
            magnetometer=magnetometer,
        ))
    return frames


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return get_preset('default')


@pytest.fixture
def classroom():
    return Geofence(CLASSROOM_LAT, CLASSROOM_LON, CLASSROOM_RADIUS)


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def notifications():
    """List collecting (event, payload) pairs."""
    return []


@pytest.fixture
def notifier(notifications):
    from attendance_tracker.attendance.notifier import CallbackNotifier
    return CallbackNotifier(lambda event, payload: notifications.append((event, payload)))


@pytest.fixture
def sessions(repository, config, notifier, clock):
    return SessionLifecycleManager(repository, config.session, notifier=notifier, clock=clock)


@pytest.fixture
def processor(repository, sessions, config, notifier, clock):
    return HeartbeatProcessor(repository, sessions, config.heartbeat, notifier=notifier, clock=clock)


@pytest.fixture
def session(sessions, classroom):
    return sessions.create_session(classroom, session_id='session-1')


@pytest.fixture
def attendance(sessions, session):
    return sessions.check_in(session.id, 'student-1', attendance_id='attendance-1')


@pytest.fixture
def make_heartbeat(clock):
    """Factory for heartbeats at a given distance north of the classroom."""
    counter = {'attempt': 0}

    def _make(distance=0.0, accuracy=10.0, attendance_id='attendance-1', session_id='session-1',
              timestamp=None, attempt=None):
        counter['attempt'] += 1
        latitude, longitude = offset(CLASSROOM_LAT, CLASSROOM_LON, north=distance)
        return HeartbeatRequest(
            attendance_id=attendance_id,
            session_id=session_id,
            latitude=latitude,
            longitude=longitude,
            accuracy=accuracy,
            timestamp=clock() if timestamp is None else timestamp,
            attempt=counter['attempt'] if attempt is None else attempt,
        )

    return _make


def make_fix(north=0.0, east=0.0, accuracy=10.0, timestamp=0.0, **kwargs):
    latitude, longitude = offset(CLASSROOM_LAT, CLASSROOM_LON, north=north, east=east)
    return GPSFix(latitude=latitude, longitude=longitude, accuracy=accuracy, timestamp=timestamp, **kwargs)

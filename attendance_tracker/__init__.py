"""
attendance_tracker - location estimation and attendance integrity.

Verifies that an attendee stays inside a classroom geofence for the length of
a session using noisy GPS fixes and phone inertial sensors:

- filters:     GPS Kalman smoothing, fusion weighting, geo utilities
- pdr:         step detection, step length, heading, dead reckoning
- environment: indoor/outdoor classification
- fusion:      GPS + dead-reckoning fusion engine
- sensors:     cascading GPS acquisition, per-device event pipeline
- attendance:  heartbeat state machine and session lifecycle
"""

from .config import TrackerConfig, get_preset, load_config
from .errors import (
    AttendanceTrackerError,
    InvalidInputError,
    InvalidTransitionError,
    LocationUnavailableError,
    RecordNotFoundError,
    RepositoryError,
    SensorUnavailableError,
)
from .fusion import FusionEngine
from .geofence import Geofence, GeofenceResult, check_geofence
from .models import FusedPosition, GPSFix, InertialFrame, RelativePosition, StepEvent

__version__ = '0.1.0'

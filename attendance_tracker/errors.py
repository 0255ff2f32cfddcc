"""
Exception hierarchy for the attendance tracker.

Invalid input is raised at the boundary (geofence, fusion engine, heartbeat
processor) and is never coerced. Transient acquisition and persistence
failures are reported to the caller, who decides whether to retry.
"""


class AttendanceTrackerError(Exception):
    """Base class for all attendance tracker errors."""


class InvalidInputError(AttendanceTrackerError, ValueError):
    """Malformed coordinates, negative accuracy, non-positive radius, bad config."""


class SensorUnavailableError(AttendanceTrackerError):
    """Inertial sensors missing or permission denied."""


class LocationUnavailableError(AttendanceTrackerError):
    """Every GPS acquisition strategy failed (transient)."""


class RecordNotFoundError(AttendanceTrackerError, KeyError):
    """Unknown attendance or session ID."""

    def __str__(self):
        # KeyError wraps the message in quotes
        return Exception.__str__(self)


class InvalidTransitionError(AttendanceTrackerError):
    """Attendance status transition outside the allowed graph."""


class RepositoryError(AttendanceTrackerError):
    """Persistence collaborator failed; the current operation had no effect."""

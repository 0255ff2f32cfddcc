"""
Persistence contract for attendance records, sessions and location logs.

The state machine only talks to AttendanceRepository. InMemoryRepository is
an arena-style implementation (ID -> record dicts owned by one instance, no
module-level state) used in tests, replays and single-process deployments.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque

from ..errors import RecordNotFoundError

logger = logging.getLogger(__name__)


class AttendanceRepository(ABC):
    """
    Read/write contract for the attendance core.

    Reads must reflect the latest committed write for the same record.
    Failures are raised as RepositoryError; the caller aborts or retries the
    current operation.
    """

    @abstractmethod
    def get_attendance(self, attendance_id):
        """Return the AttendanceRecord or raise RecordNotFoundError."""

    @abstractmethod
    def save_attendance(self, record):
        """Insert or replace an AttendanceRecord."""

    @abstractmethod
    def list_attendance(self, session_id):
        """All AttendanceRecords of a session."""

    @abstractmethod
    def get_session(self, session_id):
        """Return the SessionState or raise RecordNotFoundError."""

    @abstractmethod
    def save_session(self, session):
        """Insert or replace a SessionState."""

    @abstractmethod
    def list_sessions(self, status=None):
        """Sessions, optionally filtered by SessionStatus."""

    @abstractmethod
    def append_location_log(self, entry):
        """Append a LocationLogEntry (never updated afterwards)."""

    @abstractmethod
    def recent_location_logs(self, attendance_id, limit=None):
        """Most recent LocationLogEntries of an attendance, oldest first."""

    def record_heartbeat(self, record, entry):
        """
        Commit a heartbeat's record update and log entry together.

        Implementations backed by a database should do this in one
        transaction; the default writes the log entry first so a failed
        record write leaves at most a log line behind.
        """
        self.append_location_log(entry)
        self.save_attendance(record)


class InMemoryRepository(AttendanceRepository):
    """
    Arena storage: dict ID -> record, copies in and out.

    Args:
        log_retention (int): Location log entries kept per attendance
    """

    def __init__(self, log_retention=100):
        self.log_retention = log_retention
        self._attendance = {}
        self._sessions = {}
        self._logs = {}
        self.lock = threading.RLock()

    def get_attendance(self, attendance_id):
        with self.lock:
            try:
                return copy.deepcopy(self._attendance[attendance_id])
            except KeyError:
                raise RecordNotFoundError(f"attendance {attendance_id} not found") from None

    def save_attendance(self, record):
        with self.lock:
            self._attendance[record.id] = copy.deepcopy(record)

    def list_attendance(self, session_id):
        with self.lock:
            return [copy.deepcopy(r) for r in self._attendance.values() if r.session_id == session_id]

    def get_session(self, session_id):
        with self.lock:
            try:
                return copy.deepcopy(self._sessions[session_id])
            except KeyError:
                raise RecordNotFoundError(f"session {session_id} not found") from None

    def save_session(self, session):
        with self.lock:
            self._sessions[session.id] = copy.deepcopy(session)

    def list_sessions(self, status=None):
        with self.lock:
            return [copy.deepcopy(s) for s in self._sessions.values()
                    if status is None or s.status == status]

    def append_location_log(self, entry):
        with self.lock:
            log = self._logs.get(entry.attendance_id)
            if log is None:
                log = self._logs[entry.attendance_id] = deque(maxlen=self.log_retention)
            log.append(entry)

    def recent_location_logs(self, attendance_id, limit=None):
        with self.lock:
            entries = list(self._logs.get(attendance_id, ()))
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def record_heartbeat(self, record, entry):
        # Both writes under one lock: readers never see one without the other
        with self.lock:
            self.append_location_log(entry)
            self.save_attendance(record)

    def clear(self):
        with self.lock:
            self._attendance.clear()
            self._sessions.clear()
            self._logs.clear()

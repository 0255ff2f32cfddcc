"""
Session lifecycle: creation, auto-end and finalization.

A session is active from creation until it is ended by the instructor or
automatically once auto_end_after_hours have elapsed. Ending is idempotent:
the first call stamps check-out on every present/late record and later calls
report the same statistics without touching anything.
"""

import logging
import time
import uuid

from ..config import SessionConfig
from ..errors import InvalidInputError
from .locks import KeyedLocks
from .models import (
    AttendanceRecord,
    AttendanceStatus,
    EndSessionResult,
    SessionState,
    SessionStatistics,
    SessionStatus,
    TRACKED_STATUSES,
)
from .notifier import SESSION_ENDED, notify_safely

logger = logging.getLogger(__name__)

MANUAL = 'manual'
AUTO = 'auto'


def compute_statistics(records):
    """
    Aggregate attendance counts for a session.

    attendance_rate is (present + late) / total as a percentage rounded half
    up, 0 for an empty session.
    """
    counts = {status: 0 for status in AttendanceStatus}
    for record in records:
        counts[record.status] += 1
    total = len(records)
    attended = counts[AttendanceStatus.PRESENT] + counts[AttendanceStatus.LATE]
    rate = (200 * attended + total) // (2 * total) if total else 0
    return SessionStatistics(
        total=total,
        present=counts[AttendanceStatus.PRESENT],
        late=counts[AttendanceStatus.LATE],
        absent=counts[AttendanceStatus.ABSENT],
        left_early=counts[AttendanceStatus.LEFT_EARLY],
        attendance_rate=rate,
    )


class SessionLifecycleManager:
    """
    Owns SessionState and session-wide finalization.

    Args:
        repository (AttendanceRepository): Persistence collaborator
        config (SessionConfig): Auto-end policy
        notifier (Notifier, optional): Receives 'session.ended'
        clock (callable): Current time in seconds
        record_locks (KeyedLocks, optional): Shared with the heartbeat processor
    """

    def __init__(self, repository, config=None, notifier=None, clock=time.time, record_locks=None):
        self.repository = repository
        self.config = config or SessionConfig()
        self.config.validate()
        self.notifier = notifier
        self.clock = clock
        self.record_locks = record_locks or KeyedLocks()
        self.session_locks = KeyedLocks()

    @property
    def auto_end_after(self):
        """Auto-end delay in seconds."""
        return self.config.auto_end_after_hours * 3600.0

    def create_session(self, geofence=None, session_id=None, created_at=None):
        """
        Start a new active session.

        Args:
            geofence (Geofence, optional): Classroom location and radius
            session_id (str, optional): Generated when omitted
            created_at (float, optional): Defaults to now
        """
        created_at = self.clock() if created_at is None else created_at
        session = SessionState(
            id=session_id or uuid.uuid4().hex,
            created_at=created_at,
            auto_end_at=created_at + self.auto_end_after,
            latitude=geofence.latitude if geofence else None,
            longitude=geofence.longitude if geofence else None,
            radius=geofence.radius if geofence else None,
        )
        self.repository.save_session(session)
        logger.info("Session %s created, auto-ends at %.0f", session.id, session.auto_end_at)
        return session

    def get_session(self, session_id):
        return self.repository.get_session(session_id)

    def is_expired(self, session, now=None):
        now = self.clock() if now is None else now
        return not session.is_ended and now >= session.auto_end_at

    def time_remaining(self, session_id, now=None):
        """Seconds until auto-end (0 once ended or expired)."""
        session = self.repository.get_session(session_id)
        if session.is_ended:
            return 0.0
        now = self.clock() if now is None else now
        return max(0.0, session.auto_end_at - now)

    def refresh(self, session_id, now=None):
        """Return the session, auto-ending it first if its time is up."""
        session = self.repository.get_session(session_id)
        if self.is_expired(session, now):
            self.end_session(session_id, now=now, reason=AUTO)
            session = self.repository.get_session(session_id)
        return session

    def sweep(self, now=None):
        """Auto-end every expired active session."""
        results = []
        for session in self.repository.list_sessions(status=SessionStatus.ACTIVE):
            if self.is_expired(session, now):
                results.append(self.end_session(session.id, now=now, reason=AUTO))
        return results

    def end_session(self, session_id, now=None, reason=MANUAL):
        """
        End a session (idempotent).

        Returns:
            EndSessionResult: already_ended is True on every call after the first
        """
        now = self.clock() if now is None else now
        with self.session_locks.hold(session_id):
            session = self.repository.get_session(session_id)
            if session.is_ended:
                statistics = compute_statistics(self.repository.list_attendance(session_id))
                return EndSessionResult(
                    session_id=session_id,
                    already_ended=True,
                    auto_ended=session.end_reason == AUTO,
                    ended_at=session.ended_at,
                    statistics=statistics,
                )

            # Mark ended first: heartbeats observing it from here on are no-ops
            session.status = SessionStatus.ENDED
            session.ended_at = now
            session.end_reason = reason
            self.repository.save_session(session)

            finalized = self._finalize_records(session_id, now)
            statistics = compute_statistics(self.repository.list_attendance(session_id))

        logger.info("Session %s ended (%s): %d records finalized, attendance %d%%",
                    session_id, reason, finalized, statistics.attendance_rate)
        result = EndSessionResult(
            session_id=session_id,
            already_ended=False,
            auto_ended=reason == AUTO,
            ended_at=now,
            statistics=statistics,
        )
        notify_safely(self.notifier, SESSION_ENDED, result.to_dict())
        return result

    def _finalize_records(self, session_id, now):
        finalized = 0
        for snapshot in self.repository.list_attendance(session_id):
            with self.record_locks.hold(snapshot.id):
                record = self.repository.get_attendance(snapshot.id)
                if record.status in TRACKED_STATUSES and record.check_out_time is None:
                    record.check_out_time = now
                    self.repository.save_attendance(record)
                    finalized += 1
        return finalized

    def check_in(self, session_id, attendee_id, status=AttendanceStatus.PRESENT, now=None, attendance_id=None):
        """
        Register an attendee in an active session.

        Returns:
            AttendanceRecord or None: None when the session has already ended

        Raises:
            InvalidInputError: If status is not present, late or absent
        """
        status = AttendanceStatus(status)
        if status == AttendanceStatus.LEFT_EARLY:
            raise InvalidInputError("an attendee cannot check in as left_early")
        now = self.clock() if now is None else now
        session = self.refresh(session_id, now)
        if session.is_ended:
            logger.info("Check-in for %s ignored: session %s already ended", attendee_id, session_id)
            return None

        for existing in self.repository.list_attendance(session_id):
            if existing.attendee_id == attendee_id:
                return existing

        record = AttendanceRecord(
            id=attendance_id or uuid.uuid4().hex,
            attendee_id=attendee_id,
            session_id=session_id,
            status=status,
            check_in_time=now if status in TRACKED_STATUSES else None,
            last_valid_at=now if status in TRACKED_STATUSES else None,
        )
        self.repository.save_attendance(record)
        return record

    def mark_absent(self, session_id, attendee_id, now=None, attendance_id=None):
        """Register an attendee who never checked in."""
        return self.check_in(session_id, attendee_id, AttendanceStatus.ABSENT, now, attendance_id)

    def statistics(self, session_id):
        return compute_statistics(self.repository.list_attendance(session_id))

"""Tests for the heartbeat-driven attendance state machine."""

import threading
from unittest.mock import Mock

import pytest

from attendance_tracker.attendance.heartbeat import HeartbeatProcessor, is_duplicate, transition
from attendance_tracker.attendance.models import AttendanceRecord, AttendanceStatus, SessionState
from attendance_tracker.attendance.notifier import STATUS_CHANGED
from attendance_tracker.errors import (
    InvalidInputError,
    InvalidTransitionError,
    RecordNotFoundError,
    RepositoryError,
)

from conftest import CLASSROOM_LAT, CLASSROOM_LON


class TestViolationDebounce:
    """Two consecutive out-of-bounds heartbeats mark left_early."""

    def test_single_violation_keeps_present(self, processor, repository, attendance, make_heartbeat):
        response = processor.process(make_heartbeat(distance=200.0))

        assert not response.location_valid
        assert not response.status_changed
        assert response.distance == pytest.approx(200.0, abs=0.5)
        assert response.allowed_radius == 30.0
        record = repository.get_attendance(attendance.id)
        assert record.status == AttendanceStatus.PRESENT
        assert record.consecutive_violations == 1

    def test_second_violation_marks_left_early(self, processor, repository, attendance, make_heartbeat,
                                               clock, notifications):
        processor.process(make_heartbeat(distance=200.0))
        clock.advance(30)
        response = processor.process(make_heartbeat(distance=200.0))

        assert response.status_changed
        assert response.new_status == AttendanceStatus.LEFT_EARLY
        record = repository.get_attendance(attendance.id)
        assert record.status == AttendanceStatus.LEFT_EARLY
        assert record.check_out_time == clock()

        status_events = [p for e, p in notifications if e == STATUS_CHANGED]
        assert len(status_events) == 1
        assert status_events[0]['previousStatus'] == 'present'
        assert status_events[0]['status'] == 'left_early'
        assert status_events[0]['attendanceId'] == attendance.id

    def test_in_bounds_resets_counter(self, processor, repository, attendance, make_heartbeat, clock):
        processor.process(make_heartbeat(distance=200.0))
        clock.advance(30)
        response = processor.process(make_heartbeat(distance=5.0))
        clock.advance(30)
        processor.process(make_heartbeat(distance=200.0))

        assert response.location_valid
        record = repository.get_attendance(attendance.id)
        assert record.status == AttendanceStatus.PRESENT
        assert record.consecutive_violations == 1
        assert record.last_valid_at == clock() - 30

    def test_late_attendee_can_leave_early(self, processor, sessions, session, repository, make_heartbeat, clock):
        record = sessions.check_in(session.id, 'student-2', status=AttendanceStatus.LATE, attendance_id='late-1')
        processor.process(make_heartbeat(distance=200.0, attendance_id=record.id))
        clock.advance(30)
        processor.process(make_heartbeat(distance=200.0, attendance_id=record.id))
        assert repository.get_attendance(record.id).status == AttendanceStatus.LEFT_EARLY

    def test_left_early_is_terminal(self, processor, repository, attendance, make_heartbeat, clock):
        processor.process(make_heartbeat(distance=200.0))
        processor.process(make_heartbeat(distance=200.0))
        clock.advance(30)
        response = processor.process(make_heartbeat(distance=0.0))

        assert not response.status_changed
        assert repository.get_attendance(attendance.id).status == AttendanceStatus.LEFT_EARLY
        assert processor.get_statistics()['ignored'] == 1

    def test_every_processed_heartbeat_is_logged(self, processor, repository, attendance, make_heartbeat):
        processor.process(make_heartbeat(distance=5.0))
        processor.process(make_heartbeat(distance=200.0))
        logs = repository.recent_location_logs(attendance.id)
        assert [entry.within_bounds for entry in logs] == [True, False]
        assert logs[1].distance == pytest.approx(200.0, abs=0.5)
        assert logs[1].metadata['effectiveDistance'] == pytest.approx(logs[1].distance - logs[1].accuracy)


class TestDeduplication:
    """Retried heartbeats count once."""

    def test_identical_retry_is_duplicate(self, processor, repository, attendance, make_heartbeat):
        request = make_heartbeat(distance=200.0)
        processor.process(request)
        response = processor.process(request)

        assert response.duplicate
        assert repository.get_attendance(attendance.id).consecutive_violations == 1
        assert len(repository.recent_location_logs(attendance.id)) == 1

    def test_older_heartbeat_is_duplicate(self, processor, attendance, make_heartbeat, clock):
        processor.process(make_heartbeat(distance=5.0, timestamp=clock() + 10, attempt=5))
        response = processor.process(make_heartbeat(distance=200.0, timestamp=clock(), attempt=6))
        assert response.duplicate

    def test_same_timestamp_newer_attempt_counts(self, processor, repository, attendance, make_heartbeat, clock):
        processor.process(make_heartbeat(distance=200.0, timestamp=clock(), attempt=1))
        response = processor.process(make_heartbeat(distance=200.0, timestamp=clock(), attempt=2))
        assert not response.duplicate
        assert response.status_changed

    def test_is_duplicate_without_history(self, make_heartbeat):
        record = AttendanceRecord(id='a', attendee_id='s', session_id='session-1')
        assert not is_duplicate(record, make_heartbeat())


class TestLowAccuracyAndMissingLocation:
    """Heartbeats that cannot be validated never change status."""

    def test_low_accuracy_does_not_count(self, processor, repository, attendance, make_heartbeat):
        response = processor.process(make_heartbeat(distance=200.0, accuracy=150.0))
        processor.process(make_heartbeat(distance=200.0, accuracy=150.0))

        assert response.low_accuracy
        assert not response.location_valid
        record = repository.get_attendance(attendance.id)
        assert record.status == AttendanceStatus.PRESENT
        assert record.consecutive_violations == 0
        assert all(entry.low_accuracy for entry in repository.recent_location_logs(attendance.id))

    def test_session_without_location(self, processor, sessions, repository, make_heartbeat):
        session = sessions.create_session(None, session_id='no-room')
        record = sessions.check_in(session.id, 'student-9', attendance_id='no-room-1')

        for _ in range(3):
            response = processor.process(
                make_heartbeat(distance=5000.0, attendance_id=record.id, session_id=session.id))

        assert response.distance is None
        assert repository.get_attendance(record.id).status == AttendanceStatus.PRESENT
        assert len(repository.recent_location_logs(record.id)) == 3

    def test_zero_radius_is_rejected(self, processor, sessions, repository, make_heartbeat, clock):
        repository.save_session(SessionState(id='zero', created_at=clock(), auto_end_at=clock() + 7200,
                                             latitude=CLASSROOM_LAT, longitude=CLASSROOM_LON, radius=0.0))
        record = sessions.check_in('zero', 'student-9', attendance_id='zero-1')

        with pytest.raises(InvalidInputError):
            processor.process(make_heartbeat(distance=80.0, attendance_id=record.id, session_id='zero'))

        assert repository.get_attendance(record.id).consecutive_violations == 0
        assert repository.recent_location_logs(record.id) == []


class TestSessionEnd:
    """Heartbeats after the session ended are no-ops."""

    def test_heartbeat_after_manual_end(self, processor, sessions, session, repository, attendance,
                                        make_heartbeat):
        sessions.end_session(session.id)
        before = repository.get_attendance(attendance.id)

        response = processor.process(make_heartbeat(distance=200.0))
        processor.process(make_heartbeat(distance=200.0))

        assert response.session_ended
        assert repository.get_attendance(attendance.id) == before
        assert repository.recent_location_logs(attendance.id) == []

    def test_heartbeat_triggers_auto_end(self, processor, session, repository, attendance, make_heartbeat,
                                         clock):
        clock.advance(2 * 3600)
        response = processor.process(make_heartbeat(distance=200.0))

        assert response.session_ended
        ended = repository.get_session(session.id)
        assert ended.is_ended
        assert ended.end_reason == 'auto'
        record = repository.get_attendance(attendance.id)
        assert record.status == AttendanceStatus.PRESENT
        assert record.check_out_time == clock()


class TestErrors:
    """Invalid requests and collaborator failures."""

    def test_invalid_coordinates(self, processor, attendance, make_heartbeat):
        request = make_heartbeat()
        request.latitude = float('nan')
        with pytest.raises(InvalidInputError):
            processor.process(request)

    def test_negative_accuracy(self, processor, attendance, make_heartbeat):
        with pytest.raises(InvalidInputError):
            processor.process(make_heartbeat(accuracy=-1.0))

    def test_not_a_request(self, processor):
        with pytest.raises(InvalidInputError):
            processor.process({'latitude': 0.0})

    def test_unknown_attendance(self, processor, session, make_heartbeat):
        with pytest.raises(RecordNotFoundError):
            processor.process(make_heartbeat(attendance_id='missing'))

    def test_session_mismatch(self, processor, sessions, attendance, make_heartbeat):
        other = sessions.create_session(None, session_id='session-2')
        with pytest.raises(InvalidInputError):
            processor.process(make_heartbeat(session_id=other.id))

    def test_repository_failure_changes_nothing(self, processor, repository, attendance, make_heartbeat,
                                                monkeypatch):
        processor.process(make_heartbeat(distance=200.0))
        monkeypatch.setattr(repository, 'record_heartbeat', Mock(side_effect=RepositoryError('db down')))

        with pytest.raises(RepositoryError):
            processor.process(make_heartbeat(distance=200.0))

        record = repository.get_attendance(attendance.id)
        assert record.status == AttendanceStatus.PRESENT
        assert record.consecutive_violations == 1

    def test_notifier_failure_does_not_block_transition(self, repository, sessions, config, attendance,
                                                        make_heartbeat, clock):
        notifier = Mock()
        notifier.publish.side_effect = ConnectionError('push service down')
        processor = HeartbeatProcessor(repository, sessions, config.heartbeat, notifier=notifier, clock=clock)

        processor.process(make_heartbeat(distance=200.0))
        response = processor.process(make_heartbeat(distance=200.0))

        assert response.status_changed
        assert repository.get_attendance(attendance.id).status == AttendanceStatus.LEFT_EARLY
        notifier.publish.assert_called_once()


class TestTransitions:
    """Status graph."""

    @pytest.mark.parametrize("start,target", [
        (AttendanceStatus.PRESENT, AttendanceStatus.LATE),
        (AttendanceStatus.PRESENT, AttendanceStatus.LEFT_EARLY),
        (AttendanceStatus.LATE, AttendanceStatus.LEFT_EARLY),
    ])
    def test_allowed(self, start, target):
        record = AttendanceRecord(id='a', attendee_id='s', session_id='x', status=start)
        transition(record, target, now=10.0)
        assert record.status == target

    @pytest.mark.parametrize("start,target", [
        (AttendanceStatus.LEFT_EARLY, AttendanceStatus.PRESENT),
        (AttendanceStatus.LATE, AttendanceStatus.PRESENT),
        (AttendanceStatus.ABSENT, AttendanceStatus.PRESENT),
        (AttendanceStatus.ABSENT, AttendanceStatus.LEFT_EARLY),
        (AttendanceStatus.PRESENT, AttendanceStatus.ABSENT),
    ])
    def test_rejected(self, start, target):
        record = AttendanceRecord(id='a', attendee_id='s', session_id='x', status=start)
        with pytest.raises(InvalidTransitionError):
            transition(record, target, now=10.0)
        assert record.status == start

    def test_mark_late(self, processor, repository, attendance, notifications):
        record = processor.mark_late(attendance.id)
        assert record.status == AttendanceStatus.LATE
        assert repository.get_attendance(attendance.id).status == AttendanceStatus.LATE
        assert notifications[-1][0] == STATUS_CHANGED

        with pytest.raises(InvalidTransitionError):
            processor.mark_late(attendance.id)


class TestConcurrency:
    """One writer per attendance record."""

    def test_concurrent_heartbeats_are_serialized(self, processor, repository, attendance, make_heartbeat,
                                                  notifications):
        requests = [make_heartbeat(distance=200.0, timestamp=1_700_000_000.0 + i, attempt=i + 1)
                    for i in range(20)]
        barrier = threading.Barrier(len(requests))

        def send(request):
            barrier.wait()
            processor.process(request)

        threads = [threading.Thread(target=send, args=(r,)) for r in requests]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        stats = processor.get_statistics()
        assert stats['processed'] + stats['duplicates'] + stats['ignored'] == 20
        assert len(repository.recent_location_logs(attendance.id)) == stats['processed']
        status_events = [e for e, _ in notifications if e == STATUS_CHANGED]
        assert len(status_events) <= 1
        record = repository.get_attendance(attendance.id)
        if stats['processed'] >= 2:
            assert record.status == AttendanceStatus.LEFT_EARLY

    def test_counters_across_records(self, processor, sessions, session, make_heartbeat):
        requests = []
        for i in range(16):
            record = sessions.check_in(session.id, f'student-{i}', attendance_id=f'a-{i}')
            requests.append(make_heartbeat(distance=5.0, attendance_id=record.id))
        barrier = threading.Barrier(len(requests))

        def send(request):
            barrier.wait()
            processor.process(request)

        threads = [threading.Thread(target=send, args=(r,)) for r in requests]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert processor.get_statistics()['processed'] == 16

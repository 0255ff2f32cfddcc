"""Tests for cascading GPS acquisition and the per-device event pipeline."""

import subprocess
from unittest.mock import Mock

import orjson
import pytest

from attendance_tracker.config import LocationConfig, PipelineConfig, get_preset
from attendance_tracker.errors import LocationUnavailableError
from attendance_tracker.fusion import FusionEngine
from attendance_tracker.models import GPSFix
from attendance_tracker.sensors.location import CACHED, LocationAcquirer
from attendance_tracker.sensors.pipeline import DevicePipeline

from conftest import CLASSROOM_LAT, CLASSROOM_LON, FakeClock, make_fix, walking_frames


def termux_output(accuracy=8.0, latitude=CLASSROOM_LAT, longitude=CLASSROOM_LON):
    payload = {'latitude': latitude, 'longitude': longitude, 'accuracy': accuracy,
               'altitude': 50.0, 'bearing': 0.0, 'speed': 0.0}
    return subprocess.CompletedProcess(args=[], returncode=0, stdout=orjson.dumps(payload).decode())


def failed_output():
    return subprocess.CompletedProcess(args=[], returncode=1, stdout='')


@pytest.fixture
def fake_clock():
    return FakeClock(start=1000.0)


class TestLocationAcquirer:
    """gps -> network -> cached cascade."""

    def test_high_accuracy_fix(self, fake_clock):
        runner = Mock(return_value=termux_output(accuracy=8.0))
        acquirer = LocationAcquirer(runner=runner, clock=fake_clock)

        fix = acquirer.acquire()

        assert fix.provider == 'gps'
        assert fix.accuracy == 8.0
        assert fix.timestamp == 1000.0
        runner.assert_called_once_with(['termux-location', '-p', 'gps'],
                                       capture_output=True, text=True, timeout=15.0)

    def test_low_quality_gps_falls_back_to_network(self, fake_clock):
        runner = Mock(side_effect=[termux_output(accuracy=150.0), termux_output(accuracy=40.0)])
        acquirer = LocationAcquirer(runner=runner, clock=fake_clock)

        fix = acquirer.acquire()

        assert fix.provider == 'network'
        assert acquirer.low_quality_rejections == 1
        assert runner.call_args_list[1].args[0] == ['termux-location', '-p', 'network']
        assert runner.call_args_list[1].kwargs['timeout'] == 10.0

    def test_timeout_falls_back_to_network(self, fake_clock):
        runner = Mock(side_effect=[subprocess.TimeoutExpired('termux-location', 15), termux_output()])
        acquirer = LocationAcquirer(runner=runner, clock=fake_clock)

        assert acquirer.acquire().provider == 'network'
        assert acquirer.get_health_status()['requests_timeout']['gps'] == 1

    def test_malformed_output_falls_back(self, fake_clock):
        garbage = subprocess.CompletedProcess(args=[], returncode=0, stdout='{"latitude": ')
        runner = Mock(side_effect=[garbage, termux_output()])
        acquirer = LocationAcquirer(runner=runner, clock=fake_clock)
        assert acquirer.acquire().provider == 'network'

    def test_cached_fix_when_providers_fail(self, fake_clock):
        runner = Mock(side_effect=[termux_output(), failed_output(), failed_output()])
        acquirer = LocationAcquirer(runner=runner, clock=fake_clock)
        first = acquirer.acquire()

        fake_clock.advance(20.0)
        fix = acquirer.acquire()

        assert fix.provider == CACHED
        assert fix.latitude == first.latitude
        assert fix.timestamp == first.timestamp
        assert acquirer.cache_hits == 1

    def test_stale_cache_raises(self, fake_clock):
        runner = Mock(side_effect=[termux_output(), failed_output(), failed_output()])
        acquirer = LocationAcquirer(LocationConfig(max_cached_age=60.0), runner=runner, clock=fake_clock)
        acquirer.acquire()

        fake_clock.advance(61.0)
        with pytest.raises(LocationUnavailableError):
            acquirer.acquire()
        assert acquirer.failures == 1

    def test_maximum_age_override(self, fake_clock):
        runner = Mock(side_effect=[termux_output(), failed_output(), failed_output()])
        acquirer = LocationAcquirer(runner=runner, clock=fake_clock)
        acquirer.acquire()

        fake_clock.advance(45.0)
        with pytest.raises(LocationUnavailableError):
            acquirer.acquire(maximum_age=30.0)

    def test_missing_command(self, fake_clock):
        runner = Mock(side_effect=FileNotFoundError('termux-location'))
        acquirer = LocationAcquirer(runner=runner, clock=fake_clock)
        with pytest.raises(LocationUnavailableError):
            acquirer.acquire()
        assert acquirer.get_health_status()['success_rate'] == 0.0


class TestDevicePipeline:
    """Bounded queue feeding one fusion engine."""

    @pytest.fixture
    def engine(self):
        engine = FusionEngine(get_preset('default'))
        engine.start_session()
        return engine

    def test_drops_when_full(self, engine):
        pipeline = DevicePipeline(engine, PipelineConfig(max_queue_size=2))
        assert pipeline.submit(make_fix(timestamp=0.0))
        assert pipeline.submit(make_fix(timestamp=1.0))
        assert not pipeline.submit(make_fix(timestamp=2.0))

        health = pipeline.get_health_status()
        assert health['dropped'] == 1
        assert health['queue_size'] == 2

    def test_drain_processes_in_order(self, engine):
        pipeline = DevicePipeline(engine)
        received = []
        pipeline.subscribe(received.append)

        pipeline.submit(make_fix(timestamp=0.0))
        pipeline.submit(make_fix(timestamp=1.0))
        positions = pipeline.drain()

        assert [p.timestamp for p in positions] == [0.0, 1.0]
        assert received == positions
        assert pipeline.get_health_status()['published'] == 2

    def test_inertial_frames_without_output(self, engine):
        pipeline = DevicePipeline(engine)
        for frame in walking_frames(2):
            pipeline.submit(frame)
        assert pipeline.drain() == []
        assert pipeline.processed == len(walking_frames(2))
        assert engine.get_statistics()['steps'] == 2

    def test_invalid_events_rejected(self, engine):
        pipeline = DevicePipeline(engine)
        pipeline.submit(GPSFix(float('nan'), CLASSROOM_LON, 10.0, 0.0))
        pipeline.submit('not an event')
        pipeline.submit(make_fix(timestamp=1.0))

        positions = pipeline.drain()

        assert len(positions) == 1
        assert pipeline.rejected == 2

    def test_unsubscribe(self, engine):
        pipeline = DevicePipeline(engine)
        received = []
        pipeline.subscribe(received.append)
        pipeline.unsubscribe(received.append)
        pipeline.submit(make_fix())
        pipeline.drain()
        assert received == []

    def test_worker_thread(self, engine):
        pipeline = DevicePipeline(engine, PipelineConfig(poll_timeout=0.01), device_id='phone-1')
        received = []
        pipeline.subscribe(received.append)
        pipeline.start()
        try:
            for i in range(5):
                pipeline.submit(make_fix(timestamp=float(i)))
            pipeline.queue.join()
        finally:
            pipeline.stop()

        assert len(received) == 5
        assert not pipeline.get_health_status()['running']

    def test_worker_survives_subscriber_failure(self, engine):
        pipeline = DevicePipeline(engine, PipelineConfig(poll_timeout=0.01))
        pipeline.subscribe(Mock(side_effect=RuntimeError('boom')))
        pipeline.start()
        try:
            pipeline.submit(make_fix(timestamp=0.0))
            pipeline.submit(make_fix(timestamp=1.0))
            pipeline.queue.join()
        finally:
            pipeline.stop()
        assert engine.get_statistics()['gps_updates'] == 2

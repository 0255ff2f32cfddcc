"""Tests for the GPS noise filter and complementary weighting."""

import numpy as np
import pytest

from attendance_tracker.config import FusionConfig, GPSFilterConfig
from attendance_tracker.errors import InvalidInputError
from attendance_tracker.filters.complementary import ComplementaryWeighting
from attendance_tracker.filters.gps_kalman import GPSNoiseFilter, average_fixes
from attendance_tracker.models import GPSFix

from conftest import CLASSROOM_LAT, CLASSROOM_LON, make_fix


class TestGPSNoiseFilter:
    """Per-axis Kalman smoothing."""

    def test_measurement_noise_by_accuracy(self):
        gps_filter = GPSNoiseFilter()
        assert gps_filter.measurement_noise(5.0) == 0.01
        assert gps_filter.measurement_noise(30.0) == 0.01
        assert gps_filter.measurement_noise(45.0) == 0.03
        assert gps_filter.measurement_noise(50.0) == 0.03
        assert gps_filter.measurement_noise(80.0) == 0.05

    def test_first_fix_passes_through(self):
        gps_filter = GPSNoiseFilter()
        result = gps_filter.update(make_fix(accuracy=12.0, timestamp=1.0))
        assert result.latitude == pytest.approx(CLASSROOM_LAT)
        assert result.longitude == pytest.approx(CLASSROOM_LON)
        assert result.sample_count == 1

    def test_output_variance_lower_than_input(self):
        """Repeated noisy fixes of a fixed point come out less scattered."""
        rng = np.random.default_rng(42)
        gps_filter = GPSNoiseFilter()
        noise = rng.normal(0.0, 0.0002, size=(200, 2))

        raw, smoothed = [], []
        for i, (dlat, dlon) in enumerate(noise):
            fix = GPSFix(CLASSROOM_LAT + dlat, CLASSROOM_LON + dlon, 15.0, float(i))
            result = gps_filter.update(fix)
            raw.append((fix.latitude, fix.longitude))
            smoothed.append((result.latitude, result.longitude))

        raw = np.array(raw[5:])
        smoothed = np.array(smoothed[5:])
        assert np.var(smoothed[:, 0]) < np.var(raw[:, 0])
        assert np.var(smoothed[:, 1]) < np.var(raw[:, 1])

    def test_alternating_noise_is_damped(self):
        gps_filter = GPSNoiseFilter()
        for i in range(10):
            sign = 1 if i % 2 == 0 else -1
            fix = GPSFix(CLASSROOM_LAT + sign * 1e-4, CLASSROOM_LON, 10.0, float(i))
            result = gps_filter.update(fix)
            if i >= 5:
                assert abs(result.latitude - CLASSROOM_LAT) < 1e-4

    def test_confidence_saturates(self):
        gps_filter = GPSNoiseFilter()
        confidences = [gps_filter.update(make_fix(accuracy=10.0, timestamp=float(i))).confidence
                       for i in range(7)]
        assert confidences[0] == pytest.approx(0.2 * 0.6 + 0.4)
        assert confidences[4] == pytest.approx(1.0)
        assert confidences[6] == pytest.approx(1.0)

    def test_poor_accuracy_lowers_confidence(self):
        gps_filter = GPSNoiseFilter()
        for i in range(5):
            result = gps_filter.update(make_fix(accuracy=100.0, timestamp=float(i)))
        assert result.confidence == pytest.approx(0.6 + 0.5 * 0.4)

    def test_reported_accuracy_improves(self):
        gps_filter = GPSNoiseFilter(GPSFilterConfig(accuracy_scale=0.7))
        result = gps_filter.update(make_fix(accuracy=20.0))
        assert result.accuracy == pytest.approx(14.0)

    def test_reset_clears_state(self):
        gps_filter = GPSNoiseFilter()
        gps_filter.update(make_fix(timestamp=0.0))
        gps_filter.update(make_fix(north=5.0, timestamp=1.0))
        gps_filter.reset()

        state = gps_filter.get_state()
        assert state['sample_count'] == 0
        assert state['latitude'] is None

        # No leakage: the next fix is taken as-is
        result = gps_filter.update(make_fix(north=500.0, timestamp=2.0))
        assert result.sample_count == 1
        assert result.latitude == pytest.approx(make_fix(north=500.0).latitude)

    def test_invalid_fix_rejected(self):
        gps_filter = GPSNoiseFilter()
        with pytest.raises(InvalidInputError):
            gps_filter.update(GPSFix(float('nan'), CLASSROOM_LON, 10.0, 0.0))
        with pytest.raises(InvalidInputError):
            gps_filter.update(GPSFix(CLASSROOM_LAT, CLASSROOM_LON, -1.0, 0.0))
        with pytest.raises(InvalidInputError):
            gps_filter.update({'latitude': CLASSROOM_LAT})
        assert gps_filter.get_state()['sample_count'] == 0


class TestAverageFixes:
    """Inverse-variance averaging of stationary fixes."""

    def test_precise_fix_dominates(self):
        precise = make_fix(north=0.0, accuracy=5.0, timestamp=1.0)
        coarse = make_fix(north=100.0, accuracy=50.0, timestamp=2.0)
        combined = average_fixes([precise, coarse])
        assert abs(combined.latitude - precise.latitude) < abs(combined.latitude - coarse.latitude)
        assert combined.accuracy < 5.0
        assert combined.timestamp == 2.0

    def test_empty_list_raises(self):
        with pytest.raises(InvalidInputError):
            average_fixes([])


class TestComplementaryWeighting:
    """GPS/PDR weight computation."""

    def test_profiles(self):
        weighting = ComplementaryWeighting()
        assert weighting.profile_for('outdoor')[1].gps_weight == 0.7
        assert weighting.profile_for('indoor')[1].gps_weight == 0.5
        assert weighting.profile_for('unknown')[0] == 'outdoor'

    def test_base_weight_with_perfect_sources(self):
        weighting = ComplementaryWeighting()
        weights = weighting.weights('outdoor', 10.0, 1.0, 0.0)
        assert weights.gps == pytest.approx(0.7)
        assert weights.pdr == pytest.approx(0.3)
        assert not weights.anomaly

    def test_poor_gps_shifts_weight_to_pdr(self):
        weighting = ComplementaryWeighting()
        good = weighting.weights('outdoor', 10.0, 1.0, 0.0).gps
        poor = weighting.weights('outdoor', 60.0, 1.0, 0.0).gps
        assert poor < good

    def test_gps_quality_floor(self):
        weighting = ComplementaryWeighting()
        assert weighting.gps_quality(20.0) == 1.0
        assert weighting.gps_quality(1000.0) == pytest.approx(0.1)

    def test_stale_pdr_shifts_weight_to_gps(self):
        weighting = ComplementaryWeighting()
        fresh = weighting.weights('indoor', 10.0, 1.0, 0.0).gps
        stale = weighting.weights('indoor', 10.0, 1.0, 5.0).gps
        assert stale > fresh

    def test_disagreement_caps_gps_weight(self):
        weighting = ComplementaryWeighting(FusionConfig())
        outdoor = weighting.weights('outdoor', 10.0, 1.0, 0.0, disagreement=30.0)
        assert outdoor.anomaly
        assert outdoor.gps == pytest.approx(0.3)

        indoor_below = weighting.weights('indoor', 10.0, 1.0, 0.0, disagreement=19.0)
        indoor_above = weighting.weights('indoor', 10.0, 1.0, 0.0, disagreement=21.0)
        assert not indoor_below.anomaly
        assert indoor_above.anomaly

    def test_pdr_accuracy_grows_and_caps(self):
        weighting = ComplementaryWeighting()
        assert weighting.pdr_accuracy(0.0) == 5.0
        assert weighting.pdr_accuracy(10.0) == 10.0
        assert weighting.pdr_accuracy(1000.0) == 50.0

"""
FusionEngine - GPS + pedestrian dead reckoning fusion.

Combines the Kalman-smoothed GPS position with the dead-reckoning position
of the same device. Both are expressed in a local tangent plane anchored at
the last recalibration point (1° latitude = 111,320 m, 1° longitude =
111,320·cos(lat) m) and blended with environment-aware weights.

Recalibration moves the anchor to the current filtered fix, resets the
dead-reckoning position and confidence, and adopts the GPS course as heading
when the fix carries one. It happens only while GPS is trustworthy:
- 'initial':  first fix of the session
- 'error':    GPS/PDR disagreement above the error threshold
- 'periodic': recalibration interval elapsed

Degraded modes:
- gps-only: inertial sensors unavailable
- pdr-only: GPS silent for longer than gps_timeout
"""

import logging
import threading

from .config import TrackerConfig
from .environment import EnvironmentDetector
from .errors import InvalidInputError
from .filters.complementary import ComplementaryWeighting
from .filters.gps_kalman import GPSNoiseFilter
from .filters.utils import bearing_to_heading, haversine_distance, latlon_to_meters, meters_to_latlon
from .models import FUSION, GPS_ONLY, PDR_ONLY, FusedPosition, GPSFix, InertialFrame
from .pdr.tracker import DeadReckoningTracker

logger = logging.getLogger(__name__)


class FusionEngine:
    """
    Per-device location estimator.

    Args:
        config (TrackerConfig): Full configuration (defaults if None)
        gps_filter (GPSNoiseFilter, optional): Replaces the default filter
        tracker (DeadReckoningTracker, optional): Replaces the default tracker
        environment (EnvironmentDetector, optional): Replaces the default detector
    """

    def __init__(self, config=None, gps_filter=None, tracker=None, environment=None):
        self.config = config or TrackerConfig()
        self.config.validate()

        self.gps_filter = gps_filter or GPSNoiseFilter(self.config.gps_filter)
        self.tracker = tracker or DeadReckoningTracker.from_config(self.config)
        self.environment = environment or EnvironmentDetector(self.config.environment)
        self.weighting = ComplementaryWeighting(self.config.fusion)
        self.recalibration = self.config.recalibration

        self.anchor = None  # (latitude, longitude) of the last recalibration
        self.last_recalibration_time = None
        self.last_gps_time = None
        self.last_position = None

        # Statistics
        self._reset_statistics()

        # Thread safety
        self.lock = threading.Lock()

    def _reset_statistics(self):
        self.gps_update_count = 0
        self.step_count = 0
        self.fusion_count = 0
        self.anomaly_count = 0
        self.recalibrations = {'initial': 0, 'error': 0, 'periodic': 0}
        self.gps_weight_sum = 0.0
        self.gps_accuracy_sum = 0.0
        self.fused_accuracy_sum = 0.0

    @property
    def pdr_available(self):
        return self.tracker.available

    def initialize_inertial(self, probe=None):
        """Probe inertial sensors; on failure the engine runs GPS-only."""
        available = self.tracker.initialize(probe)
        if not available:
            logger.warning("Inertial sensors unavailable, fusion degraded to GPS-only")
        return available

    def start_session(self):
        """Drop all state so nothing leaks from a previous attendance session."""
        with self.lock:
            self.gps_filter.reset()
            self.tracker.reset()
            self.environment.reset()
            self.anchor = None
            self.last_recalibration_time = None
            self.last_gps_time = None
            self.last_position = None
            self._reset_statistics()

    def _to_local(self, latitude, longitude):
        return latlon_to_meters(latitude, longitude, self.anchor[0], self.anchor[1],
                                self.config.fusion.meters_per_degree)

    def _to_geo(self, x, y):
        return meters_to_latlon(x, y, self.anchor[0], self.anchor[1],
                                self.config.fusion.meters_per_degree)

    def _gps_trusted(self, accuracy):
        return accuracy <= self.recalibration.max_gps_accuracy

    def _course_heading(self, fix):
        if fix.bearing is None:
            return None
        if fix.speed is not None and fix.speed < self.recalibration.min_course_speed:
            return None
        return bearing_to_heading(fix.bearing)

    def _recalibrate(self, filtered, fix, reason):
        self.anchor = (filtered.latitude, filtered.longitude)
        self.tracker.reset_position(0.0, 0.0, heading=self._course_heading(fix), timestamp=fix.timestamp)
        self.last_recalibration_time = fix.timestamp
        self.recalibrations[reason] += 1
        logger.info("PDR recalibrated (%s) at (%.6f, %.6f) acc=%.1fm",
                    reason, filtered.latitude, filtered.longitude, fix.accuracy)

    def _emit(self, position):
        self.last_position = position
        self.fusion_count += 1
        self.gps_weight_sum += position.gps_weight
        self.fused_accuracy_sum += position.accuracy
        return position

    def update_gps(self, fix):
        """
        Fuse a new GPS fix.

        Args:
            fix (GPSFix): Raw fix

        Returns:
            FusedPosition: Current best estimate

        Raises:
            InvalidInputError: If the fix is malformed (NaN, out of range, negative accuracy)
        """
        if not isinstance(fix, GPSFix):
            raise InvalidInputError(f"expected GPSFix, got {type(fix).__name__}")
        fix.validate()

        with self.lock:
            timestamp = fix.timestamp
            filtered = self.gps_filter.update(fix)
            environment = self.environment.update(fix.accuracy, timestamp)
            self.gps_update_count += 1
            self.gps_accuracy_sum += fix.accuracy
            self.last_gps_time = timestamp

            if self.anchor is None:
                self._recalibrate(filtered, fix, 'initial')
                return self._emit(FusedPosition(
                    latitude=filtered.latitude, longitude=filtered.longitude,
                    accuracy=filtered.accuracy, gps_weight=1.0, timestamp=timestamp,
                    tracking_mode=GPS_ONLY, environment=environment,
                    confidence=filtered.confidence, recalibrated='initial',
                ))

            if not self.tracker.available:
                return self._emit(FusedPosition(
                    latitude=filtered.latitude, longitude=filtered.longitude,
                    accuracy=filtered.accuracy, gps_weight=1.0, timestamp=timestamp,
                    tracking_mode=GPS_ONLY, environment=environment,
                    confidence=filtered.confidence,
                ))

            pdr = self.tracker.get_position()
            pdr_lat, pdr_lon = self._to_geo(pdr.x, pdr.y)
            disagreement = haversine_distance(filtered.latitude, filtered.longitude, pdr_lat, pdr_lon)
            elapsed = max(0.0, timestamp - self.last_recalibration_time)

            weights = self.weighting.weights(environment, fix.accuracy, pdr.confidence,
                                             elapsed / 3600.0, disagreement)
            if weights.anomaly:
                self.anomaly_count += 1
                logger.warning("Fusion anomaly: GPS/PDR disagree by %.1fm (acc %.1fm, %s)",
                               disagreement, fix.accuracy, environment)

            reason = None
            if self._gps_trusted(fix.accuracy):
                if disagreement > self.recalibration.error_threshold:
                    reason = 'error'
                elif elapsed >= self.recalibration.interval:
                    reason = 'periodic'

            if reason == 'error':
                # GPS is good enough to correct PDR: trust it outright
                self._recalibrate(filtered, fix, reason)
                latitude, longitude = filtered.latitude, filtered.longitude
                gps_weight = 1.0
                accuracy = filtered.accuracy
            else:
                gps_weight = weights.gps
                gps_x, gps_y = self._to_local(filtered.latitude, filtered.longitude)
                x = self.weighting.blend(gps_x, pdr.x, gps_weight)
                y = self.weighting.blend(gps_y, pdr.y, gps_weight)
                latitude, longitude = self._to_geo(x, y)
                pdr_accuracy = self.weighting.pdr_accuracy(elapsed / 60.0)
                accuracy = self.weighting.blend(filtered.accuracy, pdr_accuracy, gps_weight)
                if reason == 'periodic':
                    self._recalibrate(filtered, fix, reason)

            confidence = self.weighting.blend(filtered.confidence, weights.pdr_factor, gps_weight)
            return self._emit(FusedPosition(
                latitude=latitude, longitude=longitude, accuracy=accuracy,
                gps_weight=gps_weight, timestamp=timestamp, tracking_mode=FUSION,
                environment=environment, confidence=confidence, anomaly=weights.anomaly,
                disagreement=disagreement, recalibrated=reason,
            ))

    def update_inertial(self, frame):
        """
        Feed an inertial frame to dead reckoning.

        Returns:
            FusedPosition or None: A pdr-only estimate when a step was taken
            while GPS has been silent for longer than gps_timeout

        Raises:
            InvalidInputError: If the frame is malformed
        """
        if not isinstance(frame, InertialFrame):
            raise InvalidInputError(f"expected InertialFrame, got {type(frame).__name__}")
        frame.validate()
        if not self.tracker.available:
            return None

        with self.lock:
            step = self.tracker.process_frame(frame)
            self.environment.check_timeout(frame.timestamp)
            if step is None:
                return None
            self.step_count += 1
            if self.anchor is None:
                return None

            stale = self.last_gps_time is None or frame.timestamp - self.last_gps_time > self.config.fusion.gps_timeout
            if not stale:
                return None

            pdr = self.tracker.get_position()
            latitude, longitude = self._to_geo(pdr.x, pdr.y)
            elapsed = max(0.0, frame.timestamp - self.last_recalibration_time)
            return self._emit(FusedPosition(
                latitude=latitude, longitude=longitude,
                accuracy=self.weighting.pdr_accuracy(elapsed / 60.0),
                gps_weight=0.0, timestamp=frame.timestamp, tracking_mode=PDR_ONLY,
                environment=self.environment.environment,
                confidence=pdr.confidence * self.weighting.pdr_factor(1.0, elapsed / 3600.0),
            ))

    @property
    def current_position(self):
        return self.last_position

    def get_statistics(self):
        """Get fusion statistics - thread safe"""
        with self.lock:
            fusions = self.fusion_count
            return {
                'gps_updates': self.gps_update_count,
                'steps': self.step_count,
                'fusions': fusions,
                'anomalies': self.anomaly_count,
                'recalibrations': dict(self.recalibrations),
                'total_recalibrations': sum(self.recalibrations.values()),
                'average_gps_weight': self.gps_weight_sum / fusions if fusions else 0.0,
                'average_gps_accuracy': (self.gps_accuracy_sum / self.gps_update_count
                                         if self.gps_update_count else None),
                'average_fused_accuracy': self.fused_accuracy_sum / fusions if fusions else None,
                'pdr_available': self.tracker.available,
                'environment': self.environment.environment,
            }

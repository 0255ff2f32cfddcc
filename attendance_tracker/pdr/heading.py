"""
HeadingEstimator - gyroscope yaw integration with magnetometer correction.

Heading is expressed in the local frame used by dead reckoning: radians,
0 = east (+x), counter-clockwise positive, normalized to [0, 2π).

Key features:
- Yaw rate integration between frame timestamps (large gaps skipped)
- Periodic complementary blend toward the magnetometer heading
- Gyro bias estimated from the error growth between magnetometer blends
- Absolute resets via set_heading (GPS recalibration)
"""

import logging
import math
from collections import deque

import numpy as np

from ..config import HeadingConfig
from ..filters.utils import normalize_angle, wrap_angle

logger = logging.getLogger(__name__)


def magnetometer_heading(mx, my):
    """
    Heading of the device +x axis from the horizontal magnetic field.

    Magnetic north is taken as north (+y). Returns None when the horizontal
    field component vanishes.
    """
    if mx == 0 and my == 0:
        return None
    return normalize_angle(math.pi / 2 - math.atan2(my, mx))


class HeadingEstimator:
    """
    Tracks relative heading from gyroscope yaw rate.

    Integration drifts; when magnetometer readings are available the heading
    is pulled toward the magnetic heading every magnetometer_interval seconds:

        heading += (1 - gyro_weight) · wrap(mag_heading - heading)

    Args:
        config (HeadingConfig): Blend weight, intervals and drift limits
        initial_heading (float): Starting heading in radians
    """

    def __init__(self, config=None, initial_heading=0.0):
        self.config = config or HeadingConfig()
        self.config.validate()

        self.heading = normalize_angle(initial_heading)
        self.last_time = None
        self.last_calibration_time = None
        self.last_absolute_time = None

        # Heading error (gyro - mag) left over after the last blend
        self.residual = None
        self.drift_estimates = deque(maxlen=self.config.drift_window)
        self.drift_rate = 0.0  # rad/s, subtracted from the gyro rate

        self.calibration_count = 0
        self.skipped_gaps = 0

    def update(self, timestamp, yaw_rate=None, magnetometer=None):
        """
        Advance the heading to a new frame.

        Args:
            timestamp (float): Frame time in seconds
            yaw_rate (float, optional): Yaw rate (alpha) in deg/s
            magnetometer (tuple, optional): (x, y, z) magnetic field

        Returns:
            float: Current heading in radians
        """
        if self.last_absolute_time is None:
            self.last_absolute_time = timestamp

        if self.last_time is not None:
            dt = timestamp - self.last_time
            if dt <= 0:
                # Out-of-order or duplicate frame: nothing to integrate
                return self.heading
            if dt > self.config.max_gap:
                self.skipped_gaps += 1
            elif yaw_rate is not None:
                rate = math.radians(yaw_rate) - self.drift_rate
                self.heading = normalize_angle(self.heading + rate * dt)
        self.last_time = timestamp

        if magnetometer is not None and self.config.use_magnetometer:
            due = (self.last_calibration_time is None or
                   timestamp - self.last_calibration_time >= self.config.magnetometer_interval)
            if due:
                self._calibrate(magnetometer, timestamp)

        return self.heading

    def _calibrate(self, magnetometer, timestamp):
        mag_heading = magnetometer_heading(magnetometer[0], magnetometer[1])
        if mag_heading is None:
            return

        error = wrap_angle(self.heading - mag_heading)

        if self.residual is not None and self.last_calibration_time is not None:
            period = timestamp - self.last_calibration_time
            if period > 0:
                # Error growth since the last blend is the bias not yet compensated
                estimate = self.drift_rate + (error - self.residual) / period
                self.drift_estimates.append(estimate)
                limit = self.config.max_drift_rate
                self.drift_rate = float(np.clip(np.mean(self.drift_estimates), -limit, limit))

        alpha = self.config.gyro_weight
        self.heading = normalize_angle(self.heading - (1 - alpha) * error)
        self.residual = alpha * error

        self.last_calibration_time = timestamp
        self.last_absolute_time = timestamp
        self.calibration_count += 1
        logger.debug("Heading blend: mag=%.1f° error=%.1f° drift=%.4f rad/s",
                     math.degrees(mag_heading), math.degrees(error), self.drift_rate)

    def set_heading(self, heading, timestamp=None):
        """Absolute heading reset (radians), e.g. from the GPS course at recalibration."""
        self.heading = normalize_angle(heading)
        self.residual = None
        if timestamp is not None:
            self.last_absolute_time = timestamp
            self.last_calibration_time = timestamp

    def confidence(self, now=None):
        """Decays from 1.0 toward 0.5 with time since the last absolute heading."""
        if now is None:
            now = self.last_time
        if now is None or self.last_absolute_time is None:
            return 1.0
        elapsed = max(0.0, now - self.last_absolute_time)
        return max(0.5, math.exp(-elapsed / self.config.confidence_time_constant))

    def get_state(self):
        return {
            'heading': self.heading,
            'heading_degrees': math.degrees(self.heading),
            'confidence': self.confidence(),
            'drift_rate': self.drift_rate,
            'calibration_count': self.calibration_count,
            'skipped_gaps': self.skipped_gaps,
        }

    def reset(self, heading=0.0):
        self.heading = normalize_angle(heading)
        self.last_time = None
        self.last_calibration_time = None
        self.last_absolute_time = None
        self.residual = None
        self.drift_estimates.clear()
        self.drift_rate = 0.0
        self.calibration_count = 0
        self.skipped_gaps = 0

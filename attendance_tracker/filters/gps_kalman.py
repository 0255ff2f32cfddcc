"""
Per-axis Kalman filter for raw GPS fixes.

Latitude and longitude are smoothed independently by two 1-D linear Kalman
filters (random walk model). Process noise is fixed; measurement noise is
chosen per fix from the reported accuracy so coarse fixes are trusted less.
"""

import logging
import math
import threading
from dataclasses import dataclass

import numpy as np
from filterpy.kalman import KalmanFilter

from ..config import GPSFilterConfig
from ..errors import InvalidInputError
from ..models import GPSFix
from .base import PositionFilterBase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FilteredFix:
    latitude: float
    longitude: float
    accuracy: float  # meters, improved by smoothing
    confidence: float  # [0, 1]
    sample_count: int
    timestamp: float


class GPSNoiseFilter(PositionFilterBase):
    """
    Kalman smoothing of GPS latitude/longitude.

    Measurement noise R by reported accuracy (defaults):
    - accuracy <= 30 m: R = 0.01
    - accuracy <= 50 m: R = 0.03
    - otherwise:        R = 0.05

    Confidence blends sample count (saturating after 5 fixes, 60%) with
    accuracy quality (50 m / accuracy, 40%).
    """

    def __init__(self, config=None):
        """
        Initialize GPS noise filter.

        Args:
            config (GPSFilterConfig): Noise parameters (defaults if None)
        """
        self.config = config or GPSFilterConfig()
        self.config.validate()

        self.lat_filter = None
        self.lon_filter = None
        self.sample_count = 0
        self.last_result = None

        # Thread safety
        self.lock = threading.Lock()

    def measurement_noise(self, accuracy):
        """Measurement noise R for a fix of the given accuracy (meters)."""
        cfg = self.config
        if accuracy <= cfg.good_accuracy:
            return cfg.good_noise
        if accuracy <= cfg.fair_accuracy:
            return cfg.fair_noise
        return cfg.poor_noise

    def _create_axis(self, value, noise):
        kf = KalmanFilter(dim_x=1, dim_z=1)
        kf.x = np.array([[value]], dtype=float)
        kf.F = np.array([[1.0]])
        kf.H = np.array([[1.0]])
        kf.P = np.array([[noise]])
        kf.Q = np.array([[self.config.process_noise]])
        kf.R = np.array([[noise]])
        return kf

    @staticmethod
    def _step(kf, value, noise):
        kf.predict()
        kf.update(value, R=noise)
        return float(kf.x[0, 0])

    def confidence(self, sample_count, accuracy):
        cfg = self.config
        sample_factor = min(sample_count / cfg.saturation_samples, 1.0)
        if accuracy <= 0:
            accuracy_factor = 1.0
        else:
            accuracy_factor = min(cfg.accuracy_reference / accuracy, 1.0)
        return sample_factor * 0.6 + accuracy_factor * 0.4

    def update(self, fix):
        """
        Smooth a GPS fix.

        Args:
            fix (GPSFix): Raw fix (validated here)

        Returns:
            FilteredFix: Smoothed coordinates with confidence

        Raises:
            InvalidInputError: If the fix is malformed
        """
        if not isinstance(fix, GPSFix):
            raise InvalidInputError(f"expected GPSFix, got {type(fix).__name__}")
        fix.validate()
        noise = self.measurement_noise(fix.accuracy)

        with self.lock:
            if self.lat_filter is None:
                # First fix seeds the state at the measurement
                self.lat_filter = self._create_axis(fix.latitude, noise)
                self.lon_filter = self._create_axis(fix.longitude, noise)
                latitude, longitude = fix.latitude, fix.longitude
            else:
                latitude = self._step(self.lat_filter, fix.latitude, noise)
                longitude = self._step(self.lon_filter, fix.longitude, noise)

            self.sample_count += 1
            result = FilteredFix(
                latitude=latitude,
                longitude=longitude,
                accuracy=fix.accuracy * self.config.accuracy_scale,
                confidence=self.confidence(self.sample_count, fix.accuracy),
                sample_count=self.sample_count,
                timestamp=fix.timestamp,
            )
            self.last_result = result

        logger.debug("GPS filter: (%.6f, %.6f) acc=%.1fm R=%.2f -> (%.6f, %.6f)",
                     fix.latitude, fix.longitude, fix.accuracy, noise, latitude, longitude)
        return result

    def reset(self):
        """Reset filter state - called when a new attendance session begins"""
        with self.lock:
            self.lat_filter = None
            self.lon_filter = None
            self.sample_count = 0
            self.last_result = None

    def get_state(self):
        """Get current state - thread safe"""
        with self.lock:
            last = self.last_result
            return {
                'latitude': last.latitude if last else None,
                'longitude': last.longitude if last else None,
                'accuracy': last.accuracy if last else None,
                'confidence': last.confidence if last else 0.0,
                'sample_count': self.sample_count,
                'covariance': (float(self.lat_filter.P[0, 0]) if self.lat_filter is not None else None),
            }


def average_fixes(fixes):
    """
    Combine several fixes of a stationary device into one.

    Fixes are weighted by inverse variance (1 / accuracy²); the result keeps
    the latest timestamp.

    Raises:
        InvalidInputError: If no fixes are given
    """
    fixes = [fix.validate() for fix in fixes]
    if not fixes:
        raise InvalidInputError("cannot average an empty list of fixes")

    weights = np.array([1.0 / max(fix.accuracy, 0.1) ** 2 for fix in fixes])
    latitudes = np.array([fix.latitude for fix in fixes])
    longitudes = np.array([fix.longitude for fix in fixes])
    total = weights.sum()

    return GPSFix(
        latitude=float(np.dot(weights, latitudes) / total),
        longitude=float(np.dot(weights, longitudes) / total),
        accuracy=float(math.sqrt(1.0 / total)),
        timestamp=max(fix.timestamp for fix in fixes),
        provider=fixes[-1].provider,
    )

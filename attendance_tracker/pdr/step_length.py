"""
Step length estimation (Weinberg model).

length = K · ⁴√(a_max − a_min), where a_max/a_min are the acceleration
magnitude extremes of the completed step window. K follows the user's height
and every estimate is clamped to a physically plausible range.
"""

import logging
import math
from collections import deque
from dataclasses import dataclass

import numpy as np

from ..config import StepLengthConfig

logger = logging.getLogger(__name__)

# Below this acceleration range the window carries no usable signal
MIN_ACCEL_RANGE = 1e-6

METHOD_CONFIDENCE = {
    'weinberg': 0.8,
    'fixed': 0.6,
    'fallback': 0.6,
}


@dataclass(frozen=True)
class StepLengthEstimate:
    length: float  # meters
    confidence: float
    method: str


def weinberg_k(height_cm, k_min=0.35, k_max=0.55):
    """Weinberg constant for a user height, clamped to [k_min, k_max]."""
    k = 0.37 + (height_cm - 170.0) * 0.0003
    return min(max(k, k_min), k_max)


class StepLengthEstimator:
    """
    Estimates the length of each detected step.

    Methods:
    - 'weinberg': K·⁴√range, confidence 0.8
    - 'adaptive': Weinberg, then soft-limited toward the weighted recent
      average when it deviates by more than 30%; confidence grows with history
    - 'fixed':    constant configured length, confidence 0.6

    A collapsed acceleration range always yields the fallback length.
    """

    def __init__(self, config=None):
        self.config = config or StepLengthConfig()
        self.config.validate()
        self.k = weinberg_k(self.config.height_cm, self.config.k_min, self.config.k_max)
        self.history = deque(maxlen=self.config.history_size)

    def set_height(self, height_cm):
        self.config.height_cm = height_cm
        self.config.validate()
        self.k = weinberg_k(height_cm, self.config.k_min, self.config.k_max)

    def _clamp(self, length):
        return min(max(length, self.config.min_length), self.config.max_length)

    def _weighted_average(self):
        # Linear weights, newest step counts most
        lengths = np.fromiter(self.history, dtype=float)
        weights = np.arange(1, len(lengths) + 1, dtype=float)
        return float(np.dot(lengths, weights) / weights.sum())

    def estimate(self, max_accel, min_accel):
        """
        Estimate step length from the window's acceleration extremes.

        Args:
            max_accel (float): Peak magnitude in the step window
            min_accel (float): Minimum magnitude in the step window

        Returns:
            StepLengthEstimate: length always within [min_length, max_length]
        """
        cfg = self.config

        if cfg.method == 'fixed':
            result = StepLengthEstimate(self._clamp(cfg.fixed_length), METHOD_CONFIDENCE['fixed'], 'fixed')
            self.history.append(result.length)
            return result

        accel_range = max_accel - min_accel
        if not math.isfinite(accel_range) or accel_range < MIN_ACCEL_RANGE:
            result = StepLengthEstimate(self._clamp(cfg.fallback_length), METHOD_CONFIDENCE['fallback'], 'fallback')
            self.history.append(result.length)
            return result

        length = self._clamp(self.k * accel_range ** 0.25)

        if cfg.method == 'adaptive':
            confidence = min(0.9, 0.5 + len(self.history) / cfg.history_size * 0.4)
            if self.history:
                average = self._weighted_average()
                limit = average * cfg.outlier_ratio
                if abs(length - average) > limit:
                    # Soft limit: allow the step to move at most 30% away from the average
                    length = self._clamp(average + math.copysign(limit, length - average))
                    logger.debug("Step length outlier limited to %.2fm (average %.2fm)", length, average)
            result = StepLengthEstimate(length, confidence, 'adaptive')
        else:
            result = StepLengthEstimate(length, METHOD_CONFIDENCE['weinberg'], 'weinberg')

        self.history.append(result.length)
        return result

    @property
    def average_length(self):
        """Running average of recent step lengths (fallback length when empty)."""
        if not self.history:
            return self.config.fallback_length
        return float(np.mean(self.history))

    def get_statistics(self):
        lengths = np.fromiter(self.history, dtype=float)
        if not len(lengths):
            return {'count': 0, 'average': 0.0, 'min': 0.0, 'max': 0.0, 'std': 0.0, 'k': self.k}
        return {
            'count': len(lengths),
            'average': float(lengths.mean()),
            'min': float(lengths.min()),
            'max': float(lengths.max()),
            'std': float(lengths.std()),
            'k': self.k,
        }

    def reset(self):
        self.history.clear()

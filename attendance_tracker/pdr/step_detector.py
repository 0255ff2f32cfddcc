"""
StepDetector - peak-based step detection from acceleration magnitude.

A step is a local maximum of the acceleration magnitude that rises above the
threshold and comes at least min_step_interval after the previous step.

Key features:
- Short rolling buffer of (timestamp, magnitude) samples
- Peak detection over the last three samples
- Debounce interval (default 200 ms, at most 5 steps/s)
- Optional adaptive threshold: max(base, mean + 1.5·std) of recent magnitudes
- Cadence statistics and walking-state helpers
"""

import logging
from collections import deque

import numpy as np

from ..config import StepDetectorConfig
from ..errors import InvalidInputError
from ..filters.utils import is_finite_number
from ..models import StepEvent

logger = logging.getLogger(__name__)


class StepDetector:
    """
    Detects steps in a stream of acceleration magnitudes.

    Samples must be supplied in timestamp order; a peak whose timestamp is
    not at least min_step_interval after the last emitted step is dropped.

    Args:
        config (StepDetectorConfig): Threshold, debounce and adaptive settings
    """

    def __init__(self, config=None):
        self.config = config or StepDetectorConfig()
        self.config.validate()

        self.buffer = deque(maxlen=self.config.buffer_size)
        self.recent_magnitudes = deque(maxlen=self.config.adaptive_window)
        self.step_history = deque(maxlen=self.config.history_size)

        self.current_threshold = self.config.threshold
        self.last_step_time = None
        self.total_steps = 0
        self.rejected_debounce = 0

    def _update_threshold(self):
        cfg = self.config
        if len(self.recent_magnitudes) < cfg.adaptive_min_samples:
            self.current_threshold = cfg.threshold
            return
        window = np.fromiter(self.recent_magnitudes, dtype=float)
        adaptive = float(window.mean() + cfg.adaptive_std_factor * window.std())
        self.current_threshold = max(cfg.threshold, adaptive)

    def update(self, magnitude, timestamp):
        """
        Feed one acceleration magnitude sample.

        Args:
            magnitude (float): Acceleration vector norm
            timestamp (float): Sample time in seconds

        Returns:
            StepEvent or None: The step whose peak was just confirmed

        Raises:
            InvalidInputError: If magnitude or timestamp is not finite
        """
        if not is_finite_number(magnitude) or not is_finite_number(timestamp):
            raise InvalidInputError(f"invalid acceleration sample ({magnitude!r}, {timestamp!r})")

        self.buffer.append((timestamp, magnitude))
        self.recent_magnitudes.append(magnitude)
        if self.config.adaptive:
            self._update_threshold()

        if len(self.buffer) < 3:
            return None

        _, before = self.buffer[-3]
        peak_time, peak = self.buffer[-2]
        _, after = self.buffer[-1]

        if not (peak > before and peak > after and peak > self.current_threshold):
            return None

        if self.last_step_time is not None and peak_time - self.last_step_time < self.config.min_step_interval:
            self.rejected_debounce += 1
            return None

        self.last_step_time = peak_time
        self.total_steps += 1
        step = StepEvent(timestamp=peak_time, acceleration_peak=peak)
        self.step_history.append(step)
        logger.debug("Step %d at %.3f (peak %.2f, threshold %.2f)",
                     self.total_steps, peak_time, peak, self.current_threshold)
        return step

    def get_statistics(self):
        """
        Cadence statistics over the recent step history.

        Returns:
            dict: total_steps, average_interval (s), average_peak, cadence (steps/s),
                  current_threshold, rejected_debounce
        """
        steps = list(self.step_history)
        intervals = [b.timestamp - a.timestamp for a, b in zip(steps, steps[1:])]
        average_interval = float(np.mean(intervals)) if intervals else 0.0
        return {
            'total_steps': self.total_steps,
            'average_interval': average_interval,
            'average_peak': float(np.mean([s.acceleration_peak for s in steps])) if steps else 0.0,
            'cadence': 1.0 / average_interval if average_interval > 0 else 0.0,
            'current_threshold': self.current_threshold,
            'rejected_debounce': self.rejected_debounce,
        }

    def reset(self):
        self.buffer.clear()
        self.recent_magnitudes.clear()
        self.step_history.clear()
        self.current_threshold = self.config.threshold
        self.last_step_time = None
        self.total_steps = 0
        self.rejected_debounce = 0


def walking_state(cadence):
    """Classify gait from cadence in steps/s: standing, walking or running."""
    if cadence < 0.5:
        return 'standing'
    if cadence < 2.5:
        return 'walking'
    return 'running'


def activity_level(average_interval):
    """Classify activity from the average step interval in seconds."""
    if average_interval <= 0 or average_interval > 2.0:
        return 'idle'
    if average_interval > 0.8:
        return 'slow'
    if average_interval > 0.4:
        return 'normal'
    return 'fast'

"""
EnvironmentDetector - indoor/outdoor classification from GPS accuracy.

Outdoor fixes are consistently good, indoor fixes consistently poor (or
missing). A candidate classification has to persist for the hysteresis delay
before it replaces the current one, which keeps the fusion profile from
flapping at the boundary.
"""

import logging
from collections import deque

from .config import EnvironmentConfig

logger = logging.getLogger(__name__)

OUTDOOR = 'outdoor'
INDOOR = 'indoor'
UNKNOWN = 'unknown'
ENVIRONMENTS = (OUTDOOR, INDOOR, UNKNOWN)


class EnvironmentDetector:
    """
    Classifies the device environment from recent GPS accuracy.

    - outdoor: the last min_samples accuracies are all below outdoor_threshold
    - indoor:  the last min_samples accuracies are all above indoor_threshold,
               or no fix arrived for gps_timeout seconds
    - unknown: anything else

    Args:
        config (EnvironmentConfig): Thresholds, sample count and delays
    """

    def __init__(self, config=None):
        self.config = config or EnvironmentConfig()
        self.config.validate()

        self.history = deque(maxlen=self.config.history_size)  # (timestamp, accuracy)
        self.environment = UNKNOWN
        self.confidence = 0.0

        self.pending = None
        self.pending_since = None

        # Statistics
        self.last_change_time = None
        self.time_in = {env: 0.0 for env in ENVIRONMENTS}
        self.transition_count = 0

    def classify(self):
        """Raw classification of the current history (no hysteresis)."""
        cfg = self.config
        if len(self.history) < cfg.min_samples:
            return UNKNOWN, 0.0

        recent = [acc for _, acc in list(self.history)[-cfg.min_samples:]]
        average = sum(recent) / len(recent)
        if all(acc < cfg.outdoor_threshold for acc in recent):
            return OUTDOOR, 1.0 - (average / cfg.outdoor_threshold) * 0.3
        if all(acc > cfg.indoor_threshold for acc in recent):
            return INDOOR, min(1.0, average / cfg.indoor_threshold)
        return UNKNOWN, 0.5

    def update(self, accuracy, timestamp):
        """
        Record a GPS fix accuracy.

        Args:
            accuracy (float): Reported accuracy in meters
            timestamp (float): Fix time in seconds

        Returns:
            str: Current environment after hysteresis
        """
        self.history.append((timestamp, accuracy))
        candidate, confidence = self.classify()
        self._propose(candidate, confidence, timestamp)
        return self.environment

    def check_timeout(self, now):
        """Treat a GPS outage longer than gps_timeout as indoor."""
        if not self.history:
            return self.environment
        last_fix_time = self.history[-1][0]
        if now - last_fix_time >= self.config.gps_timeout:
            self._propose(INDOOR, 0.8, now)
        return self.environment

    def _propose(self, candidate, confidence, timestamp):
        if self.last_change_time is None:
            self.last_change_time = timestamp

        if candidate == self.environment:
            self.pending = None
            self.pending_since = None
            self.confidence = confidence
            return

        if candidate != self.pending:
            self.pending = candidate
            self.pending_since = timestamp

        if timestamp - self.pending_since >= self.config.hysteresis:
            self._switch(candidate, confidence, timestamp)

    def _switch(self, environment, confidence, timestamp):
        previous = self.environment
        self.time_in[previous] += max(0.0, timestamp - self.last_change_time)
        self.last_change_time = timestamp
        self.environment = environment
        self.confidence = confidence
        self.pending = None
        self.pending_since = None
        self.transition_count += 1
        logger.info("Environment %s -> %s (confidence %.2f)", previous, environment, confidence)

    def set_environment(self, environment, timestamp=None):
        """Force a classification (manual override), bypassing hysteresis."""
        if environment not in ENVIRONMENTS:
            raise ValueError(f"Unknown environment: {environment}")
        if timestamp is None:
            timestamp = self.history[-1][0] if self.history else 0.0
        if self.last_change_time is None:
            self.last_change_time = timestamp
        if environment != self.environment:
            self._switch(environment, 1.0, timestamp)

    def get_statistics(self, now=None):
        time_in = dict(self.time_in)
        if now is not None and self.last_change_time is not None:
            time_in[self.environment] += max(0.0, now - self.last_change_time)
        accuracies = [acc for _, acc in self.history]
        return {
            'environment': self.environment,
            'confidence': self.confidence,
            'pending': self.pending,
            'transition_count': self.transition_count,
            'outdoor_time': time_in[OUTDOOR],
            'indoor_time': time_in[INDOOR],
            'unknown_time': time_in[UNKNOWN],
            'average_accuracy': sum(accuracies) / len(accuracies) if accuracies else None,
            'sample_count': len(accuracies),
        }

    def reset(self):
        self.history.clear()
        self.environment = UNKNOWN
        self.confidence = 0.0
        self.pending = None
        self.pending_since = None
        self.last_change_time = None
        self.time_in = {env: 0.0 for env in ENVIRONMENTS}
        self.transition_count = 0

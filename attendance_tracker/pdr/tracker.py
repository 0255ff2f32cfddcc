"""
Pedestrian dead reckoning.

Combines step detection, step length and heading into a relative 2D position
in a local frame anchored at the last recalibration point (x east, y north,
meters). Each detected step moves the position by (L·cos θ, L·sin θ).
"""

import logging
import math

from ..config import DeadReckoningConfig, HeadingConfig, StepDetectorConfig, StepLengthConfig
from ..errors import SensorUnavailableError
from ..models import RelativePosition
from .heading import HeadingEstimator
from .step_detector import StepDetector
from .step_length import StepLengthEstimator

logger = logging.getLogger(__name__)


class DeadReckoningTracker:
    """
    Relative position from inertial frames.

    Confidence starts at 1.0 after every recalibration and, on each step,
    becomes min(confidence · 0.98, step length confidence), so it never
    increases between recalibrations.

    Args:
        config (DeadReckoningConfig): Per-step confidence decay
        step_detector, step_length, heading: Component instances (built from
            default configs when omitted)
    """

    def __init__(self, config=None, step_detector=None, step_length=None, heading=None):
        self.config = config or DeadReckoningConfig()
        self.config.validate()
        self.step_detector = step_detector or StepDetector(StepDetectorConfig())
        self.step_length = step_length or StepLengthEstimator(StepLengthConfig())
        self.heading = heading or HeadingEstimator(HeadingConfig())

        self.available = True
        self.x = 0.0
        self.y = 0.0
        self.confidence = 1.0

        # Magnitude extremes of the current step window
        self.window_max = None
        self.window_min = None

        self.total_steps = 0
        self.total_distance = 0.0
        self.steps_since_reset = 0
        self.first_timestamp = None
        self.last_timestamp = None

    @classmethod
    def from_config(cls, tracker_config):
        """Build a tracker with all components from a TrackerConfig."""
        return cls(
            config=tracker_config.dead_reckoning,
            step_detector=StepDetector(tracker_config.step_detector),
            step_length=StepLengthEstimator(tracker_config.step_length),
            heading=HeadingEstimator(tracker_config.heading),
        )

    def initialize(self, probe=None):
        """
        Check that inertial sensors can be used.

        Args:
            probe (callable, optional): Raises SensorUnavailableError (or OSError)
                when sensors are missing or permission is denied

        Returns:
            bool: True if the tracker is usable
        """
        if probe is not None:
            try:
                probe()
            except (SensorUnavailableError, OSError) as e:
                logger.warning("Dead reckoning unavailable: %s", e)
                self.available = False
                return False
        self.available = True
        return True

    def process_frame(self, frame):
        """
        Process one inertial frame.

        Args:
            frame (InertialFrame): Validated frame

        Returns:
            StepEvent or None: The step applied to the position, if any
        """
        frame.validate()
        timestamp = frame.timestamp
        if self.first_timestamp is None:
            self.first_timestamp = timestamp
        self.last_timestamp = timestamp

        yaw_rate = frame.rotation_rate[0] if frame.rotation_rate is not None else None
        self.heading.update(timestamp, yaw_rate=yaw_rate, magnetometer=frame.magnetometer)

        magnitude = frame.magnitude()
        self.window_max = magnitude if self.window_max is None else max(self.window_max, magnitude)
        self.window_min = magnitude if self.window_min is None else min(self.window_min, magnitude)

        step = self.step_detector.update(magnitude, timestamp)
        if step is not None:
            self._apply_step(step)
        return step

    def _apply_step(self, step):
        estimate = self.step_length.estimate(self.window_max, self.window_min)
        theta = self.heading.heading

        dx, dy = self._displacement(estimate.length, theta)
        self.x += dx
        self.y += dy
        self.total_distance += estimate.length
        self.total_steps += 1
        self.steps_since_reset += 1
        self.confidence = min(self.confidence * self.config.confidence_decay, estimate.confidence)

        self.window_max = None
        self.window_min = None
        logger.debug("PDR step %d: L=%.2fm θ=%.2frad -> (%.2f, %.2f) conf=%.3f",
                     self.total_steps, estimate.length, theta, self.x, self.y, self.confidence)

    @staticmethod
    def _displacement(length, theta):
        return length * math.cos(theta), length * math.sin(theta)

    def get_position(self):
        return RelativePosition(
            x=self.x,
            y=self.y,
            heading=self.heading.heading,
            confidence=self.confidence,
            timestamp=self.last_timestamp,
        )

    def reset_position(self, x=0.0, y=0.0, heading=None, timestamp=None):
        """Move the anchor (recalibration): position set, confidence back to 1.0."""
        self.x = x
        self.y = y
        self.confidence = 1.0
        self.steps_since_reset = 0
        if heading is not None:
            self.heading.set_heading(heading, timestamp)

    def get_statistics(self):
        elapsed = 0.0
        if self.first_timestamp is not None:
            elapsed = self.last_timestamp - self.first_timestamp
        return {
            'available': self.available,
            'total_steps': self.total_steps,
            'total_distance': self.total_distance,
            'average_step_length': self.total_distance / self.total_steps if self.total_steps else 0.0,
            'elapsed_time': elapsed,
            'steps_since_reset': self.steps_since_reset,
            'confidence': self.confidence,
            'position': (self.x, self.y),
        }

    def reset(self):
        """Full reset for a new session (availability is kept)."""
        self.x = 0.0
        self.y = 0.0
        self.confidence = 1.0
        self.window_max = None
        self.window_min = None
        self.total_steps = 0
        self.total_distance = 0.0
        self.steps_since_reset = 0
        self.first_timestamp = None
        self.last_timestamp = None
        self.step_detector.reset()
        self.step_length.reset()
        self.heading.reset()

"""
Pedestrian dead reckoning (PDR) from inertial frames.

- step_detector:  peak-based step detection with debounce
- step_length:    Weinberg step length model
- heading:        gyro integration with magnetometer correction
- tracker:        relative 2D position from the three components
"""

from .heading import HeadingEstimator
from .step_detector import StepDetector, activity_level, walking_state
from .step_length import StepLengthEstimator, weinberg_k
from .tracker import DeadReckoningTracker

__all__ = [
    'DeadReckoningTracker',
    'HeadingEstimator',
    'StepDetector',
    'StepLengthEstimator',
    'activity_level',
    'walking_state',
    'weinberg_k',
]

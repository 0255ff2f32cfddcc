"""
Configuration for the attendance tracker.

Every tunable used by the estimation pipeline and the attendance state
machine lives here as a dataclass field with its default. Components take
their section at construction and never hard-code the values.

Presets:
- default:         balanced outdoor/indoor behaviour
- high_precision:  stricter steps, frequent recalibration, GPS favoured
- battery_saver:   slower recalibration, PDR favoured
- indoor:          tighter disagreement threshold, lower environment thresholds
- outdoor:         GPS heavily favoured, relaxed indoor classification
"""

import copy
import math
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Optional

import orjson

from .errors import InvalidInputError


def _require(condition, message):
    if not condition:
        raise InvalidInputError(message)


def _positive(value):
    return isinstance(value, (int, float)) and math.isfinite(value) and value > 0


def _unit(value):
    return isinstance(value, (int, float)) and 0.0 <= value <= 1.0


@dataclass
class GPSFilterConfig:
    process_noise: float = 3.0
    good_accuracy: float = 30.0    # meters, R = good_noise at or below
    fair_accuracy: float = 50.0    # meters, R = fair_noise at or below
    good_noise: float = 0.01
    fair_noise: float = 0.03
    poor_noise: float = 0.05
    saturation_samples: int = 5
    accuracy_reference: float = 50.0
    accuracy_scale: float = 0.7    # reported accuracy improvement after smoothing

    def validate(self):
        _require(_positive(self.process_noise), "process_noise must be > 0")
        _require(self.good_accuracy <= self.fair_accuracy, "good_accuracy must be <= fair_accuracy")
        for name in ('good_noise', 'fair_noise', 'poor_noise', 'accuracy_reference'):
            _require(_positive(getattr(self, name)), f"{name} must be > 0")
        _require(self.saturation_samples >= 1, "saturation_samples must be >= 1")
        _require(_unit(self.accuracy_scale), "accuracy_scale must be in [0, 1]")


@dataclass
class StepDetectorConfig:
    threshold: float = 1.5          # peak magnitude (nominally g)
    min_step_interval: float = 0.2  # seconds, caps cadence at 5 steps/s
    buffer_size: int = 10
    adaptive: bool = True
    adaptive_window: int = 50
    adaptive_min_samples: int = 20
    adaptive_std_factor: float = 1.5
    history_size: int = 100

    def validate(self):
        _require(1.3 <= self.threshold <= 2.0, "step threshold must be in [1.3, 2.0]")
        _require(_positive(self.min_step_interval), "min_step_interval must be > 0")
        _require(self.buffer_size >= 3, "buffer_size must hold at least 3 samples")
        _require(self.adaptive_min_samples <= self.adaptive_window,
                 "adaptive_min_samples must not exceed adaptive_window")


@dataclass
class StepLengthConfig:
    method: str = 'weinberg'        # weinberg | adaptive | fixed
    height_cm: float = 170.0
    k_min: float = 0.35
    k_max: float = 0.55
    min_length: float = 0.4
    max_length: float = 1.2
    fallback_length: float = 0.65
    fixed_length: float = 0.65
    history_size: int = 20
    outlier_ratio: float = 0.3

    def validate(self):
        _require(self.method in ('weinberg', 'adaptive', 'fixed'), f"unknown step length method: {self.method}")
        _require(_positive(self.height_cm), "height_cm must be > 0")
        _require(0 < self.k_min <= self.k_max, "K bounds must satisfy 0 < k_min <= k_max")
        _require(0 < self.min_length <= self.max_length, "length bounds must satisfy 0 < min <= max")
        for name in ('fallback_length', 'fixed_length'):
            value = getattr(self, name)
            _require(self.min_length <= value <= self.max_length, f"{name} must lie within the length bounds")
        _require(self.history_size >= 1, "history_size must be >= 1")


@dataclass
class HeadingConfig:
    gyro_weight: float = 0.98
    use_magnetometer: bool = True
    magnetometer_interval: float = 1.0  # seconds between magnetometer blends
    max_gap: float = 1.0                # seconds, larger gyro gaps are skipped
    drift_window: int = 10
    max_drift_rate: float = 0.05        # rad/s
    confidence_time_constant: float = 60.0

    def validate(self):
        _require(_unit(self.gyro_weight), "gyro_weight must be in [0, 1]")
        _require(_positive(self.magnetometer_interval), "magnetometer_interval must be > 0")
        _require(_positive(self.max_gap), "max_gap must be > 0")
        _require(self.drift_window >= 1, "drift_window must be >= 1")
        _require(self.max_drift_rate >= 0, "max_drift_rate must be >= 0")


@dataclass
class DeadReckoningConfig:
    confidence_decay: float = 0.98  # per step

    def validate(self):
        _require(_unit(self.confidence_decay), "confidence_decay must be in [0, 1]")


@dataclass
class EnvironmentConfig:
    outdoor_threshold: float = 30.0  # meters
    indoor_threshold: float = 50.0   # meters
    min_samples: int = 3
    hysteresis: float = 5.0          # seconds
    gps_timeout: float = 10.0        # seconds without a fix means indoor
    history_size: int = 20

    def validate(self):
        _require(_positive(self.outdoor_threshold), "outdoor_threshold must be > 0")
        _require(self.outdoor_threshold <= self.indoor_threshold,
                 "outdoor_threshold must not exceed indoor_threshold")
        _require(1 <= self.min_samples <= self.history_size, "min_samples must be in [1, history_size]")
        _require(self.hysteresis >= 0, "hysteresis must be >= 0")
        _require(_positive(self.gps_timeout), "gps_timeout must be > 0")


@dataclass
class FusionProfile:
    gps_weight: float
    disagreement_threshold: float  # meters, anomaly above

    def validate(self):
        _require(_unit(self.gps_weight), "gps_weight must be in [0, 1]")
        _require(_positive(self.disagreement_threshold), "disagreement_threshold must be > 0")


@dataclass
class FusionConfig:
    outdoor: FusionProfile = field(default_factory=lambda: FusionProfile(0.7, 25.0))
    indoor: FusionProfile = field(default_factory=lambda: FusionProfile(0.5, 20.0))
    accuracy_floor: float = 20.0        # meters, GPS quality degrades above
    min_gps_quality: float = 0.1
    pdr_decay_rate: float = 0.1         # per hour since recalibration
    anomaly_max_gps_weight: float = 0.3
    gps_timeout: float = 10.0           # seconds before PDR-only output
    pdr_base_accuracy: float = 5.0      # meters
    pdr_accuracy_growth: float = 0.5    # meters per minute since recalibration
    pdr_max_accuracy: float = 50.0
    meters_per_degree: float = 111320.0

    def validate(self):
        self.outdoor.validate()
        self.indoor.validate()
        _require(_positive(self.accuracy_floor), "accuracy_floor must be > 0")
        _require(_unit(self.min_gps_quality), "min_gps_quality must be in [0, 1]")
        _require(self.pdr_decay_rate >= 0, "pdr_decay_rate must be >= 0")
        _require(_unit(self.anomaly_max_gps_weight), "anomaly_max_gps_weight must be in [0, 1]")
        _require(_positive(self.gps_timeout), "gps_timeout must be > 0")
        _require(_positive(self.meters_per_degree), "meters_per_degree must be > 0")


@dataclass
class RecalibrationConfig:
    interval: float = 30.0          # seconds, periodic recalibration
    error_threshold: float = 15.0   # meters of GPS/PDR disagreement
    max_gps_accuracy: float = 30.0  # meters, GPS must be at least this good
    min_course_speed: float = 0.5   # m/s, slower fixes carry no usable bearing

    def validate(self):
        _require(20.0 <= self.interval <= 60.0, "recalibration interval must be in [20, 60] seconds")
        _require(_positive(self.error_threshold), "error_threshold must be > 0")
        _require(_positive(self.max_gps_accuracy), "max_gps_accuracy must be > 0")
        _require(self.min_course_speed >= 0, "min_course_speed must be >= 0")


@dataclass
class HeartbeatConfig:
    violation_threshold: int = 2
    default_radius: float = 100.0           # meters, when the session has none
    max_accuracy: Optional[float] = 100.0   # meters, worse fixes do not count
    log_retention: int = 100                # location log entries kept per attendance

    def validate(self):
        _require(self.violation_threshold >= 1, "violation_threshold must be >= 1")
        _require(_positive(self.default_radius), "default_radius must be > 0")
        _require(self.max_accuracy is None or _positive(self.max_accuracy), "max_accuracy must be > 0")
        _require(self.log_retention >= 1, "log_retention must be >= 1")


@dataclass
class SessionConfig:
    auto_end_after_hours: float = 2.0

    def validate(self):
        _require(_positive(self.auto_end_after_hours), "auto_end_after_hours must be > 0")


@dataclass
class LocationConfig:
    command: str = 'termux-location'
    high_accuracy_timeout: float = 15.0  # seconds
    coarse_timeout: float = 10.0         # seconds
    max_cached_age: float = 60.0         # seconds
    quality_threshold: float = 100.0     # meters, high accuracy fixes worse are rejected

    def validate(self):
        for name in ('high_accuracy_timeout', 'coarse_timeout', 'max_cached_age', 'quality_threshold'):
            _require(_positive(getattr(self, name)), f"{name} must be > 0")


@dataclass
class HeartbeatScheduleConfig:
    interval: float = 30.0
    background_interval: float = 60.0
    max_retries: int = 3
    retry_delay: float = 5.0
    maximum_age: float = 30.0
    background_maximum_age: float = 60.0

    def validate(self):
        _require(_positive(self.interval) and _positive(self.background_interval), "intervals must be > 0")
        _require(self.max_retries >= 0, "max_retries must be >= 0")
        _require(_positive(self.maximum_age) and _positive(self.background_maximum_age), "maximum ages must be > 0")
        _require(self.retry_delay >= 0, "retry_delay must be >= 0")


@dataclass
class PipelineConfig:
    max_queue_size: int = 1000
    poll_timeout: float = 0.1

    def validate(self):
        _require(self.max_queue_size >= 1, "max_queue_size must be >= 1")
        _require(_positive(self.poll_timeout), "poll_timeout must be > 0")


@dataclass
class TrackerConfig:
    gps_filter: GPSFilterConfig = field(default_factory=GPSFilterConfig)
    step_detector: StepDetectorConfig = field(default_factory=StepDetectorConfig)
    step_length: StepLengthConfig = field(default_factory=StepLengthConfig)
    heading: HeadingConfig = field(default_factory=HeadingConfig)
    dead_reckoning: DeadReckoningConfig = field(default_factory=DeadReckoningConfig)
    environment: EnvironmentConfig = field(default_factory=EnvironmentConfig)
    fusion: FusionConfig = field(default_factory=FusionConfig)
    recalibration: RecalibrationConfig = field(default_factory=RecalibrationConfig)
    heartbeat: HeartbeatConfig = field(default_factory=HeartbeatConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    location: LocationConfig = field(default_factory=LocationConfig)
    schedule: HeartbeatScheduleConfig = field(default_factory=HeartbeatScheduleConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    def validate(self):
        """Validate every section, raising InvalidInputError on the first bad value."""
        for f in fields(self):
            getattr(self, f.name).validate()
        return self


# Overrides applied on top of TrackerConfig() for each named preset
PRESETS = {
    'default': {},
    'high_precision': {
        'step_detector': {'threshold': 1.8},
        'recalibration': {'interval': 20.0, 'error_threshold': 10.0, 'max_gps_accuracy': 20.0},
        'fusion': {'outdoor': {'gps_weight': 0.8}},
    },
    'battery_saver': {
        'step_detector': {'threshold': 1.7},
        'recalibration': {'interval': 60.0, 'error_threshold': 20.0, 'max_gps_accuracy': 40.0},
        'fusion': {'outdoor': {'gps_weight': 0.6}},
    },
    'indoor': {
        'step_detector': {'threshold': 1.4},
        'recalibration': {'interval': 20.0, 'error_threshold': 10.0, 'max_gps_accuracy': 30.0},
        'fusion': {'indoor': {'gps_weight': 0.5, 'disagreement_threshold': 20.0}},
        'environment': {'outdoor_threshold': 15.0, 'indoor_threshold': 40.0},
    },
    'outdoor': {
        'recalibration': {'interval': 30.0, 'error_threshold': 12.0, 'max_gps_accuracy': 25.0},
        'fusion': {'outdoor': {'gps_weight': 0.85}},
        'environment': {'outdoor_threshold': 40.0, 'indoor_threshold': 120.0},
    },
}


def apply_overrides(section, overrides, path='config'):
    """
    Apply a nested dict of overrides to a dataclass section in place.

    Args:
        section: Dataclass instance to update
        overrides (dict): Field name -> value (dicts recurse into nested sections)
        path (str): Dotted prefix used in error messages

    Raises:
        InvalidInputError: If a key does not name a field of the section
    """
    known = {f.name for f in fields(section)}
    for key, value in overrides.items():
        if key not in known:
            raise InvalidInputError(f"unknown setting: {path}.{key}")
        current = getattr(section, key)
        if is_dataclass(current) and isinstance(value, dict):
            apply_overrides(current, value, f"{path}.{key}")
        else:
            setattr(section, key, value)
    return section


def get_preset(name='default'):
    """
    Build a validated TrackerConfig for a named preset.

    Raises:
        ValueError: If the preset name is unknown
    """
    if name not in PRESETS:
        raise ValueError(f"Unknown preset: {name}. Use one of: {', '.join(PRESETS)}")
    config = TrackerConfig()
    apply_overrides(config, copy.deepcopy(PRESETS[name]))
    return config.validate()


def load_config(path):
    """
    Load a TrackerConfig from a JSON file.

    The file may name a base preset ("preset": "indoor") and override any
    section field, e.g. {"step_detector": {"threshold": 1.6}}.
    """
    data = orjson.loads(Path(path).read_bytes())
    if not isinstance(data, dict):
        raise InvalidInputError(f"config file {path} must contain a JSON object")
    preset = data.pop('preset', 'default')
    config = get_preset(preset)
    apply_overrides(config, data)
    return config.validate()

"""
Value types flowing through the estimation pipeline.

GPSFix and InertialFrame are the raw inputs; StepEvent, RelativePosition and
FusedPosition are derived and never persisted on their own.
"""

import math
from dataclasses import dataclass
from typing import Optional, Tuple

from .errors import InvalidInputError
from .filters.utils import is_finite_number

Vector3 = Tuple[float, float, float]

# Tracking modes reported with a fused position
GPS_ONLY = 'gps-only'
PDR_ONLY = 'pdr-only'
FUSION = 'fusion'
TRACKING_MODES = (GPS_ONLY, PDR_ONLY, FUSION)


def validate_coordinate(latitude, longitude):
    """
    Reject NaN/inf and out-of-range coordinates.

    Raises:
        InvalidInputError: If latitude is outside [-90, 90] or longitude outside [-180, 180]
    """
    if not is_finite_number(latitude) or not is_finite_number(longitude):
        raise InvalidInputError(f"coordinates must be finite numbers, got ({latitude!r}, {longitude!r})")
    if not -90.0 <= latitude <= 90.0:
        raise InvalidInputError(f"latitude out of range: {latitude}")
    if not -180.0 <= longitude <= 180.0:
        raise InvalidInputError(f"longitude out of range: {longitude}")


def validate_accuracy(accuracy):
    if not is_finite_number(accuracy) or accuracy < 0:
        raise InvalidInputError(f"accuracy must be a finite number >= 0, got {accuracy!r}")


def _validate_vector(name, vector):
    if vector is None:
        return
    if len(vector) != 3 or not all(is_finite_number(v) for v in vector):
        raise InvalidInputError(f"{name} must be three finite numbers, got {vector!r}")


@dataclass(frozen=True)
class GPSFix:
    latitude: float
    longitude: float
    accuracy: float  # meters
    timestamp: float  # seconds
    altitude: Optional[float] = None
    speed: Optional[float] = None  # m/s
    bearing: Optional[float] = None  # degrees clockwise from north
    provider: str = 'gps'

    def validate(self):
        validate_coordinate(self.latitude, self.longitude)
        validate_accuracy(self.accuracy)
        if not is_finite_number(self.timestamp):
            raise InvalidInputError(f"timestamp must be finite, got {self.timestamp!r}")
        if self.bearing is not None and not is_finite_number(self.bearing):
            raise InvalidInputError(f"bearing must be finite, got {self.bearing!r}")
        return self

    @classmethod
    def from_termux(cls, data, timestamp, provider='gps'):
        """
        Build a fix from termux-location JSON output.

        Raises:
            InvalidInputError: If latitude/longitude/accuracy are missing or malformed
        """
        try:
            fix = cls(
                latitude=data['latitude'],
                longitude=data['longitude'],
                accuracy=data['accuracy'],
                timestamp=timestamp,
                altitude=data.get('altitude'),
                speed=data.get('speed'),
                bearing=data.get('bearing'),
                provider=data.get('provider', provider),
            )
        except (KeyError, TypeError) as e:
            raise InvalidInputError(f"malformed location payload: {e}") from e
        return fix.validate()


@dataclass(frozen=True)
class InertialFrame:
    acceleration: Vector3  # linear acceleration, step detector units
    timestamp: float  # seconds
    rotation_rate: Optional[Vector3] = None  # (alpha, beta, gamma) deg/s, alpha = yaw rate
    magnetometer: Optional[Vector3] = None  # (x, y, z) µT

    def validate(self):
        _validate_vector('acceleration', self.acceleration)
        _validate_vector('rotation_rate', self.rotation_rate)
        _validate_vector('magnetometer', self.magnetometer)
        if not is_finite_number(self.timestamp):
            raise InvalidInputError(f"timestamp must be finite, got {self.timestamp!r}")
        return self

    def magnitude(self):
        x, y, z = self.acceleration
        return math.sqrt(x*x + y*y + z*z)


@dataclass(frozen=True)
class StepEvent:
    timestamp: float
    acceleration_peak: float


@dataclass(frozen=True)
class RelativePosition:
    x: float  # meters east of the anchor
    y: float  # meters north of the anchor
    heading: float  # radians, 0 = east, counter-clockwise
    confidence: float
    timestamp: Optional[float]


@dataclass(frozen=True)
class FusedPosition:
    latitude: float
    longitude: float
    accuracy: float
    gps_weight: float
    timestamp: float
    tracking_mode: str = FUSION
    environment: str = 'unknown'
    confidence: float = 1.0
    anomaly: bool = False
    disagreement: Optional[float] = None
    recalibrated: Optional[str] = None  # reason when this update recalibrated PDR

    @property
    def pdr_weight(self):
        return 1.0 - self.gps_weight

    def to_metadata(self):
        """Fusion metadata attached to a heartbeat request."""
        return {
            'trackingMode': self.tracking_mode,
            'environment': self.environment,
            'confidence': self.confidence,
            'gpsWeight': self.gps_weight,
            'pdrWeight': self.pdr_weight,
            'anomaly': self.anomaly,
        }

"""
Complementary weighting of GPS and dead-reckoning positions.

GPS is absolute but noisy and degrades indoors; PDR is smooth but drifts
with every step and every minute since the last recalibration. The weight
given to GPS starts at the environment profile's default and is scaled by
the quality of each source:

    gps term = profile weight · GPS quality
    pdr term = (1 - profile weight) · PDR confidence · (1 - decay · hours)
    gps_weight = gps term / (gps term + pdr term)

Disagreement above the profile threshold marks an anomaly and caps the GPS
weight so the estimate favors dead reckoning.
"""

import math
from dataclasses import dataclass

from ..config import FusionConfig
from ..environment import INDOOR


@dataclass(frozen=True)
class FusionWeights:
    gps: float
    gps_quality: float
    pdr_factor: float
    profile: str
    anomaly: bool

    @property
    def pdr(self):
        return 1.0 - self.gps


class ComplementaryWeighting:
    """
    Computes GPS/PDR blend weights.

    Args:
        config (FusionConfig): Profiles, accuracy floor, decay rate and caps
    """

    def __init__(self, config=None):
        self.config = config or FusionConfig()
        self.config.validate()

    def profile_for(self, environment):
        """Indoor profile for indoor environments, outdoor otherwise."""
        if environment == INDOOR:
            return 'indoor', self.config.indoor
        return 'outdoor', self.config.outdoor

    def gps_quality(self, accuracy):
        """1.0 at or below the accuracy floor, exponential decay above it."""
        floor = self.config.accuracy_floor
        if accuracy <= floor:
            return 1.0
        quality = math.exp(-(accuracy - floor) / floor)
        return min(1.0, max(self.config.min_gps_quality, quality))

    def pdr_factor(self, pdr_confidence, hours_since_recalibration):
        decay = max(0.0, 1.0 - self.config.pdr_decay_rate * hours_since_recalibration)
        return min(1.0, max(0.0, pdr_confidence)) * decay

    def weights(self, environment, gps_accuracy, pdr_confidence, hours_since_recalibration,
                disagreement=None):
        """
        Compute the GPS weight for one fusion step.

        Args:
            environment (str): 'outdoor', 'indoor' or 'unknown'
            gps_accuracy (float): Raw GPS accuracy in meters
            pdr_confidence (float): Dead-reckoning confidence [0, 1]
            hours_since_recalibration (float): Time since PDR was last anchored
            disagreement (float, optional): GPS/PDR distance in meters

        Returns:
            FusionWeights
        """
        name, profile = self.profile_for(environment)
        quality = self.gps_quality(gps_accuracy)
        factor = self.pdr_factor(pdr_confidence, hours_since_recalibration)

        gps_term = profile.gps_weight * quality
        pdr_term = (1.0 - profile.gps_weight) * factor
        total = gps_term + pdr_term
        gps = gps_term / total if total > 0 else 1.0

        anomaly = disagreement is not None and disagreement > profile.disagreement_threshold
        if anomaly:
            gps = min(gps, self.config.anomaly_max_gps_weight)

        return FusionWeights(gps=gps, gps_quality=quality, pdr_factor=factor, profile=name, anomaly=anomaly)

    def pdr_accuracy(self, minutes_since_recalibration):
        """Dead-reckoning accuracy grows linearly with time since recalibration."""
        cfg = self.config
        accuracy = cfg.pdr_base_accuracy + cfg.pdr_accuracy_growth * max(0.0, minutes_since_recalibration)
        return min(accuracy, cfg.pdr_max_accuracy)

    @staticmethod
    def blend(gps_value, pdr_value, gps_weight):
        return gps_weight * gps_value + (1.0 - gps_weight) * pdr_value

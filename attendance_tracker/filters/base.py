"""
Abstract base class for GPS position filters.

A position filter consumes validated GPS fixes one at a time and returns a
smoothed estimate. Filter state belongs to a single attendance session and
must be reset when a new one starts.
"""

from abc import ABC, abstractmethod


class PositionFilterBase(ABC):
    """
    Abstract base class for GPS position smoothing.

    All subclasses must implement:
    - update(fix) -> FilteredFix
    - reset()
    - get_state() -> dict
    """

    @abstractmethod
    def update(self, fix):
        """
        Update filter with a GPS fix.

        Args:
            fix (GPSFix): Validated fix

        Returns:
            FilteredFix: Smoothed latitude/longitude with accuracy and confidence
        """

    @abstractmethod
    def reset(self):
        """Discard all state (new session)."""

    @abstractmethod
    def get_state(self):
        """
        Get current filter state.

        Returns:
            dict: State dictionary with at least:
                - 'latitude', 'longitude': last smoothed position or None
                - 'sample_count': fixes processed since reset
        """

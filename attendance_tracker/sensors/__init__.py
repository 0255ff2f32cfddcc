"""
Sensor input plumbing: GPS acquisition and the per-device event pipeline.
"""

from .location import LocationAcquirer
from .pipeline import DevicePipeline

__all__ = ['DevicePipeline', 'LocationAcquirer']

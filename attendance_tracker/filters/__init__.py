"""
Position filters and fusion weighting.

- gps_kalman:     per-axis Kalman smoothing of raw GPS fixes (filterpy)
- complementary:  environment-aware GPS/PDR weighting
- utils:          haversine distance and local tangent plane projection

Submodules are imported directly (e.g. ``from attendance_tracker.filters.gps_kalman
import GPSNoiseFilter``); nothing is imported here so that the model types can
use the utilities without an import cycle.
"""

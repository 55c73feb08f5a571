"""
Utility helpers for the forest watch system.

This module contains:
- PerformanceTimer: Timing utility for pipeline stages
- haversine_meters: Great-circle distance between two points
- clamp: Bound a value to a closed interval
"""

import logging
import math
import time

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6371000.0


class PerformanceTimer:
    """Performance timing utility."""

    def __init__(self, operation_name="Operation", slow_threshold=1.0):
        self.operation_name = operation_name
        self.slow_threshold = slow_threshold
        self.start_time = None
        self.end_time = None

    def start(self):
        """Start timing."""
        self.start_time = time.time()
        return self

    def stop(self):
        """Stop timing and return duration."""
        if self.start_time is None:
            return 0.0

        self.end_time = time.time()
        return self.end_time - self.start_time

    @property
    def duration(self) -> float:
        if self.start_time is None or self.end_time is None:
            return 0.0
        return self.end_time - self.start_time

    def __enter__(self):
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        duration = self.stop()
        if duration > self.slow_threshold:
            logger.info(f"{self.operation_name} took {duration:.2f}s")


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(math.sqrt(min(1.0, a)))


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))

"""
Cascading GPS acquisition through the Termux LocationAPI.

Strategies are tried in order, each with its own timeout:
1. high accuracy ('gps' provider), fixes worse than quality_threshold rejected
2. coarse ('network' provider: WiFi/cellular)
3. the last successful fix, if younger than max_cached_age

When all three fail the caller gets LocationUnavailableError. That is a
transient failure: attendance status is never changed because of it.
"""

import dataclasses
import logging
import subprocess
import time

import orjson

from ..config import LocationConfig
from ..errors import InvalidInputError, LocationUnavailableError
from ..models import GPSFix

logger = logging.getLogger(__name__)

HIGH_ACCURACY = 'gps'
COARSE = 'network'
CACHED = 'cached'


class LocationAcquirer:
    """
    One-shot location requests with provider fallback.

    Args:
        config (LocationConfig): Command, timeouts and quality threshold
        runner (callable): subprocess.run compatible callable (injectable for tests)
        clock (callable): Returns the current time in seconds
    """

    def __init__(self, config=None, runner=subprocess.run, clock=time.time):
        self.config = config or LocationConfig()
        self.config.validate()
        self.runner = runner
        self.clock = clock

        self.cached_fix = None

        # Statistics (for health monitoring)
        self.requests_sent = {HIGH_ACCURACY: 0, COARSE: 0}
        self.requests_completed = {HIGH_ACCURACY: 0, COARSE: 0}
        self.requests_timeout = {HIGH_ACCURACY: 0, COARSE: 0}
        self.low_quality_rejections = 0
        self.cache_hits = 0
        self.failures = 0

    def strategies(self):
        cfg = self.config
        return [
            (HIGH_ACCURACY, cfg.high_accuracy_timeout, cfg.quality_threshold),
            (COARSE, cfg.coarse_timeout, None),
        ]

    def request(self, provider, timeout):
        """
        Run a single termux-location request.

        Returns:
            GPSFix or None: None on timeout, command failure or malformed output
        """
        self.requests_sent[provider] += 1
        try:
            result = self.runner(
                [self.config.command, '-p', provider],
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            self.requests_timeout[provider] += 1
            logger.warning("GPS: %s request exceeded %.0fs", provider, timeout)
            return None
        except OSError as e:
            logger.warning("GPS: failed to start %s request: %s", provider, e)
            return None

        if result.returncode != 0 or not result.stdout or not result.stdout.strip():
            logger.warning("GPS: %s request returned no data (exit %s)", provider, result.returncode)
            return None

        try:
            data = orjson.loads(result.stdout)
            fix = GPSFix.from_termux(data, self.clock(), provider=provider)
        except (orjson.JSONDecodeError, InvalidInputError, AttributeError) as e:
            logger.warning("GPS: error parsing %s result: %s", provider, e)
            return None

        self.requests_completed[provider] += 1
        return fix

    def acquire(self, maximum_age=None):
        """
        Get a fix using the cascade.

        Args:
            maximum_age (float, optional): Oldest acceptable cached fix in
                seconds (defaults to max_cached_age)

        Returns:
            GPSFix: Fresh fix, or the cached one with provider 'cached'

        Raises:
            LocationUnavailableError: If every strategy failed
        """
        for provider, timeout, quality_threshold in self.strategies():
            fix = self.request(provider, timeout)
            if fix is None:
                continue
            if quality_threshold is not None and fix.accuracy > quality_threshold:
                self.low_quality_rejections += 1
                logger.warning("GPS: rejected low-quality fix (accuracy %.1fm > %.0fm)",
                               fix.accuracy, quality_threshold)
                continue
            if provider != HIGH_ACCURACY:
                logger.info("GPS: using %s provider fix (accuracy %.1fm)", provider, fix.accuracy)
            self.cached_fix = fix
            return fix

        max_age = self.config.max_cached_age if maximum_age is None else maximum_age
        if self.cached_fix is not None and self.clock() - self.cached_fix.timestamp <= max_age:
            self.cache_hits += 1
            logger.info("GPS: falling back to cached fix (%.0fs old)", self.clock() - self.cached_fix.timestamp)
            return dataclasses.replace(self.cached_fix, provider=CACHED)

        self.failures += 1
        raise LocationUnavailableError("no GPS fix from high accuracy, network or cache")

    def get_health_status(self):
        """Get acquisition health metrics for monitoring"""
        sent = sum(self.requests_sent.values())
        completed = sum(self.requests_completed.values())
        return {
            'requests_sent': dict(self.requests_sent),
            'requests_completed': dict(self.requests_completed),
            'requests_timeout': dict(self.requests_timeout),
            'success_rate': completed / sent if sent else 0.0,
            'low_quality_rejections': self.low_quality_rejections,
            'cache_hits': self.cache_hits,
            'failures': self.failures,
            'has_cached_fix': self.cached_fix is not None,
        }

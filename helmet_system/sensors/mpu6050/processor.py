"""
MPU6050 Signal Processor
Exponential smoothing of acceleration and pitch/roll orientation estimation
"""

import logging
import math
from typing import List, Optional, Sequence

import numpy as np
from scipy import signal

from helmet_system.types import ConditionedSample, ConvertedVector, Reading, Vector3

from .config import MPU6050Config
from .converter import convert

logger = logging.getLogger(__name__)

# Resting gravity, sensor z-axis up
RESTING_GRAVITY = Vector3(0.0, 0.0, 1.0)


def orientation(acceleration: Vector3) -> tuple:
    """
    Derive pitch and roll from a gravity vector

    Args:
        acceleration: Filtered acceleration (g)

    Returns:
        (pitch, roll) in degrees
    """
    ax, ay, az = acceleration.as_tuple()
    pitch = math.degrees(math.atan2(ay, az))

    lateral = math.sqrt(ay ** 2 + az ** 2)
    if lateral == 0.0:
        # Gravity entirely on x: the unit is on its side
        roll = -90.0 if ax > 0 else 90.0
    else:
        roll = math.degrees(math.atan2(-ax, lateral))

    return pitch, roll


class SignalConditioner:
    """
    Per-stream signal conditioning

    Holds the last smoothed acceleration vector for one sensor stream.
    Output is a deterministic function of the filter history. Angular rate is
    passed through unfiltered for classification.
    """

    def __init__(self, config: Optional[MPU6050Config] = None):
        """
        Initialize signal conditioner

        Args:
            config: MPU6050 configuration
        """
        self.config = config if config else MPU6050Config()
        self.alpha = self.config.smoothing_alpha
        self._smoothed = RESTING_GRAVITY

        logger.debug(f"Signal conditioner initialized (alpha={self.alpha})")

    @property
    def smoothed(self) -> Vector3:
        return self._smoothed

    def reset(self):
        """Return to the resting-gravity state"""
        self._smoothed = RESTING_GRAVITY

    def condition(self, reading: Reading, converted: Optional[ConvertedVector] = None) -> ConditionedSample:
        """
        Condition one reading and advance the filter state

        Args:
            reading: Raw reading
            converted: Already converted vectors, converted here if omitted

        Returns:
            ConditionedSample for the reading
        """
        if converted is None:
            converted = self._convert(reading)

        raw = converted.acceleration
        previous = self._smoothed
        smoothed = Vector3(
            previous.x + self.alpha * (raw.x - previous.x),
            previous.y + self.alpha * (raw.y - previous.y),
            previous.z + self.alpha * (raw.z - previous.z),
        )
        self._smoothed = smoothed

        return self._build_sample(reading, smoothed, converted)

    def condition_batch(self, readings: Sequence[Reading]) -> List[ConditionedSample]:
        """
        Condition a backfill of readings in one pass

        Equivalent to calling condition() for each reading in order; the
        carried state ends at the last filtered value.

        Args:
            readings: Readings in timestamp order

        Returns:
            List of ConditionedSamples
        """
        if not readings:
            return []

        converted = [self._convert(r) for r in readings]
        raw = np.array([c.acceleration.as_tuple() for c in converted])

        # y[n] = alpha * x[n] + (1 - alpha) * y[n-1]
        b = [self.alpha]
        a = [1.0, -(1.0 - self.alpha)]
        zi = (1.0 - self.alpha) * np.array([self._smoothed.as_tuple()])
        filtered, _ = signal.lfilter(b, a, raw, axis=0, zi=zi)

        samples = []
        for reading, conv, row in zip(readings, converted, filtered):
            smoothed = Vector3(float(row[0]), float(row[1]), float(row[2]))
            samples.append(self._build_sample(reading, smoothed, conv))

        self._smoothed = samples[-1].acceleration
        logger.debug(f"Conditioned batch of {len(samples)} readings")
        return samples

    def _convert(self, reading: Reading) -> ConvertedVector:
        return convert(
            reading,
            accel_sensitivity=self.config.accel_sensitivity,
            gyro_sensitivity=self.config.gyro_sensitivity,
        )

    @staticmethod
    def _build_sample(reading: Reading, smoothed: Vector3, converted: ConvertedVector) -> ConditionedSample:
        pitch, roll = orientation(smoothed)
        return ConditionedSample(
            acceleration=smoothed,
            raw_acceleration=converted.acceleration,
            angular_rate=converted.angular_rate,
            pitch=pitch,
            roll=roll,
            timestamp=reading.timestamp,
            latitude=reading.latitude,
            longitude=reading.longitude,
            reading=reading,
        )

    def __repr__(self):
        s = self._smoothed
        return f"<SignalConditioner(smoothed=({s.x:.3f}, {s.y:.3f}, {s.z:.3f}))>"

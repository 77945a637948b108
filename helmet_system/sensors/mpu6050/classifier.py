"""
MPU6050 Accident Classifier
Sliding detection window and impact/orientation based accident scoring
"""

import logging
from collections import deque
from typing import List, Optional

import numpy as np

from helmet_system.types import Assessment, ConditionedSample

from .config import MPU6050Config

logger = logging.getLogger(__name__)


class DetectionWindow:
    """
    Bounded, time-ordered buffer of conditioned samples

    Samples are strictly ordered by timestamp. The oldest sample is evicted
    first when either the capacity or the duration is exceeded. Owned by a
    single stream worker; not safe for concurrent mutation.
    """

    def __init__(self, capacity: int, max_duration_seconds: float):
        self.capacity = capacity
        self.max_duration_seconds = max_duration_seconds
        self._samples: deque = deque(maxlen=capacity)

    @classmethod
    def from_config(cls, config: MPU6050Config) -> 'DetectionWindow':
        return cls(config.window_capacity, config.window_duration_seconds)

    def append(self, sample: ConditionedSample) -> bool:
        """
        Add a sample, evicting expired ones

        Args:
            sample: Newest conditioned sample

        Returns:
            False if the sample is not newer than the last one (window unchanged)
        """
        if self._samples and sample.timestamp <= self._samples[-1].timestamp:
            logger.warning(
                f"Out-of-order sample rejected: {sample.timestamp.isoformat()} "
                f"<= {self._samples[-1].timestamp.isoformat()}"
            )
            return False

        self._samples.append(sample)

        while len(self._samples) > 1:
            age = (sample.timestamp - self._samples[0].timestamp).total_seconds()
            if age <= self.max_duration_seconds:
                break
            self._samples.popleft()

        return True

    def clear(self):
        self._samples.clear()

    def samples(self) -> List[ConditionedSample]:
        return list(self._samples)

    def latest(self) -> Optional[ConditionedSample]:
        return self._samples[-1] if self._samples else None

    def magnitudes(self) -> np.ndarray:
        """Unfiltered acceleration magnitudes (g), oldest first."""
        return np.array([s.raw_acceleration.magnitude() for s in self._samples])

    def rotation_rates(self) -> np.ndarray:
        """Angular rate magnitudes (°/s), oldest first."""
        return np.array([s.angular_rate.magnitude() for s in self._samples])

    def __len__(self):
        return len(self._samples)

    def __repr__(self):
        return f"<DetectionWindow(samples={len(self._samples)}, capacity={self.capacity})>"


class AccidentClassifier:
    """
    Stateless accident classifier over a DetectionWindow

    History score:
    - Deviation of the acceleration magnitude from the 1g resting baseline
    - Spread (std) of the magnitude across the window
    - Peak rotation rate

    A history-based accident requires the deviation to stay above the impact
    threshold for a minimum run of consecutive samples.

    Orientation overrides are evaluated on every sample from the filtered
    z-acceleration and apply regardless of window size.
    """

    def __init__(self, config: Optional[MPU6050Config] = None):
        self.config = config if config else MPU6050Config()

    def assess(self, window: DetectionWindow, latest: ConditionedSample) -> Assessment:
        """
        Score the current window

        Args:
            window: Detection window, already containing ``latest``
            latest: Most recent conditioned sample

        Returns:
            Assessment with danger percentage and trigger flags
        """
        cfg = self.config
        sample_count = len(window)

        history_score = 0
        is_accident = False

        if sample_count >= cfg.min_window_size:
            magnitudes = window.magnitudes()
            deviation = np.abs(magnitudes - cfg.gravity_g)

            history_score = self._history_score(deviation, magnitudes, window.rotation_rates())
            consecutive = self._trailing_run(deviation >= cfg.impact_threshold_g)
            is_accident = consecutive >= cfg.min_consecutive_samples

            if is_accident:
                logger.debug(
                    f"Impact sustained for {consecutive} samples "
                    f"(peak deviation {deviation.max():.2f}g)"
                )

        z = latest.acceleration.z
        upside_down = z < cfg.upside_down_z_g
        tipped_over = (not upside_down) and abs(z) < cfg.tipped_over_z_g

        if upside_down:
            danger = 100
        elif tipped_over:
            danger = max(history_score, cfg.tipped_over_min_danger)
        else:
            danger = history_score

        return Assessment(
            danger_percentage=int(min(max(danger, 0), 100)),
            is_accident=is_accident,
            upside_down=upside_down,
            tipped_over=tipped_over,
            history_score=history_score,
            sample_count=sample_count,
        )

    def _history_score(self, deviation: np.ndarray, magnitudes: np.ndarray, rotation: np.ndarray) -> int:
        cfg = self.config

        impact = min(1.0, float(deviation.max()) / cfg.impact_saturation_g)
        spread = min(1.0, float(np.std(magnitudes)) / cfg.variance_saturation_g)
        spin = min(1.0, float(rotation.max()) / cfg.rotation_saturation_dps) if rotation.size else 0.0

        score = 100.0 * (
            cfg.impact_weight * impact +
            cfg.variance_weight * spread +
            cfg.rotation_weight * spin
        )
        return int(round(min(max(score, 0.0), 100.0)))

    @staticmethod
    def _trailing_run(flags: np.ndarray) -> int:
        """Length of the run of True values ending at the newest sample."""
        run = 0
        for flag in flags[::-1]:
            if not flag:
                break
            run += 1
        return run

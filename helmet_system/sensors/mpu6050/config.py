"""
MPU6050 Sensor Configuration
Scale factors, smoothing and accident classifier parameters
"""

from dataclasses import dataclass

from .converter import ACCEL_COUNTS_PER_G, GYRO_COUNTS_PER_DPS


@dataclass
class MPU6050Config:
    """MPU6050 stream conditioning and classification parameters"""

    # Operating mode
    mode: str = 'session'  # 'calibration' or 'session'

    # Sampling settings
    sample_rate: int = 20  # Hz, helmet unit publishes every 50ms

    # Accelerometer settings
    accel_sensitivity: float = ACCEL_COUNTS_PER_G  # LSB/g for ±2g range
    gravity_g: float = 1.0  # resting magnitude

    # Gyroscope settings
    gyro_sensitivity: float = GYRO_COUNTS_PER_DPS  # LSB/(°/s) for ±250°/s range

    # Raw counts outside ±raw_count_limit are rejected before the pipeline
    raw_count_limit: int = 32768

    # Exponential smoothing factor for acceleration
    smoothing_alpha: float = 0.1

    # Detection window
    window_capacity: int = 50  # samples
    window_duration_seconds: float = 2.5
    min_window_size: int = 3  # below this the classifier reports no accident

    # History-based impact score
    impact_threshold_g: float = 1.5  # deviation from 1g that counts as impact
    min_consecutive_samples: int = 3  # rejects single-sample spikes
    impact_saturation_g: float = 4.0
    variance_saturation_g: float = 1.0
    rotation_saturation_dps: float = 250.0
    impact_weight: float = 0.6
    variance_weight: float = 0.25
    rotation_weight: float = 0.15

    # Orientation overrides (filtered z-acceleration, g)
    upside_down_z_g: float = -0.5
    tipped_over_z_g: float = 0.4
    tipped_over_min_danger: int = 80

    # Liveness
    stale_after_seconds: float = 5.0

    @property
    def collection_interval(self) -> float:
        """Expected seconds between samples."""
        return 1.0 / self.sample_rate

    @classmethod
    def for_calibration(cls) -> 'MPU6050Config':
        """
        Create a configuration for bench calibration.

        Uses lighter smoothing so the live orientation tracks the unit quickly.

        Returns:
            MPU6050Config with mode='calibration'.
        """
        return cls(
            mode='calibration',
            smoothing_alpha=0.3,
        )

    @classmethod
    def for_session(cls) -> 'MPU6050Config':
        """
        Create a configuration for live monitoring.

        Returns:
            MPU6050Config with mode='session' and default thresholds.
        """
        return cls(mode='session')

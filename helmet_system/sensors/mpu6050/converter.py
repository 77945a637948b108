"""
MPU6050 Unit Converter
Raw signed counts to g-force and degrees/second
"""

from helmet_system.types import ConvertedVector, Reading, Vector3

# ±2g accelerometer range
ACCEL_COUNTS_PER_G = 16384.0

# ±250°/s gyroscope range
GYRO_COUNTS_PER_DPS = 131.0


def convert(
        reading: Reading,
        accel_sensitivity: float = ACCEL_COUNTS_PER_G,
        gyro_sensitivity: float = GYRO_COUNTS_PER_DPS
) -> ConvertedVector:
    """
    Convert a raw reading to physical units

    Args:
        reading: Raw sensor reading
        accel_sensitivity: Counts per g for the configured accelerometer range
        gyro_sensitivity: Counts per °/s for the configured gyroscope range

    Returns:
        ConvertedVector with acceleration in g and angular rate in °/s
    """
    acceleration = Vector3(
        reading.acc_x / accel_sensitivity,
        reading.acc_y / accel_sensitivity,
        reading.acc_z / accel_sensitivity,
    )
    angular_rate = Vector3(
        reading.gyro_x / gyro_sensitivity,
        reading.gyro_y / gyro_sensitivity,
        reading.gyro_z / gyro_sensitivity,
    )
    return ConvertedVector(acceleration=acceleration, angular_rate=angular_rate)


def to_counts(vector: Vector3, sensitivity: float) -> tuple:
    """Inverse of the conversion, rounded to whole counts."""
    return tuple(int(round(v * sensitivity)) for v in vector.as_tuple())

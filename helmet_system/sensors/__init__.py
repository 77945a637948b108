"""
Helmet Guard Sensors
Motion stream processing

Available Sensors:
- MPU6050: 3-axis accelerometer and gyroscope (helmet unit, ~20 Hz)

All sensors support:
- Unit conversion from raw counts
- Per-stream conditioning and windowed classification
- Coordinator-driven escalation
"""

from .mpu6050 import StreamCollector, SignalConditioner, AccidentClassifier, MPU6050Config

__all__ = [
    # MPU6050 (Accelerometer + Gyroscope)
    'StreamCollector',
    'SignalConditioner',
    'AccidentClassifier',
    'MPU6050Config',
]

__version__ = '1.0.0'

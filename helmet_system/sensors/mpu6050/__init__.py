"""
MPU6050 Sensor Module for Helmet Guard
3-axis Accelerometer and Gyroscope accident detection

Architecture:
- Converter: Raw counts to g and °/s
- Processor: Exponential smoothing and pitch/roll orientation
- Classifier: Detection window and accident scoring
- Collector: Serial per-stream worker feeding the escalation coordinator

Usage:
    coordinator = EscalationCoordinator(device_id, repository, dispatcher)
    collector = StreamCollector(device_id, source, coordinator)
    collector.start()
    # ... readings flow in through source ...
    collector.stop()
"""

from .classifier import AccidentClassifier, DetectionWindow
from .collector import StreamCollector
from .config import MPU6050Config
from .converter import ACCEL_COUNTS_PER_G, GYRO_COUNTS_PER_DPS, convert
from .processor import SignalConditioner

__all__ = [
    'AccidentClassifier',
    'DetectionWindow',
    'StreamCollector',
    'MPU6050Config',
    'ACCEL_COUNTS_PER_G',
    'GYRO_COUNTS_PER_DPS',
    'convert',
    'SignalConditioner',
]

__version__ = '1.0.0'

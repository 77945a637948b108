"""
Helmet Guard - Core Data Types
Readings, conditioned samples, classifier assessments and accident events
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple


DEFAULT_DEVICE_ID = 'helmet-01'


@dataclass(frozen=True)
class Vector3:
    """Three-axis vector in physical units"""

    x: float
    y: float
    z: float

    def magnitude(self) -> float:
        return math.sqrt(self.x ** 2 + self.y ** 2 + self.z ** 2)

    def as_tuple(self) -> Tuple[float, float, float]:
        return (self.x, self.y, self.z)


@dataclass(frozen=True)
class Reading:
    """
    One raw sample from the helmet unit

    Accelerometer and gyroscope values are raw signed counts exactly as the
    sensor reported them. ``valid`` is the GPS fix flag from the device and
    is carried through untouched.
    """

    acc_x: int
    acc_y: int
    acc_z: int
    gyro_x: int
    gyro_y: int
    gyro_z: int
    timestamp: datetime
    latitude: float
    longitude: float
    valid: bool = True
    device_id: str = DEFAULT_DEVICE_ID
    reading_id: Optional[int] = None

    def raw_counts(self) -> dict:
        return {
            'acc_x': self.acc_x,
            'acc_y': self.acc_y,
            'acc_z': self.acc_z,
            'gyro_x': self.gyro_x,
            'gyro_y': self.gyro_y,
            'gyro_z': self.gyro_z,
        }


@dataclass(frozen=True)
class ConvertedVector:
    """Reading converted to g (acceleration) and °/s (angular rate)"""

    acceleration: Vector3
    angular_rate: Vector3


@dataclass(frozen=True)
class ConditionedSample:
    """
    Filtered/derived form of a Reading

    ``acceleration`` is the low-pass filtered vector used for orientation,
    ``raw_acceleration`` the unfiltered converted vector used for impact
    statistics. Angular rate is never filtered.
    """

    acceleration: Vector3
    raw_acceleration: Vector3
    angular_rate: Vector3
    pitch: float
    roll: float
    timestamp: datetime
    latitude: float
    longitude: float
    reading: Reading

    def to_record(self) -> dict:
        """Live-visualization record for downstream consumers."""
        return {
            'deviceId': self.reading.device_id,
            'timestamp': self.timestamp.isoformat(),
            'lat': self.latitude,
            'lon': self.longitude,
            'accelerometer': {
                'x': self.acceleration.x,
                'y': self.acceleration.y,
                'z': self.acceleration.z,
            },
            'gyroscope': {
                'x': self.angular_rate.x,
                'y': self.angular_rate.y,
                'z': self.angular_rate.z,
            },
            'pitch': self.pitch,
            'roll': self.roll,
            'valid': self.reading.valid,
        }


@dataclass(frozen=True)
class Assessment:
    """Accident classifier output for one sample"""

    danger_percentage: int
    is_accident: bool
    upside_down: bool = False
    tipped_over: bool = False
    history_score: int = 0
    sample_count: int = 0

    @property
    def triggered(self) -> bool:
        return self.is_accident or self.upside_down or self.tipped_over


class EventStatus(Enum):
    PENDING = 'pending'
    CANCELLED = 'cancelled'
    CONFIRMED = 'confirmed'

    @property
    def is_terminal(self) -> bool:
        return self is not EventStatus.PENDING


@dataclass
class AccidentEvent:
    """
    Accident event owned by the EscalationCoordinator

    Only the coordinator mutates an event; once ``status`` is terminal the
    event is never touched again.
    """

    event_id: str
    danger_percentage: int
    reading: Reading
    created_at: datetime
    deadline_at: datetime
    status: EventStatus = EventStatus.PENDING
    resolved_at: Optional[datetime] = None
    device_id: str = DEFAULT_DEVICE_ID
    # Warned once about duplicate triggers while pending
    duplicate_warned: bool = field(default=False, repr=False, compare=False)

    def to_record(self) -> dict:
        """Terminal subscription record for downstream display."""
        return {
            'id': self.event_id,
            'status': self.status.value,
            'dangerPercentage': self.danger_percentage,
            'createdAt': self.created_at.isoformat(),
            'resolvedAt': self.resolved_at.isoformat() if self.resolved_at else None,
        }

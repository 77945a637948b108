"""
Helmet Guard - ORM Models
Sensor readings and accident events
"""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, JSON, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utc_now():
    return datetime.now(timezone.utc)


class SensorData(Base):
    """One raw reading as inserted by the relay."""
    __tablename__ = "sensor_data"

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(String(64), nullable=False, default='helmet-01', index=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    acc_x = Column(Integer, nullable=False)
    acc_y = Column(Integer, nullable=False)
    acc_z = Column(Integer, nullable=False)
    gyro_x = Column(Integer, nullable=False)
    gyro_y = Column(Integer, nullable=False)
    gyro_z = Column(Integer, nullable=False)
    valid = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utc_now, index=True)

    __table_args__ = (
        Index('idx_device_time', 'device_id', 'created_at'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "device_id": self.device_id,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "acc_x": self.acc_x,
            "acc_y": self.acc_y,
            "acc_z": self.acc_z,
            "gyro_x": self.gyro_x,
            "gyro_y": self.gyro_y,
            "gyro_z": self.gyro_z,
            "valid": self.valid,
            "created_at": self.created_at,
        }


class AccidentEventRecord(Base):
    """Accident event lifecycle: pending -> cancelled | confirmed."""
    __tablename__ = "accident_events"

    id = Column(String(36), primary_key=True)
    device_id = Column(String(64), nullable=False, index=True)
    danger_percentage = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, index=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    raw_counts = Column(JSON, nullable=True)
    reading_time = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    deadline_at = Column(DateTime(timezone=True), nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('idx_device_event_time', 'device_id', 'created_at'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "device_id": self.device_id,
            "status": self.status,
            "dangerPercentage": self.danger_percentage,
            "lat": self.latitude,
            "lon": self.longitude,
            "rawCounts": self.raw_counts,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "deadlineAt": self.deadline_at.isoformat() if self.deadline_at else None,
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
        }

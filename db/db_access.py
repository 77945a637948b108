"""
Helmet Guard - Database Access Layer
Wraps the ORM models to provide the persistence contract used by the core:
- Reading insert / latest / bounded history / polling
- Accident event insert and status updates with retry
- Insert subscriptions (push channel for newly stored readings)
"""

import dataclasses
import logging
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from helmet_system.sources import MalformedReadingError, parse_reading
from helmet_system.types import AccidentEvent, DEFAULT_DEVICE_ID, Reading

from .connection import get_db_connection
from .models import AccidentEventRecord, Base, SensorData

logger = logging.getLogger(__name__)

# DB settings
DB_CONFIG = {
    'url':            os.environ.get('HELMET_DB_URL', 'sqlite:///helmet_guard.db'),
    'retry_attempts': 3,
    'retry_backoff':  0.5,
    'create_tables':  True,
}

# Event columns an update may touch
_UPDATABLE_EVENT_FIELDS = {'status', 'resolved_at', 'danger_percentage'}


class HelmetDB:
    """
    Database access layer for Helmet Guard.

    Each operation opens its own short-lived session, so the stream worker,
    the countdown timers and the persistence writer can share one instance.
    Event writes are retried; a permanent failure is logged and reported
    through the return value, never raised.

    Usage:
        db = HelmetDB({'url': 'sqlite:///helmet_guard.db'})
        db.insert_reading(message)
        history = db.get_reading_history('helmet-01', days=7)
        db.close()
    """

    def __init__(self, config: dict = None):
        cfg = dict(DB_CONFIG)
        cfg.update(config or {})

        self.retry_attempts = max(1, int(cfg['retry_attempts']))
        self.retry_backoff = float(cfg['retry_backoff'])
        self._listeners: List[Callable[[Reading], None]] = []

        try:
            self.engine, self.Session = get_db_connection(cfg['url'])
            if cfg.get('create_tables', True):
                self.init_db()
            logger.info("✓ Connected to helmet database")
        except Exception as e:
            logger.error(f"✗ Failed to connect to helmet database: {e}")
            raise

    def init_db(self):
        """Create all tables that do not exist yet."""
        Base.metadata.create_all(bind=self.engine)

    # ------------------------------------------------------------------
    # Readings
    # ------------------------------------------------------------------

    def insert_reading(self, record: Union[Reading, Dict[str, Any]],
                       device_id: str = DEFAULT_DEVICE_ID) -> Optional[int]:
        """
        Store one reading and notify insert subscribers.
        Args:
            record:    Reading or inbound feed message.
            device_id: Stream the reading belongs to when the message names none.
        Returns:
            Row id if stored, None if the record was malformed or the write failed.
        """
        if isinstance(record, Reading):
            reading = record
        else:
            try:
                reading = parse_reading(record, device_id=device_id)
            except MalformedReadingError as e:
                logger.warning(f"⚠ Malformed reading not stored: {e}")
                return None

        session = self.Session()
        try:
            row = SensorData(
                device_id=reading.device_id,
                latitude=reading.latitude,
                longitude=reading.longitude,
                valid=reading.valid,
                created_at=reading.timestamp,
                **reading.raw_counts(),
            )
            session.add(row)
            session.commit()
            row_id = row.id
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"✗ Failed to store reading: {e}")
            return None
        finally:
            session.close()

        stored = dataclasses.replace(reading, reading_id=row_id)
        for callback in list(self._listeners):
            try:
                callback(stored)
            except Exception as e:
                logger.error(f"Reading subscriber failed: {e}", exc_info=True)

        return row_id

    def subscribe(self, callback: Callable[[Reading], None]) -> Callable[[], None]:
        """
        Receive every reading stored through this instance.
        Args:
            callback: Called with the stored Reading (reading_id set).
        Returns:
            Function that removes the subscription.
        """
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def get_latest_reading(self, device_id: str = DEFAULT_DEVICE_ID) -> Optional[Reading]:
        """
        Fetch the most recent reading for a device.
        Args:
            device_id: Monitored stream.
        Returns:
            Reading if one exists, None otherwise.
        """
        try:
            with self.Session() as session:
                row = (session.query(SensorData)
                       .filter(SensorData.device_id == device_id)
                       .order_by(SensorData.created_at.desc(), SensorData.id.desc())
                       .first())
                return self._to_reading(row) if row else None
        except SQLAlchemyError as e:
            logger.error(f"Error fetching latest reading for {device_id}: {e}")
            return None

    def get_reading_history(self, device_id: str = DEFAULT_DEVICE_ID,
                            days: int = 7, limit: int = 2000) -> List[Reading]:
        """
        Bounded recent history for path display and backfill.
        Args:
            device_id: Monitored stream.
            days:      How far back to look.
            limit:     Maximum readings returned (most recent kept).
        Returns:
            Readings oldest first.
        """
        since = datetime.now(timezone.utc) - timedelta(days=days)
        readings = self.query(device_id=device_id, since=since, limit=limit, newest_first=True)
        readings.reverse()
        return readings

    def poll_readings(self, device_id: str = DEFAULT_DEVICE_ID,
                      after_id: int = 0, limit: int = 500) -> List[Reading]:
        """
        Readings stored after a given row id, in insertion order.
        Args:
            device_id: Monitored stream.
            after_id:  Last row id already seen.
            limit:     Maximum readings returned.
        Returns:
            List of Readings.
        """
        try:
            with self.Session() as session:
                rows = (session.query(SensorData)
                        .filter(SensorData.device_id == device_id, SensorData.id > after_id)
                        .order_by(SensorData.id)
                        .limit(limit)
                        .all())
                return self._to_readings(rows)
        except SQLAlchemyError as e:
            logger.error(f"Error polling readings for {device_id}: {e}")
            return []

    def query(self, device_id: Optional[str] = None, since: Optional[datetime] = None,
              until: Optional[datetime] = None, limit: Optional[int] = None,
              newest_first: bool = False) -> List[Reading]:
        """
        Filtered reading query.
        Args:
            device_id:    Restrict to one stream.
            since:        Inclusive lower bound on created_at.
            until:        Inclusive upper bound on created_at.
            limit:        Maximum readings returned.
            newest_first: Order by created_at descending.
        Returns:
            List of Readings.
        """
        try:
            with self.Session() as session:
                q = session.query(SensorData)
                if device_id:
                    q = q.filter(SensorData.device_id == device_id)
                if since:
                    q = q.filter(SensorData.created_at >= since)
                if until:
                    q = q.filter(SensorData.created_at <= until)

                if newest_first:
                    q = q.order_by(SensorData.created_at.desc(), SensorData.id.desc())
                else:
                    q = q.order_by(SensorData.created_at, SensorData.id)

                if limit:
                    q = q.limit(limit)

                return self._to_readings(q.all())
        except SQLAlchemyError as e:
            logger.error(f"Error querying readings: {e}")
            return []

    # ------------------------------------------------------------------
    # Accident events
    # ------------------------------------------------------------------

    def insert(self, event: AccidentEvent) -> Optional[str]:
        """
        Persist a newly created accident event.
        Args:
            event: Event snapshot taken at creation.
        Returns:
            Event id if stored, None after the final failed attempt.
        """
        def write(session):
            session.add(AccidentEventRecord(
                id=event.event_id,
                device_id=event.device_id,
                danger_percentage=event.danger_percentage,
                status=event.status.value,
                latitude=event.reading.latitude,
                longitude=event.reading.longitude,
                raw_counts=event.reading.raw_counts(),
                reading_time=event.reading.timestamp,
                created_at=event.created_at,
                deadline_at=event.deadline_at,
                resolved_at=event.resolved_at,
            ))
            return event.event_id

        result = self._with_retry(write, f"insert event {event.event_id}")
        if result:
            logger.info(f"✓ Stored event {event.event_id} ({event.status.value})")
        return result

    def update(self, event_id: str, fields: Dict[str, Any]) -> bool:
        """
        Update an accident event's status fields.
        Args:
            event_id: Event to update.
            fields:   Column values, e.g. {'status': 'cancelled', 'resolved_at': ...}.
        Returns:
            True if the row was updated.
        """
        unknown = set(fields) - _UPDATABLE_EVENT_FIELDS
        if unknown:
            logger.warning(f"⚠ Ignoring non-updatable event fields: {sorted(unknown)}")
        values = {k: v for k, v in fields.items() if k in _UPDATABLE_EVENT_FIELDS}

        def write(session):
            record = session.get(AccidentEventRecord, event_id)
            if record is None:
                logger.error(f"✗ Event {event_id} not found for update")
                return False
            for key, value in values.items():
                setattr(record, key, value)
            return True

        result = self._with_retry(write, f"update event {event_id}")
        if result:
            logger.info(f"✓ Updated event {event_id}: {values.get('status', '')}")
        return bool(result)

    def get_event(self, event_id: str) -> Optional[dict]:
        try:
            with self.Session() as session:
                record = session.get(AccidentEventRecord, event_id)
                return record.to_dict() if record else None
        except SQLAlchemyError as e:
            logger.error(f"Error fetching event {event_id}: {e}")
            return None

    def get_events(self, device_id: Optional[str] = None, status: Optional[str] = None,
                   limit: int = 50) -> List[dict]:
        """
        Recent accident events, newest first.
        Args:
            device_id: Restrict to one stream.
            status:    Restrict to one status.
            limit:     Maximum events returned.
        Returns:
            List of event dicts.
        """
        try:
            with self.Session() as session:
                q = session.query(AccidentEventRecord)
                if device_id:
                    q = q.filter(AccidentEventRecord.device_id == device_id)
                if status:
                    q = q.filter(AccidentEventRecord.status == status)
                rows = q.order_by(AccidentEventRecord.created_at.desc()).limit(limit).all()
                return [r.to_dict() for r in rows]
        except SQLAlchemyError as e:
            logger.error(f"Error fetching events: {e}")
            return []

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _with_retry(self, operation: Callable, description: str):
        for attempt in range(1, self.retry_attempts + 1):
            session = self.Session()
            try:
                result = operation(session)
                session.commit()
                return result
            except SQLAlchemyError as e:
                session.rollback()
                logger.warning(f"⚠ {description} failed (attempt {attempt}/{self.retry_attempts}): {e}")
                if attempt < self.retry_attempts:
                    time.sleep(self.retry_backoff * attempt)
            finally:
                session.close()

        logger.error(f"✗ {description} failed permanently")
        return None

    @staticmethod
    def _to_reading(row: SensorData) -> Optional[Reading]:
        try:
            return parse_reading(row.to_dict())
        except MalformedReadingError as e:
            logger.warning(f"⚠ Skipping stored reading {row.id}: {e}")
            return None

    def _to_readings(self, rows) -> List[Reading]:
        readings = (self._to_reading(row) for row in rows)
        return [r for r in readings if r is not None]

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def close(self):
        """
        Dispose of the engine's connection pool.
        Returns:
            None.
        """
        try:
            self.engine.dispose()
            logger.info("✓ DB connections closed")
        except Exception as e:
            logger.error(f"Error closing DB connections: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

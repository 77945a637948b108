"""
Helmet Guard - Stream Sources
Reading validation plus live, historical and polled reading feeds

Every source exposes the same pull interface used by the stream worker:
    reading = source.get(timeout=0.5)   # next Reading in arrival order, or None
"""

import logging
import math
import queue
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union

from helmet_system.types import DEFAULT_DEVICE_ID, Reading

logger = logging.getLogger(__name__)

# Inbound feed field -> Reading field
FEED_FIELDS = {
    'accX': 'acc_x',
    'accY': 'acc_y',
    'accZ': 'acc_z',
    'gyroX': 'gyro_x',
    'gyroY': 'gyro_y',
    'gyroZ': 'gyro_z',
    'lat': 'latitude',
    'lon': 'longitude',
}

COUNT_FIELDS = ('acc_x', 'acc_y', 'acc_z', 'gyro_x', 'gyro_y', 'gyro_z')

# int16 full scale
DEFAULT_RAW_COUNT_LIMIT = 32768

# Numeric timestamps above this are epoch milliseconds
_EPOCH_MS_THRESHOLD = 1e11

_CLOSED = object()


class MalformedReadingError(ValueError):
    """Reading rejected before entering the pipeline"""


def parse_reading(
        record: Mapping[str, Any],
        device_id: str = DEFAULT_DEVICE_ID,
        clock=None,
        raw_count_limit: int = DEFAULT_RAW_COUNT_LIMIT
) -> Reading:
    """
    Validate an inbound record and build a Reading

    Accepts both the device feed message
    ``{lat, lon, accX, accY, accZ, gyroX, gyroY, gyroZ, valid, timestamp}``
    and stored rows using column names (``acc_x``, ``latitude``, ``created_at``...).
    ``valid=False`` records are still delivered.

    Args:
        record: Inbound message or stored row
        device_id: Stream the reading belongs to, unless the record names one
        clock: CentralClock used for arrival time when the record has no timestamp
        raw_count_limit: Largest accepted absolute raw count

    Returns:
        Reading

    Raises:
        MalformedReadingError: Missing, non-numeric or out-of-range fields
    """
    if not isinstance(record, Mapping):
        raise MalformedReadingError(f"Expected a mapping, got {type(record).__name__}")

    fields = {}
    for key, value in record.items():
        fields[FEED_FIELDS.get(key, key)] = value

    counts = {}
    for name in COUNT_FIELDS:
        counts[name] = _parse_count(name, fields.get(name), raw_count_limit)

    latitude = _parse_coordinate('latitude', fields.get('latitude'), 90.0)
    longitude = _parse_coordinate('longitude', fields.get('longitude'), 180.0)

    raw_timestamp = fields.get('timestamp', fields.get('created_at'))
    if raw_timestamp is None:
        timestamp = clock.now() if clock is not None else datetime.now(timezone.utc)
    else:
        timestamp = _parse_timestamp(raw_timestamp)

    reading_id = fields.get('id')

    return Reading(
        timestamp=timestamp,
        latitude=latitude,
        longitude=longitude,
        valid=_parse_flag('valid', fields.get('valid', True)),
        device_id=fields.get('device_id') or device_id,
        reading_id=int(reading_id) if isinstance(reading_id, int) else None,
        **counts,
    )


def _parse_count(name: str, value: Any, limit: int) -> int:
    if value is None:
        raise MalformedReadingError(f"Missing field '{name}'")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedReadingError(f"Field '{name}' is not numeric: {value!r}")
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            raise MalformedReadingError(f"Field '{name}' is not a whole count: {value!r}")
        value = int(value)
    if abs(value) > limit:
        raise MalformedReadingError(f"Field '{name}' out of range: {value}")
    return value


def _parse_coordinate(name: str, value: Any, bound: float) -> float:
    if value is None:
        raise MalformedReadingError(f"Missing field '{name}'")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedReadingError(f"Field '{name}' is not numeric: {value!r}")
    value = float(value)
    if not math.isfinite(value) or abs(value) > bound:
        raise MalformedReadingError(f"Field '{name}' out of range: {value}")
    return value


def _parse_flag(name: str, value: Any) -> bool:
    # Booleans, or the integers 0 and 1
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise MalformedReadingError(f"Field '{name}' is not a boolean: {value!r}")


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        raise MalformedReadingError(f"Invalid timestamp: {value!r}")
    elif isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise MalformedReadingError(f"Invalid timestamp: {value!r}")
        seconds = value / 1000.0 if value > _EPOCH_MS_THRESHOLD else float(value)
        try:
            parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise MalformedReadingError(f"Timestamp out of range: {value!r}")
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            raise MalformedReadingError(f"Invalid timestamp: {value!r}")
    else:
        raise MalformedReadingError(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class LiveReadingSource:
    """
    Bounded push channel for newly arrived readings

    Producers call publish(); the single stream worker calls get(). Readings
    come out exactly once, in the order they were published.
    """

    def __init__(
            self,
            device_id: str = DEFAULT_DEVICE_ID,
            maxsize: int = 1000,
            put_timeout: float = 1.0,
            clock=None,
            raw_count_limit: int = DEFAULT_RAW_COUNT_LIMIT
    ):
        self.device_id = device_id
        self.put_timeout = put_timeout
        self.clock = clock
        self.raw_count_limit = raw_count_limit

        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._closed = False

        self.published_count = 0
        self.rejected_count = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, record: Union[Reading, Mapping[str, Any]]) -> bool:
        """
        Validate and enqueue one record

        Args:
            record: Reading or raw inbound message

        Returns:
            True if the reading was enqueued
        """
        if self._closed:
            logger.warning(f"Source for {self.device_id} closed, reading dropped")
            return False

        if isinstance(record, Reading):
            reading = record
        else:
            try:
                reading = parse_reading(
                    record,
                    device_id=self.device_id,
                    clock=self.clock,
                    raw_count_limit=self.raw_count_limit,
                )
            except MalformedReadingError as e:
                self.rejected_count += 1
                logger.warning(f"⚠ Malformed reading rejected for {self.device_id}: {e}")
                return False

        if reading.device_id != self.device_id:
            self.rejected_count += 1
            logger.warning(f"⚠ Reading for {reading.device_id} rejected by source for {self.device_id}")
            return False

        try:
            self._queue.put(reading, timeout=self.put_timeout)
        except queue.Full:
            self.rejected_count += 1
            logger.error(f"✗ Reading queue full for {self.device_id}, reading dropped")
            return False

        self.published_count += 1
        return True

    def get(self, timeout: Optional[float] = None) -> Optional[Reading]:
        """
        Next reading in arrival order

        Args:
            timeout: Seconds to wait; None waits forever

        Returns:
            Reading, or None on timeout or once the source is closed
        """
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

        if item is _CLOSED:
            # Keep the marker visible to later callers
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except queue.Full:
            # Worker drains the backlog and stops on its own stop event
            pass

    def qsize(self) -> int:
        return self._queue.qsize()

    def __repr__(self):
        return f"<LiveReadingSource(device={self.device_id}, queued={self._queue.qsize()})>"


class HistoricalReadingSource:
    """
    Bounded backfill from the reading store

    Reads the last ``days`` of readings once (capped at ``limit`` rows) and
    delivers them oldest first.
    """

    def __init__(self, db, device_id: str = DEFAULT_DEVICE_ID, days: int = 7, limit: int = 2000):
        self.db = db
        self.device_id = device_id
        self.days = days
        self.limit = limit
        self._pending: Optional[deque] = None

    def _load(self):
        readings = self.db.get_reading_history(self.device_id, days=self.days, limit=self.limit)
        self._pending = deque(readings)
        logger.info(f"Loaded {len(self._pending)} historical readings for {self.device_id} ({self.days} days)")

    @property
    def exhausted(self) -> bool:
        return self._pending is not None and not self._pending

    def get(self, timeout: Optional[float] = None) -> Optional[Reading]:
        if self._pending is None:
            self._load()
        if not self._pending:
            return None
        return self._pending.popleft()

    def drain(self) -> list:
        """All remaining readings at once (batch conditioning)."""
        if self._pending is None:
            self._load()
        readings = list(self._pending)
        self._pending.clear()
        return readings


class ReadingPoller:
    """
    Turns the reading store into a push channel

    Polls for rows newer than the last forwarded id and publishes them to a
    LiveReadingSource. Used when readings are inserted by another process.
    """

    def __init__(
            self,
            db,
            source: LiveReadingSource,
            device_id: str = DEFAULT_DEVICE_ID,
            interval: float = 0.5,
            batch_size: int = 500
    ):
        self.db = db
        self.source = source
        self.device_id = device_id
        self.interval = interval
        self.batch_size = batch_size

        self.last_id: Optional[int] = None
        self.forwarded_count = 0

        self.is_running = False
        self.stop_event = threading.Event()
        self.poll_thread = None

    def start(self):
        if self.is_running:
            logger.warning("Reading poller already running")
            return

        if self.last_id is None:
            latest = self.db.get_latest_reading(self.device_id)
            self.last_id = latest.reading_id if latest and latest.reading_id else 0

        self.is_running = True
        self.stop_event.clear()
        self.poll_thread = threading.Thread(
            target=self._poll_loop,
            name=f"{self.device_id}-Poll-Thread",
            daemon=True
        )
        self.poll_thread.start()
        logger.info(f"✓ Polling readings for {self.device_id} after id {self.last_id}")

    def stop(self):
        if not self.is_running:
            return
        self.stop_event.set()
        if self.poll_thread and self.poll_thread.is_alive():
            self.poll_thread.join(timeout=5)
        self.is_running = False
        logger.info(f"✓ Reading poller stopped ({self.forwarded_count} forwarded)")

    def poll_once(self) -> int:
        """
        Forward one batch of new rows; returns how many were forwarded

        Stops at the first row the source refuses, so the next poll retries it.
        """
        readings = self.db.poll_readings(self.device_id, after_id=self.last_id or 0, limit=self.batch_size)
        forwarded = 0
        for reading in readings:
            if not self.source.publish(reading):
                logger.warning(f"⚠ Row {reading.reading_id} not forwarded, retrying on next poll")
                break
            self.last_id = reading.reading_id
            forwarded += 1
        self.forwarded_count += forwarded
        return forwarded

    def _poll_loop(self):
        while not self.stop_event.is_set():
            try:
                forwarded = self.poll_once()
                if forwarded >= self.batch_size:
                    continue
            except Exception as e:
                logger.error(f"Error polling readings: {e}", exc_info=True)
            self.stop_event.wait(self.interval)

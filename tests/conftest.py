"""
Shared fixtures for the helmet_system test suite
"""

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from db.db_access import HelmetDB
from helmet_system.coordinator.clock import CentralClock
from helmet_system.coordinator.config import EscalationConfig
from helmet_system.coordinator.coordinator import EscalationCoordinator
from helmet_system.sensors.mpu6050.config import MPU6050Config
from helmet_system.sensors.mpu6050.converter import ACCEL_COUNTS_PER_G, GYRO_COUNTS_PER_DPS
from helmet_system.sensors.mpu6050.processor import SignalConditioner
from helmet_system.types import Reading, Vector3

BASE_TIME = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
SAMPLE_SPACING = 0.05

# ~1.732g per axis, ~3g total
SPIKE_COUNTS = 28378


# ---------------------------------------------------------------------------
# Timers
# ---------------------------------------------------------------------------

class ManualTimer:
    """threading.Timer stand-in that only fires when the test says so"""

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = tuple(args or ())
        self.kwargs = dict(kwargs or {})
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self, force=False):
        """Run the callback unless cancelled (force runs it anyway)."""
        if self.cancelled and not force:
            return False
        self.fired = True
        self.function(*self.args, **self.kwargs)
        return True


class ManualTimerFactory:
    """Records every timer the coordinator creates"""

    def __init__(self):
        self.timers = []

    def __call__(self, interval, function, args=None, kwargs=None):
        timer = ManualTimer(interval, function, args=args, kwargs=kwargs)
        self.timers.append(timer)
        return timer

    def _named(self, name):
        return [t for t in self.timers if t.function.__name__ == name]

    def countdowns(self):
        return self._named('_on_countdown_expired')

    def releases(self):
        return self._named('_release_suppression')

    def last_countdown(self):
        return self.countdowns()[-1]

    def last_release(self):
        return self.releases()[-1]


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------

class RecordingDispatcher:
    """Notification dispatcher that records payloads instead of sending them"""

    def __init__(self, fail=False):
        self.fail = fail
        self.payloads = []
        self._lock = threading.Lock()

    def dispatch(self, payload):
        if self.fail:
            raise RuntimeError("notification endpoint unreachable")
        with self._lock:
            self.payloads.append(dict(payload))

    def stages(self):
        return [p['stage'] for p in self.payloads]


class FakeRepository:
    """Event store double (records every insert/update call)"""

    def __init__(self, fail_insert=False, fail_update=False):
        self.fail_insert = fail_insert
        self.fail_update = fail_update
        self.inserts = []
        self.updates = []

    def insert(self, event):
        if self.fail_insert:
            raise RuntimeError("store unavailable")
        self.inserts.append(event)
        return event.event_id

    def update(self, event_id, fields):
        if self.fail_update:
            return False
        self.updates.append((event_id, dict(fields)))
        return True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def sensor_config():
    return MPU6050Config.for_session()


@pytest.fixture
def escalation_config():
    return EscalationConfig(countdown_seconds=30.0, quiescence_seconds=5.0, contacts=['+15550100'])


@pytest.fixture
def clock():
    return CentralClock()


@pytest.fixture
def timers():
    return ManualTimerFactory()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def repository():
    return FakeRepository()


@pytest.fixture
def coordinator(repository, dispatcher, escalation_config, clock, timers):
    coord = EscalationCoordinator(
        device_id='helmet-test',
        repository=repository,
        dispatcher=dispatcher,
        config=escalation_config,
        clock=clock,
        timer_factory=timers,
    )
    yield coord
    coord.close()


@pytest.fixture
def helmet_db():
    db = HelmetDB({'url': 'sqlite://', 'retry_backoff': 0.0})
    yield db
    db.close()


@pytest.fixture
def make_reading():
    """
    Build a Reading from physical units.

    make_reading(index, az=1.0) gives a resting sample at BASE_TIME + index * 50 ms.
    """
    def _make(index=0, ax=0.0, ay=0.0, az=1.0, gyro=(0.0, 0.0, 0.0),
              lat=45.4642, lon=9.19, valid=True, device_id='helmet-test', timestamp=None):
        return Reading(
            acc_x=int(round(ax * ACCEL_COUNTS_PER_G)),
            acc_y=int(round(ay * ACCEL_COUNTS_PER_G)),
            acc_z=int(round(az * ACCEL_COUNTS_PER_G)),
            gyro_x=int(round(gyro[0] * GYRO_COUNTS_PER_DPS)),
            gyro_y=int(round(gyro[1] * GYRO_COUNTS_PER_DPS)),
            gyro_z=int(round(gyro[2] * GYRO_COUNTS_PER_DPS)),
            timestamp=timestamp or BASE_TIME + timedelta(seconds=index * SAMPLE_SPACING),
            latitude=lat,
            longitude=lon,
            valid=valid,
            device_id=device_id,
        )
    return _make


@pytest.fixture
def make_spike():
    """Reading with ~3g total acceleration (1.732g on every axis)."""
    def _make(index, device_id='helmet-test'):
        return Reading(
            acc_x=SPIKE_COUNTS, acc_y=SPIKE_COUNTS, acc_z=SPIKE_COUNTS,
            gyro_x=0, gyro_y=0, gyro_z=0,
            timestamp=BASE_TIME + timedelta(seconds=index * SAMPLE_SPACING),
            latitude=45.4642,
            longitude=9.19,
            device_id=device_id,
        )
    return _make


@pytest.fixture
def make_sample(make_reading, sensor_config):
    """
    Conditioned sample with an explicit filtered acceleration.

    Used where a test needs a particular orientation without waiting for
    the low-pass filter to converge.
    """
    def _make(index=0, raw=(0.0, 0.0, 1.0), filtered=None, gyro=(0.0, 0.0, 0.0)):
        conditioner = SignalConditioner(sensor_config)
        reading = make_reading(index, ax=raw[0], ay=raw[1], az=raw[2], gyro=gyro)
        smoothed = Vector3(*(filtered if filtered is not None else raw))
        return conditioner._build_sample(reading, smoothed, conditioner._convert(reading))
    return _make


@pytest.fixture
def wait_until():
    """Poll a predicate until it holds or the timeout expires."""
    def _wait(predicate, timeout=3.0, interval=0.01):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()
    return _wait

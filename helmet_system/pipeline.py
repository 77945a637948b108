"""
Helmet Guard - Monitoring Pipeline
==================================
Central module that owns the full lifecycle of one monitored stream.

Usage in monitor_runner.py:
    pipeline = MonitoringPipeline('helmet-01', db=db, dispatcher=dispatcher)
    pipeline.start()
    # ... readings arrive through db inserts, the poller or pipeline.publish() ...
    pipeline.cancel()      # rider pressed "I'm OK"
    pipeline.stop()

Data flow:
    source -> converter -> conditioner -> window -> classifier -> coordinator
           -> (event store + notification dispatcher)

Failure policy:
    A failing backfill or store subscription is logged and skipped; live
    monitoring continues with whatever inputs are available. Multiple devices
    get multiple pipelines, nothing is shared between them.
"""

import logging
from typing import Callable, Optional

from helmet_system.coordinator.clock import CentralClock
from helmet_system.coordinator.config import EscalationConfig
from helmet_system.coordinator.coordinator import EscalationCoordinator
from helmet_system.sensors.mpu6050.collector import StreamCollector
from helmet_system.sensors.mpu6050.config import MPU6050Config
from helmet_system.sources import HistoricalReadingSource, LiveReadingSource, ReadingPoller
from helmet_system.types import DEFAULT_DEVICE_ID

logger = logging.getLogger(__name__)


class MonitoringPipeline:
    """
    Owns source, collector and coordinator for a single device.

    Responsibilities:
      - Build the per-stream source, collector and escalation coordinator
      - Prime the filter/window from a bounded history backfill
      - Feed newly stored readings into the live source
      - Provide a clean start() / stop() / cancel() interface
      - Report stream and escalation state via get_status()
    """

    def __init__(
        self,
        device_id: str = DEFAULT_DEVICE_ID,
        db=None,
        dispatcher=None,
        clock: Optional[CentralClock] = None,
        sensor_config: Optional[MPU6050Config] = None,
        escalation_config: Optional[EscalationConfig] = None,
        timer_factory=None,
        backfill_days: int = 0,
        history_limit: int = 2000,
        poll_interval: Optional[float] = None,
        queue_size: int = 1000,
    ):
        """
        Args:
            device_id         : Monitored stream identifier
            db                : HelmetDB (event store + reading feed), optional
            dispatcher        : NotificationDispatcher, optional
            clock             : Shared CentralClock
            sensor_config     : Conditioning/classifier parameters
            escalation_config : Countdown/quiescence/notification parameters
            timer_factory     : threading.Timer-compatible factory
            backfill_days     : Days of history to warm up from (0 disables)
            history_limit     : Cap on backfilled readings
            poll_interval     : Poll the store for new rows instead of
                                subscribing to in-process inserts
            queue_size        : Live source capacity
        """
        self.device_id = device_id
        self.db = db
        self.dispatcher = dispatcher
        self.clock = clock if clock else CentralClock()
        self.sensor_config = sensor_config if sensor_config else MPU6050Config.for_session()
        self.escalation_config = escalation_config if escalation_config else EscalationConfig.for_session()
        self.backfill_days = backfill_days
        self.history_limit = history_limit
        self.poll_interval = poll_interval

        self.source = LiveReadingSource(
            device_id=device_id,
            maxsize=queue_size,
            clock=self.clock,
            raw_count_limit=self.sensor_config.raw_count_limit,
        )
        self.coordinator = EscalationCoordinator(
            device_id=device_id,
            repository=db,
            dispatcher=dispatcher,
            config=self.escalation_config,
            clock=self.clock,
            timer_factory=timer_factory,
        )
        self.collector = StreamCollector(
            device_id=device_id,
            source=self.source,
            coordinator=self.coordinator,
            config=self.sensor_config,
            clock=self.clock,
        )

        self._poller: Optional[ReadingPoller] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._failed_inputs: list = []
        self.is_running = False

        logger.info(f"MonitoringPipeline created for {device_id}")

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    def start(self):
        """
        Warm up, attach inputs and start the stream worker.
        Failed optional inputs are logged and skipped.
        """
        if self.is_running:
            logger.warning(f"Pipeline for {self.device_id} already running")
            return

        logger.info("=" * 55)
        logger.info(f"  Helmet Guard pipeline — starting {self.device_id}")
        logger.info("=" * 55)

        if self.db is not None and self.backfill_days > 0:
            self._backfill()

        if self.db is not None:
            self._attach_feed()

        self.collector.start()
        self.is_running = True

        logger.info(
            f"Pipeline ready — device: {self.device_id} | "
            f"failed inputs: {self._failed_inputs or 'none'}"
        )

    def stop(self):
        """
        Detach inputs, drain the worker and close the coordinator.
        """
        if not self.is_running:
            return

        logger.info(f"Stopping pipeline for {self.device_id}...")

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._poller is not None:
            self._poller.stop()
            self._poller = None

        self.source.close()
        self.collector.stop()
        self.coordinator.close()
        self.is_running = False

        logger.info(f"✓ Pipeline stopped for {self.device_id}")

    def publish(self, record) -> bool:
        """Deliver one inbound record (feed message or Reading)."""
        return self.source.publish(record)

    def cancel(self, event_id: Optional[str] = None) -> bool:
        """User cancellation of the pending accident event."""
        return self.coordinator.cancel(event_id)

    def subscribe_samples(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        """Live conditioned-sample records."""
        return self.collector.subscribe(callback)

    def subscribe_events(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        """Terminal accident event records."""
        return self.coordinator.subscribe(callback)

    def get_status(self) -> dict:
        """
        Return a summary of stream and escalation state for logging / UI display.
        """
        return {
            'device_id'     : self.device_id,
            'is_running'    : self.is_running,
            'failed_inputs' : self._failed_inputs,
            'queued'        : self.source.qsize(),
            'collector'     : self.collector.get_status(),
            'escalation'    : self.coordinator.get_status(),
            'clock'         : self.clock.get_stats(),
        }

    # -----------------------------------------------------------------------
    # Private: input helpers
    # -----------------------------------------------------------------------

    def _backfill(self):
        """Prime the conditioner and window from recent history."""
        try:
            history = HistoricalReadingSource(
                self.db,
                device_id=self.device_id,
                days=self.backfill_days,
                limit=self.history_limit,
            )
            self.collector.warm_up(history.drain())
        except Exception as e:
            self._handle_input_failure('backfill', e)

    def _attach_feed(self):
        """Forward newly stored readings into the live source."""
        try:
            if self.poll_interval:
                self._poller = ReadingPoller(
                    self.db,
                    self.source,
                    device_id=self.device_id,
                    interval=self.poll_interval,
                )
                self._poller.start()
            else:
                self._unsubscribe = self.db.subscribe(self._forward_insert)
        except Exception as e:
            self._handle_input_failure('feed', e)

    def _forward_insert(self, reading):
        if reading.device_id == self.device_id:
            self.source.publish(reading)

    def _handle_input_failure(self, name: str, exc: Exception):
        self._failed_inputs.append(name)
        logger.warning(
            f"⚠ {name} failed for {self.device_id} — skipping. "
            f"Error: {exc}"
        )

    # -----------------------------------------------------------------------
    # Dunder helpers
    # -----------------------------------------------------------------------

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    def __repr__(self):
        return (
            f"<MonitoringPipeline("
            f"device={self.device_id}, "
            f"running={self.is_running})>"
        )

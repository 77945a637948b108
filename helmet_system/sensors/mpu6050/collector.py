"""
MPU6050 Stream Collector
Serial per-stream worker: conditioning, windowing, classification and escalation
"""

import logging
import threading
from typing import Callable, List, Optional, Sequence, TYPE_CHECKING

from helmet_system.coordinator.clock import CentralClock
from helmet_system.types import Assessment, Reading

from .classifier import AccidentClassifier, DetectionWindow
from .config import MPU6050Config
from .processor import SignalConditioner

if TYPE_CHECKING:
    from helmet_system.coordinator import EscalationCoordinator

logger = logging.getLogger(__name__)


class StreamCollector:
    """
    Stream collector - one worker thread per monitored stream

    Pulls readings from its source strictly in arrival order and runs them
    through the signal conditioner, detection window and accident classifier
    before handing each assessment to the escalation coordinator.

    The worker thread is the only mutator of the conditioner and window.
    A window reset requested from another thread (user cancel) is applied
    before the next reading is processed.
    """

    def __init__(
            self,
            device_id: str,
            source,
            coordinator: 'EscalationCoordinator',
            config: Optional[MPU6050Config] = None,
            clock: Optional[CentralClock] = None
    ):
        """
        Initialize stream collector

        Args:
            device_id: Monitored stream identifier
            source: Reading source exposing get(timeout)
            coordinator: Escalation coordinator for this stream
            config: MPU6050 configuration
            clock: Shared central clock (arrival times for liveness)
        """
        self.device_id = device_id
        self.source = source
        self.coordinator = coordinator
        self.config = config if config else MPU6050Config.for_session()
        self.clock = clock if clock else coordinator.clock

        self.conditioner = SignalConditioner(self.config)
        self.window = DetectionWindow.from_config(self.config)
        self.classifier = AccidentClassifier(self.config)

        # State management
        self.is_running = False
        self.collection_thread = None
        self.stop_event = threading.Event()
        self._reset_requested = threading.Event()

        self._listeners: List[Callable[[dict], None]] = []

        # Sample tracking
        self.sample_count = 0
        self.rejected_count = 0
        self.error_count = 0
        self.started_at = None
        self.last_reading_at = None
        self.latest_assessment: Optional[Assessment] = None

        coordinator.on_cancel(self.request_reset)

        logger.info(f"Stream collector initialized for {device_id}")

    def start(self):
        """
        Start the collection thread.

        Returns:
            None.
        """
        if self.is_running:
            logger.warning(f"Collector for {self.device_id} already running")
            return

        self.is_running = True
        self.stop_event.clear()
        self.started_at = self.clock.now()

        self.collection_thread = threading.Thread(
            target=self._collection_loop,
            name=f"{self.device_id}-Collection-Thread",
            daemon=True
        )
        self.collection_thread.start()

        logger.info(f"✓ Stream collection started for {self.device_id}")

    def stop(self, timeout: float = 5.0):
        """
        Signal the collection thread to stop and wait for it.

        Returns:
            None.
        """
        if not self.is_running:
            logger.warning(f"Collector for {self.device_id} not running")
            return

        logger.info(f"Stopping stream collection for {self.device_id}...")
        self.stop_event.set()

        if self.collection_thread and self.collection_thread.is_alive():
            self.collection_thread.join(timeout=timeout)

        self.is_running = False
        logger.info(f"✓ Stream collection stopped: {self.sample_count} samples processed")

    def subscribe(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        """
        Register a listener for conditioned-sample records

        Args:
            callback: Called with each live-visualization record

        Returns:
            Function that removes the listener
        """
        self._listeners.append(callback)
        return lambda: self._listeners.remove(callback)

    def request_reset(self):
        """Ask the worker to clear the detection window before the next reading"""
        self._reset_requested.set()

    def _collection_loop(self):
        """
        Main processing loop, run in a background thread.

        Returns:
            None.
        """
        logger.info(f"{self.device_id} collection loop started")

        while not self.stop_event.is_set():
            reading = self.source.get(timeout=2 * self.config.collection_interval)

            if reading is None:
                if getattr(self.source, 'closed', False) or getattr(self.source, 'exhausted', False):
                    logger.info(f"Source for {self.device_id} ended")
                    break
                continue

            try:
                self.process_reading(reading)
            except Exception as e:
                self.error_count += 1
                logger.error(f"Error processing reading for {self.device_id}: {e}", exc_info=True)

        logger.info(f"{self.device_id} collection loop stopped")

    def process_reading(self, reading: Reading) -> Optional[Assessment]:
        """
        Run one reading through the pipeline

        Args:
            reading: Next reading in arrival order

        Returns:
            Assessment for the reading, or None if it was rejected
        """
        if self._reset_requested.is_set():
            self._reset_requested.clear()
            self.window.clear()
            logger.info(f"Detection window reset for {self.device_id}")

        latest = self.window.latest()
        if latest is not None and reading.timestamp <= latest.timestamp:
            self.rejected_count += 1
            logger.warning(
                f"⚠ Out-of-order reading dropped for {self.device_id}: "
                f"{reading.timestamp.isoformat()} <= {latest.timestamp.isoformat()}"
            )
            return None

        sample = self.conditioner.condition(reading)
        self.window.append(sample)
        assessment = self.classifier.assess(self.window, sample)

        self.sample_count += 1
        self.last_reading_at = self.clock.now()
        self.latest_assessment = assessment

        self._emit(sample.to_record())
        self.coordinator.evaluate(sample, assessment)

        return assessment

    def warm_up(self, readings: Sequence[Reading]) -> int:
        """
        Prime filter state and window from historical readings

        History is conditioned in one batch and emitted for display but never
        escalated.

        Args:
            readings: Historical readings, oldest first

        Returns:
            Number of samples loaded
        """
        samples = self.conditioner.condition_batch(readings)
        for sample in samples:
            self.window.append(sample)
            self._emit(sample.to_record())

        logger.info(f"Warmed up {self.device_id} with {len(samples)} historical samples")
        return len(samples)

    def is_stale(self) -> bool:
        """
        True when no reading arrived within the stale interval

        Returns:
            Liveness flag for the stream
        """
        reference = self.last_reading_at or self.started_at
        if reference is None:
            return True
        return self.clock.seconds_since(reference) > self.config.stale_after_seconds

    def _emit(self, record: dict):
        for callback in list(self._listeners):
            try:
                callback(record)
            except Exception as e:
                logger.error(f"Sample listener failed: {e}", exc_info=True)

    def get_status(self) -> dict:
        """
        Return the current collector state.

        Returns:
            Dict with running state, sample counts and liveness.
        """
        return {
            'device_id': self.device_id,
            'mode': self.config.mode,
            'is_running': self.is_running,
            'samples_processed': self.sample_count,
            'samples_rejected': self.rejected_count,
            'errors': self.error_count,
            'window_size': len(self.window),
            'stale': self.is_stale(),
            'last_danger': self.latest_assessment.danger_percentage if self.latest_assessment else None,
        }

    def __repr__(self):
        status = "running" if self.is_running else "stopped"
        return f"<StreamCollector(device={self.device_id}, status={status})>"

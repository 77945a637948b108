"""
Escalation Coordinator
Owns the active accident event, its confirmation countdown and the suppression lock
"""

import dataclasses
import logging
import threading
import uuid
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from helmet_system.types import (
    AccidentEvent,
    Assessment,
    ConditionedSample,
    DEFAULT_DEVICE_ID,
    EventStatus,
)

from .clock import CentralClock
from .config import EscalationConfig

logger = logging.getLogger(__name__)

STAGE_INITIAL = 'initial'
STAGE_EMERGENCY = 'emergency'

# Resolved events kept for duplicate-cancel detection
_HISTORY_SIZE = 100


class EscalationCoordinator:
    """
    Accident escalation state machine for one monitored stream

    States:
        Idle -> Pending (event created, countdown armed)
        Pending -> Cancelled (user cancel within countdown)
        Pending -> Confirmed (countdown expired)

    Responsibilities:
    - Enforce at most one non-terminal event and one countdown per stream
    - Resolve the cancel/expiry race exactly once (lock-guarded check-and-set)
    - Hold the suppression lock until the quiescence period after resolution
    - Hand persistence writes and notifications to background paths so a
      failing collaborator never blocks or rolls back a transition
    """

    def __init__(
            self,
            device_id: str = DEFAULT_DEVICE_ID,
            repository: Optional[Any] = None,
            dispatcher: Optional[Any] = None,
            config: Optional[EscalationConfig] = None,
            clock: Optional[CentralClock] = None,
            timer_factory: Optional[Callable[..., Any]] = None
    ):
        """
        Initialize escalation coordinator

        Args:
            device_id: Monitored stream identifier
            repository: Event store with insert(event) and update(event_id, fields)
            dispatcher: Notification dispatcher with a non-blocking dispatch(payload)
            config: Escalation configuration
            clock: Shared central clock
            timer_factory: threading.Timer-compatible factory (interval, function, args)
        """
        self.device_id = device_id
        self.repository = repository
        self.dispatcher = dispatcher
        self.config = config if config else EscalationConfig.for_session()
        self.clock = clock if clock else CentralClock()
        self.timer_factory = timer_factory if timer_factory else threading.Timer

        self._lock = threading.Lock()
        self._active: Optional[AccidentEvent] = None
        self._countdown = None
        self._suppressed = False
        self._suppression_generation = 0
        self._release_timer = None
        self._history: 'OrderedDict[str, AccidentEvent]' = OrderedDict()

        self._terminal_listeners: List[Callable[[dict], None]] = []
        self._cancel_listeners: List[Callable[[], None]] = []

        # Single worker keeps insert-before-update ordering
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{device_id}-persist")
        self._closed = False

        # Counters
        self.events_created = 0
        self.events_cancelled = 0
        self.events_confirmed = 0
        self.persist_failures = 0
        self.notify_failures = 0

        logger.info(
            f"Escalation coordinator initialized for {device_id} "
            f"(countdown={self.config.countdown_seconds}s, quiescence={self.config.quiescence_seconds}s)"
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def active_event(self) -> Optional[AccidentEvent]:
        with self._lock:
            return dataclasses.replace(self._active) if self._active else None

    @property
    def suppressed(self) -> bool:
        with self._lock:
            return self._suppressed

    def subscribe(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        """
        Register a listener for terminal event records

        Args:
            callback: Called with {id, status, dangerPercentage, createdAt, resolvedAt}

        Returns:
            Function that removes the listener
        """
        self._terminal_listeners.append(callback)
        return lambda: self._terminal_listeners.remove(callback)

    def on_cancel(self, callback: Callable[[], None]):
        """Register a hook run after a user cancellation (window reset)."""
        self._cancel_listeners.append(callback)

    def evaluate(self, sample: ConditionedSample, assessment: Assessment) -> Optional[AccidentEvent]:
        """
        Feed one classified sample into the state machine

        Args:
            sample: Conditioned sample that was classified
            assessment: Classifier output for the sample

        Returns:
            The newly created event, or None if no event was created
        """
        if not assessment.triggered:
            return None

        with self._lock:
            if self._closed:
                return None

            if self._active is not None:
                if not self._active.duplicate_warned:
                    logger.warning(
                        f"⚠ Trigger ignored: event {self._active.event_id} already pending for {self.device_id}"
                    )
                    self._active.duplicate_warned = True
                else:
                    logger.debug(f"Trigger ignored while {self._active.event_id} pending")
                return None

            if self._suppressed:
                logger.debug(f"Trigger suppressed during quiescence for {self.device_id}")
                return None

            created_at = self.clock.now()
            event = AccidentEvent(
                event_id=str(uuid.uuid4()),
                danger_percentage=assessment.danger_percentage,
                reading=sample.reading,
                created_at=created_at,
                deadline_at=created_at + timedelta(seconds=self.config.countdown_seconds),
                device_id=self.device_id,
            )
            self._active = event
            self._suppressed = True
            self._suppression_generation += 1
            self.events_created += 1

            self._submit_insert(dataclasses.replace(event))
            self._notify(STAGE_INITIAL, event)

            self._countdown = self.timer_factory(
                self.config.countdown_seconds,
                self._on_countdown_expired,
                args=(event.event_id,),
            )
            _daemonize(self._countdown)
            self._countdown.start()

            snapshot = dataclasses.replace(event)

        logger.warning(
            f"✗ Accident detected on {self.device_id}: event {event.event_id} "
            f"danger={event.danger_percentage}% "
            f"(upside_down={assessment.upside_down}, tipped_over={assessment.tipped_over}, "
            f"impact={assessment.is_accident}) — confirming in {self.config.countdown_seconds}s"
        )
        return snapshot

    def cancel(self, event_id: Optional[str] = None) -> bool:
        """
        User cancellation of the pending event

        Args:
            event_id: Event to cancel; the current pending event if omitted

        Returns:
            True if this call moved the event to cancelled
        """
        with self._lock:
            if self._closed:
                logger.warning(f"⚠ Cancel ignored: coordinator for {self.device_id} is closed")
                return False

            active = self._active
            if active is None or (event_id is not None and active.event_id != event_id):
                previous = self._history.get(event_id) if event_id else None
                if previous is not None:
                    logger.warning(f"⚠ Cancel ignored: event {event_id} already {previous.status.value}")
                else:
                    logger.warning(f"⚠ Cancel ignored: no pending event {event_id or ''} for {self.device_id}")
                return False

            self._resolve_locked(active, EventStatus.CANCELLED)
            self.events_cancelled += 1
            record = active.to_record()

        logger.info(f"✓ Event {record['id']} cancelled by user")

        for callback in list(self._cancel_listeners):
            try:
                callback()
            except Exception as e:
                logger.error(f"Cancel hook failed: {e}", exc_info=True)

        self._emit_terminal(record)
        return True

    def flush(self, timeout: Optional[float] = None):
        """Block until queued persistence writes have run."""
        if self._closed:
            # close() already drained the queue
            return
        self._writer.submit(lambda: None).result(timeout=timeout)

    def close(self):
        """Cancel timers and drain the persistence queue"""
        with self._lock:
            self._closed = True
            if self._countdown is not None:
                self._countdown.cancel()
                self._countdown = None
            if self._release_timer is not None:
                self._release_timer.cancel()
                self._release_timer = None
            if self._active is not None:
                logger.warning(f"⚠ Closing with event {self._active.event_id} still pending")

        self._writer.shutdown(wait=True)
        logger.info(f"✓ Escalation coordinator closed for {self.device_id}")

    def get_status(self) -> dict:
        with self._lock:
            return {
                'device_id': self.device_id,
                'state': self._active.status.value if self._active else 'idle',
                'active_event_id': self._active.event_id if self._active else None,
                'suppressed': self._suppressed,
                'events_created': self.events_created,
                'events_cancelled': self.events_cancelled,
                'events_confirmed': self.events_confirmed,
                'persist_failures': self.persist_failures,
                'notify_failures': self.notify_failures,
            }

    # ------------------------------------------------------------------
    # Timer callbacks
    # ------------------------------------------------------------------

    def _on_countdown_expired(self, event_id: str):
        """Countdown fired with no cancel: escalate to emergency."""
        with self._lock:
            if self._closed:
                logger.warning(f"⚠ Countdown for {event_id} fired after close — ignored")
                return

            active = self._active
            if active is None or active.event_id != event_id or active.status is not EventStatus.PENDING:
                logger.debug(f"Countdown for {event_id} fired after resolution — ignored")
                return

            self._notify(STAGE_EMERGENCY, active)
            self._resolve_locked(active, EventStatus.CONFIRMED)
            self.events_confirmed += 1
            record = active.to_record()

        logger.warning(f"✗ Event {record['id']} confirmed — emergency notification sent")
        self._emit_terminal(record)

    def _release_suppression(self, generation: int):
        with self._lock:
            if generation != self._suppression_generation or self._active is not None:
                return
            self._suppressed = False
            self._release_timer = None

        logger.info(f"Suppression released for {self.device_id}")

    # ------------------------------------------------------------------
    # Private helpers (caller holds the lock where noted)
    # ------------------------------------------------------------------

    def _resolve_locked(self, event: AccidentEvent, status: EventStatus):
        event.status = status
        event.resolved_at = self.clock.now()

        if self._countdown is not None:
            # No-op if the timer already fired
            self._countdown.cancel()
            self._countdown = None

        self._active = None
        self._history[event.event_id] = event
        while len(self._history) > _HISTORY_SIZE:
            self._history.popitem(last=False)

        self._submit_update(event.event_id, {
            'status': status.value,
            'resolved_at': event.resolved_at,
        })

        self._release_timer = self.timer_factory(
            self.config.quiescence_seconds,
            self._release_suppression,
            args=(self._suppression_generation,),
        )
        _daemonize(self._release_timer)
        self._release_timer.start()

    def _notify(self, stage: str, event: AccidentEvent):
        if self.dispatcher is None:
            logger.debug(f"No dispatcher configured, skipping {stage} notification")
            return

        payload = {
            'stage': stage,
            'accidentId': event.event_id,
            'danger': event.danger_percentage,
            'lat': event.reading.latitude,
            'lon': event.reading.longitude,
            'contacts': list(self.config.contacts),
        }
        try:
            self.dispatcher.dispatch(payload)
        except Exception as e:
            self.notify_failures += 1
            logger.error(f"✗ Failed to enqueue {stage} notification for {event.event_id}: {e}", exc_info=True)

    def _submit_insert(self, event: AccidentEvent):
        if self.repository is None:
            return
        self._writer.submit(self._write, self.repository.insert, (event,), f"insert {event.event_id}")

    def _submit_update(self, event_id: str, fields: Dict[str, Any]):
        if self.repository is None:
            return
        self._writer.submit(self._write, self.repository.update, (event_id, fields), f"update {event_id}")

    def _write(self, operation: Callable, args: tuple, description: str):
        try:
            result = operation(*args)
        except Exception as e:
            self.persist_failures += 1
            logger.error(f"✗ Persistence {description} failed: {e}", exc_info=True)
            return

        if result is None or result is False:
            self.persist_failures += 1
            logger.error(f"✗ Persistence {description} failed permanently")

    def _emit_terminal(self, record: dict):
        for callback in list(self._terminal_listeners):
            try:
                callback(record)
            except Exception as e:
                logger.error(f"Terminal record listener failed: {e}", exc_info=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self):
        state = self._active.event_id if self._active else 'idle'
        return f"<EscalationCoordinator(device={self.device_id}, state={state})>"


def _daemonize(timer):
    if hasattr(timer, 'daemon'):
        timer.daemon = True

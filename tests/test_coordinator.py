"""
Tests for the escalation state machine
"""

import threading

import pytest

from helmet_system.coordinator.config import EscalationConfig
from helmet_system.coordinator.coordinator import (
    STAGE_EMERGENCY,
    STAGE_INITIAL,
    EscalationCoordinator,
)
from helmet_system.types import Assessment, EventStatus

from conftest import FakeRepository, ManualTimerFactory, RecordingDispatcher

ACCIDENT = Assessment(danger_percentage=72, is_accident=True, sample_count=10)
UPSIDE_DOWN = Assessment(danger_percentage=100, is_accident=False, upside_down=True, sample_count=1)
QUIET = Assessment(danger_percentage=12, is_accident=False, sample_count=10)


class TestEventCreation:

    def test_quiet_assessment_creates_nothing(self, coordinator, make_sample, timers, dispatcher):
        assert coordinator.evaluate(make_sample(0), QUIET) is None
        assert coordinator.active_event is None
        assert timers.timers == []
        assert dispatcher.payloads == []

    def test_trigger_creates_pending_event(self, coordinator, make_sample, timers, dispatcher, repository):
        sample = make_sample(0)
        event = coordinator.evaluate(sample, ACCIDENT)

        assert event is not None
        assert event.status is EventStatus.PENDING
        assert event.danger_percentage == 72
        assert event.reading is sample.reading
        assert (event.deadline_at - event.created_at).total_seconds() == pytest.approx(30.0)
        assert coordinator.active_event.event_id == event.event_id
        assert coordinator.suppressed

        countdown = timers.last_countdown()
        assert countdown.started
        assert countdown.interval == 30.0
        assert countdown.args == (event.event_id,)

        assert dispatcher.stages() == [STAGE_INITIAL]
        payload = dispatcher.payloads[0]
        assert payload['accidentId'] == event.event_id
        assert payload['danger'] == 72
        assert payload['lat'] == sample.latitude
        assert payload['lon'] == sample.longitude
        assert payload['contacts'] == ['+15550100']

        coordinator.flush(timeout=2)
        assert [e.event_id for e in repository.inserts] == [event.event_id]
        assert repository.inserts[0].status is EventStatus.PENDING

    def test_orientation_override_triggers(self, coordinator, make_sample):
        assert coordinator.evaluate(make_sample(0), UPSIDE_DOWN) is not None

    def test_rapid_triggers_keep_one_active_event(self, coordinator, make_sample, timers, dispatcher, repository):
        first = coordinator.evaluate(make_sample(0), ACCIDENT)
        for i in range(1, 20):
            assert coordinator.evaluate(make_sample(i), ACCIDENT) is None

        assert coordinator.active_event.event_id == first.event_id
        assert coordinator.events_created == 1
        assert len(timers.countdowns()) == 1
        assert dispatcher.stages() == [STAGE_INITIAL]

        coordinator.flush(timeout=2)
        assert len(repository.inserts) == 1

    def test_returned_event_is_a_snapshot(self, coordinator, make_sample):
        event = coordinator.evaluate(make_sample(0), ACCIDENT)
        coordinator.cancel()

        assert event.status is EventStatus.PENDING


class TestConfirmation:

    def test_countdown_expiry_confirms(self, coordinator, make_sample, timers, dispatcher, repository):
        records = []
        coordinator.subscribe(records.append)
        event = coordinator.evaluate(make_sample(0), ACCIDENT)

        timers.last_countdown().fire()

        assert coordinator.active_event is None
        assert coordinator.events_confirmed == 1
        assert dispatcher.stages() == [STAGE_INITIAL, STAGE_EMERGENCY]
        assert dispatcher.payloads[1]['accidentId'] == event.event_id

        assert len(records) == 1
        assert records[0]['id'] == event.event_id
        assert records[0]['status'] == 'confirmed'
        assert records[0]['dangerPercentage'] == 72
        assert records[0]['resolvedAt'] is not None

        coordinator.flush(timeout=2)
        assert repository.updates[0][0] == event.event_id
        assert repository.updates[0][1]['status'] == 'confirmed'
        assert repository.updates[0][1]['resolved_at'] is not None

    def test_cancel_after_confirmation_is_rejected(self, coordinator, make_sample, timers):
        event = coordinator.evaluate(make_sample(0), ACCIDENT)
        timers.last_countdown().fire()

        assert coordinator.cancel(event.event_id) is False
        assert coordinator.events_cancelled == 0
        assert coordinator.events_confirmed == 1


class TestCancellation:

    def test_cancel_resolves_pending_event(self, coordinator, make_sample, timers, dispatcher, repository):
        records = []
        hooks = []
        coordinator.subscribe(records.append)
        coordinator.on_cancel(lambda: hooks.append('reset'))
        event = coordinator.evaluate(make_sample(0), ACCIDENT)

        assert coordinator.cancel(event.event_id) is True

        assert coordinator.active_event is None
        assert timers.last_countdown().cancelled
        assert hooks == ['reset']
        assert [r['status'] for r in records] == ['cancelled']
        assert dispatcher.stages() == [STAGE_INITIAL]

        coordinator.flush(timeout=2)
        assert len(repository.updates) == 1
        event_id, fields = repository.updates[0]
        assert event_id == event.event_id
        assert fields['status'] == 'cancelled'
        assert fields['resolved_at'] is not None

    def test_cancel_without_id_targets_pending_event(self, coordinator, make_sample):
        coordinator.evaluate(make_sample(0), ACCIDENT)
        assert coordinator.cancel() is True
        assert coordinator.events_cancelled == 1

    def test_cancel_with_nothing_pending(self, coordinator):
        assert coordinator.cancel() is False
        assert coordinator.cancel('no-such-event') is False

    def test_cancel_unknown_id_leaves_pending_event(self, coordinator, make_sample):
        event = coordinator.evaluate(make_sample(0), ACCIDENT)

        assert coordinator.cancel('some-other-event') is False
        assert coordinator.active_event.event_id == event.event_id

    def test_second_cancel_is_rejected(self, coordinator, make_sample):
        event = coordinator.evaluate(make_sample(0), ACCIDENT)

        assert coordinator.cancel(event.event_id) is True
        assert coordinator.cancel(event.event_id) is False
        assert coordinator.events_cancelled == 1

    def test_late_countdown_after_cancel_is_ignored(self, coordinator, make_sample, timers, dispatcher):
        records = []
        coordinator.subscribe(records.append)
        coordinator.evaluate(make_sample(0), ACCIDENT)
        coordinator.cancel()

        # Timer thread already past its cancellation check
        timers.last_countdown().fire(force=True)

        assert [r['status'] for r in records] == ['cancelled']
        assert coordinator.events_confirmed == 0
        assert STAGE_EMERGENCY not in dispatcher.stages()


class TestCancelExpiryRace:

    def test_exactly_one_terminal_transition(self, make_sample):
        for _ in range(50):
            timers = ManualTimerFactory()
            dispatcher = RecordingDispatcher()
            repository = FakeRepository()
            coordinator = EscalationCoordinator(
                device_id='helmet-race',
                repository=repository,
                dispatcher=dispatcher,
                timer_factory=timers,
            )
            records = []
            coordinator.subscribe(records.append)
            coordinator.evaluate(make_sample(0), ACCIDENT)
            countdown = timers.last_countdown()

            barrier = threading.Barrier(2)
            cancelled = []

            def user_cancel():
                barrier.wait()
                cancelled.append(coordinator.cancel())

            def timer_expiry():
                barrier.wait()
                countdown.fire(force=True)

            threads = [threading.Thread(target=user_cancel), threading.Thread(target=timer_expiry)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=5)

            coordinator.flush(timeout=2)

            assert len(records) == 1
            assert coordinator.events_cancelled + coordinator.events_confirmed == 1
            assert len(repository.updates) == 1
            if cancelled[0]:
                assert records[0]['status'] == 'cancelled'
                assert STAGE_EMERGENCY not in dispatcher.stages()
            else:
                assert records[0]['status'] == 'confirmed'
                assert dispatcher.stages().count(STAGE_EMERGENCY) == 1

            coordinator.close()


class TestSuppression:

    def test_no_new_event_until_quiescence_passes(self, coordinator, make_sample, timers):
        first = coordinator.evaluate(make_sample(0), ACCIDENT)
        coordinator.cancel()

        assert coordinator.suppressed
        assert coordinator.evaluate(make_sample(1), ACCIDENT) is None

        release = timers.last_release()
        assert release.interval == 5.0
        release.fire()

        assert not coordinator.suppressed
        second = coordinator.evaluate(make_sample(2), ACCIDENT)
        assert second is not None
        assert second.event_id != first.event_id
        assert coordinator.events_created == 2

    def test_stale_release_does_not_lift_newer_suppression(self, coordinator, make_sample, timers):
        coordinator.evaluate(make_sample(0), ACCIDENT)
        coordinator.cancel()
        stale_release = timers.last_release()
        stale_release.fire()

        coordinator.evaluate(make_sample(1), ACCIDENT)
        coordinator.cancel()

        stale_release.fire(force=True)
        assert coordinator.suppressed

        timers.last_release().fire()
        assert not coordinator.suppressed


class TestCollaboratorFailures:

    def test_notification_failure_does_not_block_escalation(self, make_sample, clock):
        timers = ManualTimerFactory()
        coordinator = EscalationCoordinator(
            dispatcher=RecordingDispatcher(fail=True),
            clock=clock,
            timer_factory=timers,
        )
        records = []
        coordinator.subscribe(records.append)

        assert coordinator.evaluate(make_sample(0), ACCIDENT) is not None
        timers.last_countdown().fire()

        assert [r['status'] for r in records] == ['confirmed']
        assert coordinator.notify_failures == 2
        coordinator.close()

    def test_store_failure_does_not_roll_back_transition(self, make_sample):
        timers = ManualTimerFactory()
        repository = FakeRepository(fail_insert=True, fail_update=True)
        coordinator = EscalationCoordinator(repository=repository, timer_factory=timers)

        coordinator.evaluate(make_sample(0), ACCIDENT)
        assert coordinator.cancel() is True

        coordinator.flush(timeout=2)
        assert coordinator.persist_failures == 2
        assert coordinator.get_status()['state'] == 'idle'
        coordinator.close()

    def test_runs_without_collaborators(self, make_sample):
        timers = ManualTimerFactory()
        coordinator = EscalationCoordinator(timer_factory=timers)

        coordinator.evaluate(make_sample(0), ACCIDENT)
        timers.last_countdown().fire()

        assert coordinator.events_confirmed == 1
        coordinator.close()


class TestLifecycle:

    def test_status_report(self, coordinator, make_sample):
        assert coordinator.get_status()['state'] == 'idle'

        event = coordinator.evaluate(make_sample(0), ACCIDENT)
        status = coordinator.get_status()

        assert status['state'] == 'pending'
        assert status['active_event_id'] == event.event_id
        assert status['suppressed'] is True
        assert status['events_created'] == 1

    def test_close_cancels_timers_and_ignores_new_triggers(self, make_sample):
        timers = ManualTimerFactory()
        coordinator = EscalationCoordinator(timer_factory=timers)
        coordinator.evaluate(make_sample(0), ACCIDENT)

        coordinator.close()

        assert timers.last_countdown().cancelled
        assert coordinator.evaluate(make_sample(1), ACCIDENT) is None

    def test_cancel_after_close_is_refused(self, make_sample):
        timers = ManualTimerFactory()
        dispatcher = RecordingDispatcher()
        coordinator = EscalationCoordinator(dispatcher=dispatcher, timer_factory=timers)
        terminal = []
        coordinator.subscribe(terminal.append)
        event = coordinator.evaluate(make_sample(0), ACCIDENT)

        coordinator.close()

        assert coordinator.cancel(event.event_id) is False
        assert coordinator.cancel() is False
        assert coordinator.events_cancelled == 0
        assert terminal == []
        assert timers.releases() == []
        coordinator.flush(timeout=1)

    def test_countdown_in_flight_at_close_is_ignored(self, make_sample):
        timers = ManualTimerFactory()
        dispatcher = RecordingDispatcher()
        coordinator = EscalationCoordinator(dispatcher=dispatcher, timer_factory=timers)
        coordinator.evaluate(make_sample(0), ACCIDENT)
        countdown = timers.last_countdown()

        coordinator.close()
        countdown.fire(force=True)

        assert coordinator.events_confirmed == 0
        assert dispatcher.stages() == [STAGE_INITIAL]

    def test_real_timers_confirm_and_release(self, make_sample, wait_until):
        config = EscalationConfig(countdown_seconds=0.05, quiescence_seconds=0.05)
        dispatcher = RecordingDispatcher()
        with EscalationCoordinator(dispatcher=dispatcher, config=config) as coordinator:
            coordinator.evaluate(make_sample(0), ACCIDENT)

            assert wait_until(lambda: coordinator.events_confirmed == 1)
            assert wait_until(lambda: not coordinator.suppressed)
            assert dispatcher.stages() == [STAGE_INITIAL, STAGE_EMERGENCY]

            assert coordinator.evaluate(make_sample(1), ACCIDENT) is not None

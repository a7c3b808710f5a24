"""Unit tests for the booking sync state machine."""
import gc
import threading

import pytest
import responses

from calendar_api.calendar_client import CalendarApiClient
from sync.errors import (
    CalendarApiError,
    CallCancelledError,
    ErrorType,
    EventNotFoundError,
    InvalidTransitionError,
)
from sync.event_tracker import SyncEventTracker, next_status
from sync.models import ExternalEventRef, SyncStatus, Transition, Trigger

START = '2024-05-09T07:00:00Z'
END = '2024-05-09T07:30:00Z'
CALENDAR_URL = 'https://calendar.example.com/api'
EVENTS_URL = f"{CALENDAR_URL}/events"


def book(tracker, clock, snapshot_age=1000, **kwargs):
    return tracker.create(
        'user-1',
        'Deep work',
        START,
        END,
        snapshot_timestamp=clock.now - snapshot_age,
        **kwargs
    )


class TestNextStatus:
    """Test cases for the transition table."""

    def test_pending_success(self):
        """Test pending bookings become synced."""
        transition = Transition.succeeded(ExternalEventRef('ext-1'))
        assert next_status(SyncStatus.PENDING, transition) == SyncStatus.SYNCED

    def test_pending_conflict_failure(self):
        """Test provider conflicts end in the conflict state."""
        error = CalendarApiError(ErrorType.CONFLICT, 'taken', 409)
        assert next_status(SyncStatus.PENDING, Transition.failed(error)) == SyncStatus.CONFLICT

    def test_pending_other_failure(self):
        """Test other failures end in the error state."""
        error = CalendarApiError(ErrorType.NETWORK, 'timeout')
        assert next_status(SyncStatus.PENDING, Transition.failed(error)) == SyncStatus.ERROR

    def test_retry_failure_returns_to_error(self):
        """Test a failed retry goes back to error, even for conflicts."""
        error = CalendarApiError(ErrorType.CONFLICT, 'taken', 409)
        assert next_status(SyncStatus.RETRY, Transition.failed(error)) == SyncStatus.ERROR

    @pytest.mark.parametrize('status', [SyncStatus.SYNCED, SyncStatus.CONFLICT])
    @pytest.mark.parametrize('transition', [
        Transition.succeeded(ExternalEventRef('ext-1')),
        Transition.failed(CalendarApiError(ErrorType.NETWORK, 'timeout')),
        Transition.retry_scheduled(0),
    ])
    def test_terminal_states_reject_everything(self, status, transition):
        """Test nothing leaves synced or conflict."""
        with pytest.raises(InvalidTransitionError):
            next_status(status, transition)

    def test_pending_cannot_schedule_retry(self):
        """Test retries are only scheduled from error."""
        with pytest.raises(InvalidTransitionError):
            next_status(SyncStatus.PENDING, Transition.retry_scheduled(0))


class TestCreate:
    """Test cases for SyncEventTracker.create."""

    def test_successful_booking(self, tracker, calendar, clock):
        """Test a fresh snapshot books and syncs the event."""
        # Execute
        result = book(tracker, clock)

        # Verify
        assert result.success is True
        assert result.link == 'https://calendar.example.com/ext-1'
        assert calendar.calls == [{'title': 'Deep work', 'start': START, 'end': END}]

        stored = tracker.get('user-1', result.event_id)
        assert stored.status == SyncStatus.SYNCED
        assert stored.external_id == 'ext-1'
        assert stored.last_synced_at == clock.now
        assert stored.error_code is None
        assert stored.version == 2

    def test_stale_snapshot_is_conflict_without_calling_calendar(self, tracker, calendar, clock):
        """Test a six minute old snapshot never reaches the calendar."""
        result = book(tracker, clock, snapshot_age=6 * 60 * 1000)

        assert result.success is False
        assert result.error_type == ErrorType.CONFLICT
        assert calendar.calls == []

        stored = tracker.get('user-1', result.event_id)
        assert stored.status == SyncStatus.CONFLICT
        assert stored.error_code == 'conflict'
        assert stored.last_synced_at == clock.now

    def test_missing_snapshot_is_conflict(self, tracker, calendar):
        """Test bookings without a snapshot timestamp are rejected."""
        result = tracker.create('user-1', 'Deep work', START, END, snapshot_timestamp=None)

        assert result.status == SyncStatus.CONFLICT
        assert calendar.calls == []

    def test_snapshot_at_boundary_is_accepted(self, tracker, calendar, clock):
        """Test a snapshot exactly five minutes old may still be booked."""
        result = book(tracker, clock, snapshot_age=5 * 60 * 1000)

        assert result.success is True
        assert len(calendar.calls) == 1

    def test_transient_failure_goes_to_error(self, make_calendar, sync_store, clock):
        """Test a network failure leaves a retryable error record."""
        calendar = make_calendar(CalendarApiError(ErrorType.NETWORK, 'Connection reset'))
        tracker = SyncEventTracker(sync_store, calendar, clock=clock)

        result = book(tracker, clock)

        assert result.success is False
        assert result.status == SyncStatus.ERROR
        assert result.retryable is True
        stored = tracker.get('user-1', result.event_id)
        assert stored.status == SyncStatus.ERROR
        assert stored.error_code == 'network'
        assert stored.error_message == 'Connection reset'
        assert stored.error_retryable is True
        assert stored.external_id is None
        assert stored.retry_count == 0

    def test_provider_conflict(self, make_calendar, sync_store, clock):
        """Test a 409 from the calendar ends in conflict."""
        calendar = make_calendar(CalendarApiError(ErrorType.CONFLICT, 'Slot taken', 409))
        tracker = SyncEventTracker(sync_store, calendar, clock=clock)

        result = book(tracker, clock)

        assert result.status == SyncStatus.CONFLICT
        assert result.to_dict()['errorType'] == 'conflict'

    def test_auth_failure_requires_reconnect(self, make_calendar, sync_store, clock):
        """Test an auth failure asks the user to reconnect."""
        calendar = make_calendar(CalendarApiError(ErrorType.AUTH_ERROR, 'Unauthorized', 401))
        tracker = SyncEventTracker(sync_store, calendar, clock=clock)

        result = book(tracker, clock)

        assert result.status == SyncStatus.ERROR
        assert result.requires_reconnect is True
        assert result.retryable is False

    def test_cancelled_call_leaves_event_pending(self, tracker, calendar, clock):
        """Test cancellation raises and makes no transition."""
        cancel_event = threading.Event()
        cancel_event.set()

        with pytest.raises(CallCancelledError):
            book(tracker, clock, cancel_event=cancel_event)

        events = tracker.list_events('user-1')
        assert len(events) == 1
        assert events[0].status == SyncStatus.PENDING
        assert events[0].version == 1

    def test_unexpected_calendar_error_is_recorded(self, make_calendar, sync_store, clock):
        """Test an unclassified calendar failure ends in error, not pending."""
        calendar = make_calendar(ValueError('Expecting value: line 1 column 1'))
        tracker = SyncEventTracker(sync_store, calendar, clock=clock)

        result = book(tracker, clock)

        assert result.success is False
        assert result.error_type == ErrorType.SERVER_ERROR
        stored = tracker.get('user-1', result.event_id)
        assert stored.status == SyncStatus.ERROR
        assert stored.error_code == 'serverError'
        assert stored.last_synced_at == clock.now

    @responses.activate
    def test_malformed_calendar_body_is_recorded(self, memory_store, clock):
        """Test non-object success bodies from the calendar end in error."""
        responses.add(responses.POST, EVENTS_URL, body='OK', status=201)
        responses.add(responses.POST, EVENTS_URL, json=[{'id': 'x'}], status=201)
        tracker = SyncEventTracker(memory_store, CalendarApiClient(CALENDAR_URL), clock=clock)

        results = [book(tracker, clock), book(tracker, clock)]

        for result in results:
            assert result.status == SyncStatus.ERROR
            assert result.error_type == ErrorType.SERVER_ERROR
            assert tracker.get('user-1', result.event_id).status == SyncStatus.ERROR
        assert tracker.list_events('user-1', SyncStatus.PENDING) == []


class TestCreateSeries:
    """Test cases for SyncEventTracker.create_series."""

    OCCURRENCES = [
        ('2024-05-09T07:00:00Z', '2024-05-09T07:30:00Z'),
        ('2024-05-16T07:00:00Z', '2024-05-16T07:30:00Z'),
        ('2024-05-23T07:00:00Z', '2024-05-23T07:30:00Z'),
    ]

    def test_each_occurrence_tracked(self, tracker, calendar, clock):
        """Test every occurrence becomes its own synced event."""
        # Execute
        results = tracker.create_series(
            'user-1', 'Deep work', self.OCCURRENCES, snapshot_timestamp=clock.now
        )

        # Verify
        assert [result.success for result in results] == [True, True, True]
        assert len({result.event_id for result in results}) == 3
        expected = [start for start, _ in self.OCCURRENCES]
        assert [call['start'] for call in calendar.calls] == expected
        stored = [tracker.get('user-1', result.event_id) for result in results]
        assert [event.start for event in stored] == expected
        assert all(event.status == SyncStatus.SYNCED for event in stored)

    def test_stale_snapshot_books_nothing(self, tracker, calendar, clock):
        """Test a stale snapshot leaves one conflict record for the series."""
        results = tracker.create_series(
            'user-1', 'Deep work', self.OCCURRENCES,
            snapshot_timestamp=clock.now - 6 * 60 * 1000
        )

        assert len(results) == 1
        assert results[0].error_type == ErrorType.CONFLICT
        assert calendar.calls == []
        events = tracker.list_events('user-1')
        assert len(events) == 1
        assert events[0].status == SyncStatus.CONFLICT
        assert events[0].start == self.OCCURRENCES[0][0]

    def test_failing_occurrence_does_not_stop_series(self, make_calendar, sync_store, clock):
        """Test one failed occurrence leaves the others booked."""
        calendar = make_calendar(
            ExternalEventRef('ext-a'),
            CalendarApiError(ErrorType.NETWORK, 'Connection reset'),
            ExternalEventRef('ext-c'),
        )
        tracker = SyncEventTracker(sync_store, calendar, clock=clock)

        results = tracker.create_series(
            'user-1', 'Deep work', self.OCCURRENCES, snapshot_timestamp=clock.now
        )

        assert [result.status for result in results] == [
            SyncStatus.SYNCED, SyncStatus.ERROR, SyncStatus.SYNCED
        ]
        assert results[1].retryable is True

    def test_requires_occurrences(self, tracker, clock):
        """Test an empty series is rejected."""
        with pytest.raises(ValueError):
            tracker.create_series('user-1', 'Deep work', [], snapshot_timestamp=clock.now)


class TestUpdate:
    """Test cases for SyncEventTracker.update."""

    def test_synced_event_rejects_failure(self, tracker, clock):
        """Test a synced event cannot be failed afterwards."""
        result = book(tracker, clock)
        error = CalendarApiError(ErrorType.SERVER_ERROR, 'boom', 500)

        with pytest.raises(InvalidTransitionError):
            tracker.update('user-1', result.event_id, Transition.failed(error))

        assert tracker.get('user-1', result.event_id).status == SyncStatus.SYNCED

    def test_conflict_event_rejects_retry(self, tracker, clock):
        """Test a conflict is terminal."""
        result = book(tracker, clock, snapshot_age=10 * 60 * 1000)

        with pytest.raises(InvalidTransitionError):
            tracker.update('user-1', result.event_id, Transition.retry_scheduled(clock.now))

    def test_success_requires_external_id(self, make_calendar, sync_store, clock):
        """Test a synced transition without an external id is rejected."""
        calendar = make_calendar(CalendarApiError(ErrorType.NETWORK, 'down'))
        tracker = SyncEventTracker(sync_store, calendar, clock=clock)
        result = book(tracker, clock)
        tracker.update('user-1', result.event_id, Transition.retry_scheduled(clock.now))

        with pytest.raises(ValueError):
            tracker.update(
                'user-1',
                result.event_id,
                Transition(trigger=Trigger.BOOKING_SUCCEEDED)
            )

    def test_unknown_event(self, tracker):
        """Test updating an event that does not exist."""
        with pytest.raises(EventNotFoundError):
            tracker.update('user-1', 'missing', Transition.retry_scheduled(0))

    def test_events_are_scoped_to_user(self, tracker, clock):
        """Test another user cannot see the event."""
        result = book(tracker, clock)

        with pytest.raises(EventNotFoundError):
            tracker.get('user-2', result.event_id)

    def test_concurrent_updates_apply_once(self, memory_store, make_calendar, clock):
        """Test racing transitions on one event are serialized."""
        # Setup: leave one event in error
        calendar = make_calendar(CalendarApiError(ErrorType.NETWORK, 'down'))
        tracker = SyncEventTracker(memory_store, calendar, clock=clock)
        event_id = book(tracker, clock).event_id

        barrier = threading.Barrier(8)
        outcomes = []

        def schedule():
            barrier.wait()
            try:
                tracker.update('user-1', event_id, Transition.retry_scheduled(clock.now))
                outcomes.append('applied')
            except InvalidTransitionError:
                outcomes.append('rejected')

        # Execute
        threads = [threading.Thread(target=schedule) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        # Verify
        assert outcomes.count('applied') == 1
        assert outcomes.count('rejected') == 7
        stored = tracker.get('user-1', event_id)
        assert stored.status == SyncStatus.RETRY
        assert stored.retry_count == 1


class TestEventLock:
    """Test cases for the per-event lock registry."""

    def test_lock_registered_while_held(self, memory_store, calendar, clock):
        """Test the lock stays registered while a caller holds it."""
        tracker = SyncEventTracker(memory_store, calendar, clock=clock)

        with tracker.event_lock('user-1', 'evt-1'):
            assert ('user-1', 'evt-1') in tracker._locks
            with tracker.event_lock('user-1', 'evt-1'):
                assert len(tracker._locks) == 1

    def test_locks_released_after_use(self, memory_store, calendar, clock):
        """Test finished bookings leave no locks behind."""
        tracker = SyncEventTracker(memory_store, calendar, clock=clock)

        for _ in range(5):
            book(tracker, clock)
        gc.collect()

        assert len(memory_store.items) == 5
        assert len(tracker._locks) == 0


def test_sync_status_summary(make_calendar, sync_store, clock):
    """Test per-status counts and latest sync time."""
    calendar = make_calendar(
        ExternalEventRef('ext-1'),
        CalendarApiError(ErrorType.NETWORK, 'down'),
    )
    tracker = SyncEventTracker(sync_store, calendar, clock=clock)

    book(tracker, clock)
    synced_at = clock.now
    clock.advance(1000)
    book(tracker, clock)
    book(tracker, clock, snapshot_age=60 * 60 * 1000)

    summary = tracker.sync_status('user-1').to_dict()

    assert summary['total'] == 3
    assert summary['synced'] == 1
    assert summary['error'] == 1
    assert summary['conflict'] == 1
    assert summary['pending'] == 0
    assert summary['lastSyncedAt'] == synced_at

"""Booking sync state machine."""
import logging
import threading
import weakref
from contextlib import contextmanager
from dataclasses import replace
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from scheduling.models import now_ms
from scheduling.staleness import MAX_SNAPSHOT_AGE_MS, is_valid
from sync.errors import (
    USER_MESSAGES,
    CalendarApiError,
    CallCancelledError,
    ErrorType,
    EventNotFoundError,
    InvalidTransitionError,
)
from sync.models import (
    BookingResult,
    SyncEvent,
    SyncStatus,
    SyncStatusSummary,
    Transition,
    Trigger,
    new_event_id,
)

logger = logging.getLogger(__name__)

# (from status, trigger) -> target status. None means the target depends on
# the failure: conflicts go to CONFLICT, everything else to ERROR.
TRANSITIONS: Dict[Tuple[SyncStatus, Trigger], Optional[SyncStatus]] = {
    (SyncStatus.PENDING, Trigger.BOOKING_SUCCEEDED): SyncStatus.SYNCED,
    (SyncStatus.PENDING, Trigger.BOOKING_FAILED): None,
    (SyncStatus.ERROR, Trigger.RETRY_SCHEDULED): SyncStatus.RETRY,
    (SyncStatus.RETRY, Trigger.BOOKING_SUCCEEDED): SyncStatus.SYNCED,
    (SyncStatus.RETRY, Trigger.BOOKING_FAILED): SyncStatus.ERROR,
}

STAMPED_STATUSES = (SyncStatus.SYNCED, SyncStatus.ERROR, SyncStatus.CONFLICT)


class _EventLock:
    """Re-entrant lock for one event; dropped from the registry once unused."""

    def __init__(self):
        self.lock = threading.RLock()


def next_status(status: SyncStatus, transition: Transition) -> SyncStatus:
    """
    Resolve the target status of a transition.

    Raises:
        InvalidTransitionError: If the transition is not in the table
    """
    key = (status, transition.trigger)
    if key not in TRANSITIONS:
        raise InvalidTransitionError(status, transition.trigger)

    target = TRANSITIONS[key]
    if target is None:
        if transition.error_type == ErrorType.CONFLICT:
            return SyncStatus.CONFLICT
        return SyncStatus.ERROR
    return target


class SyncEventTracker:
    """
    Owns the lifecycle of booking sync events.

    Transitions for one event are serialized by a per-event lock inside this
    process and by the store's version check across processes.
    """

    def __init__(
        self,
        store,
        calendar,
        clock: Callable[[], int] = now_ms,
        max_snapshot_age: int = MAX_SNAPSHOT_AGE_MS
    ):
        """
        Initialize the tracker.

        Args:
            store: SyncEventStore (or compatible) for persistence
            calendar: Calendar client exposing create_external_event()
            clock: Returns the current time in epoch milliseconds
            max_snapshot_age: Staleness window in milliseconds
        """
        self.store = store
        self.calendar = calendar
        self.clock = clock
        self.max_snapshot_age = max_snapshot_age
        self._locks = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    @contextmanager
    def event_lock(self, user_id: str, event_id: str) -> Iterator[None]:
        """Hold the per-event lock; re-entrant for the owning thread."""
        with self._locks_guard:
            entry = self._locks.get((user_id, event_id))
            if entry is None:
                entry = _EventLock()
                self._locks[(user_id, event_id)] = entry
        # the entry stays registered while any caller still references it
        with entry.lock:
            yield

    def create(
        self,
        user_id: str,
        title: str,
        start: str,
        end: str,
        snapshot_timestamp: Optional[int],
        cancel_event: Optional[threading.Event] = None
    ) -> BookingResult:
        """
        Record a booking and push it to the external calendar.

        A stale or missing snapshot timestamp short-circuits to a conflict
        record without calling the calendar.

        Args:
            user_id: Owner of the booking
            title: Event title
            start: Start time (ISO 8601)
            end: End time (ISO 8601)
            snapshot_timestamp: Timestamp of the availability batch the slot came from
            cancel_event: Set by the caller to abandon the calendar call

        Returns:
            BookingResult describing the outcome

        Raises:
            CallCancelledError: If the caller cancelled; the event stays pending
        """
        now = self.clock()
        event = SyncEvent(
            user_id=user_id,
            event_id=new_event_id(),
            title=title,
            start=start,
            end=end,
            status=SyncStatus.PENDING,
            created_at=now,
            snapshot_timestamp=snapshot_timestamp
        )

        if not is_valid(snapshot_timestamp, now, self.max_snapshot_age):
            return self._record_expired(event)

        return self._book(event, cancel_event)

    def create_series(
        self,
        user_id: str,
        title: str,
        occurrences: List[Tuple[str, str]],
        snapshot_timestamp: Optional[int],
        cancel_event: Optional[threading.Event] = None
    ) -> List[BookingResult]:
        """
        Record and book every occurrence of a recurring booking.

        The snapshot is checked once for the whole series. When it is stale a
        single conflict record is kept for the first occurrence and nothing
        else is booked. Otherwise each occurrence becomes its own sync event,
        and one failing occurrence does not stop the rest.

        Args:
            user_id: Owner of the bookings
            title: Event title shared by every occurrence
            occurrences: (start, end) ISO 8601 pairs, first occurrence first
            snapshot_timestamp: Timestamp of the availability batch the first slot came from
            cancel_event: Set by the caller to abandon the remaining calendar calls

        Returns:
            One BookingResult per booked occurrence, in order

        Raises:
            ValueError: If there are no occurrences
            CallCancelledError: If the caller cancelled; unbooked occurrences stay pending
        """
        if not occurrences:
            raise ValueError('A recurring booking needs at least one occurrence')

        now = self.clock()
        events = [
            SyncEvent(
                user_id=user_id,
                event_id=new_event_id(),
                title=title,
                start=start,
                end=end,
                status=SyncStatus.PENDING,
                created_at=now,
                snapshot_timestamp=snapshot_timestamp
            )
            for start, end in occurrences
        ]

        if not is_valid(snapshot_timestamp, now, self.max_snapshot_age):
            return [self._record_expired(events[0])]

        logger.info(
            f"Booking {len(events)} occurrences of '{title}'",
            extra={'user_id': user_id}
        )
        return [self._book(event, cancel_event) for event in events]

    def _book(self, event: SyncEvent, cancel_event: Optional[threading.Event]) -> BookingResult:
        event = self.store.put_new(event)
        logger.info(f"Created pending sync event {event.event_id} for '{event.title}'")

        with self.event_lock(event.user_id, event.event_id):
            return self.attempt_booking(event, cancel_event)

    def _record_expired(self, event: SyncEvent) -> BookingResult:
        """Store a booking whose snapshot expired as a conflict."""
        logger.info(
            f"Snapshot expired for booking '{event.title}'",
            extra={
                'user_id': event.user_id,
                'snapshot_timestamp': event.snapshot_timestamp,
                'max_age_ms': self.max_snapshot_age
            }
        )
        conflict = self.store.put_new(replace(
            event,
            status=SyncStatus.CONFLICT,
            error_code=ErrorType.CONFLICT.value,
            error_message='Availability snapshot expired',
            last_synced_at=event.created_at
        ))
        return BookingResult.failure(conflict, ErrorType.CONFLICT)

    def attempt_booking(
        self,
        event: SyncEvent,
        cancel_event: Optional[threading.Event] = None
    ) -> BookingResult:
        """
        Call the external calendar for an event and apply the outcome.

        Args:
            event: Event in PENDING or RETRY status
            cancel_event: Set by the caller to abandon the calendar call

        Returns:
            BookingResult describing the outcome

        Raises:
            CallCancelledError: If the caller cancelled; the event is unchanged
        """
        try:
            ref = self.calendar.create_external_event(
                event.title,
                event.start,
                event.end,
                cancel_event=cancel_event
            )
        except CallCancelledError:
            logger.info(
                f"Booking call for sync event {event.event_id} cancelled, "
                f"leaving it {event.status.value}"
            )
            raise
        except CalendarApiError as e:
            return self._record_failure(event, e)
        except Exception as e:
            logger.error(
                f"Unexpected error booking sync event {event.event_id}: {e}",
                extra={'error_type': type(e).__name__},
                exc_info=True
            )
            return self._record_failure(
                event,
                CalendarApiError(ErrorType.SERVER_ERROR, f"Unexpected calendar failure: {e}")
            )

        updated = self.update(event.user_id, event.event_id, Transition.succeeded(ref))
        return BookingResult.synced(updated)

    def _record_failure(self, event: SyncEvent, error: CalendarApiError) -> BookingResult:
        updated = self.update(event.user_id, event.event_id, Transition.failed(error))
        logger.warning(
            f"Sync event {event.event_id} failed: {error.error_type.value}",
            extra={
                'status_code': error.status_code,
                'error_message': error.message,
                'status': updated.status.value
            }
        )
        return BookingResult.failure(updated, error.error_type, retryable=error.retryable)

    def update(self, user_id: str, event_id: str, transition: Transition) -> SyncEvent:
        """
        Apply exactly one transition to a stored event.

        Args:
            user_id: Owner of the event
            event_id: Event to transition
            transition: Trigger plus the data the target state needs

        Returns:
            The stored, transitioned event

        Raises:
            EventNotFoundError: If the event does not exist
            InvalidTransitionError: If the transition is not allowed
            ConcurrentModificationError: If another writer changed the event
        """
        with self.event_lock(user_id, event_id):
            event = self.get(user_id, event_id)
            updated = self._apply(event, transition)
            stored = self.store.save(updated, expected_version=event.version)

        logger.info(
            f"Sync event {event_id}: {event.status.value} -> {stored.status.value}",
            extra={'trigger': transition.trigger.value, 'retry_count': stored.retry_count}
        )
        return stored

    def get(self, user_id: str, event_id: str) -> SyncEvent:
        """
        Load an event from the user's partition.

        Raises:
            EventNotFoundError: If the event does not exist
        """
        event = self.store.get(user_id, event_id)
        if event is None:
            raise EventNotFoundError(user_id, event_id)
        return event

    def list_events(
        self,
        user_id: str,
        status: Optional[SyncStatus] = None
    ) -> List[SyncEvent]:
        return self.store.list_events(user_id, status)

    def sync_status(self, user_id: str) -> SyncStatusSummary:
        """Summarize a user's events by status."""
        summary = SyncStatusSummary()
        for event in self.store.list_events(user_id):
            summary.total += 1
            summary.counts[event.status.value] += 1
            if event.status == SyncStatus.SYNCED and event.last_synced_at is not None:
                if summary.last_synced_at is None or event.last_synced_at > summary.last_synced_at:
                    summary.last_synced_at = event.last_synced_at
        return summary

    def _apply(self, event: SyncEvent, transition: Transition) -> SyncEvent:
        """Compute the transitioned event without persisting it."""
        target = next_status(event.status, transition)
        now = self.clock()
        changes = {'status': target}

        if target == SyncStatus.SYNCED:
            if not transition.external_id:
                raise ValueError('A synced event requires an external id')
            changes.update(
                external_id=transition.external_id,
                link=transition.link,
                error_code=None,
                error_message=None,
                error_retryable=False,
                next_retry_at=None
            )
        elif transition.trigger == Trigger.BOOKING_FAILED:
            error_type = transition.error_type or ErrorType.SERVER_ERROR
            changes.update(
                external_id=None,
                link=None,
                error_code=error_type.value,
                error_message=transition.error_message or USER_MESSAGES[error_type],
                error_retryable=transition.error_retryable,
                next_retry_at=None
            )
        elif transition.trigger == Trigger.RETRY_SCHEDULED:
            changes.update(
                retry_count=event.retry_count + 1,
                next_retry_at=transition.next_retry_at
            )

        if target in STAMPED_STATUSES:
            changes['last_synced_at'] = now

        return replace(event, **changes)
